"""
Date range arguments for the -events/-geozone/-geocode options.

A range is "<from>,<to>[,<limit>]" ('|' also separates). Each date is an
epoch integer or YYYY/MM/DD[/HH:MM[:SS]] in the account timezone; a bare
start date means start of day, a bare end date means end of day.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Optional

logger = logging.getLogger(__name__)

_RANGE_SPLIT = re.compile(r"[|,]")
_DATE_PATTERN = re.compile(
    r"^(\d{4})/(\d{1,2})/(\d{1,2})"
    r"(?:[/ T](\d{1,2}):(\d{1,2})(?::(\d{1,2}))?)?$"
)


@dataclass(frozen=True)
class DateRange:
    """Inclusive epoch range; a non-positive bound means open-ended."""
    start: int
    end: int
    limit: Optional[int] = None

    @property
    def start_time(self) -> Optional[int]:
        return self.start if self.start > 0 else None

    @property
    def end_time(self) -> Optional[int]:
        return self.end if self.end > 0 else None


def parse_date(text: Optional[str], tz: Optional[tzinfo] = None, is_start: bool = True) -> int:
    """
    Parse one range bound to epoch seconds.

    Returns:
        Epoch seconds, or -1 when the value is blank or unparseable
    """
    value = (text or "").strip()
    if not value:
        return -1
    tz = tz or timezone.utc

    if "/" not in value:
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid epoch value: {value}")
            return -1

    match = _DATE_PATTERN.match(value)
    if match is None:
        logger.warning(f"Invalid date value: {value}")
        return -1

    year, month, day, hour, minute, second = match.groups()
    if hour is None:
        hh, mm, ss = (0, 0, 0) if is_start else (23, 59, 59)
    else:
        hh, mm = int(hour), int(minute)
        if second is not None:
            ss = int(second)
        else:
            ss = 0 if is_start else 59
    try:
        dt = datetime(int(year), int(month), int(day), hh, mm, ss, tzinfo=tz)
    except ValueError as e:
        logger.warning(f"Invalid date value: {value} ({e})")
        return -1
    return int(dt.timestamp())


def parse_date_range(
    text: Optional[str],
    tz: Optional[tzinfo] = None,
    default_limit: Optional[int] = None,
) -> Optional[DateRange]:
    """
    Parse "<from>,<to>[,<limit>]".

    Returns:
        DateRange, or None when neither bound could be parsed
    """
    if not text:
        return None
    parts = [p.strip() for p in _RANGE_SPLIT.split(text)]
    start = parse_date(parts[0], tz, is_start=True)
    end = parse_date(parts[1], tz, is_start=False) if len(parts) > 1 else -1

    limit = default_limit
    if len(parts) > 2 and parts[2]:
        try:
            limit = int(parts[2])
        except ValueError:
            logger.warning(f"Invalid limit value: {parts[2]}")

    if start <= 0 and end <= 0:
        return None
    return DateRange(start=start, end=end, limit=limit)
