"""
Tabular CSV writer for fleet events.

One header row, then one row per event. The timestamp column expands to a
"Date" and a "Time" column. Text cells are sanitized so the separator never
appears unquoted; the address column is always quoted.
"""

import logging
from datetime import tzinfo
from typing import Iterable, List, Optional, Sequence, TextIO, Union

from constants import CSV_SEPARATOR
from event_export.data_models import (
    Account,
    Device,
    DeviceEvents,
    EventRecord,
    EventSchema,
    FieldProfile,
)
from event_export.field_policy import FIELD_TABLE, FieldId, FieldPolicy

logger = logging.getLogger(__name__)

ColumnName = Union[FieldId, str]

CSV_MINIMAL_FIELDS: Sequence[FieldId] = (
    FieldId.DEVICE_ID,
    FieldId.TIMESTAMP,
    FieldId.STATUS_CODE,
    FieldId.LATITUDE,
    FieldId.LONGITUDE,
    FieldId.SPEED,
    FieldId.HEADING,
    FieldId.ALTITUDE,
    FieldId.ADDRESS,
)

CSV_ALL_FIELDS: Sequence[FieldId] = tuple(CSV_MINIMAL_FIELDS) + (
    FieldId.GPS_AGE,
    FieldId.SATELLITE_COUNT,
    FieldId.INPUT_MASK,
    FieldId.ODOMETER,
    FieldId.GEOZONE,
    FieldId.DRIVER_ID,
    FieldId.DRIVER_MESSAGE,
    FieldId.FUEL_USED,
    FieldId.ENGINE_RPM,
    FieldId.ENGINE_HOURS,
    FieldId.BATTERY_VOLTS,
    FieldId.COOLANT_LEVEL,
    FieldId.COOLANT_TEMP,
)


def fields_for_profile(profile: FieldProfile) -> Sequence[FieldId]:
    """Default column list for a field-set profile."""
    return CSV_ALL_FIELDS if profile.include_all else CSV_MINIMAL_FIELDS


def quote_string(value: str) -> str:
    """Wrap in double quotes, doubling embedded quotes."""
    return '"' + value.replace('"', '""') + '"'


def sanitize_cell(value: str, separator: str = CSV_SEPARATOR, always_quote: bool = False) -> str:
    """
    Make a text value safe for one CSV cell.

    The separator is replaced with a space; the result is quoted when it
    contains whitespace or quote characters (or when always_quote is set).
    """
    text = value.replace(separator, " ")
    if always_quote or any(ch.isspace() for ch in text) or '"' in text:
        return quote_string(text)
    return text


def _normalize_columns(fields: Sequence[ColumnName]) -> List[ColumnName]:
    columns: List[ColumnName] = []
    for name in fields:
        if isinstance(name, FieldId):
            columns.append(name)
            continue
        try:
            columns.append(FieldId(name))
        except ValueError:
            columns.append(name)
    return columns


class CsvEventWriter:
    """Formats header and rows for a fixed column list."""

    def __init__(
        self,
        policy: FieldPolicy,
        fields: Optional[Sequence[ColumnName]] = None,
        separator: str = CSV_SEPARATOR,
        display_tz: Optional[tzinfo] = None,
    ):
        self.policy = policy
        self.separator = separator
        self.display_tz = display_tz
        requested = fields if fields is not None else fields_for_profile(policy.profile)
        self.columns = [c for c in _normalize_columns(requested) if self._has_column(c)]

    def _has_column(self, column: ColumnName) -> bool:
        if isinstance(column, FieldId):
            return self.policy.has_column(column)
        return column in self.policy.schema.extra_columns

    def format_header(self) -> str:
        labels = []
        for column in self.columns:
            if column is FieldId.TIMESTAMP:
                labels.append(f"Date{self.separator}Time")
            elif isinstance(column, FieldId):
                labels.append(FIELD_TABLE[column].label)
            else:
                labels.append(column)
        return self.separator.join(labels)

    def format_row(self, event: EventRecord, device: Optional[Device] = None) -> str:
        cells = []
        for column in self.columns:
            if not isinstance(column, FieldId):
                raw = event.extra.get(column, "")
                cells.append(sanitize_cell(str(raw), self.separator) if raw != "" else "")
                continue

            if column is FieldId.TIMESTAMP:
                if self.policy.includes(column, event, device):
                    date_str = self.policy.format_date(event, self.display_tz)
                    time_str = self.policy.format_time(event, self.display_tz)
                    cells.append(f"{date_str}{self.separator}{time_str}")
                else:
                    cells.append(self.separator)
                continue

            field = self.policy.resolve(column, event, device)
            if field is None:
                cells.append("")
            elif column is FieldId.ADDRESS:
                cells.append(sanitize_cell(field.text, self.separator, always_quote=True))
            elif FIELD_TABLE[column].free_text:
                cells.append(sanitize_cell(field.text, self.separator) if field.text else "")
            else:
                cells.append(field.text)
        return self.separator.join(cells)


def write_csv(
    output: TextIO,
    account: Optional[Account],
    devices: Iterable[DeviceEvents],
    profile: FieldProfile = FieldProfile.POPULATED,
    display_tz: Optional[tzinfo] = None,
    separator: str = CSV_SEPARATOR,
    include_header: bool = True,
    fields: Optional[Sequence[ColumnName]] = None,
    schema: Optional[EventSchema] = None,
) -> bool:
    """
    Write events for one account as tabular CSV.

    Args:
        output: Text sink to write to
        account: Owning account (required)
        devices: Devices with their bound event sequences
        profile: Field-set profile (selects the default column list)
        display_tz: Display timezone; defaults to the account timezone
        separator: Column separator
        include_header: Write the header row first
        fields: Explicit column list (FieldIds or raw column names)
        schema: Columns the store declares present

    Returns:
        False if no account was given, True once the document is written
    """
    if account is None:
        return False

    policy = FieldPolicy(account, profile, schema)
    writer = CsvEventWriter(policy, fields, separator, display_tz)

    if include_header:
        output.write(writer.format_header() + "\n")

    rows = 0
    for bound in devices:
        device = bound.device
        if device.account_id != account.account_id:
            continue
        for event in bound.events:
            if event.account_id != account.account_id:
                continue
            output.write(writer.format_row(event, device) + "\n")
            rows += 1

    output.flush()
    logger.debug(f"Wrote {rows} CSV rows for account {account.account_id}")
    return True
