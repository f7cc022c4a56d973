"""
Point-list (BML) writer.

    <lbs>
    <location lon=".." lat=".." label="<device id>" description="<address>"/>
    ...
    </lbs>

Attribute values are written as-is, with two known gaps:

- The description is NOT escaped, so a quote or angle bracket in an
  address yields a malformed element. Existing consumers of this format
  have never been checked for what they expect.
- Every event is listed, including those without a GPS fix, which come
  out as lat="0.0" lon="0.0".
"""

import logging
from datetime import tzinfo
from typing import Iterable, Optional, TextIO

from event_export.data_models import (
    Account,
    DeviceEvents,
    EventSchema,
    FieldProfile,
)
from event_export.field_policy import format_coordinate

logger = logging.getLogger(__name__)


def write_bml(
    output: TextIO,
    account: Optional[Account],
    devices: Iterable[DeviceEvents],
    profile: FieldProfile = FieldProfile.POPULATED,
    display_tz: Optional[tzinfo] = None,
    schema: Optional[EventSchema] = None,
) -> bool:
    """Write one <location/> per event, labelled with its device id.

    The profile, timezone and schema are accepted for the shared writer
    signature; this dialect has fixed attributes.
    """
    if account is None:
        return False

    output.write("<lbs>\n")
    count = 0
    for bound in devices:
        device = bound.device
        if device.account_id != account.account_id:
            continue
        for event in bound.events:
            if event.account_id != account.account_id:
                continue
            output.write(
                f'<location lon="{format_coordinate(event.longitude)}" '
                f'lat="{format_coordinate(event.latitude)}" '
                f'label="{event.device_id}" description="{event.address}"/>\n'
            )
            count += 1
    output.write("</lbs>\n")
    output.flush()
    logger.debug(f"Wrote {count} BML locations for account {account.account_id}")
    return True
