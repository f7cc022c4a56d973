"""
JSON event writer.

Document shape:
    {
       "Account": "..", "Account_desc": "..", "TimeZone": "..",
       "DeviceList": [
          {"Device": "..", "Device_desc": "..", "EventData": [ {...}, ... ]}
       ]
    }

Event objects are flat: sub-parts of a field become sibling keys
(Timestamp_date, GPSPoint_lat, Speed_units, ...). Numbers are unquoted,
text goes through json.dumps, and "Index" is always the last key.
"""

import json
import logging
from datetime import tzinfo
from typing import Iterable, List, Optional, TextIO, Tuple

from constants import JSON_INDENT
from event_export.data_models import (
    Account,
    Device,
    DeviceEvents,
    EventRecord,
    EventSchema,
    FieldProfile,
)
from event_export.field_policy import (
    FieldId,
    FieldPolicy,
    FieldValue,
    format_coordinate,
    heading_compass,
)

logger = logging.getLogger(__name__)

JsonPair = Tuple[str, str]   # key, already-encoded JSON value


def _text(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _number(field: FieldValue) -> str:
    """Formatted numeric text is already a valid JSON number."""
    return field.text


def build_event_pairs(
    device: Device,
    event: EventRecord,
    policy: FieldPolicy,
    index: int,
    display_tz: Optional[tzinfo] = None,
) -> List[JsonPair]:
    """Ordered key/value pairs of one event object."""
    pairs: List[JsonPair] = [("Device", _text(device.device_id))]

    if policy.includes(FieldId.TIMESTAMP, event, device):
        pairs.append(("Timestamp", str(event.timestamp)))
        pairs.append(("Timestamp_date", _text(policy.format_date(event, display_tz))))
        pairs.append(("Timestamp_time", _text(policy.format_time(event, display_tz))))

    pairs.append(("StatusCode", str(event.status_code)))
    pairs.append(("StatusCode_hex", _text(policy.status_hex(event.status_code))))
    pairs.append(("StatusCode_desc", _text(policy.describe_status(event.status_code))))

    point = policy.resolve(FieldId.GPS_POINT, event, device)
    if point is not None:
        pairs.append(("GPSPoint", _text(point.text)))
        pairs.append(("GPSPoint_lat", format_coordinate(event.latitude)))
        pairs.append(("GPSPoint_lon", format_coordinate(event.longitude)))
        if event.gps_age > 0:
            pairs.append(("GPSPoint_age", str(event.gps_age)))
        accuracy = policy.resolve(FieldId.ACCURACY, event, device)
        if accuracy is not None:
            pairs.append(("GPSPoint_accuracy", _number(accuracy)))

    speed = policy.resolve(FieldId.SPEED, event, device)
    if speed is not None:
        pairs.append(("Speed", _number(speed)))
        pairs.append(("Speed_units", _text(speed.units)))
        limit = policy.resolve(FieldId.SPEED_LIMIT, event, device)
        if limit is not None:
            pairs.append(("Speed_limit", _number(limit)))

    heading = policy.resolve(FieldId.HEADING, event, device)
    if heading is not None:
        pairs.append(("Heading", _number(heading)))
        pairs.append(("Heading_desc", _text(heading_compass(event.heading))))

    for field_id, key in ((FieldId.ALTITUDE, "Altitude"), (FieldId.ODOMETER, "Odometer")):
        value = policy.resolve(field_id, event, device, wide=True)
        if value is not None:
            pairs.append((key, _number(value)))
            pairs.append((f"{key}_units", _text(value.units)))

    geozone = policy.resolve(FieldId.GEOZONE, event, device)
    if geozone is not None:
        pairs.append(("Geozone", _text(geozone.text)))
        pairs.append(("Geozone_index", str(event.geozone_index)))

    for field_id, key in ((FieldId.ADDRESS, "Address"),
                          (FieldId.CITY, "City"),
                          (FieldId.POSTAL_CODE, "PostalCode")):
        value = policy.resolve(field_id, event, device)
        if value is not None:
            pairs.append((key, _text(value.text)))

    mask = policy.resolve(FieldId.INPUT_MASK, event, device)
    if mask is not None:
        pairs.append(("DigitalInputMask", str(event.input_mask)))
        pairs.append(("DigitalInputMask_hex", _text(mask.text)))

    for field_id, key in ((FieldId.DRIVER_ID, "DriverID"),
                          (FieldId.DRIVER_MESSAGE, "DriverMessage")):
        value = policy.resolve(field_id, event, device)
        if value is not None:
            pairs.append((key, _text(value.text)))

    for field_id, key in ((FieldId.ENGINE_RPM, "EngineRPM"),
                          (FieldId.ENGINE_HOURS, "EngineHours"),
                          (FieldId.BATTERY_VOLTS, "VehicleBatteryVolts")):
        value = policy.resolve(field_id, event, device, wide=True)
        if value is not None:
            pairs.append((key, _number(value)))

    for field_id, key in ((FieldId.COOLANT_LEVEL, "EngineCoolantLevel"),
                          (FieldId.COOLANT_TEMP, "EngineCoolantTemperature"),
                          (FieldId.FUEL_USED, "EngineFuelUsed")):
        value = policy.resolve(field_id, event, device, wide=True)
        if value is not None:
            pairs.append((key, _number(value)))
            pairs.append((f"{key}_units", _text(value.units)))

    pairs.append(("Index", str(index)))
    return pairs


def _write_object(output: TextIO, pairs: List[JsonPair], level: int) -> None:
    outer = JSON_INDENT * level
    inner = JSON_INDENT * (level + 1)
    body = ",\n".join(f"{inner}{_text(key)}: {value}" for key, value in pairs)
    output.write(f"{outer}{{\n{body}\n{outer}}}")


def write_json(
    output: TextIO,
    account: Optional[Account],
    devices: Iterable[DeviceEvents],
    profile: FieldProfile = FieldProfile.POPULATED,
    display_tz: Optional[tzinfo] = None,
    schema: Optional[EventSchema] = None,
) -> bool:
    """
    Write events for one account as a JSON document.

    Separators are written before each item, so skipped devices or events
    never leave a dangling comma and the output stays balanced.

    Returns:
        False if no account was given, True once the document is written
    """
    if account is None:
        return False

    policy = FieldPolicy(account, profile, schema)
    p1, p2, p3 = (JSON_INDENT * n for n in range(1, 4))

    output.write("{\n")
    output.write(f'{p1}"Account": {_text(account.account_id)},\n')
    output.write(f'{p1}"Account_desc": {_text(account.description)},\n')
    output.write(f'{p1}"TimeZone": {_text(account.timezone_name)},\n')
    output.write(f'{p1}"DeviceList": [')

    device_count = 0
    events_written = 0
    for bound in devices:
        device = bound.device
        if device.account_id != account.account_id:
            continue
        output.write(",\n" if device_count else "\n")
        output.write(f"{p2}{{\n")
        output.write(f'{p3}"Device": {_text(device.device_id)},\n')
        output.write(f'{p3}"Device_desc": {_text(device.description)},\n')
        output.write(f'{p3}"EventData": [')

        index = 0
        for event in bound.events:
            if event.account_id != account.account_id:
                continue
            output.write(",\n" if index else "\n")
            _write_object(output, build_event_pairs(device, event, policy, index, display_tz), 4)
            index += 1

        output.write(f"\n{p3}]\n" if index else "]\n")
        output.write(f"{p2}}}")
        device_count += 1
        events_written += index

    output.write(f"\n{p1}]\n" if device_count else "]\n")
    output.write("}\n")
    output.flush()
    logger.debug(f"Wrote {events_written} JSON events for account {account.account_id}")
    return True
