"""
XML event writer (current and legacy schema).

Current schema:
    <Account account=".." timezone="..">
      <Description>..</Description>
      <Device id="..">
        <Description>..</Description>
        <EventData device="..">..leaves..</EventData>
      </Device>
    </Account>

Legacy schema flattens devices away:
    <EventData account=".." timezone="..">
      <Description>..</Description>
      <Event device="..">..leaves..</Event>
    </EventData>

Each event element is built with ElementTree and serialized on its own so
the document is written incrementally; ElementTree escapes text content.
"""

import itertools
import logging
import re
import xml.etree.ElementTree as ET
from datetime import tzinfo
from typing import Iterable, Iterator, Optional, TextIO
from xml.sax.saxutils import escape, quoteattr

from constants import XML_INDENT
from event_export.data_models import (
    Account,
    Device,
    DeviceEvents,
    EventRecord,
    EventSchema,
    FieldProfile,
)
from event_export.field_policy import FieldId, FieldPolicy, heading_compass

logger = logging.getLogger(__name__)

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8" standalone="no"?>'

# Characters XML 1.0 cannot carry; tab, newline and carriage return are allowed
_XML_INVALID_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def xml_safe(text: str) -> str:
    """Drop control characters that are not allowed in XML text."""
    return _XML_INVALID_CHARS.sub("", text)


# Simple text leaves: (field, tag)
_TEXT_LEAVES = (
    (FieldId.ADDRESS, "Address"),
    (FieldId.CITY, "City"),
    (FieldId.POSTAL_CODE, "PostalCode"),
    (FieldId.INPUT_MASK, "DigitalInputMask"),
    (FieldId.DRIVER_ID, "DriverID"),
    (FieldId.DRIVER_MESSAGE, "DriverMessage"),
    (FieldId.ENGINE_RPM, "EngineRPM"),
    (FieldId.ENGINE_HOURS, "EngineHours"),
    (FieldId.BATTERY_VOLTS, "VehicleBatteryVolts"),
)

# Leaves carrying a units attribute: (field, tag)
_UNIT_LEAVES = (
    (FieldId.COOLANT_LEVEL, "EngineCoolantLevel"),
    (FieldId.COOLANT_TEMP, "EngineCoolantTemperature"),
    (FieldId.FUEL_USED, "EngineFuelUsed"),
)


def _leaf(parent: ET.Element, tag: str, text: str, **attrib: str) -> ET.Element:
    elem = ET.SubElement(parent, tag, attrib)
    elem.text = xml_safe(text)
    return elem


def build_event_element(
    tag: str,
    device: Device,
    event: EventRecord,
    policy: FieldPolicy,
    display_tz: Optional[tzinfo] = None,
) -> ET.Element:
    """Build the element for one event, leaves chosen by the field policy."""
    root = ET.Element(tag, {"device": device.device_id})

    if policy.includes(FieldId.TIMESTAMP, event, device):
        stamp = " ".join((
            policy.format_date(event, display_tz),
            policy.format_time(event, display_tz),
            policy.timezone_abbrev(event, display_tz),
        ))
        _leaf(root, "Timestamp", stamp, epoch=str(event.timestamp))

    _leaf(root, "StatusCode", policy.describe_status(event.status_code),
          code=policy.status_hex(event.status_code))

    point = policy.resolve(FieldId.GPS_POINT, event, device)
    if point is not None:
        attrs = {}
        if event.gps_age > 0 or policy.include_all:
            attrs["age"] = str(event.gps_age)
        _leaf(root, "GPSPoint", point.text, **attrs)

    speed = policy.resolve(FieldId.SPEED, event, device)
    if speed is not None:
        attrs = {"units": speed.units}
        limit = policy.resolve(FieldId.SPEED_LIMIT, event, device)
        if limit is not None:
            attrs["limit"] = limit.text
        _leaf(root, "Speed", speed.text, **attrs)

    heading = policy.resolve(FieldId.HEADING, event, device)
    if heading is not None:
        _leaf(root, "Heading", heading_compass(event.heading), degrees=heading.text)

    for field_id, tag_name in ((FieldId.ALTITUDE, "Altitude"), (FieldId.ODOMETER, "Odometer")):
        value = policy.resolve(field_id, event, device)
        if value is not None:
            _leaf(root, tag_name, value.text, units=value.units)

    geozone = policy.resolve(FieldId.GEOZONE, event, device)
    if geozone is not None:
        _leaf(root, "Geozone", geozone.text, index=str(event.geozone_index))

    for field_id, tag_name in _TEXT_LEAVES:
        value = policy.resolve(field_id, event, device)
        if value is not None:
            _leaf(root, tag_name, value.text)

    for field_id, tag_name in _UNIT_LEAVES:
        value = policy.resolve(field_id, event, device)
        if value is not None:
            _leaf(root, tag_name, value.text, units=value.units)

    return root


def _account_events(account: Account, bound: DeviceEvents) -> Iterator[EventRecord]:
    return (ev for ev in bound.events if ev.account_id == account.account_id)


def _write_element(output: TextIO, elem: ET.Element, level: int) -> None:
    ET.indent(elem, space=XML_INDENT, level=level)
    output.write(XML_INDENT * level + ET.tostring(elem, encoding="unicode") + "\n")


def write_xml(
    output: TextIO,
    account: Optional[Account],
    devices: Iterable[DeviceEvents],
    profile: FieldProfile = FieldProfile.POPULATED,
    display_tz: Optional[tzinfo] = None,
    legacy: bool = False,
    schema: Optional[EventSchema] = None,
) -> bool:
    """
    Write events for one account as an XML document.

    Args:
        output: Text sink to write to
        account: Owning account (required)
        devices: Devices with their bound event sequences
        profile: Field-set profile
        display_tz: Display timezone; defaults to the account timezone
        legacy: Write the flat legacy schema instead of the current one
        schema: Columns the store declares present

    Returns:
        False if no account was given, True once the document is written
    """
    if account is None:
        return False

    policy = FieldPolicy(account, profile, schema)
    top_tag = "EventData" if legacy else "Account"
    event_tag = "Event" if legacy else "EventData"
    event_level = 1 if legacy else 2
    pad = XML_INDENT

    output.write(XML_DECLARATION + "\n")
    output.write(f"<{top_tag} account={quoteattr(account.account_id)} "
                 f"timezone={quoteattr(account.timezone_name)}>\n")
    output.write(f"{pad}<Description>{escape(xml_safe(account.description))}</Description>\n")

    events_written = 0
    for bound in devices:
        device = bound.device
        if device.account_id != account.account_id:
            continue
        events = _account_events(account, bound)
        first = next(events, None)
        if first is None:
            continue

        if not legacy:
            output.write(f"{pad}<Device id={quoteattr(device.device_id)}>\n")
            output.write(f"{pad * 2}<Description>{escape(xml_safe(device.description))}</Description>\n")

        for event in itertools.chain((first,), events):
            elem = build_event_element(event_tag, device, event, policy, display_tz)
            _write_element(output, elem, event_level)
            events_written += 1

        if not legacy:
            output.write(f"{pad}</Device>\n")

    output.write(f"</{top_tag}>\n")
    output.flush()
    logger.debug(f"Wrote {events_written} XML events for account {account.account_id}")
    return True
