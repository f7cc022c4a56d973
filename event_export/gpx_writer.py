"""
GPX 1.1 writer with Garmin and fleet-event extensions.

Exports device events to GPX format with:
- One track per device, one trackpoint per event with a valid GPS fix
- Garmin TrackPointExtension for speed (m/s) and course
- Custom event extension for status code, geozone and address
"""

import itertools
import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timezone, tzinfo
from typing import Iterable, Optional, TextIO
from xml.sax.saxutils import escape, quoteattr

from constants import KPH_TO_MPS, XML_INDENT
from event_export.data_models import (
    Account,
    Device,
    DeviceEvents,
    EventRecord,
    EventSchema,
    FieldProfile,
)
from event_export.field_policy import FieldId, FieldPolicy, format_coordinate
from event_export.xml_writer import xml_safe

logger = logging.getLogger(__name__)

# XML namespaces
NS_GPX = "http://www.topografix.com/GPX/1/1"
NS_GARMIN = "http://www.garmin.com/xmlschemas/TrackPointExtension/v2"
NS_EVENT = "urn:fleet-event-export:gpx:v1"
NS_XSI = "http://www.w3.org/2001/XMLSchema-instance"


def _format_time(dt: datetime) -> str:
    """Format datetime as ISO 8601 UTC string for GPX."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _add_elem(parent: ET.Element, name: str, value: str) -> None:
    elem = ET.SubElement(parent, name)
    elem.text = xml_safe(value)


def build_trackpoint(device: Device, event: EventRecord, policy: FieldPolicy) -> ET.Element:
    """
    Build one <trkpt> for an event with a valid GPS fix.

    Prefixed tags rely on the namespace declarations of the <gpx> root.
    """
    trkpt = ET.Element("trkpt", {
        "lat": format_coordinate(event.latitude),
        "lon": format_coordinate(event.longitude),
    })

    altitude = policy.resolve(FieldId.ALTITUDE, event, device)
    if altitude is not None:
        # GPX elevation is always meters
        _add_elem(trkpt, "ele", f"{event.altitude:.1f}")
    _add_elem(trkpt, "time", _format_time(event.event_time))

    extensions = ET.SubElement(trkpt, "extensions")

    # Garmin TrackPointExtension (speed and course)
    gpxtpx = ET.SubElement(extensions, "gpxtpx:TrackPointExtension")
    if policy.includes(FieldId.SPEED, event, device):
        _add_elem(gpxtpx, "gpxtpx:speed", f"{max(event.speed_kph, 0.0) * KPH_TO_MPS:.2f}")
    if policy.includes(FieldId.HEADING, event, device):
        _add_elem(gpxtpx, "gpxtpx:course", f"{event.heading:.1f}")

    # Event extension
    ext = ET.SubElement(extensions, "evt:EventExtension")
    _add_elem(ext, "evt:status", policy.describe_status(event.status_code))
    _add_elem(ext, "evt:code", policy.status_hex(event.status_code))
    for field_id, name in ((FieldId.GEOZONE, "evt:geozone"), (FieldId.ADDRESS, "evt:address")):
        value = policy.resolve(field_id, event, device)
        if value is not None:
            _add_elem(ext, name, value.text)

    return trkpt


def write_gpx(
    output: TextIO,
    account: Optional[Account],
    devices: Iterable[DeviceEvents],
    profile: FieldProfile = FieldProfile.POPULATED,
    display_tz: Optional[tzinfo] = None,
    schema: Optional[EventSchema] = None,
) -> bool:
    """
    Write device events to GPX 1.1 format with extensions.

    Events without a valid GPS fix are skipped; devices left with no
    trackpoints get no track. GPX times are always UTC, so display_tz is
    accepted only for signature parity with the other writers.

    Args:
        output: Text sink to write to
        account: Owning account (required)
        devices: Devices with their bound event sequences
        profile: Field-set profile
        display_tz: Unused
        schema: Columns the store declares present

    Returns:
        False if no account was given, True once the document is written
    """
    if account is None:
        return False

    policy = FieldPolicy(account, profile, schema)
    pad = XML_INDENT
    schema_location = (
        f"{NS_GPX} http://www.topografix.com/GPX/1/1/gpx.xsd "
        f"{NS_GARMIN} http://www.garmin.com/xmlschemas/TrackPointExtensionv2.xsd"
    )

    output.write('<?xml version="1.0" encoding="UTF-8"?>\n')
    output.write(
        f"<gpx xmlns={quoteattr(NS_GPX)} xmlns:gpxtpx={quoteattr(NS_GARMIN)} "
        f"xmlns:evt={quoteattr(NS_EVENT)} xmlns:xsi={quoteattr(NS_XSI)} "
        f'version="1.1" creator="Fleet Event Exporter" '
        f"xsi:schemaLocation={quoteattr(schema_location)}>\n"
    )
    output.write(f"{pad}<metadata>\n")
    output.write(f"{pad * 2}<name>{escape(xml_safe(account.description or account.account_id))}</name>\n")
    output.write(f"{pad * 2}<desc>{escape(f'Events for account {account.account_id}')}</desc>\n")
    output.write(f"{pad}</metadata>\n")

    points = 0
    for bound in devices:
        device = bound.device
        if device.account_id != account.account_id:
            continue
        events = (ev for ev in bound.events
                  if ev.account_id == account.account_id and ev.has_valid_gps)
        first = next(events, None)
        if first is None:
            continue

        output.write(f"{pad}<trk>\n")
        output.write(f"{pad * 2}<name>{escape(device.device_id)}</name>\n")
        if device.description:
            output.write(f"{pad * 2}<desc>{escape(xml_safe(device.description))}</desc>\n")
        output.write(f"{pad * 2}<trkseg>\n")
        for event in itertools.chain((first,), events):
            trkpt = build_trackpoint(device, event, policy)
            ET.indent(trkpt, space=pad, level=3)
            output.write(pad * 3 + ET.tostring(trkpt, encoding="unicode") + "\n")
            points += 1
        output.write(f"{pad * 2}</trkseg>\n")
        output.write(f"{pad}</trk>\n")

    output.write("</gpx>\n")
    output.flush()
    logger.debug(f"Wrote {points} GPX trackpoints for account {account.account_id}")
    return True
