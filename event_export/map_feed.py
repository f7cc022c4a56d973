"""
Map-feed protocol for the browser map display client.

Each event becomes one positional record split on a separator (default
"|"). Field order:

     0 device id             9 longitude
     1 device description   10 accuracy (>= 0)
     2 epoch timestamp      11 satellite count (< 0: cell-tower location)
     3 date (account fmt)   12 speed (km/h)
     4 time (account fmt)   13 heading (degrees)
     5 short timezone name  14 altitude (meters)
     6 status description   15 odometer (km)
     7 icon index           16 address
     8 latitude             17+ optional provider values

Text fields pass through encode_unicode so a record survives both the
positional split and embedding inside a JavaScript/XML/JSON payload.
"""

import json
import logging
import math
import re
from datetime import tzinfo
from typing import Callable, Iterable, List, Optional, TextIO
from xml.sax.saxutils import quoteattr

from pydantic import BaseModel, Field

from constants import (
    ALTITUDE_DECIMALS,
    COMPASS_POINTS,
    HEADING_DECIMALS,
    JSON_INDENT,
    MAP_FEED_SEPARATOR,
    MAX_PUSHPIN_LIMIT,
    MILES_PER_KILOMETER,
    ODOMETER_DECIMALS,
    SPEED_DECIMALS,
)
from event_export.data_models import (
    Account,
    Device,
    DeviceEvents,
    EventRecord,
    EventSchema,
    FieldProfile,
    MapDataFormat,
)
from event_export.field_policy import (
    FieldId,
    FieldPolicy,
    format_coordinate,
    format_decimal,
    heading_compass,
    odometer_total_km,
)
from optional_fields import OptionalFieldProvider

logger = logging.getLogger(__name__)

# Punctuation passed through verbatim (note: no '&', '`', quotes or '|')
PASSTHROUGH_PUNCTUATION = "!#$%()*+,-.:;=[]^_{}?~@/"

MAP_FEED_COLUMNS = (
    "DeviceID", "Description", "Epoch", "Date", "Time", "TimeZone",
    "Status", "Icon", "Latitude", "Longitude", "Accuracy", "Satellites",
    "Speed", "Heading", "Altitude", "Odometer", "Address",
)
FIXED_FIELD_COUNT = len(MAP_FEED_COLUMNS)

DSTYPE_DEVICE = "device"
DSTYPE_GROUP = "group"

IconSelector = Callable[[Device, EventRecord], int]

_UNICODE_ESCAPE = re.compile(r"\\u([0-9a-fA-F]{4})")


# =============================================================================
# Text encoding
# =============================================================================

def encode_unicode(text: Optional[str], separator: str = MAP_FEED_SEPARATOR) -> str:
    """
    Filter and escape a text value for the map feed.

    Control characters (tab and newline included) and quotes are dropped,
    the separator and any remaining whitespace become a space, '\\' becomes
    '/', angle brackets become parentheses, ASCII letters/digits and a
    fixed punctuation allow-list pass through, and anything above 0x7E is
    written as \\uXXXX (UTF-16 code units). Everything else is dropped.
    """
    if not text:
        return ""
    out: List[str] = []
    for ch in text:
        code = ord(ch)
        if code < 0x20:
            continue
        if ch in ('"', "'"):
            continue
        if ch == separator:
            out.append(" ")
        elif ch.isdecimal() and code <= 0x7E:
            out.append(ch)
        elif ch.isspace():
            out.append(" ")
        elif ch in ("\\", "/"):
            out.append("/")
        elif ch == "<":
            out.append("(")
        elif ch == ">":
            out.append(")")
        elif ch in PASSTHROUGH_PUNCTUATION:
            out.append(ch)
        elif ("A" <= ch <= "Z") or ("a" <= ch <= "z"):
            out.append(ch)
        elif code > 0x7E:
            units = ch.encode("utf-16-be")
            for i in range(0, len(units), 2):
                out.append(f"\\u{units[i]:02X}{units[i + 1]:02X}")
    return "".join(out)


def decode_unicode(text: str) -> str:
    """Reverse the \\uXXXX escapes written by encode_unicode."""
    if "\\u" not in text:
        return text
    decoded = _UNICODE_ESCAPE.sub(lambda m: chr(int(m.group(1), 16)), text)
    # Re-join surrogate pairs produced for characters outside the BMP
    return decoded.encode("utf-16", "surrogatepass").decode("utf-16")


# =============================================================================
# Record encoding
# =============================================================================

def format_map_event(
    device: Device,
    event: EventRecord,
    policy: FieldPolicy,
    display_tz: Optional[tzinfo] = None,
    separator: str = MAP_FEED_SEPARATOR,
    provider: Optional[OptionalFieldProvider] = None,
    is_fleet: bool = False,
    icon_index: int = 0,
) -> str:
    """Encode one event as a positional map-feed record."""
    enc = lambda s: encode_unicode(s, separator)  # noqa: E731

    if policy.includes(FieldId.TIMESTAMP, event, device):
        epoch = str(event.timestamp)
        date_str = policy.format_date(event, display_tz)
        time_str = policy.format_time(event, display_tz)
        tz_str = policy.timezone_abbrev(event, display_tz)
    else:
        epoch = date_str = time_str = tz_str = ""

    if event.has_valid_gps:
        lat = format_coordinate(event.latitude)
        lon = format_coordinate(event.longitude)
    else:
        lat = lon = "0.0"

    speed = ""
    if policy.includes(FieldId.SPEED, event, device):
        speed = format_decimal(max(event.speed_kph, 0.0), SPEED_DECIMALS)
    heading = ""
    if policy.includes(FieldId.HEADING, event, device):
        heading = format_decimal(event.heading, HEADING_DECIMALS)

    fields = [
        enc(device.device_id),
        enc(device.description),
        epoch,
        enc(date_str),
        enc(time_str),
        enc(tz_str),
        enc(policy.describe_status(event.status_code)),
        str(icon_index),
        lat,
        lon,
        str(max(int(round(event.accuracy)), 0)),
        str(event.satellite_count),
        speed,
        heading,
        format_decimal(event.altitude, ALTITUDE_DECIMALS),
        format_decimal(odometer_total_km(event, device), ODOMETER_DECIMALS),
        enc(event.address.strip().strip('"')),
    ]

    if provider is not None:
        locale = policy.account.locale
        fields.extend(enc(v) for v in provider.values(is_fleet, locale, event, device))

    return separator.join(fields)


def data_columns(
    separator: str = MAP_FEED_SEPARATOR,
    provider: Optional[OptionalFieldProvider] = None,
    is_fleet: bool = False,
    locale: str = "en",
) -> str:
    """Column titles of the map-feed record, including optional field titles."""
    titles = list(MAP_FEED_COLUMNS)
    if provider is not None:
        titles.extend(encode_unicode(t, separator) for t in provider.titles(is_fleet, locale))
    return separator.join(titles)


# =============================================================================
# Record decoding (client contract)
# =============================================================================

def _num(value: str, default: float = 0.0) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return result if math.isfinite(result) else default


def _int(value: str, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(_num(value, default))


class MapEventRecord(BaseModel):
    """
    Decoded map-feed record, as reconstructed by the display client.

    Short records are tolerated: missing fields default to empty or zero.
    """
    index: int = 0
    valid: bool = False
    device_vin: str = ""
    device: str = ""
    timestamp: int = 0
    date_fmt: str = ""
    time_fmt: str = ""
    time_zone: str = ""
    code: str = ""
    icon_index: str = ""
    is_cell_location: bool = False
    latitude: float = 0.0
    longitude: float = 0.0
    accuracy: float = 0.0
    valid_gps: bool = False
    satellite_count: int = 0
    speed_kph: float = 0.0
    speed_mph: float = 0.0
    heading: float = 0.0
    compass: str = COMPASS_POINTS[0]
    altitude: float = Field(default=0.0, description="Meters")
    odometer_km: float = 0.0
    address: str = ""
    optional_values: Optional[List[str]] = None

    @classmethod
    def parse(cls, record: str, separator: str = MAP_FEED_SEPARATOR) -> "MapEventRecord":
        fld = record.split(separator)
        n = len(fld)

        def get(i: int, default: str = "") -> str:
            return fld[i] if n > i else default

        accuracy = max(_num(get(10, "0")), 0.0)
        latitude = _num(get(8, "0"))
        longitude = _num(get(9, "0"))
        sat_count = _int(get(11, "0"))
        is_cell = sat_count < 0
        speed_kph = _num(get(12, "0"))
        heading = _num(get(13, "0"))

        address = decode_unicode(get(16).strip())
        if address.startswith('"'):
            address = address[1:]
        if address.endswith('"'):
            address = address[:-1]

        optional_values = None
        if n > FIXED_FIELD_COUNT:
            optional_values = [decode_unicode(v) for v in fld[FIXED_FIELD_COUNT:]]

        return cls(
            valid=n > 9,
            device_vin=decode_unicode(get(0)),
            device=decode_unicode(get(1)),
            timestamp=_int(get(2, "0")),
            date_fmt=get(3),
            time_fmt=get(4),
            time_zone=get(5),
            code=decode_unicode(get(6)),
            icon_index=get(7),
            is_cell_location=is_cell,
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy,
            valid_gps=(latitude != 0.0 or longitude != 0.0),
            satellite_count=0 if is_cell else sat_count,
            speed_kph=speed_kph,
            speed_mph=speed_kph * MILES_PER_KILOMETER,
            heading=heading,
            compass=heading_compass(heading),
            altitude=_num(get(14, "0")),
            odometer_km=_num(get(15, "0")),
            address=address,
            optional_values=optional_values,
        )


def parse_map_event_js(
    provider: Optional[OptionalFieldProvider] = None,
    is_fleet: bool = False,
    locale: str = "en",
    separator: str = MAP_FEED_SEPARATOR,
) -> str:
    """
    JavaScript decoder for map-feed records, served to the display client.

    The script expects `decodeUnicode` and `numParseFloat` from the host page
    and must stay in step with format_map_event.
    """
    compass = ",".join(f"'{c}'" for c in COMPASS_POINTS)
    js = [
        "// (generated by map_feed.parse_map_event_js)",
        f"var HEADING = new Array({compass});",
        "function MapEventRecord(csvRcd) {",
        f"    var fld        = csvRcd.split({json.dumps(separator)});",
        "    this.index     = 0;",
        "    this.valid     = (fld.length > 9);",
        "    this.devVIN    = (fld.length > 0)? decodeUnicode(fld[0]) : '';",
        "    this.device    = (fld.length > 1)? decodeUnicode(fld[1]) : '';",
        "    this.timestamp = (fld.length > 2)? parseInt(fld[2]) : 0;",
        "    this.dateFmt   = (fld.length > 3)? fld[3] : '';",
        "    this.timeFmt   = (fld.length > 4)? fld[4] : '';",
        "    this.timeZone  = (fld.length > 5)? fld[5] : '';",
        "    this.code      = (fld.length > 6)? decodeUnicode(fld[6]) : '';",
        "    this.iconNdx   = (fld.length > 7)? fld[7] : '';",
        "    this.isCellLoc = false;",
        "    this.latitude  = numParseFloat(((fld.length >  8)? fld[ 8] : '0'), 0);",
        "    this.longitude = numParseFloat(((fld.length >  9)? fld[ 9] : '0'), 0);",
        "    this.accuracy  = numParseFloat(((fld.length > 10)? fld[10] : '0'), 0);",
        "    if (this.accuracy < 0) { this.accuracy = 0; }",
        "    this.validGPS  = ((this.latitude != 0) || (this.longitude != 0))? true : false;",
        "    this.satCount  = (fld.length > 11)? fld[11] : '0';",
        "    if (this.satCount < 0) { this.isCellLoc = true; this.satCount = 0; }",
        "    this.speedKPH  = numParseFloat(((fld.length > 12)? fld[12] : '0'), 0);",
        f"    this.speedMPH  = this.speedKPH * {MILES_PER_KILOMETER};",
        "    this.heading   = numParseFloat(((fld.length > 13)? fld[13] : '0'), 0);",
        "    this.compass   = HEADING[Math.round(this.heading / 45.0) % 8];",
        "    this.altitude  = numParseFloat(((fld.length > 14)? fld[14] : '0'), 0);",
        "    this.odomKM    = numParseFloat(((fld.length > 15)? fld[15] : '0'), 0);",
        "    this.address   = (fld.length > 16)? decodeUnicode(fld[16].trim()) : '';",
        "    if (this.address.startsWith('\"')) { this.address = this.address.substring(1); }",
        "    if (this.address.endsWith('\"')) { this.address = this.address.substring(0, this.address.length - 1); }",
        f"    if (fld.length > {FIXED_FIELD_COUNT}) {{",
        "        this.optDesc = new Array();",
        f"        for (var i = {FIXED_FIELD_COUNT}; i < fld.length; i++) {{",
        "            this.optDesc.push(decodeUnicode(fld[i]));",
        "        }",
        "    }",
        "};",
    ]

    count = provider.field_count(is_fleet) if provider is not None else 0
    js.append("function OptionalEventFieldCount() {")
    js.append(f"    return {count};")
    js.append("};")

    js.append("function OptionalEventFieldTitle(ndx) {")
    if count > 0:
        js.append("    switch (ndx) {")
        for i in range(count):
            title = provider.field_title(i, is_fleet, locale)
            js.append(f"        case {i}: return {json.dumps(title)};")
        js.append("    }")
    js.append("    return '';")
    js.append("};")

    return "\n".join(js) + "\n"


# =============================================================================
# Writers
# =============================================================================

def _iter_records(
    account: Account,
    devices: Iterable[DeviceEvents],
    policy: FieldPolicy,
    display_tz: Optional[tzinfo],
    separator: str,
    provider: Optional[OptionalFieldProvider],
    is_fleet: bool,
    icon_selector: Optional[IconSelector],
    limit: Optional[int],
):
    """Yield (device, record) for every matching event, honoring the per-device limit."""
    for bound in devices:
        device = bound.device
        if device.account_id != account.account_id:
            continue
        count = 0
        for event in bound.events:
            if event.account_id != account.account_id:
                continue
            if limit is not None and count >= limit:
                logger.warning(f"Map point limit {limit} reached for device {device.device_id}")
                break
            icon = icon_selector(device, event) if icon_selector is not None else 0
            yield device, format_map_event(
                device, event, policy, display_tz, separator, provider, is_fleet, icon
            )
            count += 1


def write_map_feed(
    output: TextIO,
    account: Optional[Account],
    devices: Iterable[DeviceEvents],
    profile: FieldProfile = FieldProfile.POPULATED,
    display_tz: Optional[tzinfo] = None,
    separator: str = MAP_FEED_SEPARATOR,
    provider: Optional[OptionalFieldProvider] = None,
    is_fleet: bool = False,
    icon_selector: Optional[IconSelector] = None,
    limit: Optional[int] = MAX_PUSHPIN_LIMIT,
    schema: Optional[EventSchema] = None,
) -> bool:
    """
    Write bare map-feed records, one per line, with no header row.

    Returns:
        False if no account was given, True once all records are written
    """
    if account is None:
        return False
    policy = FieldPolicy(account, profile, schema)
    for _, record in _iter_records(account, devices, policy, display_tz, separator,
                                   provider, is_fleet, icon_selector, limit):
        output.write(record + "\n")
    output.flush()
    return True


def write_map_data(
    output: TextIO,
    account: Optional[Account],
    devices: Iterable[DeviceEvents],
    map_data_format: MapDataFormat = MapDataFormat.XML,
    profile: FieldProfile = FieldProfile.POPULATED,
    display_tz: Optional[tzinfo] = None,
    separator: str = MAP_FEED_SEPARATOR,
    provider: Optional[OptionalFieldProvider] = None,
    is_fleet: bool = False,
    icon_selector: Optional[IconSelector] = None,
    limit: Optional[int] = MAX_PUSHPIN_LIMIT,
    schema: Optional[EventSchema] = None,
) -> bool:
    """
    Write map-feed records wrapped in the client envelope.

    XML:  <MapData><DataColumns/><DataSet type id><P>record</P>...</DataSet></MapData>
    JSON: {"JMapData": {"DataColumns": ..., "DataSets": [{"type", "id", "Points": [...]}]}}

    One data set is written per device that has at least one record.
    """
    if account is None:
        return False
    policy = FieldPolicy(account, profile, schema)
    columns = data_columns(separator, provider, is_fleet, account.locale)
    ds_type = DSTYPE_GROUP if is_fleet else DSTYPE_DEVICE
    records = _iter_records(account, devices, policy, display_tz, separator,
                            provider, is_fleet, icon_selector, limit)

    if map_data_format is MapDataFormat.JSON:
        _write_map_data_json(output, columns, ds_type, records)
    else:
        _write_map_data_xml(output, columns, ds_type, records)
    output.flush()
    return True


def _write_map_data_xml(output: TextIO, columns: str, ds_type: str, records) -> None:
    output.write("<MapData>\n")
    output.write(f"<DataColumns>{columns}</DataColumns>\n")
    current = None
    for device, record in records:
        if device.device_id != current:
            if current is not None:
                output.write("</DataSet>\n")
            current = device.device_id
            output.write(f"<DataSet type={quoteattr(ds_type)} id={quoteattr(current)}>\n")
        output.write(f"<P>{record}</P>\n")
    if current is not None:
        output.write("</DataSet>\n")
    output.write("</MapData>\n")


def _write_map_data_json(output: TextIO, columns: str, ds_type: str, records) -> None:
    pfx1, pfx2, pfx3, pfx4 = (JSON_INDENT * n for n in range(1, 5))
    output.write("{\n")
    output.write(f'{pfx1}"JMapData": {{\n')
    output.write(f'{pfx2}"DataColumns": {json.dumps(columns)},\n')
    output.write(f'{pfx2}"DataSets": [')
    current = None
    first_point = True
    for device, record in records:
        if device.device_id != current:
            if current is not None:
                output.write(f"\n{pfx4}]\n{pfx3}}},")
            current = device.device_id
            output.write(f"\n{pfx3}{{\n")
            output.write(f'{pfx4}"type": {json.dumps(ds_type)},\n')
            output.write(f'{pfx4}"id": {json.dumps(current)},\n')
            output.write(f'{pfx4}"Points": [')
            first_point = True
        output.write(("" if first_point else ",") + f"\n{pfx4}{JSON_INDENT}{json.dumps(record)}")
        first_point = False
    if current is not None:
        output.write(f"\n{pfx4}]\n{pfx3}}}")
    output.write(f"\n{pfx2}]\n")
    output.write(f"{pfx1}}}\n")
    output.write("}\n")
