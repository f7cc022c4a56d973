"""
Unit and field policy resolver shared by every export format.

Each exportable event field is described once in FIELD_TABLE: when it is
present, which physical quantity it carries, and how many decimals it is
shown with. Encoders ask a FieldPolicy whether to emit a field and receive
a display-ready FieldValue (converted to the account's units, with label).
"""

import math
from dataclasses import dataclass
from datetime import datetime, tzinfo
from enum import Enum
from typing import Callable, Dict, Optional, Union

from constants import (
    ALTITUDE_DECIMALS,
    BATTERY_VOLTS_DECIMALS,
    COMPASS_POINTS,
    COOLANT_LEVEL_DECIMALS,
    COORDINATE_DECIMALS,
    ENGINE_HOURS_DECIMALS,
    ENGINE_HOURS_JSON_DECIMALS,
    FUEL_DECIMALS,
    HEADING_DECIMALS,
    ODOMETER_DECIMALS,
    ODOMETER_JSON_DECIMALS,
    SPEED_DECIMALS,
    TEMPERATURE_DECIMALS,
    describe_status,
    status_hex,
)
from event_export.data_models import (
    Account,
    Device,
    EventRecord,
    EventSchema,
    FieldProfile,
)


class FieldId(str, Enum):
    """Identifiers of the exportable event fields."""
    DEVICE_ID = "device_id"
    TIMESTAMP = "timestamp"
    STATUS_CODE = "status_code"
    GPS_POINT = "gps_point"
    LATITUDE = "latitude"
    LONGITUDE = "longitude"
    GPS_AGE = "gps_age"
    ACCURACY = "accuracy"
    SATELLITE_COUNT = "satellite_count"
    SPEED = "speed_kph"
    SPEED_LIMIT = "speed_limit_kph"
    HEADING = "heading"
    ALTITUDE = "altitude"
    ODOMETER = "odometer_km"
    INPUT_MASK = "input_mask"
    GEOZONE = "geozone_id"
    ADDRESS = "address"
    CITY = "city"
    POSTAL_CODE = "postal_code"
    DRIVER_ID = "driver_id"
    DRIVER_MESSAGE = "driver_message"
    ENGINE_RPM = "engine_rpm"
    ENGINE_HOURS = "engine_hours"
    BATTERY_VOLTS = "battery_volts"
    COOLANT_LEVEL = "coolant_level"
    COOLANT_TEMP = "coolant_temp"
    FUEL_USED = "fuel_total"


class Quantity(str, Enum):
    """Physical quantity a field carries, selecting its unit conversion."""
    NONE = "none"
    SPEED = "speed"
    DISTANCE = "distance"
    ALTITUDE = "altitude"
    VOLUME = "volume"
    TEMPERATURE = "temperature"
    PERCENT = "percent"


Predicate = Callable[[EventRecord, Optional[Device]], bool]


def odometer_total_km(event: EventRecord, device: Optional[Device]) -> float:
    """Device-relative odometer combined with the device's offset."""
    offset = device.odometer_offset_km if device is not None else 0.0
    return event.odometer_km + offset


@dataclass(frozen=True)
class FieldSpec:
    """Static description of one exportable field."""
    field_id: FieldId
    label: str                            # tabular header
    tag: str                              # XML tag / JSON key
    present: Optional[Predicate] = None   # None: always present
    strict: bool = False                  # predicate applies even for the ALL profile
    gated: bool = False                   # ALL profile + schema column only
    quantity: Quantity = Quantity.NONE
    decimals: Optional[int] = None        # None: not a fixed-point number
    json_decimals: Optional[int] = None
    free_text: bool = False


FIELD_TABLE: Dict[FieldId, FieldSpec] = {spec.field_id: spec for spec in (
    FieldSpec(FieldId.DEVICE_ID, "DeviceID", "Device", free_text=True),
    FieldSpec(FieldId.TIMESTAMP, "Date", "Timestamp",
              present=lambda ev, dev: ev.timestamp > 0),
    FieldSpec(FieldId.STATUS_CODE, "Code", "StatusCode", free_text=True),
    FieldSpec(FieldId.GPS_POINT, "GPSPoint", "GPSPoint",
              present=lambda ev, dev: ev.has_valid_gps),
    FieldSpec(FieldId.LATITUDE, "Latitude", "Latitude",
              present=lambda ev, dev: ev.has_valid_gps, decimals=COORDINATE_DECIMALS),
    FieldSpec(FieldId.LONGITUDE, "Longitude", "Longitude",
              present=lambda ev, dev: ev.has_valid_gps, decimals=COORDINATE_DECIMALS),
    FieldSpec(FieldId.GPS_AGE, "GPSAge", "GPSAge",
              present=lambda ev, dev: ev.gps_age > 0),
    FieldSpec(FieldId.ACCURACY, "Accuracy", "Accuracy",
              present=lambda ev, dev: ev.accuracy > 0.0, strict=True, decimals=0),
    FieldSpec(FieldId.SATELLITE_COUNT, "Satellites", "SatelliteCount"),
    FieldSpec(FieldId.SPEED, "Speed", "Speed",
              present=lambda ev, dev: ev.speed_kph >= 0.0,
              quantity=Quantity.SPEED, decimals=SPEED_DECIMALS),
    FieldSpec(FieldId.SPEED_LIMIT, "SpeedLimit", "Speed_limit",
              present=lambda ev, dev: ev.speed_limit_kph > 0.0, strict=True,
              quantity=Quantity.SPEED, decimals=SPEED_DECIMALS),
    FieldSpec(FieldId.HEADING, "Heading", "Heading",
              present=lambda ev, dev: ev.speed_kph > 0.0, decimals=HEADING_DECIMALS),
    FieldSpec(FieldId.ALTITUDE, "Altitude", "Altitude",
              present=lambda ev, dev: ev.altitude > 0.0,
              quantity=Quantity.ALTITUDE, decimals=ALTITUDE_DECIMALS),
    FieldSpec(FieldId.ODOMETER, "Odometer", "Odometer",
              present=lambda ev, dev: odometer_total_km(ev, dev) > 0.0,
              quantity=Quantity.DISTANCE, decimals=ODOMETER_DECIMALS,
              json_decimals=ODOMETER_JSON_DECIMALS),
    FieldSpec(FieldId.INPUT_MASK, "InputMask", "DigitalInputMask",
              present=lambda ev, dev: ev.input_mask != 0),
    FieldSpec(FieldId.GEOZONE, "Geozone", "Geozone",
              present=lambda ev, dev: ev.geozone_id != "" or ev.geozone_index > 0,
              free_text=True),
    FieldSpec(FieldId.ADDRESS, "Address", "Address",
              present=lambda ev, dev: ev.address != "", free_text=True),
    FieldSpec(FieldId.CITY, "City", "City",
              present=lambda ev, dev: ev.city != "", free_text=True),
    FieldSpec(FieldId.POSTAL_CODE, "PostalCode", "PostalCode",
              present=lambda ev, dev: ev.postal_code != "", free_text=True),
    FieldSpec(FieldId.DRIVER_ID, "DriverID", "DriverID", gated=True, free_text=True),
    FieldSpec(FieldId.DRIVER_MESSAGE, "DriverMessage", "DriverMessage", gated=True, free_text=True),
    FieldSpec(FieldId.ENGINE_RPM, "EngineRPM", "EngineRPM", gated=True),
    FieldSpec(FieldId.ENGINE_HOURS, "EngineHours", "EngineHours", gated=True,
              decimals=ENGINE_HOURS_DECIMALS, json_decimals=ENGINE_HOURS_JSON_DECIMALS),
    FieldSpec(FieldId.BATTERY_VOLTS, "BatteryVolts", "VehicleBatteryVolts", gated=True,
              decimals=BATTERY_VOLTS_DECIMALS),
    FieldSpec(FieldId.COOLANT_LEVEL, "CoolantLevel", "EngineCoolantLevel", gated=True,
              quantity=Quantity.PERCENT, decimals=COOLANT_LEVEL_DECIMALS),
    FieldSpec(FieldId.COOLANT_TEMP, "CoolantTemp", "EngineCoolantTemperature", gated=True,
              quantity=Quantity.TEMPERATURE, decimals=TEMPERATURE_DECIMALS),
    FieldSpec(FieldId.FUEL_USED, "FuelUsed", "EngineFuelUsed", gated=True,
              quantity=Quantity.VOLUME, decimals=FUEL_DECIMALS),
)}


@dataclass(frozen=True)
class FieldValue:
    """A display-ready field value."""
    field_id: FieldId
    value: Union[int, float, str]   # converted numeric value, or raw text
    text: str                       # formatted per the field's decimal policy
    units: Optional[str] = None

    @property
    def is_numeric(self) -> bool:
        return isinstance(self.value, (int, float)) and not isinstance(self.value, bool)


def format_decimal(value: float, decimals: int) -> str:
    """Fixed-point formatting with a constant number of decimals."""
    return f"{value:.{decimals}f}"


def format_coordinate(value: float) -> str:
    """Up to five decimals with trailing zeros trimmed (10.0, 37.7749)."""
    text = f"{value:.{COORDINATE_DECIMALS}f}".rstrip("0")
    if text.endswith("."):
        text += "0"
    if text == "-0.0":
        text = "0.0"
    return text


def heading_compass(heading: float) -> str:
    """Compass point for a heading, rounded to the nearest 45 degrees."""
    return COMPASS_POINTS[int(math.floor(heading / 45.0 + 0.5)) % 8]


class FieldPolicy:
    """
    Decides per event which fields are emitted and in which display form.

    Pure: the result depends only on the account, profile, schema and the
    event/device passed in.
    """

    def __init__(
        self,
        account: Account,
        profile: FieldProfile = FieldProfile.POPULATED,
        schema: Optional[EventSchema] = None,
        status_describer: Callable[[int], str] = describe_status,
    ):
        self.account = account
        self.profile = profile
        self.schema = schema or EventSchema()
        self._describe_status = status_describer

    @property
    def include_all(self) -> bool:
        return self.profile.include_all

    # ------------------------------------------------------------------
    # Inclusion
    # ------------------------------------------------------------------

    def has_column(self, field_id: FieldId) -> bool:
        """Whether the store carries this field (always true for core fields)."""
        spec = FIELD_TABLE[field_id]
        return not spec.gated or self.schema.has_column(field_id.value)

    def includes(self, field_id: FieldId, event: EventRecord, device: Optional[Device] = None) -> bool:
        """Decide whether ``field_id`` is emitted for ``event``."""
        spec = FIELD_TABLE[field_id]
        if spec.gated:
            return self.include_all and self.has_column(field_id)
        if spec.present is None:
            return True
        if self.include_all and not spec.strict:
            return True
        return spec.present(event, device)

    # ------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------

    def units(self, field_id: FieldId) -> Optional[str]:
        """Display unit label for the field's quantity, if it has one."""
        quantity = FIELD_TABLE[field_id].quantity
        account = self.account
        if quantity is Quantity.SPEED:
            return account.speed_units.value
        if quantity is Quantity.DISTANCE:
            return account.distance_units.value
        if quantity is Quantity.ALTITUDE:
            return account.distance_units.altitude_label
        if quantity is Quantity.VOLUME:
            return account.volume_units.value
        if quantity is Quantity.TEMPERATURE:
            return account.temperature_units.value
        if quantity is Quantity.PERCENT:
            return "percent"
        return None

    def convert(self, quantity: Quantity, value: float) -> float:
        """Convert a canonically stored value into the account's units."""
        account = self.account
        if quantity is Quantity.SPEED:
            return account.speed_units.convert_from_kph(value)
        if quantity is Quantity.DISTANCE:
            return account.distance_units.convert_from_km(value)
        if quantity is Quantity.ALTITUDE:
            return account.distance_units.convert_altitude(value)
        if quantity is Quantity.VOLUME:
            return account.volume_units.convert_from_liters(value)
        if quantity is Quantity.TEMPERATURE:
            return account.temperature_units.convert_from_c(value)
        if quantity is Quantity.PERCENT:
            return value * 100.0
        return value

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    def describe_status(self, code: int) -> str:
        return self._describe_status(code)

    def value(
        self,
        field_id: FieldId,
        event: EventRecord,
        device: Optional[Device] = None,
        wide: bool = False,
    ) -> FieldValue:
        """
        Display value for a field regardless of the inclusion decision.

        Args:
            field_id: Field to render
            event: Source event
            device: Owning device (needed for the odometer offset)
            wide: Use the field's extended decimal policy (JSON output)
        """
        spec = FIELD_TABLE[field_id]
        units = self.units(field_id)

        if field_id is FieldId.DEVICE_ID:
            return FieldValue(field_id, event.device_id, event.device_id)
        if field_id is FieldId.TIMESTAMP:
            return FieldValue(field_id, event.timestamp, str(event.timestamp))
        if field_id is FieldId.STATUS_CODE:
            return FieldValue(field_id, event.status_code, self.describe_status(event.status_code))
        if field_id is FieldId.GPS_POINT:
            text = f"{format_coordinate(event.latitude)},{format_coordinate(event.longitude)}"
            return FieldValue(field_id, text, text)
        if field_id in (FieldId.LATITUDE, FieldId.LONGITUDE):
            raw = event.latitude if field_id is FieldId.LATITUDE else event.longitude
            return FieldValue(field_id, raw, format_coordinate(raw))
        if field_id is FieldId.INPUT_MASK:
            return FieldValue(field_id, event.input_mask, f"0x{event.input_mask:X}")
        if field_id is FieldId.ACCURACY:
            accuracy = int(round(event.accuracy))
            return FieldValue(field_id, accuracy, str(accuracy))

        if field_id is FieldId.ODOMETER:
            raw = odometer_total_km(event, device)
        else:
            raw = getattr(event, field_id.value)

        if spec.free_text:
            text = "" if raw is None else str(raw)
            return FieldValue(field_id, text, text, units)
        if spec.decimals is None:
            return FieldValue(field_id, raw, str(raw), units)

        converted = self.convert(spec.quantity, float(raw))
        decimals = spec.json_decimals if (wide and spec.json_decimals is not None) else spec.decimals
        if decimals == 0:
            rounded = int(round(converted))
            return FieldValue(field_id, rounded, str(rounded), units)
        return FieldValue(field_id, converted, format_decimal(converted, decimals), units)

    def resolve(
        self,
        field_id: FieldId,
        event: EventRecord,
        device: Optional[Device] = None,
        wide: bool = False,
    ) -> Optional[FieldValue]:
        """Display value if the field is emitted for this event, else None."""
        if not self.includes(field_id, event, device):
            return None
        return self.value(field_id, event, device, wide=wide)

    # ------------------------------------------------------------------
    # Time
    # ------------------------------------------------------------------

    def local_time(self, event: EventRecord, display_tz: Optional[tzinfo] = None) -> datetime:
        """Event time in the display timezone (account timezone by default)."""
        tz = display_tz if display_tz is not None else self.account.get_timezone()
        return event.event_time.astimezone(tz)

    def format_date(self, event: EventRecord, display_tz: Optional[tzinfo] = None) -> str:
        return self.local_time(event, display_tz).strftime(self.account.date_format)

    def format_time(self, event: EventRecord, display_tz: Optional[tzinfo] = None) -> str:
        return self.local_time(event, display_tz).strftime(self.account.time_format)

    def timezone_abbrev(self, event: EventRecord, display_tz: Optional[tzinfo] = None) -> str:
        return self.local_time(event, display_tz).strftime("%Z")

    @staticmethod
    def status_hex(code: int) -> str:
        return status_hex(code)
