"""
Data models for fleet event export.

Pydantic models for tenants (accounts), tracked devices and the telemetry
events they report, plus the unit enums used to present stored values in
each account's preferred units.
"""

from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field

from constants import (
    FEET_PER_METER,
    MILES_PER_KILOMETER,
    NAUTICAL_MILES_PER_KILOMETER,
    UK_GALLONS_PER_LITER,
    US_GALLONS_PER_LITER,
)


# =============================================================================
# Units
# =============================================================================

class SpeedUnits(str, Enum):
    """Speed display units. Stored speeds are always km/h."""
    MPH = "mph"
    KPH = "kph"
    KNOTS = "knots"

    def convert_from_kph(self, kph: float) -> float:
        if self is SpeedUnits.MPH:
            return kph * MILES_PER_KILOMETER
        if self is SpeedUnits.KNOTS:
            return kph * NAUTICAL_MILES_PER_KILOMETER
        return kph


class DistanceUnits(str, Enum):
    """Distance display units. Stored distances are always kilometers."""
    MILES = "miles"
    KM = "km"
    NM = "nm"

    def convert_from_km(self, km: float) -> float:
        if self is DistanceUnits.MILES:
            return km * MILES_PER_KILOMETER
        if self is DistanceUnits.NM:
            return km * NAUTICAL_MILES_PER_KILOMETER
        return km

    @property
    def altitude_label(self) -> str:
        return "feet" if self is DistanceUnits.MILES else "meters"

    def convert_altitude(self, meters: float) -> float:
        """Altitude follows the distance system: feet for miles, else meters."""
        if self is DistanceUnits.MILES:
            return meters * FEET_PER_METER
        return meters


class VolumeUnits(str, Enum):
    """Volume display units. Stored volumes are always liters."""
    LITERS = "liters"
    US_GALLONS = "gal"
    UK_GALLONS = "igal"

    def convert_from_liters(self, liters: float) -> float:
        if self is VolumeUnits.US_GALLONS:
            return liters * US_GALLONS_PER_LITER
        if self is VolumeUnits.UK_GALLONS:
            return liters * UK_GALLONS_PER_LITER
        return liters


class TemperatureUnits(str, Enum):
    """Temperature display units. Stored temperatures are always Celsius."""
    C = "C"
    F = "F"

    def convert_from_c(self, celsius: float) -> float:
        if self is TemperatureUnits.F:
            return celsius * 9.0 / 5.0 + 32.0
        return celsius


class GeocoderMode(str, Enum):
    """How much reverse-geocoding an account allows."""
    NONE = "none"
    GEOZONE = "geozone"   # geozone descriptions only
    PARTIAL = "partial"
    FULL = "full"

    @property
    def is_none(self) -> bool:
        return self is GeocoderMode.NONE

    @property
    def ok_partial(self) -> bool:
        """True when a reverse-geocode provider may be consulted."""
        return self in (GeocoderMode.PARTIAL, GeocoderMode.FULL)


# =============================================================================
# Export Selection
# =============================================================================

class ExportFormat(str, Enum):
    """Output dialects the dispatcher can select."""
    CSV = "csv"
    TXT = "txt"
    XML = "xml"
    XML_LEGACY = "xml_legacy"
    JSON = "json"
    GPX = "gpx"
    BML = "bml"


class FieldProfile(str, Enum):
    """
    Field-set profile shared by every encoder.

    POPULATED emits only fields whose presence predicate holds; ALL emits
    every field, including schema-gated engine/driver columns.
    """
    POPULATED = "populated"
    ALL = "all"

    @property
    def include_all(self) -> bool:
        return self is FieldProfile.ALL


class MapDataFormat(str, Enum):
    """Envelope used when map-feed records are sent to the display client."""
    XML = "xml"
    JSON = "json"


# Optional columns a store may or may not carry for events
OPTIONAL_COLUMNS = frozenset({
    "driver_id",
    "driver_message",
    "engine_rpm",
    "engine_hours",
    "battery_volts",
    "coolant_level",
    "coolant_temp",
    "fuel_total",
})


class EventSchema(BaseModel):
    """Columns declared present by the backing event store."""
    model_config = ConfigDict(frozen=True)

    optional_columns: FrozenSet[str] = Field(
        default=OPTIONAL_COLUMNS,
        description="Catalog columns beyond the core set that the store carries",
    )
    extra_columns: FrozenSet[str] = Field(
        default=frozenset(),
        description="Non-catalog columns that tabular output may pass through raw",
    )

    def has_column(self, name: str) -> bool:
        return name in self.optional_columns or name in self.extra_columns


# =============================================================================
# Geo Point
# =============================================================================

class GeoPoint(BaseModel):
    """Latitude/longitude pair; (0, 0) means "no fix", never the origin."""
    model_config = ConfigDict(frozen=True)

    latitude: float = 0.0
    longitude: float = 0.0

    @property
    def is_valid(self) -> bool:
        return self.latitude != 0.0 and self.longitude != 0.0


# =============================================================================
# Tenant / Device / Event
# =============================================================================

class Account(BaseModel):
    """Tenant context: owns devices and declares display preferences."""

    account_id: str
    description: str = ""
    timezone: str = Field(default="", description="IANA timezone name; blank means UTC")
    date_format: str = "%Y/%m/%d"
    time_format: str = "%H:%M:%S"
    speed_units: SpeedUnits = SpeedUnits.MPH
    distance_units: DistanceUnits = DistanceUnits.MILES
    volume_units: VolumeUnits = VolumeUnits.US_GALLONS
    temperature_units: TemperatureUnits = TemperatureUnits.F
    geocoder_mode: GeocoderMode = GeocoderMode.PARTIAL
    locale: str = "en"

    @property
    def timezone_name(self) -> str:
        return self.timezone.strip() or "UTC"

    def get_timezone(self) -> tzinfo:
        """Resolve the account timezone, falling back to UTC if unknown."""
        name = self.timezone_name
        if name.upper() in ("UTC", "GMT"):
            return timezone.utc
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            return timezone.utc


class Device(BaseModel):
    """Tracked asset belonging to exactly one account."""

    account_id: str
    device_id: str
    description: str = ""
    odometer_offset_km: float = 0.0


class EventRecord(BaseModel):
    """
    Single telemetry sample reported by a device.

    Stored units are canonical: km/h, km, meters, liters and Celsius.
    Records are immutable; enrichment produces updated copies.
    """
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    account_id: str
    device_id: str
    timestamp: int = Field(description="UTC epoch seconds")
    status_code: int = 0

    # GPS
    latitude: float = 0.0
    longitude: float = 0.0
    gps_age: int = Field(default=0, description="Age of the GPS fix in seconds")
    accuracy: float = Field(default=0.0, description="Horizontal accuracy in meters")
    satellite_count: int = Field(default=0, description="Negative means cell-tower location")

    # Motion
    speed_kph: float = Field(default=0.0, description="Negative means unknown")
    speed_limit_kph: float = 0.0
    heading: float = 0.0
    altitude: float = Field(default=0.0, description="Meters")
    odometer_km: float = Field(default=0.0, description="Device-relative odometer")
    input_mask: int = 0

    # Derived location
    geozone_id: str = ""
    geozone_index: int = 0
    address: str = ""
    city: str = ""
    postal_code: str = ""

    # Driver
    driver_id: str = ""
    driver_message: str = ""

    # Engine
    engine_rpm: int = 0
    engine_hours: float = 0.0
    battery_volts: float = 0.0
    coolant_level: float = Field(default=0.0, description="Fraction 0.0-1.0")
    coolant_temp: float = Field(default=0.0, description="Celsius")
    fuel_total: float = Field(default=0.0, description="Liters used")

    extra: Dict[str, str] = Field(default_factory=dict, description="Non-catalog stored columns")

    @property
    def geo_point(self) -> GeoPoint:
        return GeoPoint(latitude=self.latitude, longitude=self.longitude)

    @property
    def has_valid_gps(self) -> bool:
        return self.geo_point.is_valid

    @property
    def event_time(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)


@dataclass
class DeviceEvents:
    """A device bound to the ordered events selected for one export call."""
    device: Device
    events: Iterable[EventRecord]


def bind_events(device: Device, events: Optional[Iterable[EventRecord]]) -> DeviceEvents:
    """Bind an (possibly lazy) event sequence to a device for one export."""
    return DeviceEvents(device=device, events=events if events is not None else ())
