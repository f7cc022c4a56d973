"""
Constants for the fleet event export toolkit.

Centralized definitions for unit conversion factors, separators, numeric
display policy, and status code descriptions.
"""

from typing import Dict


# =============================================================================
# Conversion Constants
# =============================================================================

MILES_PER_KILOMETER = 0.621371192
NAUTICAL_MILES_PER_KILOMETER = 0.539956803
FEET_PER_METER = 3.280839895
US_GALLONS_PER_LITER = 0.264172052
UK_GALLONS_PER_LITER = 0.219969157
KPH_TO_MPS = 1.0 / 3.6


# =============================================================================
# Separators
# =============================================================================

CSV_SEPARATOR = ","          # Tabular CSV column separator
MAP_FEED_SEPARATOR = "|"     # Map-feed positional separator
JSON_INDENT = "   "          # Incremental JSON writer indent unit
XML_INDENT = "  "            # Incremental XML writer indent unit


# =============================================================================
# Numeric Display Policy (decimal places per field)
# =============================================================================

COORDINATE_DECIMALS = 5      # Trailing zeros trimmed, at least one decimal kept
SPEED_DECIMALS = 1
HEADING_DECIMALS = 1
ALTITUDE_DECIMALS = 0
ODOMETER_DECIMALS = 1
ODOMETER_JSON_DECIMALS = 3
ENGINE_HOURS_DECIMALS = 1
ENGINE_HOURS_JSON_DECIMALS = 2
BATTERY_VOLTS_DECIMALS = 1
COOLANT_LEVEL_DECIMALS = 1
TEMPERATURE_DECIMALS = 1
FUEL_DECIMALS = 1


# =============================================================================
# Export Limits
# =============================================================================

DEFAULT_EVENT_LIMIT = 30     # CLI limit when -events gives no explicit limit
MAX_PUSHPIN_LIMIT = 1000     # Upper bound on events sent to a map client


# =============================================================================
# Compass
# =============================================================================

COMPASS_POINTS = ("N", "NE", "E", "SE", "S", "SW", "W", "NW")


# =============================================================================
# Status Codes
# =============================================================================

STATUS_NONE = 0x0000
STATUS_LOCATION = 0xF020
STATUS_WAYMARK = 0xF030
STATUS_MOTION_START = 0xF111
STATUS_MOTION_IN_MOTION = 0xF112
STATUS_MOTION_STOP = 0xF113
STATUS_MOTION_DORMANT = 0xF114
STATUS_MOTION_EXCESS_SPEED = 0xF11A
STATUS_GEOFENCE_ARRIVE = 0xF210
STATUS_GEOFENCE_DEPART = 0xF230
STATUS_IGNITION_ON = 0xF401
STATUS_IGNITION_OFF = 0xF403

STATUS_DESCRIPTIONS: Dict[int, str] = {
    STATUS_NONE: "None",
    STATUS_LOCATION: "Location",
    STATUS_WAYMARK: "Waymark",
    STATUS_MOTION_START: "Start",
    STATUS_MOTION_IN_MOTION: "InMotion",
    STATUS_MOTION_STOP: "Stop",
    STATUS_MOTION_DORMANT: "Dormant",
    STATUS_MOTION_EXCESS_SPEED: "Speeding",
    STATUS_GEOFENCE_ARRIVE: "Arrive",
    STATUS_GEOFENCE_DEPART: "Depart",
    STATUS_IGNITION_ON: "IgnitionOn",
    STATUS_IGNITION_OFF: "IgnitionOff",
}


def status_hex(code: int) -> str:
    """Format a status code as a 16-bit hex literal (e.g. 0xF020)."""
    return f"0x{code & 0xFFFF:04X}"


def describe_status(code: int) -> str:
    """Return the display description for a status code, or its hex form."""
    return STATUS_DESCRIPTIONS.get(code, status_hex(code))


# =============================================================================
# CLI Exit Codes
# =============================================================================

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_DATA_ACCESS = 99
