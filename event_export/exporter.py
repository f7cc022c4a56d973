"""
Export dispatcher for fleet events.

Maps format tokens to writers and drives the selected writer over the
devices of one account. Writer options that used to be process-wide
defaults (map-data envelope, separators, optional field provider) are
carried by ExportSettings.
"""

import logging
import sys
from datetime import tzinfo
from functools import partial
from typing import Callable, Dict, Iterable, Optional, TextIO

from pydantic import BaseModel, ConfigDict, Field

from constants import CSV_SEPARATOR, MAP_FEED_SEPARATOR, MAX_PUSHPIN_LIMIT
from event_export.bml_writer import write_bml
from event_export.csv_writer import write_csv
from event_export.data_models import (
    Account,
    DeviceEvents,
    EventSchema,
    ExportFormat,
    FieldProfile,
    MapDataFormat,
)
from event_export.errors import OutputError
from event_export.gpx_writer import write_gpx
from event_export.json_writer import write_json
from event_export.map_feed import IconSelector, write_map_data
from event_export.xml_writer import write_xml
from optional_fields import OptionalFieldProvider

logger = logging.getLogger(__name__)

# Case-insensitive format tokens accepted from clients
FORMAT_TOKENS: Dict[str, ExportFormat] = {
    "csv": ExportFormat.CSV,
    "txt": ExportFormat.TXT,
    "xml": ExportFormat.XML,
    "xml_legacy": ExportFormat.XML_LEGACY,
    "json": ExportFormat.JSON,
    "jsonx": ExportFormat.JSON,
    "gpx": ExportFormat.GPX,
    "kml": ExportFormat.GPX,
    "bml": ExportFormat.BML,
}

STDOUT_NAMES = ("", "stdout", "-")
STDERR_NAMES = ("stderr",)

# writer(output, account, devices, profile, display_tz) -> bool
Encoder = Callable[[TextIO, Optional[Account], Iterable[DeviceEvents], FieldProfile, Optional[tzinfo]], bool]


def parse_output_format(token: Optional[str], default: ExportFormat = ExportFormat.CSV) -> ExportFormat:
    """
    Resolve a client format token.

    Args:
        token: Token such as 'csv', 'XML', 'jsonx' (case-insensitive)
        default: Format returned for blank or unrecognized tokens

    Returns:
        The matching ExportFormat, or ``default``
    """
    if not token:
        return default
    fmt = FORMAT_TOKENS.get(token.strip().lower())
    if fmt is None:
        logger.debug(f"Unrecognized format token '{token}', using {default.value}")
        return default
    return fmt


def open_output(name: Optional[str]) -> TextIO:
    """
    Open an output sink by name: stdout, stderr, or a file path.

    Raises:
        OutputError: If the file cannot be opened for writing
    """
    target = (name or "").strip()
    if target.lower() in STDOUT_NAMES:
        return sys.stdout
    if target.lower() in STDERR_NAMES:
        return sys.stderr
    try:
        return open(target, "w", encoding="utf-8", newline="")
    except OSError as e:
        raise OutputError(target, e) from e


def close_output(stream: Optional[TextIO]) -> None:
    """Flush a sink and close it unless it is stdout/stderr."""
    if stream is None:
        return
    try:
        stream.flush()
    finally:
        if stream not in (sys.stdout, sys.stderr):
            stream.close()


class ExportSettings(BaseModel):
    """Exporter configuration, fixed for the lifetime of an EventExporter."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    default_format: ExportFormat = Field(
        default=ExportFormat.CSV, description="Format used when a token is not recognized"
    )
    map_data_format: MapDataFormat = Field(
        default=MapDataFormat.XML, description="Envelope for map-feed documents"
    )
    csv_separator: str = CSV_SEPARATOR
    map_separator: str = MAP_FEED_SEPARATOR
    include_csv_header: bool = True
    optional_fields: Optional[OptionalFieldProvider] = Field(
        default=None, description="Provider of extra map-feed columns"
    )
    is_fleet: bool = Field(default=False, description="Map shows a device group, not one device")
    map_point_limit: Optional[int] = MAX_PUSHPIN_LIMIT
    event_schema: EventSchema = Field(default_factory=EventSchema)


class EventExporter:
    """
    Selects a writer for a format and runs it over one account's devices.

    Usage:
        exporter = EventExporter(ExportSettings(default_format=ExportFormat.XML))
        fmt = parse_output_format('json', exporter.settings.default_format)
        exporter.write_events(sys.stdout, account, devices, fmt)
    """

    def __init__(self, settings: Optional[ExportSettings] = None,
                 encoders: Optional[Dict[ExportFormat, Encoder]] = None):
        """
        Args:
            settings: Exporter configuration (defaults used when None)
            encoders: Writer table; defaults to every built-in writer
        """
        self.settings = settings or ExportSettings()
        self.encoders = encoders if encoders is not None else self._default_encoders()

    def _default_encoders(self) -> Dict[ExportFormat, Encoder]:
        s = self.settings
        schema = s.event_schema
        csv = partial(write_csv, separator=s.csv_separator,
                      include_header=s.include_csv_header, schema=schema)
        return {
            ExportFormat.CSV: csv,
            ExportFormat.TXT: csv,
            ExportFormat.XML: partial(write_xml, legacy=False, schema=schema),
            ExportFormat.XML_LEGACY: partial(write_xml, legacy=True, schema=schema),
            ExportFormat.JSON: partial(write_json, schema=schema),
            ExportFormat.GPX: partial(write_gpx, schema=schema),
            ExportFormat.BML: partial(write_bml, schema=schema),
        }

    def write_events(
        self,
        output: TextIO,
        account: Optional[Account],
        devices: Iterable[DeviceEvents],
        fmt: ExportFormat,
        profile: FieldProfile = FieldProfile.POPULATED,
        display_tz: Optional[tzinfo] = None,
    ) -> bool:
        """
        Write events in the requested format.

        Returns:
            True if a writer ran and produced a document, False if the
            format has no writer or the account is missing
        """
        encoder = self.encoders.get(fmt)
        if encoder is None:
            logger.error(f"Unrecognized data format: {fmt.value}")
            return False
        if account is None:
            logger.error("No account given for export")
            return False
        logger.debug(f"Exporting account {account.account_id} as {fmt.value}")
        return encoder(output, account, devices, profile, display_tz)

    def write_map_events(
        self,
        output: TextIO,
        account: Optional[Account],
        devices: Iterable[DeviceEvents],
        profile: FieldProfile = FieldProfile.POPULATED,
        display_tz: Optional[tzinfo] = None,
        icon_selector: Optional[IconSelector] = None,
    ) -> bool:
        """Write a map-feed document using the configured envelope and provider."""
        s = self.settings
        return write_map_data(
            output,
            account,
            devices,
            map_data_format=s.map_data_format,
            profile=profile,
            display_tz=display_tz,
            separator=s.map_separator,
            provider=s.optional_fields,
            is_fleet=s.is_fleet,
            icon_selector=icon_selector,
            limit=s.map_point_limit,
            schema=s.event_schema,
        )
