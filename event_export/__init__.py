"""
Fleet event export and enrichment.

Writes device telemetry events as CSV, map-feed records, XML, JSON, GPX
and BML point lists, and back-fills geozone/address fields on stored
events.
"""

from event_export.data_models import (
    Account,
    Device,
    DeviceEvents,
    EventRecord,
    EventSchema,
    ExportFormat,
    FieldProfile,
    GeoPoint,
    MapDataFormat,
    bind_events,
)
from event_export.enrichment import EnrichmentPipeline, EnrichmentStats
from event_export.errors import (
    ConfigurationError,
    DataAccessError,
    EventExportError,
    OutputError,
    SlowOperationError,
)
from event_export.exporter import EventExporter, ExportSettings, parse_output_format

__all__ = [
    "Account",
    "Device",
    "DeviceEvents",
    "EventRecord",
    "EventSchema",
    "ExportFormat",
    "FieldProfile",
    "GeoPoint",
    "MapDataFormat",
    "bind_events",
    "EnrichmentPipeline",
    "EnrichmentStats",
    "ConfigurationError",
    "DataAccessError",
    "EventExportError",
    "OutputError",
    "SlowOperationError",
    "EventExporter",
    "ExportSettings",
    "parse_output_format",
]
