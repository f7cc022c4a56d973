#!/usr/bin/env python3
"""
Batch command line tool for fleet event export and enrichment.

    main.py -account=<id> -device=<id|*|ALL> -events=<count|from,to[,limit]>
            [-format=csv|txt|xml|json|gpx|bml] [-output=<file|stdout|stderr>]
            [-map=xml|json [-optional=none|driver|engine]]
    main.py -account=<id> -device=<id|*> -geozone=<from,to> [-update]
    main.py -account=<id> -device=<id|*> -geocode=<from,to> [-update]

Exit codes: 0 success; 1 usage error, unknown account or device, an account
with no devices, or an output that cannot be opened or written; 99 store
access failure, unusable enrichment range or unavailable geocoder.
"""

import argparse
import logging
import os
import sys
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from constants import DEFAULT_EVENT_LIMIT, EXIT_DATA_ACCESS, EXIT_OK, EXIT_USAGE
from event_export.data_models import Account, FieldProfile, MapDataFormat, bind_events
from event_export.date_range import DateRange, parse_date_range
from event_export.enrichment import EnrichmentPipeline, EnrichmentStats
from event_export.errors import ConfigurationError, DataAccessError, OutputError
from event_export.exporter import (
    EventExporter,
    ExportSettings,
    close_output,
    open_output,
    parse_output_format,
)
from event_export.store import (
    BoundingBoxGeozoneMatcher,
    GeozoneAddressProvider,
    InMemoryEventStore,
)
from optional_fields import default_registry
from rich_console import (
    create_scan_progress,
    print_completion_summary,
    print_config_summary,
    print_error,
    print_phase,
    setup_rich_logging,
)

logger = logging.getLogger(__name__)

STORE_PATH_ENV = "EVENT_STORE_PATH"
ALL_DEVICES = ("*", "ALL")


class Command(str, Enum):
    EVENTS = "events"
    GEOZONE = "geozone"
    GEOCODE = "geocode"


class ToolConfig(BaseModel):
    """Validated command line configuration."""
    account_id: str = Field(min_length=1)
    device: str = Field(min_length=1, description="Device id, or * / ALL for every device")
    command: Command
    range_arg: str = Field(default="", description="Argument of the selected command")
    output: str = "stdout"
    export_format: str = "csv"
    profile: FieldProfile = FieldProfile.POPULATED
    map_format: Optional[MapDataFormat] = Field(
        default=None, description="Write a map-feed document with this envelope instead of -format"
    )
    optional_fields: str = "none"
    update: bool = False
    force: bool = False
    store_path: str = Field(min_length=1)
    verbose: bool = False

    @property
    def all_devices(self) -> bool:
        return self.device.upper() in ALL_DEVICES


class ToolArgumentParser(argparse.ArgumentParser):
    """Argument parser that exits with the tool's usage code."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        print_error(message)
        raise SystemExit(EXIT_USAGE)


def build_parser() -> argparse.ArgumentParser:
    parser = ToolArgumentParser(
        description="Export fleet events or back-fill geozone/address fields.",
        allow_abbrev=False,
    )
    parser.add_argument("-account", "-acct", "--account", dest="account", help="Account id")
    parser.add_argument("-device", "-dev", "--device", dest="device",
                        help="Device id, or * / ALL for every device in the account")
    parser.add_argument("-events", "--events", dest="events",
                        help="Event count, or <from>,<to>[,<limit>] date range")
    parser.add_argument("-output", "-out", "--output", dest="output", default="stdout",
                        help="Output file, 'stdout' or 'stderr'")
    parser.add_argument("-format", "-fmt", "--format", dest="format", default="csv",
                        help="Output format: csv, txt, xml, json, gpx, kml, bml")
    parser.add_argument("-all", "--all", dest="include_all", action="store_true",
                        help="Emit every field, not just populated ones")
    parser.add_argument("-map", "--map", dest="map_format", choices=[f.value for f in MapDataFormat],
                        help="Write a map-feed document (xml or json envelope) instead of -format")
    parser.add_argument("-optional", "--optional", dest="optional_fields", default="none",
                        choices=default_registry().names(),
                        help="Extra map-feed columns (default: none)")
    parser.add_argument("-geozone", "--geozone", dest="geozone",
                        help="Match geozones for events in <from>,<to>")
    parser.add_argument("-geocode", "-rg", "--geocode", dest="geocode",
                        help="Reverse-geocode events in <from>,<to>")
    parser.add_argument("-update", "-upd", "--update", dest="update", action="store_true",
                        help="Persist enrichment changes (default: report only)")
    parser.add_argument("-force", "--force", dest="force", action="store_true",
                        help="Re-geocode events that already have an address")
    parser.add_argument("-store", "--store", dest="store", default=os.environ.get(STORE_PATH_ENV),
                        help=f"JSON event store file (default: ${STORE_PATH_ENV})")
    parser.add_argument("-verbose", "-v", "--verbose", dest="verbose", action="store_true",
                        help="Enable debug logging")
    return parser


def parse_args(argv: Optional[List[str]] = None) -> ToolConfig:
    """
    Parse and validate command line arguments.

    Raises:
        SystemExit: With EXIT_USAGE on missing or invalid arguments
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.events is not None:
        command, range_arg = Command.EVENTS, args.events
    elif args.geozone is not None:
        command, range_arg = Command.GEOZONE, args.geozone
    elif args.geocode is not None:
        command, range_arg = Command.GEOCODE, args.geocode
    else:
        parser.error("one of -events, -geozone or -geocode is required")

    try:
        return ToolConfig(
            account_id=args.account or "",
            device=args.device or "",
            command=command,
            range_arg=range_arg,
            output=args.output,
            export_format=args.format,
            profile=FieldProfile.ALL if args.include_all else FieldProfile.POPULATED,
            map_format=args.map_format,
            optional_fields=args.optional_fields,
            update=args.update,
            force=args.force,
            store_path=args.store or "",
            verbose=args.verbose,
        )
    except ValidationError as e:
        missing = ", ".join(str(err["loc"][0]) for err in e.errors())
        parser.error(f"missing or invalid arguments: {missing}")


def resolve_device_ids(store: InMemoryEventStore, config: ToolConfig) -> List[str]:
    """
    Raises:
        ConfigurationError: If a named device does not exist, or the account
            has no devices when all of them are requested
    """
    if config.all_devices:
        device_ids = store.get_device_ids(config.account_id)
        if not device_ids:
            raise ConfigurationError(f"Account has no devices: {config.account_id}")
        return device_ids
    if store.get_device(config.account_id, config.device) is None:
        raise ConfigurationError(f"Device not found: {config.account_id}/{config.device}")
    return [config.device]


def _range_label(date_range: Optional[DateRange], count: Optional[int]) -> str:
    if date_range is None:
        return f"latest {count}"
    start = date_range.start_time if date_range.start_time is not None else "open"
    end = date_range.end_time if date_range.end_time is not None else "open"
    limit = f" (limit {date_range.limit})" if date_range.limit else ""
    return f"{start} .. {end}{limit}"


# =============================================================================
# Commands
# =============================================================================

def run_events(store: InMemoryEventStore, account: Account, device_ids: List[str],
               config: ToolConfig) -> int:
    text = config.range_arg.strip()
    date_range: Optional[DateRange] = None
    count: Optional[int] = None
    if text.isdigit():
        count = int(text)
    else:
        date_range = parse_date_range(text, account.get_timezone(), DEFAULT_EVENT_LIMIT)
        if date_range is None:
            logger.warning(f"No usable date range in '{text}', exporting latest events")
            count = DEFAULT_EVENT_LIMIT

    devices = []
    for dev_id in device_ids:
        device = store.get_device(account.account_id, dev_id)
        if date_range is not None:
            events = store.iter_range(account.account_id, dev_id, date_range.start,
                                      date_range.end, limit=date_range.limit)
        else:
            events = store.latest_events(account.account_id, dev_id, count)
        devices.append(bind_events(device, events))

    map_options = {}
    if config.map_format is not None:
        map_options = {"map_data_format": config.map_format,
                       "optional_fields": default_registry().get(config.optional_fields)}
    exporter = EventExporter(ExportSettings(event_schema=store.schema,
                                            is_fleet=config.all_devices, **map_options))
    fmt = parse_output_format(config.export_format, exporter.settings.default_format)
    label = f"map {config.map_format.value}" if config.map_format is not None else fmt.value

    try:
        output = open_output(config.output)
    except OutputError as e:
        print_error(e.message)
        return EXIT_USAGE

    try:
        try:
            if config.map_format is not None:
                ok = exporter.write_map_events(output, account, devices, config.profile)
            else:
                ok = exporter.write_events(output, account, devices, fmt, config.profile)
        finally:
            close_output(output)
    except OSError as e:
        print_error(f"Error writing events to {config.output}: {e}")
        return EXIT_USAGE

    if not ok:
        print_error(f"Unable to export events as {label}")
        return EXIT_USAGE
    if config.output.lower() not in ("", "stdout", "-", "stderr"):
        print_completion_summary("Export Complete", [
            ("Account", account.account_id),
            ("Devices", len(device_ids)),
            ("Range", _range_label(date_range, count)),
            ("Format", label),
            ("Output", config.output),
        ])
    return EXIT_OK


def run_enrichment(store: InMemoryEventStore, account: Account, device_ids: List[str],
                   config: ToolConfig) -> int:
    date_range = parse_date_range(config.range_arg, account.get_timezone())
    if date_range is None:
        print_error(f"Invalid date range: {config.range_arg}",
                    hint="Use <from>,<to> with epoch seconds or YYYY/MM/DD dates")
        return EXIT_DATA_ACCESS

    print_config_summary(config.command.value, account.account_id, device_ids,
                         date_range=_range_label(date_range, None), update=config.update)

    matcher = BoundingBoxGeozoneMatcher(store.geozones)
    geocoder = GeozoneAddressProvider(account, matcher) if store.geozones else None

    print_phase(1, 2, f"Scanning {len(device_ids)} device(s)")
    with create_scan_progress() as progress:
        tasks = {}

        def on_event(device_id: str, scanned: int) -> None:
            if device_id not in tasks:
                tasks[device_id] = progress.add_task(f"Scanning {device_id}", total=None, status="")
            progress.update(tasks[device_id], completed=scanned, status=f"{scanned} events")

        pipeline = EnrichmentPipeline(store, account, update=config.update, matcher=matcher,
                                      geocoder=geocoder, progress_callback=on_event)
        try:
            if config.command is Command.GEOZONE:
                results = pipeline.run_geozone(device_ids, date_range.start, date_range.end)
            else:
                results = pipeline.run_geocode(device_ids, date_range.start, date_range.end,
                                               force=config.force)
        except ConfigurationError as e:
            print_error(e.message)
            return EXIT_DATA_ACCESS

    print_phase(2, 2, "Saving" if config.update else "Summary")
    updated = sum(s.updated for s in results)
    if config.update and updated:
        try:
            store.to_json_file(config.store_path)
        except DataAccessError as e:
            print_error(e.message)
            return EXIT_DATA_ACCESS

    _print_enrichment_summary(results)
    return EXIT_DATA_ACCESS if any(s.failed for s in results) else EXIT_OK


def _print_enrichment_summary(results: List[EnrichmentStats]) -> None:
    rows = [
        ("Devices", len(results)),
        ("Scanned", sum(s.scanned for s in results)),
        ("Matched", sum(s.matched for s in results)),
        ("Updated", sum(s.updated for s in results)),
        ("Unchanged", sum(s.unchanged for s in results)),
        ("Deferred", sum(s.deferred for s in results)),
    ]
    failed = [s.device_id for s in results if s.failed]
    if failed:
        rows.append(("Failed", ", ".join(failed)))
    print_completion_summary("Enrichment Complete", rows)


# =============================================================================
# Entry Point
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    try:
        config = parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else EXIT_USAGE

    setup_rich_logging(config.verbose)

    try:
        store = InMemoryEventStore.from_json_file(config.store_path)
    except DataAccessError as e:
        print_error(e.message, hint=f"Pass -store=<file> or set {STORE_PATH_ENV}")
        return EXIT_DATA_ACCESS

    account = store.get_account(config.account_id)
    if account is None:
        print_error(f"Account not found: {config.account_id}")
        return EXIT_USAGE

    try:
        device_ids = resolve_device_ids(store, config)
    except ConfigurationError as e:
        print_error(e.message)
        return EXIT_USAGE

    if config.command is Command.EVENTS:
        return run_events(store, account, device_ids, config)
    return run_enrichment(store, account, device_ids, config)


if __name__ == "__main__":
    sys.exit(main())
