"""
Enrichment pipeline: back-fill geozone and address fields on stored events.

For each device the pipeline walks the store's forward cursor over a date
range. Every event goes through

    SCANNING -> MATCHING -> DECIDING -> APPLYING (update mode) -> REPORTING

and the cursor callback always asks for the next record. In report mode
candidate changes are only logged; no update call reaches the store.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel

from event_export.data_models import Account, EventRecord
from event_export.errors import ConfigurationError, DataAccessError, SlowOperationError
from event_export.store import (
    EventStore,
    GeozoneMatcher,
    RecordAction,
    ReverseGeocodeProvider,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int], None]


class EnrichmentMode(str, Enum):
    GEOZONE = "geozone"
    GEOCODE = "geocode"


class PipelineState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    MATCHING = "matching"
    DECIDING = "deciding"
    APPLYING = "applying"
    REPORTING = "reporting"


class EnrichmentStats(BaseModel):
    """Per-device outcome of one enrichment pass."""
    device_id: str
    mode: EnrichmentMode
    scanned: int = 0
    matched: int = 0
    updated: int = 0
    unchanged: int = 0
    deferred: int = 0
    failed: bool = False
    error: Optional[str] = None


class EnrichmentPipeline:
    """
    Cursor-driven enrichment over one account's devices.

    Usage:
        pipeline = EnrichmentPipeline(store, account, update=True,
                                      matcher=BoundingBoxGeozoneMatcher(zones))
        stats = pipeline.run_geozone(['truck1', 'truck2'], start, end)
    """

    def __init__(
        self,
        store: EventStore,
        account: Account,
        update: bool = False,
        matcher: Optional[GeozoneMatcher] = None,
        geocoder: Optional[ReverseGeocodeProvider] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        """
        Args:
            store: Event store providing the cursor and the update call
            account: Account whose devices are processed
            update: Persist changes (True) or only report them (False)
            matcher: Geozone matcher, required for geozone mode
            geocoder: Reverse-geocode provider for geocode mode
            progress_callback: Optional callable(device_id, scanned) per event
        """
        self.store = store
        self.account = account
        self.update = update
        self.matcher = matcher
        self.geocoder = geocoder
        self.progress_callback = progress_callback
        self.state = PipelineState.IDLE

    def _transition(self, state: PipelineState) -> None:
        self.state = state

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    def check_geocode_preconditions(self) -> None:
        """
        Raises:
            ConfigurationError: If the account disallows geocoding, or allows
                it but no reverse-geocode provider is configured
        """
        mode = self.account.geocoder_mode
        if mode.is_none:
            raise ConfigurationError(
                f"Geocoding is disabled for account {self.account.account_id}",
                details={"geocoder_mode": mode.value},
            )
        if mode.ok_partial and self.geocoder is None:
            raise ConfigurationError(
                f"No reverse-geocode provider available for account {self.account.account_id}",
                details={"geocoder_mode": mode.value},
            )
        if self.geocoder is None:
            raise ConfigurationError(
                f"Geocoder mode '{mode.value}' has no provider to geocode with",
                details={"geocoder_mode": mode.value},
            )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def run_geozone(self, device_ids: Iterable[str], start: int = -1, end: int = -1) -> List[EnrichmentStats]:
        """Match each event's point to a geozone and set geozone id + address."""
        if self.matcher is None:
            raise ConfigurationError("Geozone enrichment requires a geozone matcher")
        return [self._run_device(dev_id, start, end, EnrichmentMode.GEOZONE, False)
                for dev_id in device_ids]

    def run_geocode(self, device_ids: Iterable[str], start: int = -1, end: int = -1,
                    force: bool = False) -> List[EnrichmentStats]:
        """Reverse-geocode each event's point and set the changed address fields."""
        self.check_geocode_preconditions()
        return [self._run_device(dev_id, start, end, EnrichmentMode.GEOCODE, force)
                for dev_id in device_ids]

    def _run_device(self, device_id: str, start: int, end: int,
                    mode: EnrichmentMode, force: bool) -> EnrichmentStats:
        stats = EnrichmentStats(device_id=device_id, mode=mode)
        acct_id = self.account.account_id

        if self.store.get_device(acct_id, device_id) is None:
            logger.error(f"Device not found: {acct_id}/{device_id}")
            stats.failed = True
            stats.error = "Device not found"
            return stats

        if mode is EnrichmentMode.GEOZONE:
            step = lambda ev: self._geozone_step(ev, stats)  # noqa: E731
        else:
            step = lambda ev: self._geocode_step(ev, stats, force)  # noqa: E731

        def handler(event: EventRecord) -> RecordAction:
            self._transition(PipelineState.SCANNING)
            stats.scanned += 1
            step(event)
            self._transition(PipelineState.REPORTING)
            if self.progress_callback:
                self.progress_callback(device_id, stats.scanned)
            return RecordAction.CONTINUE

        logger.info(f"{mode.value} pass for {acct_id}/{device_id} "
                    f"({'update' if self.update else 'report only'})")
        try:
            self.store.query_range(acct_id, device_id, start, end, handler,
                                   ascending=True, valid_gps_only=True)
        except DataAccessError as e:
            logger.error(f"Data access failure for {acct_id}/{device_id}: {e.message}", exc_info=True)
            stats.failed = True
            stats.error = e.message
        finally:
            self._transition(PipelineState.IDLE)

        logger.info(
            f"{acct_id}/{device_id}: scanned={stats.scanned} matched={stats.matched} "
            f"updated={stats.updated} unchanged={stats.unchanged} deferred={stats.deferred}"
        )
        return stats

    # ------------------------------------------------------------------
    # Per-event steps
    # ------------------------------------------------------------------

    def _apply(self, event: EventRecord, changes: Dict[str, Any], stats: EnrichmentStats) -> None:
        self._transition(PipelineState.APPLYING)
        self.store.update_event(event, changes)
        stats.updated += 1

    def _geozone_step(self, event: EventRecord, stats: EnrichmentStats) -> None:
        self._transition(PipelineState.MATCHING)
        zone = self.matcher.find_geozone(self.account, event.geo_point)

        self._transition(PipelineState.DECIDING)
        if zone is None:
            return
        stats.matched += 1
        logger.info(f"Found Geozone: {event.device_id} at {event.timestamp} -> "
                    f"{zone.geozone_id} ({zone.description})")

        changes = {"geozone_id": zone.geozone_id, "address": zone.description}
        changes = {k: v for k, v in changes.items() if getattr(event, k) != v}
        if not changes:
            stats.unchanged += 1
        elif self.update:
            self._apply(event, changes, stats)
        else:
            logger.warning(f"{event.device_id} at {event.timestamp}: geozone "
                           f"{zone.geozone_id} [NOT UPDATED]")

    def _geocode_step(self, event: EventRecord, stats: EnrichmentStats, force: bool) -> None:
        self._transition(PipelineState.MATCHING)
        try:
            changes = self.geocoder.update_address(event, force)
        except SlowOperationError as e:
            stats.deferred += 1
            logger.debug(f"Geocode deferred for {event.device_id} at {event.timestamp}: {e.message}")
            return

        self._transition(PipelineState.DECIDING)
        if not changes:
            stats.unchanged += 1
            return
        stats.matched += 1
        fields = ", ".join(f"{k}={v}" for k, v in changes.items())
        if self.update:
            self._apply(event, changes, stats)
            logger.info(f"{event.device_id} at {event.timestamp}: {fields}")
        else:
            logger.warning(f"{event.device_id} at {event.timestamp}: {fields} [NOT UPDATED]")
