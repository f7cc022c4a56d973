"""
Collaborator interfaces for export and enrichment, plus in-memory versions.

The export engine and enrichment pipeline only talk to these narrow
interfaces: an event store with a forward cursor, a geozone matcher and a
reverse-geocode provider. The in-memory implementations back the CLI (via
a JSON store file) and the test suite.
"""

import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError

from event_export.data_models import Account, Device, EventRecord, EventSchema, GeoPoint
from event_export.errors import DataAccessError, SlowOperationError

logger = logging.getLogger(__name__)

# Fields the enrichment pipeline may write back
UPDATABLE_FIELDS = frozenset({"geozone_id", "geozone_index", "address", "city", "postal_code"})


class RecordAction(str, Enum):
    """Cursor callback result."""
    CONTINUE = "continue"
    STOP = "stop"


RecordHandler = Callable[[EventRecord], RecordAction]
EventKey = Tuple[str, str, int, int]


def event_key(event: EventRecord) -> EventKey:
    """Identity of a stored event: account, device, timestamp, status code."""
    return (event.account_id, event.device_id, event.timestamp, event.status_code)


# =============================================================================
# Event Store
# =============================================================================

class EventStore(ABC):
    """
    Abstract event store.

    Subclasses must implement account/device lookup, select_events (a
    forward cursor over one device's events) and update_event. The range
    query, lazy iteration and latest-events helpers are built on top.
    """

    @property
    def schema(self) -> EventSchema:
        """Optional columns this store carries."""
        return EventSchema()

    @abstractmethod
    def get_account(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    def get_device(self, account_id: str, device_id: str) -> Optional[Device]:
        pass

    @abstractmethod
    def get_device_ids(self, account_id: str) -> List[str]:
        pass

    @abstractmethod
    def select_events(
        self,
        account_id: str,
        device_id: str,
        start: int = -1,
        end: int = -1,
        ascending: bool = True,
        limit: Optional[int] = None,
        valid_gps_only: bool = False,
    ) -> Iterator[EventRecord]:
        """
        Cursor over one device's events in timestamp order.

        Non-positive start/end mean open-ended. Raises DataAccessError when
        the store cannot be read.
        """
        pass

    @abstractmethod
    def update_event(self, event: EventRecord, fields: Dict[str, Any]) -> EventRecord:
        """Persist the given fields of a stored event, returning the updated copy."""
        pass

    def query_range(
        self,
        account_id: str,
        device_id: str,
        start: int,
        end: int,
        handler: RecordHandler,
        ascending: bool = True,
        limit: Optional[int] = None,
        valid_gps_only: bool = False,
    ) -> int:
        """
        Feed each event in the range to ``handler`` until it returns STOP.

        Returns:
            Number of events delivered to the handler
        """
        delivered = 0
        for event in self.select_events(account_id, device_id, start, end,
                                        ascending, limit, valid_gps_only):
            delivered += 1
            if handler(event) is RecordAction.STOP:
                break
        return delivered

    def iter_range(
        self,
        account_id: str,
        device_id: str,
        start: int = -1,
        end: int = -1,
        ascending: bool = True,
        limit: Optional[int] = None,
        valid_gps_only: bool = False,
    ) -> Iterator[EventRecord]:
        """Lazy event sequence for binding to a device in one export call."""
        yield from self.select_events(account_id, device_id, start, end,
                                      ascending, limit, valid_gps_only)

    def latest_events(self, account_id: str, device_id: str, limit: int) -> List[EventRecord]:
        """The most recent ``limit`` events, returned oldest first."""
        latest = list(self.select_events(account_id, device_id, ascending=False, limit=limit))
        latest.reverse()
        return latest


# =============================================================================
# Geozones
# =============================================================================

class Geozone(BaseModel):
    """Named rectangular zone belonging to one account."""

    account_id: str
    geozone_id: str
    description: str = ""
    index: int = Field(default=0, description="Zone sort index")
    city: str = ""
    postal_code: str = ""
    min_latitude: float
    max_latitude: float
    min_longitude: float
    max_longitude: float

    def contains(self, point: GeoPoint) -> bool:
        return (self.min_latitude <= point.latitude <= self.max_latitude
                and self.min_longitude <= point.longitude <= self.max_longitude)


class GeozoneMatcher(ABC):
    """Finds the geozone containing a point."""

    @abstractmethod
    def find_geozone(self, account: Account, point: GeoPoint) -> Optional[Geozone]:
        pass


class BoundingBoxGeozoneMatcher(GeozoneMatcher):
    """Matches the first (lowest index) zone of the account whose box holds the point."""

    def __init__(self, geozones: Iterable[Geozone]):
        self.geozones = sorted(geozones, key=lambda z: (z.index, z.geozone_id))

    def find_geozone(self, account: Account, point: GeoPoint) -> Optional[Geozone]:
        if not point.is_valid:
            return None
        for zone in self.geozones:
            if zone.account_id == account.account_id and zone.contains(point):
                return zone
        return None


# =============================================================================
# Reverse Geocoding
# =============================================================================

class ReverseGeocodeProvider(ABC):
    """Resolves address fields for an event's location."""

    @abstractmethod
    def update_address(self, event: EventRecord, force: bool = False) -> Dict[str, Any]:
        """
        Work out the address fields that should change for ``event``.

        Args:
            event: Event with a valid GPS point
            force: Re-resolve even if the event already has an address

        Returns:
            Mapping of field name to new value; empty when nothing changes

        Raises:
            SlowOperationError: If the provider cannot answer right now
        """
        pass


class GeozoneAddressProvider(ReverseGeocodeProvider):
    """Reverse geocoder that answers from geozone descriptions."""

    def __init__(self, account: Account, matcher: GeozoneMatcher):
        self.account = account
        self.matcher = matcher

    def update_address(self, event: EventRecord, force: bool = False) -> Dict[str, Any]:
        if event.address and not force:
            return {}
        zone = self.matcher.find_geozone(self.account, event.geo_point)
        if zone is None:
            return {}
        candidate = {
            "address": zone.description,
            "city": zone.city,
            "postal_code": zone.postal_code,
        }
        return {k: v for k, v in candidate.items() if v and getattr(event, k) != v}


class UnavailableGeocodeProvider(ReverseGeocodeProvider):
    """Provider for a geocoding backend that is offline; every lookup is deferred."""

    def update_address(self, event: EventRecord, force: bool = False) -> Dict[str, Any]:
        raise SlowOperationError()


# =============================================================================
# In-Memory Store
# =============================================================================

class StoreDocument(BaseModel):
    """On-disk layout of a JSON store file."""
    accounts: List[Account] = Field(default_factory=list)
    devices: List[Device] = Field(default_factory=list)
    events: List[EventRecord] = Field(default_factory=list)
    geozones: List[Geozone] = Field(default_factory=list)
    event_schema: EventSchema = Field(default_factory=EventSchema)


class InMemoryEventStore(EventStore):
    """
    Event store held in memory, optionally loaded from a JSON file.

    Events are kept per device in timestamp order. Cursors iterate over a
    snapshot, so updates issued from a cursor callback are safe.
    """

    def __init__(
        self,
        accounts: Iterable[Account] = (),
        devices: Iterable[Device] = (),
        events: Iterable[EventRecord] = (),
        geozones: Iterable[Geozone] = (),
        schema: Optional[EventSchema] = None,
    ):
        self._accounts: Dict[str, Account] = {a.account_id: a for a in accounts}
        self._devices: Dict[Tuple[str, str], Device] = {
            (d.account_id, d.device_id): d for d in devices
        }
        self._events: Dict[Tuple[str, str], List[EventRecord]] = {}
        for event in events:
            self._events.setdefault((event.account_id, event.device_id), []).append(event)
        for series in self._events.values():
            series.sort(key=lambda ev: ev.timestamp)
        self.geozones: List[Geozone] = list(geozones)
        self._schema = schema or EventSchema()
        self.update_count = 0

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> "InMemoryEventStore":
        """
        Load a store from a JSON document with accounts/devices/events/geozones.

        Raises:
            DataAccessError: If the file cannot be read or is not a valid store
        """
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            doc = StoreDocument.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise DataAccessError(f"Unable to load event store {path}: {e}",
                                  details={"path": str(path)}) from e

        logger.debug(
            f"Loaded store {path}: {len(doc.accounts)} accounts, "
            f"{len(doc.devices)} devices, {len(doc.events)} events"
        )
        return cls(doc.accounts, doc.devices, doc.events, doc.geozones, doc.event_schema)

    def to_json_file(self, path: Union[str, Path]) -> None:
        """Write the store back to a JSON document."""
        doc = StoreDocument(
            accounts=list(self._accounts.values()),
            devices=list(self._devices.values()),
            events=[ev for series in self._events.values() for ev in series],
            geozones=self.geozones,
            event_schema=self._schema,
        )
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(doc.model_dump_json(indent=2))
        except OSError as e:
            raise DataAccessError(f"Unable to save event store {path}: {e}",
                                  details={"path": str(path)}) from e

    @property
    def schema(self) -> EventSchema:
        return self._schema

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._accounts.get(account_id)

    def get_device(self, account_id: str, device_id: str) -> Optional[Device]:
        return self._devices.get((account_id, device_id))

    def get_device_ids(self, account_id: str) -> List[str]:
        return sorted(dev_id for acct_id, dev_id in self._devices if acct_id == account_id)

    def select_events(
        self,
        account_id: str,
        device_id: str,
        start: int = -1,
        end: int = -1,
        ascending: bool = True,
        limit: Optional[int] = None,
        valid_gps_only: bool = False,
    ) -> Iterator[EventRecord]:
        series = list(self._events.get((account_id, device_id), ()))
        if not ascending:
            series.reverse()
        count = 0
        for event in series:
            if limit is not None and count >= limit:
                return
            if start > 0 and event.timestamp < start:
                continue
            if end > 0 and event.timestamp > end:
                continue
            if valid_gps_only and not event.has_valid_gps:
                continue
            count += 1
            yield event

    def update_event(self, event: EventRecord, fields: Dict[str, Any]) -> EventRecord:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise DataAccessError(f"Cannot update event fields: {', '.join(sorted(unknown))}")

        series = self._events.get((event.account_id, event.device_id), [])
        key = event_key(event)
        for i, stored in enumerate(series):
            if event_key(stored) == key:
                updated = stored.model_copy(update=fields)
                series[i] = updated
                self.update_count += 1
                return updated
        raise DataAccessError(
            f"Event not found: {event.account_id}/{event.device_id} at {event.timestamp}"
        )
