"""
Pytest configuration and fixtures for fleet event export tests.

Provides reusable accounts, devices, events and a populated in-memory
store.
"""

import json

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from constants import STATUS_LOCATION, STATUS_MOTION_IN_MOTION
from event_export.data_models import (
    Account,
    Device,
    DistanceUnits,
    EventRecord,
    SpeedUnits,
    bind_events,
)
from event_export.store import Geozone, InMemoryEventStore


@pytest.fixture
def metric_account():
    """Account "A1" using km/h and km, UTC."""
    return Account(
        account_id="A1",
        description="Acme Freight",
        timezone="UTC",
        speed_units=SpeedUnits.KPH,
        distance_units=DistanceUnits.KM,
    )


@pytest.fixture
def imperial_account():
    """Account "A1" with the default mph/miles units."""
    return Account(account_id="A1", description="Acme Freight", timezone="UTC")


@pytest.fixture
def device():
    """Device "D1" of account "A1"."""
    return Device(account_id="A1", device_id="D1", description="Truck 1")


@pytest.fixture
def sample_event():
    """Event at epoch 1000: 36 km/h heading east at (10.0, 20.0)."""
    return EventRecord(
        account_id="A1",
        device_id="D1",
        timestamp=1000,
        status_code=STATUS_LOCATION,
        latitude=10.0,
        longitude=20.0,
        speed_kph=36.0,
        heading=90.0,
    )


@pytest.fixture
def foreign_event():
    """Event tagged with another account; must never be exported for "A1"."""
    return EventRecord(
        account_id="B2",
        device_id="D1",
        timestamp=2000,
        status_code=STATUS_LOCATION,
        latitude=11.0,
        longitude=21.0,
        speed_kph=50.0,
        heading=45.0,
        address="SECRET-B2-ADDRESS",
    )


@pytest.fixture
def bound_device(device, sample_event):
    """Device D1 bound to the sample event."""
    return bind_events(device, [sample_event])


def make_event(timestamp, **kwargs):
    """Build an A1/D1 event with sensible defaults."""
    fields = dict(
        account_id="A1",
        device_id="D1",
        timestamp=timestamp,
        status_code=STATUS_MOTION_IN_MOTION,
        latitude=10.0,
        longitude=20.0,
        speed_kph=20.0,
        heading=180.0,
    )
    fields.update(kwargs)
    return EventRecord(**fields)


@pytest.fixture
def event_factory():
    """Fixture providing make_event."""
    return make_event


@pytest.fixture
def downtown_zone():
    """Geozone covering the (10.0, 20.0) area of account A1."""
    return Geozone(
        account_id="A1",
        geozone_id="depot",
        description="Main Depot",
        index=1,
        city="Springfield",
        postal_code="12345",
        min_latitude=9.5,
        max_latitude=10.5,
        min_longitude=19.5,
        max_longitude=20.5,
    )


@pytest.fixture
def populated_store(metric_account, device, downtown_zone):
    """Store with A1/D1 and A1/D2, five D1 events (two outside the zone)."""
    d2 = Device(account_id="A1", device_id="D2", description="Truck 2")
    events = [
        make_event(1000),
        make_event(2000),
        make_event(3000, latitude=40.0, longitude=50.0),
        make_event(4000, latitude=0.0, longitude=0.0),
        make_event(5000),
        make_event(1500, device_id="D2"),
    ]
    return InMemoryEventStore(
        accounts=[metric_account],
        devices=[device, d2],
        events=events,
        geozones=[downtown_zone],
    )


@pytest.fixture
def store_file(tmp_path, populated_store):
    """Populated store written to a JSON file."""
    path = tmp_path / "events.json"
    populated_store.to_json_file(path)
    return path


def json_depth_balanced(text: str) -> bool:
    """Brace/bracket counts outside string literals match."""
    depth = 0
    in_string = escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0 and not in_string


@pytest.fixture
def parse_json():
    """Parse a JSON document, asserting it is balanced first."""
    def _parse(text):
        assert json_depth_balanced(text)
        return json.loads(text)
    return _parse
