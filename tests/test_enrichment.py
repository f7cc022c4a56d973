"""
Tests for the geozone and reverse-geocode enrichment pipeline.
"""

import logging

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from event_export.data_models import GeocoderMode
from event_export.enrichment import EnrichmentMode, EnrichmentPipeline, PipelineState
from event_export.errors import ConfigurationError, DataAccessError
from event_export.store import (
    BoundingBoxGeozoneMatcher,
    GeozoneAddressProvider,
    InMemoryEventStore,
    UnavailableGeocodeProvider,
)


class FailingStore(InMemoryEventStore):
    """Store whose cursor breaks for one device."""

    def __init__(self, *args, failing_device="D1", **kwargs):
        super().__init__(*args, **kwargs)
        self.failing_device = failing_device

    def select_events(self, account_id, device_id, *args, **kwargs):
        if device_id == self.failing_device:
            raise DataAccessError(f"Cursor failed for {device_id}")
        return super().select_events(account_id, device_id, *args, **kwargs)


def _pipeline(store, account, **kwargs):
    kwargs.setdefault("matcher", BoundingBoxGeozoneMatcher(store.geozones))
    return EnrichmentPipeline(store, account, **kwargs)


def _d1_events(store):
    return list(store.select_events("A1", "D1"))


# =============================================================================
# Geozone mode
# =============================================================================

class TestGeozoneMode:
    """Tests for geozone enrichment."""

    def test_report_mode_changes_nothing(self, populated_store, metric_account, caplog):
        before = _d1_events(populated_store)
        with caplog.at_level(logging.WARNING):
            stats = _pipeline(populated_store, metric_account).run_geozone(["D1"])

        assert len(stats) == 1
        assert stats[0].mode is EnrichmentMode.GEOZONE
        assert (stats[0].scanned, stats[0].matched, stats[0].updated) == (4, 3, 0)
        assert populated_store.update_count == 0
        assert _d1_events(populated_store) == before
        assert caplog.text.count("[NOT UPDATED]") == 3

    def test_update_mode(self, populated_store, metric_account):
        stats = _pipeline(populated_store, metric_account, update=True).run_geozone(["D1"])
        assert (stats[0].matched, stats[0].updated, stats[0].unchanged) == (3, 3, 0)

        by_time = {ev.timestamp: ev for ev in _d1_events(populated_store)}
        assert by_time[1000].geozone_id == "depot"
        assert by_time[1000].address == "Main Depot"
        assert by_time[3000].geozone_id == ""
        assert by_time[4000].geozone_id == ""

    def test_rerun_is_unchanged(self, populated_store, metric_account):
        pipeline = _pipeline(populated_store, metric_account, update=True)
        pipeline.run_geozone(["D1"])
        stats = pipeline.run_geozone(["D1"])
        assert (stats[0].matched, stats[0].updated, stats[0].unchanged) == (3, 0, 3)
        assert populated_store.update_count == 3

    def test_date_range(self, populated_store, metric_account):
        stats = _pipeline(populated_store, metric_account).run_geozone(["D1"], 1500, 3000)
        assert (stats[0].scanned, stats[0].matched) == (2, 1)

    def test_requires_matcher(self, populated_store, metric_account):
        pipeline = EnrichmentPipeline(populated_store, metric_account)
        with pytest.raises(ConfigurationError):
            pipeline.run_geozone(["D1"])


# =============================================================================
# Geocode mode
# =============================================================================

class TestGeocodeMode:
    """Tests for reverse-geocode enrichment."""

    def test_geozone_addresses(self, populated_store, metric_account):
        geocoder = GeozoneAddressProvider(metric_account, BoundingBoxGeozoneMatcher(populated_store.geozones))
        pipeline = _pipeline(populated_store, metric_account, update=True, geocoder=geocoder)
        stats = pipeline.run_geocode(["D1"])

        assert (stats[0].matched, stats[0].updated, stats[0].unchanged) == (3, 3, 1)
        first = _d1_events(populated_store)[0]
        assert (first.address, first.city, first.postal_code) == ("Main Depot", "Springfield", "12345")

    def test_report_mode(self, populated_store, metric_account, caplog):
        geocoder = GeozoneAddressProvider(metric_account, BoundingBoxGeozoneMatcher(populated_store.geozones))
        with caplog.at_level(logging.WARNING):
            stats = _pipeline(populated_store, metric_account, geocoder=geocoder).run_geocode(["D1"])
        assert stats[0].updated == 0
        assert populated_store.update_count == 0
        assert "address=Main Depot" in caplog.text
        assert "[NOT UPDATED]" in caplog.text

    def test_slow_provider_defers(self, populated_store, metric_account):
        pipeline = _pipeline(populated_store, metric_account, update=True,
                             geocoder=UnavailableGeocodeProvider())
        stats = pipeline.run_geocode(["D1"])
        assert (stats[0].scanned, stats[0].deferred, stats[0].updated) == (4, 4, 0)
        assert not stats[0].failed

    def test_geocoding_disabled(self, populated_store, metric_account):
        account = metric_account.model_copy(update={"geocoder_mode": GeocoderMode.NONE})
        pipeline = _pipeline(populated_store, account, geocoder=UnavailableGeocodeProvider())
        with pytest.raises(ConfigurationError) as exc_info:
            pipeline.run_geocode(["D1"])
        assert exc_info.value.details["geocoder_mode"] == "none"

    def test_partial_mode_without_provider(self, populated_store, metric_account):
        with pytest.raises(ConfigurationError):
            _pipeline(populated_store, metric_account).run_geocode(["D1"])

    def test_geozone_mode_without_provider(self, populated_store, metric_account):
        account = metric_account.model_copy(update={"geocoder_mode": GeocoderMode.GEOZONE})
        with pytest.raises(ConfigurationError):
            _pipeline(populated_store, account).run_geocode(["D1"])
        assert populated_store.update_count == 0


# =============================================================================
# Failures and progress
# =============================================================================

class TestFailures:
    """Tests for per-device failure isolation."""

    def test_unknown_device(self, populated_store, metric_account):
        stats = _pipeline(populated_store, metric_account).run_geozone(["D9", "D1"])
        assert stats[0].failed
        assert stats[0].error == "Device not found"
        assert not stats[1].failed
        assert stats[1].scanned == 4

    def test_data_access_failure_continues(self, metric_account, device, downtown_zone, event_factory):
        from event_export.data_models import Device
        store = FailingStore(
            accounts=[metric_account],
            devices=[device, Device(account_id="A1", device_id="D2")],
            events=[event_factory(1000), event_factory(1000, device_id="D2")],
            geozones=[downtown_zone],
        )
        pipeline = _pipeline(store, metric_account, update=True)
        stats = pipeline.run_geozone(["D1", "D2"])

        assert stats[0].failed
        assert "Cursor failed" in stats[0].error
        assert not stats[1].failed
        assert stats[1].updated == 1
        assert pipeline.state is PipelineState.IDLE


class TestProgress:
    """Tests for progress reporting and pipeline state."""

    def test_progress_callback(self, populated_store, metric_account):
        calls = []
        pipeline = _pipeline(populated_store, metric_account,
                             progress_callback=lambda dev, n: calls.append((dev, n)))
        pipeline.run_geozone(["D1", "D2"])
        assert calls == [("D1", 1), ("D1", 2), ("D1", 3), ("D1", 4), ("D2", 1)]

    def test_state_observed_during_run(self, populated_store, metric_account):
        pipeline = _pipeline(populated_store, metric_account)
        states = []
        pipeline.progress_callback = lambda dev, n: states.append(pipeline.state)
        pipeline.run_geozone(["D1"])
        assert set(states) == {PipelineState.REPORTING}
        assert pipeline.state is PipelineState.IDLE
