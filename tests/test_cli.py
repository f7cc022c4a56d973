"""
Tests for the batch command line tool: argument parsing, exit codes, event
export and enrichment runs against a JSON store file.
"""

import json

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from constants import EXIT_DATA_ACCESS, EXIT_OK, EXIT_USAGE
from event_export.data_models import FieldProfile, GeocoderMode, MapDataFormat
from event_export.date_range import DateRange
from event_export.store import InMemoryEventStore
from main import STORE_PATH_ENV, Command, _range_label, main, parse_args


def _run(store_file, *args):
    return main([f"-store={store_file}", *args])


# =============================================================================
# Argument parsing
# =============================================================================

class TestParseArgs:
    """Tests for command line parsing."""

    def test_events_command(self):
        config = parse_args(["-account=A1", "-device=D1", "-events=5", "-store=s.json"])
        assert config.command is Command.EVENTS
        assert config.range_arg == "5"
        assert config.output == "stdout"
        assert config.export_format == "csv"
        assert config.profile is FieldProfile.POPULATED
        assert config.map_format is None
        assert config.optional_fields == "none"

    def test_aliases(self):
        config = parse_args(["-acct=A1", "-dev=ALL", "-rg=1000,2000", "-upd", "-all",
                             "-out=x.json", "-fmt=json", "-store=s.json"])
        assert config.command is Command.GEOCODE
        assert config.update
        assert config.all_devices
        assert config.profile is FieldProfile.ALL
        assert (config.output, config.export_format) == ("x.json", "json")

    def test_store_from_environment(self, monkeypatch):
        monkeypatch.setenv(STORE_PATH_ENV, "env.json")
        config = parse_args(["-account=A1", "-device=D1", "-geozone=1000,2000"])
        assert config.command is Command.GEOZONE
        assert config.store_path == "env.json"

    def test_map_options(self):
        config = parse_args(["-account=A1", "-device=D1", "-events=5", "-map=json",
                             "-optional=engine", "-store=s.json"])
        assert config.map_format is MapDataFormat.JSON
        assert config.optional_fields == "engine"

    @pytest.mark.parametrize("argv", [
        ["-account=A1", "-device=D1", "-store=s.json"],
        ["-device=D1", "-events=5", "-store=s.json"],
        ["-account=A1", "-events=5", "-store=s.json"],
        ["-account=A1", "-device=D1", "-events=5", "-bogus"],
        ["-account=A1", "-device=D1", "-events=5", "-map=kml", "-store=s.json"],
        ["-account=A1", "-device=D1", "-events=5", "-optional=radio", "-store=s.json"],
    ])
    def test_usage_errors(self, monkeypatch, argv):
        monkeypatch.delenv(STORE_PATH_ENV, raising=False)
        with pytest.raises(SystemExit) as exc_info:
            parse_args(argv)
        assert exc_info.value.code == EXIT_USAGE


# =============================================================================
# Event export
# =============================================================================

class TestEventsCommand:
    """Tests for -events runs."""

    def test_latest_events_csv(self, store_file, capsys):
        assert _run(store_file, "-account=A1", "-device=D1", "-events=2") == EXIT_OK
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].startswith("DeviceID,")
        assert [line.split(",")[2] for line in lines[1:]] == ["01:06:40", "01:23:20"]

    def test_date_range_json(self, store_file, capsys):
        assert _run(store_file, "-account=A1", "-device=D1", "-events=1000,2000",
                    "-format=json") == EXIT_OK
        doc = json.loads(capsys.readouterr().out)
        assert [ev["Timestamp"] for ev in doc["DeviceList"][0]["EventData"]] == [1000, 2000]

    def test_all_devices(self, store_file, capsys):
        assert _run(store_file, "-account=A1", "-device=*", "-events=10",
                    "-format=json") == EXIT_OK
        doc = json.loads(capsys.readouterr().out)
        assert [d["Device"] for d in doc["DeviceList"]] == ["D1", "D2"]

    def test_file_output(self, store_file, tmp_path, capsys):
        out = tmp_path / "events.xml"
        assert _run(store_file, "-account=A1", "-device=D1", "-events=3",
                    "-format=xml", f"-output={out}") == EXIT_OK
        assert out.read_text().startswith("<?xml")
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "Export Complete" in captured.err

    def test_unopenable_output(self, store_file, tmp_path):
        bad = tmp_path / "missing" / "events.csv"
        assert _run(store_file, "-account=A1", "-device=D1", "-events=3",
                    f"-output={bad}") == EXIT_USAGE

    @pytest.mark.skipif(not os.path.exists("/dev/full"), reason="requires /dev/full")
    def test_write_failure(self, store_file, capsys):
        assert _run(store_file, "-account=A1", "-device=D1", "-events=3",
                    "-output=/dev/full") == EXIT_USAGE
        assert "Error writing events" in capsys.readouterr().err

    def test_map_feed_xml(self, store_file, capsys):
        assert _run(store_file, "-account=A1", "-device=D1", "-events=2", "-map=xml",
                    "-optional=engine") == EXIT_OK
        out = capsys.readouterr().out
        assert out.startswith("<MapData>")
        assert '<DataSet type="device" id="D1">' in out
        columns = out.split("<DataColumns>")[1].split("</DataColumns>")[0]
        assert columns.endswith("|RPM|Engine Hours|Battery")

    def test_map_feed_json_fleet_columns(self, store_file, capsys):
        assert _run(store_file, "-account=A1", "-device=*", "-events=2", "-map=json",
                    "-optional=engine") == EXIT_OK
        doc = json.loads(capsys.readouterr().out)
        assert doc["JMapData"]["DataColumns"].endswith("|Battery")
        assert "RPM" not in doc["JMapData"]["DataColumns"]

    def test_map_feed_without_optional_columns(self, store_file, capsys):
        assert _run(store_file, "-account=A1", "-device=D1", "-events=1", "-map=xml") == EXIT_OK
        assert "Battery" not in capsys.readouterr().out

    def test_unknown_format_uses_default(self, store_file, capsys):
        assert _run(store_file, "-account=A1", "-device=D1", "-events=1",
                    "-format=pdf") == EXIT_OK
        assert capsys.readouterr().out.startswith("DeviceID,")


class TestLookupFailures:
    """Tests for store, account and device lookup failures."""

    def test_missing_store(self, tmp_path):
        assert _run(tmp_path / "none.json", "-account=A1", "-device=D1",
                    "-events=1") == EXIT_DATA_ACCESS

    def test_unknown_account(self, store_file):
        assert _run(store_file, "-account=ZZ", "-device=D1", "-events=1") == EXIT_USAGE

    def test_unknown_device(self, store_file):
        assert _run(store_file, "-account=A1", "-device=D9", "-events=1") == EXIT_USAGE

    @pytest.mark.parametrize("selector", ["*", "ALL"])
    def test_account_without_devices(self, tmp_path, metric_account, selector, capsys):
        path = tmp_path / "empty.json"
        InMemoryEventStore(accounts=[metric_account]).to_json_file(path)
        assert _run(path, "-account=A1", f"-device={selector}", "-events=1") == EXIT_USAGE
        assert "no devices" in capsys.readouterr().err

    def test_unknown_option(self, store_file):
        assert _run(store_file, "-account=A1", "-device=D1", "-events=1",
                    "-colour") == EXIT_USAGE


# =============================================================================
# Enrichment
# =============================================================================

class TestEnrichmentCommands:
    """Tests for -geozone and -geocode runs."""

    def test_geozone_report_only(self, store_file):
        before = store_file.read_text()
        assert _run(store_file, "-account=A1", "-device=D1", "-geozone=1000,5000") == EXIT_OK
        assert store_file.read_text() == before

    def test_geozone_update(self, store_file):
        assert _run(store_file, "-account=A1", "-device=D1", "-geozone=1000,5000",
                    "-update") == EXIT_OK
        store = InMemoryEventStore.from_json_file(store_file)
        zoned = [ev.timestamp for ev in store.select_events("A1", "D1") if ev.geozone_id == "depot"]
        assert zoned == [1000, 2000, 5000]

    def test_geocode_update(self, store_file):
        assert _run(store_file, "-account=A1", "-device=*", "-geocode=1000,5000",
                    "-update") == EXIT_OK
        store = InMemoryEventStore.from_json_file(store_file)
        first = next(store.select_events("A1", "D2"))
        assert (first.address, first.postal_code) == ("Main Depot", "12345")

    def test_geocoding_disabled(self, tmp_path, populated_store, metric_account):
        account = metric_account.model_copy(update={"geocoder_mode": GeocoderMode.NONE})
        populated_store._accounts["A1"] = account
        path = tmp_path / "events.json"
        populated_store.to_json_file(path)
        assert _run(path, "-account=A1", "-device=D1", "-geocode=1000,5000") == EXIT_DATA_ACCESS

    @pytest.mark.parametrize("command", ["-geozone", "-geocode"])
    def test_invalid_range(self, store_file, command):
        assert _run(store_file, "-account=A1", "-device=D1", f"{command}=whenever") == EXIT_DATA_ACCESS


# =============================================================================
# Summary labels
# =============================================================================

class TestRangeLabel:
    """Tests for the range shown in completion summaries."""

    def test_latest_count(self):
        assert _range_label(None, 5) == "latest 5"

    def test_closed_range(self):
        assert _range_label(DateRange(1000, 2000, 0), None) == "1000 .. 2000"

    def test_open_end_with_limit(self):
        assert _range_label(DateRange(1000, -1, 30), None) == "1000 .. open (limit 30)"

    def test_open_start(self):
        assert _range_label(DateRange(-1, 2000, 0), None) == "open .. 2000"
