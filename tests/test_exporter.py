"""
Tests for the export dispatcher: format tokens, writer selection, output
sinks and tenant filtering across every format.
"""

import io
import logging
import sys

import pytest

import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from event_export.data_models import ExportFormat, MapDataFormat, bind_events
from event_export.errors import OutputError
from event_export.exporter import (
    EventExporter,
    ExportSettings,
    close_output,
    open_output,
    parse_output_format,
)
from optional_fields import AttributeOptionalFields, OptionalField


class TestParseOutputFormat:
    """Tests for format token parsing."""

    @pytest.mark.parametrize("token,expected", [
        ("csv", ExportFormat.CSV),
        ("CSV", ExportFormat.CSV),
        ("txt", ExportFormat.TXT),
        ("xml", ExportFormat.XML),
        ("json", ExportFormat.JSON),
        ("JsonX", ExportFormat.JSON),
        ("gpx", ExportFormat.GPX),
        ("kml", ExportFormat.GPX),
        ("bml", ExportFormat.BML),
        (" xml ", ExportFormat.XML),
    ])
    def test_known_tokens(self, token, expected):
        assert parse_output_format(token) is expected

    def test_unknown_token_uses_default(self):
        assert parse_output_format("pdf", ExportFormat.XML) is ExportFormat.XML
        assert parse_output_format(None, ExportFormat.JSON) is ExportFormat.JSON
        assert parse_output_format("") is ExportFormat.CSV


class TestWriteEvents:
    """Tests for writer dispatch."""

    @pytest.mark.parametrize("fmt,prefix", [
        (ExportFormat.CSV, "DeviceID,Date,Time"),
        (ExportFormat.TXT, "DeviceID,Date,Time"),
        (ExportFormat.XML, "<?xml"),
        (ExportFormat.XML_LEGACY, "<?xml"),
        (ExportFormat.JSON, "{"),
        (ExportFormat.GPX, "<?xml"),
        (ExportFormat.BML, "<lbs>"),
    ])
    def test_dispatch(self, metric_account, bound_device, fmt, prefix):
        out = io.StringIO()
        assert EventExporter().write_events(out, metric_account, [bound_device], fmt)
        assert out.getvalue().startswith(prefix)

    def test_legacy_xml_selected_by_format(self, metric_account, bound_device):
        out = io.StringIO()
        EventExporter().write_events(out, metric_account, [bound_device], ExportFormat.XML_LEGACY)
        assert '<EventData account="A1"' in out.getvalue()

    def test_csv_settings_applied(self, metric_account, bound_device):
        exporter = EventExporter(ExportSettings(csv_separator=";", include_csv_header=False))
        out = io.StringIO()
        exporter.write_events(out, metric_account, [bound_device], ExportFormat.CSV)
        assert out.getvalue().startswith("D1;1970/01/01;00:16:40;")

    def test_unwired_format_fails(self, metric_account, bound_device, caplog):
        exporter = EventExporter(encoders={})
        out = io.StringIO()
        with caplog.at_level(logging.ERROR):
            assert exporter.write_events(out, metric_account, [bound_device], ExportFormat.CSV) is False
        assert "Unrecognized data format" in caplog.text
        assert out.getvalue() == ""

    def test_missing_account(self, bound_device):
        assert EventExporter().write_events(io.StringIO(), None, [bound_device], ExportFormat.JSON) is False


class TestWriteMapEvents:
    """Tests for map-feed output through the dispatcher."""

    def test_default_envelope_is_xml(self, metric_account, bound_device):
        out = io.StringIO()
        assert EventExporter().write_map_events(out, metric_account, [bound_device])
        assert out.getvalue().startswith("<MapData>")

    def test_settings_select_json_and_provider(self, metric_account, device, sample_event, parse_json):
        provider = AttributeOptionalFields([OptionalField("Driver", "driver_id")])
        settings = ExportSettings(map_data_format=MapDataFormat.JSON, optional_fields=provider)
        event = sample_event.model_copy(update={"driver_id": "bob"})
        out = io.StringIO()
        EventExporter(settings).write_map_events(out, metric_account, [bind_events(device, [event])])
        doc = parse_json(out.getvalue())
        assert doc["JMapData"]["DataColumns"].endswith("|Driver")
        assert doc["JMapData"]["DataSets"][0]["Points"][0].endswith("|bob")


class TestTenantFilteringAllFormats:
    """An event of another account appears in no output format."""

    @pytest.mark.parametrize("fmt", list(ExportFormat))
    def test_foreign_event_absent(self, metric_account, device, sample_event, foreign_event, fmt):
        out = io.StringIO()
        devices = [bind_events(device, [foreign_event, sample_event, foreign_event])]
        assert EventExporter().write_events(out, metric_account, devices, fmt)
        text = out.getvalue()
        assert "SECRET-B2-ADDRESS" not in text
        assert "11.0" not in text
        assert "21.0" not in text

    def test_foreign_event_absent_from_map(self, metric_account, device, foreign_event):
        out = io.StringIO()
        EventExporter().write_map_events(out, metric_account, [bind_events(device, [foreign_event])])
        assert "SECRET" not in out.getvalue()


class TestOutputSinks:
    """Tests for opening and closing output sinks."""

    def test_named_streams(self):
        assert open_output("stdout") is sys.stdout
        assert open_output("") is sys.stdout
        assert open_output("STDERR") is sys.stderr

    def test_file_sink(self, tmp_path):
        path = tmp_path / "out.csv"
        stream = open_output(str(path))
        stream.write("hello\n")
        close_output(stream)
        assert stream.closed
        assert path.read_text() == "hello\n"

    def test_unopenable_file(self, tmp_path):
        with pytest.raises(OutputError) as exc_info:
            open_output(str(tmp_path / "missing" / "out.csv"))
        assert exc_info.value.error_code == "ERR_OUTPUT_001"

    def test_close_leaves_stdout_open(self):
        close_output(sys.stdout)
        assert not sys.stdout.closed
        close_output(None)
