"""Tests for format detection and parser dispatch."""

from __future__ import annotations

import pytest

from collision_sync.core.exceptions import UnsupportedFormatError
from collision_sync.parsers import parse_content
from collision_sync.parsers.detector import EstimateFormat, detect_format, parse_hint

XML = "<?xml version='1.0'?><Estimate/>"
EMS = "HDR|2.6|Mitchell|UltraMate|20240315|103000\nEST|RO-1\n"


class TestHint:
    def test_explicit_hint_wins_over_extension(self):
        assert detect_format("estimate.xml", EMS, hint="EMS") is EstimateFormat.EMS

    def test_auto_is_no_hint(self):
        assert parse_hint("auto") is None
        assert parse_hint(None) is None

    def test_unknown_hint_is_ignored(self):
        assert detect_format("estimate.ems", XML, hint="pdf") is EstimateFormat.EMS


class TestExtension:
    @pytest.mark.parametrize("name", ["a.xml", "A.BMS"])
    def test_bms_extensions(self, name):
        assert detect_format(name, EMS) is EstimateFormat.BMS

    @pytest.mark.parametrize("name", ["a.ems", "a.csv", ".ems"])
    def test_ems_extensions(self, name):
        assert detect_format(name, XML) is EstimateFormat.EMS

    def test_ems_extension_beats_xml_looking_content(self):
        content = "   \n" + EMS
        assert detect_format("estimate.ems", content) is EstimateFormat.EMS


class TestSniffing:
    def test_txt_with_xml_declaration_is_bms(self):
        assert detect_format("estimate.txt", "\ufeff  " + XML) is EstimateFormat.BMS

    def test_txt_with_known_root_is_bms(self):
        assert detect_format("estimate.txt", "<bms:VehicleDamageEstimateAddRq xmlns:bms='x'>") is EstimateFormat.BMS

    def test_txt_with_pipe_header_is_ems(self):
        assert detect_format("estimate.txt", "\n\n" + EMS) is EstimateFormat.EMS

    def test_bytes_content(self):
        assert detect_format("estimate.txt", EMS.encode()) is EstimateFormat.EMS

    def test_default_is_bms(self):
        assert detect_format("estimate.txt", "nothing useful") is EstimateFormat.BMS


class TestParseContent:
    def test_dispatches_to_ems(self, sample_ems):
        estimate_format, payload = parse_content("sample.ems", sample_ems)
        assert estimate_format is EstimateFormat.EMS
        assert payload.meta.source_format == "EMS"

    def test_dispatches_to_bms(self, mitchell_xml):
        estimate_format, payload = parse_content("upload.txt", mitchell_xml)
        assert estimate_format is EstimateFormat.BMS
        assert payload.meta.source_format == "BMS"

    def test_invalid_explicit_hint_raises(self, mitchell_xml):
        with pytest.raises(UnsupportedFormatError):
            parse_content("upload.xml", mitchell_xml, hint="pdf")
