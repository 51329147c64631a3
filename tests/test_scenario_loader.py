"""Validate scenario loading and coercion of malformed input."""

import json
from unittest.mock import Mock, patch

import pytest
import requests

from linacsim.core.exceptions import ScenarioLoadError
from linacsim.core.models import Technique
from linacsim.data.scenario_loader import (
    derive_error_present,
    derive_scenario_id,
    load_scenario,
    parse_fields,
    parse_scenario,
)


class TestScenarioIds:
    """Test id and study-condition derivation from the file name."""

    def test_derive_scenario_id(self):
        assert derive_scenario_id("data/A2_withErrors.json") == "A2_withErrors"
        assert derive_scenario_id("https://host/s/B1_noErrors.json?v=3") == "B1_noErrors"
        assert derive_scenario_id("C:\\study\\C4.JSON") == "C4"
        assert derive_scenario_id("") == "unknown"

    def test_derive_error_present(self):
        assert derive_error_present("A2_withErrors.json") is True
        assert derive_error_present("a1_NOERRORS.json") is False
        assert derive_error_present("practice.json") is None


class TestParseScenario:
    """Test building ScenarioRecord from decoded JSON."""

    def test_sample(self, scenario):
        assert scenario.scenario_id == "A1_noErrors"
        assert scenario.error_present is False
        assert scenario.patient_name == "Test, Patient"
        assert scenario.imaging_type == "kV-kV"
        assert [f.name for f in scenario.fields] == ["AP", "Arc1 CCW"]
        assert scenario.fields[0].technique is Technique.CRT_3D
        assert scenario.fields[0].jaws.x2 == 5
        assert scenario.fields[1].technique is Technique.VMAT

    def test_top_level_fields(self):
        record = parse_scenario({"treatmentFields": [{"fieldName": "LAT"}]}, source="x.json")
        assert [f.name for f in record.fields] == ["LAT"]

    def test_malformed_document(self):
        record = parse_scenario("not an object", source="bad.json")
        assert record.fields == []
        assert record.scenario_id == "bad"

    def test_field_coercion(self):
        fields = parse_fields(
            [
                {"fieldName": "F1", "monitorUnits": "abc", "doseRate": 0, "gantryAngle": " 90 "},
                "garbage",
                {"fieldName": "kV", "type": "Imaging", "monitorUnits": -5},
            ]
        )

        assert len(fields) == 2
        assert fields[0].monitor_units == 0
        assert fields[0].dose_rate == 600
        assert fields[0].gantry_angle == "90"
        assert fields[1].is_imaging
        assert fields[1].monitor_units == 0

    def test_fields_not_a_list(self):
        assert parse_fields({"fieldName": "F1"}) == []


class TestLoadScenario:
    """Test fetching scenario documents."""

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "D1_withErrors.json"
        path.write_text(json.dumps({"treatmentFields": [{"fieldName": "AP"}]}), encoding="utf-8")

        record = load_scenario(str(path))

        assert record.scenario_id == "D1_withErrors"
        assert record.error_present is True

    def test_missing_file(self, tmp_path):
        with pytest.raises(ScenarioLoadError):
            load_scenario(str(tmp_path / "nope.json"))

    def test_empty_source(self):
        with pytest.raises(ScenarioLoadError, match="Missing scenario file"):
            load_scenario("")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{", encoding="utf-8")
        with pytest.raises(ScenarioLoadError, match="Invalid JSON"):
            load_scenario(str(path))

    @patch("linacsim.data.scenario_loader.requests.get")
    def test_load_from_url(self, mock_get):
        response = Mock()
        response.text = json.dumps({"treatmentFields": []})
        response.raise_for_status.return_value = None
        mock_get.return_value = response

        record = load_scenario("https://study.example/scenarios/E1_noErrors.json")

        assert record.scenario_id == "E1_noErrors"
        mock_get.assert_called_once()

    @patch("linacsim.data.scenario_loader.requests.get")
    def test_http_error_is_load_error(self, mock_get):
        response = Mock()
        response.raise_for_status.side_effect = requests.HTTPError("404")
        mock_get.return_value = response

        with pytest.raises(ScenarioLoadError, match="HTTP fetch failed"):
            load_scenario("https://study.example/scenarios/missing.json")
