"""
Tests for attendflow.config -- Facility Policy.

Covers: default policy values, policy validation, station lookup and
destination labels, YAML loading, and invalid YAML rejection.
"""

from pathlib import Path

import pytest
import yaml

from attendflow.config import (
    DEFAULT_POLICY,
    FacilityPolicy,
    StationConfig,
    load_policy_from_yaml,
)
from attendflow.models import EncounterStatus, FinalizeOutcome, StationRole


# ---------------------------------------------------------------------------
# 1. Default policy
# ---------------------------------------------------------------------------

class TestDefaultPolicy:
    def test_open_limits_default_to_operator_judgment(self):
        """No paging cap and no stale-absence reporting unless configured."""
        assert DEFAULT_POLICY.max_calls_per_activation is None
        assert DEFAULT_POLICY.absence_auto_cancel_seconds is None

    def test_defaults(self):
        assert DEFAULT_POLICY.bed_wait_critical_hours == 24
        assert DEFAULT_POLICY.default_bed_priority == 2
        assert DEFAULT_POLICY.page_banner_seconds == 15
        assert DEFAULT_POLICY.medication_eligible_statuses == [
            EncounterStatus.IN_CONSULTATION,
            EncounterStatus.IN_OBSERVATION,
        ]
        assert DEFAULT_POLICY.finalize_required_fields == {
            FinalizeOutcome.BED_REQUEST: ["bed_justification"],
        }

    def test_one_station_per_role(self):
        roles = {s.role for s in DEFAULT_POLICY.stations}
        assert roles == set(StationRole)


# ---------------------------------------------------------------------------
# 2. Validation
# ---------------------------------------------------------------------------

class TestFacilityPolicyValidation:
    def test_empty_facility_id_rejected(self):
        with pytest.raises(Exception):
            FacilityPolicy(facility_id="", facility_name="Nowhere")

    def test_paging_cap_must_be_positive(self):
        with pytest.raises(Exception):
            FacilityPolicy(facility_id="f", facility_name="F", max_calls_per_activation=0)

    def test_bed_priority_range(self):
        with pytest.raises(Exception):
            FacilityPolicy(facility_id="f", facility_name="F", default_bed_priority=4)

    def test_terminal_medication_status_rejected(self):
        with pytest.raises(Exception, match="terminal"):
            FacilityPolicy(
                facility_id="f",
                facility_name="F",
                medication_eligible_statuses=[EncounterStatus.FINALIZED],
            )

    def test_unknown_required_field_rejected(self):
        with pytest.raises(Exception, match="shoe_size"):
            FacilityPolicy(
                facility_id="f",
                facility_name="F",
                finalize_required_fields={FinalizeOutcome.DISCHARGE: ["shoe_size"]},
            )

    def test_duplicate_station_ids_rejected(self):
        with pytest.raises(Exception, match="Duplicate station ids"):
            FacilityPolicy(
                facility_id="f",
                facility_name="F",
                stations=[
                    StationConfig(station_id="triage-01", role=StationRole.TRIAGE),
                    StationConfig(station_id="triage-01", role=StationRole.PHYSICIAN),
                ],
            )


# ---------------------------------------------------------------------------
# 3. Station lookup
# ---------------------------------------------------------------------------

class TestStations:
    def test_lookup(self):
        station = DEFAULT_POLICY.station("physician-01")
        assert station.role == StationRole.PHYSICIAN

    def test_unknown_station(self):
        with pytest.raises(KeyError):
            DEFAULT_POLICY.station("radiology-01")

    def test_destination_label_configured(self):
        assert DEFAULT_POLICY.destination_label("triage-01") == "TRIAGE - ROOM 01"

    def test_destination_label_falls_back_to_role(self):
        assert DEFAULT_POLICY.destination_label("nursing-01") == "NURSING POST"


# ---------------------------------------------------------------------------
# 4. YAML loading
# ---------------------------------------------------------------------------

class TestYamlLoading:
    def _write(self, tmp_path: Path, data) -> Path:
        path = tmp_path / "policy.yaml"
        path.write_text(yaml.dump(data))
        return path

    def test_load(self, tmp_path):
        path = self._write(tmp_path, {
            "facility": {
                "facility_id": "upa_centro",
                "facility_name": "UPA Centro",
                "max_calls_per_activation": 5,
                "absence_auto_cancel_seconds": 3600,
                "stations": [
                    {"station_id": "tri-1", "role": "triage", "destination_label": "TRIAGE 1"},
                    {"station_id": "doc-1", "role": "physician", "absentees_newest_first": False},
                ],
                "finalize_required_fields": {"finalized": ["diagnosis"]},
            },
        })
        policy = load_policy_from_yaml(path)

        assert policy.facility_id == "upa_centro"
        assert policy.max_calls_per_activation == 5
        assert policy.station("doc-1").absentees_newest_first is False
        assert policy.destination_label("doc-1") == "PHYSICIAN OFFICE"
        assert policy.finalize_required_fields == {FinalizeOutcome.DISCHARGE: ["diagnosis"]}

    def test_shipped_example_policy_loads(self):
        path = Path(__file__).resolve().parent.parent / "examples" / "facility_policy.yaml"
        policy = load_policy_from_yaml(path)
        assert policy.station("triage-01").role == StationRole.TRIAGE

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_policy_from_yaml(tmp_path / "absent.yaml")

    def test_missing_facility_key(self, tmp_path):
        path = self._write(tmp_path, {"partners": []})
        with pytest.raises(ValueError, match="top-level 'facility'"):
            load_policy_from_yaml(path)

    def test_facility_not_mapping(self, tmp_path):
        path = self._write(tmp_path, {"facility": ["a", "b"]})
        with pytest.raises(ValueError, match="must be a mapping"):
            load_policy_from_yaml(path)

    def test_stations_not_list(self, tmp_path):
        path = self._write(tmp_path, {
            "facility": {"facility_id": "f", "facility_name": "F", "stations": "triage-01"},
        })
        with pytest.raises(ValueError, match="must be a list"):
            load_policy_from_yaml(path)
