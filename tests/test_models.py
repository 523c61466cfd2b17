"""
Tests for attendflow.models -- encounter, checklist and nursing records.
"""

import pytest
from pydantic import ValidationError

from attendflow.models import (
    ChecklistItemDraft,
    CompositeComponent,
    Encounter,
    EncounterStatus,
    FinalizeOutcome,
    NursingNote,
    PatientSnapshot,
    TransferDetails,
    VitalSigns,
)


class TestStatuses:
    def test_terminal(self):
        assert EncounterStatus.FINALIZED.is_terminal
        assert EncounterStatus.CANCELLED.is_terminal
        assert not EncounterStatus.AWAITING_BED.is_terminal

    def test_absent(self):
        assert EncounterStatus.ABSENT.is_absent
        assert EncounterStatus.AWAITING_TRIAGE_ABSENT.is_absent
        assert not EncounterStatus.AWAITING_TRIAGE.is_absent

    def test_active(self):
        assert EncounterStatus.IN_TRIAGE.is_active
        assert EncounterStatus.IN_CONSULTATION.is_active
        assert not EncounterStatus.IN_OBSERVATION.is_active

    def test_finalize_outcome_targets(self):
        assert FinalizeOutcome.DISCHARGE.target_status == EncounterStatus.FINALIZED
        assert FinalizeOutcome.OBSERVATION.target_status == EncounterStatus.IN_OBSERVATION
        assert FinalizeOutcome.BED_REQUEST.target_status == EncounterStatus.AWAITING_BED


class TestEncounter:
    def _encounter(self, **kwargs) -> Encounter:
        values = {
            "facility_id": "upa_test",
            "patient_ref": "patient-1",
            "patient": PatientSnapshot(display_name="Ana Lima"),
        }
        values.update(kwargs)
        return Encounter(**values)

    def test_defaults(self):
        encounter = self._encounter()
        assert encounter.status == EncounterStatus.AWAITING_TRIAGE
        assert encounter.acuity is None
        assert encounter.call_count == 0
        assert encounter.is_locked is False

    def test_status_from_string(self):
        encounter = self._encounter(status="in_consultation", examiner_lock="physician-01")
        assert encounter.status == EncounterStatus.IN_CONSULTATION
        assert encounter.is_locked is True

    def test_bed_priority_range(self):
        with pytest.raises(ValidationError):
            self._encounter(bed_request_priority=0)

    def test_blank_patient_name_rejected(self):
        with pytest.raises(ValidationError):
            PatientSnapshot(display_name="")


class TestVitalSigns:
    def test_requires_a_measurement(self):
        with pytest.raises(ValidationError, match="at least one"):
            VitalSigns()

    def test_blood_pressure_pair(self):
        with pytest.raises(ValidationError, match="both systolic and diastolic"):
            VitalSigns(systolic=120)
        assert VitalSigns(systolic=120, diastolic=80).blood_pressure == "120/80"

    def test_implausible_value_rejected(self):
        with pytest.raises(ValidationError):
            VitalSigns(spo2=140)


class TestChecklistDraft:
    def test_blank_components_dropped(self):
        draft = ChecklistItemDraft(
            name="saline 0.9%",
            components=[CompositeComponent(name="potassium chloride", quantity="10 mL"),
                        CompositeComponent(name="  ")],
        )
        assert [c.name for c in draft.components] == ["potassium chloride"]

    def test_name_required(self):
        with pytest.raises(ValidationError):
            ChecklistItemDraft(name="")


class TestRecords:
    def test_blank_note_rejected(self):
        with pytest.raises(ValidationError, match="blank"):
            NursingNote(encounter_id="enc-1", author="nursing-01", text="   ")

    def test_transfer_requires_all_fields(self):
        with pytest.raises(ValidationError):
            TransferDetails(destination="Hospital Sul", regulation_code="", transport="basic")
