"""
Tests for attendflow.nursing -- vital signs and nursing notes.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from attendflow.audit import FlowEventType
from attendflow.errors import EntityNotFoundError, PreconditionFailedError
from attendflow.models import Acuity, Encounter, EncounterStatus, FinalizeOutcome, VitalSigns

from conftest import Engine, make_patient


async def _observed(engine: Engine):
    encounter = await engine.arrive("Ana Lima")
    await engine.flow.call(encounter.encounter_id, "triage-01")
    await engine.flow.complete_triage(encounter.encounter_id, "triage-01", Acuity.ORANGE)
    await engine.flow.call(encounter.encounter_id, "physician-01")
    return await engine.flow.finalize_consultation(
        encounter.encounter_id, "physician-01", FinalizeOutcome.OBSERVATION
    )


class TestVitalSigns:
    def test_requires_a_measurement(self):
        with pytest.raises(ValidationError, match="at least one measurement"):
            VitalSigns()

    def test_blood_pressure_needs_both_values(self):
        with pytest.raises(ValidationError, match="both systolic and diastolic"):
            VitalSigns(systolic=120)

    def test_plausibility_bounds(self):
        with pytest.raises(ValidationError):
            VitalSigns(spo2=140)

    def test_blood_pressure_label(self):
        assert VitalSigns(systolic=130, diastolic=85).blood_pressure == "130/85"
        assert VitalSigns(heart_rate=70).blood_pressure == ""


class TestRecordVitals:
    @pytest.mark.asyncio
    async def test_record_and_list_newest_first(self, engine):
        encounter = await _observed(engine)
        start = engine.clock.current
        await engine.nursing.record_vitals(
            encounter.encounter_id, VitalSigns(heart_rate=110, measured_at=start), "nursing-01"
        )
        await engine.nursing.record_vitals(
            encounter.encounter_id,
            VitalSigns(heart_rate=92, measured_at=start + timedelta(hours=1)),
            "nursing-01",
        )

        records = await engine.nursing.list_vitals(encounter.encounter_id)
        assert [r.vitals.heart_rate for r in records] == [92, 110]
        latest = await engine.nursing.latest_vitals(encounter.encounter_id)
        assert latest.vitals.heart_rate == 92
        assert latest.vitals.recorded_by == "nursing-01"

    @pytest.mark.asyncio
    async def test_triage_may_record_vitals(self, engine):
        encounter = await engine.arrive("Ana Lima")
        record = await engine.nursing.record_vitals(
            encounter.encounter_id, VitalSigns(temperature=38.4), "triage-01"
        )
        assert record.version == 1
        assert len(engine.audit_log.query("upa_test", event_type=FlowEventType.VITALS_RECORDED)) == 1

    @pytest.mark.asyncio
    async def test_bed_desk_cannot_record(self, engine):
        encounter = await engine.arrive("Ana Lima")
        with pytest.raises(PermissionError):
            await engine.nursing.record_vitals(
                encounter.encounter_id, VitalSigns(glucose=98), "bed-desk-01"
            )

    @pytest.mark.asyncio
    async def test_closed_encounter_rejects_records(self, engine):
        encounter = await _observed(engine)
        await engine.flow.discharge_from_observation(encounter.encounter_id, "nursing-01")
        with pytest.raises(PreconditionFailedError, match="closed"):
            await engine.nursing.record_vitals(
                encounter.encounter_id, VitalSigns(heart_rate=80), "nursing-01"
            )

    @pytest.mark.asyncio
    async def test_unknown_encounter(self, engine):
        with pytest.raises(EntityNotFoundError):
            await engine.nursing.record_vitals("missing", VitalSigns(heart_rate=80), "nursing-01")

    @pytest.mark.asyncio
    async def test_other_facility_encounter_rejected(self, engine):
        foreign = await engine.store.insert_encounter(Encounter(
            facility_id="upa_other", patient_ref="p9", patient=make_patient("Outsider"),
            status=EncounterStatus.IN_OBSERVATION,
        ))
        with pytest.raises(PreconditionFailedError, match="belongs to facility"):
            await engine.nursing.record_vitals(
                foreign.encounter_id, VitalSigns(heart_rate=80), "nursing-01"
            )
        with pytest.raises(PreconditionFailedError, match="belongs to facility"):
            await engine.nursing.add_note(foreign.encounter_id, "Patient resting.", "nursing-01")
        assert await engine.nursing.list_vitals(foreign.encounter_id) == []
        assert await engine.nursing.list_notes(foreign.encounter_id) == []


class TestNotes:
    @pytest.mark.asyncio
    async def test_notes_in_written_order(self, engine):
        encounter = await _observed(engine)
        await engine.nursing.add_note(encounter.encounter_id, "Patient resting.", "nursing-01")
        engine.clock.advance(minutes=20)
        await engine.nursing.add_note(
            encounter.encounter_id, "Pain improved.", "nursing-01", author="nurse.carla"
        )

        notes = await engine.nursing.list_notes(encounter.encounter_id)
        assert [n.text for n in notes] == ["Patient resting.", "Pain improved."]
        assert [n.author for n in notes] == ["nursing-01", "nurse.carla"]

    @pytest.mark.asyncio
    async def test_blank_note_rejected(self, engine):
        encounter = await _observed(engine)
        with pytest.raises(ValidationError):
            await engine.nursing.add_note(encounter.encounter_id, "   ", "nursing-01")
