"""
Tests for attendflow.audit -- Hash-Chained Flow Audit Log.

Covers: chain linking and verification, tamper detection, facility-scoped
queries by encounter, event type, actor and time, patient-identifier
redaction on export, and entries written by the flow engine itself.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from attendflow.audit import AuditEntry, AuditLog, FlowEventType, redact_metadata

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


def _record(
    log: AuditLog,
    facility_id: str = "upa_a",
    event_type: FlowEventType = FlowEventType.PATIENT_CALLED,
    actor_id: str = "triage-01",
    encounter_id: str = "enc-1",
    metadata: dict | None = None,
    timestamp: datetime = T0,
) -> AuditEntry:
    return log.record(
        facility_id=facility_id,
        event_type=event_type,
        actor_id=actor_id,
        actor_role="triage",
        encounter_id=encounter_id,
        metadata=metadata,
        timestamp=timestamp,
    )


# ---------------------------------------------------------------------------
# 1. Chain
# ---------------------------------------------------------------------------

class TestChain:
    def test_entries_link_to_predecessor(self):
        log = AuditLog()
        first = _record(log)
        second = _record(log, actor_id="triage-02")
        assert first.previous_hash == ""
        assert second.previous_hash == first.compute_hash()
        assert len(log) == 2

    def test_target_defaults_to_encounter(self):
        log = AuditLog()
        entry = _record(log, encounter_id="enc-9")
        assert entry.target_entity == "enc-9"

    def test_valid_chain(self):
        log = AuditLog()
        for n in range(6):
            _record(log, encounter_id=f"enc-{n}")
        assert log.verify_chain() == (True, None)

    def test_empty_log_is_valid(self):
        assert AuditLog().verify_chain() == (True, None)

    def test_tampered_metadata_detected(self):
        log = AuditLog()
        _record(log)
        _record(log, metadata={"call_count": 1})
        _record(log)

        log._entries[1].metadata = {"call_count": 9}

        valid, broken_at = log.verify_chain()
        assert valid is False
        assert broken_at in (1, 2)

    def test_tampered_first_entry_detected(self):
        log = AuditLog()
        _record(log)
        _record(log)
        log._entries[0].actor_id = "someone-else"
        valid, _ = log.verify_chain()
        assert valid is False


# ---------------------------------------------------------------------------
# 2. Queries
# ---------------------------------------------------------------------------

class TestQueries:
    def test_scoped_by_facility(self):
        log = AuditLog()
        _record(log, facility_id="upa_a")
        _record(log, facility_id="upa_b")
        _record(log, facility_id="upa_a")
        assert len(log.query("upa_a")) == 2
        assert len(log.query("upa_b")) == 1

    def test_by_encounter_and_event(self):
        log = AuditLog()
        _record(log, encounter_id="enc-1")
        _record(log, encounter_id="enc-1", event_type=FlowEventType.MARKED_ABSENT)
        _record(log, encounter_id="enc-2", event_type=FlowEventType.MARKED_ABSENT)

        assert len(log.query("upa_a", encounter_id="enc-1")) == 2
        absent = log.query("upa_a", event_type=FlowEventType.MARKED_ABSENT)
        assert [e.encounter_id for e in absent] == ["enc-1", "enc-2"]

    def test_by_actor_and_time(self):
        log = AuditLog()
        _record(log, actor_id="triage-01", timestamp=T0)
        _record(log, actor_id="triage-02", timestamp=T0 + timedelta(hours=1))
        _record(log, actor_id="triage-01", timestamp=T0 + timedelta(hours=2))

        assert len(log.query("upa_a", actor_id="triage-02")) == 1
        window = log.query(
            "upa_a",
            time_start=T0 + timedelta(minutes=30),
            time_end=T0 + timedelta(minutes=90),
        )
        assert [e.actor_id for e in window] == ["triage-02"]

    def test_query_returns_copies(self):
        log = AuditLog()
        _record(log, metadata={"status": "in_triage"})
        log.query("upa_a")[0].metadata["status"] = "changed"
        assert log.verify_chain() == (True, None)


# ---------------------------------------------------------------------------
# 3. Redaction and export
# ---------------------------------------------------------------------------

class TestRedaction:
    def test_identifying_keys_blanked(self):
        redacted = redact_metadata({
            "patient_display_name": "Ana Lima",
            "patient_ref": "patient-77",
            "status": "in_triage",
        })
        assert redacted["patient_display_name"] == "[REDACTED]"
        assert redacted["patient_ref"] == "[REDACTED]"
        assert redacted["status"] == "in_triage"

    def test_patterns_scrubbed_from_values(self):
        redacted = redact_metadata({"reason": "document 123.456.789-00, call 555-123-4567"})
        assert "123.456.789-00" not in redacted["reason"]
        assert "[REDACTED-DOCUMENT]" in redacted["reason"]
        assert "[REDACTED-PHONE]" in redacted["reason"]

    def test_nested_metadata(self):
        redacted = redact_metadata({"transfer": {"name": "Ana", "destination": "Hospital Sul"}})
        assert redacted["transfer"] == {"name": "[REDACTED]", "destination": "Hospital Sul"}

    def test_export(self):
        log = AuditLog()
        _record(log, metadata={"patient_display_name": "Ana Lima", "call_count": 1})
        _record(log, facility_id="upa_b")

        export = log.export_for_review("upa_a")
        meta = export["export_metadata"]
        assert meta["facility_id"] == "upa_a"
        assert meta["entry_count"] == 1
        assert meta["chain_integrity"] == "VALID"
        entry = export["entries"][0]
        assert entry["metadata"] == {"patient_display_name": "[REDACTED]", "call_count": 1}
        assert entry["event_type"] == "PATIENT_CALLED"


# ---------------------------------------------------------------------------
# 4. Entries written by the flow engine
# ---------------------------------------------------------------------------

class TestFlowAuditing:
    @pytest.mark.asyncio
    async def test_every_step_recorded(self, engine):
        encounter = await engine.arrive("Ana Lima")
        await engine.flow.call(encounter.encounter_id, "triage-01")
        await engine.flow.mark_absent(encounter.encounter_id, "triage-01")

        events = [e.event_type for e in engine.audit_log.query(
            "upa_test", encounter_id=encounter.encounter_id
        )]
        assert events == [
            FlowEventType.ENCOUNTER_REGISTERED,
            FlowEventType.PATIENT_CALLED,
            FlowEventType.MARKED_ABSENT,
        ]
        assert engine.audit_log.verify_chain() == (True, None)

    @pytest.mark.asyncio
    async def test_export_hides_patient_name(self, engine):
        encounter = await engine.arrive("Ana Lima")
        await engine.flow.call(encounter.encounter_id, "triage-01")
        export = engine.audit_log.export_for_review("upa_test")
        assert "Ana Lima" not in str(export)
