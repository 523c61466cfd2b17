"""
Encounter Timeline.

Rebuilds one encounter's history from the audit log for review: every
recorded step in order, the total time the patient spent in waiting statuses,
and the total time spent absent.

Absence is measured from the episode's absence anchor to the recall that
brought the patient back for good (or to cancellation).  Re-paging an
absentee or a second absence in the same episode does not restart the clock.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from attendflow.audit import AuditEntry, AuditLog, FlowEventType
from attendflow.models import Encounter, EncounterStatus, WAITING_STATUSES, utcnow

_DESCRIPTIONS: dict[FlowEventType, str] = {
    FlowEventType.ENCOUNTER_REGISTERED: "Arrival registered at reception.",
    FlowEventType.PATIENT_CALLED: "Patient paged by {actor}.",
    FlowEventType.PATIENT_RECALLED: "Absent patient recalled by {actor}.",
    FlowEventType.MARKED_ABSENT: "Patient did not answer the call at {actor}.",
    FlowEventType.ENCOUNTER_CANCELLED: "Cancelled after absence.",
    FlowEventType.TRIAGE_COMPLETED: "Triage completed by {actor}.",
    FlowEventType.ACUITY_REVISED: "Acuity revised by {actor}.",
    FlowEventType.SWAPPED_OUT: "Returned to the queue by {actor}.",
    FlowEventType.SWAP_OUT_BLOCKED: "Swap-out by {actor} blocked by examiner lock.",
    FlowEventType.CONSULTATION_FINALIZED: "Consultation finalized by {actor}.",
    FlowEventType.OBSERVATION_DISCHARGED: "Discharged from observation.",
    FlowEventType.REEVALUATION_REQUESTED: "Sent back for physician reevaluation.",
    FlowEventType.BED_TRANSFER_COMPLETED: "Transferred to an inpatient bed.",
    FlowEventType.TRANSITION_REJECTED: "Action rejected at {actor}.",
}

# Status the encounter is in after each event; None where the event does not
# move it.  Entries that carry their resulting status in metadata are
# resolved in _status_after().
_RESULTING_STATUS: dict[FlowEventType, Optional[EncounterStatus]] = {
    FlowEventType.ENCOUNTER_REGISTERED: EncounterStatus.AWAITING_TRIAGE,
    FlowEventType.TRIAGE_COMPLETED: EncounterStatus.AWAITING_PHYSICIAN,
    FlowEventType.REEVALUATION_REQUESTED: EncounterStatus.AWAITING_REEVALUATION,
    FlowEventType.OBSERVATION_DISCHARGED: EncounterStatus.FINALIZED,
    FlowEventType.BED_TRANSFER_COMPLETED: EncounterStatus.FINALIZED,
    FlowEventType.ENCOUNTER_CANCELLED: EncounterStatus.CANCELLED,
}


class EncounterTimeline:
    """Ordered history and derived durations for one encounter."""

    def __init__(
        self,
        encounter_id: str,
        current_status: str,
        events: list[dict[str, Any]],
        total_wait: timedelta,
        total_absence: timedelta,
        generated_at: datetime,
    ) -> None:
        self.encounter_id = encounter_id
        self.current_status = current_status
        self.events = events
        self.total_wait = total_wait
        self.total_absence = total_absence
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "encounter_id": self.encounter_id,
            "current_status": self.current_status,
            "events": self.events,
            "total_wait_seconds": self.total_wait.total_seconds(),
            "total_absence_seconds": self.total_absence.total_seconds(),
            "generated_at": self.generated_at.isoformat(),
        }

    def __repr__(self) -> str:
        return (
            f"EncounterTimeline(encounter_id={self.encounter_id}, "
            f"events={len(self.events)}, status={self.current_status})"
        )


def _status_after(entry: AuditEntry) -> Optional[EncounterStatus]:
    if entry.event_type == FlowEventType.CONSULTATION_FINALIZED:
        return EncounterStatus(entry.metadata["outcome"])
    if entry.event_type in (
        FlowEventType.PATIENT_CALLED,
        FlowEventType.PATIENT_RECALLED,
        FlowEventType.MARKED_ABSENT,
        FlowEventType.SWAPPED_OUT,
    ):
        return EncounterStatus(entry.metadata["status"])
    return _RESULTING_STATUS.get(entry.event_type)


def _total_wait(entries: list[AuditEntry], now: datetime) -> timedelta:
    total = timedelta(0)
    waiting_since: Optional[datetime] = None
    for entry in entries:
        status = _status_after(entry)
        if status is None:
            continue
        if waiting_since is not None and status not in WAITING_STATUSES:
            total += entry.timestamp - waiting_since
            waiting_since = None
        elif waiting_since is None and status in WAITING_STATUSES:
            waiting_since = entry.timestamp
    if waiting_since is not None:
        total += now - waiting_since
    return total


def _total_absence(entries: list[AuditEntry], encounter: Encounter, now: datetime) -> timedelta:
    total = timedelta(0)
    anchor: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    for entry in entries:
        if entry.event_type == FlowEventType.MARKED_ABSENT:
            if anchor is None:
                anchor = datetime.fromisoformat(entry.metadata["absence_anchor"])
            returned_at = None
        elif entry.event_type == FlowEventType.PATIENT_RECALLED and anchor is not None:
            returned_at = entry.timestamp
        elif entry.event_type == FlowEventType.ENCOUNTER_CANCELLED and anchor is not None:
            total += entry.timestamp - anchor
            anchor = None
        elif entry.event_type in (
            FlowEventType.TRIAGE_COMPLETED,
            FlowEventType.CONSULTATION_FINALIZED,
        ) and anchor is not None:
            total += (returned_at or entry.timestamp) - anchor
            anchor = None
            returned_at = None
    if anchor is not None:
        if encounter.status.is_absent:
            total += now - anchor
        elif returned_at is not None:
            total += returned_at - anchor
    return total


def build_encounter_timeline(
    encounter: Encounter,
    audit_log: AuditLog,
    now: Optional[datetime] = None,
) -> EncounterTimeline:
    """Build the timeline of ``encounter`` from its facility's audit entries.

    Args:
        encounter: Current state of the encounter.
        audit_log: Log the flow engine wrote to.
        now: Reference time for open intervals; defaults to the current time.
    """
    now = now or utcnow()
    entries = audit_log.query(encounter.facility_id, encounter_id=encounter.encounter_id)
    entries.sort(key=lambda e: e.timestamp)

    events = []
    for entry in entries:
        template = _DESCRIPTIONS.get(entry.event_type, entry.event_type.value.replace("_", " ").capitalize() + ".")
        events.append({
            "event": entry.event_type.value,
            "timestamp": entry.timestamp.isoformat(),
            "actor": entry.actor_id,
            "description": template.format(actor=entry.actor_id),
        })

    return EncounterTimeline(
        encounter_id=encounter.encounter_id,
        current_status=encounter.status.value,
        events=events,
        total_wait=_total_wait(entries, now),
        total_absence=_total_absence(entries, encounter, now),
        generated_at=now,
    )
