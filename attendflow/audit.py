"""
Append-Only, Tamper-Evident Flow Audit Log (Hash-Chained).

Every flow action is recorded as a structured, append-only audit entry:
arrivals, calls and recalls, absences, swap-outs (performed or blocked by the
examiner lock), consultation outcomes, checklist administrations, nursing
records and rejected transitions.  Entries are linked via a SHA-256 hash
chain; if any entry is modified after the fact, ``verify_chain()`` reports
the first broken link.

All queries and exports are scoped by ``facility_id``.  Exports replace
patient-identifying metadata with ``[REDACTED]`` markers.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class FlowEventType(str, enum.Enum):
    """Every auditable action in the flow engine."""

    # Encounter lifecycle
    ENCOUNTER_REGISTERED = "ENCOUNTER_REGISTERED"
    PATIENT_CALLED = "PATIENT_CALLED"
    PATIENT_RECALLED = "PATIENT_RECALLED"
    MARKED_ABSENT = "MARKED_ABSENT"
    ENCOUNTER_CANCELLED = "ENCOUNTER_CANCELLED"
    TRIAGE_COMPLETED = "TRIAGE_COMPLETED"
    ACUITY_REVISED = "ACUITY_REVISED"
    SWAPPED_OUT = "SWAPPED_OUT"
    SWAP_OUT_BLOCKED = "SWAP_OUT_BLOCKED"
    CONSULTATION_FINALIZED = "CONSULTATION_FINALIZED"
    OBSERVATION_DISCHARGED = "OBSERVATION_DISCHARGED"
    REEVALUATION_REQUESTED = "REEVALUATION_REQUESTED"
    BED_TRANSFER_COMPLETED = "BED_TRANSFER_COMPLETED"
    TRANSITION_REJECTED = "TRANSITION_REJECTED"

    # Clinical documentation
    NARRATIVE_SAVED = "NARRATIVE_SAVED"
    DOCUMENT_REQUESTED = "DOCUMENT_REQUESTED"

    # Checklist
    CHECKLIST_ITEM_ADDED = "CHECKLIST_ITEM_ADDED"
    CHECKLIST_ITEM_UPDATED = "CHECKLIST_ITEM_UPDATED"
    CHECKLIST_ITEM_REMOVED = "CHECKLIST_ITEM_REMOVED"
    CHECKLIST_ITEM_ADMINISTERED = "CHECKLIST_ITEM_ADMINISTERED"

    # Nursing
    VITALS_RECORDED = "VITALS_RECORDED"
    NURSING_NOTE_ADDED = "NURSING_NOTE_ADDED"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit log entry, hash-linked to its predecessor."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    facility_id: str = Field(
        ...,
        description="Facility identifier -- scopes queries and exports.",
    )
    actor_id: str = Field(
        ...,
        description="Station id or operator id that performed the action.",
    )
    actor_role: str = Field(
        ...,
        description="Role of the actor (a StationRole value, or SYSTEM).",
    )
    event_type: FlowEventType
    target_entity: str = Field(
        default="",
        description="Encounter id or checklist item id.",
    )
    encounter_id: str = Field(default="")
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry; empty for the first entry.",
    )

    def canonical_bytes(self) -> bytes:
        """Deterministic byte representation for hashing (sorted JSON)."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "facility_id": self.facility_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "event_type": self.event_type.value,
            "target_entity": self.target_entity,
            "encounter_id": self.encounter_id,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

_IDENTIFIER_PATTERNS: dict[str, re.Pattern] = {
    "document": re.compile(r"\b\d{3}\.\d{3}\.\d{3}-\d{2}\b"),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b"),
}

_IDENTIFYING_KEYS = {"patient_display_name", "display_name", "name", "document_id",
                     "birth_date", "patient_ref", "phone", "email", "address"}


def redact_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``metadata`` with patient identifiers replaced.

    Keys known to carry identity are blanked entirely; string values are
    scrubbed of document numbers, phone numbers and e-mail addresses.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _IDENTIFYING_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            scrubbed = value
            for pattern_name, pattern in _IDENTIFIER_PATTERNS.items():
                scrubbed = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", scrubbed)
            redacted[key] = scrubbed
        elif isinstance(value, dict):
            redacted[key] = redact_metadata(value)
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit log with SHA-256 hash chaining.

    There are no ``update()`` or ``delete()`` methods.  ``query()`` and
    ``export_for_review()`` are always scoped by ``facility_id`` and return
    copies.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Link ``entry`` to the current chain head and append it."""
        entry.previous_hash = self._hashes[-1] if self._hashes else ""
        self._entries.append(entry)
        self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        facility_id: str,
        event_type: FlowEventType,
        actor_id: str,
        actor_role: str,
        encounter_id: str = "",
        target_entity: str = "",
        metadata: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEntry:
        """Build and append an entry in one call."""
        entry = AuditEntry(
            facility_id=facility_id,
            actor_id=actor_id,
            actor_role=actor_role,
            event_type=event_type,
            encounter_id=encounter_id,
            target_entity=target_entity or encounter_id,
            metadata=metadata or {},
        )
        if timestamp is not None:
            entry.timestamp = timestamp
        return self.append(entry)

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)``; ``broken_at`` is the index of the first
            broken link, or None when the chain is intact.
        """
        for i, entry in enumerate(self._entries):
            if i == 0:
                if entry.previous_hash != "":
                    return (False, 0)
            elif entry.previous_hash != self._entries[i - 1].compute_hash():
                return (False, i)
            if self._hashes[i] != entry.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        facility_id: str,
        event_type: Optional[FlowEventType] = None,
        encounter_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> list[AuditEntry]:
        """Return copies of matching entries, in append order."""
        results = []
        for entry in self._entries:
            if entry.facility_id != facility_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if encounter_id is not None and entry.encounter_id != encounter_id:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        facility_id: str,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable, redacted export bundle."""
        entries = self.query(facility_id, time_start=time_start, time_end=time_end)

        exported = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            entry_dict["metadata"] = redact_metadata(entry.metadata)
            exported.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "facility_id": facility_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(exported),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": exported,
        }

    def __len__(self) -> int:
        return len(self._entries)
