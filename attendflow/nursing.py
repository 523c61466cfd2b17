"""
Nursing records: structured vital signs and free-text notes.

Both are append-only children of an encounter.  They can be written while the
encounter is open; a closed encounter accepts no new records.
"""

from __future__ import annotations

import logging
from typing import Optional

from attendflow.audit import AuditLog, FlowEventType
from attendflow.config import FacilityPolicy, StationConfig
from attendflow.errors import PreconditionFailedError
from attendflow.models import NursingNote, VitalSigns, VitalsRecord
from attendflow.rbac import require_permission
from attendflow.store import EncounterStore

logger = logging.getLogger(__name__)


class NursingService:
    def __init__(self, store: EncounterStore, policy: FacilityPolicy, audit_log: AuditLog) -> None:
        self._store = store
        self._policy = policy
        self._audit_log = audit_log

    def _station(self, station_id: str, action: str) -> StationConfig:
        try:
            station = self._policy.station(station_id)
        except KeyError as exc:
            raise PreconditionFailedError(str(exc.args[0]), entity_id=station_id) from exc
        require_permission(station.role, action)
        return station

    async def _require_open(self, encounter_id: str) -> None:
        encounter = await self._store.get_encounter(encounter_id)
        if encounter.facility_id != self._policy.facility_id:
            raise PreconditionFailedError(
                f"Encounter {encounter_id} belongs to facility "
                f"'{encounter.facility_id}', not '{self._policy.facility_id}'.",
                entity_id=encounter_id,
            )
        if encounter.status.is_terminal:
            raise PreconditionFailedError(
                f"Encounter {encounter_id} is closed ({encounter.status.value}).",
                entity_id=encounter_id,
            )

    async def record_vitals(
        self,
        encounter_id: str,
        vitals: VitalSigns,
        station_id: str,
    ) -> VitalsRecord:
        station = self._station(station_id, "record_vitals")
        await self._require_open(encounter_id)
        if not vitals.recorded_by:
            vitals = vitals.model_copy(update={"recorded_by": station.station_id})
        record = await self._store.insert_vitals(
            VitalsRecord(encounter_id=encounter_id, vitals=vitals)
        )
        self._audit_log.record(
            facility_id=self._policy.facility_id,
            event_type=FlowEventType.VITALS_RECORDED,
            actor_id=station.station_id,
            actor_role=station.role.value,
            encounter_id=encounter_id,
            target_entity=record.record_id,
            metadata={"measured_at": vitals.measured_at.isoformat()},
            timestamp=self._store.now(),
        )
        logger.info("Recorded vitals %s for %s", record.record_id, encounter_id)
        return record

    async def add_note(
        self,
        encounter_id: str,
        text: str,
        station_id: str,
        author: Optional[str] = None,
    ) -> NursingNote:
        """Append a note.  ``author`` defaults to the station id."""
        station = self._station(station_id, "add_nursing_note")
        await self._require_open(encounter_id)
        note = await self._store.insert_note(
            NursingNote(encounter_id=encounter_id, author=author or station.station_id, text=text)
        )
        self._audit_log.record(
            facility_id=self._policy.facility_id,
            event_type=FlowEventType.NURSING_NOTE_ADDED,
            actor_id=station.station_id,
            actor_role=station.role.value,
            encounter_id=encounter_id,
            target_entity=note.note_id,
            timestamp=self._store.now(),
        )
        return note

    async def list_vitals(self, encounter_id: str) -> list[VitalsRecord]:
        return await self._store.list_vitals(encounter_id)

    async def latest_vitals(self, encounter_id: str) -> Optional[VitalsRecord]:
        records = await self._store.list_vitals(encounter_id)
        return records[0] if records else None

    async def list_notes(self, encounter_id: str) -> list[NursingNote]:
        return await self._store.list_notes(encounter_id)
