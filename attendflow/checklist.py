"""
Checklist Subsystem -- administrable orders attached to an encounter.

Physicians add orders while the encounter is in a medication-eligible status;
nursing stations mark them administered.  ``administered`` is monotonic: a
second administration raises ``AlreadyAdministeredError`` and leaves
``administered_at`` as it was, and an administered item can no longer be
edited or removed.

Progress is derived on demand from the items; nothing is stored for it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from attendflow.audit import AuditLog, FlowEventType
from attendflow.config import FacilityPolicy, StationConfig
from attendflow.errors import AlreadyAdministeredError, PreconditionFailedError
from attendflow.models import (
    DESCRIPTIVE_FIELDS,
    ChecklistItem,
    ChecklistItemDraft,
    Encounter,
)
from attendflow.rbac import require_permission
from attendflow.store import EncounterStore

logger = logging.getLogger(__name__)


class ChecklistProgress(BaseModel):
    administered: int = 0
    total: int = 0

    @property
    def ratio(self) -> float:
        if self.total == 0:
            return 0.0
        return self.administered / self.total

    @property
    def percent(self) -> int:
        return round(self.ratio * 100)

    @property
    def complete(self) -> bool:
        return self.total > 0 and self.administered == self.total


class ChecklistService:
    """Adds, edits, removes and administers checklist items."""

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

    def _check_facility(self, encounter: Encounter) -> None:
        if encounter.facility_id != self._policy.facility_id:
            raise PreconditionFailedError(
                f"Encounter {encounter.encounter_id} belongs to facility "
                f"'{encounter.facility_id}', not '{self._policy.facility_id}'.",
                entity_id=encounter.encounter_id,
            )

    async def _scoped_item(self, item_id: str) -> ChecklistItem:
        """Read an item, rejecting it if its encounter is outside this facility."""
        item = await self._store.get_item(item_id)
        self._check_facility(await self._store.get_encounter(item.encounter_id))
        return item

    def _audit(
        self,
        event_type: FlowEventType,
        item: ChecklistItem,
        station: StationConfig,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._audit_log.record(
            facility_id=self._policy.facility_id,
            event_type=event_type,
            actor_id=station.station_id,
            actor_role=station.role.value,
            encounter_id=item.encounter_id,
            target_entity=item.item_id,
            metadata={"name": item.name, **(metadata or {})},
            timestamp=self._store.now(),
        )

    async def add_item(
        self,
        encounter_id: str,
        draft: ChecklistItemDraft,
        station_id: str,
    ) -> ChecklistItem:
        """Attach a new, not yet administered order to an encounter.

        The eligibility check runs under the encounter's row lock, so a
        transition out of an eligible status cannot slip in before the insert.

        Raises:
            PreconditionFailedError: The encounter belongs to another facility
                or is not in one of the policy's medication-eligible statuses.
        """
        station = self._station(station_id, "manage_checklist")

        def guard(encounter: Encounter) -> None:
            self._check_facility(encounter)
            if encounter.status not in self._policy.medication_eligible_statuses:
                raise PreconditionFailedError(
                    f"Checklist items cannot be added while encounter {encounter_id} is "
                    f"{encounter.status.value}. Eligible: "
                    f"{sorted(s.value for s in self._policy.medication_eligible_statuses)}",
                    entity_id=encounter_id,
                )

        item = ChecklistItem(encounter_id=encounter_id, **draft.model_dump())
        committed = await self._store.insert_item(item, guard)
        self._audit(FlowEventType.CHECKLIST_ITEM_ADDED, committed, station)
        logger.info("Added checklist item %s to %s", committed.item_id, encounter_id)
        return committed

    async def administer(self, item_id: str, station_id: str) -> ChecklistItem:
        """Mark an item administered.

        Raises:
            AlreadyAdministeredError: The item was administered before.  The
                stored ``administered_at`` is not touched.
        """
        station = self._station(station_id, "administer_checklist")
        await self._scoped_item(item_id)

        def mutate(item: ChecklistItem, now: datetime) -> None:
            if item.administered:
                raise AlreadyAdministeredError(
                    f"Checklist item {item.item_id} was already administered at "
                    f"{item.administered_at.isoformat() if item.administered_at else 'unknown time'}.",
                    entity_id=item.item_id,
                )
            item.administered = True
            item.administered_at = now
            item.administered_by = station.station_id

        try:
            item = await self._store.update_item(item_id, mutate)
        except AlreadyAdministeredError:
            logger.info("Repeat administration of %s ignored", item_id)
            raise
        self._audit(
            FlowEventType.CHECKLIST_ITEM_ADMINISTERED,
            item,
            station,
            metadata={"administered_at": item.administered_at.isoformat()},
        )
        return item

    async def update_item(
        self,
        item_id: str,
        changes: dict[str, Any],
        station_id: str,
    ) -> ChecklistItem:
        """Edit descriptive fields of an item that has not been administered."""
        station = self._station(station_id, "manage_checklist")
        unknown = sorted(set(changes) - DESCRIPTIVE_FIELDS)
        if unknown:
            raise PreconditionFailedError(
                f"Only descriptive fields may be edited; got {unknown}.",
                entity_id=item_id,
            )
        await self._scoped_item(item_id)

        def mutate(item: ChecklistItem, now: datetime) -> None:
            if item.administered:
                raise PreconditionFailedError(
                    f"Checklist item {item.item_id} is administered and can no longer change.",
                    entity_id=item.item_id,
                )
            current = {name: getattr(item, name) for name in DESCRIPTIVE_FIELDS}
            draft = ChecklistItemDraft.model_validate({**current, **changes})
            for name in DESCRIPTIVE_FIELDS:
                setattr(item, name, getattr(draft, name))

        item = await self._store.update_item(item_id, mutate)
        self._audit(
            FlowEventType.CHECKLIST_ITEM_UPDATED,
            item,
            station,
            metadata={"fields": sorted(changes)},
        )
        return item

    async def remove_item(self, item_id: str, station_id: str) -> ChecklistItem:
        station = self._station(station_id, "manage_checklist")
        await self._scoped_item(item_id)

        def guard(item: ChecklistItem) -> None:
            if item.administered:
                raise PreconditionFailedError(
                    f"Checklist item {item.item_id} is administered and cannot be removed.",
                    entity_id=item.item_id,
                )

        removed = await self._store.delete_item(item_id, guard)
        self._audit(FlowEventType.CHECKLIST_ITEM_REMOVED, removed, station)
        logger.info("Removed checklist item %s from %s", item_id, removed.encounter_id)
        return removed

    async def list_items(self, encounter_id: str) -> list[ChecklistItem]:
        return await self._store.list_items(encounter_id)

    async def progress(self, encounter_id: str) -> ChecklistProgress:
        items = await self._store.list_items(encounter_id)
        return ChecklistProgress(
            administered=sum(1 for item in items if item.administered),
            total=len(items),
        )
