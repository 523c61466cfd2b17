"""
Encounter Store -- the authoritative record of encounters and their children.

The store is the only shared mutable resource.  It offers atomic single-row
updates: a write takes the row's lock, re-reads the committed row, applies a
caller-supplied mutation to a private copy, re-validates the result, and
commits it with a store-assigned ``updated_at`` and ``version``.  When a
mutation changes ``status`` the store also assigns ``state_changed_at``.

If a mutation raises, nothing is committed.  That is how the flow state
machine keeps precondition checks and writes on the same snapshot.

Reads always return deep copies; callers never hold a reference into the
committed rows.  Every committed write is published to the change notifier
after the row lock is released.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from attendflow.errors import (
    ConcurrentModificationError,
    EntityNotFoundError,
    StoreUnavailableError,
)
from attendflow.models import (
    ChecklistItem,
    Encounter,
    EncounterStatus,
    NursingNote,
    VitalsRecord,
    utcnow,
)
from attendflow.notifier import ChangeEvent, ChangeKind, ChangeNotifier, Collection

logger = logging.getLogger(__name__)

EncounterMutator = Callable[[Encounter, datetime], None]
ItemMutator = Callable[[ChecklistItem, datetime], None]


class EncounterStore:
    """In-process store for encounters, checklist items, vitals and notes."""

    def __init__(
        self,
        notifier: Optional[ChangeNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._notifier = notifier
        self._clock = clock
        self._encounters: dict[str, Encounter] = {}
        self._items: dict[str, ChecklistItem] = {}
        self._vitals: dict[str, VitalsRecord] = {}
        self._notes: dict[str, NursingNote] = {}
        self._row_locks: dict[str, asyncio.Lock] = {}
        self._available = True

    # -- helpers --

    def now(self) -> datetime:
        """Store time.  Every stored timestamp comes from this clock."""
        return self._clock()

    def set_available(self, available: bool) -> None:
        """Toggle availability, e.g. while the backing service is in maintenance."""
        if available != self._available:
            logger.warning("Encounter store is now %s", "available" if available else "UNAVAILABLE")
        self._available = available

    def _check_available(self) -> None:
        if not self._available:
            raise StoreUnavailableError("Encounter store is unavailable. Try again shortly.")

    def _lock(self, key: str) -> asyncio.Lock:
        return self._row_locks.setdefault(key, asyncio.Lock())

    def _existing_lock(self, rows: dict, key: str, label: str) -> asyncio.Lock:
        """Row lock for ``key``; unknown rows raise before a lock is created."""
        self._check_available()
        if key not in rows:
            raise EntityNotFoundError(f"Unknown {label} {key}", entity_id=key)
        return self._lock(key)

    async def _publish(
        self,
        collection: Collection,
        kind: ChangeKind,
        entity_id: str,
        encounter_id: str,
        version: int,
        occurred_at: datetime,
    ) -> None:
        if self._notifier is None:
            return
        await self._notifier.publish(ChangeEvent(
            collection=collection,
            kind=kind,
            entity_id=entity_id,
            encounter_id=encounter_id,
            version=version,
            occurred_at=occurred_at,
        ))

    # -- encounters --

    async def insert_encounter(self, encounter: Encounter) -> Encounter:
        """Commit a new encounter.  Its timestamps and version are store-assigned."""
        async with self._lock(encounter.encounter_id):
            self._check_available()
            if encounter.encounter_id in self._encounters:
                raise ConcurrentModificationError(
                    f"Encounter {encounter.encounter_id} already exists.",
                    entity_id=encounter.encounter_id,
                )
            now = self.now()
            row = encounter.model_copy(deep=True)
            row.state_changed_at = now
            row.updated_at = now
            row.version = 1
            row = Encounter.model_validate(row.model_dump())
            self._encounters[row.encounter_id] = row
            committed = row.model_copy(deep=True)

        await self._publish(Collection.ENCOUNTERS, ChangeKind.CREATED,
                            committed.encounter_id, committed.encounter_id,
                            committed.version, now)
        return committed

    async def get_encounter(self, encounter_id: str) -> Encounter:
        self._check_available()
        row = self._encounters.get(encounter_id)
        if row is None:
            raise EntityNotFoundError(f"Unknown encounter {encounter_id}", entity_id=encounter_id)
        return row.model_copy(deep=True)

    async def list_encounters(
        self,
        facility_id: Optional[str] = None,
        statuses: Optional[Iterable[EncounterStatus]] = None,
    ) -> list[Encounter]:
        self._check_available()
        wanted = set(statuses) if statuses is not None else None
        results = []
        for row in self._encounters.values():
            if facility_id is not None and row.facility_id != facility_id:
                continue
            if wanted is not None and row.status not in wanted:
                continue
            results.append(row.model_copy(deep=True))
        return results

    async def update_encounter(
        self,
        encounter_id: str,
        mutate: EncounterMutator,
        expected_version: Optional[int] = None,
    ) -> Encounter:
        """Atomically apply ``mutate`` to one encounter.

        Args:
            encounter_id: Row to update.
            mutate: Called with a private copy of the committed row and the
                store time.  Raising aborts the write.
            expected_version: If given, the committed row must still carry
                this version.

        Raises:
            EntityNotFoundError: Unknown encounter.
            ConcurrentModificationError: ``expected_version`` is stale.
            StoreUnavailableError: The store is unavailable.
        """
        async with self._existing_lock(self._encounters, encounter_id, "encounter"):
            self._check_available()
            current = self._encounters.get(encounter_id)
            if current is None:
                raise EntityNotFoundError(f"Unknown encounter {encounter_id}", entity_id=encounter_id)
            if expected_version is not None and current.version != expected_version:
                raise ConcurrentModificationError(
                    f"Encounter {encounter_id} changed since version {expected_version} "
                    f"(now {current.version}).",
                    entity_id=encounter_id,
                    expected_version=expected_version,
                    actual_version=current.version,
                )

            now = self.now()
            working = current.model_copy(deep=True)
            mutate(working, now)
            if working.status != current.status:
                working.state_changed_at = now
            working.updated_at = now
            working.version = current.version + 1
            # Re-validate: attribute assignment bypasses pydantic validation.
            row = Encounter.model_validate(working.model_dump())
            self._encounters[encounter_id] = row
            committed = row.model_copy(deep=True)

        await self._publish(Collection.ENCOUNTERS, ChangeKind.UPDATED,
                            encounter_id, encounter_id, committed.version, now)
        return committed

    # -- checklist items --

    async def insert_item(
        self,
        item: ChecklistItem,
        guard: Optional[Callable[[Encounter], None]] = None,
    ) -> ChecklistItem:
        """Commit a new checklist item.

        Runs under the parent encounter's row lock, so ``guard`` sees the
        committed encounter and no transition can land between the check and
        the insert.  ``guard`` raises to veto the insert.
        """
        async with self._existing_lock(self._encounters, item.encounter_id, "encounter"):
            self._check_available()
            if guard is not None:
                guard(self._encounters[item.encounter_id].model_copy(deep=True))
            if item.item_id in self._items:
                raise ConcurrentModificationError(
                    f"Checklist item {item.item_id} already exists.", entity_id=item.item_id
                )
            now = self.now()
            row = item.model_copy(deep=True)
            row.created_at = now
            row.updated_at = now
            row.version = 1
            row = ChecklistItem.model_validate(row.model_dump())
            self._items[row.item_id] = row
            committed = row.model_copy(deep=True)

        await self._publish(Collection.CHECKLIST_ITEMS, ChangeKind.CREATED,
                            committed.item_id, committed.encounter_id, committed.version, now)
        return committed

    async def get_item(self, item_id: str) -> ChecklistItem:
        self._check_available()
        row = self._items.get(item_id)
        if row is None:
            raise EntityNotFoundError(f"Unknown checklist item {item_id}", entity_id=item_id)
        return row.model_copy(deep=True)

    async def list_items(self, encounter_id: str) -> list[ChecklistItem]:
        self._check_available()
        rows = [r for r in self._items.values() if r.encounter_id == encounter_id]
        rows.sort(key=lambda r: (r.created_at, r.item_id))
        return [r.model_copy(deep=True) for r in rows]

    async def update_item(
        self,
        item_id: str,
        mutate: ItemMutator,
        expected_version: Optional[int] = None,
    ) -> ChecklistItem:
        """Atomically apply ``mutate`` to one checklist item.  See ``update_encounter``."""
        async with self._existing_lock(self._items, item_id, "checklist item"):
            self._check_available()
            current = self._items.get(item_id)
            if current is None:
                raise EntityNotFoundError(f"Unknown checklist item {item_id}", entity_id=item_id)
            if expected_version is not None and current.version != expected_version:
                raise ConcurrentModificationError(
                    f"Checklist item {item_id} changed since version {expected_version}.",
                    entity_id=item_id,
                    expected_version=expected_version,
                    actual_version=current.version,
                )
            now = self.now()
            working = current.model_copy(deep=True)
            mutate(working, now)
            working.updated_at = now
            working.version = current.version + 1
            row = ChecklistItem.model_validate(working.model_dump())
            self._items[item_id] = row
            committed = row.model_copy(deep=True)

        await self._publish(Collection.CHECKLIST_ITEMS, ChangeKind.UPDATED,
                            item_id, committed.encounter_id, committed.version, now)
        return committed

    async def delete_item(
        self,
        item_id: str,
        guard: Callable[[ChecklistItem], None],
    ) -> ChecklistItem:
        """Delete one checklist item if ``guard`` accepts the committed row.

        ``guard`` runs under the row lock and raises to veto the deletion.
        """
        async with self._existing_lock(self._items, item_id, "checklist item"):
            self._check_available()
            current = self._items.get(item_id)
            if current is None:
                raise EntityNotFoundError(f"Unknown checklist item {item_id}", entity_id=item_id)
            guard(current.model_copy(deep=True))
            del self._items[item_id]
            now = self.now()
        self._row_locks.pop(item_id, None)

        await self._publish(Collection.CHECKLIST_ITEMS, ChangeKind.DELETED,
                            item_id, current.encounter_id, current.version, now)
        return current.model_copy(deep=True)

    # -- vitals and notes (append-only) --

    async def insert_vitals(self, record: VitalsRecord) -> VitalsRecord:
        self._check_available()
        if record.encounter_id not in self._encounters:
            raise EntityNotFoundError(
                f"Unknown encounter {record.encounter_id}", entity_id=record.encounter_id
            )
        now = self.now()
        row = record.model_copy(deep=True, update={"created_at": now, "version": 1})
        self._vitals[row.record_id] = row
        await self._publish(Collection.VITALS, ChangeKind.CREATED,
                            row.record_id, row.encounter_id, row.version, now)
        return row.model_copy(deep=True)

    async def list_vitals(self, encounter_id: str) -> list[VitalsRecord]:
        """Vitals for one encounter, most recent measurement first."""
        self._check_available()
        rows = [r for r in self._vitals.values() if r.encounter_id == encounter_id]
        rows.sort(key=lambda r: (r.vitals.measured_at, r.record_id), reverse=True)
        return [r.model_copy(deep=True) for r in rows]

    async def insert_note(self, note: NursingNote) -> NursingNote:
        self._check_available()
        if note.encounter_id not in self._encounters:
            raise EntityNotFoundError(
                f"Unknown encounter {note.encounter_id}", entity_id=note.encounter_id
            )
        now = self.now()
        row = note.model_copy(deep=True, update={"created_at": now, "version": 1})
        self._notes[row.note_id] = row
        await self._publish(Collection.NOTES, ChangeKind.CREATED,
                            row.note_id, row.encounter_id, row.version, now)
        return row.model_copy(deep=True)

    async def list_notes(self, encounter_id: str) -> list[NursingNote]:
        """Notes for one encounter in the order they were written."""
        self._check_available()
        rows = [r for r in self._notes.values() if r.encounter_id == encounter_id]
        rows.sort(key=lambda r: (r.created_at, r.note_id))
        return [r.model_copy(deep=True) for r in rows]
