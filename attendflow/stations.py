"""
Station Controllers -- one per physical station.

A controller keeps a local snapshot of the facility's encounters, rebuilds its
queue and absentee list whenever the change notifier reports a write, and
exposes the station's commands.  Commands never raise for flow errors: they
return a ``CommandResult`` carrying a stable ``error_code``.

Optimistic updates are kept as overlays tagged with a correlation id.  The
overlay for an encounter is dropped wholesale when the authoritative
notification for that encounter arrives, or when the command fails.  The
snapshot itself is only ever replaced with what the store returns.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Awaitable, Optional

from pydantic import BaseModel

from attendflow.checklist import ChecklistService
from attendflow.errors import FlowError, StoreUnavailableError
from attendflow.flow import FlowStateMachine, SelectionOutcome, SwapOutcome
from attendflow.models import (
    Acuity,
    ChecklistItem,
    ChecklistItemDraft,
    ClinicalNarrative,
    DocumentKind,
    Encounter,
    EncounterStatus,
    FinalizeOutcome,
    PatientSnapshot,
    TransferDetails,
    VitalSigns,
)
from attendflow.notifier import ChangeEvent, ChangeNotifier, Collection, Subscription
from attendflow.nursing import NursingService
from attendflow.queue import (
    STATION_FILTERS,
    build_absentee_list,
    build_queue,
    format_wait_time,
    is_bed_wait_critical,
    stale_absences,
)
from attendflow.store import EncounterStore

logger = logging.getLogger(__name__)

PERMISSION_DENIED = "permission_denied"

# Predicted status for the optimistic overlay of each command.
_CALL_PREDICTION = {
    EncounterStatus.AWAITING_TRIAGE: EncounterStatus.IN_TRIAGE,
    EncounterStatus.AWAITING_PHYSICIAN: EncounterStatus.IN_CONSULTATION,
    EncounterStatus.AWAITING_REEVALUATION: EncounterStatus.IN_CONSULTATION,
    EncounterStatus.AWAITING_TRIAGE_ABSENT: EncounterStatus.IN_TRIAGE,
    EncounterStatus.ABSENT: EncounterStatus.IN_CONSULTATION,
}
_ABSENT_PREDICTION = {
    EncounterStatus.IN_TRIAGE: EncounterStatus.AWAITING_TRIAGE_ABSENT,
    EncounterStatus.IN_CONSULTATION: EncounterStatus.ABSENT,
}


class CommandResult(BaseModel):
    """Outcome of a station command.

    ``ok`` is False only for errors.  A command that was accepted but had no
    effect, such as a selection blocked by the examiner lock, returns
    ``ok=True, performed=False``.
    """

    ok: bool
    performed: bool = True
    encounter: Optional[Encounter] = None
    item: Optional[ChecklistItem] = None
    data: Any = None
    error_code: str = ""
    message: str = ""
    correlation_id: str = ""


class StationController:
    """Local view and command surface of one station."""

    def __init__(
        self,
        station_id: str,
        store: EncounterStore,
        flow: FlowStateMachine,
        checklist: Optional[ChecklistService] = None,
        nursing: Optional[NursingService] = None,
        notifier: Optional[ChangeNotifier] = None,
    ) -> None:
        self._policy = flow.policy
        self.station = self._policy.station(station_id)
        self._store = store
        self._flow = flow
        self._checklist = checklist
        self._nursing = nursing
        self._notifier = notifier
        self._subscription: Optional[Subscription] = None
        self._filter = STATION_FILTERS[self.station.role].with_absentee_order(
            self.station.absentees_newest_first
        )

        self._rows: dict[str, Encounter] = {}
        self._overlays: dict[str, tuple[str, Encounter]] = {}
        self.queue: list[Encounter] = []
        self.absentees: list[Encounter] = []
        self.current_encounter_id: Optional[str] = None
        self.stale = False

    @property
    def station_id(self) -> str:
        return self.station.station_id

    # -- snapshot --

    async def start(self) -> None:
        """Subscribe to change notifications and load the first snapshot."""
        if self._notifier is not None and self._subscription is None:
            self._subscription = self._notifier.subscribe(
                [Collection.ENCOUNTERS, Collection.CHECKLIST_ITEMS],
                self._on_change,
                name=f"station:{self.station_id}",
            )
        await self.refresh()

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def _on_change(self, event: ChangeEvent) -> None:
        if event.collection == Collection.ENCOUNTERS:
            self._overlays.pop(event.entity_id, None)
        await self.refresh()

    async def refresh(self) -> None:
        """Replace the snapshot with the store's rows and rebuild the views.

        When the store is unavailable the previous snapshot is kept and
        ``stale`` is set until the next successful refresh.
        """
        try:
            rows = await self._store.list_encounters(self._policy.facility_id)
        except StoreUnavailableError as exc:
            logger.warning("Station %s kept stale snapshot: %s", self.station_id, exc)
            self.stale = True
            self._rebuild()
            return
        self._rows = {row.encounter_id: row for row in rows}
        self.stale = False
        self._rebuild()

    def _merged(self) -> dict[str, Encounter]:
        merged = dict(self._rows)
        for encounter_id, (_, overlay) in self._overlays.items():
            merged[encounter_id] = overlay
        return merged

    def _rebuild(self) -> None:
        merged = self._merged().values()
        self.queue = build_queue(merged, self._filter)
        self.absentees = build_absentee_list(merged, self._filter)

    def encounter(self, encounter_id: str) -> Optional[Encounter]:
        """The station's view of one encounter, overlay included."""
        return self._merged().get(encounter_id)

    def current_encounter(self) -> Optional[Encounter]:
        if self.current_encounter_id is None:
            return None
        return self.encounter(self.current_encounter_id)

    # -- overlays --

    def _speculate(self, encounter_id: str, **changes: Any) -> str:
        correlation_id = str(uuid.uuid4())
        base = self.encounter(encounter_id)
        if base is not None and changes:
            self._overlays[encounter_id] = (correlation_id, base.model_copy(update=changes))
            self._rebuild()
        return correlation_id

    def _discard(self, encounter_id: Optional[str], correlation_id: str) -> None:
        if encounter_id is None:
            return
        held = self._overlays.get(encounter_id)
        if held is not None and held[0] == correlation_id:
            del self._overlays[encounter_id]
            self._rebuild()

    def _settle(self, committed: Encounter, correlation_id: str) -> None:
        known = self._rows.get(committed.encounter_id)
        if known is None or known.version < committed.version:
            self._rows[committed.encounter_id] = committed
        self._discard(committed.encounter_id, correlation_id)
        self._rebuild()

    async def _run(
        self,
        action: str,
        operation: Awaitable[Any],
        encounter_id: Optional[str] = None,
        correlation_id: str = "",
    ) -> tuple[Optional[CommandResult], Any]:
        """Await ``operation``; on failure return the error result instead."""
        try:
            return None, await operation
        except FlowError as exc:
            self._discard(encounter_id, correlation_id)
            logger.info("Station %s: %s failed with %s", self.station_id, action, exc.code)
            return CommandResult(
                ok=False, error_code=exc.code, message=exc.message,
                correlation_id=correlation_id,
            ), None
        except PermissionError as exc:
            self._discard(encounter_id, correlation_id)
            logger.warning("Station %s: %s denied", self.station_id, action)
            return CommandResult(
                ok=False, error_code=PERMISSION_DENIED, message=str(exc),
                correlation_id=correlation_id,
            ), None

    def _version_of(self, encounter_id: str) -> Optional[int]:
        row = self._rows.get(encounter_id)
        return row.version if row is not None else None

    def _encounter_result(self, committed: Encounter, correlation_id: str) -> CommandResult:
        self._settle(committed, correlation_id)
        return CommandResult(ok=True, encounter=committed, correlation_id=correlation_id)

    def _no_current(self, action: str) -> CommandResult:
        return CommandResult(
            ok=False,
            error_code="precondition_failed",
            message=f"Station {self.station_id} has no encounter selected for {action}.",
        )

    # -- intake --

    async def register_arrival(
        self,
        patient_ref: str,
        patient: PatientSnapshot,
        chief_complaint: str = "",
    ) -> CommandResult:
        error, encounter = await self._run(
            "register_arrival",
            self._flow.register_arrival(self.station_id, patient_ref, patient, chief_complaint),
        )
        if error:
            return error
        return self._encounter_result(encounter, "")

    # -- call / absence --

    async def call(self, encounter_id: str) -> CommandResult:
        """Page ``encounter_id`` to this station.

        Calling while holding another encounter goes through ``select``.
        """
        if self.current_encounter_id and self.current_encounter_id != encounter_id:
            return await self.select(encounter_id)
        row = self.encounter(encounter_id)
        predicted = _CALL_PREDICTION.get(row.status) if row else None
        correlation_id = self._speculate(
            encounter_id,
            **({"status": predicted, "attending_station": self.station_id} if predicted else {}),
        )
        error, encounter = await self._run(
            "call",
            self._flow.call(encounter_id, self.station_id, self._version_of(encounter_id)),
            encounter_id,
            correlation_id,
        )
        if error:
            return error
        self.current_encounter_id = encounter_id
        return self._encounter_result(encounter, correlation_id)

    async def select(self, encounter_id: str, recall: bool = False) -> CommandResult:
        """Take ``encounter_id`` while returning the current one to its queue."""
        error, outcome = await self._run(
            "select",
            self._flow.select_next(
                self.station_id, encounter_id, self.current_encounter_id, recall=recall
            ),
            encounter_id,
        )
        if error:
            await self._forget_released_current()
            return error
        return self._selection_result(outcome)

    async def _forget_released_current(self) -> None:
        """Drop ``current_encounter_id`` once the station no longer holds it."""
        encounter_id = self.current_encounter_id
        if encounter_id is None:
            return
        try:
            row = await self._store.get_encounter(encounter_id)
        except FlowError as exc:
            logger.warning("Station %s could not re-read %s: %s", self.station_id, encounter_id, exc)
            return
        if not (row.status.is_active and row.attending_station == self.station_id):
            logger.info("Station %s no longer holds %s", self.station_id, encounter_id)
            self.current_encounter_id = None

    def _selection_result(self, outcome: SelectionOutcome) -> CommandResult:
        if not outcome.performed:
            return CommandResult(ok=True, performed=False, message=outcome.reason,
                                 encounter=self.current_encounter())
        if outcome.displaced is not None:
            self._settle(outcome.displaced, "")
        self.current_encounter_id = outcome.selected.encounter_id
        return self._encounter_result(outcome.selected, "")

    async def recall(self, encounter_id: str) -> CommandResult:
        if self.current_encounter_id and self.current_encounter_id != encounter_id:
            return await self.select(encounter_id, recall=True)
        row = self.encounter(encounter_id)
        predicted = _CALL_PREDICTION.get(row.status) if row else None
        correlation_id = self._speculate(
            encounter_id,
            **({"status": predicted, "examiner_lock": self.station_id} if predicted else {}),
        )
        error, encounter = await self._run(
            "recall",
            self._flow.recall(encounter_id, self.station_id, self._version_of(encounter_id)),
            encounter_id,
            correlation_id,
        )
        if error:
            return error
        self.current_encounter_id = encounter_id
        return self._encounter_result(encounter, correlation_id)

    async def mark_absent(self) -> CommandResult:
        encounter_id = self.current_encounter_id
        if encounter_id is None:
            return self._no_current("mark_absent")
        row = self.encounter(encounter_id)
        predicted = _ABSENT_PREDICTION.get(row.status) if row else None
        correlation_id = self._speculate(
            encounter_id, **({"status": predicted} if predicted else {})
        )
        error, encounter = await self._run(
            "mark_absent",
            self._flow.mark_absent(encounter_id, self.station_id, self._version_of(encounter_id)),
            encounter_id,
            correlation_id,
        )
        if error:
            return error
        self.current_encounter_id = None
        return self._encounter_result(encounter, correlation_id)

    async def swap_out(self) -> CommandResult:
        """Return the current encounter to its queue without selecting another."""
        encounter_id = self.current_encounter_id
        if encounter_id is None:
            return self._no_current("swap_out")
        error, outcome = await self._run(
            "swap_out",
            self._flow.swap_out(encounter_id, self.station_id),
            encounter_id,
        )
        if error:
            return error
        swap: SwapOutcome = outcome
        if not swap.performed:
            return CommandResult(ok=True, performed=False, encounter=swap.encounter,
                                 message=swap.reason)
        self.current_encounter_id = None
        return self._encounter_result(swap.encounter, "")

    async def cancel_absent(self, encounter_id: str, reason: str = "") -> CommandResult:
        correlation_id = self._speculate(encounter_id, status=EncounterStatus.CANCELLED)
        error, encounter = await self._run(
            "cancel_absent",
            self._flow.cancel_from_absence(encounter_id, self.station_id, reason),
            encounter_id,
            correlation_id,
        )
        if error:
            return error
        return self._encounter_result(encounter, correlation_id)

    # -- clinical close-out of the current encounter --

    async def complete_triage(
        self,
        acuity: Optional[Acuity],
        vitals: Optional[VitalSigns] = None,
        chief_complaint: Optional[str] = None,
        discriminator: Optional[str] = None,
        allergies: Optional[str] = None,
    ) -> CommandResult:
        encounter_id = self.current_encounter_id
        if encounter_id is None:
            return self._no_current("complete_triage")
        error, encounter = await self._run(
            "complete_triage",
            self._flow.complete_triage(
                encounter_id, self.station_id, acuity, vitals=vitals,
                chief_complaint=chief_complaint, discriminator=discriminator,
                allergies=allergies, expected_version=self._version_of(encounter_id),
            ),
            encounter_id,
        )
        if error:
            return error
        self.current_encounter_id = None
        return self._encounter_result(encounter, "")

    async def finalize(
        self,
        outcome: FinalizeOutcome,
        narrative: Optional[ClinicalNarrative] = None,
        bed_justification: str = "",
        bed_priority: Optional[int] = None,
    ) -> CommandResult:
        encounter_id = self.current_encounter_id
        if encounter_id is None:
            return self._no_current("finalize")
        error, encounter = await self._run(
            "finalize",
            self._flow.finalize_consultation(
                encounter_id, self.station_id, outcome, narrative=narrative,
                bed_justification=bed_justification, bed_priority=bed_priority,
                expected_version=self._version_of(encounter_id),
            ),
            encounter_id,
        )
        if error:
            return error
        self.current_encounter_id = None
        return self._encounter_result(encounter, "")

    async def save_narrative(self, narrative: ClinicalNarrative) -> CommandResult:
        encounter_id = self.current_encounter_id
        if encounter_id is None:
            return self._no_current("save_narrative")
        error, encounter = await self._run(
            "save_narrative",
            self._flow.save_narrative(encounter_id, self.station_id, narrative),
            encounter_id,
        )
        if error:
            return error
        return self._encounter_result(encounter, "")

    async def request_document(
        self,
        kind: DocumentKind,
        narrative: Optional[ClinicalNarrative] = None,
    ) -> CommandResult:
        encounter_id = self.current_encounter_id
        if encounter_id is None:
            return self._no_current("request_document")
        error, request = await self._run(
            "request_document",
            self._flow.request_document(encounter_id, self.station_id, kind, narrative),
            encounter_id,
        )
        if error:
            return error
        return CommandResult(ok=True, data=request)

    async def revise_acuity(self, encounter_id: str, acuity: Acuity) -> CommandResult:
        correlation_id = self._speculate(encounter_id, acuity=acuity)
        error, encounter = await self._run(
            "revise_acuity",
            self._flow.revise_acuity(encounter_id, self.station_id, acuity),
            encounter_id,
            correlation_id,
        )
        if error:
            return error
        return self._encounter_result(encounter, correlation_id)

    # -- observation and bed desk --

    async def discharge_observation(self, encounter_id: str) -> CommandResult:
        error, encounter = await self._run(
            "discharge_observation",
            self._flow.discharge_from_observation(encounter_id, self.station_id),
            encounter_id,
        )
        if error:
            return error
        return self._encounter_result(encounter, "")

    async def request_reevaluation(self, encounter_id: str) -> CommandResult:
        error, encounter = await self._run(
            "request_reevaluation",
            self._flow.request_reevaluation(encounter_id, self.station_id),
            encounter_id,
        )
        if error:
            return error
        return self._encounter_result(encounter, "")

    async def complete_bed_transfer(
        self, encounter_id: str, transfer: TransferDetails
    ) -> CommandResult:
        error, encounter = await self._run(
            "complete_bed_transfer",
            self._flow.complete_bed_transfer(encounter_id, self.station_id, transfer),
            encounter_id,
        )
        if error:
            return error
        return self._encounter_result(encounter, "")

    # -- checklist and nursing records --

    def _require_service(self, service: Any, name: str) -> Optional[CommandResult]:
        if service is None:
            return CommandResult(
                ok=False,
                error_code="precondition_failed",
                message=f"Station {self.station_id} has no {name} service configured.",
            )
        return None

    async def add_checklist_item(
        self, draft: ChecklistItemDraft, encounter_id: Optional[str] = None
    ) -> CommandResult:
        missing = self._require_service(self._checklist, "checklist")
        if missing:
            return missing
        target = encounter_id or self.current_encounter_id
        if target is None:
            return self._no_current("add_checklist_item")
        error, item = await self._run(
            "add_checklist_item", self._checklist.add_item(target, draft, self.station_id)
        )
        if error:
            return error
        return CommandResult(ok=True, item=item)

    async def administer(self, item_id: str) -> CommandResult:
        missing = self._require_service(self._checklist, "checklist")
        if missing:
            return missing
        error, item = await self._run(
            "administer", self._checklist.administer(item_id, self.station_id)
        )
        if error:
            return error
        return CommandResult(ok=True, item=item)

    async def update_checklist_item(self, item_id: str, changes: dict[str, Any]) -> CommandResult:
        missing = self._require_service(self._checklist, "checklist")
        if missing:
            return missing
        error, item = await self._run(
            "update_checklist_item",
            self._checklist.update_item(item_id, changes, self.station_id),
        )
        if error:
            return error
        return CommandResult(ok=True, item=item)

    async def remove_checklist_item(self, item_id: str) -> CommandResult:
        missing = self._require_service(self._checklist, "checklist")
        if missing:
            return missing
        error, item = await self._run(
            "remove_checklist_item", self._checklist.remove_item(item_id, self.station_id)
        )
        if error:
            return error
        return CommandResult(ok=True, item=item)

    async def checklist_progress(self, encounter_id: str) -> CommandResult:
        missing = self._require_service(self._checklist, "checklist")
        if missing:
            return missing
        error, progress = await self._run(
            "checklist_progress", self._checklist.progress(encounter_id)
        )
        if error:
            return error
        return CommandResult(ok=True, data=progress)

    async def record_vitals(self, encounter_id: str, vitals: VitalSigns) -> CommandResult:
        missing = self._require_service(self._nursing, "nursing")
        if missing:
            return missing
        error, record = await self._run(
            "record_vitals", self._nursing.record_vitals(encounter_id, vitals, self.station_id)
        )
        if error:
            return error
        return CommandResult(ok=True, data=record)

    async def add_note(self, encounter_id: str, text: str) -> CommandResult:
        missing = self._require_service(self._nursing, "nursing")
        if missing:
            return missing
        error, note = await self._run(
            "add_note", self._nursing.add_note(encounter_id, text, self.station_id)
        )
        if error:
            return error
        return CommandResult(ok=True, data=note)

    # -- queue card helpers --

    def wait_label(self, encounter: Encounter) -> str:
        since = encounter.bed_request_time if self._filter.by_bed_request_time else encounter.arrival_time
        return format_wait_time(since, self._store.now())

    def critical_bed_requests(self) -> list[Encounter]:
        now = self._store.now()
        return [
            e for e in self.queue
            if is_bed_wait_critical(e, now, self._policy.bed_wait_critical_hours)
        ]

    def stale_absentees(self) -> list[Encounter]:
        return stale_absences(
            self.absentees, self._store.now(), self._policy.absence_auto_cancel_seconds
        )
