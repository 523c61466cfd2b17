"""
Flow State Machine -- validated status transitions for patient encounters.

**State machine:**

    awaiting_triage -> in_triage -> awaiting_physician -> in_consultation
        in_consultation -> finalized | in_observation | awaiting_bed
        in_observation  -> finalized | awaiting_reevaluation -> in_consultation
        awaiting_bed    -> finalized (bed transfer)

With the absence path:

    in_triage       -> awaiting_triage_absent -> in_triage (recall) | cancelled
    in_consultation -> absent                 -> in_consultation (recall) | cancelled

And the swap-out reversal (station selects someone else mid-examination):

    in_triage -> awaiting_triage,  in_consultation -> awaiting_physician | awaiting_reevaluation

**Rules enforced here, not by the stations:**

* Every transition is checked against ``_VALID_TRANSITIONS`` inside the
  store's atomic update, so the check and the write see the same row.
* ``mark_absent()`` needs at least one call.  The first absence of an episode
  sets ``absence_anchor``; later absences in the same episode keep it.
* ``recall()`` places the examiner lock.  While locked, only the lock holder
  may act on the encounter, and swap-out attempts are no-ops.
* Swap-out preserves ``arrival_time``, so the displaced patient keeps their
  place in the queue.
* ``finalize_consultation()`` requires the fields the facility policy lists
  for the chosen outcome (by default, a bed justification for bed requests).

Rejected transitions raise ``InvalidTransitionError`` or
``PreconditionFailedError`` and leave the encounter untouched.  Accepted and
rejected transitions are both written to the audit log.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from attendflow.audit import AuditLog, FlowEventType
from attendflow.config import FacilityPolicy, StationConfig
from attendflow.errors import (
    ExaminerLockedError,
    InvalidTransitionError,
    PreconditionFailedError,
)
from attendflow.models import (
    ACTIVE_STATUSES,
    Acuity,
    ClinicalNarrative,
    DocumentKind,
    DocumentRequest,
    Encounter,
    EncounterStatus,
    FinalizeOutcome,
    PageEvent,
    PatientSnapshot,
    StationRole,
    TransferDetails,
    VitalSigns,
)
from attendflow.paging import PagingBoundary
from attendflow.rbac import require_permission
from attendflow.store import EncounterStore

logger = logging.getLogger(__name__)

S = EncounterStatus


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[EncounterStatus, set[EncounterStatus]] = {
    S.AWAITING_TRIAGE: {S.IN_TRIAGE},
    S.IN_TRIAGE: {S.AWAITING_TRIAGE, S.AWAITING_TRIAGE_ABSENT, S.AWAITING_PHYSICIAN},
    S.AWAITING_TRIAGE_ABSENT: {S.IN_TRIAGE, S.CANCELLED},
    S.AWAITING_PHYSICIAN: {S.IN_CONSULTATION},
    S.AWAITING_REEVALUATION: {S.IN_CONSULTATION},
    S.IN_CONSULTATION: {
        S.AWAITING_PHYSICIAN,
        S.AWAITING_REEVALUATION,
        S.ABSENT,
        S.FINALIZED,
        S.IN_OBSERVATION,
        S.AWAITING_BED,
    },
    S.ABSENT: {S.IN_CONSULTATION, S.CANCELLED},
    S.IN_OBSERVATION: {S.FINALIZED, S.AWAITING_REEVALUATION},
    S.AWAITING_BED: {S.FINALIZED},
    S.FINALIZED: set(),  # terminal
    S.CANCELLED: set(),  # terminal
}

_CALL_TARGETS = {
    S.AWAITING_TRIAGE: S.IN_TRIAGE,
    S.AWAITING_PHYSICIAN: S.IN_CONSULTATION,
    S.AWAITING_REEVALUATION: S.IN_CONSULTATION,
}
_ABSENT_TARGETS = {
    S.IN_TRIAGE: S.AWAITING_TRIAGE_ABSENT,
    S.IN_CONSULTATION: S.ABSENT,
}
_RECALL_TARGETS = {
    S.AWAITING_TRIAGE_ABSENT: S.IN_TRIAGE,
    S.ABSENT: S.IN_CONSULTATION,
}
_SWAP_DEFAULTS = {
    S.IN_TRIAGE: S.AWAITING_TRIAGE,
    S.IN_CONSULTATION: S.AWAITING_PHYSICIAN,
}

# Statuses each examining role may call, recall, mark absent or swap out.
_ROLE_STATUSES: dict[StationRole, frozenset[EncounterStatus]] = {
    StationRole.TRIAGE: frozenset({S.AWAITING_TRIAGE, S.IN_TRIAGE, S.AWAITING_TRIAGE_ABSENT}),
    StationRole.PHYSICIAN: frozenset({
        S.AWAITING_PHYSICIAN, S.AWAITING_REEVALUATION, S.IN_CONSULTATION, S.ABSENT,
    }),
}


def allowed_transitions(status: EncounterStatus) -> set[EncounterStatus]:
    return set(_VALID_TRANSITIONS.get(status, set()))


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class SwapOutcome:
    """Result of a swap-out attempt.  A blocked swap is not an error."""

    def __init__(self, performed: bool, encounter: Encounter, reason: str = "") -> None:
        self.performed = performed
        self.encounter = encounter
        self.reason = reason

    def __repr__(self) -> str:
        return (
            f"SwapOutcome(performed={self.performed}, encounter={self.encounter.encounter_id}, "
            f"status={self.encounter.status.value})"
        )


class SelectionOutcome:
    """Result of a station selecting a new encounter from its queue."""

    def __init__(
        self,
        performed: bool,
        selected: Optional[Encounter] = None,
        displaced: Optional[Encounter] = None,
        reason: str = "",
    ) -> None:
        self.performed = performed
        self.selected = selected
        self.displaced = displaced
        self.reason = reason

    def __repr__(self) -> str:
        return f"SelectionOutcome(performed={self.performed}, reason='{self.reason}')"


# ---------------------------------------------------------------------------
# Flow state machine
# ---------------------------------------------------------------------------

class FlowStateMachine:
    """Validates and applies every encounter status transition.

    All operations are coroutines: each one awaits a single atomic store
    update.  The acting station is identified by ``station_id``; its role
    comes from the facility policy and is checked against ``attendflow.rbac``.
    """

    def __init__(
        self,
        store: EncounterStore,
        policy: FacilityPolicy,
        audit_log: AuditLog,
        paging: Optional[PagingBoundary] = None,
    ) -> None:
        self._store = store
        self._policy = policy
        self._audit_log = audit_log
        self._paging = paging or PagingBoundary()

    @property
    def policy(self) -> FacilityPolicy:
        return self._policy

    # -- helpers --

    def _station(self, station_id: str, action: str) -> StationConfig:
        try:
            station = self._policy.station(station_id)
        except KeyError as exc:
            raise PreconditionFailedError(str(exc.args[0]), entity_id=station_id) from exc
        require_permission(station.role, action)
        return station

    def _validate_transition(self, encounter: Encounter, target: EncounterStatus) -> None:
        """Raise InvalidTransitionError if the transition is not allowed."""
        allowed = _VALID_TRANSITIONS.get(encounter.status, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition encounter {encounter.encounter_id} from "
                f"{encounter.status.value} to {target.value}. "
                f"Allowed transitions: {sorted(s.value for s in allowed)}",
                entity_id=encounter.encounter_id,
            )

    def _check_scope(self, encounter: Encounter, station: StationConfig) -> None:
        if encounter.facility_id != self._policy.facility_id:
            raise PreconditionFailedError(
                f"Encounter {encounter.encounter_id} belongs to facility "
                f"'{encounter.facility_id}', not '{self._policy.facility_id}'.",
                entity_id=encounter.encounter_id,
            )
        if encounter.examiner_lock is not None and encounter.examiner_lock != station.station_id:
            raise ExaminerLockedError(
                f"Encounter {encounter.encounter_id} is examiner-locked by station "
                f"'{encounter.examiner_lock}'.",
                entity_id=encounter.encounter_id,
            )

    def _check_role_serves(self, encounter: Encounter, station: StationConfig) -> None:
        if encounter.status not in _ROLE_STATUSES.get(station.role, frozenset()):
            raise InvalidTransitionError(
                f"Station role '{station.role.value}' does not handle encounters in "
                f"{encounter.status.value}.",
                entity_id=encounter.encounter_id,
            )

    def _check_attending(self, encounter: Encounter, station: StationConfig) -> None:
        if encounter.attending_station not in (None, station.station_id):
            raise PreconditionFailedError(
                f"Encounter {encounter.encounter_id} is being attended by station "
                f"'{encounter.attending_station}'.",
                entity_id=encounter.encounter_id,
            )

    def _check_call_cap(self, encounter: Encounter) -> None:
        cap = self._policy.max_calls_per_activation
        if cap is not None and encounter.call_count >= cap:
            raise PreconditionFailedError(
                f"Encounter {encounter.encounter_id} already paged {encounter.call_count} "
                f"times (limit {cap}). Mark the patient absent instead.",
                entity_id=encounter.encounter_id,
            )

    def _check_selectable(self, encounter: Encounter, station: StationConfig, recall: bool) -> None:
        """Run the checks ``call`` or ``recall`` would run, without writing."""
        self._check_scope(encounter, station)
        self._check_role_serves(encounter, station)
        if recall:
            target = _RECALL_TARGETS.get(encounter.status)
        elif encounter.status in ACTIVE_STATUSES:
            self._check_attending(encounter, station)
            self._check_call_cap(encounter)
            return
        else:
            target = _CALL_TARGETS.get(encounter.status)
        if target is None:
            raise InvalidTransitionError(
                f"Encounter {encounter.encounter_id} in {encounter.status.value} "
                f"cannot be {'recalled' if recall else 'called'}.",
                entity_id=encounter.encounter_id,
            )
        self._validate_transition(encounter, target)
        if not recall:
            self._check_call_cap(encounter)

    @staticmethod
    def _release(encounter: Encounter) -> None:
        """Clear per-activation state when an encounter leaves a station."""
        encounter.call_count = 0
        encounter.examiner_lock = None
        encounter.attending_station = None
        encounter.prior_waiting_status = None

    def _audit(
        self,
        event_type: FlowEventType,
        encounter_id: str,
        station: StationConfig,
        metadata: Optional[dict] = None,
        target_entity: str = "",
    ) -> None:
        self._audit_log.record(
            facility_id=self._policy.facility_id,
            event_type=event_type,
            actor_id=station.station_id,
            actor_role=station.role.value,
            encounter_id=encounter_id,
            target_entity=target_entity,
            metadata=metadata,
            timestamp=self._store.now(),
        )

    async def _apply(
        self,
        action: str,
        encounter_id: str,
        station: StationConfig,
        mutate: Callable[[Encounter, datetime], None],
        expected_version: Optional[int] = None,
    ) -> Encounter:
        """Run ``mutate`` atomically; audit and re-raise any rejection."""
        try:
            return await self._store.update_encounter(encounter_id, mutate, expected_version)
        except (InvalidTransitionError, PreconditionFailedError) as exc:
            logger.warning("Rejected %s on %s by %s: %s", action, encounter_id, station.station_id, exc)
            self._audit(
                FlowEventType.TRANSITION_REJECTED,
                encounter_id,
                station,
                metadata={"action": action, "error": exc.code, "message": exc.message},
            )
            raise

    async def _page(self, encounter: Encounter, station: StationConfig, recall: bool) -> PageEvent:
        event = PageEvent(
            encounter_id=encounter.encounter_id,
            patient_display_name=encounter.patient.display_name,
            destination_label=self._policy.destination_label(station.station_id),
            station_id=station.station_id,
            call_count=encounter.call_count,
            recall=recall,
            paged_at=encounter.updated_at,
        )
        await self._paging.emit(event)
        return event

    # -- intake --

    async def register_arrival(
        self,
        station_id: str,
        patient_ref: str,
        patient: PatientSnapshot,
        chief_complaint: str = "",
    ) -> Encounter:
        """Create an encounter in ``awaiting_triage`` with arrival time = now."""
        station = self._station(station_id, "register_arrival")
        encounter = Encounter(
            facility_id=self._policy.facility_id,
            patient_ref=patient_ref,
            patient=patient,
            status=S.AWAITING_TRIAGE,
            arrival_time=self._store.now(),
            narrative=ClinicalNarrative(chief_complaint=chief_complaint),
        )
        committed = await self._store.insert_encounter(encounter)
        self._audit(
            FlowEventType.ENCOUNTER_REGISTERED,
            committed.encounter_id,
            station,
            metadata={"patient_ref": patient_ref, "patient_display_name": patient.display_name},
        )
        logger.info("Registered encounter %s at %s", committed.encounter_id, station_id)
        return committed

    # -- call / absence / recall --

    async def call(
        self,
        encounter_id: str,
        station_id: str,
        expected_version: Optional[int] = None,
    ) -> Encounter:
        """Page a waiting encounter to the station, or re-page an active one.

        Raises:
            InvalidTransitionError: The encounter is not waiting for, or
                already with, this kind of station (absentees need ``recall``).
            PreconditionFailedError: Another station is attending or holds
                the examiner lock, or the paging cap is reached.
        """
        station = self._station(station_id, "call")
        recall_page = False

        def mutate(encounter: Encounter, now: datetime) -> None:
            nonlocal recall_page
            self._check_scope(encounter, station)
            self._check_role_serves(encounter, station)
            if encounter.status in ACTIVE_STATUSES:
                self._check_attending(encounter, station)
                self._check_call_cap(encounter)
                encounter.call_count += 1
                recall_page = encounter.examiner_lock is not None
                return
            target = _CALL_TARGETS.get(encounter.status)
            if target is None:
                raise InvalidTransitionError(
                    f"Encounter {encounter.encounter_id} in {encounter.status.value} "
                    "cannot be called; absent patients are recalled.",
                    entity_id=encounter.encounter_id,
                )
            self._validate_transition(encounter, target)
            self._check_call_cap(encounter)
            encounter.prior_waiting_status = encounter.status
            encounter.status = target
            encounter.attending_station = station.station_id
            encounter.call_count += 1

        encounter = await self._apply("call", encounter_id, station, mutate, expected_version)
        self._audit(
            FlowEventType.PATIENT_CALLED,
            encounter_id,
            station,
            metadata={
                "status": encounter.status.value,
                "call_count": encounter.call_count,
                "patient_display_name": encounter.patient.display_name,
            },
        )
        logger.info("Called %s to %s (call #%d)", encounter_id, station_id, encounter.call_count)
        await self._page(encounter, station, recall=recall_page)
        return encounter

    async def mark_absent(
        self,
        encounter_id: str,
        station_id: str,
        expected_version: Optional[int] = None,
    ) -> Encounter:
        """Record that a called patient did not show up.

        The first absence of an episode sets ``absence_anchor``; an absence
        after a recall keeps the original anchor.
        """
        station = self._station(station_id, "mark_absent")
        first_absence = False

        def mutate(encounter: Encounter, now: datetime) -> None:
            nonlocal first_absence
            self._check_scope(encounter, station)
            self._check_role_serves(encounter, station)
            target = _ABSENT_TARGETS.get(encounter.status)
            if target is None:
                raise InvalidTransitionError(
                    f"Encounter {encounter.encounter_id} in {encounter.status.value} "
                    "cannot be marked absent; only called patients can.",
                    entity_id=encounter.encounter_id,
                )
            self._validate_transition(encounter, target)
            self._check_attending(encounter, station)
            if encounter.call_count < 1:
                raise PreconditionFailedError(
                    f"Encounter {encounter.encounter_id} has not been paged yet.",
                    entity_id=encounter.encounter_id,
                )
            encounter.status = target
            if encounter.absence_anchor is None:
                encounter.absence_anchor = now
                first_absence = True
            self._release(encounter)

        encounter = await self._apply("mark_absent", encounter_id, station, mutate, expected_version)
        self._audit(
            FlowEventType.MARKED_ABSENT,
            encounter_id,
            station,
            metadata={
                "status": encounter.status.value,
                "first_absence": first_absence,
                "absence_anchor": encounter.absence_anchor.isoformat(),
            },
        )
        logger.info("Marked %s absent (%s)", encounter_id, "first" if first_absence else "repeat")
        return encounter

    async def recall(
        self,
        encounter_id: str,
        station_id: str,
        expected_version: Optional[int] = None,
    ) -> Encounter:
        """Bring an absent patient back to the station and lock them to it.

        Sets ``call_count`` to 1 and ``examiner_lock`` to the station.  The
        absence anchor stays until the episode ends.
        """
        station = self._station(station_id, "recall")

        def mutate(encounter: Encounter, now: datetime) -> None:
            self._check_scope(encounter, station)
            self._check_role_serves(encounter, station)
            target = _RECALL_TARGETS.get(encounter.status)
            if target is None:
                raise InvalidTransitionError(
                    f"Encounter {encounter.encounter_id} in {encounter.status.value} "
                    "is not absent and cannot be recalled.",
                    entity_id=encounter.encounter_id,
                )
            self._validate_transition(encounter, target)
            encounter.prior_waiting_status = (
                S.AWAITING_TRIAGE if target == S.IN_TRIAGE else S.AWAITING_PHYSICIAN
            )
            encounter.status = target
            encounter.call_count = 1
            encounter.examiner_lock = station.station_id
            encounter.attending_station = station.station_id

        encounter = await self._apply("recall", encounter_id, station, mutate, expected_version)
        self._audit(
            FlowEventType.PATIENT_RECALLED,
            encounter_id,
            station,
            metadata={
                "status": encounter.status.value,
                "absence_anchor": encounter.absence_anchor.isoformat() if encounter.absence_anchor else None,
                "patient_display_name": encounter.patient.display_name,
            },
        )
        logger.info("Recalled %s to %s; examiner lock placed", encounter_id, station_id)
        await self._page(encounter, station, recall=True)
        return encounter

    async def cancel_from_absence(
        self,
        encounter_id: str,
        station_id: str,
        reason: str = "",
        expected_version: Optional[int] = None,
    ) -> Encounter:
        """Close an absent encounter as cancelled.  Terminal and irreversible."""
        station = self._station(station_id, "cancel_absent")
        absent_since: Optional[datetime] = None

        def mutate(encounter: Encounter, now: datetime) -> None:
            nonlocal absent_since
            self._check_scope(encounter, station)
            if not encounter.status.is_absent:
                raise InvalidTransitionError(
                    f"Only absent encounters can be cancelled; {encounter.encounter_id} "
                    f"is {encounter.status.value}.",
                    entity_id=encounter.encounter_id,
                )
            self._validate_transition(encounter, S.CANCELLED)
            absent_since = encounter.absence_anchor
            encounter.status = S.CANCELLED
            encounter.absence_anchor = None
            encounter.closed_at = now
            self._release(encounter)

        encounter = await self._apply(
            "cancel_absent", encounter_id, station, mutate, expected_version
        )
        absent_seconds = (
            (encounter.closed_at - absent_since).total_seconds() if absent_since else None
        )
        self._audit(
            FlowEventType.ENCOUNTER_CANCELLED,
            encounter_id,
            station,
            metadata={
                "reason": reason,
                "absent_since": absent_since.isoformat() if absent_since else None,
                "absent_seconds": absent_seconds,
            },
        )
        logger.info("Cancelled absent encounter %s", encounter_id)
        return encounter

    # -- swap-out / selection --

    async def swap_out(
        self,
        encounter_id: str,
        station_id: str,
        expected_version: Optional[int] = None,
    ) -> SwapOutcome:
        """Return the station's current encounter to its waiting state.

        A recalled (examiner-locked) encounter is never swapped out: the
        attempt returns ``SwapOutcome(performed=False)`` and writes nothing.
        """
        station = self._station(station_id, "swap_out")

        def mutate(encounter: Encounter, now: datetime) -> None:
            self._check_scope(encounter, station)
            if encounter.examiner_lock is not None:
                raise ExaminerLockedError(
                    f"Encounter {encounter.encounter_id} was recalled by "
                    f"'{encounter.examiner_lock}' and cannot be swapped out.",
                    entity_id=encounter.encounter_id,
                )
            self._check_role_serves(encounter, station)
            if encounter.status not in ACTIVE_STATUSES:
                raise InvalidTransitionError(
                    f"Encounter {encounter.encounter_id} in {encounter.status.value} "
                    "is not being examined.",
                    entity_id=encounter.encounter_id,
                )
            self._check_attending(encounter, station)
            target = encounter.prior_waiting_status or _SWAP_DEFAULTS[encounter.status]
            self._validate_transition(encounter, target)
            encounter.status = target
            self._release(encounter)

        try:
            encounter = await self._store.update_encounter(encounter_id, mutate, expected_version)
        except ExaminerLockedError as exc:
            current = await self._store.get_encounter(encounter_id)
            self._audit(
                FlowEventType.SWAP_OUT_BLOCKED,
                encounter_id,
                station,
                metadata={"examiner_lock": current.examiner_lock},
            )
            logger.info("Swap-out of %s by %s blocked by examiner lock", encounter_id, station_id)
            return SwapOutcome(performed=False, encounter=current, reason=exc.message)
        except (InvalidTransitionError, PreconditionFailedError) as exc:
            logger.warning("Rejected swap_out on %s by %s: %s", encounter_id, station_id, exc)
            self._audit(
                FlowEventType.TRANSITION_REJECTED,
                encounter_id,
                station,
                metadata={"action": "swap_out", "error": exc.code, "message": exc.message},
            )
            raise

        self._audit(
            FlowEventType.SWAPPED_OUT,
            encounter_id,
            station,
            metadata={"status": encounter.status.value},
        )
        logger.info("Swapped %s back to %s", encounter_id, encounter.status.value)
        return SwapOutcome(performed=True, encounter=encounter)

    async def select_next(
        self,
        station_id: str,
        next_encounter_id: str,
        current_encounter_id: Optional[str] = None,
        recall: bool = False,
    ) -> SelectionOutcome:
        """Switch the station to ``next_encounter_id`` and call it.

        The next encounter is checked first; if it cannot be called (or
        recalled) the error is raised and the current encounter stays with
        the station.  Otherwise the current encounter is swapped back to its
        queue before the call.  If it is examiner-locked the whole selection
        is a no-op.  With ``recall=True`` the new encounter is an absentee
        and is recalled instead of called.
        """
        action = "recall" if recall else "call"
        station = self._station(station_id, action)
        displaced: Optional[Encounter] = None

        if current_encounter_id and current_encounter_id != next_encounter_id:
            candidate = await self._store.get_encounter(next_encounter_id)
            try:
                self._check_selectable(candidate, station, recall)
            except (InvalidTransitionError, PreconditionFailedError) as exc:
                logger.warning("Rejected selection of %s by %s: %s", next_encounter_id, station_id, exc)
                self._audit(
                    FlowEventType.TRANSITION_REJECTED,
                    next_encounter_id,
                    station,
                    metadata={"action": action, "error": exc.code, "message": exc.message},
                )
                raise
            current = await self._store.get_encounter(current_encounter_id)
            if current.status in ACTIVE_STATUSES and current.attending_station == station.station_id:
                swap = await self.swap_out(current_encounter_id, station_id)
                if not swap.performed:
                    return SelectionOutcome(performed=False, reason=swap.reason)
                displaced = swap.encounter

        if recall:
            selected = await self.recall(next_encounter_id, station_id)
        else:
            selected = await self.call(next_encounter_id, station_id)
        return SelectionOutcome(performed=True, selected=selected, displaced=displaced)

    # -- triage --

    async def complete_triage(
        self,
        encounter_id: str,
        station_id: str,
        acuity: Optional[Acuity],
        vitals: Optional[VitalSigns] = None,
        chief_complaint: Optional[str] = None,
        discriminator: Optional[str] = None,
        allergies: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Encounter:
        """Classify the encounter and hand it to the physician queue."""
        station = self._station(station_id, "complete_triage")

        def mutate(encounter: Encounter, now: datetime) -> None:
            self._check_scope(encounter, station)
            self._validate_transition(encounter, S.AWAITING_PHYSICIAN)
            if encounter.status != S.IN_TRIAGE:
                raise InvalidTransitionError(
                    f"Encounter {encounter.encounter_id} is not in triage.",
                    entity_id=encounter.encounter_id,
                )
            self._check_attending(encounter, station)
            if acuity is None:
                raise PreconditionFailedError(
                    "An acuity classification is required to complete triage.",
                    entity_id=encounter.encounter_id,
                )
            encounter.acuity = acuity
            if chief_complaint is not None:
                encounter.narrative.chief_complaint = chief_complaint
            if discriminator is not None:
                encounter.narrative.discriminator = discriminator
            if allergies is not None:
                encounter.narrative.allergies = allergies
            if vitals is not None:
                encounter.triage_vitals = vitals
            encounter.status = S.AWAITING_PHYSICIAN
            encounter.absence_anchor = None
            self._release(encounter)

        encounter = await self._apply(
            "complete_triage", encounter_id, station, mutate, expected_version
        )
        self._audit(
            FlowEventType.TRIAGE_COMPLETED,
            encounter_id,
            station,
            metadata={"acuity": acuity.value if acuity else None},
        )
        logger.info("Triage completed for %s: %s", encounter_id, acuity.value if acuity else None)
        return encounter

    async def revise_acuity(
        self,
        encounter_id: str,
        station_id: str,
        acuity: Acuity,
        expected_version: Optional[int] = None,
    ) -> Encounter:
        station = self._station(station_id, "revise_acuity")
        previous: Optional[Acuity] = None

        def mutate(encounter: Encounter, now: datetime) -> None:
            nonlocal previous
            self._check_scope(encounter, station)
            if encounter.status.is_terminal:
                raise InvalidTransitionError(
                    f"Encounter {encounter.encounter_id} is closed ({encounter.status.value}).",
                    entity_id=encounter.encounter_id,
                )
            previous = encounter.acuity
            encounter.acuity = acuity

        encounter = await self._apply(
            "revise_acuity", encounter_id, station, mutate, expected_version
        )
        self._audit(
            FlowEventType.ACUITY_REVISED,
            encounter_id,
            station,
            metadata={"from": previous.value if previous else None, "to": acuity.value},
        )
        return encounter

    # -- consultation --

    def _missing_fields(
        self,
        outcome: FinalizeOutcome,
        narrative: ClinicalNarrative,
        bed_justification: str,
    ) -> list[str]:
        missing = []
        for name in self._policy.finalize_required_fields.get(outcome, []):
            value = bed_justification if name == "bed_justification" else getattr(narrative, name)
            if not value.strip():
                missing.append(name)
        return missing

    async def finalize_consultation(
        self,
        encounter_id: str,
        station_id: str,
        outcome: FinalizeOutcome,
        narrative: Optional[ClinicalNarrative] = None,
        bed_justification: str = "",
        bed_priority: Optional[int] = None,
        expected_version: Optional[int] = None,
    ) -> Encounter:
        """End a consultation with discharge, observation or a bed request.

        Raises:
            InvalidTransitionError: The encounter is not in consultation.
            PreconditionFailedError: A field the policy requires for
                ``outcome`` is empty.
        """
        station = self._station(station_id, "finalize_consultation")
        target = outcome.target_status

        def mutate(encounter: Encounter, now: datetime) -> None:
            self._check_scope(encounter, station)
            self._validate_transition(encounter, target)
            if encounter.status != S.IN_CONSULTATION:
                raise InvalidTransitionError(
                    f"Encounter {encounter.encounter_id} is not in consultation.",
                    entity_id=encounter.encounter_id,
                )
            self._check_attending(encounter, station)
            final_narrative = narrative or encounter.narrative
            missing = self._missing_fields(outcome, final_narrative, bed_justification)
            if missing:
                raise PreconditionFailedError(
                    f"Cannot finalize {encounter.encounter_id} as {outcome.value}: "
                    f"missing {missing}.",
                    entity_id=encounter.encounter_id,
                )
            encounter.narrative = final_narrative.model_copy(deep=True)
            encounter.status = target
            if outcome == FinalizeOutcome.BED_REQUEST:
                encounter.bed_request_time = now
                encounter.bed_request_priority = bed_priority or self._policy.default_bed_priority
                encounter.bed_justification = bed_justification.strip()
            if outcome == FinalizeOutcome.DISCHARGE:
                encounter.closed_at = now
            encounter.absence_anchor = None
            self._release(encounter)

        encounter = await self._apply(
            "finalize_consultation", encounter_id, station, mutate, expected_version
        )
        self._audit(
            FlowEventType.CONSULTATION_FINALIZED,
            encounter_id,
            station,
            metadata={
                "outcome": outcome.value,
                "bed_request_priority": encounter.bed_request_priority,
            },
        )
        logger.info("Consultation %s finalized as %s", encounter_id, outcome.value)
        return encounter

    async def save_narrative(
        self,
        encounter_id: str,
        station_id: str,
        narrative: ClinicalNarrative,
        expected_version: Optional[int] = None,
    ) -> Encounter:
        """Durably store the clinical narrative of an open encounter."""
        station = self._station(station_id, "save_narrative")

        def mutate(encounter: Encounter, now: datetime) -> None:
            self._check_scope(encounter, station)
            if encounter.status.is_terminal:
                raise InvalidTransitionError(
                    f"Encounter {encounter.encounter_id} is closed ({encounter.status.value}).",
                    entity_id=encounter.encounter_id,
                )
            encounter.narrative = narrative.model_copy(deep=True)

        encounter = await self._apply(
            "save_narrative", encounter_id, station, mutate, expected_version
        )
        self._audit(FlowEventType.NARRATIVE_SAVED, encounter_id, station,
                    metadata={"version": encounter.version})
        return encounter

    async def request_document(
        self,
        encounter_id: str,
        station_id: str,
        kind: DocumentKind,
        narrative: Optional[ClinicalNarrative] = None,
    ) -> DocumentRequest:
        """Issue a document-generation request for an encounter.

        When ``narrative`` is given it is saved first; the request is only
        built from what the store acknowledged.
        """
        station = self._station(station_id, "request_document")
        if narrative is not None:
            encounter = await self.save_narrative(encounter_id, station_id, narrative)
        else:
            encounter = await self._store.get_encounter(encounter_id)
            self._check_scope(encounter, station)

        request = DocumentRequest(
            encounter_id=encounter_id,
            kind=kind,
            narrative=encounter.narrative,
            encounter_version=encounter.version,
            requested_by=station.station_id,
            requested_at=self._store.now(),
        )
        self._audit(
            FlowEventType.DOCUMENT_REQUESTED,
            encounter_id,
            station,
            metadata={"kind": kind.value, "request_id": request.request_id,
                      "encounter_version": encounter.version},
        )
        return request

    # -- observation and bed regulation --

    async def discharge_from_observation(
        self,
        encounter_id: str,
        station_id: str,
        expected_version: Optional[int] = None,
    ) -> Encounter:
        station = self._station(station_id, "discharge_observation")

        def mutate(encounter: Encounter, now: datetime) -> None:
            self._check_scope(encounter, station)
            self._validate_transition(encounter, S.FINALIZED)
            if encounter.status != S.IN_OBSERVATION:
                raise InvalidTransitionError(
                    f"Encounter {encounter.encounter_id} is not in observation.",
                    entity_id=encounter.encounter_id,
                )
            encounter.status = S.FINALIZED
            encounter.closed_at = now

        encounter = await self._apply(
            "discharge_observation", encounter_id, station, mutate, expected_version
        )
        self._audit(FlowEventType.OBSERVATION_DISCHARGED, encounter_id, station)
        logger.info("Discharged %s from observation", encounter_id)
        return encounter

    async def request_reevaluation(
        self,
        encounter_id: str,
        station_id: str,
        expected_version: Optional[int] = None,
    ) -> Encounter:
        """Send an observation patient back to the physician queue."""
        station = self._station(station_id, "request_reevaluation")

        def mutate(encounter: Encounter, now: datetime) -> None:
            self._check_scope(encounter, station)
            if encounter.status != S.IN_OBSERVATION:
                raise InvalidTransitionError(
                    f"Encounter {encounter.encounter_id} is not in observation.",
                    entity_id=encounter.encounter_id,
                )
            self._validate_transition(encounter, S.AWAITING_REEVALUATION)
            encounter.status = S.AWAITING_REEVALUATION

        encounter = await self._apply(
            "request_reevaluation", encounter_id, station, mutate, expected_version
        )
        self._audit(FlowEventType.REEVALUATION_REQUESTED, encounter_id, station)
        return encounter

    async def complete_bed_transfer(
        self,
        encounter_id: str,
        station_id: str,
        transfer: TransferDetails,
        expected_version: Optional[int] = None,
    ) -> Encounter:
        """Close a bed request once the patient leaves for the receiving facility."""
        station = self._station(station_id, "complete_bed_transfer")

        def mutate(encounter: Encounter, now: datetime) -> None:
            self._check_scope(encounter, station)
            if encounter.status != S.AWAITING_BED:
                raise InvalidTransitionError(
                    f"Encounter {encounter.encounter_id} is not awaiting a bed.",
                    entity_id=encounter.encounter_id,
                )
            self._validate_transition(encounter, S.FINALIZED)
            encounter.status = S.FINALIZED
            encounter.transfer = transfer.model_copy(deep=True)
            encounter.closed_at = now

        encounter = await self._apply(
            "complete_bed_transfer", encounter_id, station, mutate, expected_version
        )
        waited = encounter.closed_at - encounter.bed_request_time if encounter.bed_request_time else None
        self._audit(
            FlowEventType.BED_TRANSFER_COMPLETED,
            encounter_id,
            station,
            metadata={
                "destination": transfer.destination,
                "regulation_code": transfer.regulation_code,
                "transport": transfer.transport,
                "bed_wait_seconds": waited.total_seconds() if waited else None,
            },
        )
        logger.info("Bed transfer completed for %s to %s", encounter_id, transfer.destination)
        return encounter
