"""
Synthetic Scenario: One Shift at an Urgent Care Unit
====================================================

This script walks three synthetic patients through the AttendFlow
Attendance Flow Engine.  No real patient data is used.

Steps demonstrated:
  1. Load the facility policy from YAML
  2. Wire the store, notifier, audit log and public display
  3. Register arrivals at reception
  4. Triage with a no-show and a recall
  5. Physician consultations: observation, bed request, absence
  6. Reception cancels the unanswered absence
  7. Nursing works the observation checklist and discharges
  8. Bed desk records the transfer
  9. Encounter timeline and audit export

Usage:
    python -m examples.synthetic_scenario
    # or: python examples/synthetic_scenario.py
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from attendflow.audit import AuditLog
from attendflow.checklist import ChecklistService
from attendflow.config import FacilityPolicy, load_policy_from_yaml
from attendflow.flow import FlowStateMachine
from attendflow.models import (
    Acuity,
    ChecklistItemDraft,
    ClinicalNarrative,
    CompositeComponent,
    FinalizeOutcome,
    PageEvent,
    PatientSnapshot,
    TransferDetails,
    VitalSigns,
)
from attendflow.notifier import ChangeNotifier
from attendflow.nursing import NursingService
from attendflow.paging import DisplayBoard, PagingBoundary, announcement_text
from attendflow.stations import CommandResult, StationController
from attendflow.store import EncounterStore
from attendflow.timeline import build_encounter_timeline


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _show(label: str, result: CommandResult) -> None:
    if not result.ok:
        print(f"{label}: REJECTED ({result.error_code}) {result.message}")
    elif not result.performed:
        print(f"{label}: no change ({result.message})")
    elif result.encounter is not None:
        print(f"{label}: {result.encounter.patient.display_name} -> {result.encounter.status.value}")
    else:
        print(f"{label}: ok")


def _show_queue(station: StationController) -> None:
    print(f"Queue at {station.station_id}:")
    if not station.queue:
        print("  (empty)")
    for e in station.queue:
        acuity = e.acuity.value if e.acuity else "unset"
        print(f"  [{acuity:>6}] {e.patient.display_name:<28} {station.wait_label(e)}")


def _announce(event: PageEvent) -> None:
    prefix = "RECALL" if event.recall else "CALL"
    print(f"  >> {prefix}: {announcement_text(event)}")


async def main() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    _banner("AttendFlow Synthetic Scenario: One Shift")
    print("All data in this demo is entirely synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Load facility policy
    # ------------------------------------------------------------------
    _banner("Step 1: Load Facility Policy")

    sample_yaml = Path(__file__).parent / "facility_policy.yaml"
    if sample_yaml.exists():
        policy = load_policy_from_yaml(sample_yaml)
        print(f"Loaded policy: {policy.facility_name} (facility_id: {policy.facility_id})")
    else:
        policy = FacilityPolicy(facility_id="demo_upa", facility_name="Demo Urgent Care")
        print(f"Created inline policy: {policy.facility_name}")
    print(f"Stations: {[s.station_id for s in policy.stations]}")

    # ------------------------------------------------------------------
    # Step 2: Wire the engine
    # ------------------------------------------------------------------
    notifier = ChangeNotifier()
    store = EncounterStore(notifier=notifier)
    audit_log = AuditLog()
    board = DisplayBoard(policy.page_banner_seconds, policy.display_history_size)
    paging = PagingBoundary()
    paging.add_sink("display", board.show)
    paging.add_sink("speech", _announce)

    flow = FlowStateMachine(store, policy, audit_log, paging)
    checklist = ChecklistService(store, policy, audit_log)
    nursing_service = NursingService(store, policy, audit_log)

    async def station(station_id: str) -> StationController:
        controller = StationController(
            station_id, store, flow,
            checklist=checklist, nursing=nursing_service, notifier=notifier,
        )
        await controller.start()
        return controller

    reception = await station("reception-01")
    triage = await station("triage-01")
    physician = await station("physician-01")
    nursing = await station("nursing-01")
    bed_desk = await station("bed-desk-01")

    # ------------------------------------------------------------------
    # Step 3: Arrivals
    # ------------------------------------------------------------------
    _banner("Step 2: Reception Registers Arrivals")

    arrivals = {}
    for ref, name, complaint in [
        ("synthetic-001", "Patient A (synthetic)", "chest pain"),
        ("synthetic-002", "Patient B (synthetic)", "sore throat"),
        ("synthetic-003", "Patient C (synthetic)", "fall from ladder"),
    ]:
        result = await reception.register_arrival(ref, PatientSnapshot(display_name=name), complaint)
        _show("register", result)
        arrivals[ref] = result.encounter.encounter_id
    a, b, c = arrivals["synthetic-001"], arrivals["synthetic-002"], arrivals["synthetic-003"]
    _show_queue(triage)

    # ------------------------------------------------------------------
    # Step 4: Triage
    # ------------------------------------------------------------------
    _banner("Step 3: Triage")

    _show("call A", await triage.call(a))
    _show("triage A", await triage.complete_triage(
        Acuity.RED, vitals=VitalSigns(systolic=90, diastolic=60, heart_rate=118, spo2=91),
        discriminator="acute chest pain",
    ))

    _show("call B", await triage.call(b))
    _show("B did not answer", await triage.mark_absent())
    print(f"Triage absentees: {[e.patient.display_name for e in triage.absentees]}")

    _show("call C", await triage.call(c))
    _show("triage C", await triage.complete_triage(Acuity.ORANGE, vitals=VitalSigns(heart_rate=96)))

    _show("recall B", await triage.recall(b))
    _show("triage B", await triage.complete_triage(Acuity.GREEN, vitals=VitalSigns(temperature=37.8)))
    _show_queue(physician)

    # ------------------------------------------------------------------
    # Step 5: Physician
    # ------------------------------------------------------------------
    _banner("Step 4: Physician Consultations")

    _show("call A", await physician.call(a))
    added = await physician.add_checklist_item(ChecklistItemDraft(
        name="saline 0.9% 500 mL", route="IV",
        components=[CompositeComponent(name="dipyrone", quantity="1 g")],
    ))
    print(f"Checklist item added: {added.item.name if added.ok else added.error_code}")
    _show("A to observation", await physician.finalize(
        FinalizeOutcome.OBSERVATION,
        narrative=ClinicalNarrative(diagnosis="chest pain under investigation", orders="serial ECG"),
    ))

    _show("call C", await physician.call(c))
    _show("C bed request without justification", await physician.finalize(FinalizeOutcome.BED_REQUEST))
    _show("C bed request", await physician.finalize(
        FinalizeOutcome.BED_REQUEST,
        narrative=ClinicalNarrative(diagnosis="closed femur fracture"),
        bed_justification="orthopedic surgery required",
        bed_priority=1,
    ))

    _show("call B", await physician.call(b))
    _show("B did not answer", await physician.mark_absent())
    banner = board.current_banner(store.now())
    print(f"Display banner: {banner.patient_display_name if banner else '(none)'}")
    print(f"Recent calls: {[p.patient_display_name for p in board.recent_calls()]}")

    # ------------------------------------------------------------------
    # Step 6: Reception
    # ------------------------------------------------------------------
    _banner("Step 5: Reception Cancels the Absence")

    print(f"Absentees seen by reception: {[e.patient.display_name for e in reception.absentees]}")
    _show("cancel B", await reception.cancel_absent(b, reason="left before consultation"))

    # ------------------------------------------------------------------
    # Step 7: Nursing
    # ------------------------------------------------------------------
    _banner("Step 6: Observation Nursing")

    _show_queue(nursing)
    if added.ok:
        _show("administer", await nursing.administer(added.item.item_id))
        _show("administer again", await nursing.administer(added.item.item_id))
    progress = await nursing.checklist_progress(a)
    print(f"Checklist progress: {progress.data.percent}%")
    _show("vitals", await nursing.record_vitals(a, VitalSigns(systolic=118, diastolic=76, heart_rate=82)))
    _show("note", await nursing.add_note(a, "Pain resolved after medication. Serial ECG normal."))
    _show("discharge A", await nursing.discharge_observation(a))

    # ------------------------------------------------------------------
    # Step 8: Bed desk
    # ------------------------------------------------------------------
    _banner("Step 7: Bed Regulation")

    _show_queue(bed_desk)
    _show("transfer C", await bed_desk.complete_bed_transfer(c, TransferDetails(
        destination="General Hospital (synthetic)",
        regulation_code="REG-0000",
        transport="advanced ambulance",
    )))

    # ------------------------------------------------------------------
    # Step 9: Timeline and audit export
    # ------------------------------------------------------------------
    _banner("Step 8: Encounter Timeline (Patient B)")

    timeline = build_encounter_timeline(await store.get_encounter(b), audit_log)
    print(json.dumps(timeline.to_dict(), indent=2, default=str))

    _banner("Step 9: Audit Log Export")

    export = audit_log.export_for_review(facility_id=policy.facility_id)
    print(json.dumps(export["export_metadata"], indent=2))
    valid, broken_at = audit_log.verify_chain()
    print(f"\nFull chain verification: valid={valid}, broken_at={broken_at}")

    for controller in (reception, triage, physician, nursing, bed_desk):
        controller.stop()

    _banner("Scenario Complete")
    print("All data was synthetic.")


if __name__ == "__main__":
    asyncio.run(main())
