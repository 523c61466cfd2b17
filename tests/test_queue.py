"""
Tests for attendflow.queue -- Priority Queue Builder.

Covers: acuity-then-arrival ordering, a late red arrival jumping a waiting
yellow, unset acuity sorting last, determinism under input permutation,
absentee exclusion and ordering by absence anchor, bed-desk ordering by
request time, and the wait-time helpers.
"""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone

from attendflow.models import Acuity, Encounter, EncounterStatus, PatientSnapshot
from attendflow.queue import (
    BED_DESK_FILTER,
    DISPLAY_FILTER,
    PHYSICIAN_FILTER,
    TRIAGE_FILTER,
    acuity_rank,
    build_absentee_list,
    build_queue,
    format_wait_time,
    is_bed_wait_critical,
    stale_absences,
)

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


def _enc(
    encounter_id: str,
    status: EncounterStatus = EncounterStatus.AWAITING_PHYSICIAN,
    acuity: Acuity | None = Acuity.YELLOW,
    arrived_min: int = 0,
    **fields,
) -> Encounter:
    return Encounter(
        encounter_id=encounter_id,
        facility_id="upa_test",
        patient_ref=f"ref-{encounter_id}",
        patient=PatientSnapshot(display_name=encounter_id.upper()),
        status=status,
        acuity=acuity,
        arrival_time=T0 + timedelta(minutes=arrived_min),
        **fields,
    )


def _ids(encounters: list[Encounter]) -> list[str]:
    return [e.encounter_id for e in encounters]


# ---------------------------------------------------------------------------
# 1. Ordering
# ---------------------------------------------------------------------------

class TestOrdering:
    def test_acuity_rank(self):
        assert acuity_rank(Acuity.RED) == 1
        assert acuity_rank(Acuity.BLUE) == 5
        assert acuity_rank(None) == 99

    def test_red_after_yellow_is_placed_first(self):
        yellow = _enc("yellow", acuity=Acuity.YELLOW, arrived_min=0)
        red = _enc("red", acuity=Acuity.RED, arrived_min=30)
        assert _ids(build_queue([yellow, red], PHYSICIAN_FILTER)) == ["red", "yellow"]

    def test_same_acuity_orders_by_arrival(self):
        queue = build_queue(
            [_enc("c", arrived_min=20), _enc("a", arrived_min=0), _enc("b", arrived_min=10)],
            PHYSICIAN_FILTER,
        )
        assert _ids(queue) == ["a", "b", "c"]

    def test_unset_acuity_sorts_last(self):
        queue = build_queue(
            [
                _enc("unset", status=EncounterStatus.AWAITING_TRIAGE, acuity=None, arrived_min=0),
                _enc("blue", status=EncounterStatus.AWAITING_TRIAGE, acuity=Acuity.BLUE, arrived_min=5),
            ],
            TRIAGE_FILTER,
        )
        assert _ids(queue) == ["blue", "unset"]

    def test_order_is_independent_of_input_order(self):
        encounters = [
            _enc("e1", acuity=Acuity.GREEN, arrived_min=0),
            _enc("e2", acuity=Acuity.ORANGE, arrived_min=3),
            _enc("e3", acuity=Acuity.GREEN, arrived_min=0),
            _enc("e4", acuity=Acuity.RED, arrived_min=9),
        ]
        expected = _ids(build_queue(encounters, PHYSICIAN_FILTER))
        assert expected == ["e4", "e2", "e1", "e3"]
        for permutation in itertools.permutations(encounters):
            assert _ids(build_queue(permutation, PHYSICIAN_FILTER)) == expected

    def test_filter_by_station_statuses(self):
        encounters = [
            _enc("triage", status=EncounterStatus.AWAITING_TRIAGE, acuity=None),
            _enc("doctor", status=EncounterStatus.AWAITING_PHYSICIAN),
            _enc("reeval", status=EncounterStatus.AWAITING_REEVALUATION),
            _enc("seen", status=EncounterStatus.IN_CONSULTATION),
            _enc("done", status=EncounterStatus.FINALIZED),
        ]
        assert _ids(build_queue(encounters, TRIAGE_FILTER)) == ["triage"]
        assert set(_ids(build_queue(encounters, PHYSICIAN_FILTER))) == {"doctor", "reeval", "seen"}
        assert set(_ids(build_queue(encounters, DISPLAY_FILTER))) == {"triage", "doctor", "reeval"}

    def test_absent_encounters_excluded(self):
        encounters = [
            _enc("here"),
            _enc("gone", status=EncounterStatus.ABSENT, absence_anchor=T0),
        ]
        assert _ids(build_queue(encounters, PHYSICIAN_FILTER)) == ["here"]

    def test_bed_desk_orders_by_request_time(self):
        early_arrival = _enc(
            "early", status=EncounterStatus.AWAITING_BED, arrived_min=0,
            bed_request_time=T0 + timedelta(hours=5),
        )
        late_arrival = _enc(
            "late", status=EncounterStatus.AWAITING_BED, arrived_min=60,
            bed_request_time=T0 + timedelta(hours=2),
        )
        assert _ids(build_queue([early_arrival, late_arrival], BED_DESK_FILTER)) == ["late", "early"]


# ---------------------------------------------------------------------------
# 2. Absentee list
# ---------------------------------------------------------------------------

class TestAbsentees:
    def _absentees(self) -> list[Encounter]:
        return [
            _enc("first", status=EncounterStatus.ABSENT, absence_anchor=T0,
                 updated_at=T0 + timedelta(hours=3)),
            _enc("second", status=EncounterStatus.ABSENT, absence_anchor=T0 + timedelta(minutes=10),
                 updated_at=T0 + timedelta(minutes=10)),
            _enc("third", status=EncounterStatus.ABSENT, absence_anchor=T0 + timedelta(minutes=20),
                 updated_at=T0 + timedelta(minutes=20)),
        ]

    def test_newest_absence_first_by_default(self):
        assert _ids(build_absentee_list(self._absentees(), PHYSICIAN_FILTER)) == [
            "third", "second", "first",
        ]

    def test_oldest_first_option(self):
        station_filter = PHYSICIAN_FILTER.with_absentee_order(newest_first=False)
        assert _ids(build_absentee_list(self._absentees(), station_filter)) == [
            "first", "second", "third",
        ]

    def test_order_ignores_updated_at(self):
        # "first" was re-paged most recently but keeps its place.
        ordered = build_absentee_list(self._absentees(), PHYSICIAN_FILTER)
        assert ordered[-1].encounter_id == "first"

    def test_only_station_absent_statuses(self):
        encounters = self._absentees() + [
            _enc("triage_gone", status=EncounterStatus.AWAITING_TRIAGE_ABSENT, absence_anchor=T0),
        ]
        assert _ids(build_absentee_list(encounters, TRIAGE_FILTER)) == ["triage_gone"]

    def test_anchor_ties_broken_by_id(self):
        encounters = [
            _enc("b", status=EncounterStatus.ABSENT, absence_anchor=T0),
            _enc("a", status=EncounterStatus.ABSENT, absence_anchor=T0),
        ]
        assert _ids(build_absentee_list(encounters, PHYSICIAN_FILTER)) == ["a", "b"]


# ---------------------------------------------------------------------------
# 3. Wait-time helpers
# ---------------------------------------------------------------------------

class TestWaitHelpers:
    def test_format_minutes(self):
        assert format_wait_time(T0, T0 + timedelta(minutes=15)) == "15 min"

    def test_format_hours(self):
        assert format_wait_time(T0, T0 + timedelta(minutes=80)) == "1h 20m"

    def test_format_days(self):
        assert format_wait_time(T0, T0 + timedelta(days=2, hours=4, minutes=5)) == "2d 4h"

    def test_format_unset_and_future(self):
        assert format_wait_time(None, T0) == "--"
        assert format_wait_time(T0 + timedelta(minutes=5), T0) == "0 min"

    def test_bed_wait_critical(self):
        encounter = _enc("bed", status=EncounterStatus.AWAITING_BED, bed_request_time=T0)
        assert not is_bed_wait_critical(encounter, T0 + timedelta(hours=24), 24)
        assert is_bed_wait_critical(encounter, T0 + timedelta(hours=24, minutes=1), 24)

    def test_bed_wait_only_for_bed_requests(self):
        encounter = _enc("doctor", bed_request_time=T0)
        assert not is_bed_wait_critical(encounter, T0 + timedelta(days=3), 24)

    def test_stale_absences(self):
        encounters = [
            _enc("old", status=EncounterStatus.ABSENT, absence_anchor=T0),
            _enc("new", status=EncounterStatus.ABSENT, absence_anchor=T0 + timedelta(minutes=50)),
            _enc("here"),
        ]
        now = T0 + timedelta(hours=1)
        assert _ids(stale_absences(encounters, now, threshold_seconds=1800)) == ["old"]
        assert stale_absences(encounters, now, threshold_seconds=None) == []
