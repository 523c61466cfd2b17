"""
Priority Queue Builder.

Pure, deterministic functions that turn a set of encounters into the ordered
view a station shows.  They hold no state and touch nothing outside their
arguments, so any station can recompute its queue on every change
notification without coordinating with anyone.

Ordering: acuity rank first (red=1 ... blue=5, unset=99), then arrival time,
or bed-request time at the bed desk, then encounter id so the result does not
depend on input order.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from attendflow.models import Acuity, Encounter, EncounterStatus, StationRole

ACUITY_RANK: dict[Acuity, int] = {
    Acuity.RED: 1,
    Acuity.ORANGE: 2,
    Acuity.YELLOW: 3,
    Acuity.GREEN: 4,
    Acuity.BLUE: 5,
}
UNSET_ACUITY_RANK = 99


def acuity_rank(acuity: Optional[Acuity]) -> int:
    if acuity is None:
        return UNSET_ACUITY_RANK
    return ACUITY_RANK[acuity]


@dataclass(frozen=True)
class StationFilter:
    """Which encounters a station's queue and absentee list contain."""

    name: str
    statuses: frozenset[EncounterStatus]
    absent_statuses: frozenset[EncounterStatus] = frozenset()
    by_bed_request_time: bool = False
    absentees_newest_first: bool = True

    def with_absentee_order(self, newest_first: bool) -> "StationFilter":
        return StationFilter(
            name=self.name,
            statuses=self.statuses,
            absent_statuses=self.absent_statuses,
            by_bed_request_time=self.by_bed_request_time,
            absentees_newest_first=newest_first,
        )


TRIAGE_FILTER = StationFilter(
    name="triage",
    statuses=frozenset({EncounterStatus.AWAITING_TRIAGE, EncounterStatus.IN_TRIAGE}),
    absent_statuses=frozenset({EncounterStatus.AWAITING_TRIAGE_ABSENT}),
)
PHYSICIAN_FILTER = StationFilter(
    name="physician",
    statuses=frozenset({
        EncounterStatus.AWAITING_PHYSICIAN,
        EncounterStatus.AWAITING_REEVALUATION,
        EncounterStatus.IN_CONSULTATION,
    }),
    absent_statuses=frozenset({EncounterStatus.ABSENT}),
)
OBSERVATION_FILTER = StationFilter(
    name="observation",
    statuses=frozenset({EncounterStatus.IN_OBSERVATION}),
)
BED_DESK_FILTER = StationFilter(
    name="bed_desk",
    statuses=frozenset({EncounterStatus.AWAITING_BED}),
    by_bed_request_time=True,
)
DISPLAY_FILTER = StationFilter(
    name="display",
    statuses=frozenset({
        EncounterStatus.AWAITING_TRIAGE,
        EncounterStatus.AWAITING_PHYSICIAN,
        EncounterStatus.AWAITING_REEVALUATION,
    }),
)
RECEPTION_FILTER = StationFilter(
    name="reception",
    statuses=frozenset({EncounterStatus.AWAITING_TRIAGE}),
    absent_statuses=frozenset({EncounterStatus.AWAITING_TRIAGE_ABSENT, EncounterStatus.ABSENT}),
)

STATION_FILTERS: dict[StationRole, StationFilter] = {
    StationRole.RECEPTION: RECEPTION_FILTER,
    StationRole.TRIAGE: TRIAGE_FILTER,
    StationRole.PHYSICIAN: PHYSICIAN_FILTER,
    StationRole.NURSING: OBSERVATION_FILTER,
    StationRole.BED_DESK: BED_DESK_FILTER,
    StationRole.DISPLAY: DISPLAY_FILTER,
}


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def _queue_key(encounter: Encounter, station_filter: StationFilter) -> tuple:
    if station_filter.by_bed_request_time:
        # Rows without a request time cannot be in awaiting_bed through the
        # state machine; fall back to arrival so the sort stays total.
        secondary = encounter.bed_request_time or encounter.arrival_time
    else:
        secondary = encounter.arrival_time
    return (acuity_rank(encounter.acuity), secondary, encounter.encounter_id)


def build_queue(encounters: Iterable[Encounter], station_filter: StationFilter) -> list[Encounter]:
    """Return the station's queue in priority order.

    Absent encounters never appear here; see ``build_absentee_list``.
    """
    selected = [
        e for e in encounters
        if e.status in station_filter.statuses and not e.status.is_absent
    ]
    return sorted(selected, key=lambda e: _queue_key(e, station_filter))


def build_absentee_list(
    encounters: Iterable[Encounter], station_filter: StationFilter
) -> list[Encounter]:
    """Return the station's absentees ordered by absence start.

    The anchor is preserved across recall attempts, so paging an absentee
    again never reshuffles this list.
    """
    selected = [e for e in encounters if e.status in station_filter.absent_statuses]

    def key(e: Encounter) -> tuple:
        anchor = e.absence_anchor or e.state_changed_at
        return (anchor, e.encounter_id)

    ordered = sorted(selected, key=key)
    if station_filter.absentees_newest_first:
        # Reverse on the anchor only; ties keep ascending id order.
        ordered = sorted(ordered, key=lambda e: e.absence_anchor or e.state_changed_at, reverse=True)
    return ordered


# ---------------------------------------------------------------------------
# Wait-time helpers
# ---------------------------------------------------------------------------

def format_wait_time(since: Optional[datetime], now: datetime) -> str:
    """Format elapsed time for queue cards: ``"15 min"``, ``"1h 20m"``, ``"2d 4h"``."""
    if since is None:
        return "--"
    elapsed = now - since
    if elapsed < timedelta(0):
        return "0 min"
    minutes = int(elapsed.total_seconds() // 60)
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    return f"{minutes} min"


def is_bed_wait_critical(encounter: Encounter, now: datetime, critical_hours: float) -> bool:
    if encounter.status != EncounterStatus.AWAITING_BED or encounter.bed_request_time is None:
        return False
    return now - encounter.bed_request_time > timedelta(hours=critical_hours)


def stale_absences(
    encounters: Iterable[Encounter],
    now: datetime,
    threshold_seconds: Optional[int],
) -> list[Encounter]:
    """List absences older than ``threshold_seconds``, oldest first.

    Reporting only.  Returns an empty list when no threshold is configured.
    """
    if threshold_seconds is None:
        return []
    limit = timedelta(seconds=threshold_seconds)
    stale = [
        e for e in encounters
        if e.status.is_absent and e.absence_anchor is not None and now - e.absence_anchor > limit
    ]
    return sorted(stale, key=lambda e: (e.absence_anchor, e.encounter_id))
