"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from attendflow.audit import AuditLog
from attendflow.checklist import ChecklistService
from attendflow.config import FacilityPolicy, StationConfig
from attendflow.flow import FlowStateMachine
from attendflow.models import PatientSnapshot, StationRole
from attendflow.notifier import ChangeNotifier
from attendflow.nursing import NursingService
from attendflow.paging import PagingBoundary
from attendflow.store import EncounterStore


class FakeClock:
    """Deterministic store clock.  Time moves only when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, minutes: float = 0, hours: float = 0) -> datetime:
        self.current += timedelta(seconds=seconds, minutes=minutes, hours=hours)
        return self.current


def make_policy(**overrides) -> FacilityPolicy:
    stations = [
        StationConfig(station_id="reception-01", role=StationRole.RECEPTION),
        StationConfig(station_id="triage-01", role=StationRole.TRIAGE,
                      destination_label="TRIAGE - ROOM 01"),
        StationConfig(station_id="triage-02", role=StationRole.TRIAGE,
                      destination_label="TRIAGE - ROOM 02"),
        StationConfig(station_id="physician-01", role=StationRole.PHYSICIAN,
                      destination_label="PHYSICIAN OFFICE 01"),
        StationConfig(station_id="physician-02", role=StationRole.PHYSICIAN,
                      destination_label="PHYSICIAN OFFICE 02"),
        StationConfig(station_id="nursing-01", role=StationRole.NURSING),
        StationConfig(station_id="bed-desk-01", role=StationRole.BED_DESK),
        StationConfig(station_id="display-01", role=StationRole.DISPLAY),
    ]
    values = {"facility_id": "upa_test", "facility_name": "Test Urgent Care", "stations": stations}
    values.update(overrides)
    return FacilityPolicy(**values)


def make_patient(name: str = "Maria Souza") -> PatientSnapshot:
    return PatientSnapshot(display_name=name, document_id="123.456.789-00")


class Engine:
    """Every service wired to one store, one notifier and one audit log."""

    def __init__(self, policy: FacilityPolicy | None = None) -> None:
        self.clock = FakeClock()
        self.policy = policy or make_policy()
        self.notifier = ChangeNotifier()
        self.store = EncounterStore(notifier=self.notifier, clock=self.clock)
        self.audit_log = AuditLog()
        self.paging = PagingBoundary()
        self.pages = []
        self.paging.add_sink("recorder", self.pages.append)
        self.flow = FlowStateMachine(self.store, self.policy, self.audit_log, self.paging)
        self.checklist = ChecklistService(self.store, self.policy, self.audit_log)
        self.nursing = NursingService(self.store, self.policy, self.audit_log)

    async def arrive(self, name: str = "Maria Souza", minutes_later: float = 1):
        """Register an arrival, then move the clock so arrivals never tie."""
        encounter = await self.flow.register_arrival(
            "reception-01", f"patient-{name.lower().replace(' ', '-')}", make_patient(name)
        )
        self.clock.advance(minutes=minutes_later)
        return encounter


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    return make_policy()


@pytest.fixture
def engine():
    return Engine()
