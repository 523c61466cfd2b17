"""
Facility Policy -- Configuration for the Attendance Flow Engine.

Every facility configures its stations, the labels paged on the public
display, the checklist eligibility rules, the fields a consultation must
carry before each outcome, and the operator-judgment limits that the flow
deliberately leaves open (re-paging cap, stale-absence threshold).

Policies are validated pydantic objects and can be loaded from YAML::

    facility:
      facility_id: "upa_vila_mariana"
      facility_name: "Vila Mariana Urgent Care"
      max_calls_per_activation: 5
      stations:
        - station_id: "triage-01"
          role: "triage"
          destination_label: "TRIAGE - ROOM 01"
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from attendflow.models import (
    ClinicalNarrative,
    EncounterStatus,
    FinalizeOutcome,
    StationRole,
    TERMINAL_STATUSES,
)


# Fields a policy may require before a consultation outcome is accepted.
REQUIRABLE_FIELDS = frozenset({"bed_justification"}) | frozenset(ClinicalNarrative.model_fields)


# ---------------------------------------------------------------------------
# Station configuration
# ---------------------------------------------------------------------------

class StationConfig(BaseModel):
    """A single physical or virtual station in the facility."""

    station_id: str = Field(
        ...,
        min_length=1,
        description="Stable identifier; also the value stored in examiner locks.",
    )
    role: StationRole = Field(..., description="What the station is allowed to do.")
    destination_label: str = Field(
        default="",
        description=(
            "Label paged on the public display when this station calls a "
            "patient, e.g. 'TRIAGE - ROOM 01'.  Falls back to the role default."
        ),
    )
    absentees_newest_first: bool = Field(
        default=True,
        description=(
            "Absentee list order by absence start.  Either way the order is "
            "anchored on the absence start, never on the last update."
        ),
    )


_DEFAULT_DESTINATIONS: dict[StationRole, str] = {
    StationRole.TRIAGE: "TRIAGE",
    StationRole.PHYSICIAN: "PHYSICIAN OFFICE",
    StationRole.NURSING: "NURSING POST",
    StationRole.BED_DESK: "BED REGULATION",
    StationRole.RECEPTION: "RECEPTION",
    StationRole.DISPLAY: "",
}


def _default_stations() -> list[StationConfig]:
    return [
        StationConfig(station_id="reception-01", role=StationRole.RECEPTION),
        StationConfig(station_id="triage-01", role=StationRole.TRIAGE,
                      destination_label="TRIAGE - ROOM 01"),
        StationConfig(station_id="physician-01", role=StationRole.PHYSICIAN,
                      destination_label="PHYSICIAN OFFICE 01"),
        StationConfig(station_id="nursing-01", role=StationRole.NURSING),
        StationConfig(station_id="bed-desk-01", role=StationRole.BED_DESK),
        StationConfig(station_id="display-01", role=StationRole.DISPLAY),
    ]


# ---------------------------------------------------------------------------
# Facility policy
# ---------------------------------------------------------------------------

class FacilityPolicy(BaseModel):
    """Complete flow policy for one facility."""

    facility_id: str = Field(
        ...,
        min_length=1,
        description="Scopes audit entries and encounters to this facility.",
    )
    facility_name: str = Field(..., min_length=1)
    stations: list[StationConfig] = Field(default_factory=_default_stations)
    max_calls_per_activation: Optional[int] = Field(
        default=None,
        ge=1,
        description=(
            "Upper bound on pages per activation.  None leaves re-paging to "
            "operator judgment, which is how the desks have always worked."
        ),
    )
    absence_auto_cancel_seconds: Optional[int] = Field(
        default=None,
        gt=0,
        description=(
            "Age after which an unaddressed absence is reported as stale.  "
            "Reporting only: stale absences are never cancelled automatically."
        ),
    )
    bed_wait_critical_hours: float = Field(
        default=24.0,
        gt=0,
        description="Bed-regulation wait beyond which the bed desk flags the request.",
    )
    default_bed_priority: int = Field(default=2, ge=1, le=3)
    page_banner_seconds: int = Field(
        default=15,
        gt=0,
        description="How long the display keeps a call banner up.  Presentational only.",
    )
    display_history_size: int = Field(default=5, ge=1)
    medication_eligible_statuses: list[EncounterStatus] = Field(
        default_factory=lambda: [EncounterStatus.IN_CONSULTATION, EncounterStatus.IN_OBSERVATION],
        description="Statuses in which checklist items may be added.",
    )
    finalize_required_fields: dict[FinalizeOutcome, list[str]] = Field(
        default_factory=lambda: {FinalizeOutcome.BED_REQUEST: ["bed_justification"]},
        description=(
            "Non-empty fields required before a consultation may end in each "
            "outcome.  Names are 'bed_justification' or a narrative field."
        ),
    )

    @field_validator("medication_eligible_statuses")
    @classmethod
    def no_terminal_medication_statuses(cls, v: list[EncounterStatus]) -> list[EncounterStatus]:
        terminal = [s.value for s in v if s in TERMINAL_STATUSES]
        if terminal:
            raise ValueError(f"Checklist items cannot be added in terminal statuses: {terminal}")
        return v

    @field_validator("finalize_required_fields")
    @classmethod
    def known_required_fields(
        cls, v: dict[FinalizeOutcome, list[str]]
    ) -> dict[FinalizeOutcome, list[str]]:
        for outcome, names in v.items():
            unknown = sorted(set(names) - REQUIRABLE_FIELDS)
            if unknown:
                raise ValueError(
                    f"Unknown required fields for {outcome.value}: {unknown}. "
                    f"Allowed: {sorted(REQUIRABLE_FIELDS)}"
                )
        return v

    @model_validator(mode="after")
    def unique_station_ids(self) -> "FacilityPolicy":
        ids = [s.station_id for s in self.stations]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate station ids: {duplicates}")
        return self

    def station(self, station_id: str) -> StationConfig:
        """Return the configuration of ``station_id``.

        Raises:
            KeyError: If the station is not configured for this facility.
        """
        for station in self.stations:
            if station.station_id == station_id:
                return station
        raise KeyError(f"No station '{station_id}' configured for facility '{self.facility_id}'")

    def destination_label(self, station_id: str) -> str:
        station = self.station(station_id)
        return station.destination_label or _DEFAULT_DESTINATIONS[station.role]


DEFAULT_POLICY = FacilityPolicy(
    facility_id="default",
    facility_name="Default Facility",
)
"""Built-in policy: one station per role, unbounded re-paging, no stale-absence reporting."""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_policy_from_yaml(path: str | Path) -> FacilityPolicy:
    """Load a facility policy from a YAML file.

    The file must contain a top-level ``facility`` mapping validated
    through ``FacilityPolicy``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If the policy fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "facility" not in raw:
        raise ValueError("YAML file must contain a top-level 'facility' mapping.")

    entry = raw["facility"]
    if not isinstance(entry, dict):
        raise ValueError("'facility' must be a mapping.")

    stations = entry.get("stations")
    if stations is not None and not isinstance(stations, list):
        raise ValueError("'stations' must be a list of station objects.")

    return FacilityPolicy.model_validate(entry)
