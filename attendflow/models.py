"""
Core data models for the AttendFlow engine.

Statuses and acuity levels are closed enumerations; vitals and composite
checklist components are explicit structured records validated at the store
boundary rather than free-form JSON payloads.

An ``Encounter`` holds a denormalized ``PatientSnapshot`` for display only.
Patient identity and demographics are owned outside the engine and referenced
through ``patient_ref``.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class EncounterStatus(str, enum.Enum):
    """Lifecycle states of an encounter.

    ``FINALIZED`` and ``CANCELLED`` are terminal.  The legal transitions
    between these values are declared in ``attendflow.flow``.
    """

    AWAITING_TRIAGE = "awaiting_triage"
    IN_TRIAGE = "in_triage"
    AWAITING_TRIAGE_ABSENT = "awaiting_triage_absent"
    AWAITING_PHYSICIAN = "awaiting_physician"
    AWAITING_REEVALUATION = "awaiting_reevaluation"
    IN_CONSULTATION = "in_consultation"
    ABSENT = "absent"
    IN_OBSERVATION = "in_observation"
    AWAITING_BED = "awaiting_bed"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_absent(self) -> bool:
        return self in ABSENT_STATUSES

    @property
    def is_active(self) -> bool:
        """Whether a station is currently examining the encounter."""
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES = frozenset({EncounterStatus.FINALIZED, EncounterStatus.CANCELLED})
ABSENT_STATUSES = frozenset({EncounterStatus.ABSENT, EncounterStatus.AWAITING_TRIAGE_ABSENT})
ACTIVE_STATUSES = frozenset({EncounterStatus.IN_TRIAGE, EncounterStatus.IN_CONSULTATION})
WAITING_STATUSES = frozenset({
    EncounterStatus.AWAITING_TRIAGE,
    EncounterStatus.AWAITING_PHYSICIAN,
    EncounterStatus.AWAITING_REEVALUATION,
})


class Acuity(str, enum.Enum):
    """Five-level urgency classification assigned at triage.

    * ``RED``    -- emergency.
    * ``ORANGE`` -- very urgent.
    * ``YELLOW`` -- urgent.
    * ``GREEN``  -- less urgent.
    * ``BLUE``   -- non-urgent.
    """

    RED = "red"
    ORANGE = "orange"
    YELLOW = "yellow"
    GREEN = "green"
    BLUE = "blue"


ACUITY_LABELS: dict[Acuity, str] = {
    Acuity.RED: "Emergency",
    Acuity.ORANGE: "Very Urgent",
    Acuity.YELLOW: "Urgent",
    Acuity.GREEN: "Less Urgent",
    Acuity.BLUE: "Non-Urgent",
}


class StationRole(str, enum.Enum):
    """Roles a station can play.  Permissions are defined in ``attendflow.rbac``."""

    RECEPTION = "reception"
    TRIAGE = "triage"
    PHYSICIAN = "physician"
    NURSING = "nursing"
    BED_DESK = "bed_desk"
    DISPLAY = "display"


class FinalizeOutcome(str, enum.Enum):
    """Where a consultation sends the encounter when it is finalized."""

    DISCHARGE = "finalized"
    OBSERVATION = "in_observation"
    BED_REQUEST = "awaiting_bed"

    @property
    def target_status(self) -> EncounterStatus:
        return EncounterStatus(self.value)


class DocumentKind(str, enum.Enum):
    PRESCRIPTION = "prescription"
    CERTIFICATE = "certificate"
    REFERRAL = "referral"
    EXAM_REQUEST = "exam_request"


# ---------------------------------------------------------------------------
# Value records
# ---------------------------------------------------------------------------

class PatientSnapshot(BaseModel):
    """Denormalized patient data kept on the encounter for display."""

    display_name: str = Field(
        ...,
        min_length=1,
        description="Name shown on queues and paged on the public display.",
    )
    document_id: str = Field(
        default="",
        description="National or facility document number, if captured at reception.",
    )
    birth_date: Optional[str] = Field(default=None)


class ClinicalNarrative(BaseModel):
    """Free-text clinical fields.  Stored and returned, never interpreted."""

    chief_complaint: str = ""
    discriminator: str = ""
    history: str = ""
    physical_exam: str = ""
    diagnosis: str = ""
    orders: str = ""
    medical_guidance: str = ""
    certificate: str = ""
    allergies: str = ""


class VitalSigns(BaseModel):
    """A structured set of vital-sign measurements.

    Every measurement is optional, but a record must carry at least one.
    Ranges are plausibility bounds for data entry, not clinical limits.
    """

    systolic: Optional[int] = Field(default=None, ge=30, le=300, description="mmHg")
    diastolic: Optional[int] = Field(default=None, ge=10, le=200, description="mmHg")
    heart_rate: Optional[int] = Field(default=None, ge=10, le=300, description="bpm")
    respiratory_rate: Optional[int] = Field(default=None, ge=2, le=80, description="rpm")
    temperature: Optional[float] = Field(default=None, ge=25, le=45, description="Celsius")
    spo2: Optional[int] = Field(default=None, ge=0, le=100, description="percent")
    glucose: Optional[int] = Field(default=None, ge=10, le=1000, description="mg/dL")
    measured_at: datetime = Field(default_factory=utcnow)
    recorded_by: str = Field(default="")

    @model_validator(mode="after")
    def at_least_one_measurement(self) -> "VitalSigns":
        measurements = (
            self.systolic, self.diastolic, self.heart_rate, self.respiratory_rate,
            self.temperature, self.spo2, self.glucose,
        )
        if all(m is None for m in measurements):
            raise ValueError("VitalSigns requires at least one measurement.")
        if (self.systolic is None) != (self.diastolic is None):
            raise ValueError("Blood pressure needs both systolic and diastolic values.")
        return self

    @property
    def blood_pressure(self) -> str:
        if self.systolic is None or self.diastolic is None:
            return ""
        return f"{self.systolic}/{self.diastolic}"


class TransferDetails(BaseModel):
    """Bed-regulation outcome recorded when a patient leaves for an inpatient bed."""

    destination: str = Field(..., min_length=1, description="Receiving facility.")
    regulation_code: str = Field(..., min_length=1, description="Regulation center authorization code.")
    transport: str = Field(..., min_length=1, description="Transport mode, e.g. basic or advanced ambulance.")


# ---------------------------------------------------------------------------
# Encounter
# ---------------------------------------------------------------------------

class Encounter(BaseModel):
    """One patient's episode of care from intake to close-out.

    ``state_changed_at``, ``updated_at`` and ``version`` are assigned by the
    store when a write commits.  ``examiner_lock`` holds the id of the station
    that recalled the encounter; it is enforced by the flow state machine.
    """

    encounter_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    facility_id: str = Field(..., min_length=1)
    patient_ref: str = Field(..., min_length=1, description="External patient identity reference.")
    patient: PatientSnapshot
    status: EncounterStatus = EncounterStatus.AWAITING_TRIAGE
    acuity: Optional[Acuity] = None
    arrival_time: datetime = Field(default_factory=utcnow)
    state_changed_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=0, ge=0)

    absence_anchor: Optional[datetime] = Field(
        default=None,
        description="When the current absence episode began; kept across re-pages.",
    )
    call_count: int = Field(default=0, ge=0)
    attending_station: Optional[str] = None
    prior_waiting_status: Optional[EncounterStatus] = None
    examiner_lock: Optional[str] = None

    bed_request_priority: Optional[int] = Field(default=None, ge=1, le=3)
    bed_request_time: Optional[datetime] = None
    bed_justification: str = ""

    narrative: ClinicalNarrative = Field(default_factory=ClinicalNarrative)
    triage_vitals: Optional[VitalSigns] = None
    transfer: Optional[TransferDetails] = None
    closed_at: Optional[datetime] = None

    @property
    def is_locked(self) -> bool:
        return self.examiner_lock is not None


# ---------------------------------------------------------------------------
# Checklist items
# ---------------------------------------------------------------------------

class CompositeComponent(BaseModel):
    """A sub-item administered together with its parent, e.g. an admixture additive."""

    name: str = Field(..., min_length=1)
    quantity: str = ""


class ChecklistItemDraft(BaseModel):
    """Descriptive fields supplied when an order is added to the checklist."""

    name: str = Field(..., min_length=1, description="Medication or intervention.")
    dose: str = ""
    route: str = ""
    instructions: str = ""
    dilution: str = ""
    components: list[CompositeComponent] = Field(default_factory=list)

    @field_validator("components")
    @classmethod
    def drop_blank_components(cls, v: list[CompositeComponent]) -> list[CompositeComponent]:
        return [c for c in v if c.name.strip()]


DESCRIPTIVE_FIELDS = frozenset(ChecklistItemDraft.model_fields)


class ChecklistItem(ChecklistItemDraft):
    """An administrable order attached to an encounter.

    ``administered`` is monotonic: once true it is never reset, and the
    descriptive fields are frozen from that point on.
    """

    item_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    encounter_id: str
    administered: bool = False
    administered_at: Optional[datetime] = None
    administered_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------------
# Nursing records
# ---------------------------------------------------------------------------

class VitalsRecord(BaseModel):
    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    encounter_id: str
    vitals: VitalSigns
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0


class NursingNote(BaseModel):
    note_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    encounter_id: str
    author: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Nursing note text must not be blank.")
        return v


# ---------------------------------------------------------------------------
# Outbound boundary records
# ---------------------------------------------------------------------------

class PageEvent(BaseModel):
    """Emitted on every call, re-call and recall for external paging."""

    encounter_id: str
    patient_display_name: str
    destination_label: str
    station_id: str
    call_count: int
    recall: bool = False
    paged_at: datetime = Field(default_factory=utcnow)


class DocumentRequest(BaseModel):
    """Issued only after the narrative it references has been saved."""

    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    encounter_id: str
    kind: DocumentKind
    narrative: ClinicalNarrative
    encounter_version: int
    requested_by: str
    requested_at: datetime = Field(default_factory=utcnow)
