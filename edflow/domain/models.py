"""
Domain models for the emergency-department patient journey.

These models represent the core clinical concepts and are framework-agnostic.
Events are immutable; monitoring tasks are the only mutable records and are
owned by the caller that hands them to the scheduler.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EventKind(str, Enum):
    """Closed set of journey event tags."""

    VITALS = "vitals"
    EWS_CHANGE = "ews_change"
    ROOM_CHANGE = "room_change"
    TRIAGE = "triage"
    ORDER = "order"
    RESULT = "result"
    TASK = "task"
    MED_ADMIN = "med_admin"
    NOTE = "note"
    COMMUNICATION = "communication"
    ARRIVAL = "arrival"
    ALERT = "alert"
    ASSESSMENT_NURSING = "assessment_nursing"
    MONITORING_START = "monitoring_start"
    MONITORING_UPDATE = "monitoring_update"
    MONITORING_STOP = "monitoring_stop"
    DISPOSITION_SET = "disposition_set"


class Phase(str, Enum):
    """Clinical phase lanes shown on the department board."""

    WAITING = "Waiting"
    IN_TRIAGE = "In Triage"
    ROOMED = "Roomed"
    DIAGNOSTICS = "Diagnostics"
    REVIEW = "Review"


class TaskStatus(str, Enum):
    PENDING = "pending"
    ORDERED = "ordered"
    DUE = "due"
    OVERDUE = "overdue"
    DONE = "done"


# Statuses the scheduler may still flip to overdue
OPEN_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.ORDERED, TaskStatus.DUE})

Role = Literal["RN", "HCA", "MD", "Charge"]
ObservationSource = Literal["obs", "device"]


def _new_id() -> str:
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Actor(BaseModel):
    """Who performed an action. Absent on system-generated events."""

    model_config = ConfigDict(frozen=True)

    role: str
    name: str | None = None


class OxygenSupport(BaseModel):
    model_config = ConfigDict(frozen=True)

    device: str | None = None
    lpm: float | None = None
    on_oxygen: bool = False


class CanonicalObservation(BaseModel):
    """Vital signs in canonical units after normalization. Absent means not measured."""

    model_config = ConfigDict(frozen=True)

    rr: float | None = Field(default=None, description="Respiratory rate, breaths/min")
    hr: float | None = Field(default=None, description="Heart rate, bpm")
    sbp: float | None = Field(default=None, description="Systolic blood pressure, mmHg")
    spo2: float | None = Field(default=None, description="Oxygen saturation, percent")
    temp: float | None = Field(default=None, description="Temperature, degrees Celsius")
    loc: str | None = Field(default=None, description="Level of consciousness (AVPU)")
    oxygen: OxygenSupport = Field(default_factory=OxygenSupport)
    source: ObservationSource = "obs"

    @property
    def complete(self) -> bool:
        """True when all five core numeric parameters were captured."""
        return all(v is not None for v in (self.rr, self.hr, self.sbp, self.spo2, self.temp))


class PersistedObservation(CanonicalObservation):
    """An observation as written to the log. ``ews`` and ``algo_id`` never change."""

    timestamp: datetime
    ews: int = Field(ge=0)
    algo_id: str


# Tagged payloads, one per event kind that carries structure


class VitalsDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["vitals"] = "vitals"
    observation: CanonicalObservation
    ews: int = Field(ge=0)
    algo_id: str
    complete: bool = False


class EwsChangeDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["ews_change"] = "ews_change"
    prev: int | None = None
    next: int
    delta: int | None = None


class RoomChangeDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["room_change"] = "room_change"
    room: str
    reason: str | None = None


class TriageDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["triage"] = "triage"
    ats: int | None = Field(default=None, ge=1, le=5, description="Australasian Triage Scale")
    complaint: str | None = None


class OrderDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["order"] = "order"
    item: str


class ResultDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["result"] = "result"
    item: str
    value: str | None = None


class TaskDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["task"] = "task"
    task_id: str
    task_kind: str
    status: TaskStatus


class MonitoringDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["monitoring"] = "monitoring"
    task_kind: str = "vitals"
    interval_minutes: int | None = Field(default=None, gt=0)
    reason: str | None = None


class DispositionDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["disposition"] = "disposition"
    disposition: str


EventDetail = Annotated[
    VitalsDetail
    | EwsChangeDetail
    | RoomChangeDetail
    | TriageDetail
    | OrderDetail
    | ResultDetail
    | TaskDetail
    | MonitoringDetail
    | DispositionDetail,
    Field(discriminator="type"),
]

# Tagged payload allowed for each kind; kinds not listed carry no tagged payload
DETAIL_TYPES_BY_KIND: dict[EventKind, type[BaseModel]] = {
    EventKind.VITALS: VitalsDetail,
    EventKind.EWS_CHANGE: EwsChangeDetail,
    EventKind.ROOM_CHANGE: RoomChangeDetail,
    EventKind.TRIAGE: TriageDetail,
    EventKind.ORDER: OrderDetail,
    EventKind.RESULT: ResultDetail,
    EventKind.TASK: TaskDetail,
    EventKind.MONITORING_START: MonitoringDetail,
    EventKind.MONITORING_UPDATE: MonitoringDetail,
    EventKind.MONITORING_STOP: MonitoringDetail,
    EventKind.DISPOSITION_SET: DispositionDetail,
}


class JourneyEvent(BaseModel):
    """A single immutable entry in a patient's journey log."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    patient_id: str = Field(min_length=1)
    timestamp: datetime = Field(default_factory=_utcnow)
    kind: EventKind
    label: str = ""
    # Opaque strings and dicts are legacy payloads kept for display only
    detail: EventDetail | str | dict[str, Any] | None = Field(
        default=None, union_mode="left_to_right"
    )
    actor: Actor | None = None
    severity: Literal["warn"] | None = None

    @model_validator(mode="after")
    def detail_matches_kind(self) -> "JourneyEvent":
        """Tagged payloads must belong to the event kind. Legacy str and dict details pass."""
        if isinstance(self.detail, BaseModel):
            expected = DETAIL_TYPES_BY_KIND.get(self.kind)
            if expected is None or not isinstance(self.detail, expected):
                detail_type = type(self.detail).__name__
                raise ValueError(f"{detail_type} detail does not match kind {self.kind.value!r}")
        return self


class MonitoringTask(BaseModel):
    """
    A monitoring task attached to a patient.

    Mutable on purpose: the scheduler flips ``status`` in place on the list
    the caller hands it. ``due_at`` may hold a raw string when hydrated from
    an older record; the scheduler parses it per tick.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=_new_id)
    patient_id: str
    kind: str = "vitals"
    status: TaskStatus = TaskStatus.PENDING
    assignee_role: str = "RN"
    due_at: datetime | str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status == TaskStatus.DONE


class PatientTasks(BaseModel):
    """The unit the scheduler ticks over: one patient and their task list."""

    patient_id: str
    tasks: list[MonitoringTask] = Field(default_factory=list)


class EwsResult(BaseModel):
    """Per-parameter breakdown of a score, for escalation display."""

    model_config = ConfigDict(frozen=True)

    score: int = Field(ge=0)
    algo_id: str
    band: Literal["low", "medium", "high"]
    by_param: dict[str, int]
    any_three: bool
    requires_escalation: bool


class RoomPhaseIndex(BaseModel):
    """Cross-patient room and phase maps built from the full event set."""

    model_config = ConfigDict(frozen=True)

    room_by_id: dict[str, str] = Field(default_factory=dict)
    phase_by_id: dict[str, Phase] = Field(default_factory=dict)
