"""
Derived projections: read models folded from the journey event log.

Two ways to get the same answer:
- Pure folds (``project``, ``fold_phase``, ``fold_room``...) refold a
  sequence of events from scratch on every call
- ``ProjectionCache`` subscribes to the log and applies each appended event
  incrementally, keyed by patient and version

Both run every event through ``JourneyState.apply`` so they cannot drift.
Unknown kinds and malformed legacy details are skipped, never raised.
"""

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

import structlog
from pydantic import ValidationError

from edflow.config import MonitoringConfig
from edflow.domain.models import (
    EventKind,
    EwsChangeDetail,
    JourneyEvent,
    MonitoringDetail,
    PersistedObservation,
    Phase,
    RoomChangeDetail,
    RoomPhaseIndex,
    TriageDetail,
    VitalsDetail,
)
from edflow.services.event_log import JourneyEventLog

logger = structlog.get_logger(__name__)

Trend = Literal["up", "down", "same"]

# Position of each phase on the journey; the fold never moves backwards
PHASE_RANK: dict[Phase, int] = {
    Phase.WAITING: 0,
    Phase.IN_TRIAGE: 1,
    Phase.ROOMED: 2,
    Phase.DIAGNOSTICS: 3,
    Phase.REVIEW: 4,
}


def _advance(current: Phase, target: Phase) -> Phase:
    return target if PHASE_RANK[target] > PHASE_RANK[current] else current


def _room_label(event: JourneyEvent) -> str | None:
    detail = event.detail
    if isinstance(detail, RoomChangeDetail) and detail.room.strip():
        return detail.room.strip()
    if event.label.strip():
        return event.label.strip()
    if isinstance(detail, str) and detail.strip():
        return detail.strip()
    if isinstance(detail, Mapping) and detail.get("room"):
        return str(detail["room"])
    return None


def _observation(event: JourneyEvent) -> PersistedObservation | None:
    detail = event.detail
    if isinstance(detail, VitalsDetail):
        return PersistedObservation(
            **detail.observation.model_dump(),
            timestamp=event.timestamp,
            ews=detail.ews,
            algo_id=detail.algo_id,
        )
    if isinstance(detail, Mapping) and "ews" in detail:
        # Untagged vitals written before payloads were typed
        try:
            return PersistedObservation.model_validate(
                {"algo_id": "legacy", **detail, "timestamp": event.timestamp}
            )
        except ValidationError:
            logger.debug("legacy_vitals_skipped", event_id=event.id)
    return None


@dataclass
class JourneyState:
    """Mutable accumulator for one patient's fold. Callers only see snapshots."""

    phase: Phase = Phase.WAITING
    room: str | None = None
    observations: list[PersistedObservation] = field(default_factory=list)
    last_ews: int | None = None
    last_vitals_at: datetime | None = None
    acuity: int | None = None
    monitoring: dict[str, MonitoringDetail] = field(default_factory=dict)
    disposition: str | None = None

    def apply(self, event: JourneyEvent) -> None:
        kind = event.kind
        if kind == EventKind.TRIAGE:
            self.phase = _advance(self.phase, Phase.IN_TRIAGE)
            if isinstance(event.detail, TriageDetail) and event.detail.ats is not None:
                self.acuity = event.detail.ats
        elif kind == EventKind.ROOM_CHANGE:
            self.room = _room_label(event) or self.room
            self.phase = _advance(self.phase, Phase.ROOMED)
        elif kind == EventKind.ORDER:
            if self.phase == Phase.ROOMED:
                self.phase = Phase.DIAGNOSTICS
        elif kind == EventKind.RESULT:
            if self.phase == Phase.DIAGNOSTICS:
                self.phase = Phase.REVIEW
        elif kind == EventKind.VITALS:
            observation = _observation(event)
            if observation is not None:
                self.observations.append(observation)
                self.last_ews = observation.ews
            self.last_vitals_at = event.timestamp
        elif kind == EventKind.EWS_CHANGE:
            if isinstance(event.detail, EwsChangeDetail):
                self.last_ews = event.detail.next
        elif kind in (EventKind.MONITORING_START, EventKind.MONITORING_UPDATE):
            detail = event.detail
            if not isinstance(detail, MonitoringDetail):
                detail = MonitoringDetail()
            self.monitoring[detail.task_kind] = detail
        elif kind == EventKind.MONITORING_STOP:
            if isinstance(event.detail, MonitoringDetail):
                self.monitoring.pop(event.detail.task_kind, None)
            else:
                self.monitoring.clear()
        elif kind == EventKind.DISPOSITION_SET:
            detail = event.detail
            self.disposition = getattr(detail, "disposition", None) or event.label or None

    def snapshot(self) -> "PatientProjection":
        return PatientProjection(
            phase=self.phase,
            room=self.room,
            observations=tuple(self.observations),
            last_ews=self.last_ews,
            last_vitals_at=self.last_vitals_at,
            acuity=self.acuity,
            monitoring=tuple(sorted(self.monitoring)),
            disposition=self.disposition,
        )


@dataclass(frozen=True)
class PatientProjection:
    """Immutable read model for one patient."""

    phase: Phase = Phase.WAITING
    room: str | None = None
    observations: tuple[PersistedObservation, ...] = ()
    last_ews: int | None = None
    last_vitals_at: datetime | None = None
    acuity: int | None = None
    monitoring: tuple[str, ...] = ()
    disposition: str | None = None

    @property
    def ews_trend(self) -> Trend | None:
        if len(self.observations) < 2:
            return None
        prev, last = self.observations[-2].ews, self.observations[-1].ews
        if last > prev:
            return "up"
        if last < prev:
            return "down"
        return "same"

    def next_obs_due(self, config: MonitoringConfig | None = None) -> datetime | None:
        """Last vitals time plus the interval implied by the last score."""
        if self.last_vitals_at is None:
            return None
        minutes = (config or MonitoringConfig()).interval_for_ews(self.last_ews)
        return self.last_vitals_at + timedelta(minutes=minutes)


def project(events: Iterable[JourneyEvent]) -> PatientProjection:
    """Full refold of one patient's events."""
    state = JourneyState()
    for event in events:
        state.apply(event)
    return state.snapshot()


def fold_phase(events: Iterable[JourneyEvent]) -> Phase:
    return project(events).phase


def fold_room(events: Iterable[JourneyEvent]) -> str | None:
    return project(events).room


def fold_observations(events: Iterable[JourneyEvent]) -> tuple[PersistedObservation, ...]:
    return project(events).observations


def fold_acuity(events: Iterable[JourneyEvent]) -> int | None:
    return project(events).acuity


def fold_monitoring_active(events: Iterable[JourneyEvent]) -> tuple[str, ...]:
    return project(events).monitoring


def previous_ews(events: Iterable[JourneyEvent]) -> int | None:
    """Most recent persisted EWS in ``events``; call before appending the new one."""
    return project(events).last_ews


def ews_trend(events: Iterable[JourneyEvent]) -> Trend | None:
    return project(events).ews_trend


def next_obs_due(
    events: Iterable[JourneyEvent], config: MonitoringConfig | None = None
) -> datetime | None:
    return project(events).next_obs_due(config)


def build_room_phase_index(events: Iterable[JourneyEvent]) -> RoomPhaseIndex:
    """Cross-patient room and phase maps from the full event set, in log order."""
    states: dict[str, JourneyState] = {}
    for event in events:
        states.setdefault(event.patient_id, JourneyState()).apply(event)
    return RoomPhaseIndex(
        room_by_id={pid: s.room for pid, s in states.items() if s.room is not None},
        phase_by_id={pid: s.phase for pid, s in states.items()},
    )


@dataclass
class _CacheEntry:
    version: int
    last_event_id: str | None
    state: JourneyState


class ProjectionCache:
    """
    Incrementally maintained projections, one entry per patient.

    Each entry remembers the log version it reflects and the id of the last
    event it applied. Reads catch up from that version; if the log no longer
    agrees with the entry (mutated out of band) the entry is refolded from
    scratch.
    """

    def __init__(self, log: JourneyEventLog, config: MonitoringConfig | None = None) -> None:
        self.log = log
        self.config = config or MonitoringConfig()
        self.version = 0
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = threading.RLock()
        self.logger = logger.bind(component="projection_cache")
        self._unsubscribe = log.subscribe(self._on_append)

    def close(self) -> None:
        self._unsubscribe()

    def _on_append(self, event: JourneyEvent) -> None:
        self.refresh(event.patient_id)

    def refresh(self, patient_id: str) -> PatientProjection:
        """Bring one patient's entry up to date with the log and return its snapshot."""
        with self._lock:
            events = self.log.list_for_patient(patient_id)
            entry = self._entries.get(patient_id)

            if entry is not None and not self._entry_matches(entry, events):
                self.logger.warning(
                    "projection_rebuilt_out_of_band",
                    patient_id=patient_id,
                    cached_version=entry.version,
                    log_version=len(events),
                )
                entry = None

            if entry is None:
                entry = _CacheEntry(version=0, last_event_id=None, state=JourneyState())
                self._entries[patient_id] = entry

            pending = events[entry.version :]
            for event in pending:
                entry.state.apply(event)
            if pending:
                entry.version = len(events)
                entry.last_event_id = pending[-1].id
                self.version += 1

            return entry.state.snapshot()

    @staticmethod
    def _entry_matches(entry: _CacheEntry, events: tuple[JourneyEvent, ...]) -> bool:
        if entry.version > len(events):
            return False
        if entry.version == 0:
            return True
        return events[entry.version - 1].id == entry.last_event_id

    def get(self, patient_id: str) -> PatientProjection:
        return self.refresh(patient_id)

    def invalidate(self, patient_id: str | None = None) -> None:
        with self._lock:
            if patient_id is None:
                self._entries.clear()
            else:
                self._entries.pop(patient_id, None)
            self.version += 1

    def room_phase_index(self) -> RoomPhaseIndex:
        snapshots = {pid: self.refresh(pid) for pid in self.log.patient_ids()}
        return RoomPhaseIndex(
            room_by_id={pid: s.room for pid, s in snapshots.items() if s.room is not None},
            phase_by_id={pid: s.phase for pid, s in snapshots.items()},
        )
