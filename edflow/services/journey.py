"""
Journey service: the mutation and read entry points used by the board.

This is the one place that writes events. It wires the pipeline together:
1. Normalize raw vitals
2. Score them with the configured algorithm
3. Append ``vitals`` and, on a score change, ``ews_change``
4. Keep projections and monitoring tasks in step with the log

Everything is constructed per instance with injected collaborators, so tests
can run several isolated services side by side.
"""

import threading
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

import structlog

from edflow.config import AppConfig, get_config
from edflow.domain.models import (
    Actor,
    DispositionDetail,
    EventKind,
    EwsChangeDetail,
    EwsResult,
    JourneyEvent,
    MonitoringDetail,
    MonitoringTask,
    OrderDetail,
    PatientTasks,
    PersistedObservation,
    Phase,
    ResultDetail,
    RoomChangeDetail,
    RoomPhaseIndex,
    TaskDetail,
    TaskStatus,
    TriageDetail,
    VitalsDetail,
)
from edflow.services.event_log import JourneyEventLog
from edflow.services.normalizer import normalize
from edflow.services.projections import PatientProjection, ProjectionCache, Trend
from edflow.services.scheduler import ChangeCallback, Clock, MonitoringScheduler, utc_now
from edflow.services.scoring import ScoringEngine

logger = structlog.get_logger(__name__)


class TaskBoard:
    """Monitoring tasks per patient. Shared with the scheduler by reference."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._patients: dict[str, PatientTasks] = {}

    def add(self, task: MonitoringTask) -> MonitoringTask:
        with self._lock:
            entry = self._patients.setdefault(
                task.patient_id, PatientTasks(patient_id=task.patient_id)
            )
            entry.tasks.append(task)
        return task

    def for_patient(self, patient_id: str) -> list[MonitoringTask]:
        with self._lock:
            entry = self._patients.get(patient_id)
            return list(entry.tasks) if entry else []

    def open_tasks(self, patient_id: str, kind: str | None = None) -> list[MonitoringTask]:
        return [
            t
            for t in self.for_patient(patient_id)
            if not t.is_terminal and (kind is None or t.kind == kind)
        ]

    def find(self, task_id: str) -> MonitoringTask:
        with self._lock:
            for entry in self._patients.values():
                for task in entry.tasks:
                    if task.id == task_id:
                        return task
        raise KeyError(task_id)

    def snapshot(self) -> list[PatientTasks]:
        """Patients that have at least one task. Task objects are shared, not copied."""
        with self._lock:
            return [entry for entry in self._patients.values() if entry.tasks]


class JourneyService:
    """
    Entry points for recording clinical events and reading projections.

    Design principles:
    - The event log is the only source of truth; every write goes through it
    - Scores are computed once, at write time, and persisted with their algorithm id
    - Reads come from projections that are always rebuildable from the log
    """

    def __init__(
        self,
        log: JourneyEventLog | None = None,
        config: AppConfig | None = None,
        clock: Clock = utc_now,
        scoring: ScoringEngine | None = None,
        on_change: ChangeCallback | None = None,
    ) -> None:
        self.config = config or get_config()
        self.log = log or JourneyEventLog()
        self.clock = clock
        self.scoring = scoring or ScoringEngine(self.config.scoring)
        self.projections = ProjectionCache(self.log, self.config.monitoring)
        self.tasks = TaskBoard()
        self.logger = logger.bind(component="journey_service")
        # Serializes the read-score-append sequence and every task status change
        self._write_lock = threading.RLock()
        self.scheduler = MonitoringScheduler(
            self.tasks.snapshot, clock=self.clock, on_change=on_change, lock=self._write_lock
        )

    def _append(
        self,
        patient_id: str,
        kind: EventKind,
        label: str = "",
        detail: Any = None,
        actor: Actor | None = None,
        severity: str | None = None,
        timestamp: datetime | None = None,
    ) -> JourneyEvent:
        event = JourneyEvent(
            patient_id=patient_id,
            timestamp=timestamp or self.clock(),
            kind=kind,
            label=label,
            detail=detail,
            actor=actor,
            severity=severity,
        )
        return self.log.append(event)

    # Observations

    def record_observation(
        self,
        patient_id: str,
        raw: Mapping[str, Any],
        actor_role: str = "RN",
        algorithm_id: str | None = None,
    ) -> PersistedObservation:
        """Normalize, score and append an observation set. Returns what was persisted."""
        observation = normalize(raw)
        algorithm = self.scoring.resolve(algorithm_id)
        ews = self.scoring.compute_score(observation, algorithm.algo_id)

        with self._write_lock:
            now = self.clock()
            prev = self.projections.get(patient_id).last_ews

            self._append(
                patient_id,
                EventKind.VITALS,
                label="Obs",
                detail=VitalsDetail(
                    observation=observation,
                    ews=ews,
                    algo_id=algorithm.algo_id,
                    complete=observation.complete,
                ),
                actor=Actor(role=actor_role),
                timestamp=now,
            )

            if prev != ews:
                self._append(
                    patient_id,
                    EventKind.EWS_CHANGE,
                    label=f"EWS {'-' if prev is None else prev} -> {ews}",
                    detail=EwsChangeDetail(
                        prev=prev, next=ews, delta=None if prev is None else ews - prev
                    ),
                    severity="warn" if ews >= self.config.monitoring.ews_high_threshold else None,
                    timestamp=now,
                )

            self._reschedule_vitals(patient_id, now)

        self.logger.info(
            "observation_recorded",
            patient_id=patient_id,
            ews=ews,
            prev_ews=prev,
            algo_id=algorithm.algo_id,
            complete=observation.complete,
        )
        return PersistedObservation(
            **observation.model_dump(), timestamp=now, ews=ews, algo_id=algorithm.algo_id
        )

    def score_breakdown(self, raw: Mapping[str, Any], algorithm_id: str | None = None) -> EwsResult:
        """Preview the score of raw vitals without writing anything."""
        return self.scoring.score_breakdown(normalize(raw), algorithm_id)

    # Journey transitions

    def record_arrival(self, patient_id: str, mode: str = "walk-in") -> JourneyEvent:
        return self._append(patient_id, EventKind.ARRIVAL, label=f"Arrived ({mode})")

    def record_triage(
        self,
        patient_id: str,
        ats: int | None = None,
        complaint: str | None = None,
        actor_name: str | None = None,
    ) -> JourneyEvent:
        label = f"Triage ATS {ats}" if ats else "Triage"
        return self._append(
            patient_id,
            EventKind.TRIAGE,
            label=label,
            detail=TriageDetail(ats=ats, complaint=complaint),
            actor=Actor(role="RN", name=actor_name),
        )

    def assign_room(
        self, patient_id: str, room_label: str, actor_name: str = "Charge RN"
    ) -> None:
        """Append a room change and refresh room and phase before returning."""
        room = room_label.strip() if room_label else ""
        if not patient_id or not room:
            self.logger.info("room_assignment_ignored", patient_id=patient_id)
            return

        self._append(
            patient_id,
            EventKind.ROOM_CHANGE,
            label=room,
            detail=RoomChangeDetail(room=room, reason="Assigned"),
            actor=Actor(role="Charge", name=actor_name),
        )
        projection = self.projections.refresh(patient_id)
        self.logger.info(
            "room_assigned", patient_id=patient_id, room=projection.room, phase=projection.phase
        )

    def place_order(
        self, patient_id: str, item: str, actor_name: str | None = None
    ) -> JourneyEvent:
        return self._append(
            patient_id,
            EventKind.ORDER,
            label=f"Order {item}",
            detail=OrderDetail(item=item),
            actor=Actor(role="MD", name=actor_name),
        )

    def record_result(self, patient_id: str, item: str, value: str | None = None) -> JourneyEvent:
        return self._append(
            patient_id,
            EventKind.RESULT,
            label=f"Result {item}",
            detail=ResultDetail(item=item, value=value),
        )

    def set_disposition(
        self, patient_id: str, disposition: str, actor_name: str | None = None
    ) -> JourneyEvent:
        return self._append(
            patient_id,
            EventKind.DISPOSITION_SET,
            label=disposition,
            detail=DispositionDetail(disposition=disposition),
            actor=Actor(role="MD", name=actor_name),
        )

    def add_note(self, patient_id: str, text: str, actor_role: str = "RN") -> JourneyEvent:
        return self._append(patient_id, EventKind.NOTE, label=text, actor=Actor(role=actor_role))

    # Monitoring

    def _monitoring_interval(self, projection: PatientProjection) -> int:
        """Observation interval from the last score, capped by triage acuity."""
        monitoring = self.config.monitoring
        minutes = monitoring.interval_for_ews(projection.last_ews)
        cap = monitoring.interval_for_acuity(projection.acuity)
        return min(minutes, cap) if cap is not None else minutes

    def start_monitoring(
        self, patient_id: str, task_kind: str = "vitals", assignee_role: str = "RN"
    ) -> MonitoringTask:
        """Start monitoring and create the first task, due one interval from now."""
        with self._write_lock:
            now = self.clock()
            interval = self._monitoring_interval(self.projections.get(patient_id))
            self._append(
                patient_id,
                EventKind.MONITORING_START,
                label=f"Monitoring {task_kind} q{interval}m",
                detail=MonitoringDetail(task_kind=task_kind, interval_minutes=interval),
                timestamp=now,
            )
            task = self.tasks.add(
                MonitoringTask(
                    patient_id=patient_id,
                    kind=task_kind,
                    status=TaskStatus.PENDING,
                    assignee_role=assignee_role,
                    due_at=now + timedelta(minutes=interval),
                    created_at=now,
                )
            )

        self.logger.info(
            "monitoring_started",
            patient_id=patient_id,
            task_kind=task_kind,
            interval_minutes=interval,
            due_at=task.due_at,
        )
        return task

    def stop_monitoring(self, patient_id: str, task_kind: str = "vitals") -> None:
        """Stop monitoring. Open tasks of that kind are closed as done."""
        with self._write_lock:
            if task_kind not in self.projections.get(patient_id).monitoring:
                self.logger.info(
                    "monitoring_stop_ignored", patient_id=patient_id, task_kind=task_kind
                )
                return
            now = self.clock()
            self._append(
                patient_id,
                EventKind.MONITORING_STOP,
                label=f"Monitoring {task_kind} stopped",
                detail=MonitoringDetail(task_kind=task_kind),
                timestamp=now,
            )
            for task in self.tasks.open_tasks(patient_id, task_kind):
                self._close_task(task, now)
        self.logger.info("monitoring_stopped", patient_id=patient_id, task_kind=task_kind)

    def complete_task(self, task_id: str, actor_role: str = "RN") -> MonitoringTask:
        """Mark a task done and record it on the journey. Raises KeyError for unknown ids."""
        task = self.tasks.find(task_id)
        with self._write_lock:
            if task.is_terminal:
                return task
            self._close_task(task, self.clock(), Actor(role=actor_role))
        return task

    def _close_task(self, task: MonitoringTask, now: datetime, actor: Actor | None = None) -> None:
        task.status = TaskStatus.DONE
        task.completed_at = now
        self._append(
            task.patient_id,
            EventKind.TASK,
            label=f"Task completed: {task.kind}",
            detail=TaskDetail(task_id=task.id, task_kind=task.kind, status=TaskStatus.DONE),
            actor=actor,
            timestamp=now,
        )
        self.logger.info("task_completed", patient_id=task.patient_id, task_id=task.id)

    def _reschedule_vitals(self, patient_id: str, now: datetime) -> None:
        """A fresh observation set completes the open vitals task and books the next one."""
        projection = self.projections.get(patient_id)
        if "vitals" not in projection.monitoring:
            return
        open_tasks = self.tasks.open_tasks(patient_id, "vitals")
        for task in open_tasks:
            self._close_task(task, now)
        assignee = open_tasks[-1].assignee_role if open_tasks else "RN"
        self.tasks.add(
            MonitoringTask(
                patient_id=patient_id,
                kind="vitals",
                assignee_role=assignee,
                due_at=now + timedelta(minutes=self._monitoring_interval(projection)),
                created_at=now,
            )
        )

    def tasks_for(self, patient_id: str) -> list[MonitoringTask]:
        return self.tasks.for_patient(patient_id)

    def tick_monitoring(self, now: datetime | None = None) -> bool:
        """Run one overdue check over every patient's tasks."""
        return self.scheduler.tick(now=now)

    def start_scheduler(self, interval_ms: int | None = None) -> None:
        """Start the periodic overdue check on the running event loop."""
        seconds = (
            interval_ms / 1000
            if interval_ms is not None
            else self.config.monitoring.tick_interval_seconds
        )
        self.scheduler.start(seconds)

    async def stop_scheduler(self) -> None:
        await self.scheduler.stop()

    # Reads

    def get_projection(self, patient_id: str) -> PatientProjection:
        return self.projections.get(patient_id)

    def get_phase(self, patient_id: str) -> Phase:
        return self.projections.get(patient_id).phase

    def get_room(self, patient_id: str) -> str | None:
        return self.projections.get(patient_id).room

    def get_observation_history(self, patient_id: str) -> tuple[PersistedObservation, ...]:
        return self.projections.get(patient_id).observations

    def get_next_due(self, patient_id: str) -> datetime | None:
        return self.projections.get(patient_id).next_obs_due(self.config.monitoring)

    def get_ews_trend(self, patient_id: str) -> Trend | None:
        return self.projections.get(patient_id).ews_trend

    def room_phase_index(self) -> RoomPhaseIndex:
        return self.projections.room_phase_index()
