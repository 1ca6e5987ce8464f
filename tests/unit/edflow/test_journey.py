"""
Tests for the journey service entry points.

Covers:
- Observation recording and EWS change detection
- Room assignment with read-after-write projections
- Monitoring tasks: acuity caps, rescheduling, completion, overdue ticks
- Task completion serialized against scheduler ticks and rival callers
- Scheduler lifecycle through the service
- Isolation between service instances
"""

import asyncio
import threading
from collections.abc import Sequence
from datetime import datetime, timedelta

import pytest

from edflow.config import AppConfig, ScoringConfig
from edflow.domain.models import (
    EventKind,
    EwsChangeDetail,
    PatientTasks,
    Phase,
    RoomChangeDetail,
    TaskDetail,
    TaskStatus,
    VitalsDetail,
)
from edflow.services import scheduler as scheduler_module
from edflow.services.event_log import JourneyEventLog
from edflow.services.journey import JourneyService
from edflow.services.projections import project
from edflow.services.scheduler import Result
from edflow.services.scoring import UnknownAlgorithmError

from conftest import SHIFT_START, FakeClock

NORMAL = {"rr": "16", "hr": "80", "sbp": "120", "spo2": "98", "temp": "37", "loc": "A"}
# rr 2, hr 1, spo2 1, temp 0 (100.4F is 38.0C), sbp 0
MODERATE = {"rr": "22", "hr": "104", "sbp": "128", "spo2": "95", "temp": "100.4", "tempUnit": "F"}
# rr 3, hr 2, sbp 2, spo2 3, temp 1, loc 3, oxygen 1
UNWELL = {"rr": 26, "hr": 118, "sbp": 98, "spo2": 91, "temp": 38.6, "loc": "V", "onOxygen": True}


def kinds(service: JourneyService, patient_id: str = "p001") -> list[EventKind]:
    return [e.kind for e in service.log.list_for_patient(patient_id)]


class TestRecordObservation:
    def test_first_observation_appends_vitals_and_ews_change(self, service: JourneyService) -> None:
        persisted = service.record_observation("p001", NORMAL)

        assert persisted.ews == 0
        assert persisted.algo_id == "adult-simple-v1"
        assert persisted.timestamp == SHIFT_START
        assert kinds(service) == [EventKind.VITALS, EventKind.EWS_CHANGE]

        change = service.log.list_for_patient("p001")[1]
        assert change.detail == EwsChangeDetail(prev=None, next=0, delta=None)
        assert change.label == "EWS - -> 0"
        assert change.severity is None

    def test_vitals_event_carries_score_and_algorithm(self, service: JourneyService) -> None:
        service.record_observation("p001", MODERATE)

        vitals = service.log.list_for_patient("p001")[0]
        assert isinstance(vitals.detail, VitalsDetail)
        assert vitals.detail.ews == 4
        assert vitals.detail.algo_id == "adult-simple-v1"
        assert vitals.detail.observation.temp == 38.0
        assert vitals.detail.complete is True
        assert vitals.actor is not None and vitals.actor.role == "RN"

    def test_unchanged_score_appends_vitals_only(self, service: JourneyService) -> None:
        service.record_observation("p001", NORMAL)
        service.record_observation("p001", NORMAL)

        assert kinds(service) == [EventKind.VITALS, EventKind.EWS_CHANGE, EventKind.VITALS]

    def test_score_change_records_delta(self, service: JourneyService) -> None:
        service.record_observation("p001", MODERATE)
        service.record_observation("p001", UNWELL)

        change = service.log.list_for_patient("p001")[-1]
        assert change.kind == EventKind.EWS_CHANGE
        assert change.detail == EwsChangeDetail(prev=4, next=15, delta=11)
        assert change.label == "EWS 4 -> 15"

    def test_high_score_change_is_flagged(self, service: JourneyService) -> None:
        service.record_observation("p001", UNWELL)

        change = service.log.list_for_patient("p001")[-1]
        assert change.severity == "warn"

    def test_empty_observation_scores_zero(self, service: JourneyService) -> None:
        persisted = service.record_observation("p001", {})

        assert persisted.ews == 0
        assert persisted.rr is None
        assert persisted.complete is False

    def test_named_algorithm_is_persisted(self, service: JourneyService) -> None:
        persisted = service.record_observation("p001", {"sbp": 230}, algorithm_id="aus-ews-v1")

        assert persisted.algo_id == "aus-ews-v1"
        assert persisted.ews == 2

    def test_unknown_algorithm_appends_nothing(self, service: JourneyService) -> None:
        with pytest.raises(UnknownAlgorithmError):
            service.record_observation("p001", NORMAL, algorithm_id="retired-v0")

        assert service.log.list_for_patient("p001") == ()

    def test_fallback_policy_scores_with_default(self, clock: FakeClock) -> None:
        config = AppConfig(scoring=ScoringConfig(unknown_algorithm_policy="fallback"))
        service = JourneyService(log=JourneyEventLog(), config=config, clock=clock)

        persisted = service.record_observation("p001", NORMAL, algorithm_id="retired-v0")

        assert persisted.algo_id == "adult-simple-v1"

    def test_history_and_trend(self, service: JourneyService, clock: FakeClock) -> None:
        service.record_observation("p001", MODERATE)
        clock.advance(20)
        service.record_observation("p001", UNWELL)

        history = service.get_observation_history("p001")
        assert [o.ews for o in history] == [4, 15]
        assert history[1].timestamp == SHIFT_START + timedelta(minutes=20)
        assert service.get_ews_trend("p001") == "up"

    def test_historical_scores_are_not_recomputed(self, service: JourneyService) -> None:
        service.record_observation("p001", MODERATE, algorithm_id="aus-ews-v1")
        service.record_observation("p001", MODERATE)

        history = service.get_observation_history("p001")
        assert [o.algo_id for o in history] == ["aus-ews-v1", "adult-simple-v1"]

    def test_score_preview_does_not_write(self, service: JourneyService) -> None:
        result = service.score_breakdown(UNWELL)

        assert result.score == 15
        assert result.requires_escalation is True
        assert service.log.all_events() == ()


class TestNextDue:
    def test_none_before_vitals(self, service: JourneyService) -> None:
        assert service.get_next_due("p001") is None

    def test_high_score_due_in_fifteen_minutes(self, service: JourneyService) -> None:
        service.record_observation("p001", UNWELL)
        assert service.get_next_due("p001") == SHIFT_START + timedelta(minutes=15)

    def test_medium_score_due_in_thirty_minutes(self, service: JourneyService) -> None:
        service.record_observation("p001", MODERATE)
        assert service.get_next_due("p001") == SHIFT_START + timedelta(minutes=30)

    def test_low_score_due_in_an_hour(self, service: JourneyService) -> None:
        service.record_observation("p001", NORMAL)
        assert service.get_next_due("p001") == SHIFT_START + timedelta(minutes=60)


class TestJourneyTransitions:
    def test_phase_walk(self, service: JourneyService) -> None:
        assert service.get_phase("p001") == Phase.WAITING

        service.record_arrival("p001", "ambulance")
        service.record_triage("p001", ats=3, complaint="Chest pain")
        assert service.get_phase("p001") == Phase.IN_TRIAGE

        service.assign_room("p001", "Room 12")
        assert service.get_phase("p001") == Phase.ROOMED

        service.place_order("p001", "Troponin")
        assert service.get_phase("p001") == Phase.DIAGNOSTICS

        service.record_result("p001", "Troponin", "<5 ng/L")
        assert service.get_phase("p001") == Phase.REVIEW

        service.set_disposition("p001", "Discharge")
        assert service.get_projection("p001").disposition == "Discharge"

    def test_assign_room_visible_immediately(self, service: JourneyService) -> None:
        service.assign_room("p001", "  Room 4 ")

        assert service.get_room("p001") == "Room 4"
        assert service.room_phase_index().room_by_id == {"p001": "Room 4"}
        event = service.log.list_for_patient("p001")[-1]
        assert event.detail == RoomChangeDetail(room="Room 4", reason="Assigned")
        assert event.actor is not None and event.actor.name == "Charge RN"

    def test_reassignment_keeps_phase(self, service: JourneyService) -> None:
        service.assign_room("p001", "Room 4")
        service.place_order("p001", "CT head")
        service.assign_room("p001", "CT")

        assert service.get_room("p001") == "CT"
        assert service.get_phase("p001") == Phase.DIAGNOSTICS

    @pytest.mark.parametrize("room", ["", "   "])
    def test_blank_room_is_ignored(self, service: JourneyService, room: str) -> None:
        service.assign_room("p001", room)

        assert service.log.all_events() == ()
        assert service.get_room("p001") is None

    def test_blank_patient_is_ignored(self, service: JourneyService) -> None:
        service.assign_room("", "Room 1")
        assert service.log.all_events() == ()

    def test_notes_do_not_move_phase(self, service: JourneyService) -> None:
        service.add_note("p001", "Family updated")
        assert service.get_phase("p001") == Phase.WAITING
        assert kinds(service) == [EventKind.NOTE]

    def test_projection_matches_refold(self, service: JourneyService, clock: FakeClock) -> None:
        service.record_triage("p001", ats=2)
        service.record_observation("p001", MODERATE)
        service.assign_room("p001", "Resus 1")
        clock.advance(10)
        service.record_observation("p001", UNWELL)

        assert service.get_projection("p001") == project(service.log.list_for_patient("p001"))


class TestMonitoring:
    def test_first_task_due_one_interval_out(self, service: JourneyService) -> None:
        service.record_observation("p001", MODERATE)

        task = service.start_monitoring("p001")

        assert task.status == TaskStatus.PENDING
        assert task.due_at == SHIFT_START + timedelta(minutes=30)
        assert service.get_projection("p001").monitoring == ("vitals",)
        assert kinds(service)[-1] == EventKind.MONITORING_START

    def test_acuity_caps_interval(self, service: JourneyService) -> None:
        service.record_triage("p001", ats=2)
        service.record_observation("p001", NORMAL)

        task = service.start_monitoring("p001")

        assert task.due_at == SHIFT_START + timedelta(minutes=15)

    def test_interval_without_vitals_uses_low_cadence(self, service: JourneyService) -> None:
        task = service.start_monitoring("p001")
        assert task.due_at == SHIFT_START + timedelta(minutes=60)

    def test_overdue_after_due_time(self, service: JourneyService, clock: FakeClock) -> None:
        service.record_observation("p001", MODERATE)
        task = service.start_monitoring("p001")

        clock.advance(29)
        assert service.tick_monitoring() is False
        clock.advance(1)
        assert service.tick_monitoring() is True
        assert service.tick_monitoring() is False

        assert task.status == TaskStatus.OVERDUE

    def test_new_observation_reschedules(self, service: JourneyService, clock: FakeClock) -> None:
        service.record_observation("p001", MODERATE)
        first = service.start_monitoring("p001")

        clock.advance(20)
        service.record_observation("p001", UNWELL)

        tasks = service.tasks_for("p001")
        assert len(tasks) == 2
        assert first.status == TaskStatus.DONE
        assert first.completed_at == SHIFT_START + timedelta(minutes=20)
        assert tasks[1].status == TaskStatus.PENDING
        assert tasks[1].due_at == SHIFT_START + timedelta(minutes=35)

        done = [e for e in service.log.list_for_patient("p001") if e.kind == EventKind.TASK]
        assert len(done) == 1
        assert isinstance(done[0].detail, TaskDetail)
        assert done[0].detail.task_id == first.id

    def test_observation_without_monitoring_creates_no_tasks(
        self, service: JourneyService
    ) -> None:
        service.record_observation("p001", UNWELL)
        assert service.tasks_for("p001") == []

    def test_overdue_task_closed_by_observation(
        self, service: JourneyService, clock: FakeClock
    ) -> None:
        service.record_observation("p001", UNWELL)
        first = service.start_monitoring("p001")
        clock.advance(16)
        service.tick_monitoring()
        assert first.status == TaskStatus.OVERDUE

        service.record_observation("p001", UNWELL)

        assert first.status == TaskStatus.DONE
        assert service.tasks_for("p001")[-1].status == TaskStatus.PENDING

    def test_complete_task(self, service: JourneyService, clock: FakeClock) -> None:
        task = service.start_monitoring("p001")
        clock.advance(5)

        completed = service.complete_task(task.id, actor_role="HCA")

        assert completed.status == TaskStatus.DONE
        assert completed.completed_at == SHIFT_START + timedelta(minutes=5)
        event = service.log.list_for_patient("p001")[-1]
        assert event.kind == EventKind.TASK
        assert event.actor is not None and event.actor.role == "HCA"

    def test_completing_twice_appends_once(self, service: JourneyService) -> None:
        task = service.start_monitoring("p001")
        service.complete_task(task.id)
        service.complete_task(task.id)

        assert kinds(service).count(EventKind.TASK) == 1

    def test_complete_unknown_task_raises(self, service: JourneyService) -> None:
        with pytest.raises(KeyError):
            service.complete_task("missing")

    def test_completion_during_tick_is_not_overwritten(
        self, service: JourneyService, clock: FakeClock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        task = service.start_monitoring("p001")
        clock.advance(61)
        real_parse = scheduler_module.parse_due_at

        def complete_then_parse(value: datetime | str | None) -> Result[datetime]:
            service.complete_task(task.id)
            return real_parse(value)

        monkeypatch.setattr(scheduler_module, "parse_due_at", complete_then_parse)

        assert service.tick_monitoring() is False
        assert task.status == TaskStatus.DONE
        assert kinds(service).count(EventKind.TASK) == 1

    def test_completion_from_another_thread_waits_for_tick(
        self, service: JourneyService, clock: FakeClock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        task = service.start_monitoring("p001")
        clock.advance(61)
        real_parse = scheduler_module.parse_due_at
        workers: list[threading.Thread] = []
        blocked: list[bool] = []

        def parse_while_completing(value: datetime | str | None) -> Result[datetime]:
            worker = threading.Thread(target=service.complete_task, args=(task.id,))
            worker.start()
            worker.join(timeout=0.2)
            blocked.append(worker.is_alive())
            workers.append(worker)
            return real_parse(value)

        monkeypatch.setattr(scheduler_module, "parse_due_at", parse_while_completing)

        assert service.tick_monitoring() is True
        workers[0].join(timeout=5)

        assert blocked == [True]
        assert task.status == TaskStatus.DONE
        assert kinds(service).count(EventKind.TASK) == 1

    def test_completion_racing_another_caller_appends_once(
        self, service: JourneyService
    ) -> None:
        task = service.start_monitoring("p001")
        inner = service._write_lock
        raced: list[bool] = []

        class RivalFirstLock:
            """Lets a rival completion in just before the caller takes the lock."""

            def __enter__(self) -> bool:
                if not raced:
                    raced.append(True)
                    service.complete_task(task.id, actor_role="HCA")
                return inner.__enter__()

            def __exit__(self, *exc: object) -> None:
                inner.__exit__(*exc)

        service._write_lock = RivalFirstLock()  # type: ignore[assignment]

        service.complete_task(task.id)

        assert kinds(service).count(EventKind.TASK) == 1
        event = service.log.list_for_patient("p001")[-1]
        assert event.actor is not None and event.actor.role == "HCA"

    def test_concurrent_completions_append_once(self, service: JourneyService) -> None:
        task = service.start_monitoring("p001")
        barrier = threading.Barrier(8)

        def complete() -> None:
            barrier.wait(timeout=5)
            service.complete_task(task.id)

        threads = [threading.Thread(target=complete) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert task.status == TaskStatus.DONE
        assert kinds(service).count(EventKind.TASK) == 1

    def test_stop_monitoring_closes_tasks(self, service: JourneyService) -> None:
        task = service.start_monitoring("p001")

        service.stop_monitoring("p001")

        assert task.status == TaskStatus.DONE
        assert service.get_projection("p001").monitoring == ()

        service.record_observation("p001", NORMAL)
        assert len(service.tasks_for("p001")) == 1

    def test_stop_without_monitoring_appends_nothing(self, service: JourneyService) -> None:
        service.stop_monitoring("p001")

        assert service.log.all_events() == ()
        assert service.get_projection("p001").monitoring == ()

    def test_stopping_twice_appends_once(self, service: JourneyService) -> None:
        service.start_monitoring("p001")

        service.stop_monitoring("p001")
        service.stop_monitoring("p001")

        assert kinds(service).count(EventKind.MONITORING_STOP) == 1

    def test_stopping_another_kind_leaves_active_monitoring(
        self, service: JourneyService
    ) -> None:
        task = service.start_monitoring("p001")

        service.stop_monitoring("p001", task_kind="neuro")

        assert EventKind.MONITORING_STOP not in kinds(service)
        assert task.status == TaskStatus.PENDING
        assert service.get_projection("p001").monitoring == ("vitals",)


class TestSchedulerLifecycle:
    async def test_start_and_stop(self, service: JourneyService, clock: FakeClock) -> None:
        task = service.start_monitoring("p001")
        clock.advance(61)

        service.start_scheduler(interval_ms=10)
        try:
            for _ in range(100):
                if task.status == TaskStatus.OVERDUE:
                    break
                await asyncio.sleep(0.01)
        finally:
            await service.stop_scheduler()

        assert task.status == TaskStatus.OVERDUE
        assert service.scheduler.is_running is False

    async def test_stop_without_start(self, service: JourneyService) -> None:
        await service.stop_scheduler()
        assert service.scheduler.is_running is False

    def test_change_callback_sees_overdue_batch(self, clock: FakeClock) -> None:
        changes: list[Sequence[PatientTasks]] = []
        service = JourneyService(
            log=JourneyEventLog(), config=AppConfig(), clock=clock, on_change=changes.append
        )
        task = service.start_monitoring("p001")

        assert service.tick_monitoring() is False
        clock.advance(61)
        assert service.tick_monitoring() is True

        assert len(changes) == 1
        assert [p.patient_id for p in changes[0]] == ["p001"]
        assert changes[0][0].tasks == [task]

    async def test_running_scheduler_reports_changes(self, clock: FakeClock) -> None:
        changed = asyncio.Event()
        service = JourneyService(
            log=JourneyEventLog(),
            config=AppConfig(),
            clock=clock,
            on_change=lambda _batch: changed.set(),
        )
        service.start_monitoring("p001")
        clock.advance(61)

        service.start_scheduler(interval_ms=10)
        try:
            await asyncio.wait_for(changed.wait(), timeout=2)
        finally:
            await service.stop_scheduler()

        assert service.tasks_for("p001")[0].status == TaskStatus.OVERDUE


class TestIsolation:
    def test_instances_do_not_share_state(self, clock: FakeClock) -> None:
        first = JourneyService(log=JourneyEventLog(), config=AppConfig(), clock=clock)
        second = JourneyService(log=JourneyEventLog(), config=AppConfig(), clock=clock)

        first.assign_room("p001", "Room 1")
        first.start_monitoring("p001")

        assert second.get_room("p001") is None
        assert second.tasks_for("p001") == []
        assert second.log.all_events() == ()

    def test_services_sharing_a_log_see_the_same_journey(self, clock: FakeClock) -> None:
        log = JourneyEventLog()
        writer = JourneyService(log=log, config=AppConfig(), clock=clock)
        reader = JourneyService(log=log, config=AppConfig(), clock=clock)

        writer.assign_room("p001", "Room 3")

        assert reader.get_room("p001") == "Room 3"
        assert reader.get_phase("p001") == Phase.ROOMED
