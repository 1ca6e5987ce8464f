"""
Monitoring scheduler: flips monitoring tasks to overdue on a fixed cadence.

Key patterns:
- Explicit Result type for expected per-task failures (malformed due times)
- Single active-tick guard instead of per-task locking
- Status writes run under a lock shared with whoever closes tasks
- Cancellable asyncio loop with an idempotent stop
- The scheduler mutates the task lists it is given and never writes events
"""

import asyncio
import threading
import time
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

import structlog

from edflow.domain.models import OPEN_TASK_STATUSES, MonitoringTask, PatientTasks, TaskStatus

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]
ChangeCallback = Callable[[Sequence[PatientTasks]], None]
PatientsProvider = Callable[[], Sequence[PatientTasks]]

ValueT = TypeVar("ValueT")


def utc_now() -> datetime:
    return datetime.now(UTC)


class Result(Generic[ValueT]):
    """
    Explicit error handling without exceptions for expected failures.

    A malformed task reaches the tick loop as data, so it is logged and
    skipped while the other tasks are still checked.
    """

    def __init__(self, value: ValueT | None = None, error: Exception | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: Exception | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: Exception) -> "Result[ValueT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error:
            raise self._error
        return self._value  # type: ignore

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore

    def unwrap_err(self) -> Exception:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error


def parse_due_at(value: datetime | str | None) -> Result[datetime]:
    """Parse a task due time. Naive datetimes are taken as UTC."""
    if value is None:
        return Result.err(ValueError("task has no due time"))
    if isinstance(value, datetime):
        return Result.ok(value if value.tzinfo else value.replace(tzinfo=UTC))
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError) as e:
        return Result.err(ValueError(f"malformed due time {value!r}: {e}"))
    return Result.ok(parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC))


def check_task(task: MonitoringTask, now: datetime) -> Result[bool]:
    """Mark ``task`` overdue if its due time has passed. Ok(True) means it changed."""
    if task.status not in OPEN_TASK_STATUSES:
        return Result.ok(False)
    due = parse_due_at(task.due_at)
    if due.is_err():
        return Result.err(due.unwrap_err())
    # Re-read status: the task may have been closed while the due time was parsed
    if now >= due.unwrap() and task.status in OPEN_TASK_STATUSES:
        task.status = TaskStatus.OVERDUE
        return Result.ok(True)
    return Result.ok(False)


class MonitoringScheduler:
    """
    Periodic overdue check over caller-owned task lists.

    Design principles:
    - Idempotent: a breached task flips once; later ticks leave it alone
    - Isolated: one bad task never aborts the tick for the others
    - Serialized: overlapping ticks are skipped, not interleaved
    - Stoppable: after ``stop()`` returns no further mutation happens
    """

    def __init__(
        self,
        patients: PatientsProvider,
        clock: Clock = utc_now,
        on_change: ChangeCallback | None = None,
        lock: AbstractContextManager[Any] | None = None,
    ) -> None:
        self.patients = patients
        self.clock = clock
        self.on_change = on_change
        self.logger = logger.bind(component="monitoring_scheduler")
        self._tick_guard = threading.Lock()
        # Shared with whoever closes tasks, so a status write never races a completion
        self._mutation_lock = lock if lock is not None else threading.RLock()
        self._task: asyncio.Task[None] | None = None
        self._stopped = threading.Event()
        self.tick_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def tick(
        self, patients: Sequence[PatientTasks] | None = None, now: datetime | None = None
    ) -> bool:
        """
        Run one overdue check. Returns True if any task changed status.

        Skips (returns False) when another tick is still running.
        """
        if not self._tick_guard.acquire(blocking=False):
            self.logger.warning("scheduler_tick_skipped_overlap")
            return False

        try:
            start_time = time.perf_counter()
            current = now or self.clock()
            if current.tzinfo is None:
                current = current.replace(tzinfo=UTC)
            batch = self.patients() if patients is None else patients
            changed = 0
            failed = 0

            with self._mutation_lock:
                for patient in batch:
                    for task in list(patient.tasks):
                        result = check_task(task, current)
                        if result.is_err():
                            failed += 1
                            self.logger.warning(
                                "task_due_time_invalid",
                                patient_id=patient.patient_id,
                                task_id=task.id,
                                error=str(result.unwrap_err()),
                            )
                        elif result.unwrap():
                            changed += 1
                            self.logger.info(
                                "task_marked_overdue",
                                patient_id=patient.patient_id,
                                task_id=task.id,
                                task_kind=task.kind,
                                assignee_role=task.assignee_role,
                            )

            self.tick_count += 1
            self.logger.debug(
                "scheduler_tick_completed",
                patients=len(batch),
                changed=changed,
                failed=failed,
                duration_seconds=round(time.perf_counter() - start_time, 4),
            )

            if changed and self.on_change is not None:
                try:
                    self.on_change(batch)
                except Exception as e:
                    self.logger.exception("scheduler_change_callback_failed", error=str(e))
            return changed > 0
        finally:
            self._tick_guard.release()

    def start(self, interval_seconds: float) -> asyncio.Task[None]:
        """Start the periodic loop on the running event loop. No-op if already running."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if self.is_running:
            self.logger.info("scheduler_already_running")
            assert self._task is not None
            return self._task

        self._stopped.clear()
        self._task = asyncio.get_running_loop().create_task(
            self._run(interval_seconds), name="monitoring-scheduler"
        )
        self.logger.info("scheduler_started", interval_seconds=interval_seconds)
        return self._task

    async def _run(self, interval_seconds: float) -> None:
        try:
            while not self._stopped.is_set():
                await asyncio.sleep(interval_seconds)
                if self._stopped.is_set():
                    break
                try:
                    self.tick()
                except Exception as e:
                    self.logger.exception("scheduler_tick_failed", error=str(e))
        except asyncio.CancelledError:
            self.logger.info("scheduler_cancelled")
            raise

    async def stop(self) -> None:
        """Cancel the loop and wait for it. Safe to call repeatedly."""
        self._stopped.set()
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.logger.info("scheduler_stopped", ticks=self.tick_count)
