"""Shared fixtures for the journey engine unit tests."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from edflow.config import AppConfig, get_config
from edflow.domain.models import EventKind, JourneyEvent
from edflow.services.event_log import JourneyEventLog
from edflow.services.journey import JourneyService

SHIFT_START = datetime(2025, 3, 14, 8, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = SHIFT_START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> datetime:
        self.now += timedelta(minutes=minutes)
        return self.now


@pytest.fixture
def clear_config_cache() -> Iterator[None]:
    """Keep the lru_cached config from leaking between tests."""
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def log() -> JourneyEventLog:
    return JourneyEventLog()


@pytest.fixture
def service(log: JourneyEventLog, clock: FakeClock) -> JourneyService:
    return JourneyService(log=log, config=AppConfig(), clock=clock)


@pytest.fixture
def make_event() -> Callable[..., JourneyEvent]:
    """Factory for events with sensible defaults for the fields a test does not care about."""

    def _make(
        kind: EventKind | str,
        patient_id: str = "p001",
        label: str = "",
        detail: Any = None,
        timestamp: datetime | None = None,
    ) -> JourneyEvent:
        return JourneyEvent(
            patient_id=patient_id,
            kind=EventKind(kind),
            label=label,
            detail=detail,
            timestamp=timestamp or SHIFT_START,
        )

    return _make
