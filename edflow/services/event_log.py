"""
Append-only journey event log: the single source of truth for every patient.

Key patterns:
- Append is the only mutation; there is no update or delete
- Per-patient order is the order appends were issued, not timestamp order
- Subscribers are notified after the append lock is released
- Legacy records are translated to tagged payloads on the way in
"""

import re
import threading
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError

from edflow.domain.models import (
    Actor,
    EventKind,
    EwsChangeDetail,
    JourneyEvent,
    RoomChangeDetail,
)

# Configure structured logging once for the whole package
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

Listener = Callable[[JourneyEvent], None]

# Historical kind names that mean the same transition as a canonical kind
LEGACY_KIND_ALIASES: dict[str, EventKind] = {
    "room_assigned": EventKind.ROOM_CHANGE,
    "encounter.location": EventKind.ROOM_CHANGE,
    "obs": EventKind.VITALS,
    "ews": EventKind.EWS_CHANGE,
}

_EWS_LABEL = re.compile(r"EWS\s*(\d+|\S)\s*(?:->|→)\s*(\d+)")
_ROOM_TEXT = re.compile(r"room\s*([a-z0-9\-]+)", re.IGNORECASE)


class JourneyEventLog:
    """
    In-memory append-only event log keyed by patient.

    Thread-safe: appends take a lock, reads return immutable tuples so readers
    never see a partially written sequence.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[JourneyEvent] = []
        self._by_patient: dict[str, list[JourneyEvent]] = defaultdict(list)
        self._listeners: list[Listener] = []
        self.logger = logger.bind(component="journey_event_log")

    def append(self, event: JourneyEvent) -> JourneyEvent:
        """Append one event and notify subscribers. Returns the stored event."""
        with self._lock:
            self._events.append(event)
            self._by_patient[event.patient_id].append(event)
            version = len(self._by_patient[event.patient_id])

        self.logger.debug(
            "event_appended",
            patient_id=event.patient_id,
            kind=event.kind.value,
            event_id=event.id,
            version=version,
        )
        self._notify(event)
        return event

    def append_many(self, events: Iterable[JourneyEvent]) -> int:
        """Append a batch in order, e.g. when hydrating from persistence."""
        count = 0
        for event in events:
            self.append(event)
            count += 1
        self.logger.info("events_hydrated", count=count)
        return count

    def hydrate(self, records: Iterable[Mapping[str, Any]]) -> int:
        """
        Append persisted JSON-shaped records, translating legacy shapes.

        Records that cannot be read (unknown kind, missing patient) are logged
        and skipped so one bad row never blocks loading the rest.
        """
        events = []
        for record in records:
            try:
                events.append(from_record(record))
            except (TypeError, ValueError, ValidationError) as e:
                self.logger.warning(
                    "record_skipped",
                    record_id=record.get("id"),
                    kind=record.get("kind"),
                    error=str(e),
                )
        return self.append_many(events)

    def list_for_patient(self, patient_id: str) -> tuple[JourneyEvent, ...]:
        with self._lock:
            return tuple(self._by_patient.get(patient_id, ()))

    def events_since(self, patient_id: str, version: int) -> tuple[JourneyEvent, ...]:
        """Events appended for ``patient_id`` after the given version."""
        if version < 0:
            raise ValueError("version must be non-negative")
        with self._lock:
            return tuple(self._by_patient.get(patient_id, ())[version:])

    def version(self, patient_id: str) -> int:
        with self._lock:
            return len(self._by_patient.get(patient_id, ()))

    def all_events(self) -> tuple[JourneyEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def patient_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._by_patient)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register an append listener. Returns a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: JourneyEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                # A broken projection must not undo or block the append
                self.logger.exception(
                    "event_listener_failed", error=str(e), patient_id=event.patient_id
                )

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value.strip():
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.now(UTC)


def _parse_actor(value: Any) -> Actor | None:
    if isinstance(value, Mapping):
        return Actor(role=str(value.get("role") or "unknown"), name=value.get("name"))
    if isinstance(value, str) and value.strip():
        # Older records stored a display name such as "Charge RN"
        return Actor(role="unknown", name=value.strip())
    return None


def _legacy_room(label: str, detail: Any) -> str | None:
    if label.strip():
        return label.strip()
    if isinstance(detail, str) and detail.strip():
        return detail.strip()
    if isinstance(detail, Mapping) and detail.get("room"):
        return str(detail["room"])
    match = _ROOM_TEXT.search(f"{label} {detail or ''}")
    return f"Room {match.group(1)}" if match else None


def _legacy_ews(label: str, detail: Any) -> EwsChangeDetail | None:
    if isinstance(detail, Mapping) and detail.get("next") is not None:
        prev = detail.get("prev")
        nxt = int(detail["next"])
        prev_val = int(prev) if prev is not None else None
        return EwsChangeDetail(
            prev=prev_val, next=nxt, delta=None if prev_val is None else nxt - prev_val
        )
    text = detail if isinstance(detail, str) else label
    match = _EWS_LABEL.search(text or "")
    if match:
        prev_val = int(match.group(1)) if match.group(1).isdigit() else None
        nxt = int(match.group(2))
        return EwsChangeDetail(
            prev=prev_val, next=nxt, delta=None if prev_val is None else nxt - prev_val
        )
    digits = re.search(r"(\d+)", text or "")
    return EwsChangeDetail(next=int(digits.group(1))) if digits else None


def from_record(record: Mapping[str, Any]) -> JourneyEvent:
    """
    Build a JourneyEvent from a persisted JSON-shaped record.

    Accepts current records as well as older ones that used aliased kind
    names, a ``t`` timestamp key, ``patientId`` keys, or untagged string
    details. Tagged details pass through unchanged.
    """
    raw_kind = str(record.get("kind", "")).strip()
    kind = LEGACY_KIND_ALIASES.get(raw_kind) or EventKind(raw_kind)
    label = str(record.get("label") or "")
    detail = record.get("detail")

    is_tagged = isinstance(detail, Mapping) and "type" in detail
    if not is_tagged:
        if kind == EventKind.ROOM_CHANGE:
            room = _legacy_room(label, detail)
            if room:
                reason = detail if isinstance(detail, str) else None
                detail = RoomChangeDetail(room=room, reason=reason)
        elif kind == EventKind.EWS_CHANGE:
            detail = _legacy_ews(label, detail) or detail

    fields: dict[str, Any] = {
        "patient_id": str(record.get("patient_id") or record.get("patientId") or ""),
        "timestamp": _parse_timestamp(record.get("timestamp") or record.get("t")),
        "kind": kind,
        "label": label,
        "detail": detail,
        "actor": _parse_actor(record.get("actor")),
        "severity": "warn" if record.get("severity") in ("warn", "crit") else None,
    }
    if record.get("id"):
        fields["id"] = str(record["id"])
    return JourneyEvent(**fields)
