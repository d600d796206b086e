"""Structured event stream.

Every scale decision, rollout transition and failure is emitted here as an
:class:`Event` carrying the workload id, a UTC timestamp and a
machine-readable :class:`EventKind`. Events are fanned out to an in-memory
ring buffer, the sqlite ``events`` table (when persistence is on), the
``logging`` module and any registered subscriber.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Callable

from . import db
from .models import utc_now

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    WORKLOAD_REGISTERED = "workload_registered"
    WORKLOAD_UPDATED = "workload_updated"
    WORKLOAD_REMOVED = "workload_removed"
    SAMPLE_MISSED = "sample_missed"
    METRICS_STALE = "metrics_stale"
    METRICS_RECOVERED = "metrics_recovered"
    SCALE_DECISION = "scale_decision"
    INVARIANT_VIOLATION = "invariant_violation"
    ROLLOUT_STARTED = "rollout_started"
    ROLLOUT_SUPERSEDED = "rollout_superseded"
    ROLLOUT_STEP = "rollout_step"
    ROLLOUT_PAUSED = "rollout_paused"
    ROLLOUT_RESUMED = "rollout_resumed"
    ROLLOUT_ABORTING = "rollout_aborting"
    ROLLOUT_COMPLETED = "rollout_completed"
    ROLLBACK_COMPLETED = "rollback_completed"
    INSTANCE_READY = "instance_ready"
    INSTANCE_UNHEALTHY = "instance_unhealthy"
    INSTANCE_RECOVERED = "instance_recovered"
    INSTANCE_TERMINATING = "instance_terminating"
    INTENT_APPLIED = "intent_applied"
    INTENT_FAILED = "intent_failed"
    INTENT_ABANDONED = "intent_abandoned"
    CONDITION_RAISED = "condition_raised"
    CONDITION_CLEARED = "condition_cleared"
    RECONCILE_ERROR = "reconcile_error"
    TICK_SKIPPED = "tick_skipped"
    DRIFT_DETECTED = "drift_detected"


_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


@dataclass(frozen=True)
class Event:
    workload_id: str | None
    kind: EventKind
    message: str
    level: str = "INFO"
    data: dict[str, Any] = field(default_factory=dict)
    ts: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts": self.ts,
            "workload_id": self.workload_id,
            "kind": self.kind.value,
            "level": self.level,
            "message": self.message,
            "data": dict(self.data),
        }


Subscriber = Callable[[Event], None]


class EventStream:
    def __init__(self, buffer_size: int = 1000, persist: bool = False) -> None:
        self.persist = persist
        self._lock = Lock()
        self._buffer: deque[Event] = deque(maxlen=max(1, buffer_size))
        self._subscribers: list[Subscriber] = []

    def subscribe(self, fn: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(fn)

    def emit(
        self,
        workload_id: str | None,
        kind: EventKind,
        message: str,
        level: str = "INFO",
        **data: Any,
    ) -> Event:
        ev = Event(workload_id=workload_id, kind=kind, message=message, level=level.upper(), data=data)
        with self._lock:
            self._buffer.append(ev)
            subscribers = list(self._subscribers)

        logger.log(_LEVELS.get(ev.level, logging.INFO), "[%s] %s: %s", workload_id or "-", kind.value, message)

        if self.persist:
            try:
                db.log_event(ev.level, kind.value, message, workload_id=workload_id, data=data, ts=ev.ts)
            except Exception:
                logger.exception("Failed to persist event %s", kind.value)

        for fn in subscribers:
            try:
                fn(ev)
            except Exception:
                logger.exception("Event subscriber failed")
        return ev

    def recent(
        self,
        limit: int = 100,
        workload_id: str | None = None,
        kind: EventKind | None = None,
    ) -> list[Event]:
        with self._lock:
            items = list(self._buffer)
        if workload_id is not None:
            items = [e for e in items if e.workload_id == workload_id]
        if kind is not None:
            items = [e for e in items if e.kind is kind]
        return list(reversed(items))[: max(0, limit)]

    def kinds(self, workload_id: str | None = None) -> list[EventKind]:
        """Event kinds in emission order (oldest first)."""
        with self._lock:
            items = list(self._buffer)
        return [e.kind for e in items if workload_id is None or e.workload_id == workload_id]
