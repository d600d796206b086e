from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from threading import Lock

from .calculator import Recommendation, ScaleDecision
from .errors import UnknownWorkload
from .metrics import MetricsSampler
from .models import Condition, ConditionType, Instance, Workload
from .rollout import RolloutMachine


@dataclass(frozen=True)
class RolloutRequested:
    revision: str
    replicas: int | None = None


@dataclass(frozen=True)
class BoundsChanged:
    min_replicas: int | None = None
    max_replicas: int | None = None
    target_utilization: float | None = None
    max_surge: int | None = None
    max_unavailable: int | None = None


PlanEvent = RolloutRequested | BoundsChanged


@dataclass
class WorkloadRuntime:
    """Everything one workload's reconciliation task owns.

    Only the task holding ``lock`` reads or writes these fields during a
    tick; the plan-event queue is the one entry point for other threads.
    """

    workload: Workload
    sampler: MetricsSampler
    machine: RolloutMachine
    lock: Lock = field(default_factory=Lock)
    recommendations: tuple[Recommendation, ...] = ()
    last_scale_at: float | None = None
    last_decision: ScaleDecision | None = None
    last_tick_at: float | None = None
    was_stale: bool = False
    instances: list[Instance] = field(default_factory=list)
    conditions: dict[ConditionType, Condition] = field(default_factory=dict)
    apply_failures: dict[str, int] = field(default_factory=dict)
    abandoned: set[str] = field(default_factory=set)
    plan_id: str | None = None
    _events_lock: Lock = field(default_factory=Lock)
    _events: deque[PlanEvent] = field(default_factory=deque)

    def push(self, event: PlanEvent) -> None:
        with self._events_lock:
            self._events.append(event)

    def drain(self) -> list[PlanEvent]:
        with self._events_lock:
            out = list(self._events)
            self._events.clear()
            return out


class RuntimeState:
    """Registry of per-workload runtimes. No workload state is shared across entries."""

    def __init__(self) -> None:
        self.lock = Lock()
        self._workloads: dict[str, WorkloadRuntime] = {}

    def add(self, rt: WorkloadRuntime) -> None:
        with self.lock:
            if rt.workload.id in self._workloads:
                raise ValueError(f"workload '{rt.workload.id}' already registered")
            self._workloads[rt.workload.id] = rt

    def get(self, workload_id: str) -> WorkloadRuntime:
        with self.lock:
            rt = self._workloads.get(workload_id)
        if rt is None:
            raise UnknownWorkload(workload_id)
        return rt

    def remove(self, workload_id: str) -> WorkloadRuntime:
        with self.lock:
            rt = self._workloads.pop(workload_id, None)
        if rt is None:
            raise UnknownWorkload(workload_id)
        return rt

    def ids(self) -> list[str]:
        with self.lock:
            return sorted(self._workloads)

    def __contains__(self, workload_id: str) -> bool:
        with self.lock:
            return workload_id in self._workloads
