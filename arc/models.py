from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


class HealthStatus(str, Enum):
    UNKNOWN = "Unknown"
    STARTING = "Starting"
    READY = "Ready"
    UNHEALTHY = "Unhealthy"
    TERMINATING = "Terminating"


class RolloutState(str, Enum):
    IDLE = "Idle"
    ROLLING_OUT = "RollingOut"
    PAUSED = "Paused"
    ABORTING = "Aborting"


class ConditionType(str, Enum):
    METRICS_STALE = "MetricsStale"
    ROLLOUT_PAUSED = "RolloutPaused"
    ROLLOUT_ABORTING = "RolloutAborting"
    ROLLED_BACK = "RolledBack"
    APPLY_FAILING = "ApplyFailing"


@dataclass
class Workload:
    id: str
    revision: str
    target_replicas: int
    min_replicas: int = 1
    max_replicas: int = 10
    target_utilization: float = 80.0
    max_surge: int = 1
    max_unavailable: int = 0
    current_replicas: int = 0

    def clamp(self, replicas: int) -> int:
        return max(self.min_replicas, min(self.max_replicas, int(replicas)))

    def in_bounds(self, replicas: int) -> bool:
        return self.min_replicas <= replicas <= self.max_replicas


@dataclass
class Instance:
    id: str
    workload_id: str
    revision: str
    status: HealthStatus = HealthStatus.UNKNOWN
    key: str | None = None
    address: str | None = None
    utilization: float | None = None

    @property
    def live(self) -> bool:
        return self.status is not HealthStatus.TERMINATING

    @property
    def settled(self) -> bool:
        """True once the instance reached a step-terminal health determination."""
        return self.status in {HealthStatus.READY, HealthStatus.UNHEALTHY}


@dataclass(frozen=True)
class UtilizationSample:
    workload_id: str
    timestamp: float
    value: float
    instance_count: int


@dataclass(frozen=True)
class RolloutStep:
    add: int
    remove: int


@dataclass
class RolloutPlan:
    id: str
    workload_id: str
    source_revision: str
    target_revision: str
    source_replicas: int
    target_replicas: int
    max_surge: int
    max_unavailable: int
    steps: list[RolloutStep]
    rollback: bool = False

    @property
    def revision_change(self) -> bool:
        return self.source_revision != self.target_revision


@dataclass(frozen=True)
class CreateIntent:
    workload_id: str
    revision: str
    key: str


@dataclass(frozen=True)
class TerminateIntent:
    workload_id: str
    instance_id: str
    reason: str = ""


Intent = CreateIntent | TerminateIntent


def intent_key(intent: Intent) -> str:
    if isinstance(intent, CreateIntent):
        return f"create:{intent.key}"
    if isinstance(intent, TerminateIntent):
        return f"terminate:{intent.instance_id}"
    raise TypeError(f"unknown intent type: {type(intent).__name__}")


@dataclass
class Condition:
    type: ConditionType
    reason: str
    since: str = field(default_factory=utc_now)
