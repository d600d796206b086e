"""Desired-replica calculation.

``decide`` is a pure function: it holds no timers and no state. The caller
owns the stabilization history (a tuple of ``(timestamp, recommendation)``
pairs), passes it in, and stores the pruned history returned on the
decision. Cooldown between scale events is the caller's business as well.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from .models import UtilizationSample, Workload

Recommendation = tuple[float, int]

SCALE_UP = "scale_up"
SCALE_DOWN = "scale_down"
NONE = "none"


@dataclass(frozen=True)
class ScaleDecision:
    desired: int
    raw: int | None
    action: str
    reason: str
    average: float | None = None
    recommendations: tuple[Recommendation, ...] = ()
    invariant_violation: str | None = None


def raw_desired(ready: int, average: float, target_utilization: float) -> int:
    """ceil(ready * average / target), tolerant of float noise (3*70/70 stays 3)."""
    if target_utilization <= 0:
        raise ValueError("target_utilization must be positive")
    return math.ceil(round(ready * average / target_utilization, 6))


def decide(
    workload: Workload,
    samples: Sequence[UtilizationSample],
    ready_count: int,
    recommendations: Sequence[Recommendation] = (),
    now: float = 0.0,
    stabilization_window_s: float = 300.0,
    stale: bool = False,
) -> ScaleDecision:
    current = workload.target_replicas
    violation = None
    if not workload.in_bounds(current):
        violation = f"target {current} outside [{workload.min_replicas}, {workload.max_replicas}]"
        current = workload.clamp(current)

    cutoff = now - stabilization_window_s
    history = tuple(r for r in recommendations if r[0] >= cutoff)

    def hold(reason: str) -> ScaleDecision:
        action = NONE if current == workload.target_replicas else (SCALE_UP if current > workload.target_replicas else SCALE_DOWN)
        return ScaleDecision(
            desired=current,
            raw=None,
            action=action,
            reason=reason,
            recommendations=history,
            invariant_violation=violation,
        )

    if stale:
        return hold("metrics stale")
    if not samples:
        return hold("no samples")
    if ready_count <= 0:
        return hold("no ready instances")

    average = sum(s.value for s in samples) / len(samples)
    raw = raw_desired(ready_count, average, workload.target_utilization)
    clamped = workload.clamp(raw)
    history = history + ((now, clamped),)

    if clamped >= current:
        desired = clamped
    else:
        # Scale down only to the highest recommendation still inside the window.
        floor = max(r[1] for r in history)
        desired = min(current, floor)

    if desired > workload.target_replicas:
        action = SCALE_UP
    elif desired < workload.target_replicas:
        action = SCALE_DOWN
    else:
        action = NONE

    if clamped != raw:
        reason = f"raw {raw} clamped to {clamped}"
    elif action == NONE and clamped < current:
        reason = "scale-down held by stabilization window"
    else:
        reason = f"avg {average:.1f}% vs target {workload.target_utilization:.1f}%"

    return ScaleDecision(
        desired=desired,
        raw=raw,
        action=action,
        reason=reason,
        average=average,
        recommendations=history,
        invariant_violation=violation,
    )
