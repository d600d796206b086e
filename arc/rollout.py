from __future__ import annotations

import logging
import secrets
from typing import Iterator

from .errors import InvariantViolation, PlanConflict
from .events import EventKind, EventStream
from .models import (
    CreateIntent,
    HealthStatus,
    Instance,
    Intent,
    RolloutPlan,
    RolloutState,
    RolloutStep,
    TerminateIntent,
    Workload,
)

logger = logging.getLogger(__name__)

ADD = "add"
REMOVE = "remove"


def build_steps(
    old: int,
    new: int,
    target: int,
    max_surge: int,
    max_unavailable: int,
    min_replicas: int = 0,
) -> list[RolloutStep]:
    """Precompute the batches that move (old, new) instance counts to (0, target).

    ``old`` counts live instances on any revision other than the target one,
    ``new`` those already on it. Each step first adds up to
    ``max(max_surge, 1)`` new-revision instances without exceeding
    ``target + max_surge`` in total, then removes old-revision instances down
    to the availability floor ``target - max_unavailable`` (raised to
    ``min_replicas`` when surge leaves room for it). Pure scale-downs remove
    surplus instances in batches of ``max(max_unavailable, 1)``.
    """
    if min(old, new, target, max_surge, max_unavailable) < 0:
        raise ValueError("counts and rollout limits must be non-negative")
    if old > 0 and max_surge == 0 and max_unavailable == 0:
        raise ValueError("max_surge and max_unavailable cannot both be 0")

    steps: list[RolloutStep] = []
    while old > 0 or new != target:
        total = old + new
        add = 0
        if new < target:
            headroom = target + max_surge - total
            add = max(0, min(max(max_surge, 1), target - new, headroom))
        new += add
        total += add

        remove = 0
        if old > 0:
            floor = target - max_unavailable
            if max_surge > 0:
                floor = max(floor, min(min_replicas, target))
            remove = max(0, min(old, total - floor))
            if add == 0 and remove == 0:
                remove = max(0, min(old, total - (target - max_unavailable)))
            old -= remove
        elif new > target:
            remove = min(max(max_unavailable, 1), new - target)
            new -= remove

        if add == 0 and remove == 0:
            raise ValueError("rollout cannot make progress with these limits")
        steps.append(RolloutStep(add=add, remove=remove))
    return steps


def _expectations(old: int, new: int, steps: list[RolloutStep]) -> list[tuple[int, int, int]]:
    """(old after step, new after add phase, new after step) for every step."""
    out: list[tuple[int, int, int]] = []
    for s in steps:
        new_added = new + s.add
        if old > 0:
            old, new = old - s.remove, new_added
        else:
            new = new_added - s.remove
        out.append((old, new_added, new))
    return out


def _removal_order(instances: list[Instance], newest_first: bool = False) -> list[Instance]:
    # Instances that are not serving go first.
    rank = {
        HealthStatus.UNHEALTHY: 0,
        HealthStatus.UNKNOWN: 1,
        HealthStatus.STARTING: 1,
        HealthStatus.READY: 2,
    }
    ordered = sorted(instances, key=lambda i: i.id, reverse=newest_first)
    return sorted(ordered, key=lambda i: rank.get(i.status, 0))


class RolloutMachine:
    """Per-workload rollout driver.

    States: Idle, RollingOut, Paused, Aborting. ``advance`` is synchronous and
    free of I/O: it looks at the observed instances and returns the intents
    the reconciler should apply. The workload record passed in is owned by
    the caller's reconciliation task; the machine only updates ``revision``
    and ``target_replicas`` when a plan completes or is rolled back.
    """

    def __init__(
        self,
        workload: Workload,
        events: EventStream | None = None,
        step_timeout_s: float = 300.0,
        pause_timeout_s: float = 600.0,
        pause_unhealthy_threshold: int = 0,
    ) -> None:
        self.workload = workload
        self.events = events
        self.step_timeout_s = step_timeout_s
        self.pause_timeout_s = pause_timeout_s
        self.pause_unhealthy_threshold = max(0, int(pause_unhealthy_threshold))

        self.state = RolloutState.IDLE
        self.plan: RolloutPlan | None = None
        self.step_index = 0
        self.phase = ADD
        self.step_started_at = 0.0
        self.paused_at: float | None = None
        self.pause_reason = ""
        self.last_known_good = workload.revision
        self.stable_replicas = workload.target_replicas
        self.rolled_back_from: str | None = None
        self._expect: list[tuple[int, int, int]] = []
        self._initial_old = 0

    # -- helpers

    def _emit(self, kind: EventKind, message: str, level: str = "INFO", **data) -> None:
        if self.events is not None:
            self.events.emit(self.workload.id, kind, message, level=level, **data)

    @property
    def target_revision(self) -> str:
        return self.plan.target_revision if self.plan else self.workload.revision

    @property
    def busy(self) -> bool:
        return self.state is not RolloutState.IDLE

    def describe(self) -> dict:
        plan = self.plan
        return {
            "state": self.state.value,
            "plan_id": plan.id if plan else None,
            "source_revision": plan.source_revision if plan else None,
            "target_revision": plan.target_revision if plan else None,
            "target_replicas": plan.target_replicas if plan else None,
            "step": self.step_index,
            "steps": len(plan.steps) if plan else 0,
            "phase": self.phase,
            "pause_reason": self.pause_reason or None,
            "last_known_good": self.last_known_good,
        }

    # -- plan submission

    def submit(
        self,
        target_revision: str,
        target_replicas: int,
        instances: list[Instance],
        now: float,
        rollback: bool = False,
    ) -> RolloutPlan:
        """Start driving toward (target_revision, target_replicas).

        A plan that is still in flight is superseded: its in-flight instances
        simply count as old or new for the replacement plan.
        """
        w = self.workload
        if not w.in_bounds(target_replicas):
            violation = InvariantViolation(
                f"requested replicas {target_replicas} outside [{w.min_replicas}, {w.max_replicas}]"
            )
            self._emit(EventKind.INVARIANT_VIOLATION, f"{violation}; clamped", level="WARN")
            target_replicas = w.clamp(target_replicas)

        live = [i for i in instances if i.live]
        old = sum(1 for i in live if i.revision != target_revision)
        new = len(live) - old
        steps = build_steps(old, new, target_replicas, w.max_surge, w.max_unavailable, w.min_replicas)

        if self.plan is not None and self.state is not RolloutState.IDLE:
            conflict = PlanConflict(f"plan {self.plan.id} superseded")
            self._emit(
                EventKind.ROLLOUT_SUPERSEDED,
                str(conflict),
                level="WARN",
                plan_id=self.plan.id,
                state=self.state.value,
            )

        plan = RolloutPlan(
            id=secrets.token_hex(4),
            workload_id=w.id,
            source_revision=w.revision,
            target_revision=target_revision,
            source_replicas=self.stable_replicas,
            target_replicas=target_replicas,
            max_surge=w.max_surge,
            max_unavailable=w.max_unavailable,
            steps=steps,
            rollback=rollback,
        )
        self.plan = plan
        self._expect = _expectations(old, new, steps)
        self._initial_old = old
        self.step_index = 0
        self.phase = ADD
        self.step_started_at = now
        self.paused_at = None
        self.pause_reason = ""
        self.state = RolloutState.ABORTING if rollback else RolloutState.ROLLING_OUT
        label = "rollback" if rollback else ("rollout" if plan.revision_change else "scale")
        self._emit(
            EventKind.ROLLOUT_STARTED,
            f"{label} to {target_revision} x{target_replicas} in {len(steps)} step(s)",
            plan_id=plan.id,
            source_revision=plan.source_revision,
            target_revision=target_revision,
            target_replicas=target_replicas,
            steps=[(s.add, s.remove) for s in steps],
        )
        return plan

    # -- driving

    def advance(self, instances: list[Instance], now: float) -> list[Intent]:
        intents: list[Intent] = [
            TerminateIntent(self.workload.id, i.id, reason="liveness")
            for i in instances
            if i.status is HealthStatus.TERMINATING
        ]
        live = [i for i in instances if i.live]

        if self.state is RolloutState.IDLE:
            if not self._drifted(live):
                return intents
            self._emit(EventKind.DRIFT_DETECTED, "instance set drifted from target; repairing", level="WARN")
            self.submit(self.workload.revision, self.workload.target_replicas, live, now)

        if self.state is RolloutState.PAUSED:
            if self._recovered(live):
                self.state = RolloutState.ROLLING_OUT
                self.step_started_at = now
                self.paused_at = None
                self._emit(EventKind.ROLLOUT_RESUMED, f"health recovered after: {self.pause_reason}")
                self.pause_reason = ""
            elif self.paused_at is not None and now - self.paused_at >= self.pause_timeout_s:
                self._begin_abort(live, now)
            else:
                return intents + self._repairs(live)

        intents.extend(self._drive(live, now))
        return intents

    def _repairs(self, live: list[Instance]) -> list[Intent]:
        """Replace instances lost while paused, without advancing the plan.

        Old-revision capacity is restored first, then missing new-revision
        instances of the current step, both within ``target + max_surge``.
        """
        plan = self.plan
        if plan is None:
            return []
        old, new = self._split(live)
        headroom = plan.target_replicas + plan.max_surge - len(live)
        if headroom <= 0:
            return []

        if self.step_index >= len(self._expect):
            return self._creates(live, min(headroom, plan.target_replicas - len(new)), len(plan.steps))

        exp_old, exp_new_added, exp_new_after = self._expect[self.step_index]
        if self.phase == ADD:
            want_old = self._expect[self.step_index - 1][0] if self.step_index > 0 else self._initial_old
            want_new = exp_new_added
        else:
            want_old, want_new = exp_old, exp_new_after

        out: list[Intent] = []
        used = {i.key for i in live if i.key}
        j = 0
        while len(out) < min(headroom, want_old - len(old)):
            key = f"{plan.id}-{self.step_index}-o{j}"
            j += 1
            if key not in used:
                out.append(CreateIntent(self.workload.id, plan.source_revision, key))
        headroom -= len(out)
        if headroom > 0 and want_new > len(new):
            out += self._creates(live, min(headroom, want_new - len(new)), self.step_index)
        return out

    def _drifted(self, live: list[Instance]) -> bool:
        w = self.workload
        if any(i.revision != w.revision for i in live):
            return True
        return len(live) != w.target_replicas

    def _split(self, live: list[Instance]) -> tuple[list[Instance], list[Instance]]:
        target = self.target_revision
        old = [i for i in live if i.revision != target]
        new = [i for i in live if i.revision == target]
        return old, new

    def _owned(self, inst: Instance) -> bool:
        return bool(self.plan and inst.key and inst.key.startswith(f"{self.plan.id}-"))

    def _slot_keys(self, step_index: int) -> Iterator[str]:
        assert self.plan is not None
        for i in range(min(step_index + 1, len(self.plan.steps))):
            for slot in range(self.plan.steps[i].add):
                yield f"{self.plan.id}-{i}-{slot}"
        j = 0
        while True:
            yield f"{self.plan.id}-{step_index}-r{j}"
            j += 1

    def _creates(self, live: list[Instance], count: int, step_index: int) -> list[Intent]:
        used = {i.key for i in live if i.key}
        out: list[Intent] = []
        for key in self._slot_keys(step_index):
            if len(out) >= count:
                break
            if key in used:
                continue
            out.append(CreateIntent(self.workload.id, self.target_revision, key))
        return out

    def _terminates(self, victims: list[Instance], reason: str) -> list[Intent]:
        return [TerminateIntent(self.workload.id, i.id, reason=reason) for i in victims]

    def _batch_problem(self, new: list[Instance]) -> str | None:
        unhealthy = [i for i in new if self._owned(i) and i.status is HealthStatus.UNHEALTHY]
        if len(unhealthy) > self.pause_unhealthy_threshold:
            return f"{len(unhealthy)} unhealthy instance(s) in batch (threshold {self.pause_unhealthy_threshold})"
        return None

    def _recovered(self, live: list[Instance]) -> bool:
        if self.plan is None:
            return True
        old, new = self._split(live)
        if self.step_index >= len(self._expect):
            return (
                not old
                and len(new) == self.plan.target_replicas
                and all(i.status is HealthStatus.READY for i in new)
            )
        if self._batch_problem(new) or len(new) < self._expect[self.step_index][1]:
            return False
        return all(i.settled for i in new)

    def _timed_out(self, now: float) -> bool:
        return now - self.step_started_at >= self.step_timeout_s

    def _pause(self, reason: str, now: float) -> None:
        self.state = RolloutState.PAUSED
        self.paused_at = now
        self.pause_reason = reason
        self._emit(EventKind.ROLLOUT_PAUSED, reason, level="WARN", step=self.step_index, phase=self.phase)

    def _begin_abort(self, live: list[Instance], now: float) -> None:
        assert self.plan is not None
        failed = self.plan
        self._emit(
            EventKind.ROLLOUT_ABORTING,
            f"no recovery within {self.pause_timeout_s:.0f}s ({self.pause_reason}); rolling back to {self.last_known_good}",
            level="ERROR",
            plan_id=failed.id,
            target_revision=failed.target_revision,
        )
        self.rolled_back_from = failed.target_revision
        # A rollback replaces the failed plan; it is not reported as a supersede.
        self.state = RolloutState.IDLE
        self.submit(self.last_known_good, failed.source_replicas, live, now, rollback=True)

    def _drive(self, live: list[Instance], now: float) -> list[Intent]:
        plan = self.plan
        if plan is None:
            return []
        aborting = self.state is RolloutState.ABORTING

        # Each completed step may unlock the next one within the same call.
        for _ in range(len(plan.steps) + 1):
            if self.step_index >= len(plan.steps):
                return self._finish(live, now)

            exp_old, exp_new_added, exp_new_after = self._expect[self.step_index]
            old, new = self._split(live)

            if self.phase == ADD:
                missing = exp_new_added - len(new)
                if missing > 0:
                    if not aborting and self._timed_out(now):
                        self._pause(f"step {self.step_index} did not converge within {self.step_timeout_s:.0f}s", now)
                        return []
                    return self._creates(live, missing, self.step_index)
                problem = None if aborting else self._batch_problem(new)
                if problem:
                    self._pause(problem, now)
                    return []
                if not all(i.settled for i in new):
                    if not aborting and self._timed_out(now):
                        self._pause(f"step {self.step_index} did not converge within {self.step_timeout_s:.0f}s", now)
                    return []
                self.phase = REMOVE

            extra_old = len(old) - exp_old
            extra_new = len(new) - exp_new_after
            if extra_old > 0 or extra_new > 0:
                victims = _removal_order(old)[: max(0, extra_old)]
                victims += _removal_order(new, newest_first=True)[: max(0, extra_new)]
                return self._terminates(victims, reason="rollout")

            step = plan.steps[self.step_index]
            self._emit(
                EventKind.ROLLOUT_STEP,
                f"step {self.step_index + 1}/{len(plan.steps)} done (+{step.add}/-{step.remove})",
                plan_id=plan.id,
                step=self.step_index,
            )
            self.step_index += 1
            self.phase = ADD
            self.step_started_at = now
        return []

    def _finish(self, live: list[Instance], now: float) -> list[Intent]:
        assert self.plan is not None
        plan = self.plan
        aborting = self.state is RolloutState.ABORTING
        old, new = self._split(live)

        # Instances lost after their step completed are re-created here.
        if old or len(new) != plan.target_replicas:
            out: list[Intent] = self._terminates(_removal_order(old), reason="rollout")
            surplus = len(new) - plan.target_replicas
            if surplus > 0:
                out += self._terminates(_removal_order(new, newest_first=True)[:surplus], reason="rollout")
            elif surplus < 0:
                out += self._creates(live, -surplus, len(plan.steps))
            if not aborting and self._timed_out(now):
                self._pause("rollout did not converge within the step timeout", now)
                return []
            return out

        if not all(i.status is HealthStatus.READY for i in new):
            if not aborting and self._timed_out(now):
                self._pause("instances not Ready within the step timeout", now)
            return []

        w = self.workload
        w.revision = plan.target_revision
        w.target_replicas = plan.target_replicas
        w.current_replicas = len(new)
        self.stable_replicas = plan.target_replicas
        self.state = RolloutState.IDLE
        self.plan = None
        self._expect = []
        if plan.rollback:
            self._emit(
                EventKind.ROLLBACK_COMPLETED,
                f"rolled back to {plan.target_revision} x{plan.target_replicas}",
                level="WARN",
                plan_id=plan.id,
                rolled_back_from=self.rolled_back_from,
            )
        else:
            self.last_known_good = plan.target_revision
            self.rolled_back_from = None
            self._emit(
                EventKind.ROLLOUT_COMPLETED,
                f"{plan.target_revision} x{plan.target_replicas} fully rolled out",
                plan_id=plan.id,
            )
        return []
