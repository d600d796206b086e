from __future__ import annotations

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from threading import BoundedSemaphore, Event, Lock, Thread
from typing import Any, Callable

from . import db
from .alerts import condition_alert
from .calculator import decide
from .errors import InvariantViolation, SourceUnavailable, UnknownWorkload
from .events import EventKind, EventStream
from .health import HealthGate, ProbeExecutor, routable
from .lifecycle import InstanceLifecycle, validate_revision, validate_workload_id
from .metrics import MetricsSampler, MetricsSource, SampleWindow
from .models import (
    Condition,
    ConditionType,
    CreateIntent,
    HealthStatus,
    Instance,
    Intent,
    RolloutState,
    TerminateIntent,
    Workload,
    intent_key,
)
from .retry import TRANSIENT_ERRORS, apply_retrying
from .rollout import RolloutMachine
from .runtime import BoundsChanged, PlanEvent, RolloutRequested, RuntimeState, WorkloadRuntime
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class Reconciler:
    """Continuously reconciles each workload's desired state with what is running.

    Every workload gets its own reconciliation task per tick; a tick that is
    still running when the next one is due makes the new one a no-op
    (single-flight). External calls from all tasks share one bounded pool.
    """

    def __init__(
        self,
        lifecycle: InstanceLifecycle,
        metrics: MetricsSource,
        probes: ProbeExecutor,
        events: EventStream | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        persist: bool = False,
    ) -> None:
        self.settings = settings or default_settings
        self.lifecycle = lifecycle
        self.metrics = metrics
        self.events = events or EventStream(buffer_size=self.settings.event_buffer_size)
        self.gate = HealthGate(
            probes,
            failure_threshold=self.settings.failure_threshold,
            success_threshold=self.settings.success_threshold,
        )
        self.runtime = RuntimeState()
        self.persist = persist
        self._clock = clock
        self._retrying = apply_retrying(
            attempts=self.settings.apply_attempts,
            base=self.settings.backoff_base_s,
            cap=self.settings.backoff_cap_s,
            jitter=self.settings.backoff_jitter,
            sleep=sleep,
            rng=rng,
        )
        self._pool = BoundedSemaphore(max(1, self.settings.worker_pool_size))
        self._stop = Event()
        self._wake = Event()
        self._signal_lock = Lock()
        self._signaled: set[str] = set()
        self._thr: Thread | None = None
        self._executor: ThreadPoolExecutor | None = None

    # -- registration / plan source

    def register(self, workload: Workload) -> Workload:
        validate_workload_id(workload.id)
        validate_revision(workload.revision)
        if workload.min_replicas < 0 or workload.min_replicas > workload.max_replicas:
            raise ValueError("min_replicas must be between 0 and max_replicas")
        if workload.target_utilization <= 0:
            raise ValueError("target_utilization must be positive")
        if workload.max_surge < 0 or workload.max_unavailable < 0:
            raise ValueError("max_surge and max_unavailable must be non-negative")
        if workload.max_surge == 0 and workload.max_unavailable == 0:
            raise ValueError("max_surge and max_unavailable cannot both be 0")
        workload.target_replicas = workload.clamp(workload.target_replicas)

        s = self.settings
        rt = WorkloadRuntime(
            workload=workload,
            sampler=MetricsSampler(
                workload.id,
                self.metrics,
                metric_name=s.metric_name,
                interval_s=s.sample_interval_s,
                stale_threshold=s.stale_threshold,
                window=SampleWindow(max_samples=s.window_max_samples, max_age_s=s.window_max_age_s),
            ),
            machine=RolloutMachine(
                workload,
                events=self.events,
                step_timeout_s=s.step_timeout_s,
                pause_timeout_s=s.pause_timeout_s,
                pause_unhealthy_threshold=s.pause_unhealthy_threshold,
            ),
        )
        self.runtime.add(rt)
        if self.persist:
            db.save_workload(workload)
        self.events.emit(
            workload.id,
            EventKind.WORKLOAD_REGISTERED,
            f"registered {workload.revision} x{workload.target_replicas} "
            f"[{workload.min_replicas}, {workload.max_replicas}] @ {workload.target_utilization:.0f}%",
        )
        self.signal(workload.id)
        return workload

    def remove(self, workload_id: str) -> None:
        """Stop managing a workload. Its instances are left running."""
        rt = self.runtime.remove(workload_id)
        with rt.lock:
            self.gate.forget(i.id for i in rt.instances)
        if self.persist:
            db.delete_workload(workload_id)
        self.events.emit(workload_id, EventKind.WORKLOAD_REMOVED, "workload no longer managed")

    def submit_rollout(self, workload_id: str, revision: str, replicas: int | None = None) -> None:
        validate_revision(revision)
        self.runtime.get(workload_id).push(RolloutRequested(revision=revision, replicas=replicas))
        self.signal(workload_id)

    def update_bounds(self, workload_id: str, **changes: Any) -> None:
        self.runtime.get(workload_id).push(BoundsChanged(**changes))
        self.signal(workload_id)

    def signal(self, workload_id: str) -> None:
        with self._signal_lock:
            self._signaled.add(workload_id)
        self._wake.set()

    # -- loop

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, self.settings.max_concurrent_ticks),
            thread_name_prefix="arc-reconcile",
        )
        self._thr = Thread(target=self._loop, name="arc-loop", daemon=True)
        self._thr.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thr:
            self._thr.join(timeout=timeout)
        if self._executor:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _loop(self) -> None:
        logger.info("Reconciler started")
        next_full = 0.0
        while not self._stop.is_set():
            now = self._clock()
            if now >= next_full:
                targets = self.runtime.ids()
                next_full = now + max(0.1, self.settings.tick_interval_s)
                with self._signal_lock:
                    self._signaled.clear()
            else:
                with self._signal_lock:
                    targets = sorted(self._signaled)
                    self._signaled.clear()
            executor = self._executor
            if executor is None:
                return
            for wid in targets:
                try:
                    executor.submit(self._run_task, wid)
                except RuntimeError:
                    # Executor shut down while stopping.
                    return
            self._wake.wait(timeout=max(0.0, next_full - self._clock()))
            self._wake.clear()
        logger.info("Reconciler stopped")

    def _run_task(self, workload_id: str) -> None:
        try:
            self.reconcile(workload_id, self._clock())
        except UnknownWorkload:
            return

    def tick_once(self, now: float | None = None) -> dict[str, bool]:
        """Reconcile every workload once, sequentially, in the calling thread."""
        now = self._clock() if now is None else now
        out: dict[str, bool] = {}
        for wid in self.runtime.ids():
            try:
                out[wid] = self.reconcile(wid, now)
            except UnknownWorkload:
                continue
        return out

    def reconcile(self, workload_id: str, now: float) -> bool:
        """Run one tick for one workload. Returns False when skipped (tick in flight)."""
        rt = self.runtime.get(workload_id)
        if not rt.lock.acquire(blocking=False):
            self.events.emit(workload_id, EventKind.TICK_SKIPPED, "previous tick still running", level="DEBUG")
            return False
        try:
            self._tick(rt, now)
        except Exception as e:
            logger.exception("Reconcile of %s failed", workload_id)
            self.events.emit(
                workload_id,
                EventKind.RECONCILE_ERROR,
                f"tick failed: {type(e).__name__}: {e}",
                level="ERROR",
            )
        finally:
            rt.last_tick_at = now
            rt.lock.release()
        return True

    # -- one tick

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        with self._pool:
            return fn(*args)

    def _tick(self, rt: WorkloadRuntime, now: float) -> None:
        w = rt.workload
        committed = (w.revision, w.target_replicas)
        instances = self._observe(rt)
        self._handle_plan_events(rt, instances, now)
        ready = len(routable(instances))
        self._sample(rt, ready, now)
        self._autoscale(rt, instances, ready, now)

        intents = rt.machine.advance(instances, now)
        plan_id = rt.machine.plan.id if rt.machine.plan else None
        if plan_id != rt.plan_id:
            rt.plan_id = plan_id
            rt.abandoned.clear()
            rt.apply_failures.clear()
        self._apply(rt, intents)
        w.current_replicas = sum(1 for i in instances if i.live)
        self._sync_conditions(rt)
        if self.persist and (w.revision, w.target_replicas) != committed:
            db.save_workload(w)

    def _observe(self, rt: WorkloadRuntime) -> list[Instance]:
        listed: list[Instance] = self._call(self.lifecycle.list, rt.workload.id)
        out: list[Instance] = []
        for inst in listed:
            before = self.gate.status(inst.id)
            if inst.status is HealthStatus.TERMINATING:
                status = self.gate.mark_terminating(inst.id)
            else:
                status = self._call(self.gate.evaluate, inst)
            inst.status = status
            self._health_event(rt, inst, before)
            out.append(inst)
        current = {i.id for i in out}
        self.gate.forget(i.id for i in rt.instances if i.id not in current)
        rt.instances = out
        return out

    def _health_event(self, rt: WorkloadRuntime, inst: Instance, before: HealthStatus) -> None:
        after = inst.status
        if after is before:
            return
        wid = rt.workload.id
        if after is HealthStatus.TERMINATING:
            self.events.emit(wid, EventKind.INSTANCE_TERMINATING, f"{inst.id} failed liveness; replacing", level="WARN", instance=inst.id)
        elif after is HealthStatus.UNHEALTHY:
            self.events.emit(wid, EventKind.INSTANCE_UNHEALTHY, f"{inst.id} failed readiness", level="WARN", instance=inst.id)
        elif after is HealthStatus.READY and before is HealthStatus.UNHEALTHY:
            self.events.emit(wid, EventKind.INSTANCE_RECOVERED, f"{inst.id} ready again", instance=inst.id)
        elif after is HealthStatus.READY:
            self.events.emit(wid, EventKind.INSTANCE_READY, f"{inst.id} ready", level="DEBUG", instance=inst.id)

    def _handle_plan_events(self, rt: WorkloadRuntime, instances: list[Instance], now: float) -> None:
        w = rt.workload
        for ev in rt.drain():
            try:
                self._handle_plan_event(rt, ev, instances, now)
            except ValueError as e:
                self.events.emit(w.id, EventKind.RECONCILE_ERROR, f"rejected {type(ev).__name__}: {e}", level="ERROR")

    def _handle_plan_event(self, rt: WorkloadRuntime, ev: PlanEvent, instances: list[Instance], now: float) -> None:
        w = rt.workload
        machine = rt.machine
        if isinstance(ev, RolloutRequested):
            replicas = w.target_replicas if ev.replicas is None else ev.replicas
            plan = machine.submit(ev.revision, replicas, instances, now)
            w.target_replicas = plan.target_replicas
        elif isinstance(ev, BoundsChanged):
            min_r = w.min_replicas if ev.min_replicas is None else ev.min_replicas
            max_r = w.max_replicas if ev.max_replicas is None else ev.max_replicas
            surge = w.max_surge if ev.max_surge is None else ev.max_surge
            unavailable = w.max_unavailable if ev.max_unavailable is None else ev.max_unavailable
            if min_r < 0 or min_r > max_r:
                raise ValueError("min_replicas must be between 0 and max_replicas")
            if surge < 0 or unavailable < 0 or (surge == 0 and unavailable == 0):
                raise ValueError("invalid max_surge / max_unavailable")
            if ev.target_utilization is not None and ev.target_utilization <= 0:
                raise ValueError("target_utilization must be positive")
            w.min_replicas, w.max_replicas = min_r, max_r
            w.max_surge, w.max_unavailable = surge, unavailable
            if ev.target_utilization is not None:
                w.target_utilization = ev.target_utilization
            clamped = w.clamp(w.target_replicas)
            if clamped != w.target_replicas:
                w.target_replicas = clamped
                if machine.state in {RolloutState.ROLLING_OUT, RolloutState.PAUSED}:
                    machine.submit(machine.target_revision, clamped, instances, now)
            if self.persist:
                db.save_workload(w)
            self.events.emit(
                w.id,
                EventKind.WORKLOAD_UPDATED,
                f"bounds [{w.min_replicas}, {w.max_replicas}] @ {w.target_utilization:.0f}%, "
                f"surge {w.max_surge} / unavailable {w.max_unavailable}",
            )
        else:
            raise TypeError(f"unknown plan event: {type(ev).__name__}")

    def _sample(self, rt: WorkloadRuntime, ready: int, now: float) -> None:
        sampler = rt.sampler
        wid = rt.workload.id
        if not sampler.due(now):
            return
        try:
            self._call(sampler.sample, ready, now)
        except SourceUnavailable as e:
            self.events.emit(wid, EventKind.SAMPLE_MISSED, str(e), level="DEBUG", misses=sampler.consecutive_failures)
            if sampler.stale and not rt.was_stale:
                rt.was_stale = True
                self.events.emit(
                    wid,
                    EventKind.METRICS_STALE,
                    f"{sampler.consecutive_failures} consecutive samples missed; holding replica count",
                    level="WARN",
                )
            return
        if rt.was_stale:
            rt.was_stale = False
            self.events.emit(wid, EventKind.METRICS_RECOVERED, "metrics source answering again")

    def _autoscale(self, rt: WorkloadRuntime, instances: list[Instance], ready: int, now: float) -> None:
        w = rt.workload
        machine = rt.machine
        if machine.state is RolloutState.ABORTING:
            return

        decision = decide(
            w,
            rt.sampler.window.snapshot(),
            ready,
            rt.recommendations,
            now=now,
            stabilization_window_s=self.settings.stabilization_window_s,
            stale=rt.sampler.stale,
        )
        rt.recommendations = decision.recommendations
        rt.last_decision = decision

        if decision.invariant_violation:
            violation = InvariantViolation(decision.invariant_violation)
            self.events.emit(w.id, EventKind.INVARIANT_VIOLATION, f"{violation}; clamped", level="ERROR")
            w.target_replicas = w.clamp(w.target_replicas)

        if decision.desired == w.target_replicas:
            return
        if rt.last_scale_at is not None and now - rt.last_scale_at < self.settings.cooldown_s:
            logger.debug("%s: scale to %s held by cooldown", w.id, decision.desired)
            return

        previous = w.target_replicas
        w.target_replicas = decision.desired
        rt.last_scale_at = now
        self.events.emit(
            w.id,
            EventKind.SCALE_DECISION,
            f"{decision.action}: {previous} -> {decision.desired} ({decision.reason})",
            previous=previous,
            desired=decision.desired,
            raw=decision.raw,
            average=decision.average,
            ready=ready,
        )
        machine.submit(machine.target_revision, decision.desired, instances, now)

    def _apply_one(self, intent: Intent) -> None:
        if isinstance(intent, CreateIntent):
            self._call(self.lifecycle.create, intent.workload_id, intent.revision, intent.key)
        elif isinstance(intent, TerminateIntent):
            self._call(self.lifecycle.terminate, intent.instance_id)
        else:
            raise TypeError(f"unknown intent type: {type(intent).__name__}")

    def _apply(self, rt: WorkloadRuntime, intents: list[Intent]) -> None:
        wid = rt.workload.id
        limit = self.settings.max_apply_failures
        seen: set[str] = set()
        for intent in intents:
            key = intent_key(intent)
            if key in seen or key in rt.abandoned:
                continue
            seen.add(key)
            try:
                self._retrying(self._apply_one, intent)
            except TRANSIENT_ERRORS as e:
                failures = rt.apply_failures.get(key, 0) + 1
                rt.apply_failures[key] = failures
                self.events.emit(wid, EventKind.INTENT_FAILED, f"{key}: {e}", level="WARN", failures=failures)
                if limit is not None and failures >= limit:
                    rt.abandoned.add(key)
                    rt.apply_failures.pop(key, None)
                    self.events.emit(wid, EventKind.INTENT_ABANDONED, f"{key} gave up after {failures} failed ticks", level="ERROR")
                continue
            rt.apply_failures.pop(key, None)
            self.events.emit(wid, EventKind.INTENT_APPLIED, key, level="DEBUG")
        # Intents no longer derived are not failing anymore.
        for key in list(rt.apply_failures):
            if key not in seen:
                rt.apply_failures.pop(key)

    def _sync_conditions(self, rt: WorkloadRuntime) -> None:
        machine = rt.machine
        wanted: dict[ConditionType, str] = {}
        if rt.sampler.stale:
            wanted[ConditionType.METRICS_STALE] = f"{rt.sampler.consecutive_failures} consecutive samples missed"
        if machine.state is RolloutState.PAUSED:
            wanted[ConditionType.ROLLOUT_PAUSED] = machine.pause_reason
        if machine.state is RolloutState.ABORTING:
            wanted[ConditionType.ROLLOUT_ABORTING] = f"rolling back to {machine.last_known_good}"
        if machine.rolled_back_from:
            wanted[ConditionType.ROLLED_BACK] = f"{machine.rolled_back_from} rolled back to {machine.last_known_good}"
        if rt.apply_failures:
            wanted[ConditionType.APPLY_FAILING] = f"{len(rt.apply_failures)} intent(s) failing"

        wid = rt.workload.id
        for ctype in list(rt.conditions):
            if ctype not in wanted:
                cond = rt.conditions.pop(ctype)
                self.events.emit(wid, EventKind.CONDITION_CLEARED, ctype.value, condition=ctype.value)
                condition_alert(wid, ctype.value, cond.reason, raised=False)
        for ctype, reason in wanted.items():
            if ctype in rt.conditions:
                rt.conditions[ctype].reason = reason
                continue
            rt.conditions[ctype] = Condition(type=ctype, reason=reason)
            self.events.emit(wid, EventKind.CONDITION_RAISED, f"{ctype.value}: {reason}", level="WARN", condition=ctype.value)
            condition_alert(wid, ctype.value, reason, raised=True)

    # -- views

    def status(self, workload_id: str) -> dict[str, Any]:
        rt = self.runtime.get(workload_id)
        w = rt.workload
        d = rt.last_decision
        return {
            "id": w.id,
            "revision": w.revision,
            "current_replicas": w.current_replicas,
            "target_replicas": w.target_replicas,
            "min_replicas": w.min_replicas,
            "max_replicas": w.max_replicas,
            "target_utilization": w.target_utilization,
            "max_surge": w.max_surge,
            "max_unavailable": w.max_unavailable,
            "rollout": rt.machine.describe(),
            "metrics": {
                "stale": rt.sampler.stale,
                "consecutive_failures": rt.sampler.consecutive_failures,
                "window": rt.sampler.window.values(),
            },
            "last_decision": None
            if d is None
            else {"desired": d.desired, "raw": d.raw, "action": d.action, "reason": d.reason, "average": d.average},
            "conditions": [
                {"type": c.type.value, "reason": c.reason, "since": c.since} for c in rt.conditions.values()
            ],
            "instances": [
                {"id": i.id, "revision": i.revision, "status": i.status.value, "key": i.key} for i in rt.instances
            ],
        }

    def list_status(self) -> list[dict[str, Any]]:
        out = []
        for wid in self.runtime.ids():
            try:
                out.append(self.status(wid))
            except UnknownWorkload:
                continue
        return out
