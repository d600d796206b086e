import time

import pytest

from arc.errors import LifecycleError, UnknownWorkload
from arc.events import EventKind
from arc.models import CreateIntent, RolloutState, TerminateIntent

from conftest import seed, workload


def test_scales_up_on_high_utilization(make_reconciler, cluster):
    rec = make_reconciler()
    rec.register(workload(replicas=3, target_utilization=60.0))
    seed(cluster, "web", "v1", 3)
    cluster.set_utilization("web", 90.0)

    for t in range(4):
        rec.tick_once(now=float(t))

    status = rec.status("web")
    assert status["target_replicas"] == 5
    assert status["last_decision"]["raw"] >= 5
    assert len(cluster.snapshot("web")) == 5
    decisions = rec.events.recent(kind=EventKind.SCALE_DECISION)
    # Later recommendations fall inside the cooldown.
    assert len(decisions) == 1
    assert decisions[0].data["desired"] == 5


def test_cooldown_spaces_out_scale_events(make_reconciler, cluster):
    rec = make_reconciler(cooldown_s=60, sample_interval_s=1)
    rec.register(workload(replicas=2, target_utilization=50.0))
    seed(cluster, "web", "v1", 2)
    cluster.set_utilization("web", 100.0)

    rec.tick_once(now=0)
    assert rec.runtime.get("web").workload.target_replicas == 4

    for t in range(1, 30):
        rec.tick_once(now=float(t))
    assert len(rec.events.recent(kind=EventKind.SCALE_DECISION)) == 1

    rec.tick_once(now=60)
    assert len(rec.events.recent(kind=EventKind.SCALE_DECISION)) == 2


def test_failing_workload_does_not_block_others(make_reconciler, cluster):
    class _Metrics:
        def query(self, workload_id, metric_name):
            if workload_id == "bad":
                raise RuntimeError("metrics backend exploded")
            return cluster.query(workload_id, metric_name)

    rec = make_reconciler(metrics=_Metrics())
    rec.register(workload("bad", replicas=2))
    rec.register(workload("good", replicas=2, target_utilization=50.0))
    seed(cluster, "bad", "v1", 2)
    seed(cluster, "good", "v1", 2)
    cluster.set_utilization("good", 100.0)

    assert rec.tick_once(now=0) == {"bad": True, "good": True}

    assert EventKind.RECONCILE_ERROR in rec.events.kinds("bad")
    assert EventKind.RECONCILE_ERROR not in rec.events.kinds("good")
    assert rec.status("good")["target_replicas"] == 4


def test_metrics_stale_holds_and_raises_condition(make_reconciler, cluster):
    rec = make_reconciler()
    rec.register(workload(replicas=2))
    seed(cluster, "web", "v1", 2)

    for t in (0, 15, 30):
        rec.tick_once(now=float(t))

    status = rec.status("web")
    assert status["metrics"]["stale"] is True
    assert status["target_replicas"] == 2
    assert [c["type"] for c in status["conditions"]] == ["MetricsStale"]
    assert rec.events.kinds("web").count(EventKind.METRICS_STALE) == 1

    cluster.set_utilization("web", 80.0)
    rec.tick_once(now=45)

    status = rec.status("web")
    assert status["metrics"]["stale"] is False
    assert status["conditions"] == []
    assert EventKind.METRICS_RECOVERED in rec.events.kinds("web")
    assert EventKind.CONDITION_CLEARED in rec.events.kinds("web")


def test_transient_create_failures_are_retried_with_backoff(make_reconciler, cluster):
    sleeps = []
    rec = make_reconciler(sleeps=sleeps)
    rec.register(workload(replicas=1))
    cluster.fail_next_creates = 2

    rec.tick_once(now=0)

    assert cluster.create_calls == 3
    assert len(cluster.snapshot("web")) == 1
    assert len(sleeps) == 2
    assert 0.8 <= sleeps[0] <= 1.2
    assert 1.6 <= sleeps[1] <= 2.4
    assert EventKind.INTENT_FAILED not in rec.events.kinds("web")


def test_exhausted_retries_are_rederived_next_tick(make_reconciler, cluster):
    rec = make_reconciler(apply_attempts=2)
    rec.register(workload(replicas=1))
    cluster.fail_next_creates = 2

    rec.tick_once(now=0)
    assert len(cluster.snapshot("web")) == 0
    assert EventKind.INTENT_FAILED in rec.events.kinds("web")
    assert "ApplyFailing" in [c["type"] for c in rec.status("web")["conditions"]]

    rec.tick_once(now=1)
    assert len(cluster.snapshot("web")) == 1
    assert "ApplyFailing" not in [c["type"] for c in rec.status("web")["conditions"]]


def test_intent_is_abandoned_after_max_failures(make_reconciler, cluster):
    rec = make_reconciler(apply_attempts=1, max_apply_failures=2)
    rec.register(workload(replicas=1))
    cluster.fail_next_creates = 10

    for t in range(4):
        rec.tick_once(now=float(t))

    assert EventKind.INTENT_ABANDONED in rec.events.kinds("web")
    # Abandoned intents are not retried while the same plan is active.
    assert cluster.create_calls == 2


def test_create_retried_after_unknown_outcome_is_not_duplicated(make_reconciler, cluster):
    class _LostAck:
        """Creates the instance, then reports a timeout for the first call."""

        def __init__(self):
            self.failed = False

        def create(self, workload_id, revision, key):
            iid = cluster.create(workload_id, revision, key)
            if not self.failed:
                self.failed = True
                raise LifecycleError("timed out waiting for ack")
            return iid

        def terminate(self, instance_id):
            return cluster.terminate(instance_id)

        def list(self, workload_id):
            return cluster.list(workload_id)

    rec = make_reconciler()
    rec.lifecycle = _LostAck()
    rec.register(workload(replicas=2))

    for t in range(6):
        rec.tick_once(now=float(t))

    assert len(cluster.snapshot("web")) == 2
    assert rec.runtime.get("web").machine.state is RolloutState.IDLE


def test_duplicate_intents_converge_to_same_instance_set(make_reconciler, cluster):
    rec = make_reconciler()
    rec.register(workload(replicas=1))
    seed(cluster, "web", "v1", 1)
    rt = rec.runtime.get("web")
    victim = cluster.list("web")[0].id

    create = CreateIntent("web", "v1", "manual-0")
    terminate = TerminateIntent("web", victim, reason="test")
    rec._apply(rt, [create, create, terminate, terminate])
    once = cluster.snapshot("web")
    rec._apply(rt, [create, terminate])

    assert cluster.snapshot("web") == once
    assert len(once) == 1


def test_tick_in_flight_makes_next_tick_a_noop(make_reconciler, cluster):
    rec = make_reconciler()
    rec.register(workload(replicas=1))
    rt = rec.runtime.get("web")

    assert rt.lock.acquire(blocking=False)
    try:
        assert rec.reconcile("web", 0.0) is False
    finally:
        rt.lock.release()

    assert EventKind.TICK_SKIPPED in rec.events.kinds("web")
    assert cluster.create_calls == 0
    assert rec.reconcile("web", 1.0) is True


def test_failed_liveness_instance_is_replaced(make_reconciler, cluster):
    rec = make_reconciler(failure_threshold=2)
    rec.register(workload(replicas=2))
    ids = seed(cluster, "web", "v1", 2)
    rec.tick_once(now=0)

    cluster.set_health(ids[0], live=False)
    for t in range(1, 6):
        rec.tick_once(now=float(t))

    remaining = {iid for iid, _ in cluster.snapshot("web")}
    assert ids[0] not in remaining
    assert ids[1] in remaining
    assert len(remaining) == 2
    assert EventKind.INSTANCE_TERMINATING in rec.events.kinds("web")


def test_unready_instance_is_kept_but_not_routable(make_reconciler, cluster):
    rec = make_reconciler(failure_threshold=1)
    rec.register(workload(replicas=2))
    ids = seed(cluster, "web", "v1", 2)
    rec.tick_once(now=0)

    cluster.set_health(ids[0], ready=False)
    rec.tick_once(now=1)

    statuses = {i["id"]: i["status"] for i in rec.status("web")["instances"]}
    assert statuses == {ids[0]: "Unhealthy", ids[1]: "Ready"}
    assert cluster.terminate_calls == 0

    cluster.set_health(ids[0], ready=True)
    rec.tick_once(now=2)
    assert EventKind.INSTANCE_RECOVERED in rec.events.kinds("web")


def test_bounds_change_clamps_target(make_reconciler, cluster):
    rec = make_reconciler()
    rec.register(workload(replicas=4, max_replicas=6))
    seed(cluster, "web", "v1", 4)
    rec.tick_once(now=0)

    rec.update_bounds("web", max_replicas=2, max_unavailable=1)
    for t in range(1, 6):
        rec.tick_once(now=float(t))

    w = rec.runtime.get("web").workload
    assert (w.max_replicas, w.target_replicas) == (2, 2)
    assert len(cluster.snapshot("web")) == 2
    assert EventKind.WORKLOAD_UPDATED in rec.events.kinds("web")


def test_invalid_bounds_change_is_rejected_without_side_effects(make_reconciler, cluster):
    rec = make_reconciler()
    rec.register(workload(replicas=2))

    rec.update_bounds("web", min_replicas=5, max_replicas=3)
    rec.tick_once(now=0)

    w = rec.runtime.get("web").workload
    assert (w.min_replicas, w.max_replicas) == (1, 10)
    assert EventKind.RECONCILE_ERROR in rec.events.kinds("web")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"wid": "Bad_Name"},
        {"revision": "V 1"},
        {"min_replicas": 5, "max_replicas": 2},
        {"max_surge": 0, "max_unavailable": 0},
        {"target_utilization": 0},
    ],
)
def test_register_rejects_invalid_workloads(make_reconciler, kwargs):
    rec = make_reconciler()
    with pytest.raises(ValueError):
        rec.register(workload(**kwargs))


def test_register_twice_and_unknown_workload(make_reconciler):
    rec = make_reconciler()
    rec.register(workload())
    with pytest.raises(ValueError):
        rec.register(workload())
    with pytest.raises(UnknownWorkload):
        rec.status("nope")


def test_remove_leaves_instances_running(make_reconciler, cluster):
    rec = make_reconciler()
    rec.register(workload(replicas=2))
    seed(cluster, "web", "v1", 2)
    rec.tick_once(now=0)

    rec.remove("web")

    assert "web" not in rec.runtime
    assert len(cluster.snapshot("web")) == 2
    assert rec.tick_once(now=1) == {}


def test_background_loop_converges(make_reconciler, cluster):
    rec = make_reconciler(tick_interval_s=0.05)
    rec.register(workload(replicas=2))
    rec.start()
    try:
        for _ in range(200):
            if rec.runtime.get("web").machine.state is RolloutState.IDLE and len(cluster.snapshot("web")) == 2:
                break
            time.sleep(0.02)
    finally:
        rec.stop()

    assert len(cluster.snapshot("web")) == 2


def test_superseded_plan_does_not_leave_apply_failing_behind(make_reconciler, cluster):
    rec = make_reconciler(apply_attempts=1)
    rec.register(workload(replicas=2))
    seed(cluster, "web", "v1", 2)
    rec.tick_once(now=0)

    cluster.fail_next_creates = 1
    rec.submit_rollout("web", "v2")
    rec.tick_once(now=1)
    assert "ApplyFailing" in [c["type"] for c in rec.status("web")["conditions"]]

    rec.submit_rollout("web", "v3")
    rec.tick_once(now=2)
    assert "ApplyFailing" not in [c["type"] for c in rec.status("web")["conditions"]]
    assert rec.runtime.get("web").apply_failures == {}

    for t in range(3, 40):
        rec.tick_once(now=float(t))

    status = rec.status("web")
    assert status["revision"] == "v3"
    assert status["rollout"]["state"] == "Idle"
    assert "ApplyFailing" not in [c["type"] for c in status["conditions"]]
    assert EventKind.CONDITION_CLEARED in rec.events.kinds("web")


def test_scale_decision_supersedes_paused_rollout(make_reconciler, cluster):
    rec = make_reconciler(step_timeout_s=30, pause_timeout_s=600)
    rec.register(workload(replicas=2, max_replicas=5, target_utilization=50.0))
    seed(cluster, "web", "v1", 2)
    cluster.set_utilization("web", 50.0)
    rec.tick_once(now=0)
    cluster.bad_revisions.add("v2")

    rec.submit_rollout("web", "v2")
    machine = rec.runtime.get("web").machine
    for t in (1, 2, 10, 20, 31):
        rec.tick_once(now=float(t))
    assert machine.state is RolloutState.PAUSED
    assert EventKind.SCALE_DECISION not in rec.events.kinds("web")

    cluster.set_utilization("web", 100.0)
    rec.tick_once(now=40)

    kinds = rec.events.kinds("web")
    assert EventKind.SCALE_DECISION in kinds
    assert EventKind.ROLLOUT_SUPERSEDED in kinds
    assert machine.state is RolloutState.ROLLING_OUT
    assert machine.paused_at is None
    assert (machine.target_revision, machine.plan.target_replicas) == ("v2", 3)
    assert rec.runtime.get("web").workload.target_replicas == 3


def test_no_scale_decisions_while_rolling_back(make_reconciler, cluster):
    rec = make_reconciler(step_timeout_s=30, pause_timeout_s=60, sample_interval_s=1)
    rec.register(workload(replicas=2, max_replicas=5, target_utilization=50.0))
    seed(cluster, "web", "v1", 2)
    cluster.set_utilization("web", 50.0)
    rec.tick_once(now=0)
    cluster.bad_revisions.add("v2")

    rec.submit_rollout("web", "v2")
    machine = rec.runtime.get("web").machine
    for t in (1, 2, 10, 20, 31, 91):
        rec.tick_once(now=float(t))
    assert machine.state is RolloutState.ABORTING

    cluster.set_utilization("web", 100.0)
    rec.tick_once(now=92)
    assert EventKind.SCALE_DECISION not in rec.events.kinds("web")
    assert machine.state is RolloutState.IDLE
    assert rec.status("web")["revision"] == "v1"

    rec.tick_once(now=93)
    assert rec.events.kinds("web").count(EventKind.SCALE_DECISION) == 1
