import httpx
import pytest

from arc.errors import ProbeTimeout
from arc.health import HealthGate, HttpProbeExecutor, ProbeTracker, routable
from arc.models import HealthStatus, Instance


def _ready_tracker(**kw):
    t = ProbeTracker(**kw)
    t.observe(True, True)
    assert t.status is HealthStatus.READY
    return t


def test_three_consecutive_readiness_failures_make_unhealthy():
    t = _ready_tracker(failure_threshold=3)

    assert t.observe(True, False) is HealthStatus.READY
    assert t.observe(True, False) is HealthStatus.READY
    assert t.observe(True, False) is HealthStatus.UNHEALTHY


def test_interleaved_success_resets_failure_count():
    t = _ready_tracker(failure_threshold=3)

    t.observe(True, False)
    t.observe(True, False)
    t.observe(True, True)
    t.observe(True, False)
    assert t.observe(True, False) is HealthStatus.READY


def test_unhealthy_recovers_after_success_threshold():
    t = ProbeTracker(failure_threshold=1, success_threshold=2)
    assert t.observe(True, True) is HealthStatus.STARTING
    assert t.observe(True, True) is HealthStatus.READY
    assert t.observe(True, False) is HealthStatus.UNHEALTHY

    assert t.observe(True, True) is HealthStatus.UNHEALTHY
    assert t.observe(True, True) is HealthStatus.READY


def test_starting_stays_starting_until_ready():
    t = ProbeTracker(failure_threshold=3)
    for _ in range(5):
        assert t.observe(True, False) is HealthStatus.STARTING
    assert t.observe(True, True) is HealthStatus.READY


def test_liveness_failures_mark_terminating_for_good():
    t = _ready_tracker(failure_threshold=2)

    assert t.observe(False, True) is HealthStatus.READY
    assert t.observe(False, True) is HealthStatus.TERMINATING
    # Terminating is terminal.
    assert t.observe(True, True) is HealthStatus.TERMINATING


class _Probes:
    def __init__(self):
        self.live = True
        self.ready = True
        self.timeout = False

    def check_liveness(self, instance):
        return self.live

    def check_readiness(self, instance):
        if self.timeout:
            raise ProbeTimeout("slow")
        return self.ready


def test_gate_tracks_per_instance_and_counts_timeouts_as_failures():
    probes = _Probes()
    gate = HealthGate(probes, failure_threshold=2)
    a = Instance("a", "web", "v1")

    assert gate.status("a") is HealthStatus.UNKNOWN
    assert gate.evaluate(a) is HealthStatus.READY

    probes.timeout = True
    gate.evaluate(a)
    assert gate.evaluate(a) is HealthStatus.UNHEALTHY
    assert gate.status("b") is HealthStatus.UNKNOWN

    gate.forget(["a"])
    assert gate.status("a") is HealthStatus.UNKNOWN


def test_gate_mark_terminating_sticks():
    probes = _Probes()
    gate = HealthGate(probes)
    a = Instance("a", "web", "v1")

    gate.mark_terminating("a")
    assert gate.evaluate(a) is HealthStatus.TERMINATING


def test_routable_only_keeps_ready_instances():
    instances = [
        Instance("a", "web", "v1", HealthStatus.READY),
        Instance("b", "web", "v1", HealthStatus.UNHEALTHY),
        Instance("c", "web", "v1", HealthStatus.STARTING),
        Instance("d", "web", "v1", HealthStatus.TERMINATING),
    ]
    assert [i.id for i in routable(instances)] == ["a"]


def _executor(handler):
    return HttpProbeExecutor(transport=httpx.MockTransport(handler))


def test_http_probe_ok_and_failure():
    def handler(request):
        if request.url.path == "/healthz":
            return httpx.Response(200, json={"status": "healthy"})
        return httpx.Response(503, json={"detail": "Not ready"})

    probes = _executor(handler)
    inst = Instance("a", "web", "v1", address="web-a:8000")

    assert probes.check_liveness(inst) is True
    assert probes.check_readiness(inst) is False


@pytest.mark.parametrize(
    "response,expected",
    [
        (httpx.Response(200), True),
        (httpx.Response(200, json={"status": "ready"}), True),
        (httpx.Response(200, json={"status": "degraded"}), False),
        (httpx.Response(200, json=["ok"]), True),
        (httpx.Response(200, content=b"not json"), False),
    ],
)
def test_http_probe_body_rules(response, expected):
    probes = _executor(lambda request: response)
    assert probes.check_readiness(Instance("a", "web", "v1", address="web-a:8000")) is expected


def test_http_probe_timeout_raises():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    probes = _executor(handler)
    with pytest.raises(ProbeTimeout):
        probes.check_liveness(Instance("a", "web", "v1", address="web-a:8000"))


def test_http_probe_connection_error_is_a_failure():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    probes = _executor(handler)
    assert probes.check_liveness(Instance("a", "web", "v1", address="web-a:8000")) is False


def test_http_probe_without_address_fails():
    probes = _executor(lambda request: httpx.Response(200))
    assert probes.check_liveness(Instance("a", "web", "v1")) is False


@pytest.mark.parametrize("path", ["healthz", "http://evil/x", "/../admin"])
def test_http_probe_rejects_unsafe_paths(path):
    with pytest.raises(ValueError):
        HttpProbeExecutor(liveness_path=path)
