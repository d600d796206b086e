from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Iterable, Protocol

import httpx

from .errors import ProbeTimeout
from .models import HealthStatus, Instance

logger = logging.getLogger(__name__)


class ProbeExecutor(Protocol):
    def check_liveness(self, instance: Instance) -> bool: ...

    def check_readiness(self, instance: Instance) -> bool: ...


class HttpProbeExecutor:
    """Probe an instance over HTTP.

    A probe passes on HTTP 200 whose JSON body (if any) reports
    {"status": "healthy"} or {"status": "ready"}.
    Connect/read timeouts raise ProbeTimeout; any other failure is a plain fail.
    """

    def __init__(
        self,
        liveness_path: str = "/healthz",
        readiness_path: str = "/ready",
        timeout_s: float = 2.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        for path in (liveness_path, readiness_path):
            # Keep probes to simple paths so instance addresses can't be turned into an SSRF proxy.
            if not path.startswith("/") or "://" in path or ".." in path:
                raise ValueError("probe paths must be simple absolute paths")
        self.liveness_path = liveness_path
        self.readiness_path = readiness_path
        self.timeout_s = timeout_s
        self._transport = transport

    def check_liveness(self, instance: Instance) -> bool:
        return self._check(instance, self.liveness_path)

    def check_readiness(self, instance: Instance) -> bool:
        return self._check(instance, self.readiness_path)

    def _check(self, instance: Instance, path: str) -> bool:
        if not instance.address:
            return False
        url = f"http://{instance.address}{path}"
        try:
            with httpx.Client(timeout=self.timeout_s, follow_redirects=False, transport=self._transport) as client:
                resp = client.get(url)
        except (httpx.ConnectTimeout, httpx.ReadTimeout, httpx.PoolTimeout) as e:
            raise ProbeTimeout(f"probe timed out: {url}") from e
        except httpx.HTTPError as e:
            logger.debug("Probe %s failed: %s: %s", url, type(e).__name__, e)
            return False

        if resp.status_code != 200:
            return False
        if not resp.content:
            return True
        try:
            data = resp.json()
        except ValueError:
            return False
        if isinstance(data, dict) and "status" in data:
            return data.get("status") in {"healthy", "ready", "ok"}
        return True


@dataclass
class ProbeTracker:
    """Per-instance health state machine with flap suppression."""

    status: HealthStatus = HealthStatus.STARTING
    failure_threshold: int = 3
    success_threshold: int = 1
    liveness_failures: int = 0
    readiness_failures: int = 0
    readiness_successes: int = 0

    def observe(self, live: bool, ready: bool) -> HealthStatus:
        if self.status is HealthStatus.TERMINATING:
            return self.status

        if live:
            self.liveness_failures = 0
        else:
            self.liveness_failures += 1
            if self.liveness_failures >= self.failure_threshold:
                self.status = HealthStatus.TERMINATING
                return self.status

        if ready:
            self.readiness_failures = 0
            self.readiness_successes += 1
        else:
            self.readiness_successes = 0
            self.readiness_failures += 1

        if self.status in {HealthStatus.UNKNOWN, HealthStatus.STARTING, HealthStatus.UNHEALTHY}:
            if self.readiness_successes >= self.success_threshold:
                self.status = HealthStatus.READY
        elif self.status is HealthStatus.READY:
            if self.readiness_failures >= self.failure_threshold:
                self.status = HealthStatus.UNHEALTHY
        return self.status


class HealthGate:
    """Evaluates instances through a ProbeExecutor and keeps one tracker per instance."""

    def __init__(self, probes: ProbeExecutor, failure_threshold: int = 3, success_threshold: int = 1) -> None:
        self.probes = probes
        self.failure_threshold = max(1, int(failure_threshold))
        self.success_threshold = max(1, int(success_threshold))
        self._lock = Lock()
        self._trackers: dict[str, ProbeTracker] = {}

    def tracker(self, instance_id: str) -> ProbeTracker:
        with self._lock:
            t = self._trackers.get(instance_id)
            if t is None:
                t = ProbeTracker(
                    failure_threshold=self.failure_threshold,
                    success_threshold=self.success_threshold,
                )
                self._trackers[instance_id] = t
            return t

    def status(self, instance_id: str) -> HealthStatus:
        with self._lock:
            t = self._trackers.get(instance_id)
        return t.status if t else HealthStatus.UNKNOWN

    def evaluate(self, instance: Instance) -> HealthStatus:
        t = self.tracker(instance.id)
        if t.status is HealthStatus.TERMINATING:
            return t.status
        try:
            live = self.probes.check_liveness(instance)
        except ProbeTimeout:
            live = False
        try:
            ready = self.probes.check_readiness(instance)
        except ProbeTimeout:
            ready = False
        return t.observe(live, ready)

    def mark_terminating(self, instance_id: str) -> HealthStatus:
        t = self.tracker(instance_id)
        t.status = HealthStatus.TERMINATING
        return t.status

    def forget(self, instance_ids: Iterable[str]) -> None:
        """Drop trackers of instances that no longer exist."""
        with self._lock:
            for iid in instance_ids:
                self._trackers.pop(iid, None)


def routable(instances: Iterable[Instance]) -> list[Instance]:
    """Instances eligible for traffic and capacity counting."""
    return [i for i in instances if i.status is HealthStatus.READY]
