"""Instance-lifecycle backends.

Both backends honour the same idempotency contract: creating with a key whose
instance is still alive returns that instance's id, and terminating an id that
no longer exists is acknowledged. Retries after a timeout with unknown outcome
therefore never duplicate work.
"""

from __future__ import annotations

import logging
import re
import secrets
from threading import Lock
from typing import Any, Protocol

import docker
from docker.errors import APIError, DockerException, NotFound

from .errors import LifecycleError, SourceUnavailable
from .models import HealthStatus, Instance

logger = logging.getLogger(__name__)


WORKLOAD_ID_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
REVISION_RE = re.compile(r"^[a-z0-9][a-z0-9\-\._]{0,63}$")


def validate_workload_id(name: str) -> None:
    if not WORKLOAD_ID_RE.match(name):
        raise ValueError(
            "Invalid workload id. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


def validate_revision(revision: str) -> None:
    if not REVISION_RE.match(revision):
        raise ValueError("Invalid revision. Use lowercase letters/numbers and -._ (max 64 chars).")


class InstanceLifecycle(Protocol):
    def create(self, workload_id: str, revision: str, key: str) -> str: ...

    def terminate(self, instance_id: str) -> bool: ...

    def list(self, workload_id: str) -> list[Instance]: ...


class SimulatedCluster:
    """Thread-safe in-process cluster.

    Implements the lifecycle, probe and metrics contracts at once so the
    controller can run without Docker. ``fail_next_creates`` /
    ``fail_next_terminates`` inject transient errors; instances of a revision
    in ``bad_revisions`` never pass readiness.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._instances: dict[str, Instance] = {}
        self._by_key: dict[str, str] = {}
        self._live: dict[str, bool] = {}
        self._ready: dict[str, bool] = {}
        self._utilization: dict[str, float] = {}
        self._metrics_down: set[str] = set()
        self.bad_revisions: set[str] = set()
        self.fail_next_creates = 0
        self.fail_next_terminates = 0
        self.create_calls = 0
        self.terminate_calls = 0

    def create(self, workload_id: str, revision: str, key: str) -> str:
        with self._lock:
            self.create_calls += 1
            if self.fail_next_creates > 0:
                self.fail_next_creates -= 1
                raise LifecycleError(f"create rejected for {key}")
            existing = self._by_key.get(key)
            if existing and existing in self._instances:
                return existing
            iid = f"{workload_id}-{secrets.token_hex(4)}"
            self._instances[iid] = Instance(
                id=iid,
                workload_id=workload_id,
                revision=revision,
                status=HealthStatus.STARTING,
                key=key,
                address=f"{iid}:8000",
            )
            self._by_key[key] = iid
            return iid

    def terminate(self, instance_id: str) -> bool:
        with self._lock:
            self.terminate_calls += 1
            if self.fail_next_terminates > 0:
                self.fail_next_terminates -= 1
                raise LifecycleError(f"terminate rejected for {instance_id}")
            self._instances.pop(instance_id, None)
            self._live.pop(instance_id, None)
            self._ready.pop(instance_id, None)
            return True

    def list(self, workload_id: str) -> list[Instance]:
        with self._lock:
            return [
                Instance(
                    id=i.id,
                    workload_id=i.workload_id,
                    revision=i.revision,
                    status=i.status,
                    key=i.key,
                    address=i.address,
                )
                for i in self._instances.values()
                if i.workload_id == workload_id
            ]

    def snapshot(self, workload_id: str | None = None) -> set[tuple[str, str]]:
        """(instance id, revision) pairs; handy for comparing final instance sets."""
        with self._lock:
            return {(i.id, i.revision) for i in self._instances.values() if workload_id in (None, i.workload_id)}

    # Probe contract

    def set_health(self, instance_id: str, live: bool | None = None, ready: bool | None = None) -> None:
        with self._lock:
            if live is not None:
                self._live[instance_id] = live
            if ready is not None:
                self._ready[instance_id] = ready

    def check_liveness(self, instance: Instance) -> bool:
        with self._lock:
            return instance.id in self._instances and self._live.get(instance.id, True)

    def check_readiness(self, instance: Instance) -> bool:
        with self._lock:
            if instance.id not in self._instances or instance.revision in self.bad_revisions:
                return False
            return self._ready.get(instance.id, True)

    # Metrics contract

    def set_utilization(self, workload_id: str, value: float) -> None:
        with self._lock:
            self._utilization[workload_id] = float(value)

    def set_metrics_down(self, workload_id: str, down: bool = True) -> None:
        with self._lock:
            if down:
                self._metrics_down.add(workload_id)
            else:
                self._metrics_down.discard(workload_id)

    def query(self, workload_id: str, metric_name: str) -> float:
        with self._lock:
            if workload_id in self._metrics_down or workload_id not in self._utilization:
                raise SourceUnavailable(f"no {metric_name} metric for {workload_id}")
            return self._utilization[workload_id]


class DockerLifecycle:
    """Run each instance as a labelled container on the ARC docker network.

    The container name is derived from the create key, so a duplicate create
    finds the container the first attempt already started.
    """

    def __init__(
        self,
        network: str = "arc",
        image_template: str = "{workload}:{revision}",
        port: int = 8000,
        env: dict[str, str] | None = None,
    ) -> None:
        self.network = network
        self.image_template = image_template
        self.port = int(port)
        self.env = env or {}

    def _client(self) -> docker.DockerClient:
        try:
            return docker.from_env()
        except DockerException as e:
            raise LifecycleError(f"Docker is not available: {e}") from e

    def available(self) -> bool:
        try:
            self._client().ping()
            return True
        except (LifecycleError, DockerException):
            return False

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge")
            logger.info("Created docker network '%s'", self.network)

    @staticmethod
    def container_name(key: str) -> str:
        safe = re.sub(r"[^a-zA-Z0-9_.-]", "-", key)
        return f"arc-{safe}"[:128]

    def create(self, workload_id: str, revision: str, key: str) -> str:
        validate_workload_id(workload_id)
        validate_revision(revision)
        name = self.container_name(key)
        c = self._client()
        try:
            existing = c.containers.get(name)
            if existing.status in {"created", "running", "restarting"}:
                return existing.id
            existing.remove(force=True)
        except NotFound:
            pass
        except APIError as e:
            raise LifecycleError(f"lookup of {name} failed: {e}") from e

        self.ensure_network()
        labels: dict[str, str] = {
            "arc.workload": workload_id,
            "arc.revision": revision,
            "arc.key": key,
        }
        env = {"REVISION": revision, "WORKLOAD": workload_id, **self.env}
        try:
            container = c.containers.run(
                self.image_template.format(workload=workload_id, revision=revision),
                detach=True,
                name=name,
                environment=env,
                network=self.network,
                labels=labels,
                # Self-healing is done by the reconciler; keep Docker's restart policy off.
                restart_policy={"Name": "no"},
            )
        except APIError as e:
            if e.status_code == 409:
                # Lost a race with a concurrent create of the same key.
                return c.containers.get(name).id
            raise LifecycleError(f"create of {name} failed: {e}") from e
        logger.info("Started container %s for %s@%s", name, workload_id, revision)
        return container.id

    def terminate(self, instance_id: str) -> bool:
        c = self._client()
        try:
            c.containers.get(instance_id).remove(force=True)
        except NotFound:
            return True
        except APIError as e:
            raise LifecycleError(f"terminate of {instance_id} failed: {e}") from e
        return True

    def list(self, workload_id: str) -> list[Instance]:
        c = self._client()
        filters: dict[str, Any] = {"label": [f"arc.workload={workload_id}"]}
        try:
            containers = c.containers.list(all=True, filters=filters)
        except APIError as e:
            raise LifecycleError(f"list for {workload_id} failed: {e}") from e
        out: list[Instance] = []
        for x in containers:
            labels = x.labels or {}
            dead = x.status in {"exited", "dead"}
            out.append(
                Instance(
                    id=x.id,
                    workload_id=workload_id,
                    revision=labels.get("arc.revision", ""),
                    status=HealthStatus.TERMINATING if dead else HealthStatus.UNKNOWN,
                    key=labels.get("arc.key"),
                    address=f"{x.name}:{self.port}",
                )
            )
        return out
