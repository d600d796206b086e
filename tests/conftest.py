import os
import random
import sys

import pytest

# Ensure project root is importable (so `import examples...` works reliably across environments)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from arc import db  # noqa: E402
from arc.events import EventStream  # noqa: E402
from arc.lifecycle import SimulatedCluster  # noqa: E402
from arc.models import Workload  # noqa: E402
from arc.reconciler import Reconciler  # noqa: E402
from arc.settings import Settings  # noqa: E402


@pytest.fixture
def tmp_db(monkeypatch, tmp_path):
    """Point the sqlite layer at an isolated file and create the schema."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "arc-test.db")))
    db.init_db()
    return tmp_path / "arc-test.db"


@pytest.fixture
def cluster():
    return SimulatedCluster()


@pytest.fixture
def make_reconciler(cluster):
    """Build a Reconciler over the simulated cluster; keyword args override Settings."""

    def _make(metrics=None, sleeps=None, **overrides):
        s = Settings(**overrides)
        return Reconciler(
            lifecycle=cluster,
            metrics=metrics or cluster,
            probes=cluster,
            events=EventStream(buffer_size=5000),
            settings=s,
            sleep=(sleeps.append if sleeps is not None else (lambda _s: None)),
            rng=random.Random(0),
        )

    return _make


def seed(cluster, workload_id, revision, n):
    """Start n instances outside of any rollout plan."""
    return [cluster.create(workload_id, revision, f"seed-{workload_id}-{i}") for i in range(n)]


def workload(wid="web", revision="v1", replicas=3, **kw):
    return Workload(id=wid, revision=revision, target_replicas=replicas, **kw)
