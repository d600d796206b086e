from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query

from . import db
from .api_models import BoundsRequest, RegisterWorkloadRequest, RolloutRequest
from .errors import UnknownWorkload
from .events import EventKind, EventStream
from .health import HttpProbeExecutor
from .lifecycle import DockerLifecycle, SimulatedCluster
from .metrics import HttpMetricsSource
from .models import Workload
from .reconciler import Reconciler
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def build_reconciler(s: Settings | None = None) -> Reconciler:
    """Wire collaborators from settings: Docker + HTTP probes/metrics, or a simulated cluster."""
    s = s or default_settings
    events = EventStream(buffer_size=s.event_buffer_size, persist=True)
    if s.use_docker:
        return Reconciler(
            lifecycle=DockerLifecycle(network=s.docker_network, image_template=s.image_template, port=s.instance_port),
            metrics=HttpMetricsSource(s.metrics_url, timeout_s=s.metrics_timeout_s),
            probes=HttpProbeExecutor(s.liveness_path, s.readiness_path, timeout_s=s.probe_timeout_s),
            events=events,
            settings=s,
            persist=True,
        )
    cluster = SimulatedCluster()
    return Reconciler(lifecycle=cluster, metrics=cluster, probes=cluster, events=events, settings=s, persist=True)


def create_app(reconciler: Reconciler | None = None, start_loop: bool = True) -> FastAPI:
    rec = reconciler or build_reconciler()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if rec.persist:
            db.init_db()
            for w in db.list_workloads():
                if w.id not in rec.runtime:
                    rec.register(w)
        if start_loop:
            rec.start()
        try:
            yield
        finally:
            if start_loop:
                rec.stop()

    app = FastAPI(title="ARC - Autoscaling Reconciliation Controller", lifespan=lifespan)
    app.state.reconciler = rec

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "healthy", "workloads": len(rec.runtime.ids())}

    @app.get("/workloads")
    def list_workloads() -> list[dict[str, Any]]:
        return rec.list_status()

    @app.post("/workloads", status_code=201)
    def register_workload(req: RegisterWorkloadRequest) -> dict[str, Any]:
        w = Workload(
            id=req.id,
            revision=req.revision,
            target_replicas=req.replicas,
            min_replicas=req.min_replicas,
            max_replicas=req.max_replicas,
            target_utilization=req.target_utilization,
            max_surge=req.max_surge,
            max_unavailable=req.max_unavailable,
        )
        if w.id in rec.runtime:
            raise HTTPException(status_code=409, detail=f"workload '{w.id}' already registered")
        try:
            rec.register(w)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return rec.status(w.id)

    @app.get("/workloads/{workload_id}")
    def get_workload(workload_id: str) -> dict[str, Any]:
        try:
            return rec.status(workload_id)
        except UnknownWorkload:
            raise HTTPException(status_code=404, detail="unknown workload")

    @app.put("/workloads/{workload_id}/bounds", status_code=202)
    def update_bounds(workload_id: str, req: BoundsRequest) -> dict[str, Any]:
        changes = req.model_dump(exclude_none=True)
        if not changes:
            raise HTTPException(status_code=400, detail="no changes")
        try:
            rec.update_bounds(workload_id, **changes)
        except UnknownWorkload:
            raise HTTPException(status_code=404, detail="unknown workload")
        return {"accepted": True, "workload": workload_id, "changes": changes}

    @app.post("/workloads/{workload_id}/rollout", status_code=202)
    def rollout(workload_id: str, req: RolloutRequest) -> dict[str, Any]:
        try:
            rec.submit_rollout(workload_id, req.revision, req.replicas)
        except UnknownWorkload:
            raise HTTPException(status_code=404, detail="unknown workload")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"accepted": True, "workload": workload_id, "revision": req.revision, "replicas": req.replicas}

    @app.delete("/workloads/{workload_id}")
    def delete_workload(workload_id: str) -> dict[str, Any]:
        try:
            rec.remove(workload_id)
        except UnknownWorkload:
            raise HTTPException(status_code=404, detail="unknown workload")
        return {"removed": workload_id}

    @app.get("/events")
    def events(
        limit: int = Query(50, ge=1, le=1000),
        workload: str | None = None,
        kind: str | None = None,
    ) -> list[dict[str, Any]]:
        try:
            k = EventKind(kind) if kind else None
        except ValueError:
            raise HTTPException(status_code=400, detail=f"unknown event kind '{kind}'")
        return [e.to_dict() for e in rec.events.recent(limit=limit, workload_id=workload, kind=k)]

    return app
