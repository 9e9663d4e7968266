# fastapi_app.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .config import settings
from .controller import RolloutController
from .errors import ConfigurationError, NotFoundError, TransientError
from .kube_types import Workload

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
class ImageNotification(BaseModel):
    repository: str = Field(..., description="Image repository, optionally with registry host")
    tag: str = Field(default="latest")


class WorkloadRegistration(BaseModel):
    workload_id: str = Field(..., min_length=1, max_length=63, pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
    replicas: int = Field(default=1, ge=0)
    repository: Optional[str] = Field(default=None, description="Image repository this workload tracks")
    tag: Optional[str] = Field(default=None, description="Tag this workload follows")
    digest: Optional[str] = Field(default=None, description="Initial desired digest")


class DesiredBody(BaseModel):
    digest: str = Field(..., min_length=1)


class ReplicasBody(BaseModel):
    replicas: int = Field(..., ge=0)


class WorkloadView(BaseModel):
    workload_id: str
    replicas: int
    status: str
    desired_digest: Optional[str] = None
    current_digest: Optional[str] = None
    last_healthy_digest: Optional[str] = None
    repository: Optional[str] = None
    tag: Optional[str] = None
    plan_id: Optional[str] = None
    generation: int
    updated_at: datetime

    @classmethod
    def of(cls, workload: Workload) -> "WorkloadView":
        return cls(
            workload_id=workload.workload_id,
            replicas=workload.replicas,
            status=workload.status.value,
            desired_digest=workload.desired_digest,
            current_digest=workload.current_digest,
            last_healthy_digest=workload.last_healthy_digest,
            repository=workload.repository,
            tag=workload.tag,
            plan_id=workload.plan_id,
            generation=workload.generation,
            updated_at=workload.updated_at,
        )


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------
def create_app(controller: Optional[RolloutController] = None) -> FastAPI:
    """Build the API around ``controller`` (built from settings when omitted)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctrl = app.state.controller
        if ctrl is None:
            ctrl = RolloutController.from_settings(settings)
            app.state.controller = ctrl
        await ctrl.start()
        try:
            yield
        finally:
            await ctrl.stop()

    app = FastAPI(title="Kube Rollout Controller", version="1.0.0", lifespan=lifespan)
    app.state.controller = controller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _ctrl() -> RolloutController:
        return app.state.controller

    def _get(workload_id: str) -> Workload:
        try:
            return _ctrl().get(workload_id)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    # -------------------------------------------------------------------------
    # Routes
    # -------------------------------------------------------------------------
    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    @app.get("/api/health")
    async def api_health():
        workloads = _ctrl().list()
        return {
            "status": "healthy",
            "workloads": len(workloads),
            "failed": [w.workload_id for w in workloads if w.status.value == "Failed"],
        }

    # -------------------------------------------------------------------------
    # Trigger
    # -------------------------------------------------------------------------
    @app.post("/api/images/notify")
    async def notify_image(body: ImageNotification, wait: bool = Query(False)):
        """Called by CI after a successful image push."""
        logger.info(f"🚀 New image notification: {body.repository}:{body.tag}")
        try:
            changed = await _ctrl().notify_new_image(body.repository, body.tag)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except TransientError as e:
            logger.error(f"❌ Registry unavailable for {body.repository}:{body.tag}: {e}")
            raise HTTPException(status_code=503, detail=f"Registry unavailable: {e}")
        if wait:
            for workload_id in changed:
                await _ctrl().wait_idle(workload_id)
        return {"repository": body.repository, "tag": body.tag, "workloads": changed}

    # -------------------------------------------------------------------------
    # Workloads
    # -------------------------------------------------------------------------
    @app.get("/api/workloads", response_model=List[WorkloadView])
    async def list_workloads():
        return [WorkloadView.of(w) for w in _ctrl().list()]

    @app.post("/api/workloads", response_model=WorkloadView, status_code=201)
    async def register_workload(body: WorkloadRegistration):
        try:
            workload = await _ctrl().register_workload(
                body.workload_id, body.replicas, repository=body.repository, tag=body.tag, digest=body.digest)
        except (ValueError, ConfigurationError) as e:
            raise HTTPException(status_code=422, detail=str(e))
        logger.info(f"✅ Registered workload {workload.workload_id}")
        return WorkloadView.of(workload)

    @app.get("/api/workloads/{workload_id}", response_model=WorkloadView)
    async def get_workload(workload_id: str):
        return WorkloadView.of(_get(workload_id))

    @app.delete("/api/workloads/{workload_id}", status_code=204)
    async def delete_workload(workload_id: str):
        _get(workload_id)
        await _ctrl().unregister(workload_id)

    @app.put("/api/workloads/{workload_id}/desired")
    async def set_desired(workload_id: str, body: DesiredBody, wait: bool = Query(False)):
        _get(workload_id)
        changed = await _ctrl().set_desired(workload_id, body.digest)
        if wait and changed:
            await _ctrl().wait_idle(workload_id)
        return {"changed": changed, "workload": WorkloadView.of(_get(workload_id))}

    @app.put("/api/workloads/{workload_id}/replicas")
    async def scale_workload(workload_id: str, body: ReplicasBody, wait: bool = Query(False)):
        _get(workload_id)
        changed = await _ctrl().scale(workload_id, body.replicas)
        if wait and changed:
            await _ctrl().wait_idle(workload_id)
        return {"changed": changed, "workload": WorkloadView.of(_get(workload_id))}

    @app.post("/api/workloads/{workload_id}/reconcile", status_code=202)
    async def reconcile_workload(workload_id: str):
        _get(workload_id)
        await _ctrl().reconcile(workload_id)
        return {"workload_id": workload_id, "status": "queued"}

    @app.get("/api/workloads/{workload_id}/replicas")
    async def list_replicas(workload_id: str):
        workload = _get(workload_id)
        cluster = _ctrl().cluster
        replicas = await cluster.list_replicas(workload_id)
        summary = await cluster.summary(workload_id, workload.replicas, workload.desired_digest)
        return {
            "workload_id": workload_id,
            "desired_replicas": summary.desired_replicas,
            "ready_replicas": summary.ready_replicas,
            "updated_replicas": summary.updated_replicas,
            "digests": summary.digests,
            "replicas": [
                {"replica_id": r.replica_id, "digest": r.digest, "health": r.health.value}
                for r in replicas
            ],
        }

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------
    @app.get("/api/events")
    async def list_events(workload: Optional[str] = Query(None), limit: int = Query(100, ge=1, le=1000)):
        events = _ctrl().history.history(workload)[-limit:]
        return [e.to_dict() for e in events]

    return app


def main() -> None:
    import uvicorn

    logging.basicConfig(level=settings.LOG_LEVEL.upper())
    uvicorn.run(create_app(), host="0.0.0.0", port=settings.HTTP_PORT, log_level=settings.LOG_LEVEL.lower())


app = create_app()
