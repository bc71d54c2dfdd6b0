"""
Blocky Operator API — FastAPI endpoints.

Stands in for the cluster's operator-facing API when the controller runs
against the in-memory store:
- Blocky management (with the CRD's schema validation)
- Condition and Deployment inspection
- Manual reconcile trigger
- Controller status
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from blocky_controller.models.blocky import Blocky, BlockySpec
from blocky_controller.models.meta import ObjectKey, ObjectMeta, ResourceKind
from blocky_controller.models.reconciler import ControllerSettings
from blocky_controller.reconciler.dispatcher import Controller
from blocky_controller.reconciler.loop import BlockyReconciler
from blocky_controller.store.base import ConflictError, Store
from blocky_controller.store.kubernetes import KubernetesStore
from blocky_controller.store.memory import InMemoryStore

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """One stream handler on the root logger, for the whole process."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )


# --- Request/Response Models ---

class BlockySpecRequest(BaseModel):
    """Mirrors the CRD's OpenAPI constraints."""
    size: int = Field(ge=1, le=3)
    container_port: int = Field(ge=1, le=65535)


class BlockyCreateRequest(BlockySpecRequest):
    name: str = Field(min_length=1, max_length=63)
    namespace: str = "default"


# --- Application Factory ---

def create_app(
    store: Optional[Store] = None,
    settings: Optional[ControllerSettings] = None,
    start_controller: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    st = store if store is not None else InMemoryStore()
    config = settings or ControllerSettings()
    reconciler = BlockyReconciler(st, settings=config)
    controller = Controller(reconciler)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not start_controller:
            yield
            return
        stop = asyncio.Event()
        task = asyncio.create_task(controller.run_async(stop))
        try:
            yield
        finally:
            stop.set()
            await task

    app = FastAPI(
        title="Blocky Controller API",
        description="Operator-facing API and controller for Blocky resources",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store components on app state for access in endpoints
    app.state.store = st
    app.state.settings = config
    app.state.reconciler = reconciler
    app.state.controller = controller

    def _get_blocky(namespace: str, name: str) -> Blocky:
        key = ObjectKey(namespace=namespace, name=name)
        blocky = st.get(ResourceKind.BLOCKY, key)
        if blocky is None:
            raise HTTPException(404, "Blocky not found")
        return blocky

    # === BLOCKY MANAGEMENT ===

    @app.post("/blockies", status_code=201)
    def create_blocky(req: BlockyCreateRequest):
        """Declare a new Blocky."""
        blocky = Blocky(
            metadata=ObjectMeta(name=req.name, namespace=req.namespace),
            spec=BlockySpec(size=req.size, container_port=req.container_port),
        )
        try:
            created = st.create(blocky)
        except ConflictError:
            raise HTTPException(409, "Blocky already exists")
        return created.to_wire()

    @app.get("/blockies")
    def list_blockies():
        return [b.to_wire() for b in st.list(ResourceKind.BLOCKY)]

    @app.get("/blockies/{namespace}/{name}")
    def get_blocky(namespace: str, name: str):
        return _get_blocky(namespace, name).to_wire()

    @app.put("/blockies/{namespace}/{name}")
    def update_blocky(namespace: str, name: str, req: BlockySpecRequest):
        """Replace a Blocky's spec. Fails with 409 on a concurrent write."""
        blocky = _get_blocky(namespace, name)
        blocky.spec = BlockySpec(size=req.size, container_port=req.container_port)
        try:
            updated = st.update(blocky, expected_version=blocky.metadata.resource_version)
        except ConflictError:
            raise HTTPException(409, "Blocky was modified concurrently, retry")
        return updated.to_wire()

    @app.delete("/blockies/{namespace}/{name}")
    def delete_blocky(namespace: str, name: str):
        """Delete a Blocky; its Deployment goes with it."""
        key = ObjectKey(namespace=namespace, name=name)
        if not st.delete(ResourceKind.BLOCKY, key):
            raise HTTPException(404, "Blocky not found")
        return {"status": "deleted", "key": str(key)}

    @app.get("/blockies/{namespace}/{name}/conditions")
    def get_conditions(namespace: str, name: str):
        blocky = _get_blocky(namespace, name)
        return [c.to_wire() for c in blocky.status.conditions]

    # === MANAGED WORKLOADS ===

    @app.get("/deployments/{namespace}/{name}")
    def get_deployment(namespace: str, name: str):
        key = ObjectKey(namespace=namespace, name=name)
        deployment = st.get(ResourceKind.DEPLOYMENT, key)
        if deployment is None:
            raise HTTPException(404, "Deployment not found")
        return deployment.to_wire()

    # === RECONCILER ===

    @app.post("/reconcile/{namespace}/{name}")
    def trigger_reconcile(namespace: str, name: str):
        """Run one reconcile pass now (for testing)."""
        key = ObjectKey(namespace=namespace, name=name)
        return reconciler.reconcile(key).to_dict()

    @app.get("/controller/status")
    def controller_status():
        return {
            "status": controller.status,
            "workers": controller.workers,
            "reconcile_count": controller.reconcile_count,
            "pending": controller.queue.pending() if controller.queue else 0,
            "settings": config.model_dump(),
        }

    return app


def main() -> FastAPI:
    """Entrypoint for ``uvicorn --factory blocky_controller.api.app:main``."""
    settings = ControllerSettings()
    configure_logging(settings.log_level)
    store = None
    if settings.store_backend == "kubernetes":
        store = KubernetesStore.from_environment()
    return create_app(store=store, settings=settings)
