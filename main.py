# ============================================================================
# BROKER CONTROL PLANE - MAIN APPLICATION
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - FastAPI application entry point
# PURPOSE: Run operators and pollers with health endpoints
# CREATED: 29 JAN 2026
# UPDATED: 17 OCT 2026 - Control plane replaces orchestration loop
# ============================================================================
"""
Broker Control Plane Main Application

FastAPI application that:
1. Runs the operators and pollers of one replica in the background
2. Manages the resource store (PostgreSQL pool or in-memory)
3. Exposes liveness and readiness endpoints

Downstream clients (director, cloud disks, per-plan deployment services)
are supplied by the deployment through set_downstream_clients() before
the app starts; components whose clients are missing stay disabled.

Usage:
    uvicorn main:app --host 0.0.0.0 --port 8000
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from __version__ import __version__, BUILD_DATE, EPOCH
from core.config import get_defaults
from core.interfaces import CloudDiskClient, DirectorClient
from core.logging import ComponentType, configure_logging, get_logger
from infrastructure.storage import BlobMetadataStore, InMemoryMetadataStore
from operators.deployment import DeploymentServiceFactory
from repositories.database import close_pool
from services import PlanCatalogService
from services.control_plane import ControlPlane, build_store

configure_logging(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    json_output=os.environ.get("LOG_FORMAT", "").lower() == "json",
)
logger = get_logger(__name__, ComponentType.API)

# Global instances
_control_plane: Optional[ControlPlane] = None
_director: Optional[DirectorClient] = None
_cloud: Optional[CloudDiskClient] = None
_deployment_factory: Optional[DeploymentServiceFactory] = None


def set_downstream_clients(
    director: Optional[DirectorClient] = None,
    cloud: Optional[CloudDiskClient] = None,
    deployment_factory: Optional[DeploymentServiceFactory] = None,
) -> None:
    """Register downstream clients for the next application start."""
    global _director, _cloud, _deployment_factory
    _director = director
    _cloud = cloud
    _deployment_factory = deployment_factory


def _build_metadata_store():
    if os.environ.get("BROKER_STORAGE_ACCOUNT"):
        return BlobMetadataStore.from_env()
    logger.warning("BROKER_STORAGE_ACCOUNT not set, restore metadata kept in memory")
    return InMemoryMetadataStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Builds the control plane on startup, stops it on shutdown.
    """
    global _control_plane

    logger.info(f"Starting Broker Control Plane v{__version__} (Epoch {EPOCH}, Build {BUILD_DATE})")
    defaults = get_defaults()

    store = await build_store(defaults)
    logger.info(f"Resource store ready ({defaults.store.backend})")

    plan_catalog = PlanCatalogService()
    count = plan_catalog.load_all()
    logger.info(f"Loaded {count} plans")

    _control_plane = ControlPlane(
        store,
        plan_catalog,
        director=_director,
        cloud=_cloud,
        metadata_store=_build_metadata_store(),
        deployment_factory=_deployment_factory,
        defaults=defaults,
    )
    await _control_plane.start()

    yield

    # Shutdown
    logger.info("Shutting down Broker Control Plane...")

    await _control_plane.stop()
    if defaults.store.backend == "postgres":
        await close_pool()

    logger.info("Broker Control Plane stopped")


# Create FastAPI app
app = FastAPI(
    title="Broker Control Plane",
    description=f"Epoch {EPOCH} multi-tenant service broker control plane",
    version=__version__,
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    """Liveness: the process is up."""
    return {"status": "alive", "version": __version__}


@app.get("/ready")
async def ready():
    """Readiness: the control plane is running, with per-component status."""
    if _control_plane is None or not _control_plane.is_running:
        return JSONResponse(status_code=503, content={"status": "starting"})
    return {"status": "ready", **_control_plane.stats()}


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Broker Control Plane",
        "version": __version__,
        "epoch": EPOCH,
        "build_date": BUILD_DATE,
        "status": "running",
    }


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=os.environ.get("RELOAD", "false").lower() == "true",
    )
