"""
Admin API - health, awareness, manual ticks, and the pending action and
protection routes.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware

from util.logging import logger

from .actions import router as actions_router, Services, get_services
from .schemas import HealthResponse, AwarenessResponse, TickResponse
from ..core.awareness import build_self_model, format_self_model
from ..core.config import VERSION, ImproverConfig, validate_config
from ..core.db import health_check
from ..core.heartbeat import Heartbeat
from ..core.improver import self_improvement_tick

_startup_config = ImproverConfig.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the self-improvement tick in the background while the API is up."""
    services = app.dependency_overrides.get(get_services, get_services)()
    config = services.config

    issues = validate_config(config)
    if issues:
        raise ValueError(f"Configuration invalid: {issues}")

    heartbeat = Heartbeat(enabled=config.background_enabled)
    heartbeat.register_task(
        "self_improvement_tick",
        config.tick_interval_sec,
        lambda: self_improvement_tick(services.store, services.observer, config, services.schema),
    )
    heartbeat.start_background()
    try:
        yield
    finally:
        heartbeat.stop()


# Initialize the FastAPI application
app = FastAPI(
    title="OpenContext API",
    version=VERSION,
    description="Self-maintaining personal context store",
    docs_url="/docs" if _startup_config.debug else None,
    redoc_url="/redoc" if _startup_config.debug else None,
    lifespan=lifespan,
)

# Allow the local web UI
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(actions_router, prefix="/api")


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(services: Services = Depends(get_services)):
    """Check system health."""
    db_health = health_check(services.config.db_path)
    entry_count = len(services.store.list_contexts()) if db_health else 0

    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        entry_count=entry_count,
        pending_actions=len(services.control_plane.list_pending()),
    )


@app.get("/api/awareness", response_model=AwarenessResponse)
def awareness(services: Services = Depends(get_services)):
    """The store's current self-model."""
    model = build_self_model(services.store, services.schema, services.observer)
    return AwarenessResponse(summary=format_self_model(model), self_model=model.to_dict())


@app.post("/api/improver/tick", response_model=TickResponse)
def run_tick(services: Services = Depends(get_services)):
    """Run one self-improvement tick now."""
    report = self_improvement_tick(services.store, services.observer, services.config, services.schema)
    logger.log_operation("api.tick", "completed", {
        "executed": len(report.executed),
        "enqueued": len(report.enqueued),
    })
    return TickResponse(**report.to_dict())
