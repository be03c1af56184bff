"""FastAPI application entrypoint and router wiring for the task sharing backend."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import APIRouter, FastAPI, status
from fastapi.middleware.cors import CORSMiddleware

from taskshare.api.auth import router as auth_router
from taskshare.api.profiles import router as profiles_router
from taskshare.api.tasks import router as tasks_router
from taskshare.core.config import settings
from taskshare.core.error_handling import install_error_handling
from taskshare.core.logging import configure_logging, get_logger
from taskshare.db.session import init_db
from taskshare.schemas.health import HealthStatusResponse
from taskshare.services.change_feed import build_change_feed, set_change_feed
from taskshare.services.workspace import visible_task_cache

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

configure_logging()
logger = get_logger(__name__)
OPENAPI_TAGS = [
    {
        "name": "auth",
        "description": (
            "Authentication bootstrap endpoints for resolving caller identity and "
            "provisioning the caller's profile."
        ),
    },
    {
        "name": "health",
        "description": (
            "Service liveness/readiness probes used by infrastructure and runtime checks."
        ),
    },
    {
        "name": "profiles",
        "description": "Caller profile read/update and the globally readable profile directory.",
    },
    {
        "name": "tasks",
        "description": (
            "Visible task set, task CRUD, sharing by email, summary counts, and the live "
            "change stream."
        ),
    },
]
_HEALTH_OK_RESPONSE = {
    status.HTTP_200_OK: {
        "description": "Service is alive.",
        "content": {"application/json": {"example": {"ok": True}}},
    }
}


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Initialize storage and the change feed before serving requests."""
    logger.info(
        "app.lifecycle.starting environment=%s db_auto_migrate=%s change_feed=%s",
        settings.environment,
        settings.db_auto_migrate,
        settings.change_feed_backend,
    )
    await init_db()
    feed = build_change_feed()
    set_change_feed(feed)
    await visible_task_cache.start(feed)
    logger.info("app.lifecycle.started")
    try:
        yield
    finally:
        await visible_task_cache.stop()
        await feed.close()
        set_change_feed(None)
        logger.info("app.lifecycle.stopped")


app = FastAPI(
    title="Task Share API",
    version="0.1.0",
    lifespan=lifespan,
    openapi_tags=OPENAPI_TAGS,
)

origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    logger.info("app.cors.enabled origins_count=%s", len(origins))
else:
    logger.info("app.cors.disabled")

install_error_handling(app)


@app.get(
    "/health",
    tags=["health"],
    response_model=HealthStatusResponse,
    summary="Health Check",
    description="Lightweight liveness probe endpoint.",
    responses=_HEALTH_OK_RESPONSE,
)
def health() -> HealthStatusResponse:
    """Lightweight liveness probe endpoint."""
    return HealthStatusResponse(ok=True)


@app.get(
    "/healthz",
    tags=["health"],
    response_model=HealthStatusResponse,
    summary="Health Alias Check",
    description="Alias liveness probe endpoint for platform compatibility.",
    responses=_HEALTH_OK_RESPONSE,
)
def healthz() -> HealthStatusResponse:
    """Alias liveness probe endpoint for platform compatibility."""
    return HealthStatusResponse(ok=True)


@app.get(
    "/readyz",
    tags=["health"],
    response_model=HealthStatusResponse,
    summary="Readiness Check",
    description="Readiness probe endpoint for service orchestration checks.",
)
def readyz() -> HealthStatusResponse:
    """Readiness probe endpoint for service orchestration checks."""
    return HealthStatusResponse(ok=True)


api_v1 = APIRouter(prefix="/api/v1")
api_v1.include_router(auth_router)
api_v1.include_router(profiles_router)
api_v1.include_router(tasks_router)
app.include_router(api_v1)

logger.debug("app.routes.registered count=%s", len(app.routes))
