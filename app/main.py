from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool
from starlette.responses import JSONResponse, Response

from app.api.webhooks import router as webhooks_router
from app.config import settings, validate_settings
from app.db import SessionLocal
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.observability import ObservabilityMiddleware
from app.services.scheduler import initialize_jobs
from app.telemetry import setup_otel

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[arg-type]
    for warning in validate_settings(settings):
        logger.warning("Config warning: %s", warning)

    # Webhook ingestion must keep working even when the broker is down.
    app.state.background_jobs_enabled = await run_in_threadpool(
        initialize_jobs, SessionLocal
    )
    logger.info(
        "Webhook API started (pid=%s, background_jobs=%s)",
        os.getpid(),
        app.state.background_jobs_enabled,
    )
    yield
    logger.info("Webhook API shutting down")


app = FastAPI(title=f"{settings.app_name} Billing API", lifespan=lifespan)
app.state.background_jobs_enabled = False

configure_logging()
setup_otel(app)
register_error_handlers(app)
app.add_middleware(ObservabilityMiddleware)

app.include_router(webhooks_router)
app.include_router(webhooks_router, prefix="/api/v1")


def _check_database() -> str:
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    finally:
        db.close()
    return "ok"


def _check_redis() -> str:
    import redis as redis_lib

    client = redis_lib.Redis.from_url(
        settings.redis_url, decode_responses=True, socket_timeout=2
    )
    client.ping()
    return "ok"


_READINESS_CHECKS = {"database": _check_database, "redis": _check_redis}


@app.get("/health")
def health_check() -> dict[str, str]:
    """Liveness: the process is up."""
    return {"status": "ok"}


@app.get("/health/ready")
def readiness_check() -> JSONResponse:
    """Readiness: database and broker reachable.

    Background jobs being disabled does not fail readiness, since webhooks
    are still accepted; it is reported so operators can see it.
    """
    checks: dict[str, str] = {}
    for name, check in _READINESS_CHECKS.items():
        try:
            checks[name] = check()
        except Exception as exc:
            logger.warning("Readiness check %s failed: %s", name, exc)
            checks[name] = f"error: {exc}"

    ready = all(value == "ok" for value in checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ok" if ready else "degraded",
            "checks": checks,
            "background_jobs": bool(getattr(app.state, "background_jobs_enabled", False)),
        },
    )


@app.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
