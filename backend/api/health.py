"""
Health and diagnostics API.

Lightweight endpoints for operational monitoring without exposing secrets.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import inspect

from backend.core.database import check_connection, get_engine
from backend.core.logging import latency_bucket_ms
from backend.features.jobs.queue import count_by_status

logger = logging.getLogger("subengine.health")

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "app_users",
    "subscription_plans",
    "user_subscriptions",
    "content_items",
    "background_jobs",
    "webhook_logs",
]


class DBHealth(BaseModel):
    connected: bool
    latency_ms: Optional[float] = None  # None when ``now`` is pinned, for determinism in tests
    tables_present: list[str] = []


class HealthResponse(BaseModel):
    ok: bool
    db: DBHealth
    jobs: dict = {}
    computed_at: str  # UTC ISO format


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})


@router.get("/db", response_model=HealthResponse)
def health_db(now: Optional[str] = Query(None)):
    """Database connectivity, present tables and job queue depth."""
    start = time.perf_counter()
    is_connected = check_connection()
    latency_ms = (time.perf_counter() - start) * 1000

    db_health = DBHealth(connected=is_connected, latency_ms=None if now else latency_ms)
    jobs = {}
    if is_connected:
        try:
            inspector = inspect(get_engine())
            db_health.tables_present = [t for t in REQUIRED_TABLES if inspector.has_table(t)]
            jobs = count_by_status()
        except Exception as e:
            logger.warning(f"[health] table/queue probe failed: {e}")

    logger.info(
        "[health] db probe",
        extra={"status": "ok" if is_connected else "down", "latency_bucket": latency_bucket_ms(latency_ms)},
    )
    return HealthResponse(
        ok=is_connected,
        db=db_health,
        jobs=jobs,
        computed_at=now or datetime.now(timezone.utc).isoformat(),
    )
