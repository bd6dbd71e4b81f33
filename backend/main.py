import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from dotenv import load_dotenv

# Load env from backend/.env
backend_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(backend_dir, ".env"))

from backend.core.config import settings, validate_config
from backend.core.database import create_all_tables
from backend.core.logging import configure_logging
from backend.core.middleware.request_id import RequestIdMiddleware
from backend.core.middleware.metrics import MetricsMiddleware
from backend.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from backend.api import admin_subscriptions, health, metrics, storage, subscriptions, webhooks
from backend.features.plans.service import seed_default_plans

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("subengine")
    logger.info("[startup] subscription engine starting")
    app.state.startup_time = time.time()
    create_all_tables()
    seeded = seed_default_plans()
    if seeded:
        logger.info(f"[startup] seeded {seeded} default plans")
    try:
        yield
    finally:
        logger.info("[shutdown] subscription engine stopping")


app = FastAPI(title="Subscription Entitlement Engine", lifespan=lifespan)

# Middlewares
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.root_router)
app.include_router(health.router)
app.include_router(metrics.router)
app.include_router(subscriptions.router)
app.include_router(storage.router)
app.include_router(webhooks.router)
app.include_router(admin_subscriptions.router)
app.include_router(admin_subscriptions.cron_router)
