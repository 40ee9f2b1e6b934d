"""
dbmanager API - FastAPI Application

Thin HTTP surface over the export orchestrator.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dbmanager import __version__
from dbmanager.api.middleware import RequestIdMiddleware, get_request_id
from dbmanager.api.routes import exports, health
from dbmanager.core.config import Settings, get_settings
from dbmanager.core.errors import DbManagerError
from dbmanager.core.exporter import Exporter
from dbmanager.core.job_registry import JobRegistry
from dbmanager.core.metrics import init_metrics

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings: Settings = app.state.settings
    level = "DEBUG" if settings.debug else settings.log_level.upper()
    logging.getLogger("dbmanager").setLevel(level)
    init_metrics(settings.metrics_enabled)
    logger.info(f"dbmanager API starting up ({settings.env})...")
    yield
    running = [h for h in app.state.exporter.list_jobs() if not h.finished]
    if running:
        logger.warning(f"Shutting down with {len(running)} background job(s) still running")
    logger.info("dbmanager API shutting down...")


async def dbmanager_error_handler(request: Request, exc: DbManagerError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_response(get_request_id()))


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[JobRegistry] = None,
) -> FastAPI:
    """Create and configure FastAPI application."""
    settings = settings or get_settings()
    app = FastAPI(
        title="dbmanager API",
        description="Database dump export orchestration",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.exporter = Exporter(settings=settings, registry=registry)

    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(DbManagerError, dbmanager_error_handler)

    # Register routes
    app.include_router(health.router, tags=["health"])
    app.include_router(exports.router, prefix="/v1", tags=["dbmanager"])

    return app


app = create_app()
