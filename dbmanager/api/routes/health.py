"""
Health check endpoints.
"""
import logging
from datetime import datetime

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from dbmanager import __version__
from dbmanager.core.metrics import is_enabled

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health(request: Request):
    """
    Liveness probe - Is the service running?

    Also reports how many jobs the registry currently tracks.
    """
    jobs = request.app.state.exporter.list_jobs()
    return {
        "status": "healthy",
        "version": __version__,
        "environment": request.app.state.settings.env,
        "timestamp": datetime.utcnow().isoformat(),
        "jobs": {
            "tracked": len(jobs),
            "running": sum(1 for h in jobs if not h.finished),
        },
    }


@router.get("/healthz")
async def healthz(request: Request):
    """Kubernetes-style liveness endpoint (alias for /health)."""
    return await health(request)


@router.get("/metrics")
async def metrics():
    if not is_enabled():
        return Response(status_code=404)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
