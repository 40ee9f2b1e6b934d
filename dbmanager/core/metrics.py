"""
dbmanager Metrics

Prometheus counters and histograms for dump jobs, gated by
DBMANAGER_METRICS_ENABLED.

Usage:
    from dbmanager.core.metrics import record_job, record_pass

    record_job("export", "background-file", "completed")
    record_pass("structure", 1.8, 20480)
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

METRICS: Dict[str, Any] = {}

_initialized = False
_enabled = False


def _create_metrics():
    METRICS["dump_jobs_total"] = Counter(
        "dbmanager_dump_jobs_total",
        "Dump job outcomes",
        ["operation", "mode", "state"]
    )

    METRICS["dump_pass_seconds"] = Histogram(
        "dbmanager_dump_pass_seconds",
        "Duration of a single dump pass in seconds",
        ["kind"],
        buckets=[0.5, 1, 5, 10, 30, 60, 300, 900, 3600]
    )

    METRICS["dump_bytes_total"] = Counter(
        "dbmanager_dump_bytes_total",
        "Bytes relayed from the dump utility",
        ["kind"]
    )

    METRICS["duplicate_rejections_total"] = Counter(
        "dbmanager_duplicate_rejections_total",
        "Submissions rejected because an identical job was running",
        ["operation"]
    )


def init_metrics(enabled: Optional[bool] = None) -> bool:
    """
    Register metrics once.

    Args:
        enabled: Override the settings flag (used by tests)

    Returns:
        Whether metrics are enabled
    """
    global _initialized, _enabled

    if _initialized:
        return _enabled

    if enabled is None:
        from dbmanager.core.config import get_settings
        enabled = get_settings().metrics_enabled

    _enabled = bool(enabled)
    if _enabled and not METRICS:
        _create_metrics()

    _initialized = True
    logger.info(f"Metrics initialized (enabled={_enabled})")
    return _enabled


def is_enabled() -> bool:
    if not _initialized:
        init_metrics()
    return _enabled


def get_metric(name: str) -> Optional[Any]:
    if not is_enabled():
        return None
    return METRICS.get(name)


# =============================================================================
# Recording Helpers (safe no-ops when disabled)
# =============================================================================

def record_job(operation: str, mode: str, state: str):
    metric = get_metric("dump_jobs_total")
    if metric is not None:
        metric.labels(operation=operation, mode=mode, state=state).inc()


def record_pass(kind: str, seconds: float, nbytes: int = 0):
    duration = get_metric("dump_pass_seconds")
    if duration is not None:
        duration.labels(kind=kind).observe(seconds)
    total = get_metric("dump_bytes_total")
    if total is not None and nbytes:
        total.labels(kind=kind).inc(nbytes)


def record_duplicate(operation: str):
    metric = get_metric("duplicate_rejections_total")
    if metric is not None:
        metric.labels(operation=operation).inc()


def reset_metrics():
    """Re-read the enabled flag on next use (for testing). Collectors stay registered."""
    global _initialized, _enabled
    _initialized = False
    _enabled = False
