"""
Structured Logging with Job Context

Context-aware structured logging for dump jobs. Every record emitted while a
job is active carries the operation and the job fingerprint, including records
from background tasks spawned inside the job context.

Usage:
    from dbmanager.core.structured_logging import (
        get_logger,
        with_job_context,
        log_job_start,
        log_job_end,
    )

    logger = get_logger(__name__)

    with with_job_context("export", fingerprint):
        logger.info("Running structure pass", extra={"tables": 3})
"""
from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

# Context variable for the operation kind (export/import)
operation_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "operation",
    default=None
)

# Context variable for the job fingerprint
fingerprint_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "fingerprint",
    default=None
)


# =============================================================================
# Job Context Management
# =============================================================================

def get_operation() -> Optional[str]:
    """Get current operation from context."""
    return operation_var.get()


def get_fingerprint() -> Optional[str]:
    """Get current job fingerprint from context."""
    return fingerprint_var.get()


@contextmanager
def with_job_context(operation: str, fingerprint: str):
    """
    Context manager to scope log context to one job.

    Tasks created with ``asyncio.create_task`` inside the block copy the
    context, so detached background jobs keep their fingerprint.
    """
    op_token = operation_var.set(operation)
    fp_token = fingerprint_var.set(fingerprint)
    try:
        yield fingerprint
    finally:
        operation_var.reset(op_token)
        fingerprint_var.reset(fp_token)


# =============================================================================
# Structured Logging Formatter
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """Log formatter that adds a timestamp and the current job context."""

    def format(self, record: logging.LogRecord) -> str:
        record.operation = get_operation() or "-"
        fingerprint = get_fingerprint()
        record.fingerprint = fingerprint[:12] if fingerprint else "-"
        record.timestamp = datetime.utcnow().isoformat() + "Z"
        return super().format(record)


# Format: [timestamp] [level] [op] [job] [logger] message
STRUCTURED_FORMAT = (
    "[%(timestamp)s] [%(levelname)s] "
    "[op:%(operation)s] [job:%(fingerprint)s] "
    "[%(name)s] %(message)s"
)


def get_logger(name: str) -> logging.Logger:
    """
    Get a structured logger with job context support.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)

    # Only configure if not already configured
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(StructuredFormatter(STRUCTURED_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    return logger


# =============================================================================
# Job Lifecycle Logging Helpers
# =============================================================================

def log_job_start(operation: str, fingerprint: str, params: Optional[Dict[str, Any]] = None):
    """Log job start with sensitive parameters redacted."""
    logger = get_logger("dbmanager.job")

    safe_params = _filter_sensitive_fields(params or {})

    with with_job_context(operation, fingerprint):
        logger.info(
            f"Job started: {operation}",
            extra={
                "event": "job_start",
                "operation": operation,
                "params": safe_params,
            }
        )


def log_job_end(
    operation: str,
    fingerprint: str,
    success: bool = True,
    error: Optional[str] = None,
    cancelled: bool = False,
    **result_fields
):
    """
    Log job end.

    Cancellation is reported at INFO level; it is the caller going away,
    not a failure of the export itself.
    """
    logger = get_logger("dbmanager.job")

    safe_results = _filter_sensitive_fields(result_fields)

    with with_job_context(operation, fingerprint):
        if success:
            logger.info(
                f"Job completed: {operation}",
                extra={"event": "job_end", "success": True, **safe_results}
            )
        elif cancelled:
            logger.info(
                f"Job cancelled: {operation}",
                extra={"event": "job_cancelled", "success": False, **safe_results}
            )
        else:
            logger.error(
                f"Job failed: {operation}: {error}",
                extra={"event": "job_error", "success": False, "error": error, **safe_results}
            )


# =============================================================================
# Security Helpers
# =============================================================================

SENSITIVE_FIELD_NAMES = {
    "password", "passwd", "secret", "token", "api_key", "apikey", "auth",
    "credential", "private_key", "cookie",
}

REDACTED = "***REDACTED***"


def _filter_sensitive_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    """Filter sensitive fields from data before logging."""
    filtered = {}
    for key, value in data.items():
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_FIELD_NAMES):
            filtered[key] = REDACTED
        elif isinstance(value, dict):
            filtered[key] = _filter_sensitive_fields(value)
        else:
            filtered[key] = value
    return filtered


def redact_args(args: Iterable[str]) -> List[str]:
    """Mask the ``-p<password>`` flag of a dump argument list."""
    return ["-p" + REDACTED if a.startswith("-p") and not a.startswith("--") and len(a) > 2 else a
            for a in args]
