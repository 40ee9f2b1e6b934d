"""
Job Registry

Process-wide map of in-flight dump jobs keyed by (operation, fingerprint).
Used to reject duplicate concurrent requests and to let background jobs be
listed and polled.

The lock is held only for the map mutation itself, never for the duration
of an export.

Usage:
    from dbmanager.core.job_registry import get_job_registry

    registry = get_job_registry()
    handle, already_running = registry.try_acquire(OperationKind.EXPORT, fp)
    if already_running:
        raise DuplicateJobError()
    ...
    registry.release(OperationKind.EXPORT, fp)
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from dbmanager.core.archive import JobManifest
from dbmanager.core.models import OperationKind

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExportState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    RUNNING_STRUCTURE = "running_structure"
    RUNNING_DATA = "running_data"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class JobHandle:
    """Result descriptor of one registered job."""
    operation: OperationKind
    fingerprint: str
    manifest: JobManifest = field(default_factory=JobManifest)
    status: JobStatus = JobStatus.RUNNING
    state: ExportState = ExportState.IDLE
    mode: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    archive_path: Optional[str] = None
    download_url: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def failed(self) -> bool:
        return self.status is JobStatus.FAILED

    @property
    def finished(self) -> bool:
        return self.status is not JobStatus.RUNNING

    def mark_failed(self, error: str, code: Optional[str] = None):
        self.status = JobStatus.FAILED
        self.state = ExportState.FAILED
        self.error = error
        self.error_code = code
        self.finished_at = datetime.utcnow()

    def mark_completed(self):
        self.status = JobStatus.COMPLETED
        self.state = ExportState.DONE
        self.finished_at = datetime.utcnow()

    def mark_cancelled(self):
        self.status = JobStatus.CANCELLED
        self.state = ExportState.FAILED
        self.finished_at = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation.value,
            "fingerprint": self.fingerprint,
            "status": self.status.value,
            "state": self.state.value,
            "mode": self.mode,
            "error": self.error,
            "error_code": self.error_code,
            "archive_path": self.archive_path,
            "download_url": self.download_url,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "manifest": self.manifest.to_list(),
        }


def _op(operation: Union[OperationKind, str]) -> OperationKind:
    return operation if isinstance(operation, OperationKind) else OperationKind(operation)


class JobRegistry:
    """
    Thread-safe presence tracker for jobs.

    Safe to share between asyncio tasks and worker threads.
    """

    def __init__(self):
        self._jobs: Dict[OperationKind, Dict[str, JobHandle]] = {op: {} for op in OperationKind}
        self._lock = threading.Lock()

    def try_acquire(
        self,
        operation: Union[OperationKind, str],
        fingerprint: str,
    ) -> Tuple[JobHandle, bool]:
        """
        Insert an empty handle unless one already exists.

        Returns:
            (handle, already_running). When already_running is True the
            handle belongs to the existing job and the caller must not start.
        """
        op = _op(operation)
        with self._lock:
            existing = self._jobs[op].get(fingerprint)
            if existing is not None:
                return existing, True
            handle = JobHandle(operation=op, fingerprint=fingerprint)
            self._jobs[op][fingerprint] = handle
        logger.debug(f"Registered {op.value} job {fingerprint[:12]}")
        return handle, False

    def release(self, operation: Union[OperationKind, str], fingerprint: str) -> bool:
        """Remove the entry. Removing an absent key is a no-op (returns False)."""
        op = _op(operation)
        with self._lock:
            removed = self._jobs[op].pop(fingerprint, None)
        if removed is not None:
            logger.debug(f"Released {op.value} job {fingerprint[:12]}")
        return removed is not None

    def discard(
        self,
        operation: Union[OperationKind, str],
        fingerprint: str,
        handle: JobHandle,
    ) -> bool:
        """Remove the entry only if it is still ``handle`` (compare-and-remove)."""
        op = _op(operation)
        with self._lock:
            if self._jobs[op].get(fingerprint) is handle:
                del self._jobs[op][fingerprint]
                return True
        return False

    def get(self, operation: Union[OperationKind, str], fingerprint: str) -> Optional[JobHandle]:
        op = _op(operation)
        with self._lock:
            return self._jobs[op].get(fingerprint)

    def list_jobs(self, operation: Union[OperationKind, str]) -> List[JobHandle]:
        op = _op(operation)
        with self._lock:
            jobs = list(self._jobs[op].values())
        return sorted(jobs, key=lambda h: h.created_at)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(jobs) for jobs in self._jobs.values())

    def clear(self):
        """Drop every entry (for testing)."""
        with self._lock:
            for jobs in self._jobs.values():
                jobs.clear()


# =============================================================================
# Singleton
# =============================================================================

_job_registry: Optional[JobRegistry] = None
_singleton_lock = threading.Lock()


def get_job_registry() -> JobRegistry:
    """Get or create the process-wide registry."""
    global _job_registry
    with _singleton_lock:
        if _job_registry is None:
            _job_registry = JobRegistry()
            logger.info("Initialized job registry")
        return _job_registry


def reset_job_registry():
    """Reset the process-wide registry (for testing)."""
    global _job_registry
    with _singleton_lock:
        _job_registry = None
