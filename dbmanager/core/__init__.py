"""dbmanager Core Package."""
from .config import Settings, get_settings
from .errors import DbManagerError, DuplicateJobError, ValidationError
from .exporter import BackgroundSubmission, Exporter
from .job_registry import JobHandle, JobRegistry, get_job_registry
from .metrics import init_metrics, is_enabled, record_job, record_pass
from .models import ArtifactKind, DbAuth, DumpRequest, OperationKind, OutputMode, compute_fingerprint

__all__ = [
    "Settings", "get_settings",
    "DbManagerError", "DuplicateJobError", "ValidationError",
    "BackgroundSubmission", "Exporter",
    "JobHandle", "JobRegistry", "get_job_registry",
    "init_metrics", "is_enabled", "record_job", "record_pass",
    "ArtifactKind", "DbAuth", "DumpRequest", "OperationKind", "OutputMode", "compute_fingerprint",
]
