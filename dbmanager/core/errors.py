"""
Error Catalog Module

Structured failure catalog with error codes and metadata for dump jobs.

Features:
- Canonical error codes (DBM-XXXX format)
- Error categories (validation, conflict, process, filesystem, archive)
- Machine-readable error responses
- HTTP status code mapping

Usage:
    from dbmanager.core.errors import ValidationError, DuplicateJobError

    # Raise typed error
    raise ValidationError("DBM-1001")

    # Create error response for API
    return error_response("DBM-2001", fingerprint=fp)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Error categories for classification."""
    VALIDATION = "validation"      # Rejected before any subprocess starts
    CONFLICT = "conflict"          # Duplicate in-flight job
    CANCELLED = "cancelled"        # Caller went away
    PROCESS = "process"            # Dump utility could not start or failed
    STREAM = "stream"              # Relaying output to a sink failed
    FILESYSTEM = "filesystem"      # Directory/file creation or stat failures
    ARCHIVE = "archive"            # Compression during finalization
    SYSTEM = "system"              # Unexpected faults


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ErrorDefinition:
    """Definition of an error in the catalog."""
    code: str                    # e.g., "DBM-1001"
    message: str                 # Human-readable message template
    category: ErrorCategory
    severity: ErrorSeverity
    http_status: int
    description: str = ""
    resolution: str = ""
    retry_allowed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "http_status": self.http_status,
            "description": self.description,
            "resolution": self.resolution,
            "retry_allowed": self.retry_allowed,
        }


# =============================================================================
# Error Catalog (Canonical Error Definitions)
# =============================================================================

ERROR_CATALOG: Dict[str, ErrorDefinition] = {
    # =========================================================================
    # 1000-1999: Validation Errors
    # =========================================================================
    "DBM-1001": ErrorDefinition(
        code="DBM-1001",
        message="No table selected for export",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        http_status=400,
        resolution="Select at least one table or view",
    ),
    "DBM-1002": ErrorDefinition(
        code="DBM-1002",
        message="Invalid character set: {charset}",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        http_status=400,
        description="The character set is not in the recognized list",
        resolution="Use a MySQL character set such as utf8mb4",
    ),
    "DBM-1003": ErrorDefinition(
        code="DBM-1003",
        message="No artifact type selected (structure or data)",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        http_status=400,
    ),
    "DBM-1004": ErrorDefinition(
        code="DBM-1004",
        message="Unsupported value for {field}: {value}",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        http_status=400,
    ),
    "DBM-1005": ErrorDefinition(
        code="DBM-1005",
        message="No database selected",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        http_status=400,
    ),

    # =========================================================================
    # 2000-2999: Job Lifecycle
    # =========================================================================
    "DBM-2001": ErrorDefinition(
        code="DBM-2001",
        message="The job is already being processed in the background, please wait",
        category=ErrorCategory.CONFLICT,
        severity=ErrorSeverity.WARNING,
        http_status=409,
        description="An identical export is already in flight",
        resolution="Poll the job list and retry once the running job finishes",
        retry_allowed=True,
    ),
    "DBM-2002": ErrorDefinition(
        code="DBM-2002",
        message="Export cancelled: the client went away",
        category=ErrorCategory.CANCELLED,
        severity=ErrorSeverity.INFO,
        http_status=499,
        retry_allowed=True,
    ),

    # =========================================================================
    # 5000-5999: Execution Errors
    # =========================================================================
    "DBM-5000": ErrorDefinition(
        code="DBM-5000",
        message="Internal error: {reason}",
        category=ErrorCategory.SYSTEM,
        severity=ErrorSeverity.CRITICAL,
        http_status=500,
    ),
    "DBM-5001": ErrorDefinition(
        code="DBM-5001",
        message="Failed to backup: could not start {command}: {reason}",
        category=ErrorCategory.PROCESS,
        severity=ErrorSeverity.ERROR,
        http_status=500,
        resolution="Check that the dump utility is installed and on PATH",
    ),
    "DBM-5002": ErrorDefinition(
        code="DBM-5002",
        message="{command} exited with status {returncode}: {stderr}",
        category=ErrorCategory.PROCESS,
        severity=ErrorSeverity.ERROR,
        http_status=502,
        description="The dump utility reported a failure",
        retry_allowed=True,
    ),
    "DBM-5003": ErrorDefinition(
        code="DBM-5003",
        message="Failed to backup: {reason}",
        category=ErrorCategory.STREAM,
        severity=ErrorSeverity.ERROR,
        http_status=500,
        description="Relaying dump output to its destination failed",
        retry_allowed=True,
    ),
    "DBM-5004": ErrorDefinition(
        code="DBM-5004",
        message="Failed to backup: {reason}",
        category=ErrorCategory.FILESYSTEM,
        severity=ErrorSeverity.ERROR,
        http_status=500,
    ),
    "DBM-5005": ErrorDefinition(
        code="DBM-5005",
        message="Failed to create archive {path}: {reason}",
        category=ErrorCategory.ARCHIVE,
        severity=ErrorSeverity.ERROR,
        http_status=500,
        description="Intermediate dump files were kept for inspection",
        retry_allowed=True,
    ),
}


# =============================================================================
# Exception Classes
# =============================================================================

class DbManagerError(Exception):
    """Base exception for dbmanager errors."""

    default_code = "DBM-5000"

    def __init__(
        self,
        code: Optional[str] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        **format_args,
    ):
        self.code = code or self.default_code
        self.details = details or {}

        self.definition = ERROR_CATALOG.get(self.code)

        if self.definition:
            if message:
                self.message = message
            else:
                try:
                    self.message = self.definition.message.format(**format_args)
                except KeyError:
                    self.message = self.definition.message
            self.http_status = self.definition.http_status
            self.category = self.definition.category
        else:
            self.message = message or f"Unknown error: {self.code}"
            self.http_status = 500
            self.category = ErrorCategory.SYSTEM

        super().__init__(self.message)

    def to_response(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Convert to API error response."""
        response = {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category.value,
            },
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }

        if self.details:
            safe_details = {k: v for k, v in self.details.items()
                            if k not in ("password", "token", "secret", "args")}
            response["error"]["details"] = safe_details

        if request_id:
            response["request_id"] = request_id

        if self.definition:
            response["error"]["retry_allowed"] = self.definition.retry_allowed
            if self.definition.resolution:
                response["error"]["resolution"] = self.definition.resolution

        return response


class ValidationError(DbManagerError):
    """Request rejected before any subprocess is spawned (1000 series)."""
    default_code = "DBM-1001"


class DuplicateJobError(DbManagerError):
    """An export with the same fingerprint is already in flight."""
    default_code = "DBM-2001"


class ExportCancelledError(DbManagerError):
    """The foreground caller disconnected; not an application failure."""
    default_code = "DBM-2002"


class ProcessSpawnError(DbManagerError):
    """The dump utility could not be started."""
    default_code = "DBM-5001"


class ProcessExecutionError(DbManagerError):
    """The dump utility exited non-zero. ``details`` carries the stderr tail."""
    default_code = "DBM-5002"

    @property
    def stderr(self) -> str:
        return self.details.get("stderr", "")

    @property
    def returncode(self) -> Optional[int]:
        return self.details.get("returncode")


class StreamCopyError(DbManagerError):
    """Relaying subprocess output into a sink failed."""
    default_code = "DBM-5003"


class FilesystemError(DbManagerError):
    """Directory/file creation or stat failure."""
    default_code = "DBM-5004"


class ArchivalError(DbManagerError):
    """Compression failed during finalization."""
    default_code = "DBM-5005"


# =============================================================================
# Helper Functions
# =============================================================================

def error_response(
    code: str,
    message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
    **format_args,
) -> Dict[str, Any]:
    """Create a standard error response without raising."""
    error = DbManagerError(code, message, details, **format_args)
    return error.to_response(request_id)


def get_error_catalog() -> Dict[str, Dict[str, Any]]:
    """Get the full error catalog as JSON-serializable dict."""
    return {code: defn.to_dict() for code, defn in ERROR_CATALOG.items()}


def get_errors_by_category(category: ErrorCategory) -> List[Dict[str, Any]]:
    """Get all errors in a category."""
    return [
        defn.to_dict() for defn in ERROR_CATALOG.values()
        if defn.category == category
    ]


def list_error_codes() -> List[str]:
    """List all error codes."""
    return sorted(ERROR_CATALOG.keys())
