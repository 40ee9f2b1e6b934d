"""
Export Orchestrator

Sequences the structure and data dump passes for one request, guards
against duplicate concurrent jobs through the JobRegistry and, in
background mode, archives the produced files.

State machine:

    idle -> validating -> running_structure -> running_data -> finalizing -> done
                 \\______________\\___________________\\______________\\-> failed

Two execution regimes:

- Foreground (inline-stream, inline-download): the caller awaits the export;
  setting ``cancel_event`` (wired to client liveness by the HTTP layer) kills
  the running subprocess. The registry entry lives exactly as long as the call.
- Background (background-file): a detached asyncio task writes into the cache
  directory, archives the result and records the outcome on the JobHandle.
  It cannot be cancelled. Failed jobs stay registered until resubmitted.

Usage:
    exporter = Exporter()

    # Foreground
    handle = exporter.start_inline(request)
    await exporter.run_inline(request, handle, stream, cancel_event)

    # Background
    submission = await exporter.submit_background(request)
    print(submission.download_url)
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set

from dbmanager.core.archive import ArtifactDescriptor, finalize_archive
from dbmanager.core.artifact_sinks import FileTarget, InlineTarget, SinkTarget, resolve_sink
from dbmanager.core.cmd_recorder import CmdRecorder
from dbmanager.core.config import Settings, cache_dir, get_settings
from dbmanager.core.dump_runner import build_dump_args, run_dump, set_kind
from dbmanager.core.errors import (
    DbManagerError,
    DuplicateJobError,
    ExportCancelledError,
    ValidationError,
)
from dbmanager.core.job_registry import ExportState, JobHandle, JobRegistry, get_job_registry
from dbmanager.core.metrics import init_metrics, record_duplicate, record_job, record_pass
from dbmanager.core.models import (
    CHARSETS,
    ArtifactKind,
    DbAuth,
    DumpRequest,
    OperationKind,
    compute_fingerprint,
)
from dbmanager.core.response_stream import ResponseStream
from dbmanager.core.structured_logging import (
    get_logger,
    log_job_end,
    log_job_start,
    with_job_context,
)

logger = get_logger(__name__)

PASS_STATES = {
    ArtifactKind.STRUCTURE: ExportState.RUNNING_STRUCTURE,
    ArtifactKind.DATA: ExportState.RUNNING_DATA,
}

BACKGROUND_STARTED = "The task has been started in the background"

PassCallback = Callable[[ArtifactKind, SinkTarget], None]


@dataclass
class ExportPlan:
    """File layout of one background export."""
    files: Dict[ArtifactKind, Path]
    archive: Path


@dataclass
class BackgroundSubmission:
    """Immediate acknowledgment of a background export."""
    fingerprint: str
    handle: JobHandle
    download_url: str
    task: "asyncio.Task[None]"
    message: str = BACKGROUND_STARTED

    def to_dict(self):
        return {
            "fingerprint": self.fingerprint,
            "message": self.message,
            "download_url": self.download_url,
            "status": self.handle.status.value,
        }


class Exporter:
    """Export orchestrator bound to a settings object and a job registry."""

    operation = OperationKind.EXPORT

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[JobRegistry] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry if registry is not None else get_job_registry()
        self._background: Set[asyncio.Task] = set()
        init_metrics(self.settings.metrics_enabled)

    # - - - Validation and registration - - -

    def validate(self, request: DumpRequest) -> DumpRequest:
        """Normalize and validate. No side effects."""
        return request.validate()

    def fingerprint(self, request: DumpRequest) -> str:
        return compute_fingerprint(request)

    def acquire(self, request: DumpRequest) -> JobHandle:
        """
        Register the request or raise DuplicateJobError.

        A failed job with the same fingerprint is replaced: resubmitting is
        the explicit retry.
        """
        fp = self.fingerprint(request)
        handle, running = self.registry.try_acquire(self.operation, fp)
        if running and handle.failed:
            logger.info(f"Retrying failed {self.operation.value} job {fp[:12]}")
            self.registry.discard(self.operation, fp, handle)
            handle, running = self.registry.try_acquire(self.operation, fp)
        if running:
            record_duplicate(self.operation.value)
            logger.warning(f"Rejected duplicate {self.operation.value} job {fp[:12]}")
            raise DuplicateJobError(details={"fingerprint": fp, "status": handle.status.value})
        handle.mode = request.mode.value
        handle.state = ExportState.VALIDATING
        return handle

    # - - - Pass engine - - -

    async def dump(
        self,
        auth: DbAuth,
        tables: Sequence[str],
        structure: Optional[SinkTarget] = None,
        data: Optional[SinkTarget] = None,
        reset_auto_increment: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
        handle: Optional[JobHandle] = None,
        on_pass_start: Optional[PassCallback] = None,
        on_pass_finished: Optional[PassCallback] = None,
    ) -> Dict[ArtifactKind, int]:
        """
        Run the structure pass then the data pass, each only if its target is
        given. Passes share one argument list and never overlap; the first
        failure aborts the rest.

        Returns:
            Bytes relayed per artifact kind
        """
        if not tables:
            raise ValidationError("DBM-1001")
        if auth.charset not in CHARSETS:
            raise ValidationError("DBM-1002", charset=auth.charset)

        logger.info(f"Starting backup: {list(tables)}")
        args = build_dump_args(auth, tables, ArtifactKind.STRUCTURE, self.settings.default_port)
        targets = {ArtifactKind.STRUCTURE: structure, ArtifactKind.DATA: data}
        copied: Dict[ArtifactKind, int] = {}

        for kind in ArtifactKind:
            target = targets[kind]
            if target is None:
                continue
            set_kind(args, kind)
            if handle is not None:
                handle.state = PASS_STATES[kind]
            if on_pass_start is not None:
                on_pass_start(kind, target)

            sink = resolve_sink(target, reset_auto_increment)
            started = time.monotonic()
            copied[kind] = await run_dump(
                args,
                sink,
                CmdRecorder(self.settings.stderr_tail_lines),
                cancel_event=cancel_event,
                command=self.settings.dump_command,
                chunk_size=self.settings.copy_chunk_size,
            )
            if sink.has_finalizer:
                await asyncio.to_thread(sink.finalize)
            record_pass(kind.value, time.monotonic() - started, copied[kind])
            logger.info(f"Finished {kind.value} pass ({copied[kind]} bytes)")

            if on_pass_finished is not None:
                on_pass_finished(kind, target)

        return copied

    # - - - Foreground - - -

    def start_inline(self, request: DumpRequest) -> JobHandle:
        """Validate and register a foreground export before any output is produced."""
        request = self.validate(request)
        if not request.mode.is_inline:
            raise ValidationError("DBM-1004", field="output", value=request.mode.value)
        return self.acquire(request)

    async def run_inline(
        self,
        request: DumpRequest,
        handle: JobHandle,
        stream: ResponseStream,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[ArtifactKind, int]:
        """
        Dump straight into ``stream``. The registry entry is released when
        this returns, whatever the outcome. The stream is left open.
        """
        request = request.normalized()
        fp = handle.fingerprint
        target = InlineTarget(stream)
        with with_job_context(self.operation.value, fp):
            log_job_start(self.operation.value, fp, request.to_log_dict())
            try:
                copied = await self.dump(
                    request.auth,
                    request.tables,
                    structure=target if request.wants(ArtifactKind.STRUCTURE) else None,
                    data=target if request.wants(ArtifactKind.DATA) else None,
                    reset_auto_increment=False,
                    cancel_event=cancel_event,
                    handle=handle,
                )
            except (ExportCancelledError, asyncio.CancelledError):
                handle.mark_cancelled()
                record_job(self.operation.value, request.mode.value, "cancelled")
                log_job_end(self.operation.value, fp, success=False, cancelled=True)
                raise
            except DbManagerError as e:
                handle.mark_failed(e.message, e.code)
                record_job(self.operation.value, request.mode.value, "failed")
                log_job_end(self.operation.value, fp, success=False, error=e.message)
                raise
            finally:
                self.registry.release(self.operation, fp)

            handle.mark_completed()
            record_job(self.operation.value, request.mode.value, "completed")
            log_job_end(self.operation.value, fp, success=True,
                        bytes={k.value: v for k, v in copied.items()})
            return copied

    async def export(
        self,
        request: DumpRequest,
        stream: Optional[ResponseStream] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        """
        Run a request in the regime its output mode calls for.

        Returns bytes per kind for inline modes, a BackgroundSubmission otherwise.
        """
        request = self.validate(request)
        if not request.mode.is_inline:
            return await self.submit_background(request)
        if stream is None:
            raise ValidationError("DBM-1004", field="stream", value=None)
        handle = self.start_inline(request)
        return await self.run_inline(request, handle, stream, cancel_event)

    def download_filename(self, request: DumpRequest, timestamp: Optional[int] = None) -> str:
        ts = timestamp if timestamp is not None else int(time.time())
        return f"{request.auth.database}-sql-{ts}.sql"

    # - - - Background - - -

    def plan_files(self, request: DumpRequest, fingerprint: str,
                   timestamp: Optional[int] = None) -> ExportPlan:
        save_dir = cache_dir(self.operation.value, self.settings)
        ts = timestamp if timestamp is not None else int(time.time())
        stem = f"{request.auth.database}-{{}}-{ts}-{fingerprint[:8]}"
        names = {ArtifactKind.STRUCTURE: "struct", ArtifactKind.DATA: "data"}
        files = {k: save_dir / (stem.format(names[k]) + ".sql") for k in request.kinds}
        return ExportPlan(files=files, archive=save_dir / (stem.format("sql") + ".zip"))

    async def submit_background(self, request: DumpRequest) -> BackgroundSubmission:
        """
        Register the job and start it detached. Returns immediately.

        Raises:
            ValidationError, DuplicateJobError
        """
        request = self.validate(request)
        handle = self.acquire(request)
        fp = handle.fingerprint
        try:
            plan = self.plan_files(request, fp)
        except BaseException:
            self.registry.release(self.operation, fp)
            raise
        handle.download_url = self.settings.download_url

        with with_job_context(self.operation.value, fp):
            task = asyncio.get_running_loop().create_task(
                self._run_background(request, handle, plan),
                name=f"dbmanager-{self.operation.value}-{fp[:12]}",
            )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        logger.info(f"Background {self.operation.value} job {fp[:12]} started")

        return BackgroundSubmission(
            fingerprint=fp,
            handle=handle,
            download_url=handle.download_url,
            task=task,
        )

    async def _run_background(self, request: DumpRequest, handle: JobHandle, plan: ExportPlan):
        """
        Detached job body. Every exception is captured into the handle and
        the manifest; nothing escapes to the event loop.
        """
        fp = handle.fingerprint
        manifest = handle.manifest
        current: Dict[str, ArtifactDescriptor] = {}

        def on_start(kind: ArtifactKind, target: SinkTarget):
            current["entry"] = manifest.append(ArtifactDescriptor(path=str(plan.files[kind])))

        def on_finished(kind: ArtifactKind, target: SinkTarget):
            current.pop("entry").mark_finished()

        log_job_start(self.operation.value, fp, request.to_log_dict())
        try:
            await self.dump(
                request.auth,
                request.tables,
                structure=self._file_target(plan, ArtifactKind.STRUCTURE),
                data=self._file_target(plan, ArtifactKind.DATA),
                reset_auto_increment=request.reset_auto_increment,
                handle=handle,
                on_pass_start=on_start,
                on_pass_finished=on_finished,
            )

            handle.state = ExportState.FINALIZING
            files: List[Path] = [Path(e.path) for e in manifest]
            archive_entry = await asyncio.to_thread(finalize_archive, manifest, files, plan.archive)
            handle.archive_path = archive_entry.path

        except asyncio.CancelledError:
            # Event loop shutdown; there is no revocation API.
            handle.mark_cancelled()
            self.registry.release(self.operation, fp)
            raise
        except Exception as e:
            code = e.code if isinstance(e, DbManagerError) else "DBM-5000"
            message = e.message if isinstance(e, DbManagerError) else f"{type(e).__name__}: {e}"
            if not isinstance(e, DbManagerError):
                logger.exception(f"Unexpected fault in background job {fp[:12]}")
            entry = current.get("entry")
            if entry is not None:
                entry.error = message
                entry.mark_finished()
            handle.mark_failed(message, code)
            record_job(self.operation.value, request.mode.value, "failed")
            log_job_end(self.operation.value, fp, success=False, error=message)
            return

        handle.mark_completed()
        self.registry.release(self.operation, fp)
        record_job(self.operation.value, request.mode.value, "completed")
        log_job_end(self.operation.value, fp, success=True, archive=handle.archive_path)

    @staticmethod
    def _file_target(plan: ExportPlan, kind: ArtifactKind) -> Optional[FileTarget]:
        path = plan.files.get(kind)
        return FileTarget(path, kind) if path is not None else None

    async def wait_background(self):
        """Wait for every detached job started by this exporter."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # - - - Inspection - - -

    def list_jobs(self, operation: OperationKind = OperationKind.EXPORT) -> List[JobHandle]:
        return self.registry.list_jobs(operation)

    def job_status(self, fingerprint: str,
                   operation: OperationKind = OperationKind.EXPORT) -> Optional[JobHandle]:
        return self.registry.get(operation, fingerprint)
