"""
Export API Routes

Submit a dump export and inspect registered jobs.

Inline responses start once the dump has produced its first chunk. A failure
before that point is returned as a JSON error. A failure after it cannot
change the status any more: the body ends early and the error is logged here
and recorded on the job handle.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from dbmanager.core.errors import ExportCancelledError, ValidationError
from dbmanager.core.exporter import Exporter
from dbmanager.core.models import (
    ArtifactKind,
    DbAuth,
    DumpRequest,
    OperationKind,
    OutputMode,
    split_names,
)
from dbmanager.core.response_stream import ResponseStream

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/dbmanager")


# =============================================================================
# Models
# =============================================================================

class ConnectionParams(BaseModel):
    host: str = Field(..., description="host or host:port")
    username: str
    password: str = ""
    charset: str = "utf8mb4"


class ExportBody(BaseModel):
    connection: ConnectionParams
    tables: List[str] = Field(default_factory=list)
    views: List[str] = Field(default_factory=list)
    types: List[str] = Field(default_factory=list, description="structure and/or data")
    output: str = Field(default="", description="inline-stream, inline-download or background-file")
    reset_auto_increment: bool = True

    def to_request(self, database: str) -> DumpRequest:
        auth = DbAuth(
            host=self.connection.host,
            username=self.connection.username,
            password=self.connection.password,
            charset=self.connection.charset,
            database=database,
        )
        # Views are dumped alongside tables.
        tables = split_names(self.tables) + split_names(self.views)
        kinds = [ArtifactKind.parse(t) for t in split_names(self.types)]
        return DumpRequest(
            auth=auth,
            tables=tables,
            kinds=kinds,
            mode=OutputMode.parse(self.output),
            reset_auto_increment=self.reset_auto_increment,
        )


def _exporter(request: Request) -> Exporter:
    return request.app.state.exporter


def _operation(value: str) -> OperationKind:
    try:
        return OperationKind(value)
    except ValueError:
        raise ValidationError("DBM-1004", field="operation", value=value) from None


# =============================================================================
# Inline streaming
# =============================================================================

async def _watch_disconnect(request: Request, cancel_event: asyncio.Event, interval: float):
    """Set ``cancel_event`` once the client goes away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected, cancelling export")
            cancel_event.set()
            return
        await asyncio.sleep(interval)


async def _stream_inline(request: Request, exporter: Exporter, dump_request: DumpRequest):
    handle = exporter.start_inline(dump_request)
    settings = exporter.settings
    stream = ResponseStream(maxsize=settings.inline_queue_chunks)
    cancel_event = asyncio.Event()

    task = asyncio.create_task(exporter.run_inline(dump_request, handle, stream, cancel_event))
    watcher = asyncio.create_task(
        _watch_disconnect(request, cancel_event, settings.disconnect_poll_seconds)
    )

    def on_done(t: asyncio.Task):
        stream.close()
        watcher.cancel()
        if not t.cancelled():
            # Errors are already logged by the exporter.
            t.exception()

    task.add_done_callback(on_done)

    # Hold the response until there is output so early failures still get
    # a proper error status.
    first = await stream.read()
    if first is None and task.done():
        if task.cancelled():
            raise ExportCancelledError()
        if task.exception() is not None:
            raise task.exception()

    async def body():
        try:
            if first is not None:
                yield first
            async for chunk in stream:
                yield chunk
            error = task.exception() if task.done() and not task.cancelled() else None
            if error is not None and not isinstance(error, ExportCancelledError):
                logger.error(
                    f"Inline export {handle.fingerprint[:12]} failed after output started, "
                    f"response truncated: {error}"
                )
        finally:
            if not task.done():
                cancel_event.set()

    headers: Dict[str, str] = {}
    media_type = "text/plain; charset=utf-8"
    if dump_request.mode is OutputMode.INLINE_DOWNLOAD:
        media_type = "application/octet-stream"
        filename = exporter.download_filename(dump_request)
        headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    headers["X-Job-Fingerprint"] = handle.fingerprint

    return StreamingResponse(body(), media_type=media_type, headers=headers)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/{database}/export")
async def export_database(database: str, body: ExportBody, request: Request):
    """
    Export table structure and/or data.

    Inline modes stream the dump in the response body. Background mode
    returns 202 immediately; the archive appears in the export cache.
    """
    exporter = _exporter(request)
    dump_request = exporter.validate(body.to_request(database))

    if dump_request.mode.is_inline:
        return await _stream_inline(request, exporter, dump_request)

    submission = await exporter.submit_background(dump_request)
    return JSONResponse(status_code=202, content=submission.to_dict())


@router.get("/jobs/{operation}")
async def list_jobs(operation: str, request: Request) -> Dict[str, Any]:
    """List registered jobs for an operation."""
    op = _operation(operation)
    jobs = _exporter(request).list_jobs(op)
    return {
        "operation": op.value,
        "jobs": [h.to_dict() for h in jobs],
        "total": len(jobs),
    }


@router.get("/jobs/{operation}/{fingerprint}")
async def get_job(operation: str, fingerprint: str, request: Request) -> Dict[str, Any]:
    """Get one registered job."""
    handle = _exporter(request).job_status(fingerprint, _operation(operation))
    if handle is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return handle.to_dict()
