"""
Dump Process Runner

Invokes the dump utility with a fixed argument template, relays its stdout
into a sink chunk by chunk and keeps a bounded tail of stderr for error
messages.

Argument template (the ``-d``/``-t`` flag is the only part that changes
between the structure and the data pass):

    --default-character-set=<charset> --single-transaction
    --set-gtid-purged=OFF --no-autocommit --opt -d|-t
    -h<host> -P<port> -u<user> -p<password> <database> <table>...

Usage:
    args = build_dump_args(auth, ["users", "orders"], ArtifactKind.STRUCTURE)
    await run_dump(args, sink, CmdRecorder(1000), cancel_event=event)
"""
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

from dbmanager.core.artifact_sinks import ResolvedSink
from dbmanager.core.cmd_recorder import CmdRecorder
from dbmanager.core.errors import (
    ExportCancelledError,
    ProcessExecutionError,
    ProcessSpawnError,
    StreamCopyError,
)
from dbmanager.core.models import ArtifactKind, DbAuth
from dbmanager.core.structured_logging import redact_args

logger = logging.getLogger(__name__)

# -d: table definitions only (--no-data); -t: rows only (--no-create-info)
KIND_FLAGS = {
    ArtifactKind.STRUCTURE: "-d",
    ArtifactKind.DATA: "-t",
}

DEFAULT_CHUNK_SIZE = 64 * 1024
STDERR_READ_SIZE = 4096


def build_dump_args(
    auth: DbAuth,
    tables: Sequence[str],
    kind: ArtifactKind = ArtifactKind.STRUCTURE,
    default_port: int = 3306,
) -> List[str]:
    host, port = auth.host_and_port(default_port)
    args = [
        "--default-character-set=" + auth.charset,
        "--single-transaction",
        "--set-gtid-purged=OFF",
        "--no-autocommit",
        "--opt",
        KIND_FLAGS[kind],
        "-h" + host,
        "-P" + port,
        "-u" + auth.username,
        "-p" + auth.password,
        auth.database,
    ]
    args.extend(tables)
    return args


def kind_flag_index(args: Sequence[str]) -> int:
    for index, value in enumerate(args):
        if value in ("-d", "-t"):
            return index
    raise ValueError("dump arguments carry no structure/data flag")


def set_kind(args: List[str], kind: ArtifactKind) -> List[str]:
    """Flip the structure/data flag in place."""
    args[kind_flag_index(args)] = KIND_FLAGS[kind]
    return args


async def _drain(stream: asyncio.StreamReader, recorder: CmdRecorder):
    while True:
        chunk = await stream.read(STDERR_READ_SIZE)
        if not chunk:
            return
        recorder.write(chunk)


async def _relay(
    proc: asyncio.subprocess.Process,
    sink: ResolvedSink,
    recorder: CmdRecorder,
    chunk_size: int,
) -> Tuple[int, int]:
    stderr_task = asyncio.ensure_future(_drain(proc.stderr, recorder))
    copied = 0
    try:
        while True:
            try:
                chunk = await proc.stdout.read(chunk_size)
            except OSError as e:
                raise StreamCopyError(reason=f"reading dump output: {e}") from e
            if not chunk:
                break
            try:
                await sink.write(chunk)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise StreamCopyError(reason=f"writing dump output: {e}") from e
            copied += len(chunk)
        await stderr_task
        return await proc.wait(), copied
    finally:
        if not stderr_task.done():
            stderr_task.cancel()


async def _terminate(proc: asyncio.subprocess.Process):
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


async def run_dump(
    args: Sequence[str],
    sink: ResolvedSink,
    recorder: Optional[CmdRecorder] = None,
    cancel_event: Optional[asyncio.Event] = None,
    command: str = "mysqldump",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> int:
    """
    Run one dump pass.

    The sink is closed on every exit path. Setting ``cancel_event`` (or
    cancelling the calling task) kills the subprocess.

    Returns:
        Number of bytes relayed into the sink

    Raises:
        ProcessSpawnError: the command could not be started
        StreamCopyError: relaying output into the sink failed
        ProcessExecutionError: non-zero exit; the message carries the stderr tail
        ExportCancelledError: ``cancel_event`` fired first
    """
    recorder = recorder if recorder is not None else CmdRecorder()
    argv = [command, *args]

    try:
        if cancel_event is not None and cancel_event.is_set():
            raise ExportCancelledError()

        logger.debug(f"Executing: {' '.join(redact_args(argv))}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProcessSpawnError(command=command, reason=str(e)) from e

        work = asyncio.ensure_future(_relay(proc, sink, recorder, chunk_size))
        cancel_waiter = (
            asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
        )
        try:
            waiters = {work} if cancel_waiter is None else {work, cancel_waiter}
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if work not in done:
                raise ExportCancelledError()
            returncode, copied = work.result()
        except BaseException:
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            await _terminate(proc)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
    finally:
        sink.close()

    if returncode != 0:
        stderr = str(recorder)
        raise ProcessExecutionError(
            command=command,
            returncode=returncode,
            stderr=stderr,
            details={"returncode": returncode, "stderr": stderr},
        )
    return copied
