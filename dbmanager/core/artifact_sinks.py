"""
Artifact Writer Resolver

Turns a logical output target into a concrete writable sink:

- InlineTarget(stream): bytes go straight to a live stream (HTTP response);
  the sink never closes the stream, its owner does.
- FileTarget(path, kind): parent directories are created, the file is opened
  for writing and, for structure dumps with auto-increment reset requested,
  a finalize hook strips AUTO_INCREMENT=<n> table options afterwards.

Usage:
    sink = resolve_sink(FileTarget(path, ArtifactKind.STRUCTURE), reset_auto_increment=True)
    await sink.write(b"...")
    sink.close()
    sink.finalize()
"""
from __future__ import annotations

import logging
import os
import re
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from dbmanager.core.errors import FilesystemError
from dbmanager.core.models import ArtifactKind

logger = logging.getLogger(__name__)

AUTO_INCREMENT_RE = re.compile(rb" AUTO_INCREMENT=[0-9]*\s*")


class ByteStream(Protocol):
    """Anything inline output can be written to."""

    async def write(self, data: bytes) -> Any:
        ...


@dataclass(frozen=True)
class InlineTarget:
    stream: ByteStream


@dataclass(frozen=True)
class FileTarget:
    path: Path
    kind: ArtifactKind


SinkTarget = Union[InlineTarget, FileTarget]


class ResolvedSink:
    """A concrete writable handle plus optional close and finalize hooks."""

    def __init__(
        self,
        writer: Callable[[bytes], Awaitable[Any]],
        closer: Optional[Callable[[], None]] = None,
        finalize: Optional[Callable[[], None]] = None,
        path: Optional[Path] = None,
    ):
        self._writer = writer
        self._closer = closer
        self._finalize = finalize
        self.path = path
        self.bytes_written = 0
        self._closed = False

    async def write(self, data: bytes):
        await self._writer(data)
        self.bytes_written += len(data)

    def close(self):
        """Release the sink. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._closer is not None:
            self._closer()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_finalizer(self) -> bool:
        return self._finalize is not None

    def finalize(self):
        """Run the post-write hook. Only valid once the sink is closed."""
        if self._finalize is not None:
            self._finalize()


def resolve_sink(target: SinkTarget, reset_auto_increment: bool = False) -> ResolvedSink:
    """
    Resolve a target into a ResolvedSink.

    Raises:
        FilesystemError: the parent directory or the file could not be created
    """
    if isinstance(target, InlineTarget):
        return ResolvedSink(writer=target.stream.write)

    path = Path(target.path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(reason=f"cannot create directory {path.parent}: {e}",
                              details={"path": str(path)}) from e
    try:
        fh = open(path, "wb")
    except OSError as e:
        raise FilesystemError(reason=f"cannot create file {path}: {e}",
                              details={"path": str(path)}) from e

    async def write(data: bytes):
        fh.write(data)

    finalize = None
    if target.kind is ArtifactKind.STRUCTURE and reset_auto_increment:
        def finalize():
            reset_auto_increment_file(path)

    return ResolvedSink(writer=write, closer=fh.close, finalize=finalize, path=path)


def strip_auto_increment(content: bytes) -> bytes:
    """Remove ``AUTO_INCREMENT=<n>`` table options so repeated dumps are byte-stable."""
    return AUTO_INCREMENT_RE.sub(b" ", content)


def reset_auto_increment_file(path: Union[str, Path]):
    """
    Rewrite a structure dump in place without AUTO_INCREMENT counters.

    The cleaned content is written to a sibling temp file and swapped in
    with os.replace.
    """
    path = Path(path)
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
        content = path.read_bytes()
        cleaned = strip_auto_increment(content)
        if cleaned == content:
            return
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(cleaned)
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except OSError as e:
        raise FilesystemError(reason=f"cannot reset AUTO_INCREMENT in {path}: {e}",
                              details={"path": str(path)}) from e
    logger.debug(f"Reset AUTO_INCREMENT values in {path}")
