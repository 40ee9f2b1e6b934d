"""
Inline response stream.

A bounded queue of byte chunks. The exporter writes dump output into it while
an HTTP response iterates it; once ``maxsize`` chunks are pending the writer
waits, so a slow client slows the subprocess down instead of growing memory.
"""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

_EOF = object()


class StreamClosedError(RuntimeError):
    """Raised when writing to a stream that has been closed."""


class ResponseStream:
    """Single-producer, single-consumer byte stream."""

    def __init__(self, maxsize: int = 16):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._slots = asyncio.Semaphore(maxsize)
        self._closed = False
        self.bytes_written = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, data: bytes):
        if self._closed:
            raise StreamClosedError("write to closed response stream")
        if not data:
            return
        await self._slots.acquire()
        if self._closed:
            self._slots.release()
            raise StreamClosedError("write to closed response stream")
        self._queue.put_nowait(bytes(data))
        self.bytes_written += len(data)

    def close(self):
        """Mark end of stream. Never blocks; pending chunks are still delivered."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_EOF)

    async def read(self) -> Optional[bytes]:
        """Next chunk, or None at end of stream."""
        item = await self._queue.get()
        if item is _EOF:
            # Leave the sentinel for any further readers.
            self._queue.put_nowait(_EOF)
            return None
        self._slots.release()
        return item

    async def collect(self) -> bytes:
        """Read everything until end of stream."""
        chunks = []
        async for chunk in self:
            chunks.append(chunk)
        return b"".join(chunks)

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.read()
            if chunk is None:
                return
            yield chunk
