"""
Bounded stderr recorder for subprocesses.

Keeps only the last N lines a command wrote so error messages can quote
the tail without buffering an arbitrarily chatty process.
"""
from __future__ import annotations

import threading
from collections import deque
from typing import Deque, List

# Longest line kept; earlier characters of an overlong line are dropped
MAX_LINE_CHARS = 64 * 1024


class CmdRecorder:
    """Fixed-capacity circular log of output lines."""

    def __init__(self, max_lines: int = 1000):
        if max_lines < 1:
            raise ValueError("max_lines must be positive")
        self.max_lines = max_lines
        self._lines: Deque[str] = deque(maxlen=max_lines)
        self._partial = ""
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        """Append raw output; incomplete trailing lines are held until the next write."""
        text = data.decode("utf-8", errors="replace")
        with self._lock:
            text = self._partial + text
            parts = text.split("\n")
            self._partial = parts.pop()[-MAX_LINE_CHARS:]
            for line in parts:
                self._lines.append(line.rstrip("\r")[-MAX_LINE_CHARS:])
        return len(data)

    def lines(self) -> List[str]:
        with self._lock:
            lines = list(self._lines)
            if self._partial:
                lines.append(self._partial)
        return lines[-self.max_lines:]

    def clear(self):
        with self._lock:
            self._lines.clear()
            self._partial = ""

    def __len__(self) -> int:
        return len(self.lines())

    def __str__(self) -> str:
        return "\n".join(self.lines())
