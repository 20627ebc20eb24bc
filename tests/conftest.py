"""
conftest.py — Shared fixtures: fake raw pipes for exercising streams without a child process.
"""

from __future__ import annotations

import io
import sys

import pytest


class ChunkedRaw(io.RawIOBase):
    """A readable raw stream that hands out data in the exact chunks given."""

    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = [bytes(c) for c in chunks if c]
        self.reads = 0

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        self.reads += 1
        if not self._chunks:
            return 0
        chunk = self._chunks[0]
        n = min(len(b), len(chunk))
        b[:n] = chunk[:n]
        if n < len(chunk):
            self._chunks[0] = chunk[n:]
        else:
            self._chunks.pop(0)
        return n


class RecordingSink(io.RawIOBase):
    """A writable raw stream that accepts at most ``max_write`` bytes per call."""

    def __init__(self, max_write: int | None = None) -> None:
        self.data = bytearray()
        self.max_write = max_write
        self.flushes = 0
        self.close_calls = 0

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        view = memoryview(b)
        n = len(view) if self.max_write is None else min(self.max_write, len(view))
        self.data += view[:n]
        return n

    def flush(self) -> None:
        self.flushes += 1

    def close(self) -> None:
        self.close_calls += 1
        super().close()


@pytest.fixture
def python() -> str:
    return sys.executable
