"""
streams.py — Thread-safe buffered wrappers around a child's pipes.

Named from the child's side of the pipe:
  ProcessInputStream   the child's stdin, written by us
  ProcessOutputStream  the child's stdout/stderr, read by us

ProcessOutputStream keeps its own buffer so that readline() can scan whole
chunks instead of single bytes. Every other read method therefore drains the
buffer before touching the wrapped pipe, which is what lets callers freely mix
byte reads and line reads on the same stream.
"""

from __future__ import annotations

import struct
import threading
from typing import IO, Iterator

from subpump.config import DEFAULT_BUFFER_SIZE
from subpump.errors import EndOfStreamError

_LF = 0x0A
_CR = 0x0D

# Fixed-width layouts, all big-endian (network byte order).
_BYTE = struct.Struct(">b")
_UBYTE = struct.Struct(">B")
_SHORT = struct.Struct(">h")
_USHORT = struct.Struct(">H")
_INT = struct.Struct(">i")
_UINT = struct.Struct(">I")
_LONG = struct.Struct(">q")
_ULONG = struct.Struct(">Q")
_FLOAT = struct.Struct(">f")
_DOUBLE = struct.Struct(">d")


# ── Read side ────────────────────────────────────────────────────────────────────

class ProcessOutputStream:
    """
    A combined buffered byte reader and line reader over one output pipe.

    All reads are serialized on a per-instance lock. A wrapped value of None
    (the stream was not piped) behaves as an already-exhausted stream.
    """

    def __init__(self, wrapped: IO[bytes] | None, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        if buffer_size <= 0:
            raise ValueError(f"buffer_size must be positive, got {buffer_size}")
        self.wrapped = wrapped
        self._lock = threading.RLock()
        self._buffer = bytearray(buffer_size)
        self._offset = 0
        self._end = 0
        # True when the previous readline() stopped on a bare \r, so a leading
        # \n on the next readline() belongs to that terminator.
        self._last_seen_cr = False

    @property
    def buffered(self) -> int:
        """Number of bytes sitting in the internal buffer."""
        return self._end - self._offset

    def _raw_readinto(self, view: memoryview) -> int:
        if self.wrapped is None:
            return 0
        return self.wrapped.readinto(view) or 0

    def _fill(self) -> bool:
        """Refill the (empty) buffer. Returns False at end of stream."""
        count = self._raw_readinto(memoryview(self._buffer))
        self._offset = 0
        self._end = count
        return count > 0

    # ── byte reads ──────────────────────────────────────────────────────────────

    def readinto(self, b) -> int:
        """
        Read into a caller buffer, returning the number of bytes stored.

        Buffered bytes are served without blocking; the wrapped pipe is only
        read (once) when the buffer is empty. Returns 0 only at end of stream.
        """
        with self._lock:
            self._last_seen_cr = False
            view = memoryview(b).cast("B")
            if len(view) == 0:
                return 0
            available = self._end - self._offset
            if available:
                count = min(available, len(view))
                view[:count] = self._buffer[self._offset:self._offset + count]
                self._offset += count
                return count
            return self._raw_readinto(view)

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes (everything remaining when negative)."""
        with self._lock:
            if size is None or size < 0:
                return self.read_all()
            self._last_seen_cr = False
            if size == 0:
                return b""
            buf = bytearray(size)
            count = self.readinto(buf)
            return bytes(buf[:count])

    def read_all(self) -> bytes:
        """Block until end of stream and return everything that was read."""
        with self._lock:
            self._last_seen_cr = False
            out = bytearray(self._buffer[self._offset:self._end])
            self._offset = self._end = 0
            chunk = bytearray(len(self._buffer))
            view = memoryview(chunk)
            while True:
                count = self._raw_readinto(view)
                if not count:
                    return bytes(out)
                out += view[:count]

    def read_exact(self, size: int) -> bytes:
        """Read exactly ``size`` bytes or raise EndOfStreamError."""
        with self._lock:
            buf = bytearray(size)
            view = memoryview(buf)
            got = 0
            while got < size:
                count = self.readinto(view[got:])
                if not count:
                    raise EndOfStreamError(size, got)
                got += count
            return bytes(buf)

    def skip_bytes(self, n: int) -> int:
        """Discard up to ``n`` bytes; returns how many were actually skipped."""
        with self._lock:
            skipped = 0
            scratch = bytearray(min(max(n, 0), len(self._buffer)) or 1)
            view = memoryview(scratch)
            while skipped < n:
                count = self.readinto(view[:min(len(view), n - skipped)])
                if not count:
                    break
                skipped += count
            return skipped

    # ── line reads ──────────────────────────────────────────────────────────────

    def readline(self, encoding: str = "utf-8", errors: str = "strict") -> str | None:
        """
        Read one line, ended by \\n, \\r or \\r\\n, without its terminator.

        Returns None at end of stream. A \\r\\n pair split across two refills
        still counts as a single terminator.
        """
        with self._lock:
            line = bytearray()
            while True:
                if self._offset == self._end and not self._fill():
                    self._last_seen_cr = False
                    return line.decode(encoding, errors) if line else None

                if self._last_seen_cr:
                    self._last_seen_cr = False
                    if self._buffer[self._offset] == _LF:
                        self._offset += 1
                        continue

                start, end = self._offset, self._end
                lf = self._buffer.find(b"\n", start, end)
                cr = self._buffer.find(b"\r", start, lf if lf >= 0 else end)
                stop = cr if cr >= 0 else lf

                if stop < 0:
                    line += self._buffer[start:end]
                    self._offset = end
                    continue

                line += self._buffer[start:stop]
                self._offset = stop + 1
                self._last_seen_cr = self._buffer[stop] == _CR
                return line.decode(encoding, errors)

    def __iter__(self) -> Iterator[str]:
        while True:
            line = self.readline()
            if line is None:
                return
            yield line

    # ── fixed-width reads ───────────────────────────────────────────────────────

    def _unpack(self, layout: struct.Struct):
        with self._lock:
            return layout.unpack(self.read_exact(layout.size))[0]

    def read_boolean(self) -> bool:
        return self._unpack(_UBYTE) != 0

    def read_byte(self) -> int:
        return self._unpack(_BYTE)

    def read_unsigned_byte(self) -> int:
        return self._unpack(_UBYTE)

    def read_short(self) -> int:
        return self._unpack(_SHORT)

    def read_unsigned_short(self) -> int:
        return self._unpack(_USHORT)

    def read_char(self) -> str:
        return chr(self._unpack(_USHORT))

    def read_int(self) -> int:
        return self._unpack(_INT)

    def read_long(self) -> int:
        return self._unpack(_LONG)

    def read_float(self) -> float:
        return self._unpack(_FLOAT)

    def read_double(self) -> float:
        return self._unpack(_DOUBLE)

    def read_utf(self) -> str:
        """Read a string written by ProcessInputStream.write_utf()."""
        with self._lock:
            length = self._unpack(_USHORT)
            return self.read_exact(length).decode("utf-8")

    def close(self) -> None:
        # Not taken under the lock: a reader blocked on the pipe holds it.
        if self.wrapped is not None:
            self.wrapped.close()


# ── Write side ───────────────────────────────────────────────────────────────────

class ProcessInputStream:
    """
    A byte sink over the child's stdin.

    Every write, whatever its flavour, holds the same lock for its whole
    duration so concurrent writers never see their bytes interleaved.
    """

    def __init__(self, wrapped: IO[bytes] | None) -> None:
        self.wrapped = wrapped
        self._lock = threading.RLock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _write_all(self, data) -> int:
        if self.wrapped is None:
            raise ValueError("stdin is not connected to a pipe")
        if self._closed:
            raise ValueError("write to closed stdin")
        view = memoryview(data).cast("B")
        total = len(view)
        # Raw pipes may accept only part of a write.
        while view:
            written = self.wrapped.write(view)
            view = view[written:]
        return total

    def write(self, data: bytes | bytearray | memoryview) -> int:
        with self._lock:
            return self._write_all(data)

    def write_string(self, s: str, encoding: str = "utf-8") -> int:
        with self._lock:
            count = self._write_all(s.encode(encoding))
            self.wrapped.flush()
            return count

    def write_line(self, s: str, encoding: str = "utf-8") -> int:
        with self._lock:
            count = self._write_all(s.encode(encoding) + b"\n")
            self.wrapped.flush()
            return count

    # ── fixed-width writes ──────────────────────────────────────────────────────

    def write_boolean(self, v: bool) -> None:
        with self._lock:
            self._write_all(b"\x01" if v else b"\x00")

    def write_byte(self, v: int) -> None:
        with self._lock:
            self._write_all(_UBYTE.pack(v & 0xFF))

    def write_short(self, v: int) -> None:
        with self._lock:
            self._write_all(_USHORT.pack(v & 0xFFFF))

    def write_char(self, v: int | str) -> None:
        code = ord(v) if isinstance(v, str) else v
        with self._lock:
            self._write_all(_USHORT.pack(code & 0xFFFF))

    def write_int(self, v: int) -> None:
        with self._lock:
            self._write_all(_UINT.pack(v & 0xFFFFFFFF))

    def write_long(self, v: int) -> None:
        with self._lock:
            self._write_all(_ULONG.pack(v & 0xFFFFFFFFFFFFFFFF))

    def write_float(self, v: float) -> None:
        with self._lock:
            self._write_all(_FLOAT.pack(v))

    def write_double(self, v: float) -> None:
        with self._lock:
            self._write_all(_DOUBLE.pack(v))

    def write_chars(self, s: str) -> None:
        """Write each character as two big-endian bytes."""
        with self._lock:
            self._write_all(s.encode("utf-16-be"))

    def write_utf(self, s: str) -> None:
        """Write a UTF-8 string prefixed with its two-byte length."""
        data = s.encode("utf-8")
        if len(data) > 0xFFFF:
            raise ValueError(f"encoded string too long: {len(data)} bytes")
        with self._lock:
            self._write_all(_USHORT.pack(len(data)) + data)

    # ── lifecycle ───────────────────────────────────────────────────────────────

    def flush(self) -> None:
        with self._lock:
            if self.wrapped is None or self._closed:
                return
            self.wrapped.flush()

    def close(self) -> None:
        # Not taken under the lock: a writer blocked on a full pipe holds it.
        # Writes that start after this point fail with ValueError.
        if self.wrapped is None or self._closed:
            return
        self._closed = True
        try:
            self.wrapped.flush()
        except (BrokenPipeError, ValueError):
            # Child exited without reading everything; closing is still fine.
            pass
        finally:
            self.wrapped.close()
