"""
test_streams.py — Tests for streams.py buffered reading and locked writing.

Uses ChunkedRaw to control exactly how bytes arrive, so every line-splitting
edge case (including \\r and \\n landing in different refills) is reproducible.
"""

from __future__ import annotations

import random
import re
import threading

import pytest

from conftest import ChunkedRaw, RecordingSink
from subpump.errors import EndOfStreamError
from subpump.streams import ProcessInputStream, ProcessOutputStream


class GatedSink(RecordingSink):
    """A sink whose writes block until released, like a full pipe."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def write(self, b) -> int:
        self.entered.set()
        self.release.wait(5)
        return super().write(b)


SAMPLE = b"alpha\r\nbeta\rgamma\n\ndelta\r\r\nepsilon"
SAMPLE_LINES = ["alpha", "beta", "gamma", "", "delta", "", "epsilon"]


def reader(chunks: list[bytes], buffer_size: int = 8192) -> ProcessOutputStream:
    return ProcessOutputStream(ChunkedRaw(chunks), buffer_size=buffer_size)


# ── readline ─────────────────────────────────────────────────────────────────────

class TestReadline:
    def test_mixed_terminators(self):
        assert list(reader([SAMPLE])) == SAMPLE_LINES

    def test_matches_str_splitlines(self):
        assert SAMPLE.decode().splitlines() == SAMPLE_LINES

    @pytest.mark.parametrize("buffer_size", [1, 2, 3, 7, 8192])
    def test_every_two_way_split(self, buffer_size):
        for cut in range(len(SAMPLE) + 1):
            chunks = [SAMPLE[:cut], SAMPLE[cut:]]
            assert list(reader(chunks, buffer_size)) == SAMPLE_LINES, f"cut at {cut}"

    @pytest.mark.parametrize("seed", range(25))
    def test_random_chunkings(self, seed):
        rng = random.Random(seed)
        data = b"".join(
            rng.choice([b"x", b"yz", b"\r", b"\n", b"\r\n", b"word", b""]) for _ in range(200)
        )
        expected = data.decode().splitlines()
        chunks, pos = [], 0
        while pos < len(data):
            size = rng.randint(1, 9)
            chunks.append(data[pos:pos + size])
            pos += size
        assert list(reader(chunks, buffer_size=rng.randint(1, 16))) == expected

    def test_crlf_split_across_refills_is_one_terminator(self):
        stream = reader([b"a\r", b"\nb\r", b"\n"])
        assert stream.readline() == "a"
        assert stream.readline() == "b"
        assert stream.readline() is None

    def test_lone_cr_at_end_of_stream(self):
        stream = reader([b"a\r"])
        assert stream.readline() == "a"
        assert stream.readline() is None

    def test_final_line_without_terminator(self):
        stream = reader([b"one\ntw", b"o"])
        assert stream.readline() == "one"
        assert stream.readline() == "two"
        assert stream.readline() is None

    def test_empty_stream(self):
        assert reader([]).readline() is None

    def test_blank_lines_are_real_lines(self):
        assert list(reader([b"\n\n"])) == ["", ""]

    def test_line_longer_than_buffer(self):
        long_line = b"x" * 100
        stream = reader([long_line + b"\r\n" + b"tail"], buffer_size=8)
        assert stream.readline() == long_line.decode()
        assert stream.readline() == "tail"

    def test_encoding(self):
        stream = reader(["héllo\n".encode("latin-1")])
        assert stream.readline(encoding="latin-1") == "héllo"

    def test_unpiped_stream_is_exhausted(self):
        stream = ProcessOutputStream(None)
        assert stream.readline() is None
        assert stream.read(10) == b""


# ── byte reads ───────────────────────────────────────────────────────────────────

class TestByteReads:
    def test_buffered_bytes_served_without_raw_read(self):
        raw = ChunkedRaw([b"line1\nrest", b"more"])
        stream = ProcessOutputStream(raw)
        assert stream.readline() == "line1"
        assert raw.reads == 1
        assert stream.buffered == 4

        assert stream.read(100) == b"rest"
        assert raw.reads == 1

        assert stream.read(100) == b"more"
        assert raw.reads == 2
        assert stream.read(100) == b""

    def test_read_clears_carry_flag(self):
        stream = reader([b"a\r\nb"])
        assert stream.readline() == "a"
        assert stream.read(1) == b"\n"
        assert stream.readline() == "b"

    def test_readinto_returns_zero_only_at_eof(self):
        stream = reader([b"abc"])
        buf = bytearray(2)
        assert stream.readinto(buf) == 2
        assert bytes(buf) == b"ab"
        assert stream.readinto(buf) == 1
        assert stream.readinto(buf) == 0

    def test_read_zero(self):
        assert reader([b"abc"]).read(0) == b""

    def test_read_all_includes_buffered_bytes(self):
        stream = reader([b"first\nsecond ", b"third"])
        assert stream.readline() == "first"
        assert stream.read_all() == b"second third"
        assert stream.read() == b""

    def test_read_exact_spans_chunks(self):
        stream = reader([b"ab", b"cd", b"e"])
        assert stream.read_exact(4) == b"abcd"

    def test_read_exact_reports_shortfall(self):
        stream = reader([b"ab", b"cd", b"e"])
        stream.read_exact(4)
        with pytest.raises(EndOfStreamError) as exc_info:
            stream.read_exact(3)
        assert exc_info.value.requested == 3
        assert exc_info.value.available == 1
        assert isinstance(exc_info.value, EOFError)

    def test_skip_bytes(self):
        stream = reader([b"0123", b"456789"])
        assert stream.skip_bytes(6) == 6
        assert stream.read() == b"6789"
        assert stream.skip_bytes(5) == 0

    def test_fixed_width_reads(self):
        data = (
            b"\x01"                   # boolean
            b"\xff"                   # byte
            b"\xff"                   # unsigned byte
            b"\xff\xfe"               # short
            b"\x01\x00"               # unsigned short
            b"\x00A"                  # char
            b"\x00\x00\x01\x00"       # int
            b"\xff\xff\xff\xff\xff\xff\xff\xff"  # long
            b"\x3f\xf0\x00\x00\x00\x00\x00\x00"  # double 1.0
            b"\x00\x02hi"             # utf
        )
        stream = reader([data[:5], data[5:]])
        assert stream.read_boolean() is True
        assert stream.read_byte() == -1
        assert stream.read_unsigned_byte() == 255
        assert stream.read_short() == -2
        assert stream.read_unsigned_short() == 256
        assert stream.read_char() == "A"
        assert stream.read_int() == 256
        assert stream.read_long() == -1
        assert stream.read_double() == 1.0
        assert stream.read_utf() == "hi"
        with pytest.raises(EndOfStreamError):
            stream.read_int()

    def test_invalid_buffer_size(self):
        with pytest.raises(ValueError):
            ProcessOutputStream(None, buffer_size=0)


class TestConcurrentReads:
    def test_readers_never_see_torn_lines(self):
        lines = [f"line-{i:04d}-" + "z" * (i % 37) for i in range(2000)]
        data = ("\r\n".join(lines) + "\n").encode()
        chunks = [data[i:i + 13] for i in range(0, len(data), 13)]
        stream = reader(chunks, buffer_size=64)

        seen: list[str] = []
        seen_lock = threading.Lock()

        def consume():
            while True:
                line = stream.readline()
                if line is None:
                    return
                with seen_lock:
                    seen.append(line)

        threads = [threading.Thread(target=consume) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert sorted(seen) == sorted(lines)


# ── write side ───────────────────────────────────────────────────────────────────

class TestWrites:
    def test_partial_raw_writes_are_completed(self):
        sink = RecordingSink(max_write=3)
        stream = ProcessInputStream(sink)
        assert stream.write(b"0123456789") == 10
        assert bytes(sink.data) == b"0123456789"

    def test_write_line_appends_newline(self):
        sink = RecordingSink()
        stream = ProcessInputStream(sink)
        stream.write_line("hello")
        stream.write_string("wörld", encoding="utf-8")
        assert bytes(sink.data) == b"hello\n" + "wörld".encode()

    def test_fixed_width_writes(self):
        sink = RecordingSink()
        stream = ProcessInputStream(sink)
        stream.write_boolean(True)
        stream.write_byte(-1)
        stream.write_short(-2)
        stream.write_char("A")
        stream.write_int(256)
        stream.write_long(-1)
        stream.write_double(1.0)
        stream.write_chars("hi")
        stream.write_utf("hi")
        assert bytes(sink.data) == (
            b"\x01\xff\xff\xfe\x00A\x00\x00\x01\x00"
            + b"\xff" * 8
            + b"\x3f\xf0" + b"\x00" * 6
            + b"\x00h\x00i"
            + b"\x00\x02hi"
        )

    def test_write_utf_rejects_oversized(self):
        stream = ProcessInputStream(RecordingSink())
        with pytest.raises(ValueError):
            stream.write_utf("x" * 70000)

    def test_close_is_idempotent(self):
        sink = RecordingSink()
        stream = ProcessInputStream(sink)
        stream.close()
        stream.close()
        stream.flush()
        assert sink.close_calls == 1
        assert stream.closed

    def test_close_does_not_wait_for_blocked_writer(self):
        sink = GatedSink()
        stream = ProcessInputStream(sink)
        writer = threading.Thread(target=stream.write, args=(b"stuck",))
        writer.start()
        assert sink.entered.wait(5)

        closer = threading.Thread(target=stream.close)
        closer.start()
        closer.join(5)
        assert not closer.is_alive()
        assert stream.closed
        assert sink.close_calls == 1

        sink.release.set()
        writer.join(5)
        assert not writer.is_alive()

    def test_write_after_close_raises(self):
        stream = ProcessInputStream(RecordingSink())
        stream.close()
        with pytest.raises(ValueError):
            stream.write(b"x")

    def test_unpiped_stream_rejects_writes(self):
        stream = ProcessInputStream(None)
        with pytest.raises(ValueError):
            stream.write_line("x")
        stream.flush()
        stream.close()

    def test_concurrent_writers_never_interleave(self):
        sink = RecordingSink(max_write=7)
        stream = ProcessInputStream(sink)
        payload = "x" * 200

        def writer(i: int):
            for n in range(50):
                record = f"<{i}:{payload}>"
                if n % 2:
                    stream.write_string(record)
                else:
                    stream.write(record.encode())

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        out = sink.data.decode()
        assert re.fullmatch(r"(?:<\d:x{200}>)+", out)
        assert len(re.findall(r"<\d:", out)) == 400
