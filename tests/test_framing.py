# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for length-prefixed frame reading and writing."""

from __future__ import annotations

import logging
import os
import threading
from io import BytesIO

import pytest

from conformance_relay.errors import FrameTooLargeError, FrameWriteError, TruncatedFrameError
from conformance_relay.framing import (
    LENGTH_PREFIX_SIZE,
    MAX_FRAME_LENGTH,
    FrameReader,
    encode_frame,
    read_frame,
    write_frame,
)
from conformance_relay.transport import make_pipe_pair

# ---------------------------------------------------------------------------
# Stream doubles
# ---------------------------------------------------------------------------


class _TrickleReader:
    """Returns at most ``step`` bytes per read, with ``None`` between chunks."""

    def __init__(self, data: bytes, step: int = 1, would_block: bool = False) -> None:
        self._data = data
        self._pos = 0
        self._step = step
        self._would_block = would_block
        self._blocked = False
        self.reads = 0

    def read(self, n: int) -> bytes | None:
        self.reads += 1
        if self._would_block and not self._blocked:
            self._blocked = True
            return None
        self._blocked = False
        chunk = self._data[self._pos : self._pos + min(n, self._step)]
        self._pos += len(chunk)
        return chunk


class _PartialWriter:
    """Accepts at most ``step`` bytes per write, returning ``None`` every other call."""

    def __init__(self, step: int) -> None:
        self.buf = bytearray()
        self._step = step
        self._calls = 0
        self.flushed = False

    def write(self, data: memoryview) -> int | None:
        self._calls += 1
        if self._calls % 2 == 0:
            return None
        chunk = bytes(data[: self._step])
        self.buf += chunk
        return len(chunk)

    def flush(self) -> None:
        self.flushed = True


class _BrokenWriter:
    def write(self, data: memoryview) -> int:
        raise BrokenPipeError(32, "Broken pipe")


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


class TestReadFrame:
    """Tests for read_frame."""

    def test_reads_declared_payload(self) -> None:
        stream = BytesIO(bytes([0, 0, 0, 2, 0x41, 0x42]))
        assert read_frame(stream) == b"AB"
        assert read_frame(stream) is None

    def test_zero_length_frame_yields_empty_payload(self) -> None:
        class _CountingReader(BytesIO):
            def __init__(self, data: bytes) -> None:
                super().__init__(data)
                self.calls = 0

            def read(self, n: int | None = -1) -> bytes:
                self.calls += 1
                return super().read(n)

        stream = _CountingReader(bytes([0, 0, 0, 0]))
        assert read_frame(stream) == b""
        assert stream.calls == 1

    def test_empty_stream_is_clean_end(self) -> None:
        assert read_frame(BytesIO(b"")) is None

    @pytest.mark.parametrize("prefix", [b"\x00", b"\x00\x00", b"\x00\x00\x01"])
    def test_partial_prefix_is_clean_end(self, prefix: bytes, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="conformance_relay.wire.frame"):
            assert read_frame(BytesIO(prefix)) is None
        assert f"discarding {len(prefix)} trailing byte(s)" in caplog.text

    def test_truncated_payload_raises(self) -> None:
        stream = BytesIO(bytes([0, 0, 0, 5]) + b"abc")
        with pytest.raises(TruncatedFrameError, match="expected 5 payload bytes, stream ended after 3") as exc_info:
            read_frame(stream)
        assert exc_info.value.expected == 5
        assert exc_info.value.received == 3

    def test_prefix_only_raises(self) -> None:
        with pytest.raises(TruncatedFrameError):
            read_frame(BytesIO(bytes([0, 0, 0, 1])))

    def test_accumulates_single_byte_reads(self) -> None:
        payload = bytes(range(200))
        stream = _TrickleReader(encode_frame(payload), step=1)
        assert read_frame(stream) == payload
        assert stream.reads >= LENGTH_PREFIX_SIZE + len(payload)

    def test_waits_on_would_block_reads(self) -> None:
        stream = _TrickleReader(encode_frame(b"hello"), step=2, would_block=True)
        assert read_frame(stream) == b"hello"

    def test_large_declared_length_is_read_in_full(self) -> None:
        payload = os.urandom(1 << 20)
        assert read_frame(BytesIO(encode_frame(payload))) == payload


class TestFrameReader:
    """Tests for the FrameReader iterator."""

    def test_yields_payloads_in_order(self) -> None:
        payloads = [b"first", b"", b"third", bytes(1000)]
        reader = FrameReader(BytesIO(b"".join(encode_frame(p) for p in payloads)))
        assert list(reader) == payloads
        assert reader.frames_read == 4
        assert reader.exhausted

    def test_single_pass(self) -> None:
        stream = BytesIO(encode_frame(b"x"))
        reader = FrameReader(stream)
        assert list(reader) == [b"x"]
        stream.write(encode_frame(b"late"))
        stream.seek(0)
        assert list(reader) == []

    def test_truncation_surfaces_during_iteration(self) -> None:
        reader = FrameReader(BytesIO(encode_frame(b"ok") + bytes([0, 0, 0, 9]) + b"short"))
        assert next(reader) == b"ok"
        with pytest.raises(TruncatedFrameError):
            next(reader)
        assert not reader.exhausted

    def test_reads_across_pipe_as_data_arrives(self) -> None:
        driver, relay = make_pipe_pair()
        received: list[bytes] = []

        def _consume() -> None:
            received.extend(FrameReader(relay.reader))

        thread = threading.Thread(target=_consume, daemon=True)
        thread.start()
        try:
            data = encode_frame(b"alpha") + encode_frame(b"beta")
            for i in range(0, len(data), 3):
                driver.writer.write(data[i : i + 3])
        finally:
            driver.writer.close()
        thread.join(timeout=5)
        assert received == [b"alpha", b"beta"]
        driver.close()
        relay.close()


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


class TestWriteFrame:
    """Tests for encode_frame and write_frame."""

    def test_encode_frame(self) -> None:
        assert encode_frame(b"AB") == bytes([0, 0, 0, 2, 0x41, 0x42])
        assert encode_frame(b"") == bytes([0, 0, 0, 0])

    def test_prefix_is_big_endian(self) -> None:
        assert encode_frame(bytes(0x010203))[:4] == bytes([0x00, 0x01, 0x02, 0x03])

    def test_write_then_read(self) -> None:
        out = BytesIO()
        write_frame(out, b"payload")
        write_frame(out, b"")
        out.seek(0)
        assert list(FrameReader(out)) == [b"payload", b""]

    def test_handles_partial_writes(self) -> None:
        writer = _PartialWriter(step=3)
        write_frame(writer, b"0123456789")
        assert bytes(writer.buf) == encode_frame(b"0123456789")
        assert writer.flushed

    def test_broken_pipe_raises_write_error(self) -> None:
        with pytest.raises(FrameWriteError, match="Broken pipe"):
            write_frame(_BrokenWriter(), b"x")

    def test_closed_stream_raises_write_error(self) -> None:
        out = BytesIO()
        out.close()
        with pytest.raises(FrameWriteError):
            write_frame(out, b"x")

    def test_payload_too_large(self) -> None:
        class _Huge:
            def __len__(self) -> int:
                return MAX_FRAME_LENGTH + 1

        with pytest.raises(FrameTooLargeError):
            encode_frame(_Huge())  # type: ignore[arg-type]
