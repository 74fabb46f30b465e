"""Length-prefixed framing for the relay's byte streams.

Frame layout::

    +-------------------------+---------------------+
    | length (uint32, BE)     | payload             |
    | 4 bytes                 | ``length`` bytes    |
    +-------------------------+---------------------+

The same layout is used in both directions: test-case requests arrive as
frames on the input stream and results leave as frames on the output
stream.  The relay enforces no maximum beyond what fits in the prefix.

KEY FUNCTIONS
-------------
read_frame(stream) : Read one payload, ``None`` on clean end of input
write_frame(stream, payload) : Write prefix + payload and flush

KEY CLASSES
-----------
FrameReader : Lazy, single-pass iterator over the payloads of a stream

"""

from __future__ import annotations

import logging
import select
import struct
import time
from collections.abc import Iterator
from typing import Any

from conformance_relay._debug import fmt_payload, wire_frame_logger
from conformance_relay.errors import FrameTooLargeError, FrameWriteError, TruncatedFrameError

__all__ = [
    "LENGTH_PREFIX_SIZE",
    "MAX_FRAME_LENGTH",
    "FrameReader",
    "encode_frame",
    "read_frame",
    "write_frame",
]

_LENGTH_PREFIX = struct.Struct(">I")

LENGTH_PREFIX_SIZE = _LENGTH_PREFIX.size
MAX_FRAME_LENGTH = 0xFFFFFFFF

# Fallback poll interval for non-blocking streams that have no file descriptor.
_POLL_INTERVAL = 0.01


# ---------------------------------------------------------------------------
# Readiness helpers
# ---------------------------------------------------------------------------


def _wait(stream: Any, *, writable: bool) -> None:
    """Block until *stream* is ready, or briefly sleep if it cannot be selected on."""
    try:
        fd = stream.fileno()
    except (AttributeError, OSError, ValueError):
        time.sleep(_POLL_INTERVAL)
        return
    if writable:
        select.select([], [fd], [])
    else:
        select.select([fd], [], [])


def _read_up_to(stream: Any, size: int) -> bytes:
    """Read until *size* bytes are buffered or the stream ends.

    Short reads and ``None`` ("no data yet" on non-blocking streams) are
    retried; the result is shorter than *size* only at end of stream.
    """
    buf = bytearray()
    while len(buf) < size:
        chunk = stream.read(size - len(buf))
        if chunk is None:
            _wait(stream, writable=False)
            continue
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def read_frame(stream: Any) -> bytes | None:
    """Read one complete frame payload from *stream*.

    Args:
        stream: Binary stream supporting ``read(n)``.  Blocking or
            non-blocking; short reads are accumulated.

    Returns:
        The payload bytes, or ``None`` when the stream ended before a full
        length prefix was available.

    Raises:
        TruncatedFrameError: If the stream ended before the declared number
            of payload bytes arrived.

    """
    header = _read_up_to(stream, LENGTH_PREFIX_SIZE)
    if len(header) < LENGTH_PREFIX_SIZE:
        if header:
            wire_frame_logger.warning(
                "input ended inside a length prefix; discarding %d trailing byte(s)",
                len(header),
            )
        return None

    (length,) = _LENGTH_PREFIX.unpack(header)
    if length == 0:
        payload = b""
    else:
        payload = _read_up_to(stream, length)
        if len(payload) < length:
            raise TruncatedFrameError(length, len(payload))

    if wire_frame_logger.isEnabledFor(logging.DEBUG):
        wire_frame_logger.debug("read frame: %s", fmt_payload(payload))
    return payload


class FrameReader:
    """Iterator over the frame payloads of a byte stream.

    Payloads are produced in the order they were written upstream.  The
    reader is consumed exactly once: after the stream ends, every further
    ``next()`` raises ``StopIteration`` without touching the stream again.
    """

    __slots__ = ("_exhausted", "_frames_read", "_stream")

    def __init__(self, stream: Any) -> None:
        """Wrap a readable binary stream."""
        self._stream = stream
        self._exhausted = False
        self._frames_read = 0

    @property
    def frames_read(self) -> int:
        """Number of complete frames produced so far."""
        return self._frames_read

    @property
    def exhausted(self) -> bool:
        """Whether the underlying stream has reached a clean end."""
        return self._exhausted

    def __iter__(self) -> Iterator[bytes]:
        """Return self; the reader is its own single-pass iterator."""
        return self

    def __next__(self) -> bytes:
        """Return the next payload.

        Raises:
            StopIteration: At clean end of input.
            TruncatedFrameError: If the stream ends mid-payload.

        """
        if self._exhausted:
            raise StopIteration
        payload = read_frame(self._stream)
        if payload is None:
            self._exhausted = True
            raise StopIteration
        self._frames_read += 1
        return payload


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


def encode_frame(payload: bytes | bytearray | memoryview) -> bytes:
    """Return *payload* with its 4-byte big-endian length prefix.

    Raises:
        FrameTooLargeError: If the payload does not fit a uint32 length.

    """
    size = len(payload)
    if size > MAX_FRAME_LENGTH:
        raise FrameTooLargeError(f"payload of {size} bytes exceeds the {MAX_FRAME_LENGTH}-byte frame limit")
    return _LENGTH_PREFIX.pack(size) + bytes(payload)


def _write_all(stream: Any, data: bytes) -> None:
    """Write every byte of *data*, retrying partial and would-block writes."""
    view = memoryview(data)
    while view:
        try:
            written = stream.write(view)
        except BlockingIOError as exc:
            written = exc.characters_written
            if written:
                view = view[written:]
            _wait(stream, writable=True)
            continue
        if written is None:
            _wait(stream, writable=True)
            continue
        view = view[written:]


def write_frame(stream: Any, payload: bytes | bytearray | memoryview) -> None:
    """Write one frame (prefix, then payload) to *stream* and flush it.

    When this returns, all ``4 + len(payload)`` bytes have been handed to
    the operating system.

    Raises:
        FrameTooLargeError: If the payload does not fit a uint32 length.
        FrameWriteError: If the stream is closed or the write fails.

    """
    data = encode_frame(payload)
    try:
        _write_all(stream, data)
        flush = getattr(stream, "flush", None)
        if flush is not None:
            flush()
    except (OSError, ValueError) as exc:
        raise FrameWriteError(f"failed to write {len(data)}-byte frame: {exc}") from exc

    if wire_frame_logger.isEnabledFor(logging.DEBUG):
        wire_frame_logger.debug("wrote frame: %s", fmt_payload(payload))
