"""Byte streams the relay reads frames from and writes frames to.

Three sources are supported:

- :func:`open_stdio`: the relay's own stdin/stdout, which is how a
  conformance driver talks to it.
- :class:`PipeTransport` / :func:`make_pipe_pair`: any pair of binary
  file objects, mostly ``os.pipe()`` ends in tests.
- :class:`SubprocessTransport`: a child's stdin/stdout, used by the
  subprocess bridge and by drivers launching ``conformance-relay``.

Frames carry no boundaries of their own, so every writer here is
unbuffered: a frame leaves the process as soon as ``write_frame`` returns.
"""

from __future__ import annotations

import contextlib
import logging
import os
import subprocess
import sys
import threading
from enum import Enum
from io import IOBase
from typing import BinaryIO, Protocol, cast, runtime_checkable

from conformance_relay._debug import wire_transport_logger

__all__ = [
    "PipeTransport",
    "RelayTransport",
    "StderrMode",
    "SubprocessTransport",
    "make_pipe_pair",
    "open_stdio",
]

_logger = logging.getLogger("conformance_relay.transport")

_INTERACTIVE_WARNING = (
    "conformance-relay reads length-prefixed binary frames on stdin and writes them on stdout.\n"
    "Start it from a conformance test driver rather than a terminal.\n"
)


@runtime_checkable
class RelayTransport(Protocol):
    """A reader/writer pair of binary streams."""

    @property
    def reader(self) -> IOBase:
        """Stream frames arrive on."""
        ...

    @property
    def writer(self) -> IOBase:
        """Stream frames are written to."""
        ...

    def close(self) -> None:
        """Release both streams."""
        ...


class PipeTransport:
    """Two already-open binary streams used as a transport."""

    __slots__ = ("_reader", "_writer")

    def __init__(self, reader: IOBase, writer: IOBase) -> None:
        """Wrap *reader* and *writer*; neither is touched until used."""
        self._reader = reader
        self._writer = writer

    @property
    def reader(self) -> IOBase:
        """Stream frames arrive on."""
        return self._reader

    @property
    def writer(self) -> IOBase:
        """Stream frames are written to."""
        return self._writer

    def close(self) -> None:
        """Close the writer first so the peer sees EOF, then the reader."""
        for stream in (self._writer, self._reader):
            with contextlib.suppress(OSError, ValueError):
                stream.close()


def make_pipe_pair() -> tuple[PipeTransport, PipeTransport]:
    """Return ``(driver, relay)`` transports joined by two ``os.pipe()`` pairs.

    What the driver writes, the relay reads, and the other way round.
    """
    to_relay_r, to_relay_w = os.pipe()
    to_driver_r, to_driver_w = os.pipe()
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug(
            "pipe pair: driver->relay fds=(%d,%d) relay->driver fds=(%d,%d)",
            to_relay_w,
            to_relay_r,
            to_driver_w,
            to_driver_r,
        )
    driver = PipeTransport(os.fdopen(to_driver_r, "rb"), os.fdopen(to_relay_w, "wb", buffering=0))
    relay = PipeTransport(os.fdopen(to_relay_r, "rb"), os.fdopen(to_driver_w, "wb", buffering=0))
    return driver, relay


def open_stdio() -> PipeTransport:
    """Expose this process's stdin/stdout as a binary transport.

    The descriptors are duplicated into new file objects with
    ``closefd=False``, so closing the transport leaves fd 0 and fd 1 open.
    A warning goes to stderr when either end is a terminal.
    """
    if sys.stdin.isatty() or sys.stdout.isatty():
        sys.stderr.write(_INTERACTIVE_WARNING)
    stdin_fd = sys.stdin.fileno()
    stdout_fd = sys.stdout.fileno()
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug("stdio transport: stdin fd=%d stdout fd=%d", stdin_fd, stdout_fd)
    reader = os.fdopen(stdin_fd, "rb", closefd=False)
    writer = os.fdopen(stdout_fd, "wb", buffering=0, closefd=False)
    return PipeTransport(cast(IOBase, reader), cast(IOBase, writer))


class StderrMode(Enum):
    """Where a child's stderr goes.

    ``INHERIT`` shares the relay's stderr, ``PIPE`` forwards each line to a
    logger, and ``DEVNULL`` drops it.
    """

    INHERIT = "inherit"
    PIPE = "pipe"
    DEVNULL = "devnull"


_STDERR_TARGETS: dict[StderrMode, int | None] = {
    StderrMode.INHERIT: None,
    StderrMode.PIPE: subprocess.PIPE,
    StderrMode.DEVNULL: subprocess.DEVNULL,
}


def _forward_lines(stream: BinaryIO, logger: logging.Logger) -> None:
    """Log each non-blank line of *stream* at INFO until it closes."""
    with contextlib.suppress(OSError, ValueError):
        for raw in stream:
            text = raw.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info(text)
    with contextlib.suppress(OSError, ValueError):
        stream.close()


class SubprocessTransport:
    """Transport over a child process's stdin (writer) and stdout (reader).

    Example::

        transport = SubprocessTransport(["python", "worker.py"], stderr=StderrMode.PIPE)
        write_frame(transport.writer, payload)
        reply = read_frame(transport.reader)
        transport.close()
    """

    __slots__ = ("_closed", "_forwarder", "_proc", "_reader", "_writer")

    def __init__(
        self,
        cmd: list[str],
        *,
        stderr: StderrMode = StderrMode.INHERIT,
        stderr_logger: logging.Logger | None = None,
    ) -> None:
        """Start *cmd* with piped stdin/stdout.

        Args:
            cmd: Program and arguments.
            stderr: Child stderr handling.
            stderr_logger: Destination for ``StderrMode.PIPE`` lines;
                ``conformance_relay.subprocess.stderr`` when omitted.

        """
        self._proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=_STDERR_TARGETS[stderr],
            bufsize=0,
        )
        assert self._proc.stdin is not None and self._proc.stdout is not None
        self._writer: IOBase = cast(IOBase, self._proc.stdin)
        # Buffered reads on top of the raw pipe; the frame reader copes with short reads.
        self._reader: IOBase = os.fdopen(self._proc.stdout.fileno(), "rb", closefd=False)
        self._closed = False
        self._forwarder: threading.Thread | None = None
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("started child pid=%d: %s", self._proc.pid, cmd)
        if stderr is StderrMode.PIPE:
            assert self._proc.stderr is not None
            self._forwarder = threading.Thread(
                target=_forward_lines,
                args=(self._proc.stderr, stderr_logger or logging.getLogger("conformance_relay.subprocess.stderr")),
                name=f"stderr-pid{self._proc.pid}",
                daemon=True,
            )
            self._forwarder.start()

    @property
    def proc(self) -> subprocess.Popen[bytes]:
        """The child process."""
        return self._proc

    @property
    def reader(self) -> IOBase:
        """The child's stdout."""
        return self._reader

    @property
    def writer(self) -> IOBase:
        """The child's stdin."""
        return self._writer

    @property
    def closed(self) -> bool:
        """True once :meth:`close` or :meth:`kill` has been called."""
        return self._closed

    def close(self, timeout: float = 10.0) -> None:
        """Send EOF on the child's stdin and reap it, killing it after *timeout*."""
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(OSError, ValueError):
            self._writer.close()
        try:
            self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            _logger.warning("child pid=%d ignored EOF for %gs; killing it", self._proc.pid, timeout)
            self._proc.kill()
            self._proc.wait()
        self._release()

    def kill(self) -> None:
        """Kill the child without waiting for it to finish its current frame."""
        if self._closed:
            return
        self._closed = True
        self._proc.kill()
        with contextlib.suppress(OSError, ValueError):
            self._writer.close()
        self._proc.wait()
        self._release()

    def _release(self) -> None:
        if self._forwarder is not None:
            self._forwarder.join(timeout=5)
        for stream in (self._reader, self._proc.stdout):
            if stream is not None:
                with contextlib.suppress(OSError, ValueError):
                    stream.close()
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("child pid=%d exited with %s", self._proc.pid, self._proc.returncode)
