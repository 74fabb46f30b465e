"""Remote-execution bridge to a worker subprocess.

The relay's collaborator often cannot run in the relay's own process: the
RPC client under test lives in another runtime.  :class:`SubprocessBridge`
spawns a worker command and forwards each request to it as a frame on the
worker's stdin; the worker answers with one :class:`BridgeResult` frame
on its stdout.  The worker side of that exchange is :func:`serve_bridge`.

Worker script::

    from conformance_relay.bridge import serve_bridge

    if __name__ == "__main__":
        serve_bridge(MyDispatcher())

Relay side::

    with SubprocessBridge(["python", "worker.py"]) as bridge:
        run_relay(bridge)

Logger: ``conformance_relay.bridge``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from types import TracebackType

import pyarrow as pa

from conformance_relay.envelope import (
    BridgeResult,
    BridgeResultKind,
    ClientCompatRequest,
    ClientResponseResult,
    decode_request,
    encode_request,
)
from conformance_relay.errors import BridgeError, FramingError, InvocationError, describe_exception
from conformance_relay.framing import FrameReader, read_frame, write_frame
from conformance_relay.invoke import Invoker, as_invoker
from conformance_relay.transport import RelayTransport, StderrMode, SubprocessTransport, open_stdio
from conformance_relay.utils import IPCError

__all__ = ["SubprocessBridge", "serve_bridge", "unwrap_bridge_result"]

_logger = logging.getLogger("conformance_relay.bridge")


def unwrap_bridge_result(result: BridgeResult) -> ClientResponseResult:
    """Return the client result carried by *result*.

    Raises:
        InvocationError: If the bridge reported an error; the message is
            the remote error text.
        BridgeError: If a ``DATA`` result does not hold a valid
            :class:`ClientResponseResult`.

    """
    if result.kind is BridgeResultKind.ERROR:
        raise InvocationError(result.error or "bridge reported an error without a message")
    try:
        return ClientResponseResult.deserialize_from_bytes(result.data)
    except (IPCError, ValueError, TypeError, KeyError, pa.ArrowException) as exc:
        raise BridgeError(f"bridge returned an undecodable result: {exc}") from exc


class SubprocessBridge:
    """Invoker that forwards requests to a worker subprocess.

    The worker is spawned lazily on the first invocation and reused for
    every later one.  If it dies, or :meth:`abort` is called after a
    watchdog timeout, it is discarded and the next invocation spawns a
    fresh one.
    """

    def __init__(
        self,
        cmd: list[str],
        *,
        stderr: StderrMode = StderrMode.INHERIT,
        stderr_logger: logging.Logger | None = None,
        transport_factory: Callable[[list[str]], SubprocessTransport] | None = None,
    ) -> None:
        """Configure the worker command.

        Args:
            cmd: Worker command line.
            stderr: How to handle the worker's stderr.
            stderr_logger: Logger for ``StderrMode.PIPE`` output.
            transport_factory: Builds the transport for *cmd*; defaults to
                :class:`SubprocessTransport` with the stderr settings above.

        """
        if not cmd:
            raise ValueError("cmd must not be empty")
        self._cmd = list(cmd)
        self._stderr = stderr
        self._stderr_logger = stderr_logger
        self._factory = transport_factory
        self._transport: SubprocessTransport | None = None
        self._lock = threading.Lock()
        self._spawned = 0

    @property
    def cmd(self) -> list[str]:
        """The worker command line."""
        return list(self._cmd)

    @property
    def spawn_count(self) -> int:
        """How many worker processes this bridge has started."""
        return self._spawned

    def _acquire(self) -> SubprocessTransport:
        with self._lock:
            if self._transport is None or self._transport.closed:
                if self._factory is not None:
                    self._transport = self._factory(self._cmd)
                else:
                    self._transport = SubprocessTransport(
                        self._cmd, stderr=self._stderr, stderr_logger=self._stderr_logger
                    )
                self._spawned += 1
                _logger.debug("spawned bridge worker pid=%d", self._transport.proc.pid)
            return self._transport

    def _discard(self, transport: SubprocessTransport) -> None:
        with self._lock:
            if self._transport is transport:
                self._transport = None
        transport.kill()

    def invoke(self, request: ClientCompatRequest) -> ClientResponseResult:
        """Send *request* to the worker and return its result.

        Raises:
            InvocationError: If the worker reported an error.
            BridgeError: If the worker could not be reached, exited, or
                answered with garbage.  The worker is discarded.

        """
        transport = self._acquire()
        try:
            write_frame(transport.writer, encode_request(request))
            payload = read_frame(transport.reader)
        except (FramingError, OSError, ValueError) as exc:
            # Also reached when abort() closes the pipes under a blocked read.
            self._discard(transport)
            raise BridgeError(f"bridge worker failed: {exc}") from exc
        if payload is None:
            exit_code = transport.proc.poll()
            self._discard(transport)
            raise BridgeError(f"bridge worker exited before answering (exit code {exit_code})")
        try:
            result = BridgeResult.deserialize_from_bytes(payload)
        except (IPCError, ValueError, TypeError, KeyError, pa.ArrowException) as exc:
            self._discard(transport)
            raise BridgeError(f"bridge worker sent an undecodable frame: {exc}") from exc
        return unwrap_bridge_result(result)

    def abort(self) -> None:
        """Kill the current worker; the next invocation spawns a new one."""
        with self._lock:
            transport, self._transport = self._transport, None
        if transport is not None:
            _logger.warning("aborting bridge worker pid=%d", transport.proc.pid)
            transport.kill()

    def close(self) -> None:
        """Send EOF to the worker and wait for it to exit."""
        with self._lock:
            transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()

    def __enter__(self) -> SubprocessBridge:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


def serve_bridge(
    invoker: Invoker | Callable[[ClientCompatRequest], ClientResponseResult],
    transport: RelayTransport | None = None,
) -> int:
    """Answer bridge requests until the input stream ends.

    This is the worker-side entry point.  Each request frame is decoded and
    passed to *invoker*; its result, or the text of whatever it raised, is
    written back as one :class:`BridgeResult` frame.

    Args:
        invoker: The collaborator that actually runs test cases.
        transport: Streams to use; defaults to this process's stdin/stdout.

    Returns:
        Number of requests answered.

    Raises:
        TruncatedFrameError: If the input ends mid-frame.
        FrameWriteError: If the output stream is closed.

    """
    target = as_invoker(invoker)
    if transport is None:
        transport = open_stdio()
    answered = 0
    for payload in FrameReader(transport.reader):
        try:
            result = BridgeResult.from_result(target.invoke(decode_request(payload)))
        except Exception as exc:
            _logger.debug("bridge invocation failed", exc_info=True)
            result = BridgeResult.from_error(describe_exception(exc))
        write_frame(transport.writer, result.serialize_to_bytes())
        answered += 1
    return answered
