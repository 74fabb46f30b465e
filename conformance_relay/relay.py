# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""The framed relay: read a request frame, invoke, write a response frame.

:class:`Relay` ties the framing layer to an invocation collaborator.  One
request is fully processed before the next frame is read, so responses
leave in exactly the order requests arrived::

    AWAITING_FRAME --frame--> PROCESSING --response written--> AWAITING_FRAME
    AWAITING_FRAME --clean end of input--> TERMINATED
    any state --truncated frame / write error--> FAILED

Per-request failures (a collaborator that raises or times out, a request
that does not decode but still names its test) become error envelopes and
the loop continues.  Framing failures, write failures, and requests too
broken to name their test are fatal and propagate out of :meth:`Relay.serve`.

Every invocation runs under a watchdog (``RelayConfig.invoke_timeout``,
15 seconds by default).  When it fires, the relay answers with a timeout
error, asks the collaborator to ``abort()`` if it can, and moves on.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum

import pyarrow as pa

from conformance_relay._debug import INVOKE_THREAD_PREFIX, fmt_test_name
from conformance_relay.config import RelayConfig
from conformance_relay.envelope import (
    ClientCompatRequest,
    ClientCompatResponse,
    ClientResponseResult,
    decode_request,
    encode_response,
)
from conformance_relay.errors import (
    EnvelopeError,
    InvocationError,
    InvocationTimeoutError,
    RelayError,
    describe_exception,
)
from conformance_relay.framing import FrameReader, write_frame
from conformance_relay.invoke import AbortableInvoker, Invoker, as_invoker
from conformance_relay.transport import RelayTransport, open_stdio

__all__ = ["Relay", "RelayState", "run_relay"]

_logger = logging.getLogger("conformance_relay.relay")


class RelayState(Enum):
    """Lifecycle of a relay's dispatch loop."""

    AWAITING_FRAME = "awaiting_frame"
    PROCESSING = "processing"
    TERMINATED = "terminated"
    FAILED = "failed"


class Relay:
    """Dispatch loop between a framed byte stream and an invoker."""

    __slots__ = ("_config", "_handled", "_invoker", "_state", "_straggler")

    def __init__(
        self,
        invoker: Invoker | Callable[[ClientCompatRequest], ClientResponseResult],
        *,
        config: RelayConfig | None = None,
    ) -> None:
        """Initialize with the collaborator and optional configuration.

        Args:
            invoker: Runs each test case; an :class:`Invoker` or a callable.
            config: Relay settings; defaults to :class:`RelayConfig` defaults.

        """
        self._invoker = as_invoker(invoker)
        self._config = config if config is not None else RelayConfig()
        self._state = RelayState.AWAITING_FRAME
        self._handled = 0
        self._straggler: threading.Thread | None = None

    @property
    def config(self) -> RelayConfig:
        """The relay's settings."""
        return self._config

    @property
    def state(self) -> RelayState:
        """Current state of the dispatch loop."""
        return self._state

    @property
    def handled(self) -> int:
        """Number of responses written by the current or last :meth:`serve`."""
        return self._handled

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def serve(self, transport: RelayTransport) -> int:
        """Relay requests until the transport's input ends.

        Returns:
            Number of request/response pairs relayed.

        Raises:
            TruncatedFrameError: If the input ends mid-frame.
            FrameWriteError: If a response cannot be written.
            EnvelopeError: If a request is malformed beyond recovering its
                test name.

        """
        self._handled = 0
        self._state = RelayState.AWAITING_FRAME
        _logger.debug("relay started: invoker=%r, invoke_timeout=%s", self._invoker, self._config.invoke_timeout)
        try:
            for payload in FrameReader(transport.reader):
                self._state = RelayState.PROCESSING
                response = self.handle(payload)
                write_frame(transport.writer, self._encode(response))
                self._handled += 1
                self._state = RelayState.AWAITING_FRAME
        except RelayError as exc:
            self._state = RelayState.FAILED
            _logger.error("relay failed after %d request(s): %s", self._handled, exc)
            raise
        self._state = RelayState.TERMINATED
        _logger.debug("relay finished: %d request(s)", self._handled)
        return self._handled

    def handle(self, payload: bytes) -> ClientCompatResponse:
        """Turn one request payload into its response envelope.

        Never raises for collaborator failures; those are reported in the
        returned envelope.

        Raises:
            EnvelopeError: If the payload is malformed and no test name
                can be recovered from it.

        """
        try:
            request = decode_request(payload)
        except EnvelopeError as exc:
            if exc.test_name is None:
                raise
            _logger.warning(
                "malformed request for test %s: %s",
                fmt_test_name(exc.test_name),
                exc,
                extra={"test_name": exc.test_name, "outcome": "malformed"},
            )
            return ClientCompatResponse.failure(exc.test_name, str(exc))

        start = time.monotonic()
        outcome = "ok"
        try:
            result = self._invoke(request)
        except InvocationTimeoutError as exc:
            outcome = "timeout"
            self._abort_after_timeout()
            response = ClientCompatResponse.failure(request.test_name, str(exc))
        except Exception as exc:
            outcome = "error"
            _logger.debug("invocation for %s raised", fmt_test_name(request.test_name), exc_info=True)
            response = ClientCompatResponse.failure(request.test_name, describe_exception(exc))
        else:
            if isinstance(result, ClientResponseResult):
                response = ClientCompatResponse.success(request.test_name, result)
            else:
                outcome = "error"
                response = ClientCompatResponse.failure(
                    request.test_name,
                    f"invoker returned {type(result).__name__}, expected ClientResponseResult",
                )

        _logger.info(
            "relayed test case %s: %s",
            fmt_test_name(request.test_name),
            outcome,
            extra={
                "test_name": request.test_name,
                "outcome": outcome,
                "duration_ms": round((time.monotonic() - start) * 1000, 3),
            },
        )
        return response

    # ------------------------------------------------------------------
    # Invocation + watchdog
    # ------------------------------------------------------------------

    def _invoke(self, request: ClientCompatRequest) -> object:
        """Call the invoker, bounded by the watchdog when it is enabled."""
        if not self._config.watchdog_enabled:
            return self._invoker.invoke(request)
        self._wait_for_straggler()

        timeout = self._config.invoke_timeout
        outcome: list[object] = []
        error: list[BaseException] = []
        finished = threading.Event()

        def _target() -> None:
            try:
                outcome.append(self._invoker.invoke(request))
            except BaseException as e:
                error.append(e)
            finally:
                finished.set()

        thread = threading.Thread(target=_target, name=f"{INVOKE_THREAD_PREFIX}{request.test_name}", daemon=True)
        thread.start()
        # Counted as a straggler until it is seen to finish, whatever interrupts the wait.
        self._straggler = thread
        if not finished.wait(timeout):
            raise InvocationTimeoutError(timeout)
        self._straggler = None
        if error:
            raise error[0]
        return outcome[0]

    def _wait_for_straggler(self) -> None:
        """Keep invocations one-at-a-time after a watchdog expiry.

        Raises:
            InvocationError: If the abandoned invocation is still running
                after another full watchdog period.

        """
        straggler = self._straggler
        if straggler is None:
            return
        straggler.join(self._config.invoke_timeout)
        if straggler.is_alive():
            raise InvocationError("collaborator is still busy with an abandoned invocation")
        self._straggler = None

    def _abort_after_timeout(self) -> None:
        if not self._config.abort_on_timeout or not isinstance(self._invoker, AbortableInvoker):
            return
        try:
            self._invoker.abort()
        except Exception:
            _logger.warning("collaborator abort() failed", exc_info=True)

    def _encode(self, response: ClientCompatResponse) -> bytes:
        """Serialize *response*, reporting an unencodable result as an error envelope."""
        try:
            return encode_response(response)
        except (pa.ArrowException, TypeError, ValueError) as exc:
            _logger.warning("could not encode result for %s: %s", fmt_test_name(response.test_name), exc)
            return encode_response(
                ClientCompatResponse.failure(response.test_name, f"could not encode result: {exc}")
            )


def run_relay(
    invoker: Invoker | Callable[[ClientCompatRequest], ClientResponseResult],
    *,
    transport: RelayTransport | None = None,
    config: RelayConfig | None = None,
) -> int:
    """Relay requests over *transport*, by default this process's stdin/stdout.

    This is the recommended entry point for a relay process.

    Returns:
        Number of request/response pairs relayed.

    """
    if transport is None:
        transport = open_stdio()
    return Relay(invoker, config=config).serve(transport)
