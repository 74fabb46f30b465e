"""Driver side of the relay: send test cases, collect their responses.

:class:`RelayClient` writes request frames to a relay and reads response
frames back, keeping track of which test cases are still waiting for an
answer.  Every response must name a pending test case; anything else is a
protocol violation by the relay.

Example::

    transport = SubprocessTransport(["conformance-relay", "--cmd", "python worker.py"])
    results = RelayClient(transport).run_cases(requests)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from conformance_relay._debug import fmt_test_name
from conformance_relay.envelope import ClientCompatRequest, ClientCompatResponse, decode_response, encode_request
from conformance_relay.errors import DuplicateTestCaseError, FramingError, UnexpectedResponseError
from conformance_relay.framing import read_frame, write_frame
from conformance_relay.transport import RelayTransport

__all__ = ["RelayClient"]

_logger = logging.getLogger("conformance_relay.client")

_ABANDON_SENDER_AFTER = 1.0
"""Seconds ``run_cases`` waits for the sender thread after a receive error."""


class RelayClient:
    """Feeds requests to a relay and pairs responses with test names.

    :meth:`send` may run on a different thread than :meth:`receive`, so a
    driver can keep the relay busy while it reads results.
    """

    def __init__(self, transport: RelayTransport) -> None:
        """Initialize with the transport connected to the relay."""
        self._transport = transport
        self._send_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending: set[str] = set()
        self._answered: set[str] = set()
        self._send_closed = False

    @property
    def pending(self) -> frozenset[str]:
        """Test names sent but not yet answered."""
        with self._pending_lock:
            return frozenset(self._pending)

    def send(self, request: ClientCompatRequest) -> None:
        """Write one request frame to the relay.

        Raises:
            DuplicateTestCaseError: If a request with the same test name is
                still waiting for its response.
            FrameWriteError: If the relay's input is closed.

        """
        with self._send_lock:
            if self._send_closed:
                raise FramingError("cannot send after close_send()")
            # Register before writing: the relay may answer before write_frame returns.
            with self._pending_lock:
                if request.test_name in self._pending:
                    raise DuplicateTestCaseError(f"duplicate test case name {request.test_name!r}")
                self._pending.add(request.test_name)
            try:
                write_frame(self._transport.writer, encode_request(request))
            except FramingError:
                with self._pending_lock:
                    self._pending.discard(request.test_name)
                raise

    def close_send(self) -> None:
        """Close the relay's input, signalling that no more requests follow."""
        with self._send_lock:
            if self._send_closed:
                return
            self._send_closed = True
            try:
                self._transport.writer.close()
            except (OSError, ValueError):
                _logger.debug("relay input already closed", exc_info=True)

    def receive(self) -> ClientCompatResponse | None:
        """Read the next response, or ``None`` when the relay closed its output.

        Raises:
            UnexpectedResponseError: If the response names a test case that
                was never sent or was already answered.
            EnvelopeError: If the response frame does not decode.
            TruncatedFrameError: If the relay's output ends mid-frame.

        """
        payload = read_frame(self._transport.reader)
        if payload is None:
            return None
        response = decode_response(payload)
        name = response.test_name
        with self._pending_lock:
            if name in self._pending:
                self._pending.remove(name)
                self._answered.add(name)
                return response
            if name in self._answered:
                raise UnexpectedResponseError(f"duplicate response received for test case name {name!r}")
        raise UnexpectedResponseError(f"received response for unrecognized test case name {name!r}")

    def run_cases(self, requests: Iterable[ClientCompatRequest]) -> dict[str, ClientCompatResponse]:
        """Send every request, close the relay's input, and collect all responses.

        Requests are written from a helper thread while responses are read
        on the calling thread, so neither pipe can fill up and stall the
        relay.  A test case the relay never answered is reported as an error
        response.  When reading fails, sending stops and the error is raised
        without waiting on a write the relay no longer drains; closing the
        transport is then up to the caller.

        Returns:
            Responses keyed by test name.

        Raises:
            DuplicateTestCaseError: If two requests share a test name.
            UnexpectedResponseError: If the relay answers an unknown test case.

        """
        sent_all = threading.Event()
        stop_sending = threading.Event()
        send_errors: list[BaseException] = []

        def _send_all() -> None:
            try:
                for request in requests:
                    if stop_sending.is_set():
                        break
                    self.send(request)
            except BaseException as exc:
                send_errors.append(exc)
            finally:
                self.close_send()
                sent_all.set()

        sender = threading.Thread(target=_send_all, name="relay-client-send", daemon=True)
        sender.start()

        results: dict[str, ClientCompatResponse] = {}
        try:
            while not (sent_all.is_set() and not self.pending):
                response = self.receive()
                if response is None:
                    break
                results[response.test_name] = response
        except BaseException:
            # The relay may have stopped reading, leaving the sender blocked in a write.
            stop_sending.set()
            sender.join(_ABANDON_SENDER_AFTER)
            if sender.is_alive():
                _logger.warning("request sender still blocked writing to the relay; abandoning it")
            raise
        sender.join()

        if send_errors:
            raise send_errors[0]
        for name in sorted(self.pending):
            _logger.warning("relay never answered test case %s", fmt_test_name(name))
            results[name] = ClientCompatResponse.failure(
                name, f"client never provided response for test case {name!r}"
            )
        return results
