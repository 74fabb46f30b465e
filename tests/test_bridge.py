"""Tests for the subprocess bridge and its worker loop."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from io import BytesIO, IOBase
from typing import cast

import pytest

from conformance_relay.bridge import SubprocessBridge, serve_bridge, unwrap_bridge_result
from conformance_relay.config import RelayConfig
from conformance_relay.envelope import (
    BridgeResult,
    BridgeResultKind,
    ClientCompatRequest,
    ClientResponseResult,
    ConformancePayload,
    decode_response,
    encode_request,
)
from conformance_relay.errors import BridgeError, InvocationError
from conformance_relay.framing import FrameReader
from conformance_relay.relay import Relay
from conformance_relay.transport import PipeTransport, StderrMode
from tests.conftest import bridge_worker_cmd, frames, make_request
from tests.serve_bridge_fixture import EchoDispatcher


@pytest.fixture
def bridge() -> Iterator[SubprocessBridge]:
    """A bridge to the echo worker, closed after the test."""
    with SubprocessBridge(bridge_worker_cmd(), stderr=StderrMode.PIPE) as b:
        yield b


class TestUnwrapBridgeResult:
    """unwrap_bridge_result."""

    def test_data(self) -> None:
        result = ClientResponseResult(payloads=[ConformancePayload(b"d")])
        assert unwrap_bridge_result(BridgeResult.from_result(result)) == result

    def test_error_raises_with_remote_text(self) -> None:
        with pytest.raises(InvocationError, match="^TypeError: x is undefined$"):
            unwrap_bridge_result(BridgeResult.from_error("TypeError: x is undefined"))

    def test_error_without_text(self) -> None:
        with pytest.raises(InvocationError, match="without a message"):
            unwrap_bridge_result(BridgeResult(kind=BridgeResultKind.ERROR))

    def test_undecodable_data(self) -> None:
        with pytest.raises(BridgeError, match="undecodable result"):
            unwrap_bridge_result(BridgeResult(kind=BridgeResultKind.DATA, data=b"junk"))


class TestServeBridge:
    """The worker-side loop, run in-process over memory streams."""

    def _serve(self, invoker: object, *requests: ClientCompatRequest) -> list[BridgeResult]:
        output = BytesIO()
        data = frames(*(encode_request(r) for r in requests))
        transport = PipeTransport(cast(IOBase, BytesIO(data)), cast(IOBase, output))
        assert serve_bridge(invoker, transport) == len(requests)  # type: ignore[arg-type]
        return [BridgeResult.deserialize_from_bytes(p) for p in FrameReader(BytesIO(output.getvalue()))]

    def test_results(self) -> None:
        (result,) = self._serve(EchoDispatcher(), make_request("a", messages=[b"hi"]))
        assert unwrap_bridge_result(result).payloads == [ConformancePayload(b"hi")]

    def test_exceptions_become_error_results(self) -> None:
        (result,) = self._serve(EchoDispatcher(), make_request("a", method="Nope"))
        assert result.kind is BridgeResultKind.ERROR
        assert result.error == "Unknown method: Nope"

    def test_undecodable_request_becomes_error_result(self) -> None:
        output = BytesIO()
        transport = PipeTransport(cast(IOBase, BytesIO(frames(b"garbage"))), cast(IOBase, output))
        serve_bridge(EchoDispatcher(), transport)
        (payload,) = FrameReader(BytesIO(output.getvalue()))
        result = BridgeResult.deserialize_from_bytes(payload)
        assert result.kind is BridgeResultKind.ERROR
        assert "malformed request" in result.error


class TestSubprocessBridge:
    """SubprocessBridge against a real worker process."""

    def test_invoke(self, bridge: SubprocessBridge) -> None:
        result = bridge.invoke(make_request("sub", messages=[b"over the pipe"]))
        assert result.payloads == [ConformancePayload(b"over the pipe")]

    def test_worker_is_reused(self, bridge: SubprocessBridge) -> None:
        for i in range(5):
            bridge.invoke(make_request(f"r{i}"))
        assert bridge.spawn_count == 1

    def test_remote_exception(self, bridge: SubprocessBridge) -> None:
        with pytest.raises(InvocationError, match="server unreachable at example.invalid:9"):
            bridge.invoke(make_request("raise", service="raise", host="example.invalid", port=9))
        assert bridge.invoke(make_request("still-alive")).payloads == [ConformancePayload(b"ping")]
        assert bridge.spawn_count == 1

    def test_worker_crash_respawns(self, bridge: SubprocessBridge) -> None:
        with pytest.raises(BridgeError, match="exited before answering"):
            bridge.invoke(make_request("crash", service="crash"))
        assert bridge.invoke(make_request("after-crash")).payloads == [ConformancePayload(b"ping")]
        assert bridge.spawn_count == 2

    def test_garbage_reply(self, bridge: SubprocessBridge) -> None:
        with pytest.raises(BridgeError, match="undecodable frame"):
            bridge.invoke(make_request("garbage", service="garbage"))
        assert bridge.invoke(make_request("after-garbage")).payloads == [ConformancePayload(b"ping")]
        assert bridge.spawn_count == 2

    def test_abort_kills_worker(self, bridge: SubprocessBridge) -> None:
        bridge.invoke(make_request("warm-up"))
        bridge.abort()
        bridge.invoke(make_request("fresh"))
        assert bridge.spawn_count == 2

    def test_abort_unblocks_pending_invoke(self, bridge: SubprocessBridge) -> None:
        errors: list[BaseException] = []

        def _slow() -> None:
            try:
                bridge.invoke(make_request("slow", request_delay_ms=30_000))
            except BaseException as exc:
                errors.append(exc)

        thread = threading.Thread(target=_slow, daemon=True)
        thread.start()
        thread.join(0.5)
        bridge.abort()
        thread.join(5)
        assert not thread.is_alive()
        assert len(errors) == 1
        assert isinstance(errors[0], BridgeError)

    def test_empty_command_rejected(self) -> None:
        with pytest.raises(ValueError, match="cmd must not be empty"):
            SubprocessBridge([])

    def test_relay_timeout_aborts_worker(self, bridge: SubprocessBridge) -> None:
        data = frames(
            encode_request(make_request("slow", request_delay_ms=30_000)),
            encode_request(make_request("next", messages=[b"n"])),
        )
        output = BytesIO()
        relay = Relay(bridge, config=RelayConfig(invoke_timeout=0.5))
        relay.serve(PipeTransport(cast(IOBase, BytesIO(data)), cast(IOBase, output)))
        slow, nxt = (decode_response(p) for p in FrameReader(BytesIO(output.getvalue())))
        assert slow.error is not None
        assert slow.error.message == "invocation timed out after 0.5s"
        assert nxt.response is not None
        assert nxt.response.payloads == [ConformancePayload(b"n")]
        assert bridge.spawn_count == 2
