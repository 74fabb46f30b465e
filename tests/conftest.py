"""Shared test fixtures for conformance-relay tests."""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from io import BytesIO, IOBase
from pathlib import Path
from typing import Any, cast

import pytest

from conformance_relay.envelope import ClientCompatRequest, TypedPayload
from conformance_relay.framing import encode_frame
from conformance_relay.relay import Relay
from conformance_relay.transport import PipeTransport, make_pipe_pair

BRIDGE_FIXTURE = str(Path(__file__).parent / "serve_bridge_fixture.py")


def bridge_worker_cmd() -> list[str]:
    """Return the command to launch the test bridge worker subprocess."""
    return [sys.executable, BRIDGE_FIXTURE]


def make_request(
    test_name: str,
    *,
    method: str = "Unary",
    messages: list[bytes] | None = None,
    **kwargs: Any,
) -> ClientCompatRequest:
    """Build a request with one message per entry in *messages* (default: one ``b"ping"``)."""
    values = [b"ping"] if messages is None else messages
    return ClientCompatRequest(
        test_name=test_name,
        method=method,
        request_messages=[TypedPayload(type_url="type.test/Echo", value=v) for v in values],
        **kwargs,
    )


def frames(*payloads: bytes) -> bytes:
    """Concatenate framed payloads into one input buffer."""
    return b"".join(encode_frame(p) for p in payloads)


@dataclass
class MemoryRelay:
    """In-memory input/output pair for driving a relay synchronously."""

    transport: PipeTransport
    output: BytesIO


def memory_transport(data: bytes) -> MemoryRelay:
    """Transport reading *data* and writing into a fresh ``BytesIO``."""
    output = BytesIO()
    return MemoryRelay(PipeTransport(cast(IOBase, BytesIO(data)), cast(IOBase, output)), output)


@pytest.fixture
def relay_over_pipes() -> Iterator[Callable[[Relay], PipeTransport]]:
    """Run a relay on a background thread over a pipe pair; yields a starter.

    The starter returns the driver-side transport.  On teardown the driver
    closes its writer (EOF for the relay) and the relay thread is joined.
    """
    started: list[tuple[PipeTransport, PipeTransport, threading.Thread]] = []

    def start(relay: Relay) -> PipeTransport:
        driver, relay_side = make_pipe_pair()

        def _serve() -> None:
            try:
                relay.serve(relay_side)
            finally:
                relay_side.close()

        thread = threading.Thread(target=_serve, daemon=True)
        thread.start()
        started.append((driver, relay_side, thread))
        return driver

    yield start

    for driver, _, thread in started:
        driver.close()
        thread.join(timeout=10)
