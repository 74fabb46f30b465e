"""Debug logging infrastructure for relay wire diagnostics.

Provides logger instances under the ``conformance_relay.wire.*`` hierarchy
and formatting helpers for frames and envelopes.  Enabling
``logging.getLogger("conformance_relay.wire").setLevel(logging.DEBUG)``
shows every frame and envelope that crosses the relay, which is what you
want when a driver and a client disagree about the bytes on the pipe.

All formatting helpers return ``str`` and never log directly.
They are designed to be called inside ``isEnabledFor`` guards so
there is zero overhead when debug logging is disabled.
"""

from __future__ import annotations

import logging

# ---------------------------------------------------------------------------
# Logger hierarchy: conformance_relay.wire.*
# ---------------------------------------------------------------------------

wire_frame_logger = logging.getLogger("conformance_relay.wire.frame")
"""Frame reads and writes (length prefix + payload)."""

wire_envelope_logger = logging.getLogger("conformance_relay.wire.envelope")
"""Envelope serialization / deserialization."""

wire_transport_logger = logging.getLogger("conformance_relay.wire.transport")
"""Transport lifecycle (pipe, subprocess, stdio)."""

# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

_MAX_PREVIEW_BYTES = 16
"""Number of leading payload bytes shown by fmt_payload."""


def fmt_payload(payload: bytes | bytearray | memoryview) -> str:
    """Format a frame payload compactly.

    Returns:
        ``"len=2 head=4142"`` with the head truncated to a few bytes,
        or ``"len=0"`` for empty payloads.

    """
    size = len(payload)
    if size == 0:
        return "len=0"
    head = bytes(payload[:_MAX_PREVIEW_BYTES]).hex()
    suffix = "..." if size > _MAX_PREVIEW_BYTES else ""
    return f"len={size} head={head}{suffix}"


def fmt_test_name(test_name: str | None) -> str:
    """Format a test name for log lines, tolerating ``None``."""
    if test_name is None:
        return "<unknown>"
    return repr(test_name)


INVOKE_THREAD_PREFIX = "relay-invoke:"
"""Name prefix of watchdog invocation threads; the test name follows it."""
