"""Exception hierarchy for the relay.

Fatal errors (framing, writes) propagate out of :meth:`Relay.serve`;
everything derived from :class:`InvocationError` or raised by a
collaborator is turned into an error envelope and the loop continues.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay errors."""


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------


class FramingError(RelayError):
    """The length-prefixed byte stream is unusable."""


class TruncatedFrameError(FramingError):
    """The input stream ended in the middle of a frame payload."""

    def __init__(self, expected: int, received: int) -> None:
        """Initialize with the declared payload length and the bytes actually read."""
        self.expected = expected
        self.received = received
        super().__init__(f"truncated frame: expected {expected} payload bytes, stream ended after {received}")


class FrameTooLargeError(FramingError):
    """A payload does not fit a 32-bit unsigned length prefix."""


class FrameWriteError(FramingError):
    """Writing a frame to the output stream failed."""


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class EnvelopeError(RelayError):
    """A frame payload could not be decoded into an envelope.

    Attributes:
        test_name: The test name salvaged from the payload, or ``None``
            when not even that could be read.

    """

    def __init__(self, message: str, *, test_name: str | None = None) -> None:
        """Initialize with a message and the recovered test name, if any."""
        self.test_name = test_name
        super().__init__(message)


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


class InvocationError(RelayError):
    """The invocation collaborator could not produce a result."""


class InvocationTimeoutError(InvocationError):
    """The invocation collaborator did not resolve within the watchdog bound."""

    def __init__(self, timeout: float) -> None:
        """Initialize with the watchdog bound in seconds."""
        self.timeout = timeout
        super().__init__(f"invocation timed out after {timeout:g}s")


class UnsupportedMethodError(InvocationError):
    """The request names a method the collaborator does not know."""

    def __init__(self, method: str) -> None:
        """Initialize with the offending method name."""
        self.method = method
        super().__init__(f"Unknown method: {method}")


class BridgeError(InvocationError):
    """A remote-execution bridge failed to deliver a request or read its result."""


# ---------------------------------------------------------------------------
# Driver side
# ---------------------------------------------------------------------------


class DuplicateTestCaseError(RelayError):
    """A test case with the same name is already awaiting a response."""


class UnexpectedResponseError(RelayError):
    """A response named a test case that is not pending."""


def describe_exception(exc: BaseException) -> str:
    """Message text reported for *exc*, falling back to its type name when empty."""
    text = str(exc)
    return text if text else type(exc).__name__
