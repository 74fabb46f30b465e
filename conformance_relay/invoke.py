# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Invocation collaborator interface and method routing.

The relay hands every decoded request to an *invoker*: anything with an
``invoke(request) -> ClientResponseResult`` method, or a plain callable
with that signature.  Invokers raise to report failure; the relay turns
the exception text into an error envelope.

:class:`MethodDispatcher` is a base for invokers that run the RPC
themselves.  It validates the request shape per method and routes to one
hook per method, answering ``UNIMPLEMENTED`` for streaming shapes the
client cannot do (gRPC-web clients have no client or bidi streaming).

The helpers at the bottom translate request fields into what an RPC
client library typically wants: a metadata mapping with a deadline, the
response-count cancellation point, and the server base URL.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import ClassVar, Protocol, runtime_checkable

from conformance_relay.envelope import (
    CancelTiming,
    ClientCompatRequest,
    ClientResponseResult,
    Code,
    Error,
    Header,
)
from conformance_relay.errors import InvocationError, UnsupportedMethodError

__all__ = [
    "AbortableInvoker",
    "Invoker",
    "MethodDispatcher",
    "as_invoker",
    "base_url",
    "build_metadata",
    "cancel_after_responses",
    "headers_from_metadata",
    "unimplemented_result",
]


# ---------------------------------------------------------------------------
# Invoker protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class Invoker(Protocol):
    """Runs one test case against the system under test."""

    def invoke(self, request: ClientCompatRequest) -> ClientResponseResult:
        """Run *request* and return what the client observed.

        Raises:
            Exception: Any failure; its message becomes the error envelope text.

        """
        ...


@runtime_checkable
class AbortableInvoker(Protocol):
    """Invoker that can abandon an invocation stuck past the watchdog bound."""

    def invoke(self, request: ClientCompatRequest) -> ClientResponseResult:
        """Run *request* and return what the client observed."""
        ...

    def abort(self) -> None:
        """Abandon any in-flight invocation so the next one starts clean."""
        ...


class _CallableInvoker:
    """Adapts a plain function to the :class:`Invoker` protocol."""

    __slots__ = ("_fn",)

    def __init__(self, fn: Callable[[ClientCompatRequest], ClientResponseResult]) -> None:
        self._fn = fn

    def invoke(self, request: ClientCompatRequest) -> ClientResponseResult:
        return self._fn(request)

    def __repr__(self) -> str:
        return f"_CallableInvoker({self._fn!r})"


def as_invoker(target: Invoker | Callable[[ClientCompatRequest], ClientResponseResult]) -> Invoker:
    """Return *target* as an :class:`Invoker`, wrapping plain callables.

    Raises:
        TypeError: If *target* is neither an invoker nor callable.

    """
    if isinstance(target, Invoker):
        return target
    if callable(target):
        return _CallableInvoker(target)
    raise TypeError(f"Expected an Invoker or a callable, got {type(target).__name__}")


# ---------------------------------------------------------------------------
# MethodDispatcher
# ---------------------------------------------------------------------------


def unimplemented_result(message: str) -> ClientResponseResult:
    """Result reporting an ``UNIMPLEMENTED`` RPC error with *message*."""
    return ClientResponseResult(error=Error(code=Code.UNIMPLEMENTED, message=message))


def _require_single_message(request: ClientCompatRequest) -> None:
    if len(request.request_messages) != 1:
        raise InvocationError(
            f"{request.method} method requires exactly one request message, got {len(request.request_messages)}"
        )


class MethodDispatcher:
    """Base invoker routing each request to a per-method hook.

    Subclasses override the hooks for the methods they support.  Hooks left
    alone raise :class:`UnsupportedMethodError`, except the streaming hooks
    switched off through the class flags, which answer ``UNIMPLEMENTED``.
    """

    supports_client_stream: ClassVar[bool] = True
    supports_bidi_stream: ClassVar[bool] = True

    _SINGLE_MESSAGE_METHODS: ClassVar[frozenset[str]] = frozenset({"Unary", "IdempotentUnary"})

    def invoke(self, request: ClientCompatRequest) -> ClientResponseResult:
        """Validate *request* and route it by ``request.method``.

        Raises:
            UnsupportedMethodError: For unknown method names.
            InvocationError: When a single-message method gets zero or
                several request messages.

        """
        method = request.method
        if method in self._SINGLE_MESSAGE_METHODS:
            _require_single_message(request)

        if method == "Unary":
            return self.unary(request)
        if method == "IdempotentUnary":
            return self.idempotent_unary(request)
        if method == "ServerStream":
            return self.server_stream(request)
        if method == "ClientStream":
            if not self.supports_client_stream:
                return unimplemented_result(f"Client Streaming is not supported in {self.client_name}")
            return self.client_stream(request)
        if method == "BidiStream":
            if not self.supports_bidi_stream:
                return unimplemented_result(f"Bidi Streaming is not supported in {self.client_name}")
            return self.bidi_stream(request)
        if method == "Unimplemented":
            return self.unimplemented(request)
        raise UnsupportedMethodError(method)

    @property
    def client_name(self) -> str:
        """Name used in ``UNIMPLEMENTED`` messages."""
        return type(self).__name__

    def unary(self, request: ClientCompatRequest) -> ClientResponseResult:
        raise UnsupportedMethodError(request.method)

    def idempotent_unary(self, request: ClientCompatRequest) -> ClientResponseResult:
        """Defaults to :meth:`unary`; idempotency only changes the HTTP verb."""
        return self.unary(request)

    def server_stream(self, request: ClientCompatRequest) -> ClientResponseResult:
        raise UnsupportedMethodError(request.method)

    def client_stream(self, request: ClientCompatRequest) -> ClientResponseResult:
        raise UnsupportedMethodError(request.method)

    def bidi_stream(self, request: ClientCompatRequest) -> ClientResponseResult:
        raise UnsupportedMethodError(request.method)

    def unimplemented(self, request: ClientCompatRequest) -> ClientResponseResult:
        raise UnsupportedMethodError(request.method)


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def build_metadata(request: ClientCompatRequest, *, clock: Callable[[], float] = time.time) -> dict[str, str]:
    """Flatten request headers into a metadata mapping.

    Multiple values for one header are joined with ``","``.  When the
    request has a positive ``timeout_ms``, a ``deadline`` entry holds the
    absolute deadline in epoch milliseconds.

    Args:
        request: The test case.
        clock: Returns the current time in epoch seconds.

    """
    metadata = {hdr.name: ",".join(hdr.value) for hdr in request.request_headers}
    if request.timeout_ms is not None and request.timeout_ms > 0:
        metadata["deadline"] = str(int(clock() * 1000) + request.timeout_ms)
    return metadata


def headers_from_metadata(metadata: Mapping[str, str] | None) -> list[Header]:
    """Convert a metadata mapping back into single-valued headers."""
    if not metadata:
        return []
    return [Header(name=name, value=[value]) for name, value in metadata.items()]


def cancel_after_responses(request: ClientCompatRequest) -> int:
    """Return the response count after which to cancel, or ``-1``.

    Only ``after_num_responses`` applies to a server stream; the other
    cancellation timings concern the send side and yield ``-1`` here.
    """
    if request.cancel is None or request.cancel.timing is not CancelTiming.AFTER_NUM_RESPONSES:
        return -1
    return request.cancel.value


def base_url(request: ClientCompatRequest) -> str:
    """Base URL of the server under test, ``https`` when a server certificate is given."""
    scheme = "https" if request.server_tls_cert else "http"
    return f"{scheme}://{request.host}:{request.port}"
