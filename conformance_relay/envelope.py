"""Request and response envelopes carried inside relay frames.

A *request envelope* (:class:`ClientCompatRequest`) describes one
conformance test case: which server to call, with which protocol, codec
and compression, which method, which request messages and headers, and
whether to cancel part-way.  A *response envelope*
(:class:`ClientCompatResponse`) echoes the test name and carries exactly
one of a :class:`ClientResponseResult` (what the RPC client observed) or a
:class:`ClientErrorResult` (why the client could not run the case).

Each envelope is serialized as a single-row Arrow IPC stream via
:class:`~conformance_relay.utils.ArrowSerializableDataclass`.

Usage::

    req = decode_request(payload)
    resp = ClientCompatResponse.success(req.test_name, result)
    write_frame(out, encode_response(resp))

"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Annotated, TypeVar

import pyarrow as pa

from conformance_relay._debug import fmt_test_name, wire_envelope_logger
from conformance_relay.errors import EnvelopeError
from conformance_relay.utils import ArrowSerializableDataclass, ArrowType, IPCError, peek_field

__all__ = [
    "TYPE_URL_PREFIX",
    "BridgeResult",
    "BridgeResultKind",
    "Cancel",
    "CancelTiming",
    "ClientCompatRequest",
    "ClientCompatResponse",
    "ClientErrorResult",
    "ClientResponseResult",
    "Code",
    "Codec",
    "Compression",
    "ConformancePayload",
    "Error",
    "HTTPVersion",
    "Header",
    "RawHTTPRequest",
    "RpcProtocol",
    "StreamType",
    "TLSCreds",
    "TypedPayload",
    "WireDetails",
    "decode_request",
    "decode_response",
    "encode_request",
    "encode_response",
]

TYPE_URL_PREFIX = "type.conformance-relay/"

_UInt32 = ArrowType(pa.uint32())
_Int32 = ArrowType(pa.int32())

_R = TypeVar("_R", bound=ArrowSerializableDataclass)

# ---------------------------------------------------------------------------
# Selectors
# ---------------------------------------------------------------------------


class HTTPVersion(Enum):
    """HTTP version the client must use."""

    UNSPECIFIED = "unspecified"
    HTTP_1 = "http/1.1"
    HTTP_2 = "http/2"
    HTTP_3 = "http/3"


class RpcProtocol(Enum):
    """RPC protocol the client must speak."""

    UNSPECIFIED = "unspecified"
    CONNECT = "connect"
    GRPC = "grpc"
    GRPC_WEB = "grpc-web"


class Codec(Enum):
    """Message codec."""

    UNSPECIFIED = "unspecified"
    PROTO = "proto"
    JSON = "json"
    TEXT = "text"


class Compression(Enum):
    """Message compression."""

    UNSPECIFIED = "unspecified"
    IDENTITY = "identity"
    GZIP = "gzip"
    BR = "br"
    ZSTD = "zstd"
    DEFLATE = "deflate"
    SNAPPY = "snappy"


class StreamType(Enum):
    """Shape of the RPC under test."""

    UNSPECIFIED = "unspecified"
    UNARY = "unary"
    CLIENT_STREAM = "client_stream"
    SERVER_STREAM = "server_stream"
    HALF_DUPLEX_BIDI_STREAM = "half_duplex_bidi_stream"
    FULL_DUPLEX_BIDI_STREAM = "full_duplex_bidi_stream"


class CancelTiming(Enum):
    """When the client should cancel the RPC."""

    BEFORE_CLOSE_SEND = "before_close_send"
    AFTER_CLOSE_SEND_MS = "after_close_send_ms"
    AFTER_NUM_RESPONSES = "after_num_responses"


class Code(IntEnum):
    """RPC status codes shared by Connect, gRPC and gRPC-web."""

    CANCELED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


# ---------------------------------------------------------------------------
# Shared records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Header(ArrowSerializableDataclass):
    """A header name with all of its values."""

    name: str
    value: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TypedPayload(ArrowSerializableDataclass):
    """An opaque serialized message tagged with its type URL."""

    type_url: str
    value: bytes = b""

    @classmethod
    def pack(cls, message: ArrowSerializableDataclass) -> TypedPayload:
        """Wrap *message*, tagging it with its class name."""
        return cls(type_url=TYPE_URL_PREFIX + type(message).__name__, value=message.serialize_to_bytes())

    def unpack(self, message_type: type[_R]) -> _R | None:
        """Decode the payload as *message_type*, or ``None`` if the type URL names another type."""
        if self.type_url.rsplit("/", 1)[-1] != message_type.__name__:
            return None
        return message_type.deserialize_from_bytes(self.value)


# ---------------------------------------------------------------------------
# Request envelope
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TLSCreds(ArrowSerializableDataclass):
    """PEM client certificate and key."""

    cert: bytes
    key: bytes


@dataclass(frozen=True)
class Cancel(ArrowSerializableDataclass):
    """Cancellation directive.

    ``value`` is milliseconds for ``AFTER_CLOSE_SEND_MS``, a response
    count for ``AFTER_NUM_RESPONSES``, and unused otherwise.
    """

    timing: CancelTiming
    value: Annotated[int, _UInt32] = 0

    @classmethod
    def before_close_send(cls) -> Cancel:
        return cls(CancelTiming.BEFORE_CLOSE_SEND)

    @classmethod
    def after_close_send_ms(cls, ms: int) -> Cancel:
        return cls(CancelTiming.AFTER_CLOSE_SEND_MS, ms)

    @classmethod
    def after_num_responses(cls, count: int) -> Cancel:
        return cls(CancelTiming.AFTER_NUM_RESPONSES, count)


@dataclass(frozen=True)
class RawHTTPRequest(ArrowSerializableDataclass):
    """Hand-built HTTP request sent instead of a client-generated one."""

    verb: str
    uri: str
    headers: list[Header] = field(default_factory=list)
    body: bytes = b""


@dataclass(frozen=True)
class ClientCompatRequest(ArrowSerializableDataclass):
    """One test case for the RPC client under test."""

    test_name: str
    http_version: HTTPVersion = HTTPVersion.UNSPECIFIED
    protocol: RpcProtocol = RpcProtocol.UNSPECIFIED
    codec: Codec = Codec.UNSPECIFIED
    compression: Compression = Compression.UNSPECIFIED
    host: str = ""
    port: Annotated[int, _UInt32] = 0
    server_tls_cert: bytes = b""
    client_tls_creds: TLSCreds | None = None
    message_receive_limit: Annotated[int, _UInt32] = 0
    service: str = ""
    method: str = ""
    stream_type: StreamType = StreamType.UNSPECIFIED
    use_get_http_method: bool = False
    request_headers: list[Header] = field(default_factory=list)
    request_messages: list[TypedPayload] = field(default_factory=list)
    timeout_ms: Annotated[int | None, _UInt32] = None
    request_delay_ms: Annotated[int, _UInt32] = 0
    cancel: Cancel | None = None
    raw_request: RawHTTPRequest | None = None


# ---------------------------------------------------------------------------
# Response envelope
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConformancePayload(ArrowSerializableDataclass):
    """A response message payload as seen by the client."""

    data: bytes = b""


@dataclass(frozen=True)
class Error(ArrowSerializableDataclass):
    """An RPC error returned by the server under test."""

    code: Annotated[int, _Int32]
    message: str | None = None
    details: list[TypedPayload] = field(default_factory=list)


@dataclass(frozen=True)
class WireDetails(ArrowSerializableDataclass):
    """Low-level observations the client made about the HTTP exchange."""

    actual_status_code: Annotated[int, _Int32] = 0
    connect_error_raw: bytes | None = None
    actual_http_trailers: list[Header] = field(default_factory=list)
    actual_grpcweb_trailers: str | None = None


@dataclass(frozen=True)
class ClientResponseResult(ArrowSerializableDataclass):
    """What the RPC client observed when running a test case."""

    response_headers: list[Header] = field(default_factory=list)
    payloads: list[ConformancePayload] = field(default_factory=list)
    error: Error | None = None
    response_trailers: list[Header] = field(default_factory=list)
    num_unsent_requests: Annotated[int, _Int32] = 0
    wire_details: WireDetails | None = None


@dataclass(frozen=True)
class ClientErrorResult(ArrowSerializableDataclass):
    """Why the client could not run a test case."""

    message: str


@dataclass(frozen=True)
class ClientCompatResponse(ArrowSerializableDataclass):
    """The result of one test case, tagged with its test name.

    Exactly one of ``response`` and ``error`` is set.
    """

    test_name: str
    response: ClientResponseResult | None = None
    error: ClientErrorResult | None = None

    def __post_init__(self) -> None:
        """Enforce that exactly one result kind is present."""
        if (self.response is None) == (self.error is None):
            raise ValueError("ClientCompatResponse requires exactly one of response or error")

    @classmethod
    def success(cls, test_name: str, result: ClientResponseResult) -> ClientCompatResponse:
        return cls(test_name=test_name, response=result)

    @classmethod
    def failure(cls, test_name: str, message: str) -> ClientCompatResponse:
        return cls(test_name=test_name, error=ClientErrorResult(message=message))

    @property
    def is_error(self) -> bool:
        """Whether this response carries a :class:`ClientErrorResult`."""
        return self.error is not None


# ---------------------------------------------------------------------------
# Bridge result
# ---------------------------------------------------------------------------


class BridgeResultKind(Enum):
    """Outcome reported by a remote-execution bridge."""

    DATA = "data"
    ERROR = "error"


@dataclass(frozen=True)
class BridgeResult(ArrowSerializableDataclass):
    """What a remote-execution bridge hands back for one request.

    ``DATA`` carries a serialized :class:`ClientResponseResult`; ``ERROR``
    carries the message text of whatever went wrong on the remote side.
    """

    kind: BridgeResultKind
    data: bytes = b""
    error: str = ""

    @classmethod
    def from_result(cls, result: ClientResponseResult) -> BridgeResult:
        return cls(BridgeResultKind.DATA, data=result.serialize_to_bytes())

    @classmethod
    def from_error(cls, message: str) -> BridgeResult:
        return cls(BridgeResultKind.ERROR, error=message)


# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------

_DECODE_ERRORS = (IPCError, ValueError, TypeError, KeyError, pa.ArrowException)


def decode_request(payload: bytes) -> ClientCompatRequest:
    """Decode a frame payload into a :class:`ClientCompatRequest`.

    Raises:
        EnvelopeError: If the payload is malformed.  ``test_name`` on the
            error is set when the name could still be read from the
            payload, so the caller can report the failure against it.

    """
    try:
        request = ClientCompatRequest.deserialize_from_bytes(payload)
    except _DECODE_ERRORS as exc:
        salvaged = peek_field(payload, "test_name")
        test_name = salvaged if isinstance(salvaged, str) else None
        raise EnvelopeError(f"malformed request: {exc}", test_name=test_name) from exc
    if wire_envelope_logger.isEnabledFor(logging.DEBUG):
        wire_envelope_logger.debug(
            "decoded request: test=%s method=%s messages=%d",
            fmt_test_name(request.test_name),
            request.method,
            len(request.request_messages),
        )
    return request


def encode_request(request: ClientCompatRequest) -> bytes:
    """Serialize a request envelope into a frame payload."""
    return request.serialize_to_bytes()


def decode_response(payload: bytes) -> ClientCompatResponse:
    """Decode a frame payload into a :class:`ClientCompatResponse`.

    Raises:
        EnvelopeError: If the payload is malformed.

    """
    try:
        return ClientCompatResponse.deserialize_from_bytes(payload)
    except _DECODE_ERRORS as exc:
        salvaged = peek_field(payload, "test_name")
        raise EnvelopeError(
            f"malformed response: {exc}",
            test_name=salvaged if isinstance(salvaged, str) else None,
        ) from exc


def encode_response(response: ClientCompatResponse) -> bytes:
    """Serialize a response envelope into a frame payload."""
    data = response.serialize_to_bytes()
    if wire_envelope_logger.isEnabledFor(logging.DEBUG):
        wire_envelope_logger.debug(
            "encoded response: test=%s kind=%s bytes=%d",
            fmt_test_name(response.test_name),
            "error" if response.is_error else "response",
            len(data),
        )
    return data
