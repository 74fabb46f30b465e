# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Length-prefixed relay between a conformance test driver and an RPC client."""

import logging

from conformance_relay.bridge import SubprocessBridge, serve_bridge, unwrap_bridge_result
from conformance_relay.client import RelayClient
from conformance_relay.config import DEFAULT_INVOKE_TIMEOUT, RelayConfig
from conformance_relay.envelope import (
    BridgeResult,
    BridgeResultKind,
    Cancel,
    CancelTiming,
    ClientCompatRequest,
    ClientCompatResponse,
    ClientErrorResult,
    ClientResponseResult,
    Code,
    Codec,
    Compression,
    ConformancePayload,
    Error,
    Header,
    HTTPVersion,
    RawHTTPRequest,
    RpcProtocol,
    StreamType,
    TLSCreds,
    TypedPayload,
    WireDetails,
    decode_request,
    decode_response,
    encode_request,
    encode_response,
)
from conformance_relay.errors import (
    BridgeError,
    DuplicateTestCaseError,
    EnvelopeError,
    FrameTooLargeError,
    FrameWriteError,
    FramingError,
    InvocationError,
    InvocationTimeoutError,
    RelayError,
    TruncatedFrameError,
    UnexpectedResponseError,
    UnsupportedMethodError,
)
from conformance_relay.framing import FrameReader, encode_frame, read_frame, write_frame
from conformance_relay.invoke import (
    AbortableInvoker,
    Invoker,
    MethodDispatcher,
    base_url,
    build_metadata,
    cancel_after_responses,
    headers_from_metadata,
)
from conformance_relay.relay import Relay, RelayState, run_relay
from conformance_relay.transport import (
    PipeTransport,
    RelayTransport,
    StderrMode,
    SubprocessTransport,
    make_pipe_pair,
    open_stdio,
)
from conformance_relay.utils import ArrowSerializableDataclass, ArrowType, IPCError
from conformance_relay.webdriver import WebDriverBridge

__all__ = [
    # Core
    "Relay",
    "RelayState",
    "RelayConfig",
    "DEFAULT_INVOKE_TIMEOUT",
    "run_relay",
    # Framing
    "FrameReader",
    "read_frame",
    "write_frame",
    "encode_frame",
    # Envelopes
    "ClientCompatRequest",
    "ClientCompatResponse",
    "ClientResponseResult",
    "ClientErrorResult",
    "ConformancePayload",
    "Error",
    "Header",
    "TypedPayload",
    "TLSCreds",
    "Cancel",
    "CancelTiming",
    "RawHTTPRequest",
    "WireDetails",
    "HTTPVersion",
    "RpcProtocol",
    "Codec",
    "Compression",
    "StreamType",
    "Code",
    "decode_request",
    "encode_request",
    "decode_response",
    "encode_response",
    # Invocation
    "Invoker",
    "AbortableInvoker",
    "MethodDispatcher",
    "build_metadata",
    "headers_from_metadata",
    "cancel_after_responses",
    "base_url",
    # Bridges
    "BridgeResult",
    "BridgeResultKind",
    "SubprocessBridge",
    "WebDriverBridge",
    "serve_bridge",
    "unwrap_bridge_result",
    # Driver side
    "RelayClient",
    # Transports
    "RelayTransport",
    "PipeTransport",
    "SubprocessTransport",
    "StderrMode",
    "make_pipe_pair",
    "open_stdio",
    # Serialization
    "ArrowSerializableDataclass",
    "ArrowType",
    "IPCError",
    # Errors
    "RelayError",
    "FramingError",
    "TruncatedFrameError",
    "FrameTooLargeError",
    "FrameWriteError",
    "EnvelopeError",
    "InvocationError",
    "InvocationTimeoutError",
    "UnsupportedMethodError",
    "BridgeError",
    "DuplicateTestCaseError",
    "UnexpectedResponseError",
]

# Attach NullHandler so library users don't get "No handler found" warnings.
logging.getLogger("conformance_relay").addHandler(logging.NullHandler())
