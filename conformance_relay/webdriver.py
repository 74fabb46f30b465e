# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Remote-execution bridge to a headless browser over the W3C WebDriver API.

:class:`WebDriverBridge` runs the RPC client under test inside a browser
session driven through a WebDriver endpoint (chromedriver, Selenium grid,
...).  Each request is passed to a client script with
``POST /session/{id}/execute/async``.  The script receives the request
bytes as a JSON array string in ``arguments[0]`` and a completion callback
in ``arguments[1]``, and completes with one of::

    {"type": "data", "data": [<serialized ClientResponseResult bytes>]}
    {"type": "error", "error": "<message>"}

Usage::

    script = Path("client.js").read_text()
    with WebDriverBridge("http://127.0.0.1:4444", script) as bridge:
        run_relay(bridge)

Logger: ``conformance_relay.webdriver``.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping
from types import TracebackType
from typing import Any

import httpx

from conformance_relay.bridge import unwrap_bridge_result
from conformance_relay.envelope import (
    BridgeResult,
    BridgeResultKind,
    ClientCompatRequest,
    ClientResponseResult,
    encode_request,
)
from conformance_relay.errors import BridgeError

__all__ = ["HEADLESS_CHROME", "WebDriverBridge", "decode_script_result"]

_logger = logging.getLogger("conformance_relay.webdriver")

HEADLESS_CHROME: Mapping[str, Any] = {
    "browserName": "chrome",
    "goog:chromeOptions": {"args": ["headless", "disable-gpu"]},
}
"""Default session capabilities."""


def _as_bytes(value: object) -> bytes:
    """Convert a script-returned byte container to ``bytes``.

    Browsers serialize a ``Uint8Array`` either as a JSON array of ints or
    as an object keyed by index, depending on the driver.
    """
    if isinstance(value, list):
        return bytes(value)
    if isinstance(value, dict):
        return bytes(value[str(i)] for i in range(len(value)))
    if isinstance(value, str):
        return value.encode("latin-1")
    raise TypeError(f"expected a byte array, got {type(value).__name__}")


def decode_script_result(value: object) -> BridgeResult:
    """Turn the client script's completion value into a :class:`BridgeResult`.

    Raises:
        BridgeError: If *value* is not a ``data`` or ``error`` object.

    """
    if not isinstance(value, dict):
        raise BridgeError(f"client script returned {type(value).__name__}, expected an object")
    kind = value.get("type")
    if kind == "data":
        try:
            return BridgeResult(kind=BridgeResultKind.DATA, data=_as_bytes(value.get("data", [])))
        except (TypeError, ValueError, KeyError) as exc:
            raise BridgeError(f"client script returned malformed data: {exc}") from exc
    if kind == "error":
        return BridgeResult(kind=BridgeResultKind.ERROR, error=str(value.get("error", "")))
    raise BridgeError(f"client script returned unknown result type {kind!r}")


class WebDriverBridge:
    """Invoker that runs each request in a WebDriver browser session.

    The session is created on first use and reused.  :meth:`abort` deletes
    it so a hung script cannot block the next request; the next invocation
    opens a new one.
    """

    def __init__(
        self,
        url: str,
        script: str,
        *,
        capabilities: Mapping[str, Any] | None = None,
        script_timeout: float | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """Configure the WebDriver endpoint and client script.

        Args:
            url: WebDriver endpoint base URL.
            script: JavaScript source run for every request.
            capabilities: ``alwaysMatch`` session capabilities; defaults to
                :data:`HEADLESS_CHROME`.
            script_timeout: Browser-side async script timeout in seconds;
                ``None`` leaves the driver's default.
            client: HTTP client to use.  When omitted, one is created for
                *url* and closed by :meth:`close`.

        """
        self._capabilities = dict(capabilities if capabilities is not None else HEADLESS_CHROME)
        self._script = script
        self._script_timeout = script_timeout
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(base_url=url, timeout=None)
        self._session_id: str | None = None
        self._lock = threading.Lock()

    @property
    def session_id(self) -> str | None:
        """Current WebDriver session id, or ``None`` before first use."""
        return self._session_id

    # ------------------------------------------------------------------
    # WebDriver commands
    # ------------------------------------------------------------------

    def _command(self, method: str, path: str, payload: Mapping[str, Any] | None = None) -> Any:
        """Issue one WebDriver command and return its ``value``.

        Raises:
            BridgeError: On connection failures and WebDriver error replies.

        """
        try:
            resp = self._client.request(method, path, json=payload)
        except httpx.HTTPError as exc:
            raise BridgeError(f"webdriver request {method} {path} failed: {exc}") from exc
        try:
            body = resp.json()
        except json.JSONDecodeError:
            body = {}
        value = body.get("value") if isinstance(body, dict) else None
        if resp.status_code >= 400:
            if isinstance(value, dict):
                detail = f"{value.get('error', 'unknown error')}: {value.get('message', '')}".rstrip(": ")
            else:
                detail = resp.text
            raise BridgeError(f"webdriver {method} {path} returned {resp.status_code}: {detail}")
        return value

    def _ensure_session(self) -> str:
        with self._lock:
            if self._session_id is not None:
                return self._session_id
            value = self._command("POST", "/session", {"capabilities": {"alwaysMatch": self._capabilities}})
            session_id = value.get("sessionId") if isinstance(value, dict) else None
            if not session_id:
                raise BridgeError("webdriver did not return a session id")
            if self._script_timeout is not None:
                self._command(
                    "POST",
                    f"/session/{session_id}/timeouts",
                    {"script": int(self._script_timeout * 1000)},
                )
            _logger.debug("opened webdriver session %s", session_id)
            self._session_id = session_id
            return session_id

    def _drop_session(self) -> None:
        with self._lock:
            session_id, self._session_id = self._session_id, None
        if session_id is None:
            return
        try:
            self._command("DELETE", f"/session/{session_id}")
        except BridgeError as exc:
            _logger.warning("could not delete webdriver session %s: %s", session_id, exc)
        else:
            _logger.debug("deleted webdriver session %s", session_id)

    # ------------------------------------------------------------------
    # Invoker
    # ------------------------------------------------------------------

    def invoke(self, request: ClientCompatRequest) -> ClientResponseResult:
        """Run *request* in the browser and return the client's result.

        Raises:
            InvocationError: If the client script reported an error.
            BridgeError: If the WebDriver endpoint failed or the script
                returned something unusable.

        """
        session_id = self._ensure_session()
        args = [json.dumps(list(encode_request(request)))]
        value = self._command(
            "POST",
            f"/session/{session_id}/execute/async",
            {"script": self._script, "args": args},
        )
        return unwrap_bridge_result(decode_script_result(value))

    def abort(self) -> None:
        """Delete the current session; the next invocation opens a new one."""
        _logger.warning("aborting webdriver session %s", self._session_id)
        self._drop_session()

    def close(self) -> None:
        """Delete the session and close the HTTP client if this bridge created it."""
        self._drop_session()
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> WebDriverBridge:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
