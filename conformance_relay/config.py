"""Relay configuration.

Provides :class:`RelayConfig`, the frozen settings object consumed by
:class:`~conformance_relay.relay.Relay`.  Values come from, in order of
precedence: explicit constructor arguments (the CLI passes its flags
here), ``RELAY_*`` environment variables via :meth:`RelayConfig.from_env`,
and the defaults below.

Environment variables:
    RELAY_INVOKE_TIMEOUT: Watchdog bound in seconds (``0`` disables).
"""

from __future__ import annotations

import math
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

__all__ = ["DEFAULT_INVOKE_TIMEOUT", "RelayConfig"]

DEFAULT_INVOKE_TIMEOUT: float = 15.0
"""Seconds a single invocation may run before the watchdog fires."""

_ENV_INVOKE_TIMEOUT = "RELAY_INVOKE_TIMEOUT"


@dataclass(frozen=True)
class RelayConfig:
    """Settings for one relay instance.

    Attributes:
        invoke_timeout: Watchdog bound in seconds around each collaborator
            invocation.  ``0`` disables the watchdog and calls the
            collaborator directly in the relay thread.
        abort_on_timeout: Whether to call the collaborator's ``abort()``
            hook (when it has one) after the watchdog fires.

    Raises:
        ValueError: If *invoke_timeout* is negative, not finite, or
            longer than ``threading.TIMEOUT_MAX``.

    """

    invoke_timeout: float = DEFAULT_INVOKE_TIMEOUT
    abort_on_timeout: bool = True

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not math.isfinite(self.invoke_timeout):
            raise ValueError(f"invoke_timeout must be a finite number of seconds, got {self.invoke_timeout}")
        if self.invoke_timeout < 0:
            raise ValueError(f"invoke_timeout must be >= 0, got {self.invoke_timeout}")
        if self.invoke_timeout > threading.TIMEOUT_MAX:
            raise ValueError(f"invoke_timeout must be <= {threading.TIMEOUT_MAX:g}, got {self.invoke_timeout:g}")

    @property
    def watchdog_enabled(self) -> bool:
        """Whether invocations run under the watchdog."""
        return self.invoke_timeout > 0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> RelayConfig:
        """Build a config from ``RELAY_*`` environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ``.
            **overrides: Field values that take precedence over the
                environment; ``None`` values are ignored.

        Raises:
            ValueError: If an environment value is not a valid number.

        """
        env = os.environ if environ is None else environ
        config = cls()
        raw = env.get(_ENV_INVOKE_TIMEOUT, "").strip()
        if raw:
            try:
                timeout = float(raw)
            except ValueError:
                raise ValueError(f"{_ENV_INVOKE_TIMEOUT} must be a number of seconds, got {raw!r}") from None
            config = replace(config, invoke_timeout=timeout)
        explicit = {k: v for k, v in overrides.items() if v is not None}
        if explicit:
            config = replace(config, **explicit)
        return config
