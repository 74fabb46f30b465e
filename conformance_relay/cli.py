"""Command-line entry point for the relay.

Reads length-prefixed request frames on stdin and writes response frames
on stdout, forwarding each test case to a worker subprocess or to a
browser session behind a WebDriver endpoint.  Logs go to stderr.

Usage::

    conformance-relay --cmd "python worker.py"
    conformance-relay --webdriver http://127.0.0.1:4444 --script client.js --timeout 30

Exit status is 0 when stdin ends cleanly and 1 on a fatal framing, write,
or envelope error.
"""

from __future__ import annotations

import logging
import shlex
import sys
from io import IOBase
from pathlib import Path
from typing import Annotated, cast

import typer

from conformance_relay.bridge import SubprocessBridge
from conformance_relay.config import RelayConfig
from conformance_relay.errors import RelayError
from conformance_relay.logging_utils import LogFormat, configure_logging
from conformance_relay.relay import run_relay
from conformance_relay.transport import PipeTransport, StderrMode, open_stdio
from conformance_relay.webdriver import WebDriverBridge

_logger = logging.getLogger("conformance_relay.cli")

app = typer.Typer(
    name="conformance-relay",
    help="Relay length-prefixed conformance test cases between stdin/stdout and an RPC client.",
    add_completion=False,
)


def _stdio_transport() -> PipeTransport:
    """Binary transport over stdin/stdout, also when they are not real descriptors."""
    try:
        sys.stdin.fileno()
        sys.stdout.fileno()
    except (AttributeError, OSError, ValueError):
        return PipeTransport(cast(IOBase, sys.stdin.buffer), cast(IOBase, sys.stdout.buffer))
    return open_stdio()


@app.command()
def main(
    cmd: Annotated[str | None, typer.Option("--cmd", "-c", help="Worker command that serves bridge requests")] = None,
    webdriver: Annotated[str | None, typer.Option("--webdriver", "-w", help="WebDriver endpoint URL")] = None,
    script: Annotated[
        Path | None,
        typer.Option("--script", "-s", help="Client script run in the browser", exists=True, dir_okay=False),
    ] = None,
    timeout: Annotated[
        float | None,
        typer.Option("--timeout", "-t", help="Seconds before an invocation is abandoned (0 disables)"),
    ] = None,
    worker_stderr: Annotated[
        StderrMode, typer.Option("--worker-stderr", help="What to do with the worker's stderr")
    ] = StderrMode.INHERIT,
    log_level: Annotated[str, typer.Option("--log-level", help="Log level for stderr output")] = "warning",
    log_format: Annotated[LogFormat, typer.Option("--log-format", help="Log output format")] = LogFormat.text,
) -> None:
    """Relay test cases from stdin to the chosen client until stdin closes."""
    if (cmd is None) == (webdriver is None):
        raise typer.BadParameter("exactly one of --cmd or --webdriver is required")
    if webdriver is not None and script is None:
        raise typer.BadParameter("--script is required with --webdriver")
    if log_level.upper() not in logging.getLevelNamesMapping():
        raise typer.BadParameter(f"unknown log level {log_level!r}", param_hint="--log-level")
    try:
        config = RelayConfig.from_env(invoke_timeout=timeout)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from None

    configure_logging(log_level, log_format)

    bridge: SubprocessBridge | WebDriverBridge
    if cmd is not None:
        bridge = SubprocessBridge(shlex.split(cmd), stderr=worker_stderr)
    else:
        assert webdriver is not None and script is not None
        bridge = WebDriverBridge(webdriver, script.read_text())

    try:
        with bridge:
            count = run_relay(bridge, transport=_stdio_transport(), config=config)
    except RelayError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    _logger.info("relayed %d test case(s)", count)


if __name__ == "__main__":
    app()
