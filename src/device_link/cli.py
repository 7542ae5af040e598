"""device-link command line tool.

Talk to a device from the shell: fire a command, wait for an
acknowledgement, or watch the connection.

Usage:
    device-link send 10.0.0.12 23 "PWR1"                        # Send and exit
    device-link request 10.0.0.12 23 "PWR?" --expect "PWR\\d"   # Wait for a reply
    device-link request 10.0.0.12 23 "PWR?" -e "PWR\\d" -x "ERR"
    device-link monitor 10.0.0.12 23                            # Watch notifications
    device-link monitor 10.0.0.12 23 --json                     # ... as JSON lines

Host and port can also come from DEVICE_LINK_HOST / DEVICE_LINK_PORT.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Callable, Coroutine
from typing import Any

import click

from .config import DEFAULT_ENCODING, DEFAULT_RECONNECT_INTERVAL, DEFAULT_RESPONSE_TIMEOUT, ENV_PREFIX, SessionConfig
from .decoders import DelimiterDecoder, FrameDecoder, LineDecoder
from .errors import DeviceLinkError, RequestFailedError
from .events import Notification, SessionEvent
from .session import Session


def unescape(value: str) -> str:
    """Turn ``\\r\\n`` style escapes typed on the command line into characters."""
    # unicode_escape reads bytes as latin-1; escape anything else first
    return value.encode("latin-1", "backslashreplace").decode("unicode_escape")


def build_decoder(delimiter: str, encoding: str) -> FrameDecoder | None:
    """Pick a decoder for the ``--delimiter`` option (empty: raw chunks)."""
    separator = unescape(delimiter)
    if not separator:
        return None
    if separator == "\n":
        return LineDecoder()
    return DelimiterDecoder(separator.encode(encoding))


def format_notification(notification: Notification, as_json: bool) -> str:
    if as_json:
        return notification.model_dump_json()
    return f"[{notification.timestamp}] {notification.describe()}"


def session_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command that opens a session."""
    options = [
        click.argument("host", envvar=f"{ENV_PREFIX}HOST"),
        click.argument("port", type=int, envvar=f"{ENV_PREFIX}PORT"),
        click.option(
            "--timeout",
            "-t",
            type=float,
            default=DEFAULT_RESPONSE_TIMEOUT,
            envvar=f"{ENV_PREFIX}RESPONSE_TIMEOUT",
            show_default=True,
            help="Connect, idle and response timeout in seconds",
        ),
        click.option(
            "--delimiter",
            "-d",
            default="\\n",
            show_default=True,
            help="Frame delimiter (escapes allowed, empty for raw chunks)",
        ),
        click.option(
            "--encoding",
            default=DEFAULT_ENCODING,
            envvar=f"{ENV_PREFIX}ENCODING",
            show_default=True,
            help="Text encoding for commands and patterns",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_session(
    host: str,
    port: int,
    timeout: float,
    delimiter: str,
    encoding: str,
    reconnect_interval: float = 0,
) -> Session:
    try:
        config = SessionConfig(
            host=host,
            port=port,
            reconnect_interval=reconnect_interval,
            response_timeout=timeout,
            encoding=encoding,
        )
    except ValueError as e:
        raise click.BadParameter(str(e)) from e
    return Session.from_config(config, decoder=build_decoder(delimiter, encoding))


def run_session(coro: Coroutine[Any, Any, None]) -> None:
    """Run a session coroutine, mapping link errors to exit status 1."""
    try:
        asyncio.run(coro)
    except RequestFailedError as e:
        click.echo(f"Device error: {e.match.group(0)}", err=True)
        sys.exit(1)
    except DeviceLinkError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted", err=True)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """device-link - resilient connections to network attached devices."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )


@main.command()
@session_options
@click.argument("command")
@click.option("--eol", default="\\n", show_default=True, help="Appended to COMMAND (escapes allowed)")
def send(
    host: str, port: int, timeout: float, delimiter: str, encoding: str, command: str, eol: str
) -> None:
    """Send COMMAND to the device and exit."""
    session = build_session(host, port, timeout, delimiter, encoding)

    async def run() -> None:
        async with session:
            await session.send(command + unescape(eol))

    run_session(run())


@main.command()
@session_options
@click.argument("command")
@click.option("--expect", "-e", required=True, help="Regular expression of a successful reply")
@click.option("--error", "-x", "error_pattern", default=None, help="Regular expression of an error reply")
@click.option("--eol", default="\\n", show_default=True, help="Appended to COMMAND (escapes allowed)")
def request(
    host: str,
    port: int,
    timeout: float,
    delimiter: str,
    encoding: str,
    command: str,
    expect: str,
    error_pattern: str | None,
    eol: str,
) -> None:
    """Send COMMAND and print the reply matching --expect.

    Exits with status 1 if the reply matches --error, if nothing matches
    within the timeout, or if the device cannot be reached.

    Examples:

        # Query power state
        device-link request 10.0.0.12 23 "PWR?" --expect "PWR\\d"

        # CRLF terminated protocol with error replies
        device-link request 10.0.0.12 23 "VOL?" -e "VOL\\d+" -x "ERR \\d+" --eol "\\r\\n"
    """
    session = build_session(host, port, timeout, delimiter, encoding)

    async def run() -> None:
        async with session:
            match = await session.request(command + unescape(eol), expect, error_pattern)
            click.echo(match.group(0))

    run_session(run())


@main.command()
@session_options
@click.option(
    "--reconnect-interval",
    "-r",
    type=float,
    default=DEFAULT_RECONNECT_INTERVAL,
    envvar=f"{ENV_PREFIX}RECONNECT_INTERVAL",
    show_default=True,
    help="Seconds between reconnect attempts (0 disables)",
)
@click.option("--json", "as_json", is_flag=True, help="Print notifications as JSON lines")
def monitor(
    host: str,
    port: int,
    timeout: float,
    delimiter: str,
    encoding: str,
    reconnect_interval: float,
    as_json: bool,
) -> None:
    """Print every notification of a session.

    Runs until interrupted, or until the connection closes when
    reconnecting is disabled.
    """
    session = build_session(host, port, timeout, delimiter, encoding, reconnect_interval)

    async def run() -> None:
        async def printer() -> None:
            async for notification in session.events.stream():
                click.echo(format_notification(notification, as_json))
                if notification.kind is SessionEvent.CLOSE and not session.config.auto_reconnect:
                    break

        task = asyncio.create_task(printer())
        # Let the printer subscribe before the first notification
        await asyncio.sleep(0)
        try:
            try:
                await session.connect()
            except DeviceLinkError:
                if not session.config.auto_reconnect:
                    raise
            await task
        finally:
            task.cancel()
            await session.close()

    run_session(run())


if __name__ == "__main__":
    main()
