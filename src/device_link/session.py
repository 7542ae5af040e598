"""Resilient session to a single device.

The session owns at most one transport at a time and drives it through a
small state machine:

    IDLE / RECONNECT_WAIT  --connect()-->        CONNECTING
    CONNECTING             --handshake-->        CONNECTED
    CONNECTING / CONNECTED --transport closed--> RECONNECT_WAIT or IDLE
    RECONNECT_WAIT         --reconnect timer-->  CONNECTING

- ``response_timeout`` bounds the connect handshake, the idle time of a
  live connection (no bytes read or written) and every request.
- After an unexpected close, a fixed-interval reconnect is scheduled unless
  reconnecting is disabled (``reconnect_interval <= 0``) or the close was
  requested through ``close()``.
- Only the caller of an explicit ``connect()`` observes the outcome of the
  first attempt; background reconnect attempts are visible only through the
  ``reconnect`` / ``connect`` / ``close`` notifications.
"""

from __future__ import annotations

import asyncio
import logging
import re
import warnings
from collections.abc import Callable
from enum import Enum
from typing import Any

from .config import DEFAULT_ENCODING, DEFAULT_RECONNECT_INTERVAL, DEFAULT_RESPONSE_TIMEOUT, SessionConfig
from .correlator import Pattern, PendingRequest, compile_pattern
from .decoders import FrameDecoder
from .errors import (
    ConnectTimeoutError,
    DeviceLinkError,
    IdleTimeoutError,
    NotConnectedError,
    SessionClosedError,
    TransportError,
)
from .events import Listener, Notifier, SessionEvent
from .stream import FrameStream
from .transport import StreamTransport, TCPStreamTransport, TransportFactory

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Connection state machine."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_WAIT = "reconnect_wait"


class Session:
    """Long-lived connection to one device with request/response helpers.

    Usage:
        session = Session("10.0.0.12", 23, decoder=LineDecoder())
        session.on("reconnect", print)

        async with session:
            match = await session.request("PWR?\\r\\n", r"PWR(\\d)", r"ERR \\d+")
            print(match.group(1))
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        *,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        response_timeout: float = DEFAULT_RESPONSE_TIMEOUT,
        encoding: str = DEFAULT_ENCODING,
        decoder: FrameDecoder | None = None,
        transport_factory: TransportFactory | None = None,
        ip: str | None = None,
    ):
        if ip is not None:
            warnings.warn(
                "Session(ip=...) is deprecated. Please use host instead.",
                DeprecationWarning,
                stacklevel=2,
            )
            if host is None:
                host = ip

        self.config = SessionConfig(
            host=host,
            port=port,
            reconnect_interval=reconnect_interval,
            response_timeout=response_timeout,
            encoding=encoding,
        )
        self.events = Notifier()
        self._decoder = decoder
        self._transport_factory: TransportFactory = transport_factory or TCPStreamTransport

        self._state = SessionState.IDLE
        self._connected = False
        self._user_close = False
        self._transport: StreamTransport | None = None
        self._stream: FrameStream | None = None
        self._link_task: asyncio.Task[None] | None = None
        self._connect_waiter: asyncio.Future[None] | None = None
        self._connect_deadline: asyncio.TimerHandle | None = None
        self._reconnect_timer: asyncio.TimerHandle | None = None
        self._teardown_error: BaseException | None = None
        self._teardown_requested = False
        self._last_activity = 0.0

    @classmethod
    def from_config(
        cls,
        config: SessionConfig,
        decoder: FrameDecoder | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> Session:
        return cls(
            config.host,
            config.port,
            reconnect_interval=config.reconnect_interval,
            response_timeout=config.response_timeout,
            encoding=config.encoding,
            decoder=decoder,
            transport_factory=transport_factory,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def port(self) -> int:
        return self.config.port

    @property
    def ip(self) -> str:
        warnings.warn(
            "Session.ip is deprecated. Please use Session.host instead.",
            DeprecationWarning,
            stacklevel=2,
        )
        return self.config.host

    @property
    def reconnect_interval(self) -> float:
        return self.config.reconnect_interval

    @property
    def response_timeout(self) -> float:
        return self.config.response_timeout

    @property
    def state(self) -> SessionState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """True while the transport is established and not yet closed."""
        return self._connected

    @property
    def pending_requests(self) -> int:
        """Requests currently observing the live frame stream."""
        return self._stream.pending_count if self._stream else 0

    def on(self, kind: SessionEvent | str, listener: Listener) -> Callable[[], None]:
        """Shortcut for ``session.events.on``."""
        return self.events.on(kind, listener)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self, reconnect: bool = False) -> None:
        """Connect to the device.

        Does nothing if already connected. A call made while an attempt is
        in flight waits for that attempt instead of starting another one.

        Args:
            reconnect: Start the attempt without waiting for its outcome
                (used by the reconnect timer)

        Raises:
            ConnectTimeoutError: Handshake not completed in time
            TransportError: The peer refused or could not be reached
            SessionClosedError: ``close()`` was called during the attempt
        """
        if self._connected:
            return

        if self._state is not SessionState.CONNECTING:
            self._start_attempt()

        if reconnect:
            return

        await asyncio.shield(self._ensure_waiter())

    async def close(self) -> None:
        """Close the connection and stop reconnecting.

        Returns once the transport has acknowledged the shutdown, so no
        transport is left running when this coroutine finishes.
        """
        self._user_close = True
        self._cancel_reconnect_timer()

        transport, task = self._transport, self._link_task
        if transport is None or task is None:
            self._state = SessionState.IDLE
            return

        logger.info(f"Closing connection to {self.host}:{self.port}")
        if self._connected:
            try:
                await transport.end()
            except OSError as e:
                logger.debug(f"Graceful shutdown failed, aborting transport: {e}")
                transport.abort()
        else:
            self._destroy(None)

        await asyncio.wait({task})

    async def __aenter__(self) -> Session:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _start_attempt(self) -> None:
        if self._transport is not None:
            raise RuntimeError("Previous transport has not been torn down")

        self._user_close = False
        self._cancel_reconnect_timer()
        self._teardown_error = None
        self._teardown_requested = False

        transport = self._transport_factory()
        self._transport = transport
        self._state = SessionState.CONNECTING
        logger.info(f"Connecting to {self.host}:{self.port}")

        loop = asyncio.get_running_loop()
        self._cancel_connect_deadline()
        self._connect_deadline = loop.call_later(self.response_timeout, self._on_connect_timeout)
        self._link_task = loop.create_task(self._run(transport))

    async def _run(self, transport: StreamTransport) -> None:
        """Own one transport from handshake to teardown."""
        error: BaseException | None = None
        try:
            await transport.open(self.host, self.port)
            stream = self._on_connect()
            await self._read_loop(transport, stream)
        except asyncio.CancelledError:
            if not self._teardown_requested:
                # Cancelled from outside (e.g. loop shutdown): tear down without reconnecting
                self._user_close = True
                raise
            # Destroyed by a connect timeout or by close()
            error = self._teardown_error
        except Exception as e:
            error = e
            logger.debug(f"Transport error on {self.host}:{self.port}: {e!r}")
            self.events.emit(SessionEvent.ERROR, e)
        finally:
            transport.abort()
            self._on_disconnect(error)

    async def _read_loop(self, transport: StreamTransport, stream: FrameStream) -> None:
        loop = asyncio.get_running_loop()
        while True:
            remaining = self._last_activity + self.response_timeout - loop.time()
            if remaining <= 0:
                error = IdleTimeoutError(self.host, self.port, self.response_timeout)
                logger.warning(str(error))
                self.events.emit(SessionEvent.TIMEOUT)
                raise error

            try:
                chunk = await asyncio.wait_for(transport.read(), timeout=remaining)
            except TimeoutError:
                continue

            if not chunk:
                logger.debug(f"Peer {self.host}:{self.port} closed the connection")
                return

            self._last_activity = loop.time()
            stream.feed(chunk)

    def _on_connect(self) -> FrameStream:
        self._cancel_connect_deadline()

        stream = FrameStream(self._emit_data, self._decoder)
        self._stream = stream
        self._last_activity = asyncio.get_running_loop().time()

        waiter = self._connect_waiter
        self._connect_waiter = None
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

        self._cancel_reconnect_timer()
        self._connected = True
        self._state = SessionState.CONNECTED
        logger.info(f"Connected to {self.host}:{self.port}")
        self.events.emit(SessionEvent.CONNECT)
        return stream

    def _on_disconnect(self, error: BaseException | None) -> None:
        was_connected = self._connected
        self._connected = False
        self._transport = None
        self._link_task = None

        if self._stream is not None:
            self._stream.detach()
            self._stream = None
        self._cancel_connect_deadline()
        self._fail_waiter(error)

        if was_connected:
            logger.info(f"Connection to {self.host}:{self.port} closed")

        if self.config.auto_reconnect and not self._user_close:
            message = (
                f"Connection at {self.host}:{self.port} lost! "
                f"Attempting reconnect in {self.reconnect_interval:g} seconds..."
            )
            logger.warning(message)
            self._state = SessionState.RECONNECT_WAIT
            self.events.emit(SessionEvent.RECONNECT, message)
            self._cancel_reconnect_timer()
            self._reconnect_timer = asyncio.get_running_loop().call_later(
                self.reconnect_interval, self._reconnect
            )
        else:
            self._state = SessionState.IDLE

        self.events.emit(SessionEvent.CLOSE)

    def _on_connect_timeout(self) -> None:
        self._connect_deadline = None
        if self._state is not SessionState.CONNECTING:
            return

        error = ConnectTimeoutError(self.host, self.port)
        logger.warning(str(error))
        self.events.emit(SessionEvent.TIMEOUT)
        self._destroy(error)

    def _destroy(self, error: BaseException | None) -> None:
        """Force the transport down; the link task then runs close handling."""
        self._teardown_error = error
        self._teardown_requested = True
        if error is not None:
            self.events.emit(SessionEvent.ERROR, error)
        if self._transport is not None:
            self._transport.abort()
        if self._link_task is not None:
            self._link_task.cancel()

    def _reconnect(self) -> None:
        self._reconnect_timer = None
        if self._user_close or self._transport is not None:
            return
        logger.info(f"Reconnecting to {self.host}:{self.port}")
        self._start_attempt()

    def _ensure_waiter(self) -> asyncio.Future[None]:
        if self._connect_waiter is None or self._connect_waiter.done():
            waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            # Callers awaiting through shield() may be cancelled; mark the
            # outcome as retrieved so an abandoned failure is not reported.
            waiter.add_done_callback(lambda f: f.cancelled() or f.exception())
            self._connect_waiter = waiter
        return self._connect_waiter

    def _fail_waiter(self, error: BaseException | None) -> None:
        waiter = self._connect_waiter
        self._connect_waiter = None
        if waiter is None or waiter.done():
            return

        if isinstance(error, DeviceLinkError):
            exc: BaseException = error
        elif error is None:
            exc = SessionClosedError(
                f"Connection to {self.host}:{self.port} closed before it was established"
            )
        else:
            exc = TransportError(f"Failed to connect to {self.host}:{self.port}: {error}")
            exc.__cause__ = error
        waiter.set_exception(exc)

    def _cancel_connect_deadline(self) -> None:
        if self._connect_deadline is not None:
            self._connect_deadline.cancel()
            self._connect_deadline = None

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _emit_data(self, frame: Any) -> None:
        self.events.emit(SessionEvent.DATA, frame)

    # -------------------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------------------

    async def send(self, command: str | bytes) -> None:
        """Write a command and wait until it is flushed.

        ``str`` commands are encoded with the session encoding.

        Raises:
            NotConnectedError: No live connection
            TransportError: The write failed
        """
        transport = self._transport
        if transport is None or not self._connected:
            raise NotConnectedError(f"Not connected to {self.host}:{self.port}")

        data = command.encode(self.config.encoding) if isinstance(command, str) else bytes(command)
        self._last_activity = asyncio.get_running_loop().time()
        try:
            await transport.write(data)
        except NotConnectedError:
            raise
        except OSError as e:
            raise TransportError(f"Failed to send to {self.host}:{self.port}: {e}") from e
        logger.debug(f"Sent {data!r}")

    async def request(
        self,
        command: str | bytes,
        expected: Pattern,
        error: Pattern | None = None,
    ) -> re.Match:
        """Send a command and wait for a frame matching ``expected``.

        Every incoming frame is tested against ``expected`` first, then
        against ``error``; frames matching neither are ignored. Concurrent
        requests each see every frame, so one frame may settle several
        requests whose patterns overlap.

        Args:
            command: Command to send
            expected: Pattern of a successful reply
            error: Optional pattern of an error reply

        Returns:
            The match of ``expected``

        Raises:
            NotConnectedError: No live connection
            RequestFailedError: A frame matched ``error`` first (``.match``)
            RequestTimeoutError: Nothing matched within ``response_timeout``
        """
        stream = self._stream
        if stream is None or not self._connected:
            raise NotConnectedError(f"Not connected to {self.host}:{self.port}")

        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            success=compile_pattern(expected),
            failure=compile_pattern(error) if error else None,
            future=loop.create_future(),
            encoding=self.config.encoding,
        )
        stream.register(pending)
        pending.deadline = loop.call_later(self.response_timeout, self._expire_request, stream, pending)

        try:
            await self.send(command)
            return await pending.future
        finally:
            pending.cancel_deadline()
            stream.unregister(pending)

    def _expire_request(self, stream: FrameStream, pending: PendingRequest) -> None:
        stream.unregister(pending)
        if pending.expire():
            logger.debug(f"Request timed out after {self.response_timeout:g}s")

    def __repr__(self) -> str:
        return f"<Session {self.host}:{self.port} {self._state.value}>"
