"""Byte-stream transports for device sessions.

Enables the session to talk TCP to real hardware, or to an in-memory peer
for tests, without changing session code.

Architecture:
- StreamTransport is the PROTOCOL (interface) every transport implements
- A session creates one transport instance per connect attempt through a
  factory and owns it exclusively until it is torn down
- Idle timeouts are enforced by the session, not by the transport

Transports never reconnect on their own; a closed transport is discarded.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from .errors import NotConnectedError

logger = logging.getLogger(__name__)

DEFAULT_READ_SIZE = 64 * 1024


@runtime_checkable
class StreamTransport(Protocol):
    """Protocol for duplex byte-stream transports.

    All transports must implement:
    - open/end/abort: Lifecycle management
    - read/write: Raw byte I/O
    """

    async def open(self, host: str, port: int) -> None:
        """Complete the connect handshake.

        Raises:
            OSError: If the peer refuses or cannot be reached
        """
        ...

    async def read(self) -> bytes:
        """Return the next chunk of bytes, or ``b""`` once the peer closed."""
        ...

    async def write(self, data: bytes) -> None:
        """Write bytes and wait until they are flushed."""
        ...

    async def end(self) -> None:
        """Shut down gracefully and wait for the transport to close."""
        ...

    def abort(self) -> None:
        """Tear the transport down immediately."""
        ...


TransportFactory = Callable[[], StreamTransport]


class TCPStreamTransport:
    """Transport over a TCP socket.

    Keep-alive is enabled and Nagle's algorithm disabled so commands are
    sent as soon as ``write()`` is called.
    """

    def __init__(
        self,
        read_size: int = DEFAULT_READ_SIZE,
        keep_alive: bool = True,
        no_delay: bool = True,
    ):
        self.read_size = read_size
        self.keep_alive = keep_alive
        self.no_delay = no_delay
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    async def open(self, host: str, port: int) -> None:
        self._reader, self._writer = await asyncio.open_connection(host, port)

        sock = self._writer.get_extra_info("socket")
        if sock is not None:
            if self.keep_alive:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            if self.no_delay and sock.family in (socket.AF_INET, socket.AF_INET6):
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

        logger.debug(f"TCP transport opened to {host}:{port}")

    async def read(self) -> bytes:
        if not self._reader:
            raise NotConnectedError("Transport not open")
        return await self._reader.read(self.read_size)

    async def write(self, data: bytes) -> None:
        if not self._writer:
            raise NotConnectedError("Transport not open")
        self._writer.write(data)
        await self._writer.drain()

    async def end(self) -> None:
        if not self._writer:
            return

        writer = self._writer
        if writer.can_write_eof():
            with contextlib.suppress(OSError):
                writer.write_eof()
        writer.close()
        with contextlib.suppress(ConnectionError):
            await writer.wait_closed()

    def abort(self) -> None:
        if self._writer:
            self._writer.transport.abort()


class MockStreamTransport:
    """Mock transport for testing.

    Allows injecting peer data, peer disconnects and canned responses,
    and records everything written. No actual I/O - everything is in-memory.

    Usage:
        transport = MockStreamTransport()
        transport.set_response(b"PING\\n", b"OK\\n")

        session = Session("device", 23, transport_factory=lambda: transport)
        await session.connect()
        match = await session.request("PING\\n", "OK")

        assert transport.written == [b"PING\\n"]
    """

    def __init__(
        self,
        accept: bool = True,
        connect_delay: float = 0.0,
        connect_error: OSError | None = None,
    ) -> None:
        self.accept = accept
        self.connect_delay = connect_delay
        self.connect_error = connect_error
        self.address: tuple[str, int] | None = None
        self.opened_at: float | None = None
        self.is_open = False
        self.ended = False
        self.aborted = False
        self._written: list[bytes] = []
        self._responses: dict[bytes, bytes] = {}
        self._inbox: asyncio.Queue[bytes | BaseException] = asyncio.Queue()

    @property
    def written(self) -> list[bytes]:
        """Get all chunks written through this transport."""
        return self._written.copy()

    def set_response(self, command: bytes, reply: bytes) -> None:
        """Reply with ``reply`` whenever exactly ``command`` is written."""
        self._responses[command] = reply

    def feed(self, data: bytes) -> None:
        """Deliver bytes as if sent by the peer."""
        self._inbox.put_nowait(data)

    def peer_close(self) -> None:
        """Simulate the peer closing the connection."""
        self.is_open = False
        self._inbox.put_nowait(b"")

    def peer_reset(self, error: OSError | None = None) -> None:
        """Simulate a connection reset."""
        self.is_open = False
        self._inbox.put_nowait(error or ConnectionResetError("Connection reset by peer"))

    async def open(self, host: str, port: int) -> None:
        self.address = (host, port)
        self.opened_at = asyncio.get_running_loop().time()

        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        if not self.accept:
            # Handshake never completes
            await asyncio.Event().wait()

        self.is_open = True

    async def read(self) -> bytes:
        item = await self._inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def write(self, data: bytes) -> None:
        if not self.is_open:
            raise ConnectionResetError("Transport is closed")
        self._written.append(data)

        reply = self._responses.get(data)
        if reply is not None:
            self.feed(reply)

    async def end(self) -> None:
        self.ended = True
        self.is_open = False
        self._inbox.put_nowait(b"")

    def abort(self) -> None:
        self.aborted = True
        self.is_open = False
        self._inbox.put_nowait(b"")


# Factory functions


def create_tcp_transport(
    read_size: int = DEFAULT_READ_SIZE,
    keep_alive: bool = True,
    no_delay: bool = True,
) -> TransportFactory:
    """Create a factory producing TCP transports with shared settings."""

    def factory() -> StreamTransport:
        return TCPStreamTransport(read_size=read_size, keep_alive=keep_alive, no_delay=no_delay)

    return factory
