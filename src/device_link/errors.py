"""Exception hierarchy for device links.

Connection-level failures (timeouts, transport errors) are handled by the
session itself and routed through its close path. Request-level failures
are raised only to the caller of the request that produced them.
"""

from __future__ import annotations

import re


class DeviceLinkError(Exception):
    """Base class for all device link errors."""


class TransportError(DeviceLinkError):
    """The underlying byte stream failed (refused, reset, broken pipe)."""


class ConnectTimeoutError(DeviceLinkError, TimeoutError):
    """The connect handshake did not complete within the response timeout."""

    def __init__(self, host: str, port: int):
        super().__init__(f"Timeout connecting to {host}:{port}")
        self.host = host
        self.port = port


class IdleTimeoutError(DeviceLinkError, TimeoutError):
    """No bytes were exchanged within the response timeout while connected."""

    def __init__(self, host: str, port: int, timeout: float):
        super().__init__(f"Connection to {host}:{port} idle for {timeout:g}s")
        self.host = host
        self.port = port
        self.timeout = timeout


class NotConnectedError(DeviceLinkError, ConnectionError):
    """Operation requires a live connection."""


class SessionClosedError(DeviceLinkError):
    """The session was closed before the connection was established."""


class RequestTimeoutError(DeviceLinkError, TimeoutError):
    """No matching frame arrived before the request deadline."""


class RequestFailedError(DeviceLinkError):
    """The peer answered with a frame matching the failure pattern."""

    def __init__(self, match: re.Match):
        super().__init__(f"Device reported failure: {match.group(0)!r}")
        self.match = match


class FrameDecodeError(DeviceLinkError):
    """A frame decoder could not make sense of the byte stream.

    ``frames`` holds the frames completed by the same chunk before the
    offending data, so they can still be delivered.
    """

    def __init__(self, message: str, frames: list | None = None):
        super().__init__(message)
        self.frames = frames or []
