"""Resilient point-to-point device connections.

Keeps a long-lived stream connection to a single device, reconnects after
unexpected disconnects, detects dead links through idle timeouts, and
correlates commands with their textual or binary acknowledgements.

Key concepts:
- Session: owns the connection lifecycle and exposes connect/close/send/request
- Transport: the duplex byte stream (TCP by default, in-memory for tests)
- Decoder: optional stage splitting the byte stream into frames
- Notifications: connect, close, reconnect, timeout, error, data
"""

from .config import SessionConfig
from .correlator import MatcherRegistry, PendingRequest, match_frame
from .decoders import DelimiterDecoder, FrameDecoder, LengthPrefixedDecoder, LineDecoder
from .errors import (
    ConnectTimeoutError,
    DeviceLinkError,
    FrameDecodeError,
    IdleTimeoutError,
    NotConnectedError,
    RequestFailedError,
    RequestTimeoutError,
    SessionClosedError,
    TransportError,
)
from .events import Notification, Notifier, SessionEvent
from .session import Session, SessionState
from .stream import FrameStream
from .transport import (
    MockStreamTransport,
    StreamTransport,
    TCPStreamTransport,
    create_tcp_transport,
)

__all__ = [
    # Session
    "Session",
    "SessionConfig",
    "SessionState",
    # Notifications
    "Notification",
    "Notifier",
    "SessionEvent",
    # Framing and correlation
    "FrameDecoder",
    "DelimiterDecoder",
    "LineDecoder",
    "LengthPrefixedDecoder",
    "FrameStream",
    "MatcherRegistry",
    "PendingRequest",
    "match_frame",
    # Transports
    "StreamTransport",
    "TCPStreamTransport",
    "MockStreamTransport",
    "create_tcp_transport",
    # Errors
    "DeviceLinkError",
    "TransportError",
    "ConnectTimeoutError",
    "IdleTimeoutError",
    "NotConnectedError",
    "SessionClosedError",
    "RequestTimeoutError",
    "RequestFailedError",
    "FrameDecodeError",
]
