"""Per-connection frame stream.

One ``FrameStream`` exists per live connection. Raw chunks from the
transport go through the optional decoder; each resulting frame is fanned
out, in arrival order, first to the ``data`` notification and then to the
pending requests registered on this stream.

When the connection goes away the stream is detached: all pending
requests are dropped from it and further input is ignored. The next
connection gets a fresh stream, so nothing carries over between
connection instances.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from .correlator import MatcherRegistry, PendingRequest
from .decoders import FrameDecoder
from .errors import FrameDecodeError, NotConnectedError

logger = logging.getLogger(__name__)


class FrameStream:
    """Decode and fan out the frames of one connection."""

    def __init__(
        self,
        on_frame: Callable[[Any], None],
        decoder: FrameDecoder | None = None,
    ):
        self._on_frame = on_frame
        self._decoder = decoder
        self._matchers = MatcherRegistry()
        self._detached = False

        if decoder is not None:
            decoder.reset()

    @property
    def detached(self) -> bool:
        return self._detached

    @property
    def pending_count(self) -> int:
        return len(self._matchers)

    def register(self, pending: PendingRequest) -> int:
        if self._detached:
            raise NotConnectedError("Frame stream is detached")
        return self._matchers.add(pending)

    def unregister(self, pending: PendingRequest) -> None:
        self._matchers.discard(pending.key)

    def feed(self, chunk: bytes) -> None:
        """Push raw transport bytes through the decoder and fan out frames."""
        if self._detached:
            return

        if self._decoder is None:
            self._deliver((chunk,))
            return

        try:
            frames = self._decoder.feed(chunk)
        except FrameDecodeError as e:
            # Frames completed before the bad data still go out, in order
            self._deliver(e.frames)
            raise
        self._deliver(frames)

    def _deliver(self, frames: Iterable[Any]) -> None:
        for frame in frames:
            if self._detached:
                break
            logger.debug(f"Frame received: {frame!r}")
            self._on_frame(frame)
            self._matchers.dispatch(frame)

    def detach(self) -> None:
        """Stop delivering frames and drop every registered request."""
        if self._detached:
            return
        self._detached = True
        dropped = self._matchers.clear()
        if dropped:
            logger.debug(f"Detached {dropped} pending request(s) from closed stream")
