"""Frame decoders.

A decoder turns the raw byte stream of a connection into discrete
application-level frames. Sessions without a decoder use each received
chunk as a frame.

Decoders are stateful (they buffer partial frames) and are reused across
reconnects; the session calls ``reset()`` whenever a new connection is
attached so a half-received frame never bleeds into the next connection.
"""

from __future__ import annotations

import struct
from collections.abc import Iterable, Iterator
from typing import Any, Protocol, runtime_checkable

from .errors import FrameDecodeError

DEFAULT_MAX_FRAME_SIZE = 4 * 1024 * 1024


@runtime_checkable
class FrameDecoder(Protocol):
    """Contract for pluggable frame decoders."""

    def feed(self, data: bytes) -> Iterable[Any]:
        """Consume raw bytes and return the frames completed by them."""
        ...

    def reset(self) -> None:
        """Discard any buffered partial frame."""
        ...


class DelimiterDecoder:
    """Split the stream on a delimiter byte sequence.

    Args:
        delimiter: Byte sequence terminating each frame
        include_delimiter: Keep the delimiter at the end of each frame
        max_length: Largest frame (without delimiter) accepted before
            raising ``FrameDecodeError``; None means unbounded
        encoding: If set, frames are decoded to ``str``
    """

    def __init__(
        self,
        delimiter: bytes = b"\n",
        include_delimiter: bool = False,
        max_length: int | None = None,
        encoding: str | None = None,
    ):
        if not delimiter:
            raise ValueError("delimiter must not be empty")
        self.delimiter = delimiter
        self.include_delimiter = include_delimiter
        self.max_length = max_length
        self.encoding = encoding
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[bytes | str]:
        self._buffer.extend(data)
        frames: list[bytes | str] = []
        try:
            for frame in self._drain():
                frames.append(frame)
        except FrameDecodeError as e:
            e.frames = frames
            raise
        return frames

    def _drain(self) -> Iterator[bytes | str]:
        size = len(self.delimiter)
        while True:
            index = self._buffer.find(self.delimiter)
            if index < 0:
                break
            end = index + size if self.include_delimiter else index
            frame = bytes(self._buffer[:end])
            del self._buffer[: index + size]
            self._check_length(index)
            yield self._finish(frame)

        self._check_length(len(self._buffer))

    def _check_length(self, length: int) -> None:
        if self.max_length is not None and length > self.max_length:
            self._buffer.clear()
            raise FrameDecodeError(f"Frame exceeds {self.max_length} bytes")

    def _finish(self, frame: bytes) -> bytes | str:
        if self.encoding:
            return frame.decode(self.encoding, errors="replace")
        return frame

    @property
    def buffered(self) -> int:
        """Number of bytes waiting for a delimiter."""
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()


class LineDecoder(DelimiterDecoder):
    """Newline framed text protocols; tolerates ``\\r\\n`` line endings."""

    def __init__(self, max_length: int | None = None, encoding: str | None = None):
        super().__init__(b"\n", include_delimiter=False, max_length=max_length, encoding=encoding)

    def _finish(self, frame: bytes) -> bytes | str:
        if frame.endswith(b"\r"):
            frame = frame[:-1]
        return super()._finish(frame)


class LengthPrefixedDecoder:
    """Binary frames preceded by a fixed-size length header.

    The header is described by a ``struct`` format holding a single
    unsigned integer, network byte order by default.
    """

    def __init__(self, header: str = "!I", max_frame_size: int = DEFAULT_MAX_FRAME_SIZE):
        self._header = struct.Struct(header)
        self.max_frame_size = max_frame_size
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[bytes]:
        self._buffer.extend(data)
        frames: list[bytes] = []
        header_size = self._header.size

        while len(self._buffer) >= header_size:
            (length,) = self._header.unpack_from(self._buffer)
            if length > self.max_frame_size:
                self._buffer.clear()
                raise FrameDecodeError(f"Frame too large: {length} bytes", frames)
            if len(self._buffer) < header_size + length:
                break
            frames.append(bytes(self._buffer[header_size : header_size + length]))
            del self._buffer[: header_size + length]

        return frames

    def encode(self, payload: bytes) -> bytes:
        """Frame ``payload`` for sending to a peer that speaks this format."""
        return self._header.pack(len(payload)) + payload

    def reset(self) -> None:
        self._buffer.clear()
