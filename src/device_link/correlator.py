"""Request/response correlation over a shared frame stream.

A request is a command plus a success pattern and an optional failure
pattern. Every outstanding request is an entry in a ``MatcherRegistry``
and independently evaluates every incoming frame:

- success pattern matches: the request resolves with the ``re.Match``
- failure pattern matches: the request raises ``RequestFailedError``
- neither: the frame is ignored and the request keeps waiting

There is no queueing or FIFO pairing between requests and responses. A
frame can satisfy several requests at once if their patterns overlap, and
a permissive pattern can be satisfied by an unrelated frame. Callers are
expected to use patterns that distinguish their replies.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from .errors import RequestFailedError, RequestTimeoutError

logger = logging.getLogger(__name__)

Pattern = str | bytes | re.Pattern[str] | re.Pattern[bytes]


def compile_pattern(pattern: Pattern) -> re.Pattern:
    return pattern if isinstance(pattern, re.Pattern) else re.compile(pattern)


def match_frame(pattern: Pattern, frame: Any, encoding: str = "utf-8") -> re.Match | None:
    """Search ``frame`` for ``pattern``.

    Bytes patterns are matched against bytes, text patterns against text;
    the frame is converted to whichever form the pattern needs.
    """
    compiled = compile_pattern(pattern)
    binary = isinstance(compiled.pattern, bytes)

    if isinstance(frame, (bytes, bytearray, memoryview)):
        subject = bytes(frame) if binary else bytes(frame).decode(encoding, errors="replace")
    else:
        text = frame if isinstance(frame, str) else str(frame)
        subject = text.encode(encoding) if binary else text

    return compiled.search(subject)


@dataclass
class PendingRequest:
    """An outstanding request waiting for a matching frame."""

    success: Pattern
    failure: Pattern | None
    future: asyncio.Future[re.Match]
    encoding: str = "utf-8"
    key: int | None = None
    deadline: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def settled(self) -> bool:
        return self.future.done()

    def evaluate(self, frame: Any) -> bool:
        """Test one frame against the patterns.

        Returns:
            True if this frame settled the request
        """
        if self.settled:
            return False

        success = match_frame(self.success, frame, self.encoding)
        if success:
            self._settle(result=success)
            return True

        if self.failure is not None:
            failure = match_frame(self.failure, frame, self.encoding)
            if failure:
                self._settle(error=RequestFailedError(failure))
                return True

        return False

    def expire(self) -> bool:
        """Fail the request with a timeout unless it already settled."""
        if self.settled:
            return False
        self._settle(error=RequestTimeoutError("Timeout while waiting for response!"))
        return True

    def cancel_deadline(self) -> None:
        if self.deadline is not None:
            self.deadline.cancel()
            self.deadline = None

    def _settle(self, result: re.Match | None = None, error: Exception | None = None) -> None:
        self.cancel_deadline()
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(result)


class MatcherRegistry:
    """Indexed collection of the pending requests observing one frame stream.

    Each entry is keyed by an integer handle so it can be removed
    individually on settlement, or all at once when the stream detaches.
    """

    def __init__(self) -> None:
        self._keys = itertools.count(1)
        self._active: dict[int, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._active)

    def __contains__(self, key: object) -> bool:
        return key in self._active

    def add(self, pending: PendingRequest) -> int:
        key = next(self._keys)
        pending.key = key
        self._active[key] = pending
        return key

    def discard(self, key: int | None) -> None:
        if key is not None:
            self._active.pop(key, None)

    def dispatch(self, frame: Any) -> int:
        """Offer ``frame`` to every active request; settled ones are removed.

        Returns:
            Number of requests settled by this frame
        """
        settled = 0
        for key, pending in list(self._active.items()):
            if pending.evaluate(frame):
                self._active.pop(key, None)
                settled += 1
        if settled:
            logger.debug(f"Frame settled {settled} pending request(s)")
        return settled

    def clear(self) -> int:
        """Detach every active request without settling it.

        Detached requests can then only finish through their own deadline.

        Returns:
            Number of requests detached
        """
        count = len(self._active)
        self._active.clear()
        return count
