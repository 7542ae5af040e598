"""Notification surface for device sessions.

A session reports its lifecycle through six notification kinds:

- ``connect``: transport established
- ``close``: transport torn down, for any reason
- ``reconnect``: automatic reconnect scheduled (payload: message)
- ``timeout``: connect or idle deadline exceeded
- ``error``: transport-level error (payload: the exception, verbatim)
- ``data``: every decoded frame (payload: the frame)

Listeners are registered per kind on a ``Notifier``. Emission is
synchronous and in registration order; coroutine listeners are scheduled
as tasks on the running loop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer

logger = logging.getLogger(__name__)


class SessionEvent(str, Enum):
    """Notification kinds emitted by a session."""

    CONNECT = "connect"
    CLOSE = "close"
    RECONNECT = "reconnect"
    TIMEOUT = "timeout"
    ERROR = "error"
    DATA = "data"


class Notification(BaseModel):
    """A single emitted notification, as yielded by ``Notifier.stream()``."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: SessionEvent
    payload: Any = None
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    @field_serializer("payload")
    def serialize_payload(self, payload: Any) -> Any:
        if isinstance(payload, BaseException):
            return f"{type(payload).__name__}: {payload}"
        if isinstance(payload, (bytes, bytearray)):
            return bytes(payload).decode("utf-8", errors="replace")
        if payload is None or isinstance(payload, (str, int, float, bool, list, dict)):
            return payload
        return repr(payload)

    def describe(self) -> str:
        """Human readable one-liner (used by the CLI monitor)."""
        if self.payload is None:
            return self.kind.value
        if isinstance(self.payload, BaseException):
            return f"{self.kind.value}: {type(self.payload).__name__}: {self.payload}"
        return f"{self.kind.value}: {self.payload!r}"


Listener = Callable[..., Any]


class Notifier:
    """Observer registry keyed by notification kind."""

    def __init__(self) -> None:
        self._listeners: dict[SessionEvent, list[Listener]] = {kind: [] for kind in SessionEvent}
        self._watchers: list[Callable[[Notification], None]] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, kind: SessionEvent | str, listener: Listener) -> Callable[[], None]:
        """Register a listener.

        Returns:
            Function that removes the listener again
        """
        event = SessionEvent(kind)
        self._listeners[event].append(listener)

        def unsubscribe() -> None:
            self.off(event, listener)

        return unsubscribe

    def once(self, kind: SessionEvent | str, listener: Listener) -> Callable[[], None]:
        """Register a listener that removes itself after the first emission."""
        event = SessionEvent(kind)

        def wrapper(*args: Any) -> Any:
            self.off(event, wrapper)
            return listener(*args)

        return self.on(event, wrapper)

    def off(self, kind: SessionEvent | str, listener: Listener) -> None:
        listeners = self._listeners[SessionEvent(kind)]
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, kind: SessionEvent | str) -> int:
        return len(self._listeners[SessionEvent(kind)])

    def emit(self, kind: SessionEvent, *args: Any) -> None:
        """Deliver a notification to every listener of ``kind``.

        Listener failures are logged and never propagate to the emitter.
        """
        listeners = list(self._listeners[kind])

        if kind is SessionEvent.ERROR and not listeners and not self._watchers:
            logger.warning(f"Unhandled session error: {args[0] if args else None!r}")

        for listener in listeners:
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    self._schedule(kind, result)
            except Exception:
                logger.exception(f"Error in {kind.value} listener")

        if self._watchers:
            notification = Notification(kind=kind, payload=args[0] if args else None)
            for watcher in list(self._watchers):
                watcher(notification)

    def _schedule(self, kind: SessionEvent, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def done(finished: asyncio.Task[Any]) -> None:
            self._tasks.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(
                    f"Error in async {kind.value} listener",
                    exc_info=finished.exception(),
                )

        task.add_done_callback(done)

    async def stream(self) -> AsyncIterator[Notification]:
        """Yield every notification as it is emitted.

        Usage:
            async for notification in session.events.stream():
                print(notification.describe())
        """
        queue: asyncio.Queue[Notification] = asyncio.Queue()
        watcher = queue.put_nowait
        self._watchers.append(watcher)

        try:
            while True:
                yield await queue.get()
        finally:
            self._watchers.remove(watcher)

    def clear(self) -> None:
        """Remove all listeners (for testing)."""
        for listeners in self._listeners.values():
            listeners.clear()
