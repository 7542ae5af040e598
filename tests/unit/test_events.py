"""Unit tests for the notification registry."""

import asyncio
import json
import logging

import pytest

from device_link import Notification, Notifier, SessionEvent


class TestListeners:
    """Test listener registration and delivery."""

    def test_emit_in_registration_order(self):
        """Listeners run synchronously in the order they were added."""
        notifier = Notifier()
        calls = []
        notifier.on("connect", lambda: calls.append("first"))
        notifier.on(SessionEvent.CONNECT, lambda: calls.append("second"))

        notifier.emit(SessionEvent.CONNECT)

        assert calls == ["first", "second"]

    def test_payload_is_passed(self):
        """The payload reaches listeners unchanged."""
        notifier = Notifier()
        error = ConnectionResetError("reset")
        received = []
        notifier.on("error", received.append)

        notifier.emit(SessionEvent.ERROR, error)

        assert received[0] is error

    def test_only_matching_kind(self):
        """Listeners only see their own notification kind."""
        notifier = Notifier()
        received = []
        notifier.on("close", lambda: received.append("close"))

        notifier.emit(SessionEvent.CONNECT)

        assert received == []

    def test_unsubscribe(self):
        """The function returned by on() removes the listener."""
        notifier = Notifier()
        received = []
        unsubscribe = notifier.on("data", received.append)

        unsubscribe()
        notifier.emit(SessionEvent.DATA, b"frame")

        assert received == []
        assert notifier.listener_count("data") == 0

    def test_once(self):
        """once() listeners fire a single time."""
        notifier = Notifier()
        received = []
        notifier.once("data", received.append)

        notifier.emit(SessionEvent.DATA, b"one")
        notifier.emit(SessionEvent.DATA, b"two")

        assert received == [b"one"]

    def test_unknown_kind_rejected(self):
        """Registering for an unknown kind raises ValueError."""
        with pytest.raises(ValueError):
            Notifier().on("disconnect", print)

    def test_listener_error_is_contained(self, caplog):
        """A failing listener is logged and does not stop the others."""
        notifier = Notifier()
        received = []

        def broken():
            raise RuntimeError("boom")

        notifier.on("connect", broken)
        notifier.on("connect", lambda: received.append("ok"))

        with caplog.at_level(logging.ERROR):
            notifier.emit(SessionEvent.CONNECT)

        assert received == ["ok"]
        assert "Error in connect listener" in caplog.text

    def test_unhandled_error_warns(self, caplog):
        """Errors without any listener are logged."""
        with caplog.at_level(logging.WARNING):
            Notifier().emit(SessionEvent.ERROR, OSError("unreachable"))

        assert "Unhandled session error" in caplog.text

    def test_clear(self):
        """clear() drops every listener."""
        notifier = Notifier()
        notifier.on("connect", print)
        notifier.on("close", print)

        notifier.clear()

        assert notifier.listener_count("connect") == 0
        assert notifier.listener_count("close") == 0

    @pytest.mark.asyncio
    async def test_async_listener_failure_logged(self, caplog):
        """Exceptions from coroutine listeners are logged."""
        notifier = Notifier()

        async def broken():
            raise RuntimeError("async boom")

        notifier.on("close", broken)

        with caplog.at_level(logging.ERROR):
            notifier.emit(SessionEvent.CLOSE)
            await asyncio.sleep(0.01)

        assert "Error in async close listener" in caplog.text


class TestStream:
    """Test the async notification stream."""

    @pytest.mark.asyncio
    async def test_stream_yields_notifications(self):
        """stream() yields every emitted notification in order."""
        notifier = Notifier()
        stream = notifier.stream()
        first = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)

        notifier.emit(SessionEvent.CONNECT)
        notifier.emit(SessionEvent.DATA, b"PWR1")

        connect = await first
        data = await stream.__anext__()
        await stream.aclose()

        assert connect.kind is SessionEvent.CONNECT
        assert connect.payload is None
        assert data.kind is SessionEvent.DATA
        assert data.payload == b"PWR1"

    @pytest.mark.asyncio
    async def test_stream_unsubscribes_on_close(self):
        """Closing the stream removes its watcher."""
        notifier = Notifier()
        stream = notifier.stream()
        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        assert len(notifier._watchers) == 1

        notifier.emit(SessionEvent.CLOSE)
        await pending
        await stream.aclose()

        assert notifier._watchers == []


class TestNotification:
    """Test Notification serialization."""

    def test_serialize_exception(self):
        """Exceptions serialize as type and message."""
        notification = Notification(kind=SessionEvent.ERROR, payload=ConnectionResetError("reset"))

        data = json.loads(notification.model_dump_json())

        assert data["kind"] == "error"
        assert data["payload"] == "ConnectionResetError: reset"
        assert "timestamp" in data

    def test_serialize_bytes(self):
        """Byte frames serialize as text."""
        notification = Notification(kind=SessionEvent.DATA, payload=b"PWR1")

        assert json.loads(notification.model_dump_json())["payload"] == "PWR1"

    def test_describe(self):
        """describe() renders a one-line summary."""
        assert Notification(kind=SessionEvent.CONNECT).describe() == "connect"
        assert Notification(kind=SessionEvent.DATA, payload=b"OK").describe() == "data: b'OK'"
        assert (
            Notification(kind=SessionEvent.ERROR, payload=OSError("down")).describe()
            == "error: OSError: down"
        )
