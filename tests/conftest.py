"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
import pytest_asyncio

from device_link import MockStreamTransport, Session


class TransportRecorder:
    """Transport factory handing out mock transports and remembering each one.

    Transports queued with ``plan()`` are used first; after that every
    connect attempt gets a fresh, accepting ``MockStreamTransport``.
    """

    def __init__(self) -> None:
        self.created: list[MockStreamTransport] = []
        self._planned: list[MockStreamTransport] = []

    def plan(self, *transports: MockStreamTransport) -> None:
        self._planned.extend(transports)

    def __call__(self) -> MockStreamTransport:
        transport = self._planned.pop(0) if self._planned else MockStreamTransport()
        self.created.append(transport)
        return transport

    @property
    def latest(self) -> MockStreamTransport:
        return self.created[-1]


@pytest.fixture
def transports() -> TransportRecorder:
    return TransportRecorder()


@pytest_asyncio.fixture
async def make_session(transports: TransportRecorder) -> AsyncIterator[Callable[..., Session]]:
    """Build sessions wired to the mock transport recorder.

    Defaults: reconnecting disabled, 1s response timeout. Every session is
    closed when the test finishes.
    """
    sessions: list[Session] = []

    def factory(**kwargs: Any) -> Session:
        kwargs.setdefault("reconnect_interval", 0)
        kwargs.setdefault("response_timeout", 1.0)
        kwargs.setdefault("transport_factory", transports)
        session = Session("device.local", 23, **kwargs)
        sessions.append(session)
        return session

    yield factory

    for session in sessions:
        await session.close()
