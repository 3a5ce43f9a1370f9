"""Pytest configuration and fixtures for clearnode_core tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any
from unittest.mock import patch

import pytest

from clearnode_core.errors import ClearnodeConnectionError
from clearnode_core.transport.ws_client import (
    ClearnodeWsClient,
    ClearnodeWsMessage,
    ClearnodeWsMessageType,
)

Responder = Callable[[dict[str, Any]], list[dict[str, Any]]]


class FakeWsClient(ClearnodeWsClient):
    """In-memory stand-in for the relay socket."""

    def __init__(self, relay: FakeRelay) -> None:
        super().__init__()
        self._relay = relay
        self._inbox: asyncio.Queue[ClearnodeWsMessage] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    async def connect(
        self,
        url: str,
        *,
        ping_interval: int | None = 20,
        timeout: float = 15.0,
    ) -> None:
        self._relay.connect_calls += 1
        if self._relay.connect_gate is not None:
            await self._relay.connect_gate.wait()
        if self._relay.fail_connects > 0:
            self._relay.fail_connects -= 1
            raise ClearnodeConnectionError("WebSocket connection failed")

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(ClearnodeWsMessage(ClearnodeWsMessageType.CLOSED))

    async def send_text(self, text: str) -> None:
        await asyncio.sleep(0)
        if self.closed:
            raise ClearnodeConnectionError("WebSocket is not connected")
        frame = json.loads(text)
        self.sent.append(frame)
        self._relay.sent.append(frame)
        if self._relay.responder is not None:
            for reply in self._relay.responder(frame):
                self.push(reply)

    def __aiter__(self):
        return self._iter_inbox()

    async def _iter_inbox(self):
        while True:
            msg = await self._inbox.get()
            yield msg
            if msg.type is not ClearnodeWsMessageType.TEXT:
                return

    def push(self, payload: Any) -> None:
        """Deliver a frame from the relay."""
        text = payload if isinstance(payload, str) else json.dumps(payload)
        self._inbox.put_nowait(ClearnodeWsMessage(ClearnodeWsMessageType.TEXT, text))

    def drop(self) -> None:
        """Simulate the relay closing the connection."""
        self.closed = True
        self._inbox.put_nowait(ClearnodeWsMessage(ClearnodeWsMessageType.CLOSED))


class FakeRelay:
    """Factory and recorder for FakeWsClient instances."""

    def __init__(self) -> None:
        self.clients: list[FakeWsClient] = []
        self.sent: list[dict[str, Any]] = []
        self.connect_calls = 0
        self.fail_connects = 0
        self.connect_gate: asyncio.Event | None = None
        self.responder: Responder | None = None

    def factory(self) -> FakeWsClient:
        client = FakeWsClient(self)
        self.clients.append(client)
        return client

    @property
    def current(self) -> FakeWsClient:
        return self.clients[-1]

    def push(self, payload: Any) -> None:
        self.current.push(payload)

    def methods(self) -> list[str]:
        """Method names of every request sent so far."""
        return [frame["req"][1] for frame in self.sent if "req" in frame]


@pytest.fixture
def relay():
    """Patch the connection's socket class with an in-memory relay."""
    fake = FakeRelay()
    with patch("clearnode_core.connection.ClearnodeWsClient", side_effect=fake.factory):
        yield fake


async def settle(rounds: int = 5) -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(
    predicate: Callable[[], bool], timeout: float = 1.0, interval: float = 0.005
) -> None:
    """Poll ``predicate`` until it holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
