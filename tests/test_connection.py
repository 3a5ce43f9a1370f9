"""Tests for ClearnodeConnection queueing, reconnection and fan-out."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from clearnode_core.connection import (
    ClearnodeConnection,
    ConnectionState,
    backoff_delay,
)
from clearnode_core.dispatch import ANY_MESSAGE, MessageDispatcher
from clearnode_core.errors import ConnectionTimeout, MaxReconnectAttemptsExceeded
from clearnode_core.protocol import build_request

from .conftest import settle, wait_until

RELAY_URL = "wss://relay.example/ws"


class RecordingConnection(ClearnodeConnection):
    """Connection that records backoff delays instead of sleeping them."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.delays: list[float] = []

    async def _reconnect_after_delay(self, delay: float) -> None:
        self.delays.append(delay)
        await super()._reconnect_after_delay(0)


@pytest.fixture
def dispatcher() -> MessageDispatcher:
    return MessageDispatcher()


class TestBackoff:
    """Tests for the reconnect delay schedule."""

    def test_schedule_is_capped(self):
        """delay(n) = min(1 * 2^n, 30) for attempts 1..10."""
        delays = [backoff_delay(n, 1.0, 30.0) for n in range(1, 11)]
        assert delays == [2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0, 30.0, 30.0, 30.0]
        assert delays == sorted(delays)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, relay, dispatcher):
        """No attempt beyond the cap; observers hear about the failure."""
        relay.fail_connects = 100
        failures = []
        connection = RecordingConnection(
            RELAY_URL, dispatcher, max_reconnect_attempts=10
        )
        connection.on_terminal_failure(failures.append)

        await connection.connect()
        await wait_until(lambda: failures)

        assert relay.connect_calls == 11
        assert connection.delays == [
            min(2.0**n, 30.0) for n in range(1, 11)
        ]
        assert isinstance(failures[0], MaxReconnectAttemptsExceeded)
        assert connection.state is ConnectionState.DISCONNECTED

        await settle()
        assert relay.connect_calls == 11

    @pytest.mark.asyncio
    async def test_successful_open_resets_attempts(self, relay, dispatcher):
        """Opening resets the attempt counter."""
        relay.fail_connects = 2
        connection = RecordingConnection(RELAY_URL, dispatcher)

        await connection.connect()
        await wait_until(lambda: connection.is_connected)

        assert connection.delays == [2.0, 4.0]
        assert connection.retry_attempts == 0
        await connection.disconnect()


class TestConnect:
    """Tests for connect() and state reporting."""

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, relay, dispatcher):
        """A second connect while open does not open another socket."""
        connection = ClearnodeConnection(RELAY_URL, dispatcher)
        states = []
        connection.on_connection_state_changed(states.append)

        assert await connection.connect() is True
        assert await connection.connect() is True

        assert relay.connect_calls == 1
        assert states == [ConnectionState.CONNECTING, ConnectionState.OPEN]
        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_wait_until_open_times_out(self, relay, dispatcher):
        """Waiting on a connection that never opens fails."""
        relay.connect_gate = asyncio.Event()
        connection = ClearnodeConnection(RELAY_URL, dispatcher)
        connecting = asyncio.create_task(connection.connect())

        with pytest.raises(ConnectionTimeout, match="connection timeout"):
            await connection.wait_until_open(0.01)

        relay.connect_gate.set()
        await connecting
        await connection.wait_until_open(0.1)
        await connection.disconnect()


class TestOutboundQueue:
    """Tests for send() queueing and flush order."""

    @pytest.mark.asyncio
    async def test_sends_queued_while_disconnected_flush_in_order(
        self, relay, dispatcher
    ):
        """Queued frames go out once, in call order, before newer sends."""
        relay.connect_gate = asyncio.Event()
        connection = ClearnodeConnection(RELAY_URL, dispatcher)

        for n in range(3):
            await connection.send(build_request(f"m{n}", {}, request_id=n))
        await settle()
        assert connection.queued == 3
        assert connection.state is ConnectionState.CONNECTING
        assert relay.connect_calls == 1

        relay.connect_gate.set()
        await wait_until(lambda: connection.is_connected)
        await connection.send(build_request("late", {}, request_id=9))
        await wait_until(lambda: len(relay.sent) == 4)

        assert relay.methods() == ["m0", "m1", "m2", "late"]
        assert connection.queued == 0
        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_sends_during_flush_stay_behind_queue(self, relay, dispatcher):
        """A send racing the flush is queued behind the backlog."""
        relay.connect_gate = asyncio.Event()
        connection = ClearnodeConnection(RELAY_URL, dispatcher)
        await connection.send({"type": "first"})

        def on_state(state):
            if state is ConnectionState.OPEN:
                asyncio.ensure_future(connection.send({"type": "racing"}))

        connection.on_connection_state_changed(on_state)
        relay.connect_gate.set()
        await wait_until(lambda: len(relay.sent) == 2)

        assert [frame["type"] for frame in relay.sent] == ["first", "racing"]
        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_bounded_queue_drops_oldest(self, relay, dispatcher):
        """Overflow discards the oldest pending frame."""
        relay.connect_gate = asyncio.Event()
        connection = ClearnodeConnection(RELAY_URL, dispatcher, max_queue_size=2)
        for n in range(3):
            await connection.send({"type": f"t{n}"})

        relay.connect_gate.set()
        await wait_until(lambda: len(relay.sent) == 2)

        assert [frame["type"] for frame in relay.sent] == ["t1", "t2"]
        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_is_hard_reset(self, relay, dispatcher):
        """disconnect() clears queue and attempts and stops reconnecting."""
        relay.fail_connects = 1
        connection = ClearnodeConnection(
            RELAY_URL, dispatcher, retry_base_delay=10.0
        )
        await connection.send({"type": "queued"})
        await wait_until(lambda: connection.retry_attempts == 1)

        await connection.disconnect()

        assert connection.queued == 0
        assert connection.retry_attempts == 0
        assert connection.state is ConnectionState.DISCONNECTED
        await settle()
        assert relay.connect_calls == 1


class TestInbound:
    """Tests for inbound classification and reconnect on close."""

    @pytest.mark.asyncio
    async def test_messages_fan_out_in_order(self, relay, dispatcher):
        """Frames reach keyed and wildcard listeners in arrival order."""
        connection = ClearnodeConnection(RELAY_URL, dispatcher)
        keyed = MagicMock()
        seen = []
        dispatcher.on("balance_update", keyed)
        dispatcher.on(ANY_MESSAGE, lambda env: seen.append(env.routing_key))
        await connection.connect()

        relay.push({"res": [1, "balance_update", {"asset": "usdc", "balance": "5"}]})
        relay.push("not json {")
        relay.push({"type": "pong"})
        relay.push({"something": "else"})
        await wait_until(lambda: len(seen) == 3)

        assert seen == ["balance_update", "pong", "unknown"]
        keyed.assert_called_once()
        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_server_close_triggers_reconnect(self, relay, dispatcher):
        """A relay-side close leads to a new socket after backoff."""
        connection = RecordingConnection(RELAY_URL, dispatcher)
        await connection.connect()
        first = relay.current

        first.drop()
        await wait_until(lambda: len(relay.clients) == 2 and connection.is_connected)

        assert connection.delays == [2.0]
        await connection.send({"type": "after"})
        assert relay.current.sent == [{"type": "after"}]
        await connection.disconnect()
