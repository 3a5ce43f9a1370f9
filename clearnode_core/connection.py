"""Persistent relay connection with queueing and reconnection.

One ClearnodeConnection owns the socket to the relay. It handles:
- Connection state (disconnected, connecting, open, closing)
- An outbound FIFO queue for frames sent while not open
- Exponential-backoff reconnection up to a fixed attempt cap
- Classification of inbound frames and fan-out through a MessageDispatcher
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import Any

from .dispatch import MessageDispatcher
from .errors import (
    ClearnodeClientError,
    ClearnodeConnectionError,
    ClearnodeHandshakeError,
    ClearnodeTimeout,
    ConnectionTimeout,
    MaxReconnectAttemptsExceeded,
)
from .protocol import RpcRequest, parse_envelope
from .transport.ws_client import ClearnodeWsClient, ClearnodeWsMessageType

_LOGGER = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Relay connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Return the reconnect delay for the given 1-based attempt number."""
    return min(base_delay * (2**attempt), max_delay)


class ClearnodeConnection:
    """Shared connection to the relay endpoint.

    Usage:
        dispatcher = MessageDispatcher()
        connection = ClearnodeConnection("wss://relay/ws", dispatcher)
        await connection.connect()
        await connection.send({"req": [1, "ping", {}, 0]})
        await connection.disconnect()
    """

    def __init__(
        self,
        url: str,
        dispatcher: MessageDispatcher,
        *,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        max_reconnect_attempts: int = 10,
        max_queue_size: int | None = 1024,
        ping_interval: int | None = 20,
        connect_timeout: float = 15.0,
    ) -> None:
        """Initialize the connection.

        Args:
            url: Relay WebSocket URL
            dispatcher: Registry receiving every inbound envelope
            retry_base_delay: Base reconnect delay (seconds)
            retry_max_delay: Maximum reconnect delay (seconds)
            max_reconnect_attempts: Attempts before giving up
            max_queue_size: Outbound queue bound, None for unbounded
            ping_interval: Keepalive ping interval passed to websockets
            connect_timeout: Bound on a single socket open (seconds)
        """
        self.url = url
        self._dispatcher = dispatcher
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._ping_interval = ping_interval
        self._connect_timeout = connect_timeout

        self._ws: ClearnodeWsClient | None = None
        self._state = ConnectionState.DISCONNECTED
        self._opened = asyncio.Event()
        self._queue: deque[str] = deque(maxlen=max_queue_size)
        self._flushing = False
        self._retry_attempts = 0
        self._closing = False

        self._listen_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._connect_task: asyncio.Task[bool] | None = None

        self._state_callbacks: list[Callable[[ConnectionState], None]] = []
        self._failure_callbacks: list[Callable[[ClearnodeClientError], None]] = []

    # -------------------------------------------------------------------------
    # Public API: State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def retry_attempts(self) -> int:
        return self._retry_attempts

    @property
    def queued(self) -> int:
        """Number of frames waiting for the connection to open."""
        return len(self._queue)

    def on_connection_state_changed(
        self, callback: Callable[[ConnectionState], None]
    ) -> None:
        """Register callback for connection state changes."""
        self._state_callbacks.append(callback)

    def on_terminal_failure(
        self, callback: Callable[[ClearnodeClientError], None]
    ) -> None:
        """Register callback invoked when reconnection is abandoned."""
        self._failure_callbacks.append(callback)

    async def wait_until_open(self, timeout: float) -> None:
        """Wait for the connection to reach the open state.

        Raises:
            ConnectionTimeout: If it is not open within ``timeout`` seconds
        """
        if self.is_connected:
            return
        try:
            await asyncio.wait_for(self._opened.wait(), timeout)
        except TimeoutError as err:
            raise ConnectionTimeout("WebSocket connection timeout") from err

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    async def connect(self) -> bool:
        """Open the relay connection.

        No-op while already open or opening.

        Returns:
            True if the connection is open afterwards, False otherwise
        """
        if self._state is ConnectionState.OPEN:
            _LOGGER.debug("WebSocket already connected")
            return True
        if self._state is ConnectionState.CONNECTING:
            _LOGGER.debug("WebSocket connection already in progress")
            return False

        self._closing = False
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        self._set_state(ConnectionState.CONNECTING)
        _LOGGER.info(
            "Connecting to %s (attempt #%d)", self.url, self._retry_attempts + 1
        )

        ws_client = ClearnodeWsClient()
        try:
            await ws_client.connect(
                self.url,
                ping_interval=self._ping_interval,
                timeout=self._connect_timeout,
            )
        except ClearnodeTimeout:
            _LOGGER.warning("Connection timeout - relay unreachable")
            self._handle_connection_failure()
            return False
        except ClearnodeHandshakeError as err:
            _LOGGER.error("WebSocket handshake failed: %s", err)
            self._handle_connection_failure()
            return False
        except ClearnodeConnectionError as err:
            _LOGGER.warning("Connection failed: %s", err)
            self._handle_connection_failure()
            return False

        if self._closing:
            # disconnect() ran while the socket was opening
            await ws_client.close()
            return False

        self._ws = ws_client
        self._retry_attempts = 0
        self._listen_task = asyncio.create_task(self._listen(ws_client))
        _LOGGER.info("Connected to %s", self.url)

        self._flushing = True
        self._set_state(ConnectionState.OPEN)
        try:
            await self._flush_queue()
        finally:
            self._flushing = False
        return self.is_connected

    async def send(self, message: RpcRequest | dict[str, Any] | str) -> None:
        """Send a frame now if open, otherwise queue it and start connecting."""
        if isinstance(message, RpcRequest):
            text = json.dumps(message.to_wire())
        elif isinstance(message, str):
            text = message
        else:
            text = json.dumps(message)

        if self.is_connected and not self._flushing and self._ws is not None:
            _LOGGER.debug("Sending message: %s", text)
            try:
                await self._ws.send_text(text)
                return
            except ClearnodeConnectionError as err:
                _LOGGER.warning("Send failed, queueing message: %s", err)

        self._enqueue(text)
        self.start_connect()

    def start_connect(self) -> None:
        """Begin connecting in the background unless already underway."""
        if self._state is not ConnectionState.DISCONNECTED:
            return
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.create_task(self.connect())

    async def disconnect(self) -> None:
        """Hard reset: drop the socket, the queue and any pending reconnect."""
        self._closing = True

        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        if self._state is not ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.CLOSING)

        listen_task = self._listen_task
        self._listen_task = None
        if listen_task is not None and listen_task is not asyncio.current_task():
            listen_task.cancel()
            try:
                await listen_task
            except asyncio.CancelledError:
                pass

        if self._ws is not None:
            try:
                await asyncio.wait_for(self._ws.close(), timeout=2.0)
            except TimeoutError:
                _LOGGER.warning("WebSocket close timed out")
            self._ws = None

        self._retry_attempts = 0
        self._queue.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        _LOGGER.info("Disconnected from %s", self.url)

    # -------------------------------------------------------------------------
    # Internal: Connection State Machine
    # -------------------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        """Update connection state and notify observers."""
        if self._state is state:
            return
        _LOGGER.debug("State: %s → %s", self._state.value, state.value)
        self._state = state
        if state is ConnectionState.OPEN:
            self._opened.set()
        else:
            self._opened.clear()
        for callback in list(self._state_callbacks):
            try:
                callback(state)
            except Exception:
                _LOGGER.exception("Connection state callback error")

    def _enqueue(self, text: str) -> None:
        if self._queue.maxlen is not None and len(self._queue) == self._queue.maxlen:
            _LOGGER.warning(
                "Outbound queue full (%d), dropping oldest message",
                self._queue.maxlen,
            )
        self._queue.append(text)
        _LOGGER.debug("WebSocket not ready, queued message (%d)", len(self._queue))

    async def _flush_queue(self) -> None:
        """Send queued frames in FIFO order while the connection stays open."""
        if not self._queue:
            return
        _LOGGER.debug("Flushing %d queued messages", len(self._queue))
        while self._queue:
            if not self.is_connected or self._ws is None:
                _LOGGER.debug("Flush aborted, %d messages left", len(self._queue))
                return
            text = self._queue[0]
            try:
                await self._ws.send_text(text)
            except ClearnodeConnectionError as err:
                _LOGGER.warning("Flush interrupted: %s", err)
                return
            # The head may have been dropped by disconnect() during the send.
            if self._queue and self._queue[0] is text:
                self._queue.popleft()

    def _handle_connection_failure(self) -> None:
        """Schedule reconnection attempt with exponential backoff."""
        self._ws = None
        self._set_state(ConnectionState.DISCONNECTED)

        if self._closing or self._reconnect_task is not None:
            return

        if self._retry_attempts >= self._max_reconnect_attempts:
            _LOGGER.error("Max reconnection attempts reached. Giving up.")
            failure = MaxReconnectAttemptsExceeded(self._retry_attempts)
            for callback in list(self._failure_callbacks):
                try:
                    callback(failure)
                except Exception:
                    _LOGGER.exception("Terminal failure callback error")
            return

        self._retry_attempts += 1
        delay = backoff_delay(
            self._retry_attempts, self._retry_base_delay, self._retry_max_delay
        )
        _LOGGER.info(
            "Reconnecting in %.1fs (attempt %d/%d)",
            delay,
            self._retry_attempts,
            self._max_reconnect_attempts,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay(delay))

    async def _reconnect_after_delay(self, delay: float) -> None:
        """Reconnect after delay."""
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            _LOGGER.debug("Reconnect cancelled")
            raise
        self._reconnect_task = None
        await self.connect()

    # -------------------------------------------------------------------------
    # Internal: Message Listener
    # -------------------------------------------------------------------------

    async def _listen(self, ws_client: ClearnodeWsClient) -> None:
        """Read frames from the relay and dispatch them."""
        message_count = 0
        reconnect_required = False

        try:
            async for msg in ws_client:
                if msg.type is ClearnodeWsMessageType.TEXT:
                    message_count += 1
                    try:
                        decoded = ws_client.decode_json(msg)
                    except (ValueError, ClearnodeClientError) as err:
                        _LOGGER.warning("Failed to parse WebSocket message: %s", err)
                        continue
                    envelope = parse_envelope(decoded)
                    _LOGGER.debug("Received %s message", envelope.routing_key)
                    self._dispatcher.dispatch(envelope)

                elif msg.type is ClearnodeWsMessageType.CLOSED:
                    _LOGGER.info("WebSocket closed by relay")
                    reconnect_required = True
                    break

                elif msg.type is ClearnodeWsMessageType.ERROR:
                    _LOGGER.error("WebSocket error")
                    reconnect_required = True
                    break

        except asyncio.CancelledError:
            _LOGGER.debug("Listener cancelled (%d messages)", message_count)
            raise
        except ClearnodeClientError as err:
            _LOGGER.warning("Client error: %s", err)
            reconnect_required = True
        finally:
            if reconnect_required and not self._closing and self._ws is ws_client:
                self._listen_task = None
                self._handle_connection_failure()
