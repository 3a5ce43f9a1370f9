"""Relay socket wrapper yielding normalized frames."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import ClearnodeClientError, ClearnodeConnectionError
from .ws import connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class ClearnodeWsMessageType(Enum):
    """Kinds of frame the connection layer acts on."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class ClearnodeWsMessage:
    """A normalized frame; only TEXT frames carry data."""

    type: ClearnodeWsMessageType
    data: str | None = None


def normalize_frame(raw: Any) -> ClearnodeWsMessage | None:
    """Wrap a received frame, or return None for frames to skip.

    The relay speaks JSON text only, so binary frames are dropped.
    """
    if isinstance(raw, str):
        return ClearnodeWsMessage(ClearnodeWsMessageType.TEXT, raw)
    return None


class ClearnodeWsClient:
    """One socket to the relay.

    Iterating the client yields TEXT frames until the socket ends, then
    exactly one CLOSED or ERROR frame.
    """

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None
        self._closed = False
        self.url: str | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed

    async def connect(
        self,
        url: str,
        *,
        ping_interval: int | None = 20,
        timeout: float = 15.0,
    ) -> None:
        self._ws = await connect_websocket(
            url, ping_interval=ping_interval, timeout=timeout
        )
        self._closed = False
        self.url = url

    async def close(self) -> None:
        if self._ws is None or self._closed:
            return
        self._closed = True
        await self._ws.close()

    async def send_text(self, text: str) -> None:
        """Send one serialized frame.

        Raises:
            ClearnodeConnectionError: If the socket is not open or the send fails
        """
        ws = self._require_socket()
        try:
            await ws.send(text)
        except WebSocketException as err:
            raise ClearnodeConnectionError(f"WebSocket send failed: {err}") from err

    def _require_socket(self) -> ClientConnection:
        if self._ws is None or self._closed:
            raise ClearnodeConnectionError("WebSocket is not connected")
        return self._ws

    def __aiter__(self) -> AsyncIterator[ClearnodeWsMessage]:
        return self._iter_messages(self._require_socket())

    async def _iter_messages(
        self, ws: ClientConnection
    ) -> AsyncIterator[ClearnodeWsMessage]:
        terminal = ClearnodeWsMessageType.CLOSED
        try:
            async for raw in ws:
                message = normalize_frame(raw)
                if message is not None:
                    yield message
        except ConnectionClosed:
            pass
        except Exception:
            terminal = ClearnodeWsMessageType.ERROR
        yield ClearnodeWsMessage(terminal)

    @staticmethod
    def decode_json(message: ClearnodeWsMessage) -> Any:
        """Parse the JSON body of a TEXT frame.

        Raises:
            ClearnodeClientError: For frames without a text body
            ValueError: If the body is not valid JSON
        """
        if message.type is not ClearnodeWsMessageType.TEXT or message.data is None:
            raise ClearnodeClientError(f"Cannot decode a {message.type.value} frame")
        return json.loads(message.data)
