"""Opening sockets to the relay."""

from __future__ import annotations

import asyncio
from urllib.parse import urlsplit

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import InvalidHandshake, InvalidURI, WebSocketException

from ..errors import (
    ClearnodeConnectionError,
    ClearnodeHandshakeError,
    ClearnodeTimeout,
)

# Relay frames are JSON envelopes well under this size.
MAX_FRAME_SIZE = 2**20

_RELAY_SCHEMES = frozenset({"ws", "wss"})


def validate_relay_url(url: str) -> str:
    """Return ``url`` unchanged if it names a ws:// or wss:// endpoint.

    Raises:
        ClearnodeHandshakeError: For any other scheme or a missing host
    """
    parts = urlsplit(url)
    if parts.scheme not in _RELAY_SCHEMES or not parts.hostname:
        raise ClearnodeHandshakeError(f"Not a WebSocket relay URL: {url!r}")
    return url


async def connect_websocket(
    url: str,
    *,
    ping_interval: int | None = 20,
    timeout: float = 15.0,
    max_size: int | None = MAX_FRAME_SIZE,
) -> ClientConnection:
    """Open a socket to the relay.

    ``timeout`` bounds TCP connect, TLS and the HTTP upgrade together.

    Args:
        url: Full ws:// or wss:// endpoint URL
        ping_interval: Keepalive ping interval, None to disable
        timeout: Connection timeout (seconds)
        max_size: Largest inbound frame accepted, None for no limit
    """
    validate_relay_url(url)
    opening = connect(
        url,
        ping_interval=ping_interval,
        open_timeout=None,
        close_timeout=5,
        max_size=max_size,
    )
    try:
        return await asyncio.wait_for(opening, timeout=timeout)
    except TimeoutError as err:
        raise ClearnodeTimeout(
            f"Relay did not accept a connection within {timeout}s"
        ) from err
    except (InvalidHandshake, InvalidURI) as err:
        raise ClearnodeHandshakeError(f"WebSocket handshake failed: {err}") from err
    except (OSError, WebSocketException) as err:
        raise ClearnodeConnectionError(f"WebSocket connection failed: {err}") from err
