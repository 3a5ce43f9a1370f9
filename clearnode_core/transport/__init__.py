"""Socket layer for the Clearnode relay.

Components:
- ws: opening sockets, URL checks and error translation
- ws_client: frame normalization, iteration and JSON framing
"""

from .ws import MAX_FRAME_SIZE, connect_websocket, validate_relay_url
from .ws_client import (
    ClearnodeWsClient,
    ClearnodeWsMessage,
    ClearnodeWsMessageType,
    normalize_frame,
)

__all__ = [
    "MAX_FRAME_SIZE",
    "ClearnodeWsClient",
    "ClearnodeWsMessage",
    "ClearnodeWsMessageType",
    "connect_websocket",
    "normalize_frame",
    "validate_relay_url",
]
