"""Nitro RPC envelope helpers for Clearnode relay frames.

Outbound requests use ``{"req": [request_id, method, params, timestamp]}``
and inbound responses/events use ``{"res": [request_id, method, payload]}``.
Anything else is treated as a generic typed event routed by its ``type``.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

UNKNOWN_ROUTING_KEY = "unknown"


def _now_ms() -> int:
    return int(time.time() * 1000)


class RequestIdGenerator:
    """Produce strictly increasing integer request ids.

    Ids are seeded from the millisecond clock so they stay meaningful to the
    relay, but two requests issued within the same millisecond still get
    distinct ids.
    """

    def __init__(self, clock_ms: Callable[[], int] = _now_ms) -> None:
        self._clock_ms = clock_ms
        self._last = 0

    def next_id(self) -> int:
        """Return a request id greater than every id issued before."""
        candidate = self._clock_ms()
        if candidate <= self._last:
            candidate = self._last + 1
        self._last = candidate
        return candidate


@dataclass(frozen=True, slots=True)
class RpcRequest:
    """Outbound request envelope."""

    request_id: int
    method: str
    params: dict[str, Any]
    timestamp: int
    signatures: tuple[str, ...] = ()

    @property
    def routing_key(self) -> str:
        return self.method

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the JSON-ready wire shape."""
        frame: dict[str, Any] = {
            "req": [self.request_id, self.method, self.params, self.timestamp]
        }
        if self.signatures:
            frame["sig"] = list(self.signatures)
        return frame


@dataclass(frozen=True, slots=True)
class RpcResponse:
    """Inbound response or push event in the ``res`` shape."""

    request_id: int | None
    method: str
    payload: dict[str, Any] | None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def routing_key(self) -> str:
        return self.method


@dataclass(frozen=True, slots=True)
class TypedEvent:
    """Inbound message in any other shape, routed by its ``type`` field."""

    type: str | None
    data: dict[str, Any]

    @property
    def request_id(self) -> None:
        return None

    @property
    def routing_key(self) -> str:
        return self.type or UNKNOWN_ROUTING_KEY


Envelope = RpcResponse | TypedEvent


def build_request(
    method: str,
    params: dict[str, Any],
    *,
    request_id: int,
    timestamp_ms: int | None = None,
    signatures: Sequence[str] = (),
) -> RpcRequest:
    """Construct a request envelope.

    Args:
        method: RPC method name (e.g., "get_balance").
        params: JSON-serializable parameters.
        request_id: Correlation id, usually from a RequestIdGenerator.
        timestamp_ms: Optional epoch milliseconds override.
        signatures: Optional signatures carried in the ``sig`` list.
    """
    if not method:
        raise ValueError("method is required for request envelopes")
    return RpcRequest(
        request_id=request_id,
        method=method,
        params=params,
        timestamp=timestamp_ms if timestamp_ms is not None else _now_ms(),
        signatures=tuple(signatures),
    )


def build_auth_verify(
    challenge: str,
    signature: str,
    *,
    request_id: int,
    timestamp_ms: int | None = None,
) -> dict[str, Any]:
    """Construct the wire frame answering an auth_challenge.

    Signer implementations produce the signature over the challenge and the
    original auth request parameters, then wrap it with this helper.
    """
    if not challenge:
        raise ValueError("challenge is required for auth_verify frames")
    return build_request(
        "auth_verify",
        {"challenge": challenge},
        request_id=request_id,
        timestamp_ms=timestamp_ms,
        signatures=(signature,),
    ).to_wire()


def parse_envelope(message: Any) -> Envelope:
    """Classify a decoded JSON message into one of the envelope shapes.

    A ``res`` array whose method slot is a non-empty string becomes an
    RpcResponse; everything else becomes a TypedEvent.
    """
    if not isinstance(message, dict):
        return TypedEvent(type=None, data={})

    res = message.get("res")
    if isinstance(res, list) and len(res) >= 2 and isinstance(res[1], str) and res[1]:
        request_id = res[0]
        if isinstance(request_id, bool) or not isinstance(request_id, int):
            request_id = None
        payload = res[2] if len(res) > 2 and isinstance(res[2], dict) else None
        return RpcResponse(
            request_id=request_id,
            method=res[1],
            payload=payload,
            raw=message,
        )

    msg_type = message.get("type")
    return TypedEvent(
        type=msg_type if isinstance(msg_type, str) and msg_type else None,
        data=message,
    )
