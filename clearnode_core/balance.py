"""Unified balance queries and push-fed balance cache.

Reads are served from cache while fresh; otherwise a correlated
``get_balance`` request is issued. ``balance_update`` pushes from the relay
keep the cache warm. The read path never raises: on failure it falls back
to the last known amount, or "0".
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from .connection import ClearnodeConnection
from .dispatch import MessageDispatcher
from .errors import ClearnodeClientError, InvalidResponse
from .protocol import Envelope, RequestIdGenerator, RpcResponse, build_request

_LOGGER = logging.getLogger(__name__)

BALANCE_UPDATE = "balance_update"
DEFAULT_DECIMALS = 6

BalanceCallback = Callable[[str, str], None]


@dataclass(slots=True)
class BalanceEntry:
    """Last observed balance for an asset, in its smallest unit."""

    asset: str
    amount: str
    observed_at: float


def format_balance(amount: str | int, decimals: int = DEFAULT_DECIMALS) -> str:
    """Render a smallest-unit integer as a fixed-point decimal string.

    Trailing fractional zeros are dropped: ``format_balance("1500000")``
    gives ``"1.5"``.

    Raises:
        ValueError: If ``amount`` is not an integer or ``decimals`` is negative
    """
    if decimals < 0:
        raise ValueError("decimals must be non-negative")
    value = int(amount)
    sign = "-" if value < 0 else ""
    whole, remainder = divmod(abs(value), 10**decimals)
    fraction = str(remainder).rjust(decimals, "0").rstrip("0") if decimals else ""
    if not fraction:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{fraction}"


def parse_balance(formatted: str, decimals: int = DEFAULT_DECIMALS) -> str:
    """Convert a fixed-point decimal string back to a smallest-unit integer.

    Digits beyond ``decimals`` are truncated.

    Raises:
        ValueError: If ``formatted`` is not a plain decimal number
    """
    if decimals < 0:
        raise ValueError("decimals must be non-negative")
    text = formatted.strip()
    negative = text.startswith("-")
    if negative:
        text = text[1:]
    whole, _, fraction = text.partition(".")
    if not whole and not fraction:
        raise ValueError(f"Invalid balance: {formatted!r}")
    if not whole:
        whole = "0"
    if not whole.isdigit() or (fraction and not fraction.isdigit()):
        raise ValueError(f"Invalid balance: {formatted!r}")
    padded = fraction.ljust(decimals, "0")[:decimals]
    raw = int(whole) * 10**decimals + (int(padded) if padded else 0)
    return str(-raw if negative else raw)


class BalanceCache:
    """Balance reads with TTL caching and push invalidation."""

    def __init__(
        self,
        connection: ClearnodeConnection,
        dispatcher: MessageDispatcher,
        request_ids: RequestIdGenerator,
        *,
        ttl: float = 30.0,
        request_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connection = connection
        self._dispatcher = dispatcher
        self._request_ids = request_ids
        self._ttl = ttl
        self._request_timeout = request_timeout
        self._clock = clock

        self._entries: dict[str, BalanceEntry] = {}
        self._callbacks: list[BalanceCallback] = []
        self._dispatcher.on(BALANCE_UPDATE, self._handle_balance_update)

    def close(self) -> None:
        """Detach the push listener."""
        self._dispatcher.off(BALANCE_UPDATE, self._handle_balance_update)

    # -------------------------------------------------------------------------
    # Public API: Reads
    # -------------------------------------------------------------------------

    async def get_balance(self, asset: str, force_refresh: bool = False) -> str:
        """Return the unified balance for ``asset`` in its smallest unit."""
        if not force_refresh:
            cached = self.get_cached_balance(asset)
            if cached is not None:
                _LOGGER.debug("Balance (cached): %s %s", cached, asset)
                return cached

        try:
            amount = await self._request_amount("get_balance", {"asset": asset})
        except ClearnodeClientError as err:
            _LOGGER.warning("Failed to fetch balance for %s: %s", asset, err)
            entry = self._entries.get(asset)
            return entry.amount if entry is not None else "0"

        self._store(asset, amount)
        _LOGGER.debug("Balance: %s %s", amount, asset)
        return amount

    async def get_multiple_balances(self, assets: Iterable[str]) -> dict[str, str]:
        """Fetch several balances concurrently."""
        unique = list(dict.fromkeys(assets))
        amounts = await asyncio.gather(*(self.get_balance(asset) for asset in unique))
        return dict(zip(unique, amounts, strict=True))

    async def get_channel_balance(self, channel_id: str) -> str:
        """Balance of a dedicated channel; not cached, "0" on failure."""
        try:
            return await self._request_amount(
                "get_channel_balance", {"channel_id": channel_id}
            )
        except ClearnodeClientError as err:
            _LOGGER.warning("Failed to fetch channel balance %s: %s", channel_id, err)
            return "0"

    def get_cached_balance(self, asset: str) -> str | None:
        """Fresh cached amount, or None when absent or stale."""
        entry = self._entries.get(asset)
        if entry is None or self._clock() - entry.observed_at >= self._ttl:
            return None
        return entry.amount

    def entry(self, asset: str) -> BalanceEntry | None:
        return self._entries.get(asset)

    def clear_cache(self) -> None:
        self._entries.clear()
        _LOGGER.debug("Balance cache cleared")

    # -------------------------------------------------------------------------
    # Public API: Push subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, callback: BalanceCallback) -> None:
        """Register ``callback(asset, amount)`` for pushed balance changes."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unsubscribe(self, callback: BalanceCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _store(self, asset: str, amount: str) -> None:
        self._entries[asset] = BalanceEntry(
            asset=asset, amount=amount, observed_at=self._clock()
        )

    async def _request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        request = build_request(method, params, request_id=self._request_ids.next_id())
        pending = self._dispatcher.expect_correlated(request.request_id)
        try:
            await self._connection.send(request)
            response = await pending.wait(self._request_timeout)
        finally:
            pending.release()

        if not isinstance(response, RpcResponse) or response.payload is None:
            raise InvalidResponse(f"Invalid {method} response")
        if response.method != method:
            raise InvalidResponse(
                f"Expected {method} response, got {response.method}: {response.payload}"
            )
        return response.payload

    async def _request_amount(self, method: str, params: dict[str, Any]) -> str:
        """Issue ``method`` and return the integer balance string it carries.

        Raises:
            InvalidResponse: On an error reply or a missing or non-integer balance
        """
        payload = await self._request(method, params)
        amount = payload.get("balance")
        if isinstance(amount, int) and not isinstance(amount, bool):
            return str(amount)
        if isinstance(amount, str) and amount.isascii() and amount.lstrip("-").isdigit():
            return amount
        raise InvalidResponse(f"{method} response has no integer balance: {amount!r}")

    def _handle_balance_update(self, envelope: Envelope) -> None:
        if isinstance(envelope, RpcResponse):
            payload = envelope.payload
        else:
            inner = envelope.data.get("data")
            payload = inner if isinstance(inner, dict) else envelope.data
        if not payload:
            _LOGGER.debug("Ignoring balance_update without payload")
            return
        asset = payload.get("asset")
        amount = payload.get("balance")
        if not isinstance(asset, str) or not asset or amount in (None, ""):
            _LOGGER.debug("Ignoring malformed balance_update: %s", payload)
            return

        amount = str(amount)
        self._store(asset, amount)
        _LOGGER.info("Balance updated: %s %s", amount, asset)

        for callback in list(self._callbacks):
            try:
                callback(asset, amount)
            except Exception:
                _LOGGER.exception("Balance callback error")
