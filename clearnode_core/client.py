"""Composition root wiring the relay transport, auth, keys and balances.

UI layers talk to the client through ``handle_request`` with typed request
objects ``{"type": ..., "data": {...}}`` and receive ``{"success": ...}``
responses.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import asdict
from decimal import Decimal, InvalidOperation
from typing import Any

from .auth import AuthManager, AuthResult, AuthSigner
from .balance import BalanceCache, format_balance
from .config import ClientConfig
from .connection import ClearnodeConnection
from .dispatch import MessageDispatcher
from .protocol import RequestIdGenerator
from .purchases import PurchaseLedger
from .session_key import Allowance, SessionKey, SessionKeyManager
from .storage import KeyValueStore, MemoryStore

_LOGGER = logging.getLogger(__name__)

RequestHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class ClearnodeClient:
    """Everything a UI layer needs to pay through the relay.

    Usage:
        client = ClearnodeClient(ClientConfig(), JsonFileStore("state.json"))
        key = await client.session_keys.rotate_if_needed(None, "0", "usdc", pw)
        result = await client.authenticate(key, signer, "0xabc...")
        balance = await client.get_unified_balance("usdc")
        await client.close()
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        store: KeyValueStore | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        if self.config.debug_mode:
            logging.getLogger("clearnode_core").setLevel(logging.DEBUG)
        self.store: KeyValueStore = store if store is not None else MemoryStore()

        self.dispatcher = MessageDispatcher()
        self.request_ids = RequestIdGenerator()
        self.connection = ClearnodeConnection(
            self.config.ws_url,
            self.dispatcher,
            retry_base_delay=self.config.retry_base_delay,
            retry_max_delay=self.config.retry_max_delay,
            max_reconnect_attempts=self.config.max_reconnect_attempts,
            max_queue_size=self.config.max_queue_size,
            ping_interval=self.config.ping_interval,
        )
        self.auth = AuthManager(
            self.connection,
            self.dispatcher,
            self.request_ids,
            application=self.config.application,
            scope=self.config.scope,
            connect_timeout=self.config.connect_timeout,
            challenge_timeout=self.config.challenge_timeout,
            verify_timeout=self.config.verify_timeout,
        )
        self.session_keys = SessionKeyManager(
            self.store,
            duration=self.config.session_key_duration,
            default_allowances=self.config.default_allowances,
        )
        self.balances = BalanceCache(
            self.connection,
            self.dispatcher,
            self.request_ids,
            ttl=self.config.balance_ttl,
            request_timeout=self.config.balance_request_timeout,
        )
        self.purchases = PurchaseLedger(
            self.store, default_expiry=self.config.default_unlock_expiry
        )

        self._handlers: dict[str, RequestHandler] = {
            "CHECK_BALANCE": self._handle_check_balance,
            "GET_BALANCES": self._handle_get_balances,
            "GET_SESSION": self._handle_get_session,
            "GET_UNLOCK": self._handle_get_unlock,
            "RECORD_UNLOCK": self._handle_record_unlock,
            "CHECK_AUTO_APPROVE": self._handle_check_auto_approve,
        }

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def authenticate(
        self, session_key: SessionKey, signer: AuthSigner, user_address: str
    ) -> AuthResult:
        return await self.auth.authenticate(session_key, signer, user_address)

    async def get_unified_balance(self, asset: str, force_refresh: bool = False) -> str:
        return await self.balances.get_balance(asset, force_refresh)

    def generate_session_key(
        self, allowances: Iterable[Allowance | Mapping[str, Any]] | None = None
    ) -> SessionKey:
        return self.session_keys.generate(allowances)

    async def rotate_if_needed(
        self,
        session_key: SessionKey | None,
        spent_amount: str,
        asset: str,
        password: str,
    ) -> SessionKey:
        return await self.session_keys.rotate_if_needed(
            session_key, spent_amount, asset, password
        )

    def can_auto_approve(self, price: str) -> bool:
        """True when auto-approval is on and ``price`` is within its ceiling.

        ``price`` is in display units, like ``max_auto_approve_amount``.

        Raises:
            ValueError: If either amount is not a decimal number
        """
        try:
            amount = Decimal(price)
            ceiling = Decimal(self.config.max_auto_approve_amount)
        except InvalidOperation as err:
            raise ValueError(f"Invalid amount: {price!r}") from err
        if not amount.is_finite() or amount < 0:
            raise ValueError(f"Invalid amount: {price!r}")
        return self.config.auto_approve and amount <= ceiling

    async def close(self) -> None:
        """Detach listeners and drop the relay connection."""
        self.balances.close()
        await self.auth.logout()

    # -------------------------------------------------------------------------
    # UI boundary
    # -------------------------------------------------------------------------

    async def handle_request(self, request: Mapping[str, Any]) -> dict[str, Any]:
        """Answer a typed UI request; never raises."""
        request_type = request.get("type")
        data = request.get("data") or {}
        handler = (
            self._handlers.get(request_type) if isinstance(request_type, str) else None
        )
        if handler is None:
            return {"success": False, "error": f"Unknown request type: {request_type}"}
        if not isinstance(data, dict):
            return {"success": False, "error": "Request data must be an object"}
        try:
            return await handler(data)
        except (KeyError, TypeError, ValueError) as err:
            _LOGGER.warning("Bad %s request: %s", request_type, err)
            return {"success": False, "error": f"Invalid request: {err}"}

    async def _handle_check_balance(self, data: dict[str, Any]) -> dict[str, Any]:
        asset = data.get("asset") or self.config.supported_assets[0]
        balance = await self.balances.get_balance(
            asset, bool(data.get("force_refresh", False))
        )
        return {
            "success": True,
            "asset": asset,
            "balance": balance,
            "formatted": format_balance(balance, self.config.decimals),
        }

    async def _handle_get_balances(self, data: dict[str, Any]) -> dict[str, Any]:
        assets = data.get("assets") or self.config.supported_assets
        balances = await self.balances.get_multiple_balances(assets)
        return {"success": True, "balances": balances}

    async def _handle_get_session(self, data: dict[str, Any]) -> dict[str, Any]:
        return {
            "success": True,
            "authenticated": self.auth.is_authenticated,
            "session_id": self.auth.session_id,
            "connection": self.connection.state.value,
            "has_session_key": await self.session_keys.has_usable_key(),
        }

    async def _handle_get_unlock(self, data: dict[str, Any]) -> dict[str, Any]:
        domain = data["domain"]
        content_id = data["content_id"]
        record = await self.purchases.get_unlock(domain, content_id)
        return {
            "success": True,
            "unlocked": await self.purchases.is_unlocked(domain, content_id),
            "record": None if record is None else asdict(record),
        }

    async def _handle_record_unlock(self, data: dict[str, Any]) -> dict[str, Any]:
        record = await self.purchases.record_purchase(
            data["domain"],
            data["content_id"],
            price=str(data["price"]),
            creator=str(data.get("creator", "")),
            tx_hash=str(data.get("tx_hash", "")),
            verified=bool(data.get("verified", False)),
        )
        return {"success": True, "record": asdict(record)}

    async def _handle_check_auto_approve(self, data: dict[str, Any]) -> dict[str, Any]:
        price = str(data["price"])
        return {
            "success": True,
            "price": price,
            "auto_approve": self.can_auto_approve(price),
        }
