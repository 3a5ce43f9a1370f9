"""Unlock records for purchased content, kept in the key-value store."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from .storage import KeyValueStore

_LOGGER = logging.getLogger(__name__)

STORAGE_KEY_PURCHASES = "purchases"


@dataclass(frozen=True)
class UnlockRecord:
    """A completed content purchase.

    Times are epoch seconds.
    """

    unlocked_at: float
    expires_at: float
    price: str
    creator: str
    tx_hash: str
    verified: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UnlockRecord:
        return cls(
            unlocked_at=float(data["unlocked_at"]),
            expires_at=float(data["expires_at"]),
            price=str(data["price"]),
            creator=str(data["creator"]),
            tx_hash=str(data["tx_hash"]),
            verified=bool(data.get("verified", False)),
        )


class PurchaseLedger:
    """Per-domain, per-content unlock records.

    Writes are serialized so concurrent unlocks never overwrite each other.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        default_expiry: float = 86400.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._default_expiry = default_expiry
        self._clock = clock
        self._write_lock = asyncio.Lock()

    async def _load(self) -> dict[str, dict[str, dict[str, Any]]]:
        data = await self._store.get(STORAGE_KEY_PURCHASES)
        return data if isinstance(data, dict) else {}

    async def record_unlock(
        self, domain: str, content_id: str, record: UnlockRecord
    ) -> None:
        async with self._write_lock:
            purchases = await self._load()
            purchases.setdefault(domain, {})[content_id] = asdict(record)
            await self._store.set(STORAGE_KEY_PURCHASES, purchases)
        _LOGGER.info("Unlock recorded: %s/%s", domain, content_id)

    async def record_purchase(
        self,
        domain: str,
        content_id: str,
        *,
        price: str,
        creator: str,
        tx_hash: str,
        verified: bool = False,
    ) -> UnlockRecord:
        """Record an unlock starting now that lasts the default expiry."""
        now = self._clock()
        record = UnlockRecord(
            unlocked_at=now,
            expires_at=now + self._default_expiry,
            price=price,
            creator=creator,
            tx_hash=tx_hash,
            verified=verified,
        )
        await self.record_unlock(domain, content_id, record)
        return record

    async def get_unlock(self, domain: str, content_id: str) -> UnlockRecord | None:
        raw = (await self._load()).get(domain, {}).get(content_id)
        if raw is None:
            return None
        try:
            return UnlockRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError) as err:
            _LOGGER.warning("Corrupt unlock record %s/%s: %s", domain, content_id, err)
            return None

    async def is_unlocked(self, domain: str, content_id: str) -> bool:
        """True when a record exists and has not expired."""
        record = await self.get_unlock(domain, content_id)
        return record is not None and self._clock() <= record.expires_at

    async def list_unlocks(self, domain: str) -> dict[str, UnlockRecord]:
        records: dict[str, UnlockRecord] = {}
        for content_id in (await self._load()).get(domain, {}):
            record = await self.get_unlock(domain, content_id)
            if record is not None:
                records[content_id] = record
        return records
