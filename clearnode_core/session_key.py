"""Session key generation, storage and lifecycle.

A session key is an ephemeral keypair delegated time- and amount-bounded
spending authority. Keys are stored encrypted under a user password; the
expiry is also stored in clear so callers can check it without decrypting.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import secrets
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from .crypto import decrypt, encrypt, generate_keypair
from .errors import AllowanceExceeded, DecryptionFailure
from .storage import KeyValueStore

_LOGGER = logging.getLogger(__name__)

STORAGE_KEY_CIPHERTEXT = "encryptedSessionKey"
STORAGE_KEY_EXPIRY = "sessionKeyExpiry"

DEFAULT_SESSION_KEY_DURATION = 3600.0
PASSWORD_MIN_LENGTH = 8
_PASSWORD_CHARSET = (
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789!@#$%^&*"
)


@dataclass(frozen=True)
class Allowance:
    """Spend ceiling for one asset under a session key."""

    asset: str
    amount: str

    def to_dict(self) -> dict[str, str]:
        return {"asset": self.asset, "amount": self.amount}


DEFAULT_ALLOWANCES: tuple[Allowance, ...] = (Allowance("ytest.usd", "100"),)


def normalize_allowances(
    allowances: Iterable[Allowance | Mapping[str, Any]],
) -> tuple[Allowance, ...]:
    """Coerce allowance entries and enforce one entry per asset.

    Raises:
        ValueError: On a duplicate asset or a non-decimal amount
    """
    result: list[Allowance] = []
    seen: set[str] = set()
    for item in allowances:
        if isinstance(item, Allowance):
            allowance = item
        else:
            allowance = Allowance(asset=str(item["asset"]), amount=str(item["amount"]))
        if allowance.asset in seen:
            raise ValueError(f"Duplicate allowance for asset {allowance.asset}")
        _to_decimal(allowance.amount)
        seen.add(allowance.asset)
        result.append(allowance)
    return tuple(result)


def _to_decimal(value: str) -> Decimal:
    try:
        number = Decimal(value)
    except InvalidOperation as err:
        raise ValueError(f"Not a decimal amount: {value!r}") from err
    if not number.is_finite():
        raise ValueError(f"Not a finite amount: {value!r}")
    return number


@dataclass(frozen=True)
class SessionKey:
    """Delegated credential.

    Attributes:
        private_key: 0x-prefixed secret scalar, never sent to the relay.
        public_key: Checksummed address announced as the session key in auth.
        expires_at: Expiry as epoch seconds.
        allowances: Per-asset spend ceilings.
    """

    private_key: str
    public_key: str
    expires_at: float
    allowances: tuple[Allowance, ...] = ()

    def allowance_for(self, asset: str) -> Allowance | None:
        for allowance in self.allowances:
            if allowance.asset == asset:
                return allowance
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "privateKey": self.private_key,
            "publicKey": self.public_key,
            "expiresAt": self.expires_at,
            "allowances": [a.to_dict() for a in self.allowances],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SessionKey:
        return cls(
            private_key=data["privateKey"],
            public_key=data["publicKey"],
            expires_at=float(data["expiresAt"]),
            allowances=normalize_allowances(data.get("allowances", [])),
        )


@dataclass(frozen=True)
class PasswordCheck:
    """Outcome of a password policy check."""

    valid: bool
    message: str | None = None


def validate_password(password: str) -> PasswordCheck:
    """Check a password against the storage password policy."""
    if len(password) < PASSWORD_MIN_LENGTH:
        return PasswordCheck(
            False, f"Password must be at least {PASSWORD_MIN_LENGTH} characters"
        )

    has_upper = re.search(r"[A-Z]", password) is not None
    has_lower = re.search(r"[a-z]", password) is not None
    has_digit = re.search(r"[0-9]", password) is not None
    if not (has_upper and has_lower and has_digit):
        return PasswordCheck(
            False, "Password must contain uppercase, lowercase, and numbers"
        )

    return PasswordCheck(True)


def generate_password(length: int = 16) -> str:
    """Generate a random password for automatic key encryption."""
    return "".join(secrets.choice(_PASSWORD_CHARSET) for _ in range(length))


class SessionKeyManager:
    """Generate, persist, expire and rotate session keys."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        duration: float = DEFAULT_SESSION_KEY_DURATION,
        default_allowances: Iterable[Allowance] = DEFAULT_ALLOWANCES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._duration = duration
        self._default_allowances = normalize_allowances(default_allowances)
        self._clock = clock

    def generate(
        self, allowances: Iterable[Allowance | Mapping[str, Any]] | None = None
    ) -> SessionKey:
        """Create a fresh, unpersisted session key."""
        normalized = (
            self._default_allowances
            if allowances is None
            else normalize_allowances(allowances)
        )
        keypair = generate_keypair()
        key = SessionKey(
            private_key=keypair.private_key,
            public_key=keypair.public_key,
            expires_at=self._clock() + self._duration,
            allowances=normalized,
        )
        _LOGGER.info(
            "Session key generated: %s (expires %s)",
            keypair.public_key_short,
            datetime.fromtimestamp(key.expires_at, tz=UTC).isoformat(),
        )
        return key

    async def persist(self, key: SessionKey, password: str) -> None:
        """Encrypt and store ``key``, replacing any previous one."""
        ciphertext = await asyncio.to_thread(
            encrypt, json.dumps(key.to_dict()), password
        )
        await self._store.set(STORAGE_KEY_CIPHERTEXT, ciphertext)
        await self._store.set(STORAGE_KEY_EXPIRY, key.expires_at)
        _LOGGER.debug("Session key saved")

    async def load(self, password: str) -> SessionKey | None:
        """Load and decrypt the stored key.

        Returns:
            The stored key, or None when nothing is stored or it has expired
            (an expired key is removed from storage).

        Raises:
            DecryptionFailure: Wrong password or corrupt stored data
        """
        ciphertext = await self._store.get(STORAGE_KEY_CIPHERTEXT)
        if not ciphertext:
            _LOGGER.debug("No session key found in storage")
            return None
        if not isinstance(ciphertext, str):
            raise DecryptionFailure("Stored session key has an unexpected type")

        plaintext = await asyncio.to_thread(decrypt, ciphertext, password)
        try:
            key = SessionKey.from_dict(json.loads(plaintext))
        except (ValueError, KeyError, TypeError) as err:
            raise DecryptionFailure("Stored session key is corrupt") from err

        if self.is_expired(key):
            _LOGGER.info("Session key expired, removing from storage")
            await self.clear()
            return None

        _LOGGER.debug("Session key loaded: %s", key.public_key)
        return key

    async def clear(self) -> None:
        await self._store.remove(STORAGE_KEY_CIPHERTEXT, STORAGE_KEY_EXPIRY)

    async def stored_expiry(self) -> float | None:
        """Expiry of the stored key, read without decrypting it."""
        value = await self._store.get(STORAGE_KEY_EXPIRY)
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    async def has_usable_key(self) -> bool:
        """True when a stored key exists and its clear-text expiry is ahead."""
        expiry = await self.stored_expiry()
        return expiry is not None and self._clock() <= expiry

    def is_expired(self, key: SessionKey) -> bool:
        return self._clock() > key.expires_at

    def check_allowance(self, key: SessionKey, spent_amount: str, asset: str) -> None:
        """Raise AllowanceExceeded when ``spent_amount`` reached the asset ceiling."""
        allowance = key.allowance_for(asset)
        if allowance is None:
            return
        if _to_decimal(spent_amount) >= _to_decimal(allowance.amount):
            raise AllowanceExceeded(asset, spent_amount, allowance.amount)

    def needs_rotation(self, key: SessionKey, spent_amount: str, asset: str) -> bool:
        """True when the key expired or its allowance for ``asset`` is used up."""
        if self.is_expired(key):
            _LOGGER.info("Session key expired")
            return True
        try:
            self.check_allowance(key, spent_amount, asset)
        except AllowanceExceeded as err:
            _LOGGER.info("%s", err)
            return True
        return False

    async def rotate_if_needed(
        self,
        key: SessionKey | None,
        spent_amount: str,
        asset: str,
        password: str,
    ) -> SessionKey:
        """Return ``key`` if still usable, else a freshly persisted replacement.

        The replacement keeps the previous allowances, or the defaults when
        there was no previous key.
        """
        if key is not None and not self.needs_rotation(key, spent_amount, asset):
            return key

        _LOGGER.info("Rotating session key")
        allowances = key.allowances if key is not None and key.allowances else None
        new_key = self.generate(allowances)
        await self.persist(new_key, password)
        return new_key

    def remaining_time(self, key: SessionKey) -> float:
        return max(0.0, key.expires_at - self._clock())

    def format_remaining_time(self, key: SessionKey) -> str:
        remaining = int(self.remaining_time(key))
        minutes, seconds = divmod(remaining, 60)
        if minutes > 0:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"
