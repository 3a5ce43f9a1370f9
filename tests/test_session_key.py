"""Tests for session key lifecycle and password policy."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest
from eth_account import Account

from clearnode_core.crypto import address_of, decrypt, encrypt, generate_keypair
from clearnode_core.errors import AllowanceExceeded, DecryptionFailure
from clearnode_core.session_key import (
    STORAGE_KEY_CIPHERTEXT,
    STORAGE_KEY_EXPIRY,
    Allowance,
    SessionKey,
    SessionKeyManager,
    generate_password,
    normalize_allowances,
    validate_password,
)
from clearnode_core.storage import MemoryStore

PASSWORD = "Correct-Horse-9"
NOW = 1_700_000_000.0


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def manager(store, clock) -> SessionKeyManager:
    return SessionKeyManager(
        store,
        duration=3600.0,
        default_allowances=[Allowance("usdc", "10")],
        clock=clock,
    )


class TestCrypto:
    """Tests for keypair generation and encryption at rest."""

    def test_keypair_shape(self):
        pair = generate_keypair()
        assert pair.private_key.startswith("0x")
        assert len(pair.private_key) == 2 + 64
        assert pair.public_key.startswith("0x")
        assert len(pair.public_key) == 2 + 40
        assert pair.public_key == Account.from_key(pair.private_key).address
        assert "..." in pair.public_key_short

    def test_known_address(self):
        """Private key 1 controls the well-known generator address."""
        assert (
            address_of("0x" + "00" * 31 + "01")
            == "0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf"
        )

    def test_keypairs_are_unique(self):
        assert generate_keypair().private_key != generate_keypair().private_key

    def test_encrypt_is_salted(self):
        first = encrypt("secret", PASSWORD)
        second = encrypt("secret", PASSWORD)
        assert first != second
        assert decrypt(first, PASSWORD) == "secret"

    def test_wrong_password_fails(self):
        blob = encrypt("secret", PASSWORD)
        with pytest.raises(DecryptionFailure):
            decrypt(blob, "Wrong-Password-1")

    @pytest.mark.parametrize("blob", ["", "not base64 !!", "AAAA"])
    def test_garbage_blob_fails(self, blob):
        with pytest.raises(DecryptionFailure):
            decrypt(blob, PASSWORD)


class TestPersistence:
    """Tests for persist/load."""

    @pytest.mark.asyncio
    async def test_persist_then_load(self, manager, store):
        key = manager.generate()
        await manager.persist(key, PASSWORD)

        snapshot = store.snapshot()
        assert key.private_key[2:] not in snapshot[STORAGE_KEY_CIPHERTEXT]
        assert snapshot[STORAGE_KEY_EXPIRY] == NOW + 3600.0

        loaded = await manager.load(PASSWORD)
        assert loaded == key
        assert loaded.allowances == (Allowance("usdc", "10"),)

    @pytest.mark.asyncio
    async def test_key_derivation_runs_off_the_loop(self, manager):
        key = manager.generate()
        with patch(
            "clearnode_core.session_key.asyncio.to_thread", wraps=asyncio.to_thread
        ) as to_thread:
            await manager.persist(key, PASSWORD)
            assert await manager.load(PASSWORD) == key

        assert [c.args[0] for c in to_thread.call_args_list] == [encrypt, decrypt]

    @pytest.mark.asyncio
    async def test_load_without_key(self, manager):
        assert await manager.load(PASSWORD) is None

    @pytest.mark.asyncio
    async def test_wrong_password(self, manager):
        await manager.persist(manager.generate(), PASSWORD)
        with pytest.raises(DecryptionFailure):
            await manager.load("Another-Password-2")

    @pytest.mark.asyncio
    async def test_corrupt_plaintext(self, manager, store):
        await store.set(STORAGE_KEY_CIPHERTEXT, encrypt("[1, 2, 3]", PASSWORD))
        with pytest.raises(DecryptionFailure):
            await manager.load(PASSWORD)

    @pytest.mark.asyncio
    async def test_expired_key_is_removed(self, manager, store, clock):
        """Loading an expired key reports nothing and deletes it."""
        await manager.persist(manager.generate(), PASSWORD)
        clock.now += 3601

        assert await manager.load(PASSWORD) is None
        assert STORAGE_KEY_CIPHERTEXT not in store.snapshot()
        assert STORAGE_KEY_EXPIRY not in store.snapshot()

    @pytest.mark.asyncio
    async def test_has_usable_key(self, manager, clock):
        assert await manager.has_usable_key() is False
        await manager.persist(manager.generate(), PASSWORD)
        assert await manager.has_usable_key() is True
        clock.now += 7200
        assert await manager.has_usable_key() is False


class TestRotation:
    """Tests for expiry and allowance driven rotation."""

    @pytest.mark.parametrize(
        ("elapsed", "spent", "asset", "expected"),
        [
            (0, "0", "usdc", False),
            (0, "9.99", "usdc", False),
            (0, "10", "usdc", True),
            (0, "25", "usdc", True),
            (0, "1000", "eth", False),
            (3601, "0", "usdc", True),
        ],
    )
    def test_needs_rotation(self, manager, clock, elapsed, spent, asset, expected):
        key = manager.generate()
        clock.now += elapsed
        assert manager.needs_rotation(key, spent, asset) is expected

    def test_check_allowance_raises(self, manager):
        key = manager.generate()
        with pytest.raises(AllowanceExceeded) as exc_info:
            manager.check_allowance(key, "10", "usdc")
        assert exc_info.value.asset == "usdc"
        assert exc_info.value.allowance == "10"

    @pytest.mark.asyncio
    async def test_rotate_keeps_usable_key(self, manager, store):
        key = manager.generate()
        assert await manager.rotate_if_needed(key, "1", "usdc", PASSWORD) is key
        assert store.snapshot() == {}

    @pytest.mark.asyncio
    async def test_rotate_replaces_exhausted_key(self, manager):
        key = manager.generate([{"asset": "usdc", "amount": "5"}])
        new_key = await manager.rotate_if_needed(key, "5", "usdc", PASSWORD)

        assert new_key.public_key != key.public_key
        assert new_key.allowances == key.allowances
        assert await manager.load(PASSWORD) == new_key

    @pytest.mark.asyncio
    async def test_rotate_without_key_uses_defaults(self, manager):
        new_key = await manager.rotate_if_needed(None, "0", "usdc", PASSWORD)
        assert new_key.allowances == (Allowance("usdc", "10"),)

    def test_remaining_time(self, manager, clock):
        key = manager.generate()
        assert manager.format_remaining_time(key) == "60m 0s"
        clock.now += 3600 - 45
        assert manager.format_remaining_time(key) == "45s"
        clock.now += 100
        assert manager.remaining_time(key) == 0.0
        assert manager.format_remaining_time(key) == "0s"


class TestAllowances:
    """Tests for allowance normalization."""

    def test_mixed_input(self):
        result = normalize_allowances(
            [Allowance("usdc", "1"), {"asset": "eth", "amount": 2}]
        )
        assert result == (Allowance("usdc", "1"), Allowance("eth", "2"))

    def test_duplicate_asset(self):
        with pytest.raises(ValueError, match="Duplicate"):
            normalize_allowances([Allowance("usdc", "1"), Allowance("usdc", "2")])

    @pytest.mark.parametrize("amount", ["abc", "NaN", "Infinity"])
    def test_bad_amount(self, amount):
        with pytest.raises(ValueError):
            normalize_allowances([Allowance("usdc", amount)])

    def test_session_key_dict_shape(self):
        key = SessionKey("0xaa", "0x02bb", NOW, (Allowance("usdc", "1"),))
        data = key.to_dict()
        assert set(data) == {"privateKey", "publicKey", "expiresAt", "allowances"}
        assert SessionKey.from_dict(data) == key


class TestPasswordPolicy:
    """Tests for password validation and generation."""

    @pytest.mark.parametrize(
        ("password", "message"),
        [
            ("Ab1", "Password must be at least 8 characters"),
            ("alllowercase1", "Password must contain uppercase, lowercase, and numbers"),
            ("ALLUPPERCASE1", "Password must contain uppercase, lowercase, and numbers"),
            ("NoDigitsHere", "Password must contain uppercase, lowercase, and numbers"),
        ],
    )
    def test_rejected(self, password, message):
        check = validate_password(password)
        assert check.valid is False
        assert check.message == message

    def test_accepted(self):
        check = validate_password("GoodPass123")
        assert check.valid is True
        assert check.message is None

    def test_generated_password_length(self):
        assert len(generate_password()) == 16
        assert len(generate_password(32)) == 32
