"""Cryptographic helpers for session keys.

This module provides:
- secp256k1 session keypairs identified by their Ethereum address
- Password-based encryption (scrypt + AES-256-GCM) for keys at rest
"""

from __future__ import annotations

import base64
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from eth_account import Account

from .errors import DecryptionFailure

_BLOB_VERSION = 1
_SALT_SIZE = 16
_NONCE_SIZE = 12
_KEY_SIZE = 32

# scrypt cost parameters (interactive profile)
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


@dataclass(frozen=True)
class KeyPair:
    """secp256k1 keypair.

    ``public_key`` is the EIP-55 checksummed address the relay knows the
    key by.
    """

    private_key: str
    public_key: str

    @property
    def public_key_short(self) -> str:
        """Shortened address for display."""
        return f"{self.public_key[:10]}...{self.public_key[-8:]}"


def generate_keypair() -> KeyPair:
    """Generate a fresh secp256k1 keypair.

    Returns:
        KeyPair with the 0x-prefixed private scalar and its address
    """
    private_key = ec.generate_private_key(ec.SECP256K1())
    scalar = private_key.private_numbers().private_value.to_bytes(32, "big")
    return KeyPair(private_key="0x" + scalar.hex(), public_key=address_of(scalar))


def address_of(private_key: bytes | str) -> str:
    """Checksummed Ethereum address controlled by a secp256k1 private key."""
    return Account.from_key(private_key).address


def _derive_key(password: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=_KEY_SIZE, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(password.encode("utf-8"))


def encrypt(plaintext: str, password: str) -> str:
    """Encrypt text under a password.

    A fresh salt and nonce are drawn for every call, so encrypting the same
    text twice yields different blobs.

    Returns:
        Base64 text blob: version byte, salt, nonce, ciphertext+tag
    """
    salt = os.urandom(_SALT_SIZE)
    nonce = os.urandom(_NONCE_SIZE)
    key = _derive_key(password, salt)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    blob = bytes([_BLOB_VERSION]) + salt + nonce + ciphertext
    return base64.b64encode(blob).decode("ascii")


def decrypt(blob: str, password: str) -> str:
    """Decrypt a blob produced by :func:`encrypt`.

    Raises:
        DecryptionFailure: Wrong password, tampered or malformed blob
    """
    try:
        raw = base64.b64decode(blob.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError) as err:
        raise DecryptionFailure("Stored data is not valid base64") from err

    header = 1 + _SALT_SIZE + _NONCE_SIZE
    if len(raw) <= header or raw[0] != _BLOB_VERSION:
        raise DecryptionFailure("Stored data has an unsupported format")

    salt = raw[1 : 1 + _SALT_SIZE]
    nonce = raw[1 + _SALT_SIZE : header]
    key = _derive_key(password, salt)
    try:
        plaintext = AESGCM(key).decrypt(nonce, raw[header:], None)
    except InvalidTag as err:
        raise DecryptionFailure("Wrong password or corrupt data") from err

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as err:
        raise DecryptionFailure("Decrypted data is not text") from err
