"""Client error types for Clearnode relay interactions."""

from __future__ import annotations


class ClearnodeClientError(Exception):
    """Base error for Clearnode client failures."""


class ClearnodeTimeout(ClearnodeClientError):
    """Timeout while communicating with the relay."""


class ClearnodeConnectionError(ClearnodeClientError):
    """Network connection to the relay failed."""


class ClearnodeHandshakeError(ClearnodeClientError):
    """WebSocket handshake failed."""


class ConnectionTimeout(ClearnodeTimeout):
    """The relay connection did not open within the allotted time."""


class ChallengeTimeout(ClearnodeTimeout):
    """No auth_challenge arrived after the auth request."""


class VerifyTimeout(ClearnodeTimeout):
    """No auth_success arrived after the verification was sent."""


class InvalidResponse(ClearnodeClientError):
    """A relay response was missing required fields."""


class InvalidChallenge(InvalidResponse):
    """The auth_challenge payload did not carry a challenge."""


class DecryptionFailure(ClearnodeClientError):
    """Stored ciphertext could not be decrypted (wrong password or corrupt data)."""


class AllowanceExceeded(ClearnodeClientError):
    """Spend under a session key reached its allowance for an asset."""

    def __init__(self, asset: str, spent: str, allowance: str) -> None:
        super().__init__(f"Allowance exceeded for {asset}: {spent} >= {allowance}")
        self.asset = asset
        self.spent = spent
        self.allowance = allowance


class MaxReconnectAttemptsExceeded(ClearnodeConnectionError):
    """The transport gave up reconnecting."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Max reconnection attempts reached ({attempts})")
        self.attempts = attempts


class ConfigLoadError(ClearnodeClientError):
    """Client configuration could not be loaded."""
