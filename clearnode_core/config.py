"""Client configuration.

Defaults target the public sandbox relay. A YAML file can override any
field; keys that are not recognised are ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigLoadError
from .session_key import Allowance, normalize_allowances

_LOGGER = logging.getLogger(__name__)

CLEARNODE_WS_URL = "wss://clearnet-sandbox.yellow.com/ws"
SUPPORTED_ASSETS: tuple[str, ...] = ("ytest.usd", "usdc")


@dataclass(frozen=True)
class ClientConfig:
    """Tunables for a ClearnodeClient.

    Attributes:
        ws_url: Relay WebSocket endpoint.
        application: Application name announced during auth.
        scope: Permission scope requested during auth.
        retry_base_delay: Reconnect backoff base (seconds).
        retry_max_delay: Reconnect backoff cap (seconds).
        max_reconnect_attempts: Reconnect attempts before giving up.
        max_queue_size: Outbound queue bound (None for unbounded).
        ping_interval: WebSocket keepalive ping interval (seconds).
        connect_timeout: Wait for the connection to open during auth (seconds).
        challenge_timeout: Wait for auth_challenge (seconds).
        verify_timeout: Wait for auth_success (seconds).
        balance_ttl: Balance cache freshness window (seconds).
        balance_request_timeout: Wait for a balance response (seconds).
        decimals: Display precision for formatted balances.
        session_key_duration: Session key lifetime (seconds).
        default_allowances: Allowances for keys created without any.
        supported_assets: Assets the client offers to query.
        auto_approve: Approve small unlocks without prompting.
        max_auto_approve_amount: Ceiling for auto-approval (display units).
        default_unlock_expiry: Lifetime of an unlock record (seconds).
        debug_mode: Verbose client diagnostics.
    """

    ws_url: str = CLEARNODE_WS_URL
    application: str = "YellowPay Extension"
    scope: str = "content.payments"
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    max_reconnect_attempts: int = 10
    max_queue_size: int | None = 1024
    ping_interval: int | None = 20
    connect_timeout: float = 5.0
    challenge_timeout: float = 10.0
    verify_timeout: float = 10.0
    balance_ttl: float = 30.0
    balance_request_timeout: float = 10.0
    decimals: int = 6
    session_key_duration: float = 3600.0
    default_allowances: tuple[Allowance, ...] = (Allowance("ytest.usd", "100"),)
    supported_assets: tuple[str, ...] = SUPPORTED_ASSETS
    auto_approve: bool = False
    max_auto_approve_amount: str = "1.00"
    default_unlock_expiry: float = 86400.0
    debug_mode: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClientConfig:
        """Build a config from plain data, falling back to defaults."""
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                _LOGGER.debug("Ignoring unknown config key: %s", key)
                continue
            values[key] = value

        if "default_allowances" in values:
            values["default_allowances"] = normalize_allowances(
                values["default_allowances"] or []
            )
        if "supported_assets" in values:
            values["supported_assets"] = tuple(values["supported_assets"] or ())
        if values.get("max_auto_approve_amount") is not None:
            values["max_auto_approve_amount"] = str(values["max_auto_approve_amount"])
        return cls(**values)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file with error handling."""
    if not path.exists():
        raise ConfigLoadError(f"File not found: {path}")
    with path.open() as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as err:
            raise ConfigLoadError(f"Invalid YAML in {path}") from err
    if not isinstance(data, dict):
        raise ConfigLoadError(f"Expected a mapping in {path}")
    return data


def load_config(path: Path | str) -> ClientConfig:
    """Load a ClientConfig from a YAML file.

    Raises:
        ConfigLoadError: If the file is missing, unreadable or invalid
    """
    data = _load_yaml(Path(path))
    try:
        return ClientConfig.from_dict(data)
    except (TypeError, ValueError, KeyError) as err:
        raise ConfigLoadError(f"Invalid configuration in {path}: {err}") from err
