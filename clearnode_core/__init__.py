"""Client-side protocol stack for the Yellow Network Clearnode relay."""

__version__ = "0.1.0"

from .auth import AuthManager, AuthParams, AuthResult, AuthSigner, AuthState
from .balance import BalanceCache, BalanceEntry, format_balance, parse_balance
from .client import ClearnodeClient
from .config import ClientConfig, load_config
from .connection import ClearnodeConnection, ConnectionState
from .dispatch import ANY_MESSAGE, MessageDispatcher, PendingMessage
from .errors import (
    AllowanceExceeded,
    ChallengeTimeout,
    ClearnodeClientError,
    ClearnodeConnectionError,
    ClearnodeHandshakeError,
    ClearnodeTimeout,
    ConfigLoadError,
    ConnectionTimeout,
    DecryptionFailure,
    InvalidChallenge,
    InvalidResponse,
    MaxReconnectAttemptsExceeded,
    VerifyTimeout,
)
from .protocol import (
    RequestIdGenerator,
    RpcRequest,
    RpcResponse,
    TypedEvent,
    build_auth_verify,
    build_request,
    parse_envelope,
)
from .purchases import PurchaseLedger, UnlockRecord
from .session_key import (
    Allowance,
    SessionKey,
    SessionKeyManager,
    generate_password,
    validate_password,
)
from .storage import JsonFileStore, KeyValueStore, MemoryStore

__all__ = [
    "ANY_MESSAGE",
    "AllowanceExceeded",
    "Allowance",
    "AuthManager",
    "AuthParams",
    "AuthResult",
    "AuthSigner",
    "AuthState",
    "BalanceCache",
    "BalanceEntry",
    "ChallengeTimeout",
    "ClearnodeClient",
    "ClearnodeClientError",
    "ClearnodeConnection",
    "ClearnodeConnectionError",
    "ClearnodeHandshakeError",
    "ClearnodeTimeout",
    "ClientConfig",
    "ConfigLoadError",
    "ConnectionState",
    "ConnectionTimeout",
    "DecryptionFailure",
    "InvalidChallenge",
    "InvalidResponse",
    "JsonFileStore",
    "KeyValueStore",
    "MaxReconnectAttemptsExceeded",
    "MemoryStore",
    "MessageDispatcher",
    "PendingMessage",
    "PurchaseLedger",
    "RequestIdGenerator",
    "RpcRequest",
    "RpcResponse",
    "SessionKey",
    "SessionKeyManager",
    "TypedEvent",
    "UnlockRecord",
    "VerifyTimeout",
    "__version__",
    "build_auth_verify",
    "build_request",
    "format_balance",
    "generate_password",
    "load_config",
    "parse_balance",
    "parse_envelope",
    "validate_password",
]
