"""Challenge-response authentication against the relay.

The handshake runs request → challenge → verify → success:

    IDLE → REQUEST_SENT → CHALLENGE_RECEIVED → VERIFY_SENT → AUTHENTICATED

Any failing step lands in FAILED. Only one handshake runs at a time; a
second caller joins the one in flight instead of starting another.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from .connection import ClearnodeConnection
from .dispatch import MessageDispatcher
from .errors import (
    ChallengeTimeout,
    ClearnodeClientError,
    ClearnodeTimeout,
    InvalidChallenge,
    InvalidResponse,
    VerifyTimeout,
)
from .protocol import RequestIdGenerator, RpcResponse, build_request
from .session_key import Allowance, SessionKey

_LOGGER = logging.getLogger(__name__)

DEFAULT_APPLICATION = "YellowPay Extension"
DEFAULT_SCOPE = "content.payments"


class AuthState(Enum):
    """Handshake progress."""

    IDLE = "idle"
    REQUEST_SENT = "request_sent"
    CHALLENGE_RECEIVED = "challenge_received"
    VERIFY_SENT = "verify_sent"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthParams:
    """Parameters of one auth request, reused verbatim for the signature."""

    address: str
    application: str
    session_key: str
    allowances: tuple[Allowance, ...]
    expires_at: int
    scope: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "application": self.application,
            "session_key": self.session_key,
            "allowances": [a.to_dict() for a in self.allowances],
            "expires_at": self.expires_at,
            "scope": self.scope,
        }


class AuthSigner(Protocol):
    """Signing capability bound to the user's primary credential.

    ``sign`` receives the challenge and the original request parameters and
    returns the complete auth_verify frame (see ``build_auth_verify``). It
    may be a plain or a coroutine function.
    """

    def sign(
        self, challenge: str, params: AuthParams
    ) -> dict[str, Any] | Awaitable[dict[str, Any]]: ...


@dataclass
class AuthResult:
    """Outcome of ``authenticate``; failures carry a readable reason."""

    success: bool
    session_id: str | None = None
    balance: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.success:
            result["session_id"] = self.session_id
            result["balance"] = self.balance
        else:
            result["error"] = self.error
        return result


@dataclass
class _AuthSession:
    """Transient handshake progress for a single authenticate call."""

    params: AuthParams
    state: AuthState = AuthState.IDLE
    challenge: str | None = None


class AuthManager:
    """Drive the relay login handshake with single-flight semantics."""

    def __init__(
        self,
        connection: ClearnodeConnection,
        dispatcher: MessageDispatcher,
        request_ids: RequestIdGenerator,
        *,
        application: str = DEFAULT_APPLICATION,
        scope: str = DEFAULT_SCOPE,
        connect_timeout: float = 5.0,
        challenge_timeout: float = 10.0,
        verify_timeout: float = 10.0,
    ) -> None:
        self._connection = connection
        self._dispatcher = dispatcher
        self._request_ids = request_ids
        self._application = application
        self._scope = scope
        self._connect_timeout = connect_timeout
        self._challenge_timeout = challenge_timeout
        self._verify_timeout = verify_timeout

        self._state = AuthState.IDLE
        self._in_flight: asyncio.Task[AuthResult] | None = None
        self._session_id: str | None = None

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def in_progress(self) -> bool:
        return self._in_flight is not None

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def is_authenticated(self) -> bool:
        return (
            self._state is AuthState.AUTHENTICATED
            and self._connection.is_connected
            and not self.in_progress
        )

    async def authenticate(
        self,
        session_key: SessionKey,
        signer: AuthSigner,
        user_address: str,
    ) -> AuthResult:
        """Run the handshake, or join the one already running.

        Never raises for handshake failures; inspect ``AuthResult.error``.
        Cancelling the caller does not cancel a handshake other callers
        may be waiting on; use ``logout`` for that.
        """
        if self._in_flight is None:
            task = asyncio.create_task(
                self._perform_authentication(session_key, signer, user_address)
            )
            task.add_done_callback(self._release)
            self._in_flight = task
        else:
            _LOGGER.info("Authentication already in progress, waiting")
        return await asyncio.shield(self._in_flight)

    def _release(self, task: asyncio.Task[AuthResult]) -> None:
        if self._in_flight is task:
            self._in_flight = None

    async def logout(self) -> None:
        """Drop the relay connection and forget the authenticated session."""
        _LOGGER.info("Logging out")
        task = self._in_flight
        self._in_flight = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])
        await self._connection.disconnect()
        self._session_id = None
        self._state = AuthState.IDLE

    def _set_state(self, session: _AuthSession, state: AuthState) -> None:
        _LOGGER.debug("Auth: %s → %s", session.state.value, state.value)
        session.state = state
        self._state = state

    async def _perform_authentication(
        self,
        session_key: SessionKey,
        signer: AuthSigner,
        user_address: str,
    ) -> AuthResult:
        params = AuthParams(
            address=user_address,
            application=self._application,
            session_key=session_key.public_key,
            allowances=session_key.allowances,
            expires_at=int(session_key.expires_at),
            scope=self._scope,
        )
        session = _AuthSession(params=params)
        self._state = AuthState.IDLE
        self._session_id = None

        try:
            result = await self._run_handshake(session, signer)
        except ClearnodeClientError as err:
            self._set_state(session, AuthState.FAILED)
            _LOGGER.warning("Authentication failed: %s", err)
            return AuthResult(success=False, error=str(err))
        except asyncio.CancelledError:
            # logout() cancelled the handshake; joined callers still get a result
            self._set_state(session, AuthState.FAILED)
            return AuthResult(success=False, error="Authentication cancelled")
        except Exception as err:
            self._set_state(session, AuthState.FAILED)
            _LOGGER.exception("Authentication failed unexpectedly")
            return AuthResult(success=False, error=str(err) or "Unknown error")

        self._set_state(session, AuthState.AUTHENTICATED)
        self._session_id = result.session_id
        _LOGGER.info("Authentication successful (session %s)", result.session_id)
        return result

    async def _run_handshake(
        self, session: _AuthSession, signer: AuthSigner
    ) -> AuthResult:
        # Step 1: make sure the relay is reachable, then send auth_request
        if not self._connection.is_connected:
            _LOGGER.info("Connecting to relay before authentication")
            self._connection.start_connect()
            await self._connection.wait_until_open(self._connect_timeout)

        challenge_wait = self._dispatcher.expect("auth_challenge")
        try:
            request = build_request(
                "auth_request",
                session.params.to_wire(),
                request_id=self._request_ids.next_id(),
            )
            await self._connection.send(request)
            self._set_state(session, AuthState.REQUEST_SENT)

            # Step 2: wait for the challenge
            try:
                challenge_msg = await challenge_wait.wait(self._challenge_timeout)
            except ClearnodeTimeout as err:
                raise ChallengeTimeout(str(err)) from err
        finally:
            challenge_wait.release()

        session.challenge = self._extract_challenge(challenge_msg)
        self._set_state(session, AuthState.CHALLENGE_RECEIVED)

        # Step 3: sign with the primary credential over the original params
        verify_frame = signer.sign(session.challenge, session.params)
        if inspect.isawaitable(verify_frame):
            verify_frame = await verify_frame

        success_wait = self._dispatcher.expect("auth_success")
        try:
            await self._connection.send(verify_frame)
            self._set_state(session, AuthState.VERIFY_SENT)

            # Step 4: wait for auth_success
            try:
                success_msg = await success_wait.wait(self._verify_timeout)
            except ClearnodeTimeout as err:
                raise VerifyTimeout(str(err)) from err
        finally:
            success_wait.release()

        payload = self._require_payload(success_msg, "auth_success")
        session_id = payload.get("session_id")
        return AuthResult(
            success=True,
            session_id=str(session_id) if session_id is not None else None,
            balance=payload.get("balance"),
        )

    @staticmethod
    def _require_payload(message: Any, label: str) -> dict[str, Any]:
        if not isinstance(message, RpcResponse) or message.payload is None:
            raise InvalidResponse(f"Invalid {label} response")
        return message.payload

    @staticmethod
    def _extract_challenge(message: Any) -> str:
        if not isinstance(message, RpcResponse) or message.payload is None:
            raise InvalidChallenge("Invalid auth_challenge response")
        challenge = message.payload.get("challenge_message")
        if not isinstance(challenge, str) or not challenge:
            raise InvalidChallenge("auth_challenge is missing challenge_message")
        return challenge
