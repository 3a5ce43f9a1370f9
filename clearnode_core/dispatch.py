"""Listener registry and one-shot waits for inbound relay messages.

Handlers subscribe to a routing key (the RPC method or event type) or to
ANY_MESSAGE to observe everything. One-shot waits register a temporary
listener that is removed exactly once, whether the wait resolves, times
out, or is cancelled.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from .errors import ClearnodeTimeout
from .protocol import Envelope

_LOGGER = logging.getLogger(__name__)

ANY_MESSAGE = "message"

Handler = Callable[[Envelope], Any]


class PendingMessage:
    """A registered interest in the next message matching a predicate.

    Registration happens on construction so callers can create the wait
    before sending the request that triggers the reply.
    """

    def __init__(
        self,
        dispatcher: MessageDispatcher,
        key: str,
        predicate: Callable[[Envelope], bool],
        description: str,
    ) -> None:
        self._dispatcher = dispatcher
        self._key = key
        self._predicate = predicate
        self._description = description
        self._future: asyncio.Future[Envelope] = (
            asyncio.get_running_loop().create_future()
        )
        self._registered = True
        dispatcher.on(key, self._handle)

    def _handle(self, envelope: Envelope) -> None:
        if self._future.done() or not self._predicate(envelope):
            return
        self._future.set_result(envelope)
        self.release()

    def release(self) -> None:
        """Deregister the listener. Safe to call more than once."""
        if not self._registered:
            return
        self._registered = False
        self._dispatcher.off(self._key, self._handle)

    async def wait(self, timeout: float) -> Envelope:
        """Wait for the matching message.

        Raises:
            ClearnodeTimeout: If nothing matched within ``timeout`` seconds
        """
        try:
            return await asyncio.wait_for(self._future, timeout)
        except TimeoutError as err:
            raise ClearnodeTimeout(f"Timeout waiting for {self._description}") from err
        finally:
            self.release()


class MessageDispatcher:
    """Registry mapping routing keys to handler sets."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, key: str, handler: Handler) -> None:
        """Subscribe ``handler`` to ``key``. Re-subscribing is a no-op."""
        handlers = self._handlers.setdefault(key, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, key: str, handler: Handler) -> None:
        """Unsubscribe ``handler`` from ``key`` if present."""
        handlers = self._handlers.get(key)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._handlers[key]

    def listener_count(self, key: str) -> int:
        return len(self._handlers.get(key, ()))

    def dispatch(self, envelope: Envelope) -> None:
        """Fan an envelope out to its routing key, then to ANY_MESSAGE.

        A failing handler is logged and does not stop the others.
        """
        key = envelope.routing_key
        targets = list(self._handlers.get(key, ()))
        if key != ANY_MESSAGE:
            targets.extend(self._handlers.get(ANY_MESSAGE, ()))

        for handler in targets:
            try:
                result = handler(envelope)
            except Exception:
                _LOGGER.exception("Error in message handler for %s", key)
                continue
            if inspect.isawaitable(result):
                self._track(result, key)

    def _track(self, awaitable: Any, key: str) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            err = finished.exception()
            if err is not None:
                _LOGGER.error(
                    "Error in async message handler for %s: %s",
                    key,
                    err,
                    exc_info=err,
                )

        task.add_done_callback(_done)

    def expect(self, key: str) -> PendingMessage:
        """Register a one-shot wait for the next message routed to ``key``."""
        return PendingMessage(self, key, lambda _envelope: True, key)

    def expect_correlated(self, request_id: int) -> PendingMessage:
        """Register a one-shot wait for the response carrying ``request_id``."""
        return PendingMessage(
            self,
            ANY_MESSAGE,
            lambda envelope: envelope.request_id == request_id,
            f"response to request {request_id}",
        )

    async def wait_for(self, key: str, timeout: float) -> Envelope:
        """Resolve with the next message routed to ``key``."""
        return await self.expect(key).wait(timeout)

    async def wait_for_correlated(self, request_id: int, timeout: float) -> Envelope:
        """Resolve with the next message whose request id equals ``request_id``."""
        return await self.expect_correlated(request_id).wait(timeout)

    def clear(self) -> None:
        self._handlers.clear()
