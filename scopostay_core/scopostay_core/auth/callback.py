"""Waiting for the identity provider's sign-in round trip.

After an email-confirmation or OAuth redirect the session arrives
asynchronously.  :func:`wait_for_session` subscribes once, resolves on the
first signed-in notification (or on an already-present session) and gives
up after a bounded timeout.  The subscription is always released.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

from scopostay_core.billing.errors import AuthError

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
DEFAULT_CALLBACK_TIMEOUT_SECONDS = 10.0

SessionT = TypeVar("SessionT")

AuthListener = Callable[[str, Any], None]
Unsubscribe = Callable[[], None]


class _FirstSession(Generic[SessionT]):
    """Listener that completes a future on the first signed-in event."""

    def __init__(self, future: asyncio.Future[SessionT]) -> None:
        self._future = future

    def __call__(self, event: str, session: SessionT | None) -> None:
        if event != SIGNED_IN or session is None:
            logger.debug("Ignoring auth event %s while awaiting sign-in", event)
            return
        if not self._future.done():
            self._future.set_result(session)


async def wait_for_session(
    subscribe: Callable[[AuthListener], Unsubscribe],
    *,
    timeout: float = DEFAULT_CALLBACK_TIMEOUT_SECONDS,
    current_session: Callable[[], Awaitable[SessionT | None]] | None = None,
    callback_error: str | None = None,
) -> SessionT:
    """Wait for the identity provider to deliver a session.

    Parameters
    ----------
    subscribe:
        Registers a ``(event, session)`` listener with the auth client and
        returns a function that removes it.  Listeners may be invoked from
        the event loop thread only.
    timeout:
        Seconds to wait before failing with :class:`AuthError`.
    current_session:
        Optional coroutine returning an already-established session.  It is
        checked after subscribing so a sign-in racing the check is not lost.
    callback_error:
        ``error_description`` reported on the callback URL; fails fast.

    Raises
    ------
    AuthError
        On provider-reported errors or when no session arrives in time.
    """
    if callback_error:
        raise AuthError(callback_error)

    loop = asyncio.get_running_loop()
    future: asyncio.Future[SessionT] = loop.create_future()
    unsubscribe = subscribe(_FirstSession(future))
    try:
        if current_session is not None:
            existing = await current_session()
            if existing is not None and not future.done():
                future.set_result(existing)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError as exc:
            logger.warning("Auth callback timed out after %.1fs", timeout)
            raise AuthError(
                "Authentication is taking longer than expected. Please sign in again."
            ) from exc
    finally:
        unsubscribe()
        if not future.done():
            future.cancel()
