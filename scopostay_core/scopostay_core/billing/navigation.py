"""Client-side billing state cache and navigation controller.

Billing state is held in an explicit :class:`BillingStateCache` owned by
whoever drives navigation, never in a process-wide global.  Every
navigation invalidates the cache, fetches fresh state, evaluates access
and gates the route, so a webhook that lands while the client is idle is
picked up on the very next navigation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from scopostay_core.billing.access import AccessDecision, evaluate_access
from scopostay_core.billing.models import TenantBillingSnapshot
from scopostay_core.billing.route_gate import GateResult, GateRole, gate_route

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BillingView:
    """What the client knows about the signed-in user and their tenant."""

    role: GateRole
    snapshot: TenantBillingSnapshot


StateFetcher = Callable[[], Awaitable[BillingView]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BillingStateCache:
    """Holds the last fetched :class:`BillingView` with explicit invalidation.

    Parameters
    ----------
    fetcher:
        Coroutine function returning fresh billing state.
    max_age:
        Cached state older than this is refetched on the next read.
    clock:
        Time source, injectable for tests.
    """

    def __init__(
        self,
        fetcher: StateFetcher,
        *,
        max_age: timedelta = timedelta(seconds=60),
        clock: Clock = _utcnow,
    ) -> None:
        self._fetcher = fetcher
        self._max_age = max_age
        self._clock = clock
        self._view: BillingView | None = None
        self._fetched_at: datetime | None = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> BillingView | None:
        return self._view

    def is_fresh(self) -> bool:
        if self._view is None or self._fetched_at is None:
            return False
        return self._clock() - self._fetched_at < self._max_age

    def invalidate(self) -> None:
        self._view = None
        self._fetched_at = None

    async def get(self) -> BillingView:
        """Return cached state, fetching it first if absent or stale.

        Concurrent callers share a single in-flight fetch.
        """
        if self.is_fresh():
            assert self._view is not None
            return self._view
        async with self._lock:
            if self.is_fresh():
                assert self._view is not None
                return self._view
            view = await self._fetcher()
            self._view = view
            self._fetched_at = self._clock()
            return view

    async def refresh(self) -> BillingView:
        self.invalidate()
        return await self.get()

    async def on_focus(self) -> BillingView:
        """Window regained focus: state may have changed while hidden."""
        return await self.refresh()


class NavigationController:
    """Evaluates the route gate on every navigation against fresh state."""

    def __init__(self, cache: BillingStateCache, *, clock: Clock = _utcnow) -> None:
        self._cache = cache
        self._clock = clock
        self.last_decision: AccessDecision | None = None

    async def navigate(self, path: str) -> GateResult:
        """Resolve the destination for a navigation to *path*.

        A failed state fetch is treated as not authenticated.
        """
        self._cache.invalidate()
        try:
            view = await self._cache.get()
        except Exception:
            logger.warning("Billing state fetch failed; treating navigation to %s as signed out", path, exc_info=True)
            self.last_decision = None
            return gate_route(path, authenticated=False)

        decision = evaluate_access(view.snapshot, self._clock())
        self.last_decision = decision
        result = gate_route(path, authenticated=True, role=view.role, decision=decision)
        if result.redirected:
            logger.info(
                "Navigation to %s redirected to %s (%s)",
                path,
                result.destination,
                result.reason.value,
            )
        return result
