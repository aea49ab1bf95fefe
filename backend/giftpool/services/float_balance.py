import asyncio
import logging
from datetime import datetime

from giftpool.core.balance_cache import BalanceCache, balance_cache
from giftpool.core.config import settings
from giftpool.core.errors import UpstreamUnavailable
from giftpool.integrations.reloadly import FloatBalance, FloatBalanceGateway, reloadly_client


logger = logging.getLogger("giftpool.float_balance")


class CachedFloatBalanceGateway:
    """Freshness-bounded read of the gift card float.

    A snapshot younger than ``max_age_seconds`` is served as is. Anything
    older is refreshed from upstream; if that refresh fails the old value is
    dropped and ``UpstreamUnavailable`` propagates, so callers never decide
    eligibility on a stale number.
    """

    def __init__(
        self,
        upstream: FloatBalanceGateway,
        cache: BalanceCache,
        max_age_seconds: int | None = None,
    ) -> None:
        self._upstream = upstream
        self._cache = cache
        self._max_age = max_age_seconds if max_age_seconds is not None else settings.float_balance_max_age_seconds
        self._refresh_lock = asyncio.Lock()

    def _is_fresh(self, balance: FloatBalance, now: datetime | None = None) -> bool:
        return balance.age_seconds(now) <= self._max_age

    async def _cached(self) -> FloatBalance | None:
        snapshot = await self._cache.get_snapshot()
        if not snapshot:
            return None
        try:
            balance = FloatBalance.from_snapshot(snapshot)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding malformed float snapshot keys=%s", sorted(snapshot))
            return None
        return balance if self._is_fresh(balance) else None

    async def get_balance(self) -> FloatBalance:
        cached = await self._cached()
        if cached is not None:
            return cached
        async with self._refresh_lock:
            # another request may have refreshed while we waited
            cached = await self._cached()
            if cached is not None:
                return cached
            return await self.refresh()

    async def refresh(self) -> FloatBalance:
        try:
            balance = await self._upstream.get_balance()
        except UpstreamUnavailable:
            await self._cache.invalidate()
            raise
        await self._cache.set_snapshot(balance.to_snapshot(), ttl=max(1, int(self._max_age)))
        return balance


float_gateway = CachedFloatBalanceGateway(reloadly_client, balance_cache)
