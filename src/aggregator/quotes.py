"""Read-through quote and route caching over the aggregator client."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Optional

from chain.networks import network_for
from core.base_types import NATIVE_TOKEN_ADDRESS
from core.cache import TTLCache, cache_key
from core.concurrency import gather_settled
from core.models import Quote, RouteSummary

from .client import KyberSwapClient

logger = logging.getLogger(__name__)

PRELOAD_AMOUNT = 10**17


def popular_pairs(chain_id: int) -> list[tuple[str, str, int]]:
    network = network_for(chain_id)
    pairs: list[tuple[str, str, int]] = []
    if network.stablecoin:
        pairs.append((NATIVE_TOKEN_ADDRESS, network.stablecoin, PRELOAD_AMOUNT))
        pairs.append((network.stablecoin, NATIVE_TOKEN_ADDRESS, PRELOAD_AMOUNT))
    if network.wrapped_native:
        pairs.append((NATIVE_TOKEN_ADDRESS, network.wrapped_native, PRELOAD_AMOUNT))
    return pairs


class QuoteService:
    """
    Routes and quotes with a short TTL.

    Entries are keyed per chain. A cache hit past its TTL is treated as a
    miss and refetched; nothing stale is served.
    """

    def __init__(
        self,
        api: KyberSwapClient,
        route_cache: Optional[TTLCache[RouteSummary]] = None,
        quote_cache: Optional[TTLCache[Quote]] = None,
    ):
        self._api = api
        self._routes = route_cache or TTLCache(lambda r: r.key, name="route-cache")
        self._quotes = quote_cache or TTLCache(lambda q: q.key, name="quote-cache")

    @property
    def route_cache(self) -> TTLCache[RouteSummary]:
        return self._routes

    @property
    def quote_cache(self) -> TTLCache[Quote]:
        return self._quotes

    async def get_route(
        self,
        chain_id: int,
        token_in: str,
        token_out: str,
        amount_in: int,
        force_refresh: bool = False,
    ) -> RouteSummary:
        key = cache_key(chain_id, token_in, token_out, amount_in)
        if not force_refresh:
            cached = self._routes.get(key)
            if cached is not None and not cached.is_expired():
                return cached
        network = network_for(chain_id)
        route = await asyncio.to_thread(
            self._api.get_routes, network.name, token_in, token_out, amount_in
        )
        route = replace(route, chain_id=chain_id)
        self._routes.put(route)
        self._quotes.put(route.to_quote())
        logger.debug("route %s amount_out=%s", key, route.amount_out)
        return route

    async def get_quote(
        self, chain_id: int, token_in: str, token_out: str, amount_in: int
    ) -> Quote:
        cached = self._quotes.get(cache_key(chain_id, token_in, token_out, amount_in))
        if cached is not None and not cached.is_expired():
            return cached
        route = await self.get_route(chain_id, token_in, token_out, amount_in)
        return route.to_quote()

    def invalidate(
        self, chain_id: int, token_in: str, token_out: str, amount_in: int
    ) -> None:
        key = cache_key(chain_id, token_in, token_out, amount_in)
        self._routes.invalidate(key)
        self._quotes.invalidate(key)

    def clear(self) -> None:
        self._routes.clear()
        self._quotes.clear()

    async def prefetch_popular(self, chain_id: int) -> int:
        """Warm the caches for common pairs; returns how many succeeded."""
        pairs = popular_pairs(chain_id)
        outcome = await gather_settled(
            {
                cache_key(chain_id, token_in, token_out, amount): self.get_route(
                    chain_id, token_in, token_out, amount
                )
                for token_in, token_out, amount in pairs
            }
        )
        if outcome.errors:
            logger.warning("quote prefetch partial: %s", outcome.error_note())
        return len(pairs) - len(outcome.errors)
