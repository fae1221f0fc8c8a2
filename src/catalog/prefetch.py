"""Quick first-page catalogue load and popular-quote warm-up."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Awaitable, Callable, Optional

from aggregator.client import AggregatorError, AggregatorUnavailable, KyberSwapClient
from aggregator.quotes import QuoteService
from core.concurrency import gather_settled
from core.models import TokenPage

from .store import TokenStore
from .sync import MIN_TVL, PAGE_SIZE, SORT_ORDER

logger = logging.getLogger(__name__)

FRESHNESS_SECONDS = 5 * 60.0
MAX_PREFETCH_PAGES = 20
PAGE_CONCURRENCY = 4
PAGE_RETRIES = 2
REQUEST_DELAY_SECONDS = 0.1
SKIP_MULTI_PAGE_AT = 2000


class PrefetchStatus(Enum):
    LOADED = auto()
    FRESH = auto()  # catalogue refreshed within the freshness window
    SKIPPED = auto()  # another prefetch is running
    FAILED = auto()


@dataclass(frozen=True)
class PrefetchReport:
    status: PrefetchStatus
    tokens_loaded: int = 0
    quotes_loaded: int = 0
    error: Optional[str] = None


class PrefetchManager:
    """
    Single-flight warm-up for the token picker.

    Only one prefetch runs at a time; a concurrent caller gets ``SKIPPED``
    instead of waiting. Token and quote loads run side by side and a
    failure in one does not stop the other.
    """

    def __init__(
        self,
        api: KyberSwapClient,
        tokens: TokenStore,
        quotes: Optional[QuoteService] = None,
        chain_id: int = 1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api = api
        self.tokens = tokens
        self.quotes = quotes
        self.chain_id = chain_id
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self.is_loading = False

    async def prefetch(self, pages: int = 1) -> PrefetchReport:
        if self.is_loading or self._lock.locked():
            logger.debug("prefetch already running")
            return PrefetchReport(PrefetchStatus.SKIPPED)
        async with self._lock:
            self.is_loading = True
            try:
                return await self._prefetch(pages)
            finally:
                self.is_loading = False

    async def _prefetch(self, pages: int) -> PrefetchReport:
        if not self.tokens.is_stale(FRESHNESS_SECONDS):
            logger.info("token catalogue fresh, prefetch skipped")
            return PrefetchReport(PrefetchStatus.FRESH)
        if self.tokens.count():
            self.tokens.clear()

        branches: dict[str, Awaitable] = {"tokens": self._load_tokens(pages)}
        if self.quotes is not None:
            branches["quotes"] = self.quotes.prefetch_popular(self.chain_id)
        outcome = await gather_settled(branches, defaults={"tokens": 0, "quotes": 0})

        tokens_loaded = outcome.values.get("tokens") or 0
        quotes_loaded = outcome.values.get("quotes") or 0
        if "tokens" in outcome.errors:
            return PrefetchReport(
                PrefetchStatus.FAILED,
                tokens_loaded,
                quotes_loaded,
                error=outcome.error_note(),
            )
        logger.info("prefetched %d tokens, %d quotes", tokens_loaded, quotes_loaded)
        return PrefetchReport(PrefetchStatus.LOADED, tokens_loaded, quotes_loaded)

    async def _load_tokens(self, pages: int) -> int:
        first = await self._fetch(1)
        loaded = self.tokens.upsert_many(first.tokens)
        last_page = min(pages, MAX_PREFETCH_PAGES)
        if first.total_pages:
            last_page = min(last_page, first.total_pages)
        if last_page < 2 or self.tokens.count() >= SKIP_MULTI_PAGE_AT:
            return loaded

        semaphore = asyncio.Semaphore(PAGE_CONCURRENCY)

        async def load(page: int) -> TokenPage:
            await self._sleep(REQUEST_DELAY_SECONDS)
            async with semaphore:
                return await self._fetch(page, retries=PAGE_RETRIES)

        outcome = await gather_settled(
            {str(page): load(page) for page in range(2, last_page + 1)}
        )
        for result in outcome.values.values():
            if result is not None:
                loaded += self.tokens.upsert_many(result.tokens)
        return loaded

    async def _fetch(self, page: int, retries: int = 0) -> TokenPage:
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(
                    self.api.get_tokens, page, PAGE_SIZE, MIN_TVL, SORT_ORDER
                )
            except (AggregatorError, AggregatorUnavailable):
                if attempt >= retries:
                    raise
                attempt += 1
                await self._sleep(REQUEST_DELAY_SECONDS * attempt)
