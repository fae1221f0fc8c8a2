"""Paged, resumable download of the aggregator token catalogue."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from aggregator.client import AggregatorError, AggregatorUnavailable, KyberSwapClient
from autosell.jobs import ExistingJobPolicy, Job, JobOutcome, JobStatus, SqlJobQueue
from core.models import TokenInfo, TokenPage

from .store import CheckpointStore, TokenStore

logger = logging.getLogger(__name__)

SYNC_JOB_KEY = "token_sync_work"
SYNC_JOB_KIND = "token_sync"

PAGE_SIZE = 100
MIN_TVL = 10_000
SORT_ORDER = "tvl_desc"
DEFAULT_TOTAL_PAGES = 3218
INITIAL_PAGES = 50
INITIAL_BUDGET_SECONDS = 5.0
BATCH_PAGES = 100
PAGE_ATTEMPTS = 3
PAGE_DELAY_SECONDS = 0.1
MAX_BATCH_RUNS = 3
BATCH_BACKOFF_SECONDS = 30.0
STALE_AFTER_SECONDS = 60 * 60.0

_FETCH_ERRORS = (AggregatorError, AggregatorUnavailable)


class TokenSyncEngine:
    """
    Full catalogue sync.

    Pages inside a batch are fetched one after another with a short pause;
    each page has its own retry. A batch is written in one bulk upsert and
    only then checkpointed. Later batches run as a chain of durable jobs
    under one key, so only one sync is ever in progress.
    """

    def __init__(
        self,
        api: KyberSwapClient,
        tokens: TokenStore,
        checkpoints: CheckpointStore,
        queue: Optional[SqlJobQueue] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        initial_pages: int = INITIAL_PAGES,
        initial_budget: float = INITIAL_BUDGET_SECONDS,
        batch_pages: int = BATCH_PAGES,
    ):
        self.api = api
        self.tokens = tokens
        self.checkpoints = checkpoints
        self.queue = queue
        self._sleep = sleep
        self._clock = clock
        self.initial_pages = initial_pages
        self.initial_budget = initial_budget
        self.batch_pages = batch_pages

    # ── pages ─────────────────────────────────────────────────

    async def fetch_page(self, page: int) -> TokenPage:
        """One page with linear backoff; the last error is re-raised."""
        for attempt in range(PAGE_ATTEMPTS):
            try:
                return await asyncio.to_thread(
                    self.api.get_tokens, page, PAGE_SIZE, MIN_TVL, SORT_ORDER
                )
            except _FETCH_ERRORS as exc:
                if attempt == PAGE_ATTEMPTS - 1:
                    raise
                wait = 1.0 * (attempt + 1)
                logger.warning("token page %d failed (%s), retrying in %.0fs", page, exc, wait)
                await self._sleep(wait)
        raise AssertionError("unreachable")

    async def sync_batch(self, start_page: int, end_page: int, generation: int) -> int:
        """
        Fetch ``start_page..end_page`` and store the valid tokens.

        Returns the number of tokens written. A batch from an older
        generation writes nothing. Stops early on an empty page.
        """
        state = self.checkpoints.load()
        if generation != state.generation:
            logger.info("dropping token batch from generation %d", generation)
            return 0

        total_pages = state.total_pages or DEFAULT_TOTAL_PAGES
        collected: list[TokenInfo] = []
        last_page = start_page - 1
        for page in range(start_page, end_page + 1):
            if page > total_pages:
                break
            if page > start_page:
                await self._sleep(PAGE_DELAY_SECONDS)
            result = await self.fetch_page(page)
            if result.total_pages:
                total_pages = result.total_pages
            if not result.tokens:
                total_pages = min(total_pages, page - 1) if page > 1 else 0
                break
            collected.extend(token for token in result.tokens if token.is_valid)
            last_page = page

        written = self.tokens.upsert_many(collected, generation)
        complete = last_page >= total_pages
        self.checkpoints.save_progress(
            last_page_synced=last_page,
            total_pages=total_pages,
            current_batch=state.current_batch + 1,
            generation=generation,
            timestamp=self._clock() if complete else None,
        )
        logger.info(
            "token pages %d-%d synced: %d tokens (%d/%d pages)",
            start_page,
            last_page,
            written,
            last_page,
            total_pages,
        )
        return written

    # ── orchestration ─────────────────────────────────────────

    def should_sync(self, now: Optional[float] = None) -> bool:
        if self.tokens.count() == 0:
            return True
        state = self.checkpoints.load()
        if not state.is_complete:
            return True
        return self.tokens.is_stale(STALE_AFTER_SECONDS, now)

    async def start_full_sync(self) -> int:
        """
        Begin a new generation: sync the first pages inline within a time
        budget, then hand the rest to the job queue. A sync already queued
        is left to finish.
        """
        if self.queue is not None:
            active = self.queue.get(SYNC_JOB_KEY)
            if active is not None and active.status in (JobStatus.ENQUEUED, JobStatus.RUNNING):
                logger.info("token sync already in progress")
                return self.checkpoints.load().generation
        generation = self.checkpoints.next_generation()
        try:
            await asyncio.wait_for(
                self.sync_batch(1, self.initial_pages, generation),
                timeout=self.initial_budget,
            )
        except asyncio.TimeoutError:
            logger.warning("initial token batch exceeded %.1fs budget", self.initial_budget)
        except _FETCH_ERRORS as exc:
            logger.warning("initial token batch failed: %s", exc)
        self._enqueue_next(generation, ExistingJobPolicy.KEEP)
        return generation

    async def force_sync(self) -> int:
        self.checkpoints.reset()
        if self.queue is not None:
            self.queue.cancel(SYNC_JOB_KEY)
        return await self.start_full_sync()

    async def sync_all(self) -> int:
        """Run a whole generation inline, batch by batch."""
        generation = self.checkpoints.next_generation()
        written = 0
        while True:
            state = self.checkpoints.load()
            if state.is_complete:
                break
            start = state.last_page_synced + 1
            written += await self.sync_batch(start, start + self.batch_pages - 1, generation)
        return written

    async def handle_batch(self, job: Job) -> JobOutcome:
        """Job handler for ``token_sync`` batches."""
        payload = job.payload
        generation = int(payload["generation"])
        start = int(payload["start_page"])
        end = int(payload["end_page"])
        try:
            await self.sync_batch(start, end, generation)
        except _FETCH_ERRORS as exc:
            if job.attempts + 1 >= MAX_BATCH_RUNS:
                logger.error("token batch %d-%d gave up: %s", start, end, exc)
                return JobOutcome.FAILURE
            return JobOutcome.RETRY
        # Replacing our own running job chains the next batch.
        self._enqueue_next(generation, ExistingJobPolicy.REPLACE)
        return JobOutcome.SUCCESS

    def _enqueue_next(self, generation: int, policy: ExistingJobPolicy) -> Optional[str]:
        state = self.checkpoints.load()
        if self.queue is None or state.generation != generation:
            return None
        if state.is_complete:
            logger.info("token sync generation %d complete", generation)
            return None
        start = state.last_page_synced + 1
        return self.queue.enqueue(
            SYNC_JOB_KEY,
            SYNC_JOB_KIND,
            {
                "generation": generation,
                "start_page": start,
                "end_page": start + self.batch_pages - 1,
            },
            policy=policy,
            backoff_seconds=BATCH_BACKOFF_SECONDS,
        )
