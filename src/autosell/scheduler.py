"""Schedule, cancel and retry auto-sell jobs for held purchases."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from core.results import Err, FailureCategory, Ok, Result
from ledger.base import Ledger
from ledger.models import (
    ACTIVE_STATUSES,
    CANCELLABLE_STATUSES,
    DuplicatePurchase,
    Purchase,
    PurchaseStatus,
)

from .jobs import ExistingJobPolicy, JobStatus, SqlJobQueue

logger = logging.getLogger(__name__)

AUTO_SELL_JOB_KIND = "auto_sell"
AUTO_SELL_TAG = "auto_sell"
DEFAULT_AUTO_SELL_DELAY_SECONDS = 24 * 60 * 60.0
AUTO_SELL_BACKOFF_SECONDS = 15 * 60.0

_RETRYABLE_FROM = frozenset(
    {
        PurchaseStatus.PENDING,
        PurchaseStatus.HELD,
        PurchaseStatus.RETRYING,
        PurchaseStatus.SELLING,
    }
)


def job_key(tx_hash: str) -> str:
    return f"auto_sell_{tx_hash}"


class AutoSellScheduler:
    """
    One durable job per purchase, keyed by the buy transaction hash.

    Re-scheduling the same purchase replaces its pending job, so there is
    never more than one auto-sell queued for a purchase.
    """

    def __init__(
        self,
        ledger: Ledger,
        queue: SqlJobQueue,
        default_delay_seconds: float = DEFAULT_AUTO_SELL_DELAY_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.queue = queue
        self.default_delay_seconds = default_delay_seconds
        self._clock = clock

    def schedule(self, tx_hash: str, delay: Optional[float] = None) -> str:
        """Enqueue the sell job; delay defaults to the time left on the purchase."""
        if delay is None:
            purchase = self.ledger.get(tx_hash)
            delay = (
                purchase.time_until_auto_sell(self._clock())
                if purchase is not None
                else self.default_delay_seconds
            )
        key = job_key(tx_hash)
        self.queue.enqueue(
            key,
            AUTO_SELL_JOB_KIND,
            {"tx_hash": tx_hash},
            delay=delay,
            policy=ExistingJobPolicy.REPLACE,
            backoff_seconds=AUTO_SELL_BACKOFF_SECONDS,
            tags=(AUTO_SELL_TAG, tx_hash),
        )
        self.ledger.update_worker_id(tx_hash, key)
        logger.info("auto-sell for %s scheduled in %.0fs", tx_hash, delay)
        return key

    def on_purchase_held(self, purchase: Purchase) -> None:
        self.schedule(purchase.tx_hash)

    def cancel(self, tx_hash: str) -> Result[Purchase]:
        purchase = self.ledger.get(tx_hash)
        if purchase is None:
            return Err("Purchase not found", FailureCategory.DATA_INTEGRITY)
        if not purchase.can_cancel:
            return Err(
                f"Cannot cancel: status is {purchase.status.value}",
                FailureCategory.VALIDATION,
            )
        self.queue.cancel(job_key(tx_hash))
        cancelled = self.ledger.transition(
            tx_hash, CANCELLABLE_STATUSES, PurchaseStatus.CANCELLED
        )
        if cancelled is None:
            # A worker moved it on between the read and the write.
            current = self.ledger.get(tx_hash)
            status = current.status.value if current else "missing"
            return Err(f"Cannot cancel: status is {status}", FailureCategory.VALIDATION)
        logger.info("auto-sell for %s cancelled", tx_hash)
        return Ok(cancelled)

    def retry(self, tx_hash: str) -> Result[str]:
        """
        Re-run the auto-sell now.

        A sell that is already broadcast keeps its status and hash so the
        worker polls it instead of sending a second one. A SELLING purchase
        with no hash and no running job was interrupted before broadcast and
        goes back to HELD.
        """
        purchase = self.ledger.get(tx_hash)
        if purchase is None:
            return Err("Purchase not found", FailureCategory.DATA_INTEGRITY)
        if purchase.is_terminal:
            return Err(
                f"Cannot retry: status is {purchase.status.value}",
                FailureCategory.VALIDATION,
            )
        job = self.queue.get(job_key(tx_hash))
        if job is not None and job.status is JobStatus.RUNNING:
            return Err("Cannot retry: sell in progress", FailureCategory.VALIDATION)
        if not purchase.sell_tx_hash:
            held = self.ledger.transition(tx_hash, _RETRYABLE_FROM, PurchaseStatus.HELD)
            if held is None:
                current = self.ledger.get(tx_hash)
                status = current.status.value if current else "missing"
                return Err(f"Cannot retry: status is {status}", FailureCategory.VALIDATION)
        else:
            logger.info("retry %s: polling broadcast sell %s", tx_hash, purchase.sell_tx_hash)
        return Ok(self.schedule(tx_hash, delay=0.0))

    def save_purchase(
        self,
        tx_hash: str,
        token_address: str,
        token_symbol: str,
        token_name: str,
        token_decimals: int,
        stablecoin_address: str,
        stablecoin_symbol: str,
        amount_in: int,
        amount_out: int,
        chain_id: int,
        wallet_address: str,
        delay_seconds: Optional[float] = None,
    ) -> Purchase:
        """Store a confirmed buy as HELD and schedule its sell."""
        now = self._clock()
        delay = self.default_delay_seconds if delay_seconds is None else delay_seconds
        purchase = Purchase(
            tx_hash=tx_hash,
            token_address=token_address,
            token_symbol=token_symbol,
            token_name=token_name,
            token_decimals=token_decimals,
            stablecoin_address=stablecoin_address,
            stablecoin_symbol=stablecoin_symbol,
            amount_in=str(amount_in),
            amount_out=str(amount_out),
            chain_id=chain_id,
            purchase_time=now,
            auto_sell_time=now + delay,
            wallet_address=wallet_address,
            status=PurchaseStatus.HELD,
        )
        try:
            self.ledger.insert(purchase)
        except DuplicatePurchase:
            existing = self.ledger.get(tx_hash)
            assert existing is not None
            logger.warning(
                "purchase %s already recorded as %s, not rescheduling",
                tx_hash,
                existing.status.value,
            )
            return existing
        self.schedule(tx_hash, delay=delay)
        return self.ledger.get(tx_hash) or purchase

    def restore_schedules(self) -> int:
        """Re-enqueue active purchases whose job is missing or finished."""
        restored = 0
        for purchase in self.ledger.list_by_status(*ACTIVE_STATUSES):
            job = self.queue.get(job_key(purchase.tx_hash))
            if job is not None and job.status in (JobStatus.ENQUEUED, JobStatus.RUNNING):
                continue
            self.schedule(purchase.tx_hash)
            restored += 1
        if restored:
            logger.info("restored %d auto-sell schedules", restored)
        return restored
