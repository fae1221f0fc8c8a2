"""Sell a held purchase back into its stablecoin."""

from __future__ import annotations

import logging
from typing import Optional

from aggregator.client import AggregatorError, AggregatorUnavailable
from aggregator.quotes import QuoteService
from chain.erc20 import TokenCapabilities
from chain.receipts import ReceiptPoller
from core.base_types import Address
from core.models import TokenRef
from core.results import Err
from executor.engine import (
    SwapCancelled,
    SwapError,
    SwapExecutor,
    SwapPending,
    SwapRequest,
    SwapReverted,
    SwapSuccess,
)
from executor.recovery import FailureClassifier
from ledger.base import Ledger
from ledger.models import Purchase, PurchaseStatus

from .jobs import Job, JobOutcome

logger = logging.getLogger(__name__)

AUTO_SELL_SLIPPAGE_BPS = 500

_SELLABLE_FROM = frozenset(
    {
        PurchaseStatus.PENDING,
        PurchaseStatus.HELD,
        PurchaseStatus.RETRYING,
    }
)


class AutoSellWorker:
    """
    Job handler for ``auto_sell`` jobs.

    Delivery is at-least-once, so every run starts from the stored status:
    SOLD and CANCELLED are no-ops, and a purchase with a recorded
    sell hash polls that transaction instead of selling again. Everything
    but a data-integrity problem is retried by the job queue.
    """

    def __init__(
        self,
        ledger: Ledger,
        quotes: QuoteService,
        capabilities: TokenCapabilities,
        executor: SwapExecutor,
        receipts: ReceiptPoller,
        slippage_bps: int = AUTO_SELL_SLIPPAGE_BPS,
    ):
        self.ledger = ledger
        self.quotes = quotes
        self.capabilities = capabilities
        self.executor = executor
        self.receipts = receipts
        self.slippage_bps = slippage_bps
        self._in_flight: set[str] = set()

    async def __call__(self, job: Job) -> JobOutcome:
        tx_hash = job.payload.get("tx_hash")
        if not tx_hash:
            logger.error("auto-sell job %s has no tx_hash", job.key)
            return JobOutcome.FAILURE
        return await self.sell(tx_hash)

    async def sell(self, tx_hash: str) -> JobOutcome:
        if tx_hash in self._in_flight:
            logger.warning("auto-sell %s already running in this process", tx_hash)
            return JobOutcome.RETRY
        self._in_flight.add(tx_hash)
        try:
            return await self._sell(tx_hash)
        finally:
            self._in_flight.discard(tx_hash)

    async def _sell(self, tx_hash: str) -> JobOutcome:
        purchase = self.ledger.get(tx_hash)
        if purchase is None:
            logger.error("auto-sell: purchase %s not found", tx_hash)
            return JobOutcome.FAILURE
        if purchase.is_terminal:
            logger.info("auto-sell: %s already %s", tx_hash, purchase.status.value)
            return JobOutcome.SUCCESS

        if purchase.sell_tx_hash:
            return await self._resume(purchase)
        if purchase.status is PurchaseStatus.SELLING:
            # Interrupted before broadcast: nothing was sent.
            logger.warning("auto-sell %s: stale SELLING without a sell hash", tx_hash)
            self._back_to_held(tx_hash)

        selling = self.ledger.transition(tx_hash, _SELLABLE_FROM, PurchaseStatus.SELLING)
        if selling is None:
            current = self.ledger.get(tx_hash)
            if current is None or current.is_terminal:
                return JobOutcome.SUCCESS
            return JobOutcome.RETRY

        problem = self._integrity_problem(selling)
        if problem:
            logger.error("auto-sell %s: %s", tx_hash, problem)
            self._back_to_held(tx_hash)
            return JobOutcome.FAILURE

        token_in = TokenRef(
            selling.token_address,
            selling.token_symbol,
            selling.token_decimals,
            selling.token_name,
        )
        token_out = TokenRef(selling.stablecoin_address, selling.stablecoin_symbol)

        balance = await self.capabilities.balance_of(
            token_in.address, selling.wallet_address, selling.chain_id
        )
        if isinstance(balance, Err):
            logger.warning("auto-sell %s: %s", tx_hash, balance.message)
            self._back_to_held(tx_hash)
            return JobOutcome.RETRY
        if balance.value <= 0:
            logger.warning("auto-sell %s: no %s balance to sell", tx_hash, token_in.symbol)
            self._back_to_held(tx_hash)
            return JobOutcome.RETRY
        amount = balance.value

        try:
            route = await self.quotes.get_route(
                selling.chain_id,
                token_in.address,
                token_out.address,
                amount,
                force_refresh=True,
            )
        except (AggregatorError, AggregatorUnavailable) as exc:
            logger.warning("auto-sell %s: failed to get route: %s", tx_hash, exc)
            self._back_to_held(tx_hash)
            return JobOutcome.RETRY

        request = SwapRequest(
            token_in=token_in,
            token_out=token_out,
            route=route,
            amount_in=amount,
            user_address=selling.wallet_address,
            chain_id=selling.chain_id,
            slippage_bps=self.slippage_bps,
        )

        async def cancelled() -> bool:
            current = self.ledger.get(tx_hash)
            return current is None or current.status is PurchaseStatus.CANCELLED

        def remember(sell_hash: str) -> None:
            self.ledger.record_sell_tx(tx_hash, sell_hash)

        result = await self.executor.execute_swap(
            request, should_abort=cancelled, on_broadcast=remember
        )
        return self._settle(tx_hash, result)

    # ── helpers ───────────────────────────────────────────────

    async def _resume(self, purchase: Purchase) -> JobOutcome:
        sell_hash = purchase.sell_tx_hash
        assert sell_hash is not None
        logger.info("auto-sell %s: polling earlier sell %s", purchase.tx_hash, sell_hash)
        receipt = await self.receipts.wait_for_receipt(sell_hash, purchase.chain_id)
        if receipt is None:
            return JobOutcome.RETRY
        if purchase.status is not PurchaseStatus.SELLING:
            self.ledger.transition(purchase.tx_hash, _SELLABLE_FROM, PurchaseStatus.SELLING)
        if receipt.status:
            self.ledger.update_sold(purchase.tx_hash, sell_hash)
            return JobOutcome.SUCCESS
        self.ledger.record_sell_tx(purchase.tx_hash, None)
        self.ledger.update_status(purchase.tx_hash, PurchaseStatus.RETRYING)
        return JobOutcome.RETRY

    def _settle(self, tx_hash: str, result) -> JobOutcome:
        if isinstance(result, SwapSuccess):
            self.ledger.update_sold(tx_hash, result.tx_hash)
            logger.info("auto-sell %s sold in %s", tx_hash, result.tx_hash)
            return JobOutcome.SUCCESS
        if isinstance(result, SwapPending):
            # Sell hash is stored; the next run polls it.
            return JobOutcome.RETRY
        if isinstance(result, SwapReverted):
            logger.warning("auto-sell %s: sell %s reverted", tx_hash, result.tx_hash)
            self.ledger.record_sell_tx(tx_hash, None)
            self.ledger.update_status(tx_hash, PurchaseStatus.RETRYING)
            return JobOutcome.RETRY
        if isinstance(result, SwapCancelled):
            self._back_to_held(tx_hash)
            return JobOutcome.SUCCESS
        assert isinstance(result, SwapError)
        self._back_to_held(tx_hash)
        if FailureClassifier.is_retryable(result.category):
            return JobOutcome.RETRY
        return JobOutcome.FAILURE

    @staticmethod
    def _integrity_problem(purchase: Purchase) -> Optional[str]:
        try:
            Address.from_string(purchase.wallet_address)
        except (TypeError, ValueError):
            return "missing or invalid wallet address"
        if purchase.sell_amount is None:
            return f"invalid stored amount {purchase.amount_out!r}"
        if not purchase.stablecoin_address:
            return "missing stablecoin address"
        return None

    def _back_to_held(self, tx_hash: str) -> None:
        self.ledger.transition(tx_hash, {PurchaseStatus.SELLING}, PurchaseStatus.HELD)
