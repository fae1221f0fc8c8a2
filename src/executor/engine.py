"""End-to-end swap execution as an explicit state machine."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Awaitable, Callable, Optional, Union

from aggregator.client import AggregatorError, AggregatorUnavailable, KyberSwapClient
from aggregator.quotes import QuoteService
from chain.erc20 import AllowanceManager
from chain.networks import network_for
from chain.receipts import ReceiptPoller
from chain.simulator import TransactionSimulator
from core.base_types import Address, TransactionReceipt
from core.models import EncodedSwap, RouteSummary, TokenRef
from core.results import FailureCategory
from core.signer import Signer
from ledger.base import Ledger
from ledger.models import Purchase, PurchaseStatus

from .approval import ApprovalKind, ApprovalOutcome, ApprovalStep
from .recovery import FailureClassifier, SubmissionGuard

logger = logging.getLogger(__name__)

APPROVAL_TIMEOUT_MESSAGE = "Approval confirmation timeout. Please wait and try again."
QUOTE_EXPIRED_MESSAGE = "Quote expired, please refresh"


def buffered_gas_limit(gas: int) -> int:
    """Aggregator gas estimate times 1.5, floored, in exact integer math."""
    if gas < 0:
        raise ValueError("gas must be non-negative")
    return gas * 3 // 2


class SwapState(Enum):
    IDLE = auto()
    VALIDATING = auto()
    APPROVING = auto()
    BUILDING = auto()
    SIMULATING = auto()
    SIGNING = auto()
    AWAITING_RECEIPT = auto()
    CONFIRMED = auto()
    REVERTED = auto()
    PENDING = auto()
    CANCELLED = auto()
    FAILED = auto()


@dataclass(frozen=True)
class SwapSuccess:
    tx_hash: str


@dataclass(frozen=True)
class SwapReverted:
    tx_hash: str


@dataclass(frozen=True)
class SwapPending:
    tx_hash: str


@dataclass(frozen=True)
class SwapError:
    message: str
    category: FailureCategory = FailureCategory.UNKNOWN


@dataclass(frozen=True)
class SwapCancelled:
    reason: str = "Cancelled before broadcast"


SwapResult = Union[SwapSuccess, SwapReverted, SwapPending, SwapError, SwapCancelled]


@dataclass(frozen=True)
class PurchaseIntent:
    """Record the bought token for auto-sell into ``stablecoin`` later."""

    stablecoin_address: str
    stablecoin_symbol: str
    auto_sell_delay_seconds: float


@dataclass
class SwapRequest:
    token_in: TokenRef
    token_out: TokenRef
    route: RouteSummary
    amount_in: int
    user_address: str
    chain_id: int
    slippage_bps: int = 50
    recipient: Optional[str] = None
    purchase: Optional[PurchaseIntent] = None


@dataclass
class ExecutionContext:
    request: SwapRequest
    state: SwapState = SwapState.IDLE

    approval: Optional[ApprovalOutcome] = None
    encoded: Optional[EncodedSwap] = None
    gas_limit: Optional[int] = None
    tx_hash: Optional[str] = None
    receipt: Optional[TransactionReceipt] = None

    result: Optional[SwapResult] = None
    error: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None


@dataclass
class ExecutorConfig:
    simulate: bool = True
    build_timeout: float = 30.0
    receipt_max_wait: float = 30.0
    receipt_initial_delay: float = 1.0
    receipt_max_delay: float = 8.0
    approval_confirm_attempts: int = 10
    approval_confirm_interval: float = 1.0


class SwapExecutor:
    """
    Run one swap attempt:

    VALIDATE → (APPROVE | PERMIT) → BUILD_ROUTE → SIMULATE → SIGN →
    BROADCAST → AWAIT_RECEIPT → {CONFIRMED | REVERTED | PENDING}

    Nothing is retried once the transaction is broadcast. Failures before
    broadcast come back as ``SwapError`` with a category the caller uses to
    decide whether another attempt makes sense.
    """

    def __init__(
        self,
        api: KyberSwapClient,
        quotes: QuoteService,
        approvals: ApprovalStep,
        allowance: AllowanceManager,
        simulator: TransactionSimulator,
        receipts: ReceiptPoller,
        signer: Signer,
        config: Optional[ExecutorConfig] = None,
        guard: Optional[SubmissionGuard] = None,
        ledger: Optional[Ledger] = None,
        on_purchase_held: Optional[Callable[[Purchase], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.api = api
        self.quotes = quotes
        self.approvals = approvals
        self.allowance = allowance
        self.simulator = simulator
        self.receipts = receipts
        self.signer = signer
        self.config = config or ExecutorConfig()
        self.guard = guard or SubmissionGuard()
        self.ledger = ledger
        self.on_purchase_held = on_purchase_held
        self._clock = clock

    async def execute_swap(
        self,
        request: SwapRequest,
        should_abort: Optional[Callable[[], Awaitable[bool]]] = None,
        on_broadcast: Optional[Callable[[str], None]] = None,
    ) -> SwapResult:
        ctx = await self.execute(request, should_abort, on_broadcast)
        assert ctx.result is not None
        return ctx.result

    async def execute(
        self,
        request: SwapRequest,
        should_abort: Optional[Callable[[], Awaitable[bool]]] = None,
        on_broadcast: Optional[Callable[[str], None]] = None,
    ) -> ExecutionContext:
        ctx = ExecutionContext(request=request)

        ctx.state = SwapState.VALIDATING
        problem = self._validate(request)
        if problem:
            return self._fail(ctx, problem, FailureCategory.VALIDATION)

        key = SubmissionGuard.key_for(
            request.user_address,
            request.chain_id,
            request.token_in.address,
            request.token_out.address,
            request.amount_in,
        )
        if not self.guard.acquire(key):
            return self._fail(ctx, "Duplicate swap already in flight", FailureCategory.VALIDATION)
        try:
            await self._run(ctx, should_abort, on_broadcast)
        finally:
            self.guard.release(key)
            ctx.finished_at = time.time()
        return ctx

    # ── pipeline ──────────────────────────────────────────────

    async def _run(
        self,
        ctx: ExecutionContext,
        should_abort: Optional[Callable[[], Awaitable[bool]]],
        on_broadcast: Optional[Callable[[str], None]],
    ) -> None:
        request = ctx.request
        route = request.route
        network = network_for(request.chain_id)

        # Approval or permit
        self._advance(ctx, SwapState.APPROVING)
        approval = await self.approvals.run(
            request.token_in.address,
            request.user_address,
            route.router_address,
            request.amount_in,
            request.chain_id,
        )
        ctx.approval = approval
        if approval.kind is ApprovalKind.FAILED:
            self._fail(ctx, approval.error or "Approval failed", approval.category)
            return
        if approval.kind is ApprovalKind.APPROVAL_SENT:
            confirmed = await self.allowance.wait_for_allowance(
                request.token_in.address,
                request.user_address,
                route.router_address,
                request.amount_in,
                request.chain_id,
                attempts=self.config.approval_confirm_attempts,
                interval=self.config.approval_confirm_interval,
            )
            if not confirmed:
                self._fail(ctx, APPROVAL_TIMEOUT_MESSAGE, FailureCategory.TRANSPORT)
                return
            try:
                route = await self.quotes.get_route(
                    request.chain_id,
                    request.token_in.address,
                    request.token_out.address,
                    request.amount_in,
                    force_refresh=True,
                )
            except (AggregatorError, AggregatorUnavailable) as exc:
                self._fail(
                    ctx,
                    f"Failed to refresh route: {exc}",
                    FailureClassifier.classify_exception(exc),
                )
                return

        # Freshness is re-checked right before building
        if route.is_expired(self._clock()):
            self._fail(ctx, QUOTE_EXPIRED_MESSAGE, FailureCategory.VALIDATION)
            return

        self._advance(ctx, SwapState.BUILDING)
        try:
            encoded = await asyncio.wait_for(
                asyncio.to_thread(
                    self.api.build_route,
                    network.name,
                    route,
                    request.user_address,
                    request.recipient,
                    request.slippage_bps,
                    approval.deadline,
                    approval.permit,
                ),
                timeout=self.config.build_timeout,
            )
        except asyncio.TimeoutError:
            self._fail(ctx, "Failed to build route: timeout", FailureCategory.TRANSPORT)
            return
        except (AggregatorError, AggregatorUnavailable) as exc:
            self._fail(
                ctx, f"Failed to build route: {exc}", FailureClassifier.classify_exception(exc)
            )
            return
        ctx.encoded = encoded
        ctx.gas_limit = buffered_gas_limit(encoded.gas or route.gas)

        if self.config.simulate:
            self._advance(ctx, SwapState.SIMULATING)
            simulation = await self.simulator.simulate(
                request.user_address,
                encoded.router_address,
                encoded.data,
                encoded.transaction_value,
                request.chain_id,
            )
            if not simulation.success:
                category = (
                    FailureCategory.TRANSPORT
                    if simulation.transport_error
                    else FailureCategory.REVERT
                )
                self._fail(ctx, simulation.revert_reason or "Simulation failed", category)
                return

        if should_abort is not None and await should_abort():
            ctx.state = SwapState.CANCELLED
            ctx.result = SwapCancelled()
            logger.info("swap cancelled before broadcast")
            return

        self._advance(ctx, SwapState.SIGNING)
        try:
            tx_hash = await asyncio.to_thread(
                self.signer.sign_and_send,
                encoded.router_address,
                encoded.data,
                encoded.transaction_value,
                request.chain_id,
                ctx.gas_limit,
                request.user_address,
            )
        except Exception as exc:
            self._fail(
                ctx,
                f"Failed to sign transaction: {exc}",
                FailureClassifier.classify_exception(exc),
            )
            return
        ctx.tx_hash = tx_hash
        logger.info("swap broadcast %s gas_limit=%s", tx_hash, ctx.gas_limit)
        self.quotes.invalidate(
            request.chain_id,
            request.token_in.address,
            request.token_out.address,
            request.amount_in,
        )
        if on_broadcast is not None:
            try:
                on_broadcast(tx_hash)
            except Exception:
                logger.exception("swap %s: broadcast callback failed", tx_hash)
        try:
            self._record_purchase(ctx)
        except Exception:
            # The transaction is out; its receipt still has to be awaited.
            logger.exception("swap %s: failed to record purchase", tx_hash)

        self._advance(ctx, SwapState.AWAITING_RECEIPT)
        receipt = await self.receipts.wait_for_receipt(
            tx_hash,
            request.chain_id,
            max_wait=self.config.receipt_max_wait,
            initial_delay=self.config.receipt_initial_delay,
            max_delay=self.config.receipt_max_delay,
        )
        ctx.receipt = receipt
        if receipt is None:
            self._advance(ctx, SwapState.PENDING)
            ctx.result = SwapPending(tx_hash)
        elif receipt.status:
            self._advance(ctx, SwapState.CONFIRMED)
            ctx.result = SwapSuccess(tx_hash)
        else:
            self._advance(ctx, SwapState.REVERTED)
            ctx.result = SwapReverted(tx_hash)
        self._settle_purchase(ctx)

    # ── helpers ───────────────────────────────────────────────

    def _validate(self, request: SwapRequest) -> Optional[str]:
        if request.token_in.same_token(request.token_out):
            return "Cannot swap a token for itself"
        if request.amount_in <= 0:
            return "Amount must be greater than zero"
        if request.slippage_bps < 0 or request.slippage_bps > 10_000:
            return "Slippage must be between 0 and 10000 bps"
        try:
            Address.from_string(request.user_address)
            if request.recipient:
                Address.from_string(request.recipient)
        except (TypeError, ValueError):
            return "Invalid wallet address"
        route = request.route
        if (
            route.token_in.lower() != request.token_in.address.lower()
            or route.token_out.lower() != request.token_out.address.lower()
            or route.amount_in != request.amount_in
        ):
            return "Route does not match swap request"
        if route.is_expired(self._clock()):
            return QUOTE_EXPIRED_MESSAGE
        return None

    @staticmethod
    def _advance(ctx: ExecutionContext, state: SwapState) -> None:
        logger.debug("swap %s -> %s", ctx.state.name, state.name)
        ctx.state = state

    @staticmethod
    def _fail(
        ctx: ExecutionContext, message: str, category: FailureCategory
    ) -> ExecutionContext:
        logger.warning("swap failed in %s: %s", ctx.state.name, message)
        ctx.state = SwapState.FAILED
        ctx.error = message
        ctx.result = SwapError(message, category)
        return ctx

    def _record_purchase(self, ctx: ExecutionContext) -> None:
        request = ctx.request
        intent = request.purchase
        if intent is None or self.ledger is None or ctx.tx_hash is None:
            return
        assert ctx.encoded is not None
        now = self._clock()
        self.ledger.insert(
            Purchase(
                tx_hash=ctx.tx_hash,
                token_address=request.token_out.address,
                token_symbol=request.token_out.symbol,
                token_name=request.token_out.name or request.token_out.symbol,
                token_decimals=request.token_out.decimals,
                stablecoin_address=intent.stablecoin_address,
                stablecoin_symbol=intent.stablecoin_symbol,
                amount_in=str(request.amount_in),
                amount_out=str(ctx.encoded.amount_out),
                chain_id=request.chain_id,
                purchase_time=now,
                auto_sell_time=now + intent.auto_sell_delay_seconds,
                wallet_address=request.user_address,
                status=PurchaseStatus.PENDING,
            )
        )

    def _settle_purchase(self, ctx: ExecutionContext) -> None:
        if ctx.request.purchase is None or self.ledger is None or ctx.tx_hash is None:
            return
        if self.ledger.get(ctx.tx_hash) is None:
            logger.error("swap %s: no purchase record to settle", ctx.tx_hash)
            return
        if isinstance(ctx.result, SwapReverted):
            self.ledger.transition(
                ctx.tx_hash, {PurchaseStatus.PENDING}, PurchaseStatus.CANCELLED
            )
            return
        held = self.ledger.transition(
            ctx.tx_hash, {PurchaseStatus.PENDING}, PurchaseStatus.HELD
        )
        if held is not None and self.on_purchase_held is not None:
            self.on_purchase_held(held)
