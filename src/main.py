"""CLI entrypoint for quoting, swapping and managing auto-sells."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import Optional

from aggregator.client import AggregatorError, AggregatorUnavailable, KyberSwapClient
from aggregator.quotes import QuoteService
from autosell.jobs import JobRunner, SqlJobQueue
from autosell.scheduler import AUTO_SELL_JOB_KIND, AutoSellScheduler
from autosell.worker import AutoSellWorker
from catalog.prefetch import PrefetchManager
from catalog.store import CheckpointStore, TokenStore
from catalog.sync import SYNC_JOB_KIND, TokenSyncEngine
from chain.errors import ChainError
from chain.erc20 import AllowanceManager, TokenCapabilities
from chain.networks import ClientPool, Network, network_by_name
from chain.permit import PermitSigner
from chain.receipts import ReceiptPoller
from chain.revert import decode_revert_reason
from chain.simulator import TransactionSimulator
from config import Settings
from core.base_types import is_native_token
from core.db import create_db_engine
from core.models import TokenRef
from core.results import Err
from core.wallet_manager import WalletManager
from executor.approval import ApprovalStep
from executor.engine import (
    ExecutorConfig,
    PurchaseIntent,
    SwapExecutor,
    SwapRequest,
    SwapSuccess,
)
from executor.prevalidation import prevalidate
from ledger.models import PurchaseStatus
from ledger.sql import SqlLedger

logger = logging.getLogger(__name__)


@dataclass
class App:
    settings: Settings
    clients: ClientPool
    api: KyberSwapClient
    quotes: QuoteService
    capabilities: TokenCapabilities
    ledger: SqlLedger
    queue: SqlJobQueue
    scheduler: AutoSellScheduler
    tokens: TokenStore
    sync: TokenSyncEngine
    wallet: Optional[WalletManager] = None
    executor: Optional[SwapExecutor] = None
    worker: Optional[AutoSellWorker] = None


def build_app(settings: Settings, with_wallet: bool = False) -> App:
    engine = create_db_engine(settings.database_url)
    clients = ClientPool()
    api = KyberSwapClient(
        base_url=settings.aggregator_base_url,
        token_api_url=settings.token_api_base_url,
        client_id=settings.client_id,
    )
    quotes = QuoteService(api)
    capabilities = TokenCapabilities(clients)
    ledger = SqlLedger(engine)
    queue = SqlJobQueue(engine)
    scheduler = AutoSellScheduler(
        ledger, queue, default_delay_seconds=settings.auto_sell_delay_minutes * 60.0
    )
    tokens = TokenStore(engine)
    sync = TokenSyncEngine(api, tokens, CheckpointStore(engine), queue)
    app = App(settings, clients, api, quotes, capabilities, ledger, queue, scheduler, tokens, sync)
    if not with_wallet:
        return app

    wallet = WalletManager.from_env(clients=clients)
    allowance = AllowanceManager(clients, wallet)
    receipts = ReceiptPoller(clients)
    executor = SwapExecutor(
        api=api,
        quotes=quotes,
        approvals=ApprovalStep(allowance, capabilities, PermitSigner(capabilities, wallet)),
        allowance=allowance,
        simulator=TransactionSimulator(clients),
        receipts=receipts,
        signer=wallet,
        config=ExecutorConfig(),
        ledger=ledger,
        on_purchase_held=scheduler.on_purchase_held,
    )
    app.wallet = wallet
    app.executor = executor
    app.worker = AutoSellWorker(
        ledger,
        quotes,
        capabilities,
        executor,
        receipts,
        slippage_bps=settings.auto_sell_slippage_bps,
    )
    return app


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Token swaps through KyberSwap")
    parser.add_argument("--chain", default="ethereum", help="Chain name (default: ethereum)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    quote = subparsers.add_parser("quote", help="Fetch a route quote")
    _add_pair_args(quote)

    swap = subparsers.add_parser("swap", help="Execute a swap with PRIVATE_KEY")
    _add_pair_args(swap)
    swap.add_argument("--slippage-bps", type=int, help="Slippage tolerance in bps")
    swap.add_argument("--recipient", help="Recipient address (default: sender)")
    swap.add_argument(
        "--auto-sell", action="store_true", help="Record the purchase and schedule auto-sell"
    )
    swap.add_argument("--delay-minutes", type=int, help="Auto-sell delay in minutes")

    decode = subparsers.add_parser("decode-revert", help="Decode revert data")
    decode.add_argument("data", help="Hex revert payload")

    purchases = subparsers.add_parser("purchases", help="List recorded purchases")
    purchases.add_argument("--wallet", help="Filter by wallet address")
    purchases.add_argument(
        "--status", choices=[s.value for s in PurchaseStatus], help="Filter by status"
    )

    cancel = subparsers.add_parser("cancel", help="Cancel a scheduled auto-sell")
    cancel.add_argument("tx_hash")

    retry = subparsers.add_parser("retry", help="Retry an auto-sell now")
    retry.add_argument("tx_hash")

    run_jobs = subparsers.add_parser("run-jobs", help="Run the durable job worker")
    run_jobs.add_argument("--once", action="store_true", help="Process due jobs and exit")

    sync_tokens = subparsers.add_parser("sync-tokens", help="Sync the token catalogue")
    sync_tokens.add_argument("--force", action="store_true", help="Restart from page 1")
    sync_tokens.add_argument(
        "--inline", action="store_true", help="Sync every page now instead of queueing"
    )

    prefetch = subparsers.add_parser("prefetch", help="Warm tokens and popular quotes")
    prefetch.add_argument("--pages", type=int, default=1, help="Token pages to load")
    return parser


def _add_pair_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--token-in", required=True, help="Input token address")
    parser.add_argument("--token-out", required=True, help="Output token address")
    parser.add_argument("--amount", required=True, type=int, help="Raw input amount")


def main() -> None:
    args = _build_parser().parse_args()
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "decode-revert":
            print(decode_revert_reason(args.data))
            return

        network = network_by_name(args.chain)
        needs_wallet = args.command in ("swap", "run-jobs")
        app = build_app(settings, with_wallet=needs_wallet)
        code = asyncio.run(_dispatch(app, network, args))
    except (AggregatorError, AggregatorUnavailable, ChainError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(2)
    if code:
        sys.exit(code)


async def _dispatch(app: App, network: Network, args: argparse.Namespace) -> int:
    if args.command == "quote":
        route = await app.quotes.get_route(
            network.chain_id, args.token_in, args.token_out, args.amount
        )
        print(json.dumps(_route_view(route), indent=2))
        return 0

    if args.command == "swap":
        return await _swap(app, network, args)

    if args.command == "purchases":
        if args.wallet:
            rows = app.ledger.list_by_wallet(args.wallet)
        elif args.status:
            rows = app.ledger.list_by_status(PurchaseStatus(args.status))
        else:
            rows = app.ledger.list_all()
        if args.wallet and args.status:
            rows = [p for p in rows if p.status.value == args.status]
        for p in rows:
            print(
                f"{p.tx_hash}  {p.status.value:<9}  {p.display_amount} {p.token_symbol}"
                f" -> {p.stablecoin_symbol}  sell in {p.time_until_auto_sell():.0f}s"
            )
        return 0

    if args.command == "cancel":
        result = app.scheduler.cancel(args.tx_hash)
        if isinstance(result, Err):
            print(result.message, file=sys.stderr)
            return 1
        print(f"cancelled {args.tx_hash}")
        return 0

    if args.command == "retry":
        result = app.scheduler.retry(args.tx_hash)
        if isinstance(result, Err):
            print(result.message, file=sys.stderr)
            return 1
        print(f"scheduled {result.value}")
        return 0

    if args.command == "run-jobs":
        assert app.worker is not None
        app.scheduler.restore_schedules()
        runner = JobRunner(
            app.queue,
            {AUTO_SELL_JOB_KIND: app.worker, SYNC_JOB_KIND: app.sync.handle_batch},
            connectivity=lambda: _probe(app.clients, network.chain_id),
        )
        if args.once:
            processed = await runner.run_once()
            print(f"processed {processed} jobs")
        else:
            await runner.run_forever()
        return 0

    if args.command == "sync-tokens":
        if args.inline:
            written = await app.sync.sync_all()
            print(f"synced {written} tokens")
        elif args.force:
            generation = await app.sync.force_sync()
            print(f"token sync generation {generation} started")
        elif app.sync.should_sync():
            generation = await app.sync.start_full_sync()
            print(f"token sync generation {generation} started")
        else:
            print("token catalogue is up to date")
        return 0

    if args.command == "prefetch":
        manager = PrefetchManager(app.api, app.tokens, app.quotes, network.chain_id)
        report = await manager.prefetch(pages=args.pages)
        print(
            f"{report.status.name.lower()}: {report.tokens_loaded} tokens,"
            f" {report.quotes_loaded} quotes"
        )
        if report.error:
            print(report.error, file=sys.stderr)
            return 1
        return 0

    raise ValueError(f"Unknown command: {args.command}")


async def _swap(app: App, network: Network, args: argparse.Namespace) -> int:
    assert app.executor is not None and app.wallet is not None
    token_in = _token_ref(app, network, args.token_in)
    token_out = _token_ref(app, network, args.token_out)
    checked = await prevalidate(
        app.quotes,
        app.capabilities,
        token_in,
        token_out,
        args.amount,
        app.wallet.address,
        network.chain_id,
    )
    if isinstance(checked, Err):
        print(checked.message, file=sys.stderr)
        return 1

    purchase = None
    if args.auto_sell:
        if not network.stablecoin:
            raise ValueError(f"No stablecoin configured for {network.name}")
        delay_minutes = (
            args.delay_minutes
            if args.delay_minutes is not None
            else app.settings.auto_sell_delay_minutes
        )
        stable = _token_ref(app, network, network.stablecoin)
        purchase = PurchaseIntent(stable.address, stable.symbol, delay_minutes * 60.0)

    request = SwapRequest(
        token_in=token_in,
        token_out=token_out,
        route=checked.value,
        amount_in=args.amount,
        user_address=app.wallet.address,
        chain_id=network.chain_id,
        slippage_bps=(
            args.slippage_bps
            if args.slippage_bps is not None
            else app.settings.default_slippage_bps
        ),
        recipient=args.recipient,
        purchase=purchase,
    )
    result = await app.executor.execute_swap(request)
    print(f"{type(result).__name__}: {_describe(result)}")
    return 0 if isinstance(result, SwapSuccess) else 1


def _token_ref(app: App, network: Network, address: str) -> TokenRef:
    if is_native_token(address):
        return TokenRef(address, network.native_symbol, 18, network.native_symbol)
    cached = app.tokens.get(address)
    if cached is not None:
        return TokenRef(address, cached.symbol, cached.decimals, cached.name)
    return TokenRef(address, address[:8])


def _route_view(route) -> dict:
    return {
        "tokenIn": route.token_in,
        "tokenOut": route.token_out,
        "amountIn": str(route.amount_in),
        "amountOut": str(route.amount_out),
        "amountOutUsd": route.amount_out_usd,
        "gas": route.gas,
        "gasUsd": route.gas_usd,
        "router": route.router_address,
        "hops": len(route.hops),
    }


def _describe(result) -> str:
    for attr in ("tx_hash", "message", "reason"):
        value = getattr(result, attr, None)
        if value:
            return str(value)
    return ""


async def _probe(clients: ClientPool, chain_id: int) -> bool:
    try:
        await asyncio.to_thread(clients.for_chain(chain_id).block_number)
    except ChainError as exc:
        logger.info("connectivity probe failed: %s", exc)
        return False
    return True


if __name__ == "__main__":
    main()
