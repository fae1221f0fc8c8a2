"""Balance and route checks run before committing to a swap."""

from __future__ import annotations

import logging

from aggregator.quotes import QuoteService
from chain.erc20 import TokenCapabilities
from core.concurrency import gather_settled
from core.models import RouteSummary, TokenRef
from core.results import Err, FailureCategory, Ok, Result

from .recovery import FailureClassifier

logger = logging.getLogger(__name__)


async def prevalidate(
    quotes: QuoteService,
    capabilities: TokenCapabilities,
    token_in: TokenRef,
    token_out: TokenRef,
    amount_in: int,
    user_address: str,
    chain_id: int,
) -> Result[RouteSummary]:
    """Read balance and route concurrently; fail fast on a short balance."""
    reads = await gather_settled(
        {
            "balance": capabilities.balance_of(token_in.address, user_address, chain_id),
            "route": quotes.get_route(chain_id, token_in.address, token_out.address, amount_in),
        }
    )
    balance = reads.values.get("balance")
    if isinstance(balance, Err):
        return balance
    if isinstance(balance, Ok) and balance.value < amount_in:
        return Err(f"Insufficient {token_in.symbol} balance", FailureCategory.VALIDATION)

    route = reads.values.get("route")
    if route is None:
        exc = reads.errors.get("route")
        message = f"Failed to get route: {exc}"
        category = (
            FailureClassifier.classify_exception(exc) if exc else FailureCategory.UNKNOWN
        )
        return Err(message, category, exc)
    return Ok(route)
