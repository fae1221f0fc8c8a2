"""Swap domain models: quotes, routes, built transactions, simulation."""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from core.base_types import is_native_token
from core.cache import cache_key

QUOTE_TTL_SECONDS = 5.0


@dataclass(frozen=True)
class TokenRef:
    """Token identity as the swap pipeline needs it."""

    address: str
    symbol: str
    decimals: int = 18
    name: str = ""

    @property
    def is_native(self) -> bool:
        return is_native_token(self.address)

    def same_token(self, other: "TokenRef") -> bool:
        return self.address.lower() == other.address.lower()


@dataclass(frozen=True)
class Quote:
    """Price snapshot; superseded by a new quote, never patched."""

    token_in: str
    token_out: str
    amount_in: int
    amount_out: int
    amount_out_usd: float
    gas: int
    gas_usd: float
    router_address: str
    route_id: str
    timestamp: float
    chain_id: int = 0

    @property
    def key(self) -> str:
        return cache_key(self.chain_id, self.token_in, self.token_out, self.amount_in)

    def is_expired(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current - self.timestamp > QUOTE_TTL_SECONDS


@dataclass(frozen=True)
class RouteHop:
    pool: str
    token_in: str
    token_out: str
    swap_amount: int
    amount_out: int
    exchange: str
    pool_type: str


@dataclass(frozen=True)
class RouteSummary:
    """
    Route returned by the aggregator's routes endpoint.

    ``raw`` is the exact ``routeSummary`` object from the response. It is
    sent back unchanged to the build endpoint because the aggregator
    verifies its ``checksum``.
    """

    raw: dict[str, Any] = field(repr=False, compare=False)
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int
    amount_in_usd: float
    amount_out_usd: float
    gas: int
    gas_usd: float
    route_id: str
    checksum: str
    router_address: str
    hops: tuple[tuple[RouteHop, ...], ...]
    fetched_at: float
    chain_id: int = 0

    @classmethod
    def from_response(
        cls,
        summary: dict[str, Any],
        router_address: str,
        fetched_at: float,
        chain_id: int = 0,
    ) -> "RouteSummary":
        hops = tuple(
            tuple(
                RouteHop(
                    pool=str(hop.get("pool", "")),
                    token_in=str(hop.get("tokenIn", "")),
                    token_out=str(hop.get("tokenOut", "")),
                    swap_amount=int(hop.get("swapAmount") or 0),
                    amount_out=int(hop.get("amountOut") or 0),
                    exchange=str(hop.get("exchange", "")),
                    pool_type=str(hop.get("poolType", "")),
                )
                for hop in path
            )
            for path in summary.get("route") or []
        )
        return cls(
            raw=copy.deepcopy(summary),
            token_in=str(summary["tokenIn"]),
            token_out=str(summary["tokenOut"]),
            amount_in=int(summary["amountIn"]),
            amount_out=int(summary["amountOut"]),
            amount_in_usd=float(summary.get("amountInUsd") or 0),
            amount_out_usd=float(summary.get("amountOutUsd") or 0),
            gas=int(summary.get("gas") or 0),
            gas_usd=float(summary.get("gasUsd") or 0),
            route_id=str(summary.get("routeID", "")),
            checksum=str(summary.get("checksum", "")),
            router_address=router_address,
            hops=hops,
            fetched_at=fetched_at,
            chain_id=chain_id,
        )

    @property
    def key(self) -> str:
        return cache_key(self.chain_id, self.token_in, self.token_out, self.amount_in)

    def is_expired(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current - self.fetched_at > QUOTE_TTL_SECONDS

    def to_request_payload(self) -> dict[str, Any]:
        return copy.deepcopy(self.raw)

    def to_quote(self) -> Quote:
        return Quote(
            token_in=self.token_in,
            token_out=self.token_out,
            amount_in=self.amount_in,
            amount_out=self.amount_out,
            amount_out_usd=self.amount_out_usd,
            gas=self.gas,
            gas_usd=self.gas_usd,
            router_address=self.router_address,
            route_id=self.route_id,
            timestamp=self.fetched_at,
            chain_id=self.chain_id,
        )


@dataclass(frozen=True)
class EncodedSwap:
    """Transaction payload returned by the build endpoint."""

    amount_in: int
    amount_out: int
    gas: int
    gas_usd: float
    data: str
    router_address: str
    transaction_value: int
    additional_cost_usd: float = 0.0
    additional_cost_message: str = ""


@dataclass(frozen=True)
class SimulationResult:
    success: bool
    revert_reason: Optional[str] = None
    return_data: Optional[str] = None
    transport_error: bool = False


@dataclass(frozen=True)
class TokenInfo:
    """Catalogue entry for a tradable token."""

    address: str
    name: str
    symbol: str
    decimals: int
    logo_url: Optional[str] = None
    is_verified: bool = False
    is_whitelisted: bool = False
    is_stable: bool = False
    is_honeypot: bool = False
    is_fot: bool = False
    tax: float = 0.0
    total_tvl: float = 0.0
    pool_count: int = 0

    @property
    def is_valid(self) -> bool:
        return bool(self.name.strip()) and bool(self.symbol.strip())


@dataclass(frozen=True)
class TokenPage:
    tokens: list[TokenInfo]
    page: int
    page_size: int
    total: int
    total_pages: int
