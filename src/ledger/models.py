"""Purchase record and its status state machine."""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from core.base_types import TokenAmount


class PurchaseStatus(str, Enum):
    PENDING = "PENDING"  # buy broadcast, not yet confirmed
    HELD = "HELD"  # waiting for auto-sell time
    SELLING = "SELLING"  # sell in progress
    RETRYING = "RETRYING"  # sell failed, waiting for the next attempt
    SOLD = "SOLD"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({PurchaseStatus.SOLD, PurchaseStatus.CANCELLED})
CANCELLABLE_STATUSES = frozenset({PurchaseStatus.PENDING, PurchaseStatus.HELD})
ACTIVE_STATUSES = frozenset(
    {PurchaseStatus.HELD, PurchaseStatus.SELLING, PurchaseStatus.RETRYING}
)

ALLOWED_TRANSITIONS: dict[PurchaseStatus, frozenset[PurchaseStatus]] = {
    PurchaseStatus.PENDING: frozenset(
        {
            PurchaseStatus.HELD,
            PurchaseStatus.SELLING,
            PurchaseStatus.RETRYING,
            PurchaseStatus.CANCELLED,
        }
    ),
    PurchaseStatus.HELD: frozenset(
        {
            PurchaseStatus.HELD,
            PurchaseStatus.SELLING,
            PurchaseStatus.RETRYING,
            PurchaseStatus.CANCELLED,
        }
    ),
    PurchaseStatus.SELLING: frozenset(
        {
            PurchaseStatus.SELLING,
            PurchaseStatus.SOLD,
            PurchaseStatus.HELD,
            PurchaseStatus.RETRYING,
        }
    ),
    PurchaseStatus.RETRYING: frozenset(
        {PurchaseStatus.SELLING, PurchaseStatus.HELD, PurchaseStatus.RETRYING}
    ),
    PurchaseStatus.SOLD: frozenset(),
    PurchaseStatus.CANCELLED: frozenset(),
}


def can_transition(current: PurchaseStatus, target: PurchaseStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class InvalidTransition(ValueError):
    def __init__(self, tx_hash: str, current: PurchaseStatus, target: PurchaseStatus):
        self.tx_hash = tx_hash
        self.current = current
        self.target = target
        super().__init__(
            f"Purchase {tx_hash}: cannot move from {current.value} to {target.value}"
        )


class PurchaseNotFound(LookupError):
    def __init__(self, tx_hash: str):
        self.tx_hash = tx_hash
        super().__init__(f"Purchase not found: {tx_hash}")


class DuplicatePurchase(ValueError):
    def __init__(self, tx_hash: str):
        self.tx_hash = tx_hash
        super().__init__(f"Purchase already recorded: {tx_hash}")


@dataclass(frozen=True)
class Purchase:
    """A bought position, keyed by its buy transaction hash."""

    tx_hash: str
    token_address: str
    token_symbol: str
    token_name: str
    token_decimals: int
    stablecoin_address: str
    stablecoin_symbol: str
    amount_in: str
    amount_out: str
    chain_id: int
    purchase_time: float
    auto_sell_time: float
    wallet_address: str
    status: PurchaseStatus = PurchaseStatus.PENDING
    sell_tx_hash: Optional[str] = None
    worker_id: Optional[str] = None

    @property
    def can_cancel(self) -> bool:
        return self.status in CANCELLABLE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_auto_sell_due(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.auto_sell_time

    def time_until_auto_sell(self, now: Optional[float] = None) -> float:
        current = time.time() if now is None else now
        return max(0.0, self.auto_sell_time - current)

    @property
    def sell_amount(self) -> Optional[int]:
        """Stored token amount as an integer, or None when unparseable."""
        try:
            value = TokenAmount.from_raw_string(self.amount_out, self.token_decimals).raw
        except ValueError:
            return None
        return value if value > 0 else None

    @property
    def display_amount(self) -> Decimal:
        amount = self.sell_amount or 0
        return TokenAmount(raw=amount, decimals=self.token_decimals).human
