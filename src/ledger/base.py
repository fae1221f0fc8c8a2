"""Ledger capability: durable storage of purchases and their status."""

from __future__ import annotations

from typing import Callable, Iterable, Optional, Protocol

from .models import Purchase, PurchaseStatus

Listener = Callable[[Purchase], None]


class Ledger(Protocol):
    def insert(self, purchase: Purchase) -> None:
        """Create the record; raises DuplicatePurchase if ``tx_hash`` exists."""

    def get(self, tx_hash: str) -> Optional[Purchase]: ...

    def update_status(self, tx_hash: str, status: PurchaseStatus) -> Purchase: ...

    def transition(
        self,
        tx_hash: str,
        allowed_from: Iterable[PurchaseStatus],
        target: PurchaseStatus,
    ) -> Optional[Purchase]: ...

    def update_sold(self, tx_hash: str, sell_tx_hash: str) -> Purchase: ...

    def update_worker_id(self, tx_hash: str, worker_id: Optional[str]) -> Purchase: ...

    def record_sell_tx(self, tx_hash: str, sell_tx_hash: Optional[str]) -> Purchase: ...

    def list_all(self) -> list[Purchase]: ...

    def list_by_status(self, *statuses: PurchaseStatus) -> list[Purchase]: ...

    def list_by_wallet(self, wallet_address: str) -> list[Purchase]: ...

    def list_active(self) -> list[Purchase]: ...

    def held_count(self) -> int: ...

    def pending_auto_sells(self, now: Optional[float] = None) -> list[Purchase]: ...

    def subscribe(self, listener: Listener) -> Callable[[], None]: ...
