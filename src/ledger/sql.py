"""SQLAlchemy-backed ledger with atomic status transitions."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Iterable, Optional

from sqlalchemy import Engine, Float, Index, String, func, select
from sqlalchemy.orm import Mapped, Session, mapped_column

from core.db import AddressColumn, Base, HashColumn, session_factory

from .base import Listener
from .models import (
    ACTIVE_STATUSES,
    DuplicatePurchase,
    InvalidTransition,
    Purchase,
    PurchaseNotFound,
    PurchaseStatus,
    can_transition,
)

logger = logging.getLogger(__name__)


class PurchaseTable(Base):
    __tablename__ = "purchases"

    tx_hash: Mapped[HashColumn] = mapped_column(primary_key=True)
    token_address: Mapped[AddressColumn]
    token_symbol: Mapped[str]
    token_name: Mapped[str]
    token_decimals: Mapped[int]
    stablecoin_address: Mapped[AddressColumn]
    stablecoin_symbol: Mapped[str]
    amount_in: Mapped[str] = mapped_column(String(78))
    amount_out: Mapped[str] = mapped_column(String(78))
    chain_id: Mapped[int]
    purchase_time: Mapped[float] = mapped_column(Float)
    auto_sell_time: Mapped[float] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(16))
    sell_tx_hash: Mapped[Optional[str]] = mapped_column(String(66))
    worker_id: Mapped[Optional[str]] = mapped_column(String(128))
    wallet_address: Mapped[AddressColumn]

    __table_args__ = (
        Index("ix_purchases_status_auto_sell", "status", "auto_sell_time"),
        Index("ix_purchases_wallet", "wallet_address"),
    )

    def to_model(self) -> Purchase:
        return Purchase(
            tx_hash=self.tx_hash,
            token_address=self.token_address,
            token_symbol=self.token_symbol,
            token_name=self.token_name,
            token_decimals=self.token_decimals,
            stablecoin_address=self.stablecoin_address,
            stablecoin_symbol=self.stablecoin_symbol,
            amount_in=self.amount_in,
            amount_out=self.amount_out,
            chain_id=self.chain_id,
            purchase_time=self.purchase_time,
            auto_sell_time=self.auto_sell_time,
            wallet_address=self.wallet_address,
            status=PurchaseStatus(self.status),
            sell_tx_hash=self.sell_tx_hash,
            worker_id=self.worker_id,
        )

    @classmethod
    def from_model(cls, purchase: Purchase) -> "PurchaseTable":
        return cls(
            tx_hash=purchase.tx_hash,
            token_address=purchase.token_address,
            token_symbol=purchase.token_symbol,
            token_name=purchase.token_name,
            token_decimals=purchase.token_decimals,
            stablecoin_address=purchase.stablecoin_address,
            stablecoin_symbol=purchase.stablecoin_symbol,
            amount_in=purchase.amount_in,
            amount_out=purchase.amount_out,
            chain_id=purchase.chain_id,
            purchase_time=purchase.purchase_time,
            auto_sell_time=purchase.auto_sell_time,
            status=purchase.status.value,
            sell_tx_hash=purchase.sell_tx_hash,
            worker_id=purchase.worker_id,
            wallet_address=purchase.wallet_address,
        )


class SqlLedger:
    """
    Purchase ledger over SQLAlchemy.

    Every read-modify-write runs inside one session while holding the
    ledger lock, so a status decision can never be made on a stale read.
    Listeners are notified after the commit, outside the lock.
    """

    def __init__(self, engine: Engine):
        Base.metadata.create_all(engine, tables=[PurchaseTable.__table__])
        self._sessions = session_factory(engine)
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []

    # ── writes ────────────────────────────────────────────────

    def insert(self, purchase: Purchase) -> None:
        """Create the purchase; an existing ``tx_hash`` is never overwritten."""
        with self._lock, self._sessions.begin() as session:
            if session.get(PurchaseTable, purchase.tx_hash) is not None:
                raise DuplicatePurchase(purchase.tx_hash)
            session.add(PurchaseTable.from_model(purchase))
        logger.info("purchase %s stored as %s", purchase.tx_hash, purchase.status.value)
        self._notify(purchase)

    def update_status(self, tx_hash: str, status: PurchaseStatus) -> Purchase:
        def apply(row: PurchaseTable) -> None:
            row.status = status.value

        return self._mutate(tx_hash, status, apply)

    def transition(
        self,
        tx_hash: str,
        allowed_from: Iterable[PurchaseStatus],
        target: PurchaseStatus,
    ) -> Optional[Purchase]:
        """
        Compare-and-set: move to ``target`` only from one of ``allowed_from``.

        Returns the updated purchase, or None when the current status is not
        in ``allowed_from``.
        """
        allowed = frozenset(allowed_from)
        with self._lock:
            with self._sessions.begin() as session:
                row = self._row(session, tx_hash)
                current = PurchaseStatus(row.status)
                if current not in allowed:
                    return None
                if not can_transition(current, target):
                    raise InvalidTransition(tx_hash, current, target)
                row.status = target.value
                purchase = row.to_model()
        logger.info("purchase %s %s -> %s", tx_hash, current.value, target.value)
        self._notify(purchase)
        return purchase

    def update_sold(self, tx_hash: str, sell_tx_hash: str) -> Purchase:
        def apply(row: PurchaseTable) -> None:
            row.status = PurchaseStatus.SOLD.value
            row.sell_tx_hash = sell_tx_hash

        return self._mutate(tx_hash, PurchaseStatus.SOLD, apply)

    def update_worker_id(self, tx_hash: str, worker_id: Optional[str]) -> Purchase:
        def apply(row: PurchaseTable) -> None:
            row.worker_id = worker_id

        return self._mutate(tx_hash, None, apply)

    def record_sell_tx(self, tx_hash: str, sell_tx_hash: Optional[str]) -> Purchase:
        def apply(row: PurchaseTable) -> None:
            row.sell_tx_hash = sell_tx_hash

        return self._mutate(tx_hash, None, apply)

    # ── reads ─────────────────────────────────────────────────

    def get(self, tx_hash: str) -> Optional[Purchase]:
        with self._lock, self._sessions() as session:
            row = session.get(PurchaseTable, tx_hash)
            return row.to_model() if row is not None else None

    def list_all(self) -> list[Purchase]:
        return self._select(select(PurchaseTable))

    def list_by_status(self, *statuses: PurchaseStatus) -> list[Purchase]:
        values = [status.value for status in statuses]
        return self._select(select(PurchaseTable).where(PurchaseTable.status.in_(values)))

    def list_by_wallet(self, wallet_address: str) -> list[Purchase]:
        stmt = select(PurchaseTable).where(
            func.lower(PurchaseTable.wallet_address) == wallet_address.lower()
        )
        return self._select(stmt)

    def list_active(self) -> list[Purchase]:
        return self.list_by_status(*ACTIVE_STATUSES)

    def held_count(self) -> int:
        with self._lock, self._sessions() as session:
            stmt = select(func.count()).where(
                PurchaseTable.status == PurchaseStatus.HELD.value
            )
            return int(session.scalar(stmt) or 0)

    def pending_auto_sells(self, now: Optional[float] = None) -> list[Purchase]:
        current = time.time() if now is None else now
        stmt = select(PurchaseTable).where(
            PurchaseTable.status == PurchaseStatus.HELD.value,
            PurchaseTable.auto_sell_time <= current,
        )
        return self._select(stmt)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a function that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ── internals ─────────────────────────────────────────────

    @staticmethod
    def _row(session: Session, tx_hash: str) -> PurchaseTable:
        row = session.get(PurchaseTable, tx_hash)
        if row is None:
            raise PurchaseNotFound(tx_hash)
        return row

    def _mutate(
        self,
        tx_hash: str,
        target: Optional[PurchaseStatus],
        apply: Callable[[PurchaseTable], None],
    ) -> Purchase:
        with self._lock:
            with self._sessions.begin() as session:
                row = self._row(session, tx_hash)
                current = PurchaseStatus(row.status)
                if target is not None and not can_transition(current, target):
                    raise InvalidTransition(tx_hash, current, target)
                apply(row)
                purchase = row.to_model()
        if target is not None:
            logger.info("purchase %s %s -> %s", tx_hash, current.value, target.value)
        self._notify(purchase)
        return purchase

    def _select(self, stmt) -> list[Purchase]:
        stmt = stmt.order_by(PurchaseTable.purchase_time.desc())
        with self._lock, self._sessions() as session:
            return [row.to_model() for row in session.scalars(stmt)]

    def _notify(self, purchase: Purchase) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(purchase)
            except Exception:
                logger.exception("ledger listener failed for %s", purchase.tx_hash)
