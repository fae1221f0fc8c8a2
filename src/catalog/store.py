"""Local token catalogue and sync checkpoint tables."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from sqlalchemy import Boolean, Engine, Float, Index, String, delete, func, or_, select
from sqlalchemy.orm import Mapped, mapped_column

from core.db import AddressColumn, Base, session_factory
from core.models import TokenInfo

logger = logging.getLogger(__name__)


class TokenTable(Base):
    __tablename__ = "tokens"

    address: Mapped[AddressColumn] = mapped_column(primary_key=True)
    name: Mapped[str]
    symbol: Mapped[str] = mapped_column(String(64))
    decimals: Mapped[int]
    logo_url: Mapped[Optional[str]]
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    is_whitelisted: Mapped[bool] = mapped_column(Boolean, default=False)
    is_stable: Mapped[bool] = mapped_column(Boolean, default=False)
    is_honeypot: Mapped[bool] = mapped_column(Boolean, default=False)
    is_fot: Mapped[bool] = mapped_column(Boolean, default=False)
    tax: Mapped[float] = mapped_column(Float, default=0.0)
    total_tvl: Mapped[float] = mapped_column(Float, default=0.0)
    pool_count: Mapped[int] = mapped_column(default=0)
    cached_at: Mapped[float] = mapped_column(Float)
    generation: Mapped[int] = mapped_column(default=0)

    __table_args__ = (
        Index("ix_tokens_symbol", "symbol"),
        Index("ix_tokens_tvl", "total_tvl"),
    )

    def to_model(self) -> TokenInfo:
        return TokenInfo(
            address=self.address,
            name=self.name,
            symbol=self.symbol,
            decimals=self.decimals,
            logo_url=self.logo_url,
            is_verified=self.is_verified,
            is_whitelisted=self.is_whitelisted,
            is_stable=self.is_stable,
            is_honeypot=self.is_honeypot,
            is_fot=self.is_fot,
            tax=self.tax,
            total_tvl=self.total_tvl,
            pool_count=self.pool_count,
        )


class SyncStateTable(Base):
    __tablename__ = "sync_state"

    id: Mapped[int] = mapped_column(primary_key=True)
    last_page_synced: Mapped[int] = mapped_column(default=0)
    total_pages: Mapped[int] = mapped_column(default=0)
    last_sync_timestamp: Mapped[float] = mapped_column(Float, default=0.0)
    current_batch: Mapped[int] = mapped_column(default=0)
    generation: Mapped[int] = mapped_column(default=0)


class TokenStore:
    """Bulk upserts and lookups over the cached catalogue."""

    def __init__(self, engine: Engine, clock: Callable[[], float] = time.time):
        Base.metadata.create_all(engine, tables=[TokenTable.__table__])
        self._sessions = session_factory(engine)
        self._lock = threading.Lock()
        self._clock = clock

    def upsert_many(self, tokens: Iterable[TokenInfo], generation: int = 0) -> int:
        """Write all tokens in one transaction; invalid entries are skipped."""
        now = self._clock()
        written = 0
        with self._lock, self._sessions.begin() as session:
            for token in tokens:
                if not token.is_valid:
                    continue
                session.merge(
                    TokenTable(
                        address=token.address.lower(),
                        name=token.name,
                        symbol=token.symbol,
                        decimals=token.decimals,
                        logo_url=token.logo_url,
                        is_verified=token.is_verified,
                        is_whitelisted=token.is_whitelisted,
                        is_stable=token.is_stable,
                        is_honeypot=token.is_honeypot,
                        is_fot=token.is_fot,
                        tax=token.tax,
                        total_tvl=token.total_tvl,
                        pool_count=token.pool_count,
                        cached_at=now,
                        generation=generation,
                    )
                )
                written += 1
        logger.debug("upserted %d tokens (generation %d)", written, generation)
        return written

    def count(self) -> int:
        with self._lock, self._sessions() as session:
            return int(session.scalar(select(func.count()).select_from(TokenTable)) or 0)

    def latest_cached_at(self) -> Optional[float]:
        with self._lock, self._sessions() as session:
            return session.scalar(select(func.max(TokenTable.cached_at)))

    def is_stale(self, ttl_seconds: float, now: Optional[float] = None) -> bool:
        latest = self.latest_cached_at()
        if latest is None:
            return True
        current = self._clock() if now is None else now
        return current - latest > ttl_seconds

    def clear(self) -> int:
        with self._lock, self._sessions.begin() as session:
            result = session.execute(delete(TokenTable))
        logger.info("token catalogue cleared (%d rows)", result.rowcount)
        return result.rowcount

    def get(self, address: str) -> Optional[TokenInfo]:
        with self._lock, self._sessions() as session:
            row = session.get(TokenTable, address.lower())
            return row.to_model() if row is not None else None

    def search(self, query: str, limit: int = 50) -> list[TokenInfo]:
        """Match symbol, name or address; highest TVL first."""
        pattern = f"%{query.strip().lower()}%"
        stmt = (
            select(TokenTable)
            .where(
                or_(
                    func.lower(TokenTable.symbol).like(pattern),
                    func.lower(TokenTable.name).like(pattern),
                    TokenTable.address.like(pattern),
                )
            )
            .order_by(TokenTable.total_tvl.desc())
            .limit(limit)
        )
        with self._lock, self._sessions() as session:
            return [row.to_model() for row in session.scalars(stmt)]

    def top(self, limit: int = 100) -> list[TokenInfo]:
        stmt = select(TokenTable).order_by(TokenTable.total_tvl.desc()).limit(limit)
        with self._lock, self._sessions() as session:
            return [row.to_model() for row in session.scalars(stmt)]


@dataclass(frozen=True)
class SyncState:
    last_page_synced: int = 0
    total_pages: int = 0
    last_sync_timestamp: float = 0.0
    current_batch: int = 0
    generation: int = 0

    @property
    def is_complete(self) -> bool:
        return self.current_batch > 0 and self.last_page_synced >= self.total_pages


class CheckpointStore:
    """Single-row progress record so an interrupted sync resumes."""

    _ROW_ID = 1

    def __init__(self, engine: Engine):
        Base.metadata.create_all(engine, tables=[SyncStateTable.__table__])
        self._sessions = session_factory(engine)
        self._lock = threading.Lock()

    def load(self) -> SyncState:
        with self._lock, self._sessions() as session:
            row = session.get(SyncStateTable, self._ROW_ID)
            if row is None:
                return SyncState()
            return SyncState(
                last_page_synced=row.last_page_synced,
                total_pages=row.total_pages,
                last_sync_timestamp=row.last_sync_timestamp,
                current_batch=row.current_batch,
                generation=row.generation,
            )

    def save_progress(
        self,
        last_page_synced: int,
        total_pages: int,
        current_batch: int,
        generation: int,
        timestamp: Optional[float] = None,
    ) -> None:
        with self._lock, self._sessions.begin() as session:
            row = self._row(session)
            row.last_page_synced = last_page_synced
            row.total_pages = total_pages
            row.current_batch = current_batch
            row.generation = generation
            if timestamp is not None:
                row.last_sync_timestamp = timestamp

    def next_generation(self) -> int:
        """Start a new full sync: bump the generation and rewind progress."""
        with self._lock, self._sessions.begin() as session:
            row = self._row(session)
            row.generation += 1
            row.last_page_synced = 0
            row.current_batch = 0
            generation = row.generation
        logger.info("token sync generation %d started", generation)
        return generation

    def reset(self) -> None:
        with self._lock, self._sessions.begin() as session:
            row = self._row(session)
            row.last_page_synced = 0
            row.total_pages = 0
            row.current_batch = 0
            row.last_sync_timestamp = 0.0

    def _row(self, session) -> SyncStateTable:
        row = session.get(SyncStateTable, self._ROW_ID)
        if row is None:
            row = SyncStateTable(
                id=self._ROW_ID,
                last_page_synced=0,
                total_pages=0,
                last_sync_timestamp=0.0,
                current_batch=0,
                generation=0,
            )
            session.add(row)
        return row
