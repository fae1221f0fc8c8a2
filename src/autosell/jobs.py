"""Durable, delayed, uniquely keyed jobs with exponential backoff."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import Engine, Float, Index, String, Text, select
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base, session_factory

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_SECONDS = 15 * 60.0
MAX_BACKOFF_SECONDS = 5 * 60 * 60.0


class JobStatus(str, Enum):
    ENQUEUED = "ENQUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ACTIVE_JOB_STATUSES = (JobStatus.ENQUEUED.value, JobStatus.RUNNING.value)


class ExistingJobPolicy(Enum):
    REPLACE = auto()  # drop the pending job and enqueue the new one
    KEEP = auto()  # leave an active job alone


class JobOutcome(Enum):
    SUCCESS = auto()
    RETRY = auto()
    FAILURE = auto()


class JobTable(Base):
    __tablename__ = "jobs"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    job_id: Mapped[str] = mapped_column(String(32))
    kind: Mapped[str] = mapped_column(String(64))
    payload: Mapped[str] = mapped_column(Text)
    tags: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(16))
    run_at: Mapped[float] = mapped_column(Float)
    attempts: Mapped[int] = mapped_column(default=0)
    backoff_seconds: Mapped[float] = mapped_column(Float)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[float] = mapped_column(Float)

    __table_args__ = (Index("ix_jobs_status_run_at", "status", "run_at"),)


@dataclass(frozen=True)
class Job:
    job_id: str
    key: str
    kind: str
    payload: dict[str, Any]
    status: JobStatus
    run_at: float
    attempts: int
    backoff_seconds: float
    tags: tuple[str, ...] = field(default_factory=tuple)
    last_error: Optional[str] = None

    @classmethod
    def from_row(cls, row: JobTable) -> "Job":
        return cls(
            job_id=row.job_id,
            key=row.key,
            kind=row.kind,
            payload=json.loads(row.payload),
            status=JobStatus(row.status),
            run_at=row.run_at,
            attempts=row.attempts,
            backoff_seconds=row.backoff_seconds,
            tags=tuple(tag for tag in row.tags.split(",") if tag),
            last_error=row.last_error,
        )


def backoff_delay(seed_seconds: float, attempts: int) -> float:
    """``seed * 2^attempts`` capped at :data:`MAX_BACKOFF_SECONDS`."""
    return min(seed_seconds * (2 ** min(attempts, 32)), MAX_BACKOFF_SECONDS)


class SqlJobQueue:
    """
    Job store over SQLAlchemy; survives process restarts.

    One row per key, so at most one pending job exists for a key. Delivery
    is at-least-once: a job left RUNNING by a crash is re-enqueued by
    :meth:`recover`, so handlers must tolerate redelivery.
    """

    def __init__(self, engine: Engine, clock: Callable[[], float] = time.time):
        Base.metadata.create_all(engine, tables=[JobTable.__table__])
        self._sessions = session_factory(engine)
        self._lock = threading.Lock()
        self._clock = clock

    def enqueue(
        self,
        key: str,
        kind: str,
        payload: dict[str, Any],
        delay: float = 0.0,
        policy: ExistingJobPolicy = ExistingJobPolicy.REPLACE,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        tags: tuple[str, ...] = (),
    ) -> str:
        now = self._clock()
        with self._lock, self._sessions.begin() as session:
            row = session.get(JobTable, key)
            if (
                row is not None
                and policy is ExistingJobPolicy.KEEP
                and row.status in ACTIVE_JOB_STATUSES
            ):
                logger.debug("job %s already active, keeping %s", key, row.job_id)
                return row.job_id
            if row is None:
                row = JobTable(key=key)
                session.add(row)
            row.job_id = uuid.uuid4().hex
            row.kind = kind
            row.payload = json.dumps(payload, sort_keys=True)
            row.tags = ",".join(tags)
            row.status = JobStatus.ENQUEUED.value
            row.run_at = now + max(delay, 0.0)
            row.attempts = 0
            row.backoff_seconds = backoff_seconds
            row.last_error = None
            row.updated_at = now
            job_id = row.job_id
        logger.info("job %s (%s) enqueued, runs in %.0fs", key, kind, max(delay, 0.0))
        return job_id

    def cancel(self, key: str) -> bool:
        with self._lock, self._sessions.begin() as session:
            row = session.get(JobTable, key)
            if row is None or row.status not in ACTIVE_JOB_STATUSES:
                return False
            row.status = JobStatus.CANCELLED.value
            row.updated_at = self._clock()
        logger.info("job %s cancelled", key)
        return True

    def get(self, key: str) -> Optional[Job]:
        with self._lock, self._sessions() as session:
            row = session.get(JobTable, key)
            return Job.from_row(row) if row is not None else None

    def due(self, now: Optional[float] = None, limit: int = 50) -> list[Job]:
        current = self._clock() if now is None else now
        stmt = (
            select(JobTable)
            .where(
                JobTable.status == JobStatus.ENQUEUED.value,
                JobTable.run_at <= current,
            )
            .order_by(JobTable.run_at)
            .limit(limit)
        )
        with self._lock, self._sessions() as session:
            return [Job.from_row(row) for row in session.scalars(stmt)]

    def next_run_at(self) -> Optional[float]:
        stmt = (
            select(JobTable.run_at)
            .where(JobTable.status == JobStatus.ENQUEUED.value)
            .order_by(JobTable.run_at)
            .limit(1)
        )
        with self._lock, self._sessions() as session:
            return session.scalar(stmt)

    def claim(self, job: Job) -> bool:
        """ENQUEUED → RUNNING for exactly this job id."""
        with self._lock, self._sessions.begin() as session:
            row = session.get(JobTable, job.key)
            if (
                row is None
                or row.job_id != job.job_id
                or row.status != JobStatus.ENQUEUED.value
            ):
                return False
            row.status = JobStatus.RUNNING.value
            row.updated_at = self._clock()
            return True

    def complete(self, job: Job) -> None:
        self._finish(job, JobStatus.SUCCEEDED, None)

    def fail(self, job: Job, error: Optional[str]) -> None:
        self._finish(job, JobStatus.FAILED, error)

    def retry(self, job: Job, error: Optional[str]) -> Optional[float]:
        """Re-enqueue with backoff; returns the next run time."""
        now = self._clock()
        with self._lock, self._sessions.begin() as session:
            row = session.get(JobTable, job.key)
            if row is None or row.job_id != job.job_id or row.status != JobStatus.RUNNING.value:
                return None
            delay = backoff_delay(row.backoff_seconds, row.attempts)
            row.attempts += 1
            row.status = JobStatus.ENQUEUED.value
            row.run_at = now + delay
            row.last_error = error
            row.updated_at = now
            run_at = row.run_at
        logger.warning("job %s retry #%d in %.0fs: %s", job.key, job.attempts + 1, delay, error)
        return run_at

    def recover(self) -> int:
        """Re-enqueue jobs a previous process left RUNNING."""
        with self._lock, self._sessions.begin() as session:
            rows = list(
                session.scalars(
                    select(JobTable).where(JobTable.status == JobStatus.RUNNING.value)
                )
            )
            for row in rows:
                row.status = JobStatus.ENQUEUED.value
                row.updated_at = self._clock()
        if rows:
            logger.info("recovered %d interrupted jobs", len(rows))
        return len(rows)

    def _finish(self, job: Job, status: JobStatus, error: Optional[str]) -> None:
        with self._lock, self._sessions.begin() as session:
            row = session.get(JobTable, job.key)
            # A replaced or cancelled job keeps its newer state.
            if row is None or row.job_id != job.job_id or row.status != JobStatus.RUNNING.value:
                return
            row.status = status.value
            row.last_error = error
            row.updated_at = self._clock()
        logger.info("job %s %s", job.key, status.value.lower())


Handler = Callable[[Job], Awaitable[JobOutcome]]


class JobRunner:
    """
    Dispatch due jobs to handlers by kind.

    When a connectivity probe is given and fails, nothing runs that round.
    A handler that raises is treated as a retryable failure.
    """

    def __init__(
        self,
        queue: SqlJobQueue,
        handlers: Optional[dict[str, Handler]] = None,
        connectivity: Optional[Callable[[], Awaitable[bool]]] = None,
        poll_interval: float = 5.0,
    ):
        self._queue = queue
        self._handlers: dict[str, Handler] = dict(handlers or {})
        self._connectivity = connectivity
        self._poll_interval = poll_interval

    def register(self, kind: str, handler: Handler) -> None:
        self._handlers[kind] = handler

    async def run_once(self) -> int:
        if self._connectivity is not None and not await self._connectivity():
            logger.info("no connectivity, deferring jobs")
            return 0
        processed = 0
        for job in self._queue.due():
            handler = self._handlers.get(job.kind)
            if handler is None:
                logger.error("no handler for job kind %s (%s)", job.kind, job.key)
                continue
            if not self._queue.claim(job):
                continue
            processed += 1
            try:
                outcome = await handler(job)
            except asyncio.CancelledError:
                self._queue.retry(job, "interrupted")
                raise
            except Exception as exc:
                logger.exception("job %s raised", job.key)
                self._queue.retry(job, str(exc))
                continue
            if outcome is JobOutcome.SUCCESS:
                self._queue.complete(job)
            elif outcome is JobOutcome.RETRY:
                self._queue.retry(job, "retry requested")
            else:
                self._queue.fail(job, "handler reported failure")
        return processed

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        self._queue.recover()
        stop = stop or asyncio.Event()
        while not stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                continue
