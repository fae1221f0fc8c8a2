"""
Failure classification and duplicate-submission guard.

Failure Classifier
~~~~~~~~~~~~~~~~~~
Maps exceptions (by type) and error strings (by an ordered regex table)
onto :class:`FailureCategory`. Only the orchestrator and the auto-sell
worker consult it to choose between retry and terminal handling.

Submission Guard
~~~~~~~~~~~~~~~~
* Remembers in-flight swap keys for ``ttl_seconds``.
* Bounded size with LRU eviction so memory stays constant.
* A second submission of the same key while the first is in flight is
  rejected instead of producing a second on-chain transaction.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from aggregator.client import AggregatorError, AggregatorUnavailable
from chain.errors import ChainError, category_for
from core.results import FailureCategory

logger = logging.getLogger(__name__)

# ╔══════════════════════════════════════════════════════════════════╗
# ║  Failure Classifier                                             ║
# ╚══════════════════════════════════════════════════════════════════╝

# Ordered list of (regex, category).  First match wins.
_PATTERNS: list[tuple[re.Pattern, FailureCategory]] = [
    (re.compile(r"timeout|timed out", re.I), FailureCategory.TRANSPORT),
    (re.compile(r"network error", re.I), FailureCategory.TRANSPORT),
    (
        re.compile(r"DNS|ECONNREFUSED|ENOTFOUND|ConnectionReset|connection", re.I),
        FailureCategory.TRANSPORT,
    ),
    (re.compile(r"rate.?limit|429|too many requests", re.I), FailureCategory.TRANSPORT),
    (re.compile(r"unavailable", re.I), FailureCategory.TRANSPORT),
    (re.compile(r"route not found|no route|empty response", re.I), FailureCategory.APPLICATION),
    (re.compile(r"revert|panic:|custom error", re.I), FailureCategory.REVERT),
    (re.compile(r"insufficient", re.I), FailureCategory.REVERT),
    (re.compile(r"not found|missing|malformed|invalid wallet", re.I), FailureCategory.DATA_INTEGRITY),
]


class FailureClassifier:
    """Classify an exception or error string into a :class:`FailureCategory`."""

    @staticmethod
    def classify(error: Optional[str]) -> FailureCategory:
        if not error:
            return FailureCategory.UNKNOWN
        for pattern, category in _PATTERNS:
            if pattern.search(error):
                return category
        return FailureCategory.UNKNOWN

    @classmethod
    def classify_exception(cls, exc: BaseException) -> FailureCategory:
        if isinstance(exc, AggregatorUnavailable):
            return FailureCategory.TRANSPORT
        if isinstance(exc, AggregatorError):
            return FailureCategory.APPLICATION
        if isinstance(exc, ChainError):
            return category_for(exc)
        if isinstance(exc, (TimeoutError, ConnectionError)):
            return FailureCategory.TRANSPORT
        return cls.classify(str(exc))

    @staticmethod
    def is_retryable(category: FailureCategory) -> bool:
        """Only a data-integrity failure cannot heal by running again later."""
        return category is not FailureCategory.DATA_INTEGRITY


# ╔══════════════════════════════════════════════════════════════════╗
# ║  Submission Guard                                               ║
# ╚══════════════════════════════════════════════════════════════════╝


@dataclass
class GuardConfig:
    ttl_seconds: float = 120.0  # how long an in-flight key is remembered
    max_entries: int = 10_000  # bounded size (LRU eviction)


class SubmissionGuard:
    """Reject a swap while an identical one is still in flight."""

    def __init__(
        self,
        config: GuardConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or GuardConfig()
        self._clock = clock
        self._in_flight: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def key_for(
        user: str, chain_id: int, token_in: str, token_out: str, amount_in: int
    ) -> str:
        return f"{user.lower()}|{chain_id}|{token_in.lower()}|{token_out.lower()}|{amount_in}"

    def acquire(self, key: str) -> bool:
        """Mark ``key`` in flight; False if it already is."""
        with self._lock:
            self._cleanup()
            if key in self._in_flight:
                logger.debug("duplicate submission rejected: %s", key)
                return False
            self._in_flight[key] = self._clock()
            self._in_flight.move_to_end(key)
            while len(self._in_flight) > self.config.max_entries:
                self._in_flight.popitem(last=False)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._in_flight.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._cleanup()
            return len(self._in_flight)

    # ── internals ─────────────────────────────────────────────

    def _cleanup(self) -> None:
        cutoff = self._clock() - self.config.ttl_seconds
        expired = [k for k, v in self._in_flight.items() if v <= cutoff]
        for k in expired:
            del self._in_flight[k]
