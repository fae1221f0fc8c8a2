"""Thread-safe TTL cache for quotes and routes."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_SECONDS = 5.0


def cache_key(chain_id: int, token_in: str, token_out: str, amount_in: int | str) -> str:
    """Deterministic, address-case-insensitive key for a swap pair on one chain."""
    return f"{chain_id}_{str(token_in).lower()}_{str(token_out).lower()}_{amount_in}"


@dataclass(frozen=True)
class CachedEntry(Generic[T]):
    value: T
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TTLCache(Generic[T]):
    """
    Key → value store with per-entry expiry.

    Expiry is lazy: an expired entry is evicted when ``get`` or
    ``is_cached`` observes it. All operations take an internal lock so
    callers never need their own.
    """

    def __init__(
        self,
        key_fn: Callable[[T], str],
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._key_fn = key_fn
        self._ttl = ttl_seconds
        self._clock = clock
        self._name = name
        self._entries: dict[str, CachedEntry[T]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                logger.debug("%s expired %s", self._name, key)
                return None
            return entry.value

    def put(self, value: T, ttl_seconds: Optional[float] = None) -> str:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        key = self._key_fn(value)
        with self._lock:
            self._entries[key] = CachedEntry(value=value, expires_at=self._clock() + ttl)
        return key

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.debug("%s cleared", self._name)

    def is_cached(self, key: str) -> bool:
        return self.get(key) is not None

    def size(self) -> int:
        """Number of stored entries, expired ones included until observed."""
        with self._lock:
            return len(self._entries)
