"""Typed outcomes returned across component boundaries."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")


class FailureCategory(Enum):
    """Failure bucket that decides retry versus terminal handling."""

    TRANSPORT = auto()  # connectivity, timeout, TLS
    APPLICATION = auto()  # aggregator non-zero code, empty route
    REVERT = auto()  # decoded on-chain failure
    DATA_INTEGRITY = auto()  # missing wallet, malformed stored data
    VALIDATION = auto()  # caller input rejected before any network call
    UNKNOWN = auto()


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    message: str
    category: FailureCategory = FailureCategory.UNKNOWN
    cause: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]
