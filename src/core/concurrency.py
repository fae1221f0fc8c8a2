"""Fan-out helpers: run independent reads together and keep partial results."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable

logger = logging.getLogger(__name__)


@dataclass
class FanOutResult:
    values: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, BaseException] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def error_note(self) -> str:
        return "; ".join(f"{name}: {exc}" for name, exc in self.errors.items())


async def gather_settled(
    branches: dict[str, Awaitable[Any]],
    defaults: dict[str, Any] | None = None,
) -> FanOutResult:
    """
    Await every branch concurrently.

    A failing branch never cancels its siblings: its value degrades to
    ``defaults[name]`` (or None) and the exception is kept in ``errors``.
    Cancellation of the caller still propagates.
    """
    defaults = defaults or {}
    names = list(branches)
    outcomes = await asyncio.gather(
        *(branches[name] for name in names), return_exceptions=True
    )
    result = FanOutResult()
    for name, outcome in zip(names, outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, Exception):
            logger.warning("fan-out branch %s failed: %s", name, outcome)
            result.errors[name] = outcome
            result.values[name] = defaults.get(name)
        else:
            result.values[name] = outcome
    return result
