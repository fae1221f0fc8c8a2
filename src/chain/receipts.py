"""Poll for transaction receipts with bounded exponential backoff."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from core.base_types import TransactionReceipt

from .errors import ChainError
from .networks import ClientPool

logger = logging.getLogger(__name__)

DEFAULT_MAX_WAIT = 30.0
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 8.0


class ReceiptPoller:
    """
    Wait for a transaction to be mined.

    ``None`` from the node means "not mined yet"; a read error is logged
    and treated the same way. Returning ``None`` means the outcome is
    unknown, never that the transaction failed.
    """

    def __init__(
        self,
        clients: ClientPool,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clients = clients
        self._sleep = sleep
        self._clock = clock

    async def wait_for_receipt(
        self,
        tx_hash: str,
        chain_id: int,
        max_wait: float = DEFAULT_MAX_WAIT,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ) -> Optional[TransactionReceipt]:
        if initial_delay <= 0 or max_delay <= 0:
            raise ValueError("delays must be positive")
        client = self._clients.for_chain(chain_id)
        start = self._clock()
        delay = min(initial_delay, max_delay)
        attempt = 0
        while True:
            attempt += 1
            try:
                receipt = await asyncio.to_thread(client.get_receipt, tx_hash)
            except ChainError as exc:
                logger.warning("receipt poll %s attempt %d failed: %s", tx_hash, attempt, exc)
                receipt = None
            if receipt is not None:
                logger.info(
                    "tx %s mined in block %s status=%s",
                    tx_hash,
                    receipt.block_number,
                    receipt.status,
                )
                return receipt

            remaining = max_wait - (self._clock() - start)
            if remaining <= 0:
                logger.info("tx %s still pending after %.1fs", tx_hash, max_wait)
                return None
            await self._sleep(min(delay, remaining))
            delay = min(delay * 2, max_delay)
