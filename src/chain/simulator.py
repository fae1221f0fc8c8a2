"""Dry-run transactions with ``eth_call`` and decode their reverts."""

from __future__ import annotations

import asyncio
import logging

from core.models import SimulationResult

from .errors import RPCError, TransportError
from .networks import ClientPool
from .revert import decode_revert_reason

logger = logging.getLogger(__name__)


class TransactionSimulator:
    """
    Pre-flight a call at the ``latest`` block.

    Never raises: transport failures come back with ``transport_error``
    set so the caller can choose retry or abort, and reverts carry the
    decoded reason.
    """

    def __init__(self, clients: ClientPool):
        self._clients = clients

    async def simulate(
        self, sender: str, to: str, data: str, value: int, chain_id: int
    ) -> SimulationResult:
        call_object = {
            "from": sender,
            "to": to,
            "data": data if data.startswith("0x") else f"0x{data}",
            "value": hex(value),
        }
        client = self._clients.for_chain(chain_id)
        try:
            result = await asyncio.to_thread(client.eth_call, call_object, "latest")
        except TransportError as exc:
            logger.warning("simulation transport failure on chain %s: %s", chain_id, exc)
            return SimulationResult(
                success=False, revert_reason=str(exc), transport_error=True
            )
        except RPCError as exc:
            revert_data = exc.revert_data
            reason = decode_revert_reason(revert_data) if revert_data else str(exc)
            logger.info("simulation reverted: %s", reason)
            return SimulationResult(success=False, revert_reason=reason)
        except Exception as exc:
            logger.exception("simulation failed unexpectedly")
            return SimulationResult(success=False, revert_reason=f"Simulation error: {exc}")
        return SimulationResult(success=True, return_data=result)
