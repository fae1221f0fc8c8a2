"""ERC-20 reads and approvals: allowance, approve, permit capability probes."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Awaitable, Callable, Optional

from core.abi import (
    decode_string,
    decode_uint_result,
    encode_call,
    hex_to_bytes,
)
from core.base_types import MAX_UINT256, Address, is_native_token
from core.results import Err, FailureCategory, Ok, Result
from core.signer import Signer

from .errors import ChainError, category_for
from .networks import ClientPool

logger = logging.getLogger(__name__)

APPROVE_GAS_LIMIT = 60_000

ALLOWANCE_SIG = "allowance(address,address)"
APPROVE_SIG = "approve(address,uint256)"
BALANCE_OF_SIG = "balanceOf(address)"
DOMAIN_SEPARATOR_SIG = "DOMAIN_SEPARATOR()"
NONCES_SIG = "nonces(address)"
NAME_SIG = "name()"


def _call_object(token: str, data: bytes) -> dict:
    return {"to": Address.from_string(token).checksum, "data": f"0x{data.hex()}", "value": "0x0"}


class AllowanceManager:
    """
    Check and grant ERC-20 spending rights.

    Native-token addresses report an unlimited allowance and never need an
    approval transaction.
    """

    def __init__(
        self,
        clients: ClientPool,
        signer: Signer,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._clients = clients
        self._signer = signer
        self._sleep = sleep

    async def get_allowance(
        self, token: str, owner: str, spender: str, chain_id: int
    ) -> Result[int]:
        if is_native_token(token):
            return Ok(MAX_UINT256)
        data = encode_call(
            ALLOWANCE_SIG,
            ["address", "address"],
            [Address.from_string(owner).checksum, Address.from_string(spender).checksum],
        )
        client = self._clients.for_chain(chain_id)
        try:
            result = await asyncio.to_thread(client.eth_call, _call_object(token, data))
        except ChainError as exc:
            logger.warning("allowance read failed for %s: %s", token, exc)
            return Err(f"Failed to check allowance: {exc}", category_for(exc), exc)
        return Ok(decode_uint_result(result))

    async def approve(
        self,
        token: str,
        spender: str,
        amount: int,
        chain_id: int,
        owner: str,
    ) -> Result[Optional[str]]:
        """Submit ``approve(spender, amount)``; ``Ok(None)`` for native tokens."""
        if is_native_token(token):
            return Ok(None)
        data = encode_call(
            APPROVE_SIG,
            ["address", "uint256"],
            [Address.from_string(spender).checksum, amount],
        )
        try:
            tx_hash = await asyncio.to_thread(
                self._signer.sign_and_send,
                Address.from_string(token).checksum,
                f"0x{data.hex()}",
                0,
                chain_id,
                APPROVE_GAS_LIMIT,
                owner,
            )
        except ChainError as exc:
            return Err(f"Approval failed: {exc}", category_for(exc), exc)
        except ValueError as exc:
            return Err(f"Approval failed: {exc}", FailureCategory.VALIDATION, exc)
        logger.info("approval %s sent for token %s spender %s", tx_hash, token, spender)
        return Ok(tx_hash)

    async def wait_for_allowance(
        self,
        token: str,
        owner: str,
        spender: str,
        required: int,
        chain_id: int,
        attempts: int = 10,
        interval: float = 1.0,
    ) -> bool:
        """Poll until the on-chain allowance covers ``required``."""
        for attempt in range(attempts):
            result = await self.get_allowance(token, owner, spender, chain_id)
            if isinstance(result, Ok) and result.value >= required:
                return True
            if attempt < attempts - 1:
                await self._sleep(interval)
        return False


class TokenCapabilities:
    """Read-only token probes with per-chain caches for stable answers."""

    def __init__(self, clients: ClientPool):
        self._clients = clients
        self._permit_support: dict[str, bool] = {}
        self._names: dict[str, str] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(token: str, chain_id: int) -> str:
        return f"{chain_id}:{token.lower()}"

    async def _call(self, token: str, data: bytes, chain_id: int) -> str:
        client = self._clients.for_chain(chain_id)
        return await asyncio.to_thread(client.eth_call, _call_object(token, data))

    async def supports_permit(self, token: str, chain_id: int) -> bool:
        """True when the token exposes a non-zero ``DOMAIN_SEPARATOR``."""
        if is_native_token(token):
            return False
        key = self._key(token, chain_id)
        with self._lock:
            cached = self._permit_support.get(key)
        if cached is not None:
            return cached
        try:
            result = await self._call(token, encode_call(DOMAIN_SEPARATOR_SIG, [], []), chain_id)
        except ChainError as exc:
            logger.debug("DOMAIN_SEPARATOR probe failed for %s: %s", token, exc)
            return False
        raw = hex_to_bytes(result)
        supported = len(raw) >= 32 and any(raw[:32])
        with self._lock:
            self._permit_support[key] = supported
        return supported

    async def token_name(self, token: str, chain_id: int) -> Result[str]:
        key = self._key(token, chain_id)
        with self._lock:
            cached = self._names.get(key)
        if cached is not None:
            return Ok(cached)
        try:
            result = await self._call(token, encode_call(NAME_SIG, [], []), chain_id)
        except ChainError as exc:
            return Err(f"Failed to get token name: {exc}", category_for(exc), exc)
        raw = hex_to_bytes(result)
        name = decode_string(raw)
        if name is None and len(raw) == 32:
            # bytes32 names (pre-standard tokens)
            name = raw.rstrip(b"\x00").decode("utf-8", errors="ignore")
        if not name:
            return Err("Failed to get token name", FailureCategory.APPLICATION)
        with self._lock:
            self._names[key] = name
        return Ok(name)

    async def permit_nonce(self, token: str, owner: str, chain_id: int) -> Result[int]:
        data = encode_call(NONCES_SIG, ["address"], [Address.from_string(owner).checksum])
        try:
            result = await self._call(token, data, chain_id)
        except ChainError as exc:
            return Err(f"Failed to get nonce: {exc}", category_for(exc), exc)
        return Ok(decode_uint_result(result))

    async def balance_of(self, token: str, owner: str, chain_id: int) -> Result[int]:
        client = self._clients.for_chain(chain_id)
        try:
            if is_native_token(token):
                balance = await asyncio.to_thread(
                    client.get_balance, Address.from_string(owner)
                )
                return Ok(balance.raw)
            data = encode_call(
                BALANCE_OF_SIG, ["address"], [Address.from_string(owner).checksum]
            )
            result = await self._call(token, data, chain_id)
        except ChainError as exc:
            return Err(f"Failed to get balance: {exc}", category_for(exc), exc)
        return Ok(decode_uint_result(result))

    def clear(self) -> None:
        with self._lock:
            self._permit_support.clear()
            self._names.clear()
