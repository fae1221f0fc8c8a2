"""EIP-2612 permit signing for gasless approvals."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from eth_abi import encode as abi_encode

from core.abi import strip_hex
from core.base_types import Address
from core.results import Err, FailureCategory, Ok, Result
from core.signer import Signer

from .erc20 import TokenCapabilities

logger = logging.getLogger(__name__)

PERMIT_VERSION = "1"
SIGNATURE_HEX_LENGTH = 130

PERMIT_TYPES: dict[str, list[dict[str, str]]] = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Permit": [
        {"name": "owner", "type": "address"},
        {"name": "spender", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
}


def build_permit_typed_data(
    token_name: str,
    chain_id: int,
    token: str,
    owner: str,
    spender: str,
    value: int,
    nonce: int,
    deadline: int,
) -> dict[str, Any]:
    return {
        "types": PERMIT_TYPES,
        "primaryType": "Permit",
        "domain": {
            "name": token_name,
            "version": PERMIT_VERSION,
            "chainId": chain_id,
            "verifyingContract": Address.from_string(token).checksum,
        },
        "message": {
            "owner": Address.from_string(owner).checksum,
            "spender": Address.from_string(spender).checksum,
            "value": value,
            "nonce": nonce,
            "deadline": deadline,
        },
    }


def split_signature(signature: str) -> tuple[int, bytes, bytes]:
    """Split a 65-byte ``r || s || v`` signature into ``(v, r, s)``."""
    raw = strip_hex(signature)
    if len(raw) != SIGNATURE_HEX_LENGTH:
        raise ValueError(
            f"Invalid signature length: {len(raw)}, expected {SIGNATURE_HEX_LENGTH}"
        )
    r = bytes.fromhex(raw[0:64])
    s = bytes.fromhex(raw[64:128])
    v = int(raw[128:130], 16)
    return v, r, s


def encode_permit_calldata(
    owner: str, spender: str, value: int, deadline: int, v: int, r: bytes, s: bytes
) -> str:
    """``owner, spender, value, deadline, v, r, s`` as 32-byte words, no selector."""
    encoded = abi_encode(
        ["address", "address", "uint256", "uint256", "uint8", "bytes32", "bytes32"],
        [
            Address.from_string(owner).checksum,
            Address.from_string(spender).checksum,
            value,
            deadline,
            v,
            r,
            s,
        ],
    )
    return "0x" + encoded.hex()


class PermitSigner:
    def __init__(self, capabilities: TokenCapabilities, signer: Signer):
        self._capabilities = capabilities
        self._signer = signer

    async def sign_permit(
        self,
        token: str,
        owner: str,
        spender: str,
        value: int,
        deadline: int,
        chain_id: int,
    ) -> Result[str]:
        name_result, nonce_result = await asyncio.gather(
            self._capabilities.token_name(token, chain_id),
            self._capabilities.permit_nonce(token, owner, chain_id),
        )
        if isinstance(name_result, Err):
            return name_result
        if isinstance(nonce_result, Err):
            return nonce_result

        typed_data = build_permit_typed_data(
            token_name=name_result.value,
            chain_id=chain_id,
            token=token,
            owner=owner,
            spender=spender,
            value=value,
            nonce=nonce_result.value,
            deadline=deadline,
        )
        try:
            signature = await asyncio.to_thread(
                self._signer.sign_typed_data, owner, json.dumps(typed_data)
            )
            v, r, s = split_signature(signature)
        except (ValueError, TypeError) as exc:
            return Err(f"Failed to sign permit: {exc}", FailureCategory.VALIDATION, exc)
        logger.info("permit signed for %s spender %s nonce %s", token, spender, nonce_result.value)
        return Ok(encode_permit_calldata(owner, spender, value, deadline, v, r, s))
