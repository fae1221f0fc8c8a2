"""Fixed-width ABI helpers for selectors, words and call data."""

from __future__ import annotations

from typing import Any, Optional

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

WORD_BYTES = 32
WORD_HEX = WORD_BYTES * 2


def selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


def encode_call(signature: str, arg_types: list[str], args: list[Any]) -> bytes:
    return selector(signature) + abi_encode(arg_types, args)


def strip_hex(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value


def hex_to_bytes(value: str) -> bytes:
    normalized = strip_hex(value)
    if normalized == "":
        return b""
    return bytes.fromhex(normalized)


def encode_uint256(value: int) -> bytes:
    """Big-endian 32-byte word; rejects values outside uint256."""
    if value < 0 or value >= 2**256:
        raise ValueError("value out of uint256 range")
    return value.to_bytes(WORD_BYTES, "big")


def decode_uint256(word: bytes) -> int:
    if len(word) != WORD_BYTES:
        raise ValueError(f"expected {WORD_BYTES}-byte word, got {len(word)}")
    return int.from_bytes(word, "big")


def encode_address(address: str) -> bytes:
    raw = hex_to_bytes(address)
    if len(raw) != 20:
        raise ValueError("address must be 20 bytes")
    return raw.rjust(WORD_BYTES, b"\x00")


def decode_address(word: bytes) -> str:
    if len(word) != WORD_BYTES:
        raise ValueError(f"expected {WORD_BYTES}-byte word, got {len(word)}")
    return "0x" + word[-20:].hex()


def word_at(data: bytes, index: int) -> bytes:
    start = index * WORD_BYTES
    word = data[start : start + WORD_BYTES]
    if len(word) != WORD_BYTES:
        raise ValueError(f"no word at index {index}")
    return word


def decode_uint_result(result: str) -> int:
    """Decode the first word of an ``eth_call`` result; empty results are 0."""
    raw = hex_to_bytes(result)
    if not raw:
        return 0
    return decode_uint256(raw[:WORD_BYTES].rjust(WORD_BYTES, b"\x00"))


def decode_string(data: bytes) -> Optional[str]:
    """ABI ``string`` payload (offset, length, bytes) or None when malformed."""
    if len(data) < 2 * WORD_BYTES:
        return None
    try:
        (value,) = abi_decode(["string"], data)
    except (DecodingError, UnicodeDecodeError, ValueError, OverflowError):
        return None
    return value
