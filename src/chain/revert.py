"""Human-readable decoding of EVM revert payloads."""

from __future__ import annotations

from core.abi import decode_string, decode_uint256, hex_to_bytes, strip_hex, word_at

ERROR_SELECTOR = "0x08c379a0"  # Error(string)
PANIC_SELECTOR = "0x4e487b71"  # Panic(uint256)

PANIC_CODES: dict[int, str] = {
    0x00: "Panic: generic/compiler error",
    0x01: "Panic: assertion failed",
    0x11: "Panic: arithmetic overflow/underflow",
    0x12: "Panic: division by zero",
    0x21: "Panic: invalid enum conversion",
    0x22: "Panic: storage encoding error",
    0x31: "Panic: pop on empty array",
    0x32: "Panic: array index out of bounds",
    0x41: "Panic: memory allocation error",
    0x51: "Panic: uninitialized function pointer",
}

UNKNOWN_ERROR = "Unknown error"
MALFORMED_ERROR = "Malformed error"


def decode_revert_reason(data: str) -> str:
    """
    Decode revert ``data`` (0x-prefixed hex) into a message.

    ``Error(string)`` yields its string, ``Panic(uint256)`` maps through
    :data:`PANIC_CODES`, and anything else is tried as ``Error(string)``
    before being reported as ``Custom error: <selector>``.
    """
    payload = strip_hex(data or "").lower()
    if len(payload) < 8:
        return UNKNOWN_ERROR
    selector = "0x" + payload[:8]
    try:
        body = hex_to_bytes(payload[8:])
    except ValueError:
        return MALFORMED_ERROR

    if selector == ERROR_SELECTOR:
        message = decode_string(body)
        return MALFORMED_ERROR if message is None else message
    if selector == PANIC_SELECTOR:
        return decode_panic(body)

    message = decode_string(body)
    if message:
        return message
    return f"Custom error: {selector}"


def decode_panic(body: bytes) -> str:
    try:
        code = decode_uint256(word_at(body, 0))
    except ValueError:
        return "Panic: unknown code"
    return PANIC_CODES.get(code, f"Panic: code 0x{code:x}")
