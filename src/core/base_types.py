"""Value types for addresses, token amounts and raw transactions."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from eth_utils.address import is_address, to_checksum_address

NATIVE_TOKEN_ADDRESS = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"
MAX_UINT256 = 2**256 - 1


def is_native_token(address: str | "Address") -> bool:
    return str(address).lower() == NATIVE_TOKEN_ADDRESS.lower()


@dataclass(frozen=True)
class Address:
    """Checksummed EVM address; compares equal to any casing of itself."""

    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str):
            raise TypeError("Address value must be a string")
        if not is_address(self.value):
            raise ValueError("Invalid Ethereum address")
        object.__setattr__(self, "value", to_checksum_address(self.value))

    @classmethod
    def from_string(cls, s: str) -> "Address":
        return cls(s)

    @property
    def checksum(self) -> str:
        return self.value

    @property
    def lower(self) -> str:
        return self.value.lower()

    @property
    def is_native(self) -> bool:
        return is_native_token(self.value)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, (Address, str)):
            return self.lower == str(other).lower()
        return False

    def __hash__(self) -> int:
        return hash(self.lower)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class TokenAmount:
    """
    Integer base units of a token plus the decimals needed to display them.

    Amounts travel through the pipeline as raw integers (or their decimal
    strings in storage); :attr:`human` is only for display.
    """

    raw: int
    decimals: int
    symbol: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.raw, int) or isinstance(self.raw, bool):
            raise TypeError("raw must be an int")
        if self.raw < 0:
            raise ValueError("raw must not be negative")
        if not isinstance(self.decimals, int) or self.decimals < 0:
            raise ValueError("decimals must be a non-negative integer")

    @classmethod
    def from_human(
        cls, amount: str | Decimal, decimals: int, symbol: str | None = None
    ) -> "TokenAmount":
        """Parse a display amount such as ``"0.1"``; floats are refused."""
        if isinstance(amount, float):
            raise TypeError("amount must be a string or Decimal, not float")
        if not isinstance(amount, (str, Decimal)):
            raise TypeError("amount must be a string or Decimal")
        try:
            scaled = Decimal(amount).scaleb(decimals)
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {amount!r}") from exc
        if scaled != scaled.to_integral_value():
            raise ValueError("amount has more precision than decimals allow")
        return cls(raw=int(scaled), decimals=decimals, symbol=symbol)

    @classmethod
    def from_raw_string(
        cls, raw: str, decimals: int, symbol: str | None = None
    ) -> "TokenAmount":
        """Parse a stored base-unit string; raises ``ValueError`` on garbage."""
        if not raw or not raw.isdigit():
            raise ValueError(f"Invalid raw amount: {raw!r}")
        return cls(raw=int(raw), decimals=decimals, symbol=symbol)

    @property
    def human(self) -> Decimal:
        return Decimal(self.raw).scaleb(-self.decimals)

    def __str__(self) -> str:
        return f"{self.human.normalize():f} {self.symbol or ''}".strip()


@dataclass(frozen=True)
class TransactionRequest:
    """EIP-1559 transaction fields; unset fields are omitted when serialised."""

    to: Address
    value: int = 0
    data: bytes = b""
    chain_id: int = 1
    nonce: Optional[int] = None
    gas_limit: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee: Optional[int] = None

    def with_fields(self, **changes: Any) -> "TransactionRequest":
        return replace(self, **changes)

    @property
    def missing(self) -> list[str]:
        """Fields that must be filled before the request can be signed."""
        required = ("nonce", "gas_limit", "max_fee_per_gas", "max_priority_fee")
        return [name for name in required if getattr(self, name) is None]

    def to_dict(self) -> dict[str, Any]:
        """Dict accepted by ``eth_account.Account.sign_transaction``."""
        payload: dict[str, Any] = {
            "type": 2,
            "to": self.to.checksum,
            "value": self.value,
            "data": "0x" + self.data.hex(),
            "chainId": self.chain_id,
        }
        optional = {
            "nonce": self.nonce,
            "gas": self.gas_limit,
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        return payload

    def to_rpc_dict(self, sender: Optional[str] = None) -> dict[str, str]:
        """Call object for ``eth_call`` and ``eth_estimateGas``."""
        payload = {
            "to": self.to.checksum,
            "data": "0x" + self.data.hex(),
            "value": hex(self.value),
        }
        if sender is not None:
            payload["from"] = sender
        return payload


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    block_number: int
    status: bool
    gas_used: int
    effective_gas_price: int = 0
    logs: list = field(default_factory=list)

    @property
    def fee_paid(self) -> int:
        return self.gas_used * self.effective_gas_price

    @classmethod
    def from_rpc(cls, receipt: dict) -> "TransactionReceipt":
        """Build from an ``eth_getTransactionReceipt`` result object."""
        status = receipt.get("status")
        if isinstance(status, str):
            status = _to_int(status)
        if isinstance(status, bool) or status in (0, 1):
            ok = bool(status)
        else:
            raise ValueError("Invalid status in receipt")

        tx_hash = receipt.get("transactionHash")
        return cls(
            tx_hash=tx_hash.hex() if isinstance(tx_hash, bytes) else str(tx_hash),
            block_number=_to_int(receipt.get("blockNumber")),
            status=ok,
            gas_used=_to_int(receipt.get("gasUsed")),
            effective_gas_price=_to_int(receipt.get("effectiveGasPrice", 0)),
            logs=list(receipt.get("logs") or []),
        )


def _to_int(value: object) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise ValueError("Expected integer-like value")
