"""JSON-RPC transport for one chain, with endpoint failover."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

import requests

from core.base_types import Address, TokenAmount, TransactionReceipt, TransactionRequest

from .errors import (
    ChainError,
    InsufficientFunds,
    NonceTooLow,
    ReplacementUnderpriced,
    RPCError,
    TransportError,
)

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

# Matched against the lower-cased node message, first hit wins.
_NODE_ERRORS: tuple[tuple[str, type[RPCError]], ...] = (
    ("insufficient funds", InsufficientFunds),
    ("nonce too low", NonceTooLow),
    ("replacement transaction underpriced", ReplacementUnderpriced),
)

FEE_HISTORY_BLOCKS = 5
FEE_PERCENTILES = (10, 50, 90)
SPEEDS = ("low", "medium", "high")


@dataclass(frozen=True)
class FeeQuote:
    """Next-block base fee plus priority tips at three speeds."""

    base_fee: int
    tips: tuple[int, int, int]

    def tip(self, speed: str = "medium") -> int:
        if speed not in SPEEDS:
            raise ValueError("speed must be low, medium, or high")
        return self.tips[SPEEDS.index(speed)]

    def max_fee(self, speed: str = "medium", headroom: float = 2.0) -> int:
        """``maxFeePerGas`` leaving room for ``headroom`` times the base fee."""
        if headroom <= 0:
            raise ValueError("headroom must be positive")
        return int(self.base_fee * headroom) + self.tip(speed)


class ChainClient:
    """
    Blocking JSON-RPC client for a single chain.

    Each request is retried ``max_retries`` times per endpoint with
    exponential backoff before moving on to the next URL. The endpoint that
    last answered is tried first next time. Connectivity problems surface as
    :class:`TransportError`; node-side errors as :class:`RPCError` (or one of
    its subclasses) carrying any revert payload.
    """

    def __init__(
        self,
        rpc_urls: list[str],
        timeout: float = 30,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
    ):
        if not rpc_urls:
            raise ValueError("rpc_urls must not be empty")
        self._rpc_urls = list(rpc_urls)
        self._timeout = timeout
        self._max_retries = max_retries
        self._backoff = backoff_seconds
        self._session = requests.Session()
        self._ids = itertools.count(1)
        self._preferred = 0
        self._lock = threading.Lock()

    @property
    def rpc_urls(self) -> list[str]:
        return list(self._rpc_urls)

    # -- typed helpers -----------------------------------------------------

    def block_number(self) -> int:
        return _hex_to_int(self.request("eth_blockNumber"))

    def get_balance(self, address: Address) -> TokenAmount:
        raw = _hex_to_int(self.request("eth_getBalance", address.checksum, "latest"))
        return TokenAmount(raw=raw, decimals=18)

    def get_nonce(self, address: Address, block: str = "pending") -> int:
        return _hex_to_int(self.request("eth_getTransactionCount", address.checksum, block))

    def fee_quote(self) -> FeeQuote:
        """
        Fees from ``eth_feeHistory`` over the last few blocks.

        Tips are the per-percentile average of recent rewards. Nodes that
        return no rewards fall back to ``eth_maxPriorityFeePerGas`` for all
        three speeds.
        """
        history = self.request(
            "eth_feeHistory", hex(FEE_HISTORY_BLOCKS), "latest", list(FEE_PERCENTILES)
        )
        base_fees = history.get("baseFeePerGas") or ["0x0"]
        base_fee = _hex_to_int(base_fees[-1])
        rewards = [row for row in history.get("reward") or [] if len(row) == len(SPEEDS)]
        if rewards:
            columns = zip(*([_hex_to_int(v) for v in row] for row in rewards))
            tips = tuple(sum(col) // len(rewards) for col in columns)
        else:
            tip = _hex_to_int(self.request("eth_maxPriorityFeePerGas"))
            tips = (tip, tip, tip)
        return FeeQuote(base_fee=base_fee, tips=tips)

    def estimate_gas(self, tx: TransactionRequest, sender: Optional[str] = None) -> int:
        return _hex_to_int(self.request("eth_estimateGas", tx.to_rpc_dict(sender)))

    def send_transaction(self, signed_tx: bytes) -> str:
        return str(self.request("eth_sendRawTransaction", "0x" + signed_tx.hex()))

    def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        """Receipt for ``tx_hash``, or None while it is not yet mined."""
        data = self.request("eth_getTransactionReceipt", tx_hash)
        return None if data is None else TransactionReceipt.from_rpc(data)

    def call(
        self, tx: TransactionRequest, block: str = "latest", sender: Optional[str] = None
    ) -> bytes:
        return _hex_to_bytes(self.eth_call(tx.to_rpc_dict(sender), block))

    def eth_call(self, call_object: dict[str, Any], block: str = "latest") -> str:
        result = self.request("eth_call", call_object, block)
        if not isinstance(result, str):
            raise RPCError("Expected hex string result")
        return result

    # -- transport ---------------------------------------------------------

    def request(self, method: str, *params: Any) -> Any:
        """Send one JSON-RPC call and return its ``result``."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params),
        }
        last_error: Optional[Exception] = None
        for index in self._endpoint_order():
            url = self._rpc_urls[index]
            for attempt in range(self._max_retries):
                if attempt:
                    time.sleep(self._backoff * 2 ** (attempt - 1))
                try:
                    data = self._post(url, payload)
                except RPCError:
                    raise
                except (requests.Timeout, requests.ConnectionError, ValueError, ChainError) as exc:
                    last_error = exc
                    continue
                with self._lock:
                    self._preferred = index
                if "error" in data:
                    raise _node_error(data["error"])
                return data.get("result")
            logger.warning("rpc endpoint %s failed for %s: %s", url, method, last_error)
        raise TransportError(f"Network error: {last_error}") from last_error

    def _endpoint_order(self) -> list[int]:
        with self._lock:
            first = self._preferred
        rest = [i for i in range(len(self._rpc_urls)) if i != first]
        return [first, *rest]

    def _post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        start = time.perf_counter()
        response = self._session.post(url, json=payload, timeout=self._timeout)
        logger.debug(
            "rpc %s via %s -> %s in %.3fs",
            payload["method"],
            url,
            response.status_code,
            time.perf_counter() - start,
        )
        if response.status_code in _RETRYABLE_STATUS:
            raise ChainError(f"HTTP {response.status_code} from {url}")
        if response.status_code >= 400:
            raise RPCError(f"RPC call failed: {response.status_code}", code=response.status_code)
        return response.json()


def _node_error(error: dict) -> RPCError:
    message = str(error.get("message", "RPC error"))
    lowered = message.lower()
    cls = next((c for needle, c in _NODE_ERRORS if needle in lowered), RPCError)
    return cls(message, code=error.get("code"), data=error.get("data"))


def _hex_to_int(value: Any) -> int:
    if not isinstance(value, str):
        raise RPCError("Expected hex string result")
    return int(value, 16)


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)
