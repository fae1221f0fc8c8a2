"""In-process stand-ins for the RPC node, aggregator, signer and receipts."""

from __future__ import annotations

import threading
import time
from typing import Any, Optional

from core.abi import encode_uint256, selector
from core.base_types import TokenAmount, TransactionReceipt
from core.models import EncodedSwap, RouteSummary, TokenInfo, TokenPage

USER = "0x1111111111111111111111111111111111111111"
ROUTER = "0x6131b5fae19ea4f9d964eac0408e4408b66337b5"
TOKEN = "0x2222222222222222222222222222222222222222"
USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
SIGNATURE = "0x" + "11" * 32 + "22" * 32 + "1b"


def word(value: int) -> str:
    return "0x" + encode_uint256(value).hex()


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def receipt(hash_: str, status: bool = True) -> TransactionReceipt:
    return TransactionReceipt(tx_hash=hash_, block_number=1, status=status, gas_used=150_000)


def make_route(
    token_in: str,
    token_out: str,
    amount_in: int,
    amount_out: Optional[int] = None,
    gas: int = 200_000,
    fetched_at: Optional[float] = None,
    chain_id: int = 1,
) -> RouteSummary:
    summary = {
        "tokenIn": token_in,
        "tokenOut": token_out,
        "amountIn": str(amount_in),
        "amountOut": str(amount_out if amount_out is not None else amount_in * 2),
        "amountInUsd": "10.0",
        "amountOutUsd": "9.9",
        "gas": str(gas),
        "gasUsd": "1.5",
        "routeID": "route-1",
        "checksum": "123456",
        "route": [
            [
                {
                    "pool": "0xpool",
                    "tokenIn": token_in,
                    "tokenOut": token_out,
                    "swapAmount": str(amount_in),
                    "amountOut": str(amount_out or amount_in * 2),
                    "exchange": "uniswap-v3",
                    "poolType": "uniswap-v3",
                }
            ]
        ],
    }
    return RouteSummary.from_response(
        summary, ROUTER, time.time() if fetched_at is None else fetched_at, chain_id
    )


def token_info(n: int, name: Optional[str] = None, symbol: Optional[str] = None) -> TokenInfo:
    return TokenInfo(
        address="0x" + f"{n:040x}",
        name=f"Token {n}" if name is None else name,
        symbol=f"TK{n}" if symbol is None else symbol,
        decimals=18,
        total_tvl=float(n),
    )


class FakeChainClient:
    """
    ``eth_call`` answers keyed by ``(token, function signature)``.

    Calls carrying ``from`` are simulations and answer with ``simulation``.
    Receipt answers are consumed in order; the last one repeats.
    """

    def __init__(self):
        self.responses: dict[tuple[str, str], Any] = {}
        self.simulation: Any = "0x"
        self.receipts: dict[str, list[Any]] = {}
        self.native_balance = 0
        self.calls: list[dict] = []

    def set_call(self, token: str, signature: str, result: Any) -> None:
        self.responses[(token.lower(), "0x" + selector(signature).hex())] = result

    def eth_call(self, call_object: dict, block: str = "latest") -> str:
        self.calls.append(call_object)
        if "from" in call_object:
            result = self.simulation
        else:
            key = (call_object["to"].lower(), call_object["data"][:10])
            result = self.responses.get(key, "0x")
        if isinstance(result, list):
            result = result.pop(0) if len(result) > 1 else result[0]
        if isinstance(result, Exception):
            raise result
        return result

    def get_receipt(self, hash_: str) -> Optional[TransactionReceipt]:
        queue = self.receipts.get(hash_)
        if not queue:
            return None
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def get_balance(self, address) -> TokenAmount:
        return TokenAmount(raw=self.native_balance, decimals=18, symbol="ETH")


class FakePool:
    def __init__(self, client: FakeChainClient):
        self.client = client

    def for_chain(self, chain_id: int) -> FakeChainClient:
        return self.client


class FakeSigner:
    def __init__(self, address: str = USER):
        self.address = address
        self.sent: list[dict] = []
        self.typed: list[str] = []
        self.error: Optional[Exception] = None
        self.signature = SIGNATURE

    def sign_and_send(self, to, data, value, chain_id, gas_limit, sender=None) -> str:
        if self.error is not None:
            raise self.error
        self.sent.append(
            {
                "to": to,
                "data": data,
                "value": value,
                "chain_id": chain_id,
                "gas_limit": gas_limit,
                "sender": sender,
            }
        )
        return tx_hash(len(self.sent))

    def sign_typed_data(self, owner: str, typed_data_json: str) -> str:
        self.typed.append(typed_data_json)
        return self.signature


class FakeAggregator:
    """Routes for any pair; errors queued in ``route_errors`` are raised first."""

    def __init__(self):
        self.route_errors: list[Exception] = []
        self.build_error: Optional[Exception] = None
        self.build_gas = 200_000
        self.amount_out: Optional[int] = None
        self.route_calls: list[tuple] = []
        self.build_calls: list[dict] = []
        self.pages: dict[int, TokenPage] = {}
        self.page_errors: dict[int, list[Exception]] = {}
        self.token_calls: list[int] = []
        self._lock = threading.Lock()

    def get_routes(self, chain_name, token_in, token_out, amount_in) -> RouteSummary:
        with self._lock:
            self.route_calls.append((chain_name, token_in, token_out, amount_in))
            error = self.route_errors.pop(0) if self.route_errors else None
        if error is not None:
            raise error
        return make_route(token_in, token_out, amount_in, self.amount_out)

    def build_route(
        self,
        chain_name,
        route,
        sender,
        recipient=None,
        slippage_bps=50,
        deadline=None,
        permit=None,
    ) -> EncodedSwap:
        self.build_calls.append(
            {
                "route": route,
                "sender": sender,
                "recipient": recipient,
                "slippage_bps": slippage_bps,
                "deadline": deadline,
                "permit": permit,
            }
        )
        if self.build_error is not None:
            raise self.build_error
        return EncodedSwap(
            amount_in=route.amount_in,
            amount_out=route.amount_out,
            gas=self.build_gas,
            gas_usd=1.5,
            data="0xdeadbeef",
            router_address=ROUTER,
            transaction_value=0,
        )

    def get_tokens(self, page=1, limit=100, min_tvl=10_000, sort="tvl_desc") -> TokenPage:
        self.token_calls.append(page)
        errors = self.page_errors.get(page)
        if errors:
            raise errors.pop(0)
        return self.pages.get(page, TokenPage([], page, limit, 0, 0))


class FakeReceipts:
    def __init__(self, confirm: bool = True):
        self.outcomes: dict[str, Optional[TransactionReceipt]] = {}
        self.confirm = confirm
        self.waited: list[str] = []

    def set(self, hash_: str, outcome: Optional[TransactionReceipt]) -> None:
        self.outcomes[hash_] = outcome

    async def wait_for_receipt(self, hash_: str, chain_id: int, **kwargs):
        self.waited.append(hash_)
        if hash_ in self.outcomes:
            return self.outcomes[hash_]
        return receipt(hash_, True) if self.confirm else None


def pages_of(total_pages: int, per_page: int = 2) -> dict[int, TokenPage]:
    pages = {}
    n = 1
    for page in range(1, total_pages + 1):
        tokens = []
        for _ in range(per_page):
            tokens.append(token_info(n))
            n += 1
        pages[page] = TokenPage(tokens, page, per_page, total_pages * per_page, total_pages)
    return pages
