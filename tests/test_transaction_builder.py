from dataclasses import dataclass

import pytest

from chain.client import FeeQuote
from chain.transaction_builder import TransactionBuilder

DEAD = "0x000000000000000000000000000000000000dead"


@dataclass
class _Signed:
    raw_transaction: bytes


class _FakeWallet:
    def __init__(self, address: str):
        self.address = address
        self.signed = []

    def sign_transaction(self, tx: dict):
        self.signed.append(tx)
        return _Signed(b"\x01\x02")


class _FakeClient:
    def __init__(self):
        self.sent = []
        self.estimated_for = None
        self.fee_calls = 0
        self.nonce_calls = 0

    def estimate_gas(self, tx, sender=None):
        self.estimated_for = sender
        return 21000

    def fee_quote(self):
        self.fee_calls += 1
        return FeeQuote(base_fee=4, tips=(1, 2, 3))

    def get_nonce(self, address):
        self.nonce_calls += 1
        return 7

    def send_transaction(self, signed_tx):
        self.sent.append(signed_tx)
        return "0x123"


def _builder(client=None, wallet=None, chain_id=1):
    return TransactionBuilder(client or _FakeClient(), wallet or _FakeWallet(DEAD), chain_id)


def test_builder_requires_call_first():
    with pytest.raises(ValueError, match="call"):
        _builder().build()
    with pytest.raises(ValueError, match="call"):
        _builder().gas_limit(21000)


def test_builder_requires_gas_limit():
    with pytest.raises(ValueError, match="gas_limit is required"):
        _builder().call(DEAD).build()


def test_builder_builds_and_sends():
    client = _FakeClient()
    wallet = _FakeWallet(DEAD)
    tx_hash = (
        _builder(client, wallet, chain_id=8453)
        .call(DEAD, "0xdead", value=10**17)
        .gas_limit(300_000)
        .fees("high")
        .send()
    )

    assert tx_hash == "0x123"
    assert client.sent == [b"\x01\x02"]
    signed = wallet.signed[0]
    assert signed["nonce"] == 7
    assert signed["gas"] == 300_000
    assert signed["chainId"] == 8453
    assert signed["value"] == 10**17
    assert signed["maxPriorityFeePerGas"] == 3
    assert signed["maxFeePerGas"] == 4 * 2 + 3
    assert signed["data"] == "0xdead"


def test_missing_fields_are_filled_from_node():
    client = _FakeClient()
    tx = _builder(client).call(DEAD).gas_limit(21000).build()

    assert client.fee_calls == 1 and client.nonce_calls == 1
    assert tx.max_priority_fee == 2
    assert tx.missing == []


def test_pinned_nonce_is_kept():
    client = _FakeClient()
    tx = _builder(client).call(DEAD).nonce(42).gas_limit(21000).build()
    assert tx.nonce == 42
    assert client.nonce_calls == 0


def test_builder_gas_estimate_buffer():
    client = _FakeClient()
    tx = _builder(client).call(DEAD, b"").estimate_gas(buffer=1.5).build()

    assert client.estimated_for == DEAD
    assert tx.gas_limit == 31500


def test_builder_rejects_bad_inputs():
    with pytest.raises(ValueError):
        _builder(chain_id=0)
    builder = _builder().call(DEAD)
    with pytest.raises(ValueError):
        builder.gas_limit(0)
    with pytest.raises(ValueError):
        builder.call(DEAD, value=-1)
    with pytest.raises(ValueError, match="speed"):
        builder.fees("urgent")
