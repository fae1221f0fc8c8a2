"""Tests for chain.receipts and chain.simulator."""

import pytest
from eth_abi import encode as abi_encode

from chain.errors import RPCError, TransportError
from chain.receipts import ReceiptPoller
from chain.simulator import TransactionSimulator
from fakes import ROUTER, USER, FakeChainClient, FakePool, receipt


class _VirtualTime:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestReceiptPoller:
    def _poller(self, client):
        vt = _VirtualTime()
        return ReceiptPoller(FakePool(client), sleep=vt.sleep, clock=vt.clock), vt

    @pytest.mark.asyncio
    async def test_returns_first_receipt(self):
        client = FakeChainClient()
        client.receipts["0xaa"] = [None, None, receipt("0xaa")]
        poller, vt = self._poller(client)

        result = await poller.wait_for_receipt("0xaa", 1, max_wait=30, initial_delay=1, max_delay=8)

        assert result.status is True
        assert vt.sleeps == [1, 2]

    @pytest.mark.asyncio
    async def test_delay_doubles_caps_and_never_overruns(self):
        client = FakeChainClient()
        poller, vt = self._poller(client)

        result = await poller.wait_for_receipt("0xbb", 1, max_wait=10, initial_delay=1, max_delay=4)

        assert result is None
        assert vt.sleeps == [1, 2, 4, 3]
        assert vt.now == 10

    @pytest.mark.asyncio
    async def test_read_errors_count_as_not_mined(self):
        client = FakeChainClient()
        client.receipts["0xcc"] = [TransportError("down"), receipt("0xcc", status=False)]
        poller, _ = self._poller(client)

        result = await poller.wait_for_receipt("0xcc", 1, max_wait=5, initial_delay=1, max_delay=1)

        assert result is not None
        assert result.status is False

    @pytest.mark.asyncio
    async def test_rejects_non_positive_delays(self):
        poller, _ = self._poller(FakeChainClient())
        with pytest.raises(ValueError):
            await poller.wait_for_receipt("0xdd", 1, initial_delay=0)


class TestTransactionSimulator:
    @pytest.mark.asyncio
    async def test_success_returns_data(self):
        client = FakeChainClient()
        client.simulation = "0x01"
        result = await TransactionSimulator(FakePool(client)).simulate(USER, ROUTER, "abcd", 5, 1)

        assert result.success
        assert result.return_data == "0x01"
        call = client.calls[0]
        assert call["data"] == "0xabcd"
        assert call["value"] == "0x5"
        assert call["from"] == USER

    @pytest.mark.asyncio
    async def test_revert_is_decoded(self):
        client = FakeChainClient()
        data = "0x08c379a0" + abi_encode(["string"], ["Return amount is not enough"]).hex()
        client.simulation = RPCError("execution reverted", code=3, data=data)

        result = await TransactionSimulator(FakePool(client)).simulate(USER, ROUTER, "0x", 0, 1)

        assert not result.success
        assert not result.transport_error
        assert result.revert_reason == "Return amount is not enough"

    @pytest.mark.asyncio
    async def test_revert_without_data_uses_message(self):
        client = FakeChainClient()
        client.simulation = RPCError("execution reverted")

        result = await TransactionSimulator(FakePool(client)).simulate(USER, ROUTER, "0x", 0, 1)

        assert result.revert_reason == "execution reverted"

    @pytest.mark.asyncio
    async def test_transport_failure_is_flagged_not_raised(self):
        client = FakeChainClient()
        client.simulation = TransportError("Network error: timeout")

        result = await TransactionSimulator(FakePool(client)).simulate(USER, ROUTER, "0x", 0, 1)

        assert not result.success
        assert result.transport_error
