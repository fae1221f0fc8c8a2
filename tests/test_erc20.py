"""Tests for chain.erc20 and chain.permit."""

import json

import pytest
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode

from chain.erc20 import APPROVE_GAS_LIMIT, AllowanceManager, TokenCapabilities
from chain.errors import RPCError, TransportError
from chain.permit import (
    PermitSigner,
    build_permit_typed_data,
    encode_permit_calldata,
    split_signature,
)
from core.base_types import MAX_UINT256, NATIVE_TOKEN_ADDRESS
from core.results import Err, FailureCategory, Ok
from fakes import ROUTER, SIGNATURE, TOKEN, USER, FakeChainClient, FakePool, FakeSigner, word


async def _no_sleep(_):
    return None


class TestAllowanceManager:
    @pytest.mark.asyncio
    async def test_native_token_needs_no_allowance(self):
        client = FakeChainClient()
        manager = AllowanceManager(FakePool(client), FakeSigner())
        result = await manager.get_allowance(NATIVE_TOKEN_ADDRESS, USER, ROUTER, 1)
        assert result == Ok(MAX_UINT256)
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_reads_allowance(self):
        client = FakeChainClient()
        client.set_call(TOKEN, "allowance(address,address)", word(500))
        manager = AllowanceManager(FakePool(client), FakeSigner())
        assert await manager.get_allowance(TOKEN, USER, ROUTER, 1) == Ok(500)

    @pytest.mark.asyncio
    async def test_read_failure_is_typed(self):
        client = FakeChainClient()
        client.set_call(TOKEN, "allowance(address,address)", TransportError("down"))
        manager = AllowanceManager(FakePool(client), FakeSigner())
        result = await manager.get_allowance(TOKEN, USER, ROUTER, 1)
        assert isinstance(result, Err)
        assert result.category is FailureCategory.TRANSPORT

    @pytest.mark.asyncio
    async def test_approve_sends_encoded_call(self):
        signer = FakeSigner()
        manager = AllowanceManager(FakePool(FakeChainClient()), signer)
        result = await manager.approve(TOKEN, ROUTER, MAX_UINT256, 1, USER)

        assert isinstance(result, Ok)
        sent = signer.sent[0]
        assert sent["data"].startswith("0x095ea7b3")
        assert sent["gas_limit"] == APPROVE_GAS_LIMIT
        assert sent["to"].lower() == TOKEN
        spender, amount = abi_decode(["address", "uint256"], bytes.fromhex(sent["data"][10:]))
        assert spender.lower() == ROUTER
        assert amount == MAX_UINT256

    @pytest.mark.asyncio
    async def test_approve_native_is_noop(self):
        signer = FakeSigner()
        manager = AllowanceManager(FakePool(FakeChainClient()), signer)
        assert await manager.approve(NATIVE_TOKEN_ADDRESS, ROUTER, 1, 1, USER) == Ok(None)
        assert signer.sent == []

    @pytest.mark.asyncio
    async def test_wait_for_allowance_polls_until_sufficient(self):
        client = FakeChainClient()
        client.set_call(TOKEN, "allowance(address,address)", [word(0), word(0), word(10)])
        manager = AllowanceManager(FakePool(client), FakeSigner(), sleep=_no_sleep)
        assert await manager.wait_for_allowance(TOKEN, USER, ROUTER, 10, 1, attempts=5)

    @pytest.mark.asyncio
    async def test_wait_for_allowance_gives_up(self):
        client = FakeChainClient()
        client.set_call(TOKEN, "allowance(address,address)", word(0))
        manager = AllowanceManager(FakePool(client), FakeSigner(), sleep=_no_sleep)
        assert not await manager.wait_for_allowance(TOKEN, USER, ROUTER, 10, 1, attempts=3)


class TestTokenCapabilities:
    @pytest.mark.asyncio
    async def test_permit_support_cached(self):
        client = FakeChainClient()
        client.set_call(TOKEN, "DOMAIN_SEPARATOR()", "0x" + "ab" * 32)
        caps = TokenCapabilities(FakePool(client))

        assert await caps.supports_permit(TOKEN, 1)
        assert await caps.supports_permit(TOKEN, 1)
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_zero_or_failing_separator_means_no_permit(self):
        client = FakeChainClient()
        client.set_call(TOKEN, "DOMAIN_SEPARATOR()", "0x" + "00" * 32)
        caps = TokenCapabilities(FakePool(client))
        assert not await caps.supports_permit(TOKEN, 1)

        other = "0x3333333333333333333333333333333333333333"
        client.set_call(other, "DOMAIN_SEPARATOR()", RPCError("execution reverted"))
        assert not await caps.supports_permit(other, 1)
        assert not await caps.supports_permit(NATIVE_TOKEN_ADDRESS, 1)

    @pytest.mark.asyncio
    async def test_token_name_string_and_bytes32(self):
        client = FakeChainClient()
        client.set_call(TOKEN, "name()", "0x" + abi_encode(["string"], ["Dai Stablecoin"]).hex())
        legacy = "0x3333333333333333333333333333333333333333"
        client.set_call(legacy, "name()", "0x" + b"Maker".ljust(32, b"\x00").hex())
        caps = TokenCapabilities(FakePool(client))

        assert await caps.token_name(TOKEN, 1) == Ok("Dai Stablecoin")
        assert await caps.token_name(legacy, 1) == Ok("Maker")

    @pytest.mark.asyncio
    async def test_native_balance_uses_account_balance(self):
        client = FakeChainClient()
        client.native_balance = 7
        caps = TokenCapabilities(FakePool(client))
        assert await caps.balance_of(NATIVE_TOKEN_ADDRESS, USER, 1) == Ok(7)

    @pytest.mark.asyncio
    async def test_erc20_balance(self):
        client = FakeChainClient()
        client.set_call(TOKEN, "balanceOf(address)", word(42))
        caps = TokenCapabilities(FakePool(client))
        assert await caps.balance_of(TOKEN, USER, 1) == Ok(42)


class TestPermit:
    def test_split_signature(self):
        v, r, s = split_signature(SIGNATURE)
        assert v == 27
        assert r == b"\x11" * 32
        assert s == b"\x22" * 32

    def test_split_signature_rejects_bad_length(self):
        with pytest.raises(ValueError, match="Invalid signature length"):
            split_signature("0x1234")

    def test_calldata_is_seven_words(self):
        data = encode_permit_calldata(USER, ROUTER, 5, 100, 27, b"\x11" * 32, b"\x22" * 32)
        assert data.startswith("0x")
        assert len(data) == 2 + 7 * 64

    def test_typed_data_shape(self):
        typed = build_permit_typed_data("Token", 1, TOKEN, USER, ROUTER, 5, 3, 100)
        assert typed["primaryType"] == "Permit"
        assert typed["domain"]["version"] == "1"
        assert typed["message"]["nonce"] == 3

    @pytest.mark.asyncio
    async def test_sign_permit(self):
        client = FakeChainClient()
        client.set_call(TOKEN, "name()", "0x" + abi_encode(["string"], ["Token"]).hex())
        client.set_call(TOKEN, "nonces(address)", word(4))
        signer = FakeSigner()
        permits = PermitSigner(TokenCapabilities(FakePool(client)), signer)

        result = await permits.sign_permit(TOKEN, USER, ROUTER, 1000, 1_700_000_000, 1)

        assert isinstance(result, Ok)
        owner, spender, value, deadline, v, r, s = abi_decode(
            ["address", "address", "uint256", "uint256", "uint8", "bytes32", "bytes32"],
            bytes.fromhex(result.value[2:]),
        )
        assert (value, deadline, v) == (1000, 1_700_000_000, 27)
        assert json.loads(signer.typed[0])["message"]["nonce"] == 4

    @pytest.mark.asyncio
    async def test_sign_permit_bad_signature(self):
        client = FakeChainClient()
        client.set_call(TOKEN, "name()", "0x" + abi_encode(["string"], ["Token"]).hex())
        signer = FakeSigner()
        signer.signature = "0xdead"
        permits = PermitSigner(TokenCapabilities(FakePool(client)), signer)

        result = await permits.sign_permit(TOKEN, USER, ROUTER, 1, 1, 1)

        assert isinstance(result, Err)
        assert result.category is FailureCategory.VALIDATION
