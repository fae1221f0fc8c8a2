"""Tests for the KyberSwap client and the cached quote service."""

import pytest
import requests

from aggregator.client import AggregatorError, AggregatorUnavailable, KyberSwapClient
from aggregator.quotes import QuoteService, popular_pairs
from core.base_types import NATIVE_TOKEN_ADDRESS
from core.cache import cache_key
from fakes import ROUTER, USDC, WETH, FakeAggregator, make_route


class _Response:
    def __init__(self, payload, status_code=200, text=""):
        self._payload = payload
        self.status_code = status_code
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def _route_body(amount_in=1000, amount_out=2000):
    summary = make_route(WETH, USDC, amount_in, amount_out).raw
    return {"code": 0, "data": {"routeSummary": summary, "routerAddress": ROUTER}}


class TestKyberSwapClient:
    def test_get_routes_parses_summary(self, monkeypatch):
        client = KyberSwapClient()
        seen = {}

        def fake_get(url, params=None, timeout=None):
            seen["url"] = url
            seen["params"] = params
            return _Response(_route_body())

        monkeypatch.setattr(client._session, "get", fake_get)
        route = client.get_routes("base", WETH, USDC, 1000)

        assert seen["url"].endswith("/base/api/v1/routes")
        assert seen["params"]["amountIn"] == "1000"
        assert route.amount_out == 2000
        assert route.router_address == ROUTER
        assert route.hops[0][0].exchange == "uniswap-v3"

    def test_non_zero_code_is_application_error(self, monkeypatch):
        client = KyberSwapClient()
        body = {"code": 4008, "message": "route not found"}
        monkeypatch.setattr(client._session, "get", lambda *a, **k: _Response(body))

        with pytest.raises(AggregatorError, match="route not found") as exc:
            client.get_routes("ethereum", WETH, USDC, 1)
        assert exc.value.code == 4008

    def test_missing_fields_is_schema_error(self, monkeypatch):
        client = KyberSwapClient()
        body = {"code": 0, "data": {"routeSummary": {"tokenIn": WETH}}}
        monkeypatch.setattr(client._session, "get", lambda *a, **k: _Response(body))

        with pytest.raises(AggregatorError, match="schema"):
            client.get_routes("ethereum", WETH, USDC, 1)

    @pytest.mark.parametrize("status", [429, 502, 503])
    def test_overload_is_unavailable(self, monkeypatch, status):
        client = KyberSwapClient()
        monkeypatch.setattr(client._session, "get", lambda *a, **k: _Response({}, status))

        with pytest.raises(AggregatorUnavailable):
            client.get_routes("ethereum", WETH, USDC, 1)

    def test_timeout_is_unavailable(self, monkeypatch):
        client = KyberSwapClient()

        def fake_get(*args, **kwargs):
            raise requests.Timeout("slow")

        monkeypatch.setattr(client._session, "get", fake_get)
        with pytest.raises(AggregatorUnavailable, match="Network error"):
            client.get_routes("ethereum", WETH, USDC, 1)

    def test_bad_request_is_application_error(self, monkeypatch):
        client = KyberSwapClient()
        monkeypatch.setattr(
            client._session, "get", lambda *a, **k: _Response({}, 400, text="bad amount")
        )
        with pytest.raises(AggregatorError) as exc:
            client.get_routes("ethereum", WETH, USDC, 1)
        assert exc.value.code == 400

    def test_rejects_non_positive_amount(self):
        with pytest.raises(ValueError):
            KyberSwapClient().get_routes("ethereum", WETH, USDC, 0)

    def test_build_route_sends_summary_unchanged(self, monkeypatch):
        client = KyberSwapClient(client_id="tests")
        route = make_route(WETH, USDC, 1000)
        sent = {}

        def fake_post(url, json=None, timeout=None):
            sent["url"] = url
            sent["json"] = json
            return _Response(
                {
                    "code": 0,
                    "data": {
                        "amountIn": "1000",
                        "amountOut": "1990",
                        "gas": "210000",
                        "gasUsd": "1.2",
                        "data": "0xabcdef",
                        "routerAddress": ROUTER,
                        "transactionValue": "0",
                    },
                }
            )

        monkeypatch.setattr(client._session, "post", fake_post)
        built = client.build_route(
            "ethereum", route, sender=WETH, slippage_bps=100, deadline=123, permit="0x01"
        )

        assert sent["url"].endswith("/ethereum/api/v1/route/build")
        payload = sent["json"]
        assert payload["routeSummary"] == route.raw
        assert payload["recipient"] == WETH
        assert payload["slippageTolerance"] == 100
        assert payload["deadline"] == 123
        assert payload["permit"] == "0x01"
        assert payload["source"] == "tests"
        assert built.gas == 210_000
        assert built.data == "0xabcdef"

    def test_get_tokens_parses_page(self, monkeypatch):
        client = KyberSwapClient()
        body = {
            "data": [
                {
                    "address": USDC,
                    "name": "USD Coin",
                    "symbol": "USDC",
                    "decimals": 6,
                    "isStable": True,
                    "totalTvlAllPools": "123.5",
                    "poolCount": 7,
                }
            ],
            "page": 2,
            "pageSize": 100,
            "total": 101,
            "totalPages": 2,
        }
        monkeypatch.setattr(client._session, "get", lambda *a, **k: _Response(body))

        page = client.get_tokens(page=2)

        assert page.total_pages == 2
        token = page.tokens[0]
        assert token.decimals == 6
        assert token.is_stable
        assert token.total_tvl == 123.5
        assert token.pool_count == 7


class TestQuoteService:
    @pytest.mark.asyncio
    async def test_cache_hit_skips_api(self):
        api = FakeAggregator()
        service = QuoteService(api)

        first = await service.get_route(1, WETH, USDC, 1000)
        second = await service.get_route(1, WETH, USDC, 1000)

        assert first is second
        assert len(api.route_calls) == 1
        assert api.route_calls[0][0] == "ethereum"

    @pytest.mark.asyncio
    async def test_same_pair_on_two_chains_cached_separately(self):
        api = FakeAggregator()
        service = QuoteService(api)

        mainnet = await service.get_route(1, WETH, USDC, 1000)
        base = await service.get_route(8453, WETH, USDC, 1000)

        assert [call[0] for call in api.route_calls] == ["ethereum", "base"]
        assert (mainnet.chain_id, base.chain_id) == (1, 8453)
        assert await service.get_route(8453, WETH, USDC, 1000) is base
        assert await service.get_route(1, WETH, USDC, 1000) is mainnet
        assert len(api.route_calls) == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_cache(self):
        api = FakeAggregator()
        service = QuoteService(api)

        await service.get_route(1, WETH, USDC, 1000)
        await service.get_route(1, WETH, USDC, 1000, force_refresh=True)

        assert len(api.route_calls) == 2

    @pytest.mark.asyncio
    async def test_expired_route_is_refetched(self):
        api = FakeAggregator()
        service = QuoteService(api)
        service.route_cache.put(make_route(WETH, USDC, 1000, fetched_at=0.0))

        route = await service.get_route(1, WETH, USDC, 1000)

        assert not route.is_expired()
        assert len(api.route_calls) == 1

    @pytest.mark.asyncio
    async def test_quote_served_from_route_fetch(self):
        api = FakeAggregator()
        service = QuoteService(api)

        quote = await service.get_quote(8453, WETH, USDC, 500)
        again = await service.get_quote(8453, WETH, USDC, 500)

        assert quote.amount_out == 1000
        assert again == quote
        assert len(api.route_calls) == 1
        assert service.quote_cache.is_cached(cache_key(8453, WETH, USDC, 500))

    @pytest.mark.asyncio
    async def test_invalidate_drops_both_entries(self):
        service = QuoteService(FakeAggregator())
        await service.get_route(1, WETH, USDC, 1000)

        service.invalidate(1, WETH, USDC, 1000)

        assert service.route_cache.size() == 0
        assert service.quote_cache.size() == 0

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        api = FakeAggregator()
        api.route_errors.append(AggregatorUnavailable("down"))
        with pytest.raises(AggregatorUnavailable):
            await QuoteService(api).get_route(1, WETH, USDC, 1000)

    @pytest.mark.asyncio
    async def test_prefetch_popular_keeps_partial_results(self):
        api = FakeAggregator()
        api.route_errors.append(AggregatorError("no route"))
        service = QuoteService(api)

        loaded = await service.prefetch_popular(1)

        assert loaded == len(popular_pairs(1)) - 1
        assert service.route_cache.size() == loaded

    def test_popular_pairs_use_network_tokens(self):
        pairs = popular_pairs(8453)
        assert pairs[0][0] == NATIVE_TOKEN_ADDRESS
        assert len(pairs) == 3
