from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import requests

from core.models import EncodedSwap, RouteSummary, TokenInfo, TokenPage

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://aggregator-api.kyberswap.com"
DEFAULT_TOKEN_API_URL = "https://kd-market-service-api.kyberengineering.io/ethereum"
DEFAULT_CLIENT_ID = "FlashTrade"

_UNAVAILABLE_STATUS = {408, 429, 500, 502, 503, 504}


class AggregatorError(RuntimeError):
    """The aggregator answered but refused or returned an unusable payload."""

    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        super().__init__(message)


class AggregatorUnavailable(RuntimeError):
    """The aggregator could not be reached or is overloaded."""


class KyberSwapClient:
    """
    KyberSwap aggregator client.

    ``get_routes`` prices a swap, ``build_route`` turns a route into router
    calldata, ``get_tokens`` pages through the token catalogue. Application
    failures raise :class:`AggregatorError`; connectivity failures raise
    :class:`AggregatorUnavailable`.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token_api_url: str | None = None,
        client_id: str = DEFAULT_CLIENT_ID,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._token_api_url = (token_api_url or DEFAULT_TOKEN_API_URL).rstrip("/")
        self._client_id = client_id
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update({"x-client-id": client_id})

    def _request(
        self,
        method: str,
        url: str,
        params: Dict[str, Any] | None = None,
        json_body: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        logger.debug("aggregator %s %s", method, url)
        try:
            if method == "GET":
                resp = self._session.get(url, params=params, timeout=self._timeout)
            else:
                resp = self._session.post(url, json=json_body, timeout=self._timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise AggregatorUnavailable(f"Network error: {exc}") from exc

        if resp.status_code in _UNAVAILABLE_STATUS:
            raise AggregatorUnavailable(f"Aggregator unavailable: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise AggregatorError(
                f"Aggregator request failed: HTTP {resp.status_code} body={resp.text!r}",
                code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise AggregatorError(f"Invalid JSON from aggregator: {resp.text!r}") from exc
        if not isinstance(data, dict):
            raise AggregatorError(f"Unexpected aggregator payload: {data!r}")
        return data

    @staticmethod
    def _unwrap(body: Dict[str, Any]) -> Dict[str, Any]:
        code = body.get("code", 0)
        payload = body.get("data")
        if code != 0 or payload is None:
            message = body.get("message") or "Empty response from aggregator"
            raise AggregatorError(str(message), code=code)
        return payload

    def get_routes(
        self, chain_name: str, token_in: str, token_out: str, amount_in: int
    ) -> RouteSummary:
        """Best route for ``amount_in`` raw units of ``token_in``."""
        if amount_in <= 0:
            raise ValueError("amount_in must be positive")
        url = f"{self._base_url}/{chain_name}/api/v1/routes"
        body = self._request(
            "GET",
            url,
            params={
                "tokenIn": token_in,
                "tokenOut": token_out,
                "amountIn": str(amount_in),
            },
        )
        data = self._unwrap(body)
        try:
            return RouteSummary.from_response(
                data["routeSummary"],
                router_address=str(data["routerAddress"]),
                fetched_at=time.time(),
            )
        except (KeyError, ValueError, TypeError) as exc:
            raise AggregatorError(f"Unexpected routes response schema: {data}") from exc

    def build_route(
        self,
        chain_name: str,
        route: RouteSummary,
        sender: str,
        recipient: str | None = None,
        slippage_bps: int = 50,
        deadline: int | None = None,
        permit: str | None = None,
    ) -> EncodedSwap:
        """Encode ``route`` into router calldata for ``sender``."""
        payload: Dict[str, Any] = {
            "routeSummary": route.to_request_payload(),
            "sender": sender,
            "recipient": recipient or sender,
            "slippageTolerance": slippage_bps,
            "enableGasEstimation": True,
            "source": self._client_id,
        }
        if deadline is not None:
            payload["deadline"] = deadline
        if permit is not None:
            payload["permit"] = permit

        url = f"{self._base_url}/{chain_name}/api/v1/route/build"
        data = self._unwrap(self._request("POST", url, json_body=payload))
        try:
            return EncodedSwap(
                amount_in=int(data["amountIn"]),
                amount_out=int(data["amountOut"]),
                gas=int(data.get("gas") or 0),
                gas_usd=float(data.get("gasUsd") or 0),
                data=str(data["data"]),
                router_address=str(data["routerAddress"]),
                transaction_value=int(data.get("transactionValue") or 0),
                additional_cost_usd=float(data.get("additionalCostUsd") or 0),
                additional_cost_message=str(data.get("additionalCostMessage") or ""),
            )
        except (KeyError, ValueError, TypeError) as exc:
            raise AggregatorError(f"Unexpected build response schema: {data}") from exc

    def get_tokens(
        self,
        page: int = 1,
        limit: int = 100,
        min_tvl: float = 10_000,
        sort: str = "tvl_desc",
    ) -> TokenPage:
        url = f"{self._token_api_url}/api/v1/tokens"
        body = self._request(
            "GET",
            url,
            params={"minTvl": min_tvl, "sort": sort, "page": page, "limit": limit},
        )
        try:
            tokens = [_parse_token(item) for item in body.get("data") or []]
            return TokenPage(
                tokens=tokens,
                page=int(body.get("page", page)),
                page_size=int(body.get("pageSize", limit)),
                total=int(body.get("total", len(tokens))),
                total_pages=int(body.get("totalPages", 0)),
            )
        except (KeyError, ValueError, TypeError) as exc:
            raise AggregatorError(f"Unexpected tokens response schema: {body}") from exc


def _parse_token(item: Dict[str, Any]) -> TokenInfo:
    return TokenInfo(
        address=str(item["address"]),
        name=str(item.get("name") or ""),
        symbol=str(item.get("symbol") or ""),
        decimals=int(item.get("decimals", 18)),
        logo_url=item.get("logoUrl"),
        is_verified=bool(item.get("isVerified", False)),
        is_whitelisted=bool(item.get("isWhitelisted", False)),
        is_stable=bool(item.get("isStable", False)),
        is_honeypot=bool(item.get("isHoneypot", False)),
        is_fot=bool(item.get("isFot", False)),
        tax=float(item.get("tax") or 0),
        total_tvl=float(item.get("totalTvlAllPools") or 0),
        pool_count=int(item.get("poolCount") or 0),
    )
