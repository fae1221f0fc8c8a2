"""Chain registry and per-chain RPC client resolution."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from config import rpc_url_override

from .client import ChainClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Network:
    chain_id: int
    name: str
    rpc_url: str
    native_symbol: str = "ETH"
    stablecoin: Optional[str] = None
    wrapped_native: Optional[str] = None


ETHEREUM = Network(
    chain_id=1,
    name="ethereum",
    rpc_url="https://eth.llamarpc.com",
    stablecoin="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
    wrapped_native="0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
)
BASE = Network(
    chain_id=8453,
    name="base",
    rpc_url="https://mainnet.base.org",
    stablecoin="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    wrapped_native="0x4200000000000000000000000000000000000006",
)
ARBITRUM = Network(
    chain_id=42161,
    name="arbitrum",
    rpc_url="https://arb1.arbitrum.io/rpc",
    stablecoin="0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
    wrapped_native="0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
)
OPTIMISM = Network(
    chain_id=10,
    name="optimism",
    rpc_url="https://mainnet.optimism.io",
    stablecoin="0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85",
    wrapped_native="0x4200000000000000000000000000000000000006",
)
POLYGON = Network(
    chain_id=137,
    name="polygon",
    rpc_url="https://polygon-rpc.com",
    native_symbol="POL",
    stablecoin="0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
    wrapped_native="0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270",
)
BSC = Network(
    chain_id=56,
    name="bsc",
    rpc_url="https://bsc-dataseed.binance.org",
    native_symbol="BNB",
    stablecoin="0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d",
    wrapped_native="0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c",
)

NETWORKS: dict[int, Network] = {
    network.chain_id: network
    for network in (ETHEREUM, BASE, ARBITRUM, OPTIMISM, POLYGON, BSC)
}


def network_for(chain_id: int) -> Network:
    """Registered network for ``chain_id``; unknown ids fall back to Ethereum."""
    network = NETWORKS.get(chain_id)
    if network is None:
        logger.warning("unknown chain id %s, using ethereum", chain_id)
        return ETHEREUM
    return network


def network_by_name(name: str) -> Network:
    for network in NETWORKS.values():
        if network.name == name.lower():
            return network
    raise ValueError(f"Unknown network: {name}")


class ClientPool:
    """One ``ChainClient`` per chain id, created on first use."""

    def __init__(
        self,
        timeout: int = 30,
        max_retries: int = 3,
        url_resolver: Callable[[Network], list[str]] | None = None,
    ):
        self._timeout = timeout
        self._max_retries = max_retries
        self._url_resolver = url_resolver or _default_urls
        self._clients: dict[int, ChainClient] = {}
        self._lock = threading.Lock()

    def for_chain(self, chain_id: int) -> ChainClient:
        with self._lock:
            client = self._clients.get(chain_id)
            if client is None:
                network = network_for(chain_id)
                client = ChainClient(
                    self._url_resolver(network),
                    timeout=self._timeout,
                    max_retries=self._max_retries,
                )
                self._clients[chain_id] = client
            return client

    def register(self, chain_id: int, client: ChainClient) -> None:
        with self._lock:
            self._clients[chain_id] = client


def _default_urls(network: Network) -> list[str]:
    override = rpc_url_override(network.name)
    if override:
        return [url.strip() for url in override.split(",") if url.strip()]
    return [network.rpc_url]
