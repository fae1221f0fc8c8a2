"""Assemble, sign and broadcast one EIP-1559 transaction."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from eth_account.datastructures import SignedTransaction

from core.abi import hex_to_bytes
from core.base_types import Address, TransactionRequest

from .client import ChainClient

if TYPE_CHECKING:
    from core.wallet_manager import WalletManager

logger = logging.getLogger(__name__)


class TransactionBuilder:
    """
    Chained setters over an immutable :class:`TransactionRequest`.

    Fields the caller leaves empty are filled from the node when the
    transaction is built: the nonce from the pending count, fees from
    :meth:`ChainClient.fee_quote`. Only the gas limit must come from the
    caller or from :meth:`estimate_gas`.

    Usage:
        tx_hash = (TransactionBuilder(client, wallet, chain_id=8453)
            .call(router, calldata, value=amount_in)
            .gas_limit(buffered_gas)
            .fees("medium")
            .send())
    """

    def __init__(self, client: ChainClient, wallet: "WalletManager", chain_id: int = 1):
        if chain_id <= 0:
            raise ValueError("chain_id must be positive")
        self._client = client
        self._wallet = wallet
        self._chain_id = chain_id
        self._request: Optional[TransactionRequest] = None
        self._speed = "medium"

    def call(
        self, to: str | Address, data: bytes | str = b"", value: int = 0
    ) -> "TransactionBuilder":
        if value < 0:
            raise ValueError("value must not be negative")
        target = to if isinstance(to, Address) else Address.from_string(to)
        payload = hex_to_bytes(data) if isinstance(data, str) else data
        self._request = TransactionRequest(
            to=target, value=value, data=payload, chain_id=self._chain_id
        )
        return self

    def nonce(self, nonce: int) -> "TransactionBuilder":
        """Pin the nonce, e.g. to replace a stuck transaction."""
        self._request = self._current().with_fields(nonce=nonce)
        return self

    def gas_limit(self, limit: int) -> "TransactionBuilder":
        if limit <= 0:
            raise ValueError("gas_limit must be positive")
        self._request = self._current().with_fields(gas_limit=limit)
        return self

    def estimate_gas(self, buffer: float = 1.2) -> "TransactionBuilder":
        if buffer <= 0:
            raise ValueError("buffer must be positive")
        estimate = self._client.estimate_gas(self._current(), sender=self._wallet.address)
        return self.gas_limit(int(estimate * buffer))

    def fees(self, speed: str = "medium") -> "TransactionBuilder":
        """Price the transaction from current network fees at ``speed``."""
        quote = self._client.fee_quote()
        self._request = self._current().with_fields(
            max_fee_per_gas=quote.max_fee(speed),
            max_priority_fee=quote.tip(speed),
        )
        self._speed = speed
        return self

    def build(self) -> TransactionRequest:
        request = self._current()
        if request.gas_limit is None:
            raise ValueError("gas_limit is required (set it or call estimate_gas)")
        if request.max_fee_per_gas is None:
            self.fees(self._speed)
        if request.nonce is None:
            sender = Address.from_string(self._wallet.address)
            self._request = self._current().with_fields(nonce=self._client.get_nonce(sender))
        return self._current()

    def sign(self) -> SignedTransaction:
        return self._wallet.sign_transaction(self.build().to_dict())

    def send(self) -> str:
        request = self.build()
        signed = self._wallet.sign_transaction(request.to_dict())
        tx_hash = self._client.send_transaction(signed.raw_transaction)
        logger.debug(
            "sent %s nonce=%s gas=%s to %s", tx_hash, request.nonce, request.gas_limit, request.to
        )
        return tx_hash

    def _current(self) -> TransactionRequest:
        if self._request is None:
            raise ValueError("call() must be set before anything else")
        return self._request
