"""Local-key wallet implementing the Signer capability."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from eth_account import Account
from eth_account.datastructures import SignedMessage, SignedTransaction
from eth_account.messages import encode_typed_data
from eth_utils.address import to_checksum_address

from chain.networks import ClientPool
from chain.transaction_builder import TransactionBuilder
from config import get_env
from core.base_types import Address

logger = logging.getLogger(__name__)


def _mask_private_key(private_key: Any) -> str:
    if isinstance(private_key, (bytes, bytearray)):
        raw = private_key.hex()
    else:
        raw = str(private_key)

    if raw.startswith("0x"):
        raw = raw[2:]

    if len(raw) < 10:
        return "<redacted>"

    return f"0x{raw[:6]}...{raw[-4:]}"


def _validate_eip712_types(types: dict) -> None:
    if not isinstance(types, dict) or not types:
        raise TypeError("types must be a non-empty dict")

    for type_name, fields in types.items():
        if not isinstance(type_name, str) or not type_name:
            raise TypeError("types keys must be non-empty strings")
        if not isinstance(fields, list) or not fields:
            raise TypeError("types values must be non-empty lists")
        for field in fields:
            if not isinstance(field, dict):
                raise TypeError("each field must be a dict with name/type")
            if "name" not in field or "type" not in field:
                raise TypeError("each field must include name and type")


class WalletManager:
    """
    Local-key ``Signer``.

    Transactions are built with :class:`chain.TransactionBuilder` against
    the client for the requested chain, signed with the held key and
    submitted with ``eth_sendRawTransaction``.

    CRITICAL: Private key must never appear in logs, errors, or string
    representations.
    """

    def __init__(
        self, private_key: str | bytes, clients: Optional[ClientPool] = None
    ) -> None:
        try:
            self._account = Account.from_key(private_key)
        except Exception as exc:
            masked = _mask_private_key(private_key)
            raise ValueError(f"Invalid private key: {masked}") from exc
        self._clients = clients

    @classmethod
    def from_env(
        cls, env_var: str = "PRIVATE_KEY", clients: Optional[ClientPool] = None
    ) -> "WalletManager":
        """Load the key from ``env_var`` (the process environment or ``.env``)."""
        value = get_env(env_var)
        if not value:
            raise ValueError(f"Environment variable {env_var} is not set")
        return cls(value, clients=clients)

    @property
    def address(self) -> str:
        """Returns checksummed address."""
        return to_checksum_address(self._account.address)

    def sign_eip712(self, domain: dict, types: dict, value: dict) -> SignedMessage:
        """Sign EIP-712 typed data given as separate domain/types/message."""
        if not isinstance(domain, dict):
            raise TypeError("domain must be a dict")
        if not isinstance(value, dict):
            raise TypeError("value must be a dict")
        _validate_eip712_types(types)
        signable = encode_typed_data(
            domain_data=domain, message_types=types, message_data=value
        )
        return self._account.sign_message(signable)

    def sign_typed_data(self, owner: str, typed_data_json: str) -> str:
        """Sign a full EIP-712 JSON document; returns 0x-prefixed 65-byte hex."""
        if Address.from_string(owner) != self.address:
            raise ValueError("owner does not match signing wallet")
        document = json.loads(typed_data_json)
        if not isinstance(document, dict):
            raise TypeError("typed data must be a JSON object")
        types = {
            name: fields
            for name, fields in document.get("types", {}).items()
            if name != "EIP712Domain"
        }
        signed = self.sign_eip712(
            domain=document.get("domain", {}),
            types=types,
            value=document.get("message", {}),
        )
        return "0x" + bytes(signed.signature).hex()

    def sign_transaction(self, tx: dict) -> SignedTransaction:
        """Sign a transaction dict."""
        if not isinstance(tx, dict):
            raise TypeError("tx must be a dict")
        if not tx:
            raise ValueError("tx must not be empty")
        return self._account.sign_transaction(tx)

    def sign_and_send(
        self,
        to: str,
        data: str,
        value: int,
        chain_id: int,
        gas_limit: int,
        sender: str,
    ) -> str:
        if self._clients is None:
            raise ValueError("WalletManager has no chain clients configured")
        if Address.from_string(sender) != self.address:
            raise ValueError("sender does not match signing wallet")
        client = self._clients.for_chain(chain_id)
        tx_hash = (
            TransactionBuilder(client, self, chain_id=chain_id)
            .call(to, data, value=value)
            .gas_limit(gas_limit)
            .fees("medium")
            .send()
        )
        logger.info("submitted tx %s on chain %s", tx_hash, chain_id)
        return tx_hash

    def __repr__(self) -> str:
        """MUST NOT expose private key."""
        return f"WalletManager(address={self.address})"

    def __str__(self) -> str:
        return self.__repr__()
