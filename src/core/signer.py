"""Signer capability consumed by the swap pipeline."""

from __future__ import annotations

from typing import Protocol


class Signer(Protocol):
    """
    Opaque signing capability.

    The pipeline only builds payloads; custody and submission stay behind
    this interface. ``sign_and_send`` returns the transaction hash and
    ``sign_typed_data`` returns a 0x-prefixed 65-byte signature.
    """

    def sign_and_send(
        self,
        to: str,
        data: str,
        value: int,
        chain_id: int,
        gas_limit: int,
        sender: str,
    ) -> str: ...

    def sign_typed_data(self, owner: str, typed_data_json: str) -> str: ...
