"""Chain-specific exceptions for RPC and transaction failures."""

from __future__ import annotations

from typing import Optional

from core.results import FailureCategory


class ChainError(Exception):
    """Base class for chain errors."""


class TransportError(ChainError):
    """Every endpoint and retry failed to produce a response."""


class RPCError(ChainError):
    """The node answered with an error object or an unusable payload."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        data: Optional[object] = None,
    ):
        self.code = code
        self.data = data
        super().__init__(message)

    @property
    def revert_data(self) -> Optional[str]:
        """Hex revert payload, if the node attached one."""
        data = self.data
        if isinstance(data, dict):
            data = data.get("data")
        if isinstance(data, str) and data.startswith("0x"):
            return data
        return None


class InsufficientFunds(RPCError):
    """Not enough balance for transaction."""


class NonceTooLow(RPCError):
    """Nonce already used."""


class ReplacementUnderpriced(RPCError):
    """Replacement transaction gas too low."""


def category_for(exc: BaseException) -> FailureCategory:
    """Taxonomy bucket for an exception raised by the chain layer."""
    if isinstance(exc, TransportError):
        return FailureCategory.TRANSPORT
    if isinstance(exc, RPCError):
        return FailureCategory.REVERT if exc.revert_data else FailureCategory.APPLICATION
    return FailureCategory.UNKNOWN
