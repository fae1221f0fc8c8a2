from .client import ChainClient, FeeQuote
from .errors import (
    ChainError,
    InsufficientFunds,
    NonceTooLow,
    ReplacementUnderpriced,
    RPCError,
    TransportError,
)
from .networks import ClientPool, Network, network_for
from .transaction_builder import TransactionBuilder

__all__ = [
    "ChainClient",
    "ClientPool",
    "FeeQuote",
    "Network",
    "TransactionBuilder",
    "ChainError",
    "RPCError",
    "TransportError",
    "InsufficientFunds",
    "NonceTooLow",
    "ReplacementUnderpriced",
    "network_for",
]
