from .client import AggregatorError, AggregatorUnavailable, KyberSwapClient
from .quotes import QuoteService

__all__ = [
    "AggregatorError",
    "AggregatorUnavailable",
    "KyberSwapClient",
    "QuoteService",
]
