from .approval import ApprovalKind, ApprovalOutcome, ApprovalStep
from .engine import (
    ExecutionContext,
    ExecutorConfig,
    PurchaseIntent,
    SwapCancelled,
    SwapError,
    SwapExecutor,
    SwapPending,
    SwapRequest,
    SwapResult,
    SwapReverted,
    SwapState,
    SwapSuccess,
    buffered_gas_limit,
)
from .recovery import FailureClassifier, SubmissionGuard

__all__ = [
    "ApprovalKind",
    "ApprovalOutcome",
    "ApprovalStep",
    "ExecutionContext",
    "ExecutorConfig",
    "FailureClassifier",
    "PurchaseIntent",
    "SubmissionGuard",
    "SwapCancelled",
    "SwapError",
    "SwapExecutor",
    "SwapPending",
    "SwapRequest",
    "SwapResult",
    "SwapReverted",
    "SwapState",
    "SwapSuccess",
    "buffered_gas_limit",
]
