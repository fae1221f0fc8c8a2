from .base import Ledger
from .models import (
    DuplicatePurchase,
    InvalidTransition,
    Purchase,
    PurchaseNotFound,
    PurchaseStatus,
    can_transition,
)
from .sql import SqlLedger

__all__ = [
    "DuplicatePurchase",
    "InvalidTransition",
    "Ledger",
    "Purchase",
    "PurchaseNotFound",
    "PurchaseStatus",
    "SqlLedger",
    "can_transition",
]
