"""
Video Credit Ledger

This module provides:
- View credits: top-ups and idempotent per-video deduction
- One-time video unlocks guarded against reused payment proofs
- Repeatable creator tips
- Append-only transactions with pending → completed / failed status
- BasePay surcharge policy applied to the charged amount
"""

from .models import (
    TransactionType,
    TransactionStatus,
    PaymentMethod,
    PaymentProof,
    Transaction,
    User,
    Video,
)
from .pricing import apply_discount
from .service import (
    LedgerService,
    LedgerServiceError,
    NotFoundError,
    AlreadyUnlockedError,
    DuplicateTransactionError,
    InvalidAmountError,
    InsufficientCreditsError,
    LedgerValidationError,
)
from .storage import InMemoryStorage, MongoStorage

__all__ = [
    "TransactionType",
    "TransactionStatus",
    "PaymentMethod",
    "PaymentProof",
    "Transaction",
    "User",
    "Video",
    "apply_discount",
    "LedgerService",
    "LedgerServiceError",
    "NotFoundError",
    "AlreadyUnlockedError",
    "DuplicateTransactionError",
    "InvalidAmountError",
    "InsufficientCreditsError",
    "LedgerValidationError",
    "InMemoryStorage",
    "MongoStorage",
]
