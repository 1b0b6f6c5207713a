"""
Ledger and Investment Accrual Engine

This package provides:
- A per-user cash balance kept consistent with completed transactions
- Transaction lifecycle: pending → processing → completed / failed / cancelled / rejected
- Exactly-once balance effects keyed on transaction id
- Package purchases that open per-unit holdings paying daily profit until maturity
- Referral commission split across a purchase batch
- Deposit and withdrawal flows with limits, charges and admin review
"""

from .errors import (
    LedgerServiceError,
    ValidationError,
    NotFoundError,
    InvalidTransitionError,
    IdempotencyViolation,
)
from .models import (
    TransactionType,
    TransactionStatus,
    HoldingStatus,
    PaymentMethod,
    Transaction,
    Holding,
    Package,
    User,
)
from .service import LedgerService

__all__ = [
    "LedgerServiceError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "IdempotencyViolation",
    "TransactionType",
    "TransactionStatus",
    "HoldingStatus",
    "PaymentMethod",
    "Transaction",
    "Holding",
    "Package",
    "User",
    "LedgerService",
]
