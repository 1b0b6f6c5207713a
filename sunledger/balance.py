import logging
from decimal import Decimal

from .errors import IdempotencyViolation, ValidationError
from .models import Transaction, TransactionStatus, TransactionType, User
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


# (sign, counter) per transaction type
EFFECTS: dict[TransactionType, tuple[int, str]] = {
    TransactionType.DEPOSIT: (1, "total_deposit"),
    TransactionType.WITHDRAWAL: (-1, "total_withdraw"),
    TransactionType.INVESTMENT: (-1, "total_investment"),
    TransactionType.PROFIT: (1, "total_profit"),
    TransactionType.COMMISSION: (1, "total_profit"),
    TransactionType.BONUS: (1, "total_profit"),
}


def signed_amount(txn: Transaction) -> Decimal:
    """Balance delta of a completed transaction; zero for refunds."""
    effect = EFFECTS.get(txn.type)
    if effect is None:
        return Decimal("0")
    return txn.amount * effect[0]


class BalanceMutator:
    """The only place a user's balance and rollup counters change.

    ``apply`` does not write; it returns the user as it must look once the
    transaction is committed, so the caller can store both together.
    """

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def apply(self, user: User, txn: Transaction) -> User:
        if txn.id in self.storage.applied_transactions:
            raise IdempotencyViolation(f"Balance effect of {txn.reference} was already applied")
        if txn.status != TransactionStatus.COMPLETED:
            raise ValueError(f"Cannot apply {txn.reference} in {txn.status.value} state")
        if txn.user_id != user.id:
            raise ValueError(f"Transaction {txn.reference} does not belong to user {user.id}")

        effect = EFFECTS.get(txn.type)
        if effect is None:
            return user.model_copy(deep=True)

        sign, counter = effect
        new_balance = user.balance + sign * txn.amount
        if new_balance < 0:
            raise ValidationError(
                f"Insufficient balance. Required: {txn.amount}, Available: {user.balance}"
            )
        updated = user.model_copy(deep=True)
        updated.balance = new_balance
        setattr(updated, counter, getattr(updated, counter) + txn.amount)
        return updated
