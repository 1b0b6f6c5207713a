import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from .models import (
    CENT,
    CommissionRecord,
    Package,
    PaymentMethod,
    SystemDetails,
    Transaction,
    TransactionMetadata,
    TransactionType,
    User,
    quantize_money,
    utcnow,
)
from .transactions import TransactionStore

logger = logging.getLogger(__name__)


def commission_amount(purchase_amount: Decimal, package: Package) -> Decimal:
    """Referral commission for a purchase, rounded down to whole cents."""
    return quantize_money(purchase_amount * package.referral_commission / 100)


def split_evenly(total: Decimal, parts: int) -> list[Decimal]:
    """Split ``total`` into ``parts`` cent amounts that sum exactly to it.

    Largest remainder: every share gets the floor, and the leftover cents go
    one each to the first shares.
    """
    if parts < 1:
        raise ValueError("parts must be at least 1")
    cents = int(quantize_money(total) / CENT)
    base, remainder = divmod(cents, parts)
    return [(base + (1 if i < remainder else 0)) * CENT for i in range(parts)]


class CommissionCalculator:
    def __init__(self, transactions: TransactionStore, clock: Callable[[], datetime] = utcnow):
        self.transactions = transactions
        self.clock = clock

    def compute(self, purchase_amount: Decimal, package: Package) -> Decimal:
        return commission_amount(purchase_amount, package)

    def pay(
        self,
        purchase_amount: Decimal,
        package: Package,
        referrer: User,
        buyer: User,
        quantity: int,
        purchase_reference: str,
    ) -> tuple[Optional[Transaction], list[CommissionRecord]]:
        """Credit the referrer and return one commission record per holding.

        Returns ``(None, [])`` when the rounded commission is zero.
        """
        amount = self.compute(purchase_amount, package)
        if amount <= 0:
            return None, []

        txn = self.transactions.create(
            user_id=referrer.id,
            type=TransactionType.COMMISSION,
            amount=amount,
            payment_method=PaymentMethod.SYSTEM,
            payment_details=SystemDetails(),
            description=f"Referral commission for {buyer.full_name}'s package purchase",
            metadata=TransactionMetadata(
                package_id=package.id,
                referred_user_id=buyer.id,
                quantity=quantity,
            ),
            idempotency_key=f"commission:{purchase_reference}",
            completed=True,
        )
        paid_at = self.clock()
        records = [
            CommissionRecord(amount=share, paid_to=referrer.id, paid_at=paid_at)
            for share in split_evenly(amount, quantity)
        ]
        logger.info("Paid %s commission to %s for purchase %s", amount, referrer.id, purchase_reference)
        return txn, records
