import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional
from uuid import UUID

from .config import Settings
from .errors import IdempotencyViolation, ValidationError
from .models import (
    MOBILE_WALLETS,
    BankDetails,
    CardDetails,
    DepositRequest,
    MobileWalletDetails,
    PaymentMethod,
    Transaction,
    TransactionStatus,
    TransactionType,
    WithdrawalRequest,
    quantize_money,
    utcnow,
)
from .notifications import NotificationDispatcher
from .transactions import TransactionStore
from .users import UserDirectory

logger = logging.getLogger(__name__)

OPEN_WITHDRAWAL_STATES = (TransactionStatus.PENDING, TransactionStatus.PROCESSING, TransactionStatus.COMPLETED)
DEPOSIT_METHODS = MOBILE_WALLETS + (PaymentMethod.BANK, PaymentMethod.CREDIT_CARD)
WITHDRAWAL_METHODS = MOBILE_WALLETS + (PaymentMethod.BANK,)


class PaymentProcessor:
    """Deposits and withdrawals.

    Policy: a withdrawal debits the balance only when it completes. Rejecting,
    failing or cancelling one that never completed leaves the balance alone.
    """

    def __init__(
        self,
        transactions: TransactionStore,
        users: UserDirectory,
        notifications: NotificationDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.transactions = transactions
        self.users = users
        self.notifications = notifications
        self.settings = settings
        self.clock = clock

    # Deposits

    def create_deposit(self, request: DepositRequest) -> Transaction:
        user = self.users.require_active(request.user_id)
        amount = Decimal(request.amount)
        if request.payment_method not in DEPOSIT_METHODS:
            raise ValidationError(f"Deposits via {request.payment_method.value} are not supported")
        if amount < self.settings.min_deposit:
            raise ValidationError(f"Minimum deposit amount is {self.settings.min_deposit}")
        if amount > self.settings.max_deposit:
            raise ValidationError(f"Maximum deposit amount is {self.settings.max_deposit}")

        if request.payment_method in MOBILE_WALLETS:
            details = MobileWalletDetails(
                channel=request.payment_method.value,
                sender_number=request.sender_number or user.phone,
            )
        elif request.payment_method == PaymentMethod.BANK:
            details = BankDetails(account_number=request.sender_number or "")
        else:
            details = CardDetails()

        txn = self.transactions.create(
            user_id=user.id,
            type=TransactionType.DEPOSIT,
            amount=amount,
            payment_method=request.payment_method,
            payment_details=details,
            description=f"Deposit via {request.payment_method.value.upper()}",
            idempotency_key=request.idempotency_key,
        )
        self.notifications.notify(
            user.id,
            "deposit_initiated",
            f"Deposit: send {amount} via {request.payment_method.value}. Ref: {txn.reference}",
        )
        return txn

    def verify_deposit(
        self,
        transaction_id: UUID,
        gateway_transaction_id: str,
        admin_id: Optional[UUID] = None,
    ) -> Transaction:
        """Complete a pending deposit once the gateway confirms it.

        Re-delivering the same gateway confirmation for an already completed
        deposit is answered with the stored transaction.
        """
        txn = self.transactions.get(transaction_id)
        if txn.type != TransactionType.DEPOSIT:
            raise ValidationError(f"Transaction {txn.reference} is not a deposit")

        with self.transactions.storage.user_lock(txn.user_id):
            txn = self.transactions.get(transaction_id)
            if txn.status == TransactionStatus.COMPLETED:
                if getattr(txn.payment_details, "gateway_transaction_id", None) == gateway_transaction_id:
                    logger.info("Duplicate verification of %s ignored", txn.reference)
                    return txn
                raise IdempotencyViolation(f"Deposit {txn.reference} is already completed")

            details = txn.payment_details.model_copy()
            if hasattr(details, "gateway_transaction_id"):
                details.gateway_transaction_id = gateway_transaction_id
            txn = self.transactions.transition(
                transaction_id,
                TransactionStatus.COMPLETED,
                actor=admin_id,
                notes="Verified by admin" if admin_id else "Verified with payment gateway",
                expected=[TransactionStatus.PENDING],
                payment_details=details,
            )
        balance = self.users.get_user(txn.user_id).balance
        self.notifications.notify(
            txn.user_id,
            "deposit_verified",
            f"Deposit of {txn.amount} successful. New balance: {balance}",
        )
        return txn

    # Withdrawals

    def daily_withdrawn(self, user_id: UUID) -> Decimal:
        """Withdrawals requested since local midnight that still count
        against the daily limit."""
        now = self.clock()
        local_now = now.astimezone(self.settings.local_timezone)
        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        return self.transactions.sum_amount(
            user_id=user_id,
            type=TransactionType.WITHDRAWAL,
            statuses=OPEN_WITHDRAWAL_STATES,
            since=midnight,
        )

    def request_withdrawal(self, request: WithdrawalRequest) -> Transaction:
        if request.idempotency_key:
            existing = self.transactions.storage.find_by_idempotency_key(request.idempotency_key)
            if existing is not None:
                return self.transactions.replay(
                    existing, request.user_id, TransactionType.WITHDRAWAL, Decimal(request.amount)
                )

        user = self.users.require_active(request.user_id)
        amount = Decimal(request.amount)
        if request.payment_method not in WITHDRAWAL_METHODS:
            raise ValidationError(f"Withdrawals to {request.payment_method.value} are not supported")
        if amount < self.settings.min_withdrawal:
            raise ValidationError(f"Minimum withdrawal amount is {self.settings.min_withdrawal}")
        if amount > self.settings.max_withdrawal:
            raise ValidationError(f"Maximum withdrawal amount is {self.settings.max_withdrawal}")

        with self.transactions.storage.user_lock(user.id):
            user = self.users.get_user(user.id)
            if amount > user.balance:
                raise ValidationError(f"Insufficient balance. Available: {user.balance}")
            used = self.daily_withdrawn(user.id)
            limit = self.settings.daily_withdrawal_limit
            if used + amount > limit:
                raise ValidationError(
                    f"Daily withdrawal limit exceeded. Daily limit: {limit}, Used: {used}"
                )

            charge = quantize_money(amount * self.settings.withdrawal_charge_percent / 100, ROUND_HALF_UP)
            if request.payment_method == PaymentMethod.BANK:
                details = BankDetails(bank_name=request.bank_name, account_number=request.destination)
            else:
                details = MobileWalletDetails(
                    channel=request.payment_method.value,
                    sender_number=user.phone,
                    receiver_number=request.destination,
                )
            txn = self.transactions.create(
                user_id=user.id,
                type=TransactionType.WITHDRAWAL,
                amount=amount,
                net_amount=amount - charge,
                charge=charge,
                payment_method=request.payment_method,
                payment_details=details,
                description=f"Withdrawal to {request.payment_method.value.upper()}: {request.destination}",
                idempotency_key=request.idempotency_key,
            )
        logger.info("Withdrawal %s of %s requested by %s", txn.reference, amount, user.id)
        return txn

    def process_withdrawal(self, transaction_id: UUID, admin_id: UUID, notes: Optional[str] = None) -> Transaction:
        self._require_type(transaction_id, TransactionType.WITHDRAWAL)
        txn = self.transactions.transition(
            transaction_id,
            TransactionStatus.COMPLETED,
            actor=admin_id,
            notes=notes or "Processed by admin",
            expected=[TransactionStatus.PENDING],
        )
        self._notify_paid_out(txn)
        return txn

    def begin_withdrawal_payout(self, transaction_id: UUID, admin_id: UUID) -> Transaction:
        self._require_type(transaction_id, TransactionType.WITHDRAWAL)
        return self.transactions.transition(
            transaction_id, TransactionStatus.PROCESSING, actor=admin_id, notes="Sent to payment gateway"
        )

    def confirm_withdrawal_payout(self, transaction_id: UUID, admin_id: Optional[UUID] = None) -> Transaction:
        self._require_type(transaction_id, TransactionType.WITHDRAWAL)
        txn = self.transactions.transition(
            transaction_id,
            TransactionStatus.COMPLETED,
            actor=admin_id,
            notes="Confirmed by payment gateway",
            expected=[TransactionStatus.PROCESSING],
        )
        self._notify_paid_out(txn)
        return txn

    def fail_withdrawal_payout(self, transaction_id: UUID, reason: str) -> Transaction:
        self._require_type(transaction_id, TransactionType.WITHDRAWAL)
        txn = self.transactions.transition(
            transaction_id, TransactionStatus.FAILED, notes=reason, expected=[TransactionStatus.PROCESSING]
        )
        self.notifications.notify(
            txn.user_id, "withdrawal_failed", f"Your withdrawal of {txn.amount} could not be sent. Reason: {reason}"
        )
        return txn

    def reject_withdrawal(self, transaction_id: UUID, admin_id: UUID, reason: str) -> Transaction:
        self._require_type(transaction_id, TransactionType.WITHDRAWAL)
        return self.reject_transaction(transaction_id, admin_id, reason)

    # Generic admin actions for pending deposits and withdrawals

    def process_transaction(self, transaction_id: UUID, admin_id: UUID, notes: Optional[str] = None) -> Transaction:
        txn = self.transactions.get(transaction_id)
        if txn.type == TransactionType.WITHDRAWAL:
            return self.process_withdrawal(transaction_id, admin_id, notes)
        if txn.type != TransactionType.DEPOSIT:
            raise ValidationError(f"{txn.type.value} transactions are not processed by admins")
        txn = self.transactions.transition(
            transaction_id,
            TransactionStatus.COMPLETED,
            actor=admin_id,
            notes=notes or "Verified by admin",
            expected=[TransactionStatus.PENDING],
        )
        self.notifications.notify(txn.user_id, "deposit_verified", f"Deposit of {txn.amount} successful.")
        return txn

    def reject_transaction(self, transaction_id: UUID, admin_id: UUID, reason: str) -> Transaction:
        if not reason:
            raise ValidationError("Rejection reason is required")
        txn = self.transactions.get(transaction_id)
        if txn.type not in (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL):
            raise ValidationError(f"{txn.type.value} transactions cannot be rejected")
        txn = self.transactions.transition(
            transaction_id,
            TransactionStatus.REJECTED,
            actor=admin_id,
            notes=reason,
            expected=[TransactionStatus.PENDING],
        )
        self.notifications.notify(
            txn.user_id,
            f"{txn.type.value}_rejected",
            f"Your {txn.type.value} request of {txn.amount} has been rejected. Reason: {reason}",
        )
        return txn

    def cancel_transaction(self, transaction_id: UUID, user_id: UUID) -> Transaction:
        txn = self.transactions.get(transaction_id)
        if txn.user_id != user_id:
            raise ValidationError("Only the owner can cancel this transaction")
        if txn.type not in (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL):
            raise ValidationError(f"{txn.type.value} transactions cannot be cancelled")
        return self.transactions.transition(
            transaction_id,
            TransactionStatus.CANCELLED,
            actor=user_id,
            notes="Cancelled by user",
            expected=[TransactionStatus.PENDING],
        )

    def _require_type(self, transaction_id: UUID, type: TransactionType) -> None:
        txn = self.transactions.get(transaction_id)
        if txn.type != type:
            raise ValidationError(f"Transaction {txn.reference} is not a {type.value}")

    def _notify_paid_out(self, txn: Transaction) -> None:
        self.notifications.notify(
            txn.user_id,
            "withdrawal_processed",
            f"Your withdrawal of {txn.amount} has been processed. Net amount: {txn.net_amount} "
            f"has been sent to your {txn.payment_method.value} account.",
        )

