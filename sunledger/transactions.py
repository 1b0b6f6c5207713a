import logging
import math
import secrets
import time
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

from pydantic import ValidationError as ModelValidationError

from .balance import BalanceMutator, signed_amount
from .config import Settings
from .errors import IdempotencyViolation, InvalidTransitionError, ValidationError
from .models import (
    BalanceReconciliation,
    Holding,
    PaymentMethod,
    SystemDetails,
    Transaction,
    TransactionMetadata,
    TransactionPage,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from .storage import DuplicateReferenceError, InMemoryStorage

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.PROCESSING,
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
        TransactionStatus.REJECTED,
    }),
    TransactionStatus.PROCESSING: frozenset({
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
    }),
}

SYSTEM_TYPES = (TransactionType.PROFIT, TransactionType.COMMISSION, TransactionType.BONUS, TransactionType.INVESTMENT)


class TransactionStore:
    def __init__(
        self,
        storage: InMemoryStorage,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.settings = settings
        self.clock = clock
        self.mutator = BalanceMutator(storage)

    def new_reference(self) -> str:
        # Wall time; created_at carries the business clock.
        millis = str(time.time_ns() // 1_000_000)[-8:]
        return f"{self.settings.reference_prefix}{millis}{secrets.randbelow(9000) + 1000}"

    def create(
        self,
        user_id: UUID,
        type: TransactionType,
        amount: Decimal,
        payment_method: PaymentMethod,
        description: str,
        payment_details=None,
        net_amount: Optional[Decimal] = None,
        charge: Decimal = Decimal("0.00"),
        metadata: Optional[TransactionMetadata] = None,
        idempotency_key: Optional[str] = None,
        completed: bool = False,
        holdings: Optional[list[Holding]] = None,
        transaction_id: Optional[UUID] = None,
    ) -> Transaction:
        """Record a new transaction.

        ``completed`` is for system-generated credits and debits: the
        transaction is inserted already completed and its balance effect is
        committed with it, together with any ``holdings`` passed along.
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        if type == TransactionType.WITHDRAWAL and net_amount is None:
            raise ValidationError("Withdrawal requires a net amount")
        if completed and type not in SYSTEM_TYPES:
            raise ValidationError(f"{type.value} transactions must start pending")

        metadata = metadata.model_copy() if metadata else TransactionMetadata()
        if idempotency_key:
            existing = self.storage.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                return self.replay(existing, user_id, type, amount)
            metadata.idempotency_key = idempotency_key

        self.storage.get_user(user_id)
        if payment_details is None:
            payment_details = SystemDetails()
        if payment_details.channel != payment_method.value:
            raise ValidationError(
                f"Payment details for {payment_details.channel} do not match method {payment_method.value}"
            )

        for attempt in range(self.settings.reference_max_attempts):
            try:
                txn = Transaction(
                    id=transaction_id or uuid4(),
                    user_id=user_id,
                    type=type,
                    amount=amount,
                    net_amount=net_amount,
                    charge=charge,
                    payment_method=payment_method,
                    payment_details=payment_details,
                    description=description,
                    reference=self.new_reference(),
                    metadata=metadata,
                    created_at=self.clock(),
                )
            except ModelValidationError as e:
                raise ValidationError(str(e)) from e
            try:
                if completed:
                    self._commit_new_completed(txn, holdings)
                else:
                    self.storage.insert_transaction(txn)
            except DuplicateReferenceError:
                logger.warning("Reference collision on %s (attempt %d)", txn.reference, attempt + 1)
                continue
            except IdempotencyViolation:
                # Lost a race on the same key; the winner's record decides.
                existing = self.storage.find_by_idempotency_key(idempotency_key)
                return self.replay(existing, user_id, type, amount)
            if completed:
                logger.info("Completed %s %s of %s for user %s", txn.type.value, txn.reference, txn.amount, user_id)
            return self.storage.get_transaction(txn.id)
        raise ValidationError("Could not allocate a unique transaction reference")

    def replay(self, existing: Transaction, user_id: UUID, type: TransactionType, amount: Decimal) -> Transaction:
        if existing.user_id != user_id or existing.type != type or existing.amount != amount:
            raise IdempotencyViolation(
                f"Idempotency key already used for {existing.reference} with different parameters"
            )
        return existing

    def _commit_new_completed(self, txn: Transaction, holdings: Optional[list[Holding]]) -> None:
        with self.storage.user_lock(txn.user_id):
            user = self.storage.get_user(txn.user_id)
            txn.status = TransactionStatus.COMPLETED
            txn.processed_at = txn.created_at
            updated = self.mutator.apply(user, txn)
            self.storage.commit_completion(txn, updated, insert=True, holdings=holdings)

    def transition(
        self,
        transaction_id: UUID,
        new_status: TransactionStatus,
        actor: Optional[UUID] = None,
        notes: Optional[str] = None,
        expected: Optional[Iterable[TransactionStatus]] = None,
        payment_details=None,
    ) -> Transaction:
        """Move a transaction to ``new_status``.

        ``expected`` narrows the statuses the caller accepts as a starting
        point. Completion commits the balance effect atomically with the
        status write.
        """
        txn = self.storage.get_transaction(transaction_id)
        with self.storage.user_lock(txn.user_id):
            txn = self.storage.get_transaction(transaction_id)
            self._check_transition(txn, new_status, expected)

            txn.status = new_status
            if actor is not None:
                txn.processed_by = actor
            if notes is not None:
                txn.notes = notes
            if payment_details is not None:
                txn.payment_details = payment_details
            if new_status.is_terminal:
                txn.processed_at = self.clock()

            if new_status == TransactionStatus.COMPLETED:
                user = self.storage.get_user(txn.user_id)
                updated = self.mutator.apply(user, txn)
                self.storage.commit_completion(txn, updated)
                logger.info(
                    "Completed %s %s of %s for user %s", txn.type.value, txn.reference, txn.amount, txn.user_id
                )
            else:
                self.storage.replace_transaction(txn)
                logger.info("Transaction %s moved to %s", txn.reference, new_status.value)
        return self.storage.get_transaction(transaction_id)

    def _check_transition(
        self,
        txn: Transaction,
        new_status: TransactionStatus,
        expected: Optional[Iterable[TransactionStatus]],
    ) -> None:
        if txn.status == TransactionStatus.COMPLETED and new_status == TransactionStatus.COMPLETED:
            logger.warning("Second completion attempted for %s", txn.reference)
            raise IdempotencyViolation(f"Transaction {txn.reference} is already completed")
        allowed = ALLOWED_TRANSITIONS.get(txn.status, frozenset())
        if txn.status.is_terminal or new_status not in allowed:
            logger.warning(
                "Illegal transition %s -> %s for %s", txn.status.value, new_status.value, txn.reference
            )
            raise InvalidTransitionError(
                f"Cannot move transaction {txn.reference} from {txn.status.value} to {new_status.value}"
            )
        if expected is not None and txn.status not in set(expected):
            logger.warning("Transaction %s is %s, not in the expected state", txn.reference, txn.status.value)
            raise InvalidTransitionError(
                f"Transaction {txn.reference} is {txn.status.value}"
            )

    # Queries

    def get(self, transaction_id: UUID) -> Transaction:
        return self.storage.get_transaction(transaction_id)

    def list_transactions(
        self,
        user_id: Optional[UUID] = None,
        type: Optional[TransactionType] = None,
        status: Optional[TransactionStatus] = None,
        payment_method: Optional[PaymentMethod] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> TransactionPage:
        if page < 1 or limit < 1:
            raise ValidationError("Page and limit must be positive")
        matches = self._filter(user_id, type, status and [status], payment_method, start, end)
        matches.sort(key=lambda t: t.created_at, reverse=True)
        offset = (page - 1) * limit
        return TransactionPage(
            items=matches[offset:offset + limit],
            total=len(matches),
            page=page,
            pages=math.ceil(len(matches) / limit),
        )

    def list_pending(self, type: Optional[TransactionType] = None) -> list[Transaction]:
        pending = self._filter(None, type, [TransactionStatus.PENDING], None, None, None)
        pending.sort(key=lambda t: t.created_at)
        return pending

    def sum_amount(
        self,
        user_id: Optional[UUID] = None,
        type: Optional[TransactionType] = None,
        statuses: Optional[Iterable[TransactionStatus]] = None,
        since: Optional[datetime] = None,
    ) -> Decimal:
        matches = self._filter(user_id, type, statuses, None, since, None)
        return sum((t.amount for t in matches), Decimal("0.00"))

    def totals_by_type(
        self,
        user_id: Optional[UUID] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
    ) -> dict[TransactionType, Decimal]:
        totals = {t: Decimal("0.00") for t in TransactionType}
        for txn in self._filter(user_id, None, [status], None, None, None):
            totals[txn.type] += txn.amount
        return totals

    def reconcile_user(self, user_id: UUID) -> BalanceReconciliation:
        user = self.storage.get_user(user_id)
        completed = self._filter(user_id, None, [TransactionStatus.COMPLETED], None, None, None)
        computed = sum((signed_amount(t) for t in completed), Decimal("0.00"))
        if computed != user.balance:
            logger.error("Balance drift for user %s: stored %s, computed %s", user_id, user.balance, computed)
        return BalanceReconciliation(
            user_id=user_id,
            recorded_balance=user.balance,
            computed_balance=computed,
            consistent=computed == user.balance,
        )

    def _filter(self, user_id, type, statuses, payment_method, start, end) -> list[Transaction]:
        source = self.storage.user_transactions(user_id) if user_id else self.storage.all_transactions()
        statuses = set(statuses) if statuses else None
        return [
            t for t in source
            if (type is None or t.type == type)
            and (statuses is None or t.status in statuses)
            and (payment_method is None or t.payment_method == payment_method)
            and (start is None or t.created_at >= start)
            and (end is None or t.created_at <= end)
        ]
