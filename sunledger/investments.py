import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from .catalog import PackageCatalog
from .commission import CommissionCalculator
from .config import Settings
from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    AccrualFailure,
    AccrualReport,
    Holding,
    HoldingStatus,
    PaymentMethod,
    PurchaseResult,
    TransactionMetadata,
    TransactionType,
    WalletDetails,
    utcnow,
)
from .notifications import NotificationDispatcher
from .storage import InMemoryStorage
from .transactions import TransactionStore
from .users import UserDirectory

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


def profit_key(holding_id: UUID, profit_date: datetime) -> str:
    return f"profit:{holding_id}:{profit_date.date().isoformat()}"


class InvestmentManager:
    """Package purchases and the lifecycle of the holdings they create."""

    def __init__(
        self,
        storage: InMemoryStorage,
        transactions: TransactionStore,
        catalog: PackageCatalog,
        users: UserDirectory,
        notifications: NotificationDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.transactions = transactions
        self.catalog = catalog
        self.users = users
        self.notifications = notifications
        self.settings = settings
        self.clock = clock
        self.commission = CommissionCalculator(transactions, clock)

    # Purchase

    def purchase(self, user_id: UUID, package_id: UUID, quantity: int, pin: str) -> PurchaseResult:
        package = self.catalog.get_package(package_id)
        if not package.is_active:
            raise ValidationError("This package is not available for purchase")
        user = self.users.require_active(user_id)
        self.users.verify_pin(user, pin)
        if quantity < package.min_purchase:
            raise ValidationError(f"Minimum purchase quantity is {package.min_purchase}")
        if quantity > package.max_purchase:
            raise ValidationError(f"Maximum purchase quantity is {package.max_purchase}")

        total = package.price * quantity
        now = self.clock()
        transaction_id = uuid4()
        holdings = [
            Holding(
                user_id=user_id,
                package_id=package.id,
                purchase_amount=package.price,
                expected_profit=package.profit_amount,
                daily_profit=package.daily_profit,
                start_date=now,
                end_date=now + timedelta(days=package.duration_days),
                status=HoldingStatus.ACTIVE,
                profit_pending=package.profit_amount,
                next_profit_date=now + ONE_DAY,
                transaction_id=transaction_id,
                created_at=now,
            )
            for _ in range(quantity)
        ]

        with self.storage.user_lock(user_id):
            user = self.storage.get_user(user_id)
            if user.balance < total:
                raise ValidationError(
                    f"Insufficient balance. Required: {total}, Available: {user.balance}"
                )
            txn = self.transactions.create(
                user_id=user_id,
                type=TransactionType.INVESTMENT,
                amount=total,
                payment_method=PaymentMethod.WALLET,
                payment_details=WalletDetails(),
                description=f"Purchase {quantity}x {package.name} Package",
                metadata=TransactionMetadata(package_id=package.id, quantity=quantity),
                completed=True,
                holdings=holdings,
                transaction_id=transaction_id,
            )

        self.catalog.record_sale(package.id, quantity, total)

        commission_txn = None
        if user.referred_by and package.referral_commission > 0:
            commission_txn = self._pay_commission(user, package, total, quantity, txn.reference, holdings)

        self.notifications.notify(
            user_id,
            "package_purchased",
            f"You purchased {quantity}x {package.name} for {total}. Ref: {txn.reference}",
        )
        plural = "s" if quantity > 1 else ""
        return PurchaseResult(
            transaction=txn,
            holdings=[self.storage.get_holding(h.id) for h in holdings],
            commission_transaction=commission_txn,
            message=f"Successfully purchased {quantity}x {package.name} package{plural}",
        )

    def _pay_commission(self, buyer, package, total, quantity, reference, holdings):
        try:
            referrer = self.storage.get_user(buyer.referred_by)
        except NotFoundError:
            logger.warning("Referrer %s of user %s no longer exists", buyer.referred_by, buyer.id)
            return None
        txn, records = self.commission.pay(total, package, referrer, buyer, quantity, reference)
        for holding, record in zip(holdings, records):
            with self.storage.holding_lock(holding.id):
                stored = self.storage.get_holding(holding.id)
                stored.referral_commission = record
                self.storage.put_holding(stored)
        if txn is not None:
            self.notifications.notify(
                referrer.id, "commission_credited", f"Referral commission of {txn.amount} credited."
            )
        return txn

    # Accrual

    def accrue_daily_profit(self) -> AccrualReport:
        """Credit every due day of profit. Safe to re-run: each holding/day
        pair is credited at most once, and a failed holding is retried on the
        next run without affecting the others."""
        now = self.clock()
        report = AccrualReport(run_at=now)
        due = self.storage.due_holding_ids(now)
        due += [h for h in self._matured_unsettled(now) if h not in due]
        report.holdings_scanned = len(due)

        if self.settings.accrual_max_workers > 1 and len(due) > 1:
            with ThreadPoolExecutor(max_workers=self.settings.accrual_max_workers) as pool:
                outcomes = list(pool.map(lambda h: self._safe_accrue(h, now), due))
        else:
            outcomes = [self._safe_accrue(h, now) for h in due]

        for holding_id, outcome in zip(due, outcomes):
            if isinstance(outcome, Exception):
                report.failures.append(AccrualFailure(holding_id=holding_id, error=str(outcome)))
                continue
            credits, amount, completed = outcome
            report.credits += credits
            report.amount_credited += amount
            report.holdings_completed += int(completed)

        logger.info(
            "Accrual run: %d scanned, %d credits, %s credited, %d completed, %d failed",
            report.holdings_scanned, report.credits, report.amount_credited,
            report.holdings_completed, len(report.failures),
        )
        return report

    def _matured_unsettled(self, now: datetime) -> list[UUID]:
        return [
            h.id for h in self.storage.all_holdings()
            if h.status == HoldingStatus.ACTIVE and h.profit_pending <= 0 and h.end_date <= now
        ]

    def _safe_accrue(self, holding_id: UUID, now: datetime):
        try:
            return self.accrue_holding(holding_id, now)
        except Exception as e:
            logger.exception("Accrual failed for holding %s", holding_id)
            return e

    def accrue_holding(self, holding_id: UUID, now: datetime) -> tuple[int, Decimal, bool]:
        credits, amount = 0, Decimal("0.00")
        with self.storage.holding_lock(holding_id):
            holding = self.storage.get_holding(holding_id)
            while (
                holding.status == HoldingStatus.ACTIVE
                and holding.profit_pending > 0
                and holding.next_profit_date <= now
            ):
                profit_date = holding.next_profit_date
                if profit_date >= holding.end_date:
                    credit = holding.profit_pending
                else:
                    credit = min(holding.daily_profit, holding.profit_pending)
                holding = self._credit(holding, profit_date, credit, now)
                if credit > 0:
                    credits += 1
                    amount += credit

            completed = holding.status == HoldingStatus.COMPLETED
            if holding.status == HoldingStatus.ACTIVE and holding.profit_pending <= 0 and now >= holding.end_date:
                holding.status = HoldingStatus.COMPLETED
                self.storage.put_holding(holding)
                completed = True

        if credits:
            self.notifications.notify(
                holding.user_id, "profit_credited", f"Daily profit of {amount} credited to your balance."
            )
        if completed:
            logger.info("Holding %s matured", holding_id)
        return credits, amount, completed

    def _credit(self, holding: Holding, profit_date: datetime, credit: Decimal, now: datetime) -> Holding:
        updated = holding.model_copy(deep=True)
        updated.profit_paid += credit
        updated.profit_pending -= credit
        updated.last_profit_date = profit_date
        updated.next_profit_date = profit_date + ONE_DAY
        if updated.profit_pending <= 0 and now >= updated.end_date:
            updated.status = HoldingStatus.COMPLETED

        if credit <= 0:
            self.storage.put_holding(updated)
            return updated

        key = profit_key(holding.id, profit_date)
        if self.storage.find_by_idempotency_key(key) is not None:
            # Credited on an earlier run; only the schedule needs to catch up.
            logger.warning("Profit for holding %s on %s already credited; resuming", holding.id, profit_date.date())
            self.storage.put_holding(updated)
            return updated

        self.transactions.create(
            user_id=holding.user_id,
            type=TransactionType.PROFIT,
            amount=credit,
            payment_method=PaymentMethod.SYSTEM,
            description=f"Daily profit for holding {holding.id}",
            metadata=TransactionMetadata(
                package_id=holding.package_id, holding_id=holding.id, profit_date=profit_date
            ),
            idempotency_key=key,
            completed=True,
            holdings=[updated],
        )
        return updated

    # Holdings

    def cancel(self, holding_id: UUID, reason: str, actor: Optional[UUID] = None) -> Holding:
        """Stop accrual on an active holding. No principal or pending profit
        is refunded; any adjustment is a separate admin transaction."""
        with self.storage.holding_lock(holding_id):
            holding = self.storage.get_holding(holding_id)
            if not holding.can_cancel():
                logger.warning("Cancel attempted on %s holding %s", holding.status.value, holding_id)
                raise InvalidTransitionError(f"Cannot cancel holding in {holding.status.value} state")
            holding.status = HoldingStatus.CANCELLED
            holding.cancellation_reason = reason
            self.storage.put_holding(holding)
        logger.info("Holding %s cancelled by %s: %s", holding_id, actor, reason)
        self.notifications.notify(holding.user_id, "holding_cancelled", f"Your package was cancelled. Reason: {reason}")
        return holding

    def get_holding(self, holding_id: UUID) -> Holding:
        return self.storage.get_holding(holding_id)

    def list_holdings(self, user_id: UUID, status: Optional[HoldingStatus] = None) -> list[Holding]:
        self.storage.get_user(user_id)
        holdings = [h for h in self.storage.user_holdings(user_id) if status is None or h.status == status]
        holdings.sort(key=lambda h: h.created_at, reverse=True)
        return holdings
