from concurrent.futures import Executor
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from werkzeug.security import check_password_hash

from .catalog import PackageCatalog
from .config import Settings, get_settings
from .errors import ValidationError
from .investments import InvestmentManager
from .models import (
    AccrualReport,
    BalanceReconciliation,
    DashboardStats,
    DepositRequest,
    Holding,
    HoldingStatus,
    Package,
    PackageCategory,
    PackageInput,
    PackageStats,
    PackageUpdate,
    PaymentMethod,
    PurchaseResult,
    RegisterUserRequest,
    Transaction,
    TransactionPage,
    TransactionStatus,
    TransactionType,
    User,
    WithdrawalRequest,
    utcnow,
)
from .notifications import NotificationDispatcher, Notifier
from .payments import PaymentProcessor
from .storage import InMemoryStorage
from .transactions import TransactionStore
from .users import PinVerifier, UserDirectory


class LedgerService:
    """Entry point for request handlers and the daily scheduler.

    Every method takes already-authenticated input and either returns a
    model or raises a ``LedgerServiceError`` subclass.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
        pin_verifier: PinVerifier = check_password_hash,
        notification_executor: Optional[Executor] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()
        self.clock = clock
        self.notifications = NotificationDispatcher(notifier, notification_executor)
        self.transactions = TransactionStore(self.storage, self.settings, clock)
        self.users = UserDirectory(self.storage, self.notifications, pin_verifier)
        self.catalog = PackageCatalog(self.storage)
        self.payments = PaymentProcessor(self.transactions, self.users, self.notifications, self.settings, clock)
        self.investments = InvestmentManager(
            self.storage, self.transactions, self.catalog, self.users, self.notifications, self.settings, clock
        )

    # Users

    def register_user(self, request: RegisterUserRequest) -> User:
        return self.users.register_user(request)

    def get_user(self, user_id: UUID) -> User:
        return self.users.get_user(user_id)

    def set_user_status(self, user_id: UUID, active: bool, reason: Optional[str] = None) -> User:
        return self.users.set_user_status(user_id, active, reason)

    # Deposits and withdrawals

    def create_deposit(self, request: DepositRequest) -> Transaction:
        return self.payments.create_deposit(request)

    def verify_deposit(self, transaction_id: UUID, gateway_transaction_id: str, admin_id: Optional[UUID] = None) -> Transaction:
        return self.payments.verify_deposit(transaction_id, gateway_transaction_id, admin_id)

    def create_withdrawal(self, request: WithdrawalRequest) -> Transaction:
        return self.payments.request_withdrawal(request)

    def process_withdrawal(self, transaction_id: UUID, admin_id: UUID, notes: Optional[str] = None) -> Transaction:
        return self.payments.process_withdrawal(transaction_id, admin_id, notes)

    def reject_withdrawal(self, transaction_id: UUID, admin_id: UUID, reason: str) -> Transaction:
        return self.payments.reject_withdrawal(transaction_id, admin_id, reason)

    def begin_withdrawal_payout(self, transaction_id: UUID, admin_id: UUID) -> Transaction:
        return self.payments.begin_withdrawal_payout(transaction_id, admin_id)

    def confirm_withdrawal_payout(self, transaction_id: UUID, admin_id: Optional[UUID] = None) -> Transaction:
        return self.payments.confirm_withdrawal_payout(transaction_id, admin_id)

    def fail_withdrawal_payout(self, transaction_id: UUID, reason: str) -> Transaction:
        return self.payments.fail_withdrawal_payout(transaction_id, reason)

    def process_transaction(self, transaction_id: UUID, admin_id: UUID, notes: Optional[str] = None) -> Transaction:
        return self.payments.process_transaction(transaction_id, admin_id, notes)

    def reject_transaction(self, transaction_id: UUID, admin_id: UUID, reason: str) -> Transaction:
        return self.payments.reject_transaction(transaction_id, admin_id, reason)

    def cancel_transaction(self, transaction_id: UUID, user_id: UUID) -> Transaction:
        return self.payments.cancel_transaction(transaction_id, user_id)

    def grant_bonus(self, user_id: UUID, amount: Decimal, description: str, admin_id: Optional[UUID] = None) -> Transaction:
        self.users.require_active(user_id)
        txn = self.transactions.create(
            user_id=user_id,
            type=TransactionType.BONUS,
            amount=amount,
            payment_method=PaymentMethod.SYSTEM,
            description=description,
            completed=True,
        )
        if admin_id is not None:
            txn = self._stamp_processor(txn, admin_id)
        self.notifications.notify(user_id, "bonus_credited", f"Bonus of {txn.amount} credited: {description}")
        return txn

    def _stamp_processor(self, txn: Transaction, admin_id: UUID) -> Transaction:
        with self.storage.user_lock(txn.user_id):
            txn = self.storage.get_transaction(txn.id)
            txn.processed_by = admin_id
            self.storage.replace_transaction(txn)
        return txn

    # Packages and holdings

    def create_package(self, request: PackageInput, created_by: Optional[UUID] = None) -> Package:
        return self.catalog.create_package(request, created_by)

    def update_package(self, package_id: UUID, changes: PackageUpdate) -> Package:
        return self.catalog.update_package(package_id, changes)

    def delete_package(self, package_id: UUID) -> None:
        self.catalog.delete_package(package_id)

    def get_package(self, package_id: UUID) -> Package:
        return self.catalog.get_package(package_id)

    def list_packages(
        self,
        category: Optional[PackageCategory] = None,
        active_only: bool = True,
        sort_by: str = "price",
        descending: bool = False,
    ) -> list[Package]:
        return self.catalog.list_packages(category, active_only, sort_by, descending)

    def package_stats(self) -> PackageStats:
        return self.catalog.package_stats()

    def purchase_package(self, user_id: UUID, package_id: UUID, quantity: int, pin: str) -> PurchaseResult:
        if quantity is None or quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        return self.investments.purchase(user_id, package_id, quantity, pin)

    def accrue_daily_profit(self) -> AccrualReport:
        return self.investments.accrue_daily_profit()

    def cancel_holding(self, holding_id: UUID, reason: str, actor: Optional[UUID] = None) -> Holding:
        return self.investments.cancel(holding_id, reason, actor)

    def get_holding(self, holding_id: UUID) -> Holding:
        return self.investments.get_holding(holding_id)

    def list_holdings(self, user_id: UUID, status: Optional[HoldingStatus] = None) -> list[Holding]:
        return self.investments.list_holdings(user_id, status)

    # Queries

    def get_transaction(self, transaction_id: UUID) -> Transaction:
        return self.transactions.get(transaction_id)

    def list_transactions(self, user_id: Optional[UUID] = None, **filters) -> TransactionPage:
        return self.transactions.list_transactions(user_id=user_id, **filters)

    def list_pending(self, type: Optional[TransactionType] = None) -> list[Transaction]:
        return self.transactions.list_pending(type)

    def totals_by_type(self, user_id: Optional[UUID] = None) -> dict[TransactionType, Decimal]:
        return self.transactions.totals_by_type(user_id)

    def reconcile_user(self, user_id: UUID) -> BalanceReconciliation:
        return self.transactions.reconcile_user(user_id)

    def dashboard_stats(self) -> DashboardStats:
        users = self.storage.list_users()
        completed = self.transactions.totals_by_type()
        return DashboardStats(
            total_users=len(users),
            active_users=sum(1 for u in users if u.is_active),
            total_deposits=completed[TransactionType.DEPOSIT],
            total_withdrawals=completed[TransactionType.WITHDRAWAL],
            pending_withdrawals=self.transactions.sum_amount(
                type=TransactionType.WITHDRAWAL, statuses=[TransactionStatus.PENDING]
            ),
            active_holdings=sum(1 for h in self.storage.all_holdings() if h.status == HoldingStatus.ACTIVE),
            total_investment=completed[TransactionType.INVESTMENT],
        )
