import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Iterator, Optional
from uuid import UUID

from .errors import IdempotencyViolation, NotFoundError, ValidationError
from .models import Holding, HoldingStatus, Package, Transaction, TransactionStatus, User


class DuplicateReferenceError(Exception):
    pass


class InMemoryStorage:
    """Four record collections plus the indexes the ledger scans by.

    Records are stored as models and handed out as copies, so callers only
    change state through the ``put_*`` and ``commit`` methods. Phone numbers
    and package names are unique; ``put_user`` and ``put_package`` refuse a
    write that would duplicate one.
    """

    def __init__(self):
        self.users: dict[UUID, User] = {}
        self.transactions: dict[UUID, Transaction] = {}
        self.packages: dict[UUID, Package] = {}
        self.holdings: dict[UUID, Holding] = {}

        self.reference_index: dict[str, UUID] = {}
        self.idempotency_index: dict[str, UUID] = {}
        self.applied_transactions: set[UUID] = set()
        self.transactions_by_user: dict[UUID, list[UUID]] = defaultdict(list)
        self.holdings_by_user: dict[UUID, list[UUID]] = defaultdict(list)

        self._write_lock = threading.Lock()
        self._registry_lock = threading.Lock()
        self._locks: dict[tuple[str, UUID], threading.RLock] = {}

    # Locking

    def _lock_for(self, kind: str, key: UUID) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get((kind, key))
            if lock is None:
                lock = self._locks[(kind, key)] = threading.RLock()
            return lock

    @contextmanager
    def user_lock(self, user_id: UUID) -> Iterator[None]:
        with self._lock_for("user", user_id):
            yield

    @contextmanager
    def holding_lock(self, holding_id: UUID) -> Iterator[None]:
        with self._lock_for("holding", holding_id):
            yield

    @contextmanager
    def package_lock(self, package_id: UUID) -> Iterator[None]:
        with self._lock_for("package", package_id):
            yield

    # Users

    def get_user(self, user_id: UUID) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user.model_copy(deep=True)

    def put_user(self, user: User) -> None:
        with self._write_lock:
            if any(u.phone == user.phone and u.id != user.id for u in self.users.values()):
                raise ValidationError(f"Phone number {user.phone} is already registered")
            self.users[user.id] = user.model_copy(deep=True)

    def list_users(self) -> list[User]:
        with self._write_lock:
            users = list(self.users.values())
        return [u.model_copy(deep=True) for u in users]

    # Transactions

    def get_transaction(self, transaction_id: UUID) -> Transaction:
        txn = self.transactions.get(transaction_id)
        if txn is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return txn.model_copy(deep=True)

    def insert_transaction(self, txn: Transaction) -> None:
        with self._write_lock:
            if txn.reference in self.reference_index:
                raise DuplicateReferenceError(txn.reference)
            key = txn.metadata.idempotency_key
            if key and key in self.idempotency_index:
                raise IdempotencyViolation(f"Idempotency key {key} already used")
            self.transactions[txn.id] = txn.model_copy(deep=True)
            self.reference_index[txn.reference] = txn.id
            if key:
                self.idempotency_index[key] = txn.id
            self.transactions_by_user[txn.user_id].append(txn.id)

    def replace_transaction(self, txn: Transaction) -> None:
        with self._write_lock:
            if txn.id not in self.transactions:
                raise NotFoundError(f"Transaction {txn.id} not found")
            self.transactions[txn.id] = txn.model_copy(deep=True)

    def find_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        txn_id = self.idempotency_index.get(key)
        if txn_id is None:
            return None
        return self.get_transaction(txn_id)

    def find_by_reference(self, reference: str) -> Optional[Transaction]:
        txn_id = self.reference_index.get(reference)
        return self.get_transaction(txn_id) if txn_id else None

    def user_transactions(self, user_id: UUID) -> list[Transaction]:
        with self._write_lock:
            txns = [self.transactions[t] for t in self.transactions_by_user.get(user_id, [])]
        return [t.model_copy(deep=True) for t in txns]

    def all_transactions(self) -> list[Transaction]:
        with self._write_lock:
            txns = list(self.transactions.values())
        return [t.model_copy(deep=True) for t in txns]

    def commit_completion(
        self,
        txn: Transaction,
        user: User,
        insert: bool = False,
        holdings: Optional[list[Holding]] = None,
    ) -> None:
        """Write a completed transaction, its balance effect and any linked
        holdings as one unit. Nothing is written if any check fails."""
        with self._write_lock:
            if txn.id in self.applied_transactions:
                raise IdempotencyViolation(f"Transaction {txn.reference} was already applied")
            if insert:
                if txn.id in self.transactions or txn.reference in self.reference_index:
                    raise DuplicateReferenceError(txn.reference)
                key = txn.metadata.idempotency_key
                if key and key in self.idempotency_index:
                    raise IdempotencyViolation(f"Idempotency key {key} already used")
            else:
                stored = self.transactions.get(txn.id)
                if stored is None:
                    raise NotFoundError(f"Transaction {txn.id} not found")
                if stored.status == TransactionStatus.COMPLETED:
                    raise IdempotencyViolation(f"Transaction {txn.reference} is already completed")

            self.transactions[txn.id] = txn.model_copy(deep=True)
            if insert:
                self.reference_index[txn.reference] = txn.id
                if txn.metadata.idempotency_key:
                    self.idempotency_index[txn.metadata.idempotency_key] = txn.id
                self.transactions_by_user[txn.user_id].append(txn.id)
            self.users[user.id] = user.model_copy(deep=True)
            self.applied_transactions.add(txn.id)
            for holding in holdings or []:
                if holding.id not in self.holdings:
                    self.holdings_by_user[holding.user_id].append(holding.id)
                self.holdings[holding.id] = holding.model_copy(deep=True)

    # Packages

    def get_package(self, package_id: UUID) -> Package:
        package = self.packages.get(package_id)
        if package is None:
            raise NotFoundError(f"Package {package_id} not found")
        return package.model_copy(deep=True)

    def put_package(self, package: Package) -> None:
        wanted = package.name.strip().lower()
        with self._write_lock:
            if any(p.name.strip().lower() == wanted and p.id != package.id for p in self.packages.values()):
                raise ValidationError(f"Package name '{package.name}' is already taken")
            self.packages[package.id] = package.model_copy(deep=True)

    def delete_package(self, package_id: UUID) -> None:
        with self._write_lock:
            self.packages.pop(package_id, None)

    def list_packages(self) -> list[Package]:
        with self._write_lock:
            packages = list(self.packages.values())
        return [p.model_copy(deep=True) for p in packages]

    # Holdings

    def get_holding(self, holding_id: UUID) -> Holding:
        holding = self.holdings.get(holding_id)
        if holding is None:
            raise NotFoundError(f"Holding {holding_id} not found")
        return holding.model_copy(deep=True)

    def put_holding(self, holding: Holding) -> None:
        with self._write_lock:
            if holding.id not in self.holdings:
                self.holdings_by_user[holding.user_id].append(holding.id)
            self.holdings[holding.id] = holding.model_copy(deep=True)

    def user_holdings(self, user_id: UUID) -> list[Holding]:
        with self._write_lock:
            holdings = [self.holdings[h] for h in self.holdings_by_user.get(user_id, [])]
        return [h.model_copy(deep=True) for h in holdings]

    def all_holdings(self) -> list[Holding]:
        with self._write_lock:
            holdings = list(self.holdings.values())
        return [h.model_copy(deep=True) for h in holdings]

    def due_holding_ids(self, now) -> list[UUID]:
        """Active holdings whose next profit date has arrived, oldest first."""
        with self._write_lock:
            holdings = list(self.holdings.values())
        due = [
            h for h in holdings
            if h.status == HoldingStatus.ACTIVE and h.next_profit_date <= now
        ]
        due.sort(key=lambda h: h.next_profit_date)
        return [h.id for h in due]
