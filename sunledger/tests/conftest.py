from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from sunledger.config import Settings
from sunledger.models import (
    DepositRequest,
    NotificationRequest,
    PackageInput,
    PaymentMethod,
    RegisterUserRequest,
    TransactionStatus,
)
from sunledger.service import LedgerService


TEST_PIN = "1234"
# Noon in Dhaka, so day arithmetic never crosses local midnight by accident.
START = datetime(2026, 1, 15, 6, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: float = 0, hours: float = 0) -> None:
        self.now += timedelta(days=days, hours=hours)


class RecordingNotifier:
    def __init__(self):
        self.sent: list[NotificationRequest] = []

    def send(self, request: NotificationRequest) -> None:
        self.sent.append(request)

    def events(self) -> list[str]:
        return [r.event for r in self.sent]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def settings() -> Settings:
    return Settings(accrual_max_workers=1)


@pytest.fixture
def service(settings, notifier, clock) -> LedgerService:
    return LedgerService(settings=settings, notifier=notifier, clock=clock)


_phone_counter = iter(range(10_000_000, 99_999_999))


def register(service: LedgerService, name: str = "Rahim Uddin", referred_by=None):
    return service.register_user(RegisterUserRequest(
        full_name=name,
        phone=f"017{next(_phone_counter)}",
        pin=TEST_PIN,
        referred_by=referred_by,
    ))


def fund(service: LedgerService, user_id, amount) -> None:
    service.grant_bonus(user_id, Decimal(amount), "Opening balance")


def assert_consistent(service: LedgerService, *user_ids) -> None:
    for user_id in user_ids:
        reconciliation = service.reconcile_user(user_id)
        assert reconciliation.consistent, reconciliation


def completed_deposit(service: LedgerService, user_id, amount, gateway_id="GW-1"):
    txn = service.create_deposit(DepositRequest(
        user_id=user_id, amount=Decimal(amount), payment_method=PaymentMethod.BKASH
    ))
    txn = service.verify_deposit(txn.id, gateway_id)
    assert txn.status == TransactionStatus.COMPLETED
    return txn


@pytest.fixture
def user(service):
    return register(service)


@pytest.fixture
def package(service):
    return service.create_package(PackageInput(
        name="Silver Saver",
        price=Decimal("1000"),
        profit_amount=Decimal("150"),
        duration_days=5,
        referral_commission=Decimal("10"),
    ))
