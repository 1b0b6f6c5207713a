from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID, uuid4
from pydantic import BaseModel, Field, ConfigDict


CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def quantize_money(value: Decimal, rounding: str = ROUND_DOWN) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=rounding)


class UserRole(str, Enum):
    USER = "user"
    AGENT = "agent"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INVESTMENT = "investment"
    PROFIT = "profit"
    COMMISSION = "commission"
    REFUND = "refund"
    BONUS = "bonus"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self not in (TransactionStatus.PENDING, TransactionStatus.PROCESSING)


class PaymentMethod(str, Enum):
    BKASH = "bkash"
    NAGAD = "nagad"
    ROCKET = "rocket"
    BANK = "bank"
    CREDIT_CARD = "credit_card"
    WALLET = "wallet"
    SYSTEM = "system"


MOBILE_WALLETS = (PaymentMethod.BKASH, PaymentMethod.NAGAD, PaymentMethod.ROCKET)


class PackageCategory(str, Enum):
    STARTER = "starter"
    BASIC = "basic"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"
    VIP = "vip"
    PREMIUM = "premium"


class HoldingStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Payment details, one shape per channel.

class MobileWalletDetails(BaseModel):
    channel: Literal["bkash", "nagad", "rocket"]
    sender_number: Optional[str] = None
    receiver_number: Optional[str] = None
    gateway_transaction_id: Optional[str] = None


class BankDetails(BaseModel):
    channel: Literal["bank"] = "bank"
    bank_name: Optional[str] = None
    account_number: str
    gateway_transaction_id: Optional[str] = None


class CardDetails(BaseModel):
    channel: Literal["credit_card"] = "credit_card"
    card_last_four: Optional[str] = Field(default=None, min_length=4, max_length=4)
    gateway_transaction_id: Optional[str] = None
    gateway_response: dict = Field(default_factory=dict)


class WalletDetails(BaseModel):
    channel: Literal["wallet"] = "wallet"


class SystemDetails(BaseModel):
    channel: Literal["system"] = "system"


PaymentDetails = Annotated[
    Union[MobileWalletDetails, BankDetails, CardDetails, WalletDetails, SystemDetails],
    Field(discriminator="channel"),
]


class TransactionMetadata(BaseModel):
    package_id: Optional[UUID] = None
    holding_id: Optional[UUID] = None
    quantity: Optional[int] = None
    profit_date: Optional[datetime] = None
    referred_user_id: Optional[UUID] = None
    idempotency_key: Optional[str] = None


class User(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    full_name: str = Field(..., min_length=2, max_length=100)
    phone: str
    email: Optional[str] = None
    role: UserRole = UserRole.USER
    balance: Decimal = Field(default=Decimal("0.00"), ge=0)
    total_deposit: Decimal = Decimal("0.00")
    total_withdraw: Decimal = Decimal("0.00")
    total_investment: Decimal = Decimal("0.00")
    total_profit: Decimal = Decimal("0.00")
    referred_by: Optional[UUID] = None
    pin_hash: Optional[str] = Field(default=None, repr=False)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: UUID = Field(..., frozen=True)
    type: TransactionType = Field(..., frozen=True)
    amount: Decimal = Field(..., gt=0, frozen=True)
    net_amount: Optional[Decimal] = Field(default=None, frozen=True)
    charge: Decimal = Field(default=Decimal("0.00"), frozen=True)
    status: TransactionStatus = TransactionStatus.PENDING
    payment_method: PaymentMethod = Field(..., frozen=True)
    payment_details: PaymentDetails = Field(default_factory=SystemDetails)
    description: str
    reference: str = Field(..., frozen=True)
    metadata: TransactionMetadata = Field(default_factory=TransactionMetadata)
    processed_by: Optional[UUID] = None
    processed_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class Package(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1)
    description: str = ""
    price: Decimal = Field(..., gt=0)
    profit_amount: Decimal = Field(..., ge=0)
    profit_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    duration_days: int = Field(..., ge=1)
    daily_profit: Decimal = Decimal("0.00")
    total_return: Decimal = Decimal("0.00")
    category: PackageCategory = PackageCategory.BASIC
    is_popular: bool = False
    is_active: bool = True
    min_purchase: int = Field(default=1, ge=1)
    max_purchase: int = Field(default=10, ge=1)
    referral_commission: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    agent_commission: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    total_sales: int = 0
    total_revenue: Decimal = Decimal("0.00")
    created_by: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class CommissionRecord(BaseModel):
    amount: Decimal
    paid_to: UUID
    paid_at: datetime


class Holding(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    package_id: UUID
    purchase_amount: Decimal
    expected_profit: Decimal
    daily_profit: Decimal
    start_date: datetime
    end_date: datetime
    status: HoldingStatus = HoldingStatus.ACTIVE
    profit_paid: Decimal = Decimal("0.00")
    profit_pending: Decimal
    last_profit_date: Optional[datetime] = None
    next_profit_date: datetime
    transaction_id: UUID
    referral_commission: Optional[CommissionRecord] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)

    def days_remaining(self, now: datetime) -> int:
        if self.status != HoldingStatus.ACTIVE:
            return 0
        seconds = (self.end_date - now).total_seconds()
        days = -(-seconds // 86400)
        return int(days) if days > 0 else 0

    @property
    def total_days(self) -> int:
        return (self.end_date - self.start_date).days

    def can_cancel(self) -> bool:
        return self.status == HoldingStatus.ACTIVE


# Requests

class RegisterUserRequest(BaseModel):
    full_name: str
    phone: str
    pin: str = Field(..., min_length=4, max_length=6)
    email: Optional[str] = None
    referred_by: Optional[UUID] = None
    role: UserRole = UserRole.USER


class DepositRequest(BaseModel):
    user_id: UUID
    amount: Decimal
    payment_method: PaymentMethod
    sender_number: Optional[str] = None
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "amount": 2000,
            "payment_method": "bkash",
            "sender_number": "01712345678",
        }
    })


class VerifyDepositRequest(BaseModel):
    gateway_transaction_id: str = Field(..., min_length=1)
    admin_id: Optional[UUID] = None


class WithdrawalRequest(BaseModel):
    user_id: UUID
    amount: Decimal
    payment_method: PaymentMethod
    destination: str = Field(..., description="Mobile wallet number or bank account")
    bank_name: Optional[str] = None
    idempotency_key: Optional[str] = None


class ProcessTransactionRequest(BaseModel):
    admin_id: UUID
    notes: Optional[str] = None


class RejectTransactionRequest(BaseModel):
    admin_id: UUID
    reason: str = Field(..., min_length=1)


class PurchaseRequest(BaseModel):
    user_id: UUID
    pin: str
    quantity: int = 1


class CancelHoldingRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    actor_id: Optional[UUID] = None


class PackageInput(BaseModel):
    name: str
    description: str = ""
    price: Decimal
    profit_amount: Optional[Decimal] = None
    profit_percentage: Optional[Decimal] = None
    duration_days: int
    category: PackageCategory = PackageCategory.BASIC
    is_popular: bool = False
    is_active: bool = True
    min_purchase: int = 1
    max_purchase: int = 10
    referral_commission: Decimal = Decimal("0")
    agent_commission: Decimal = Decimal("0")


class PackageUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = None
    profit_amount: Optional[Decimal] = None
    profit_percentage: Optional[Decimal] = None
    duration_days: Optional[int] = None
    category: Optional[PackageCategory] = None
    is_popular: Optional[bool] = None
    is_active: Optional[bool] = None
    min_purchase: Optional[int] = None
    max_purchase: Optional[int] = None
    referral_commission: Optional[Decimal] = None
    agent_commission: Optional[Decimal] = None


# Responses

class TransactionPage(BaseModel):
    items: list[Transaction]
    total: int
    page: int
    pages: int


class PurchaseResult(BaseModel):
    transaction: Transaction
    holdings: list[Holding]
    commission_transaction: Optional[Transaction] = None
    message: str


class TransactionResult(BaseModel):
    transaction: Transaction
    message: str


class AccrualFailure(BaseModel):
    holding_id: UUID
    error: str


class AccrualReport(BaseModel):
    run_at: datetime
    holdings_scanned: int = 0
    credits: int = 0
    amount_credited: Decimal = Decimal("0.00")
    holdings_completed: int = 0
    failures: list[AccrualFailure] = Field(default_factory=list)


class BalanceReconciliation(BaseModel):
    user_id: UUID
    recorded_balance: Decimal
    computed_balance: Decimal
    consistent: bool


class PackageStats(BaseModel):
    total_packages: int
    active_packages: int
    total_sales: int
    total_revenue: Decimal
    top_packages: list[Package]


class DashboardStats(BaseModel):
    total_users: int
    active_users: int
    total_deposits: Decimal
    total_withdrawals: Decimal
    pending_withdrawals: Decimal
    active_holdings: int
    total_investment: Decimal


class NotificationRequest(BaseModel):
    user_id: UUID
    message: str
    event: str
