from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import (
    IdempotencyViolation,
    InvalidTransitionError,
    LedgerServiceError,
    NotFoundError,
    ValidationError,
)
from .models import (
    AccrualReport,
    BalanceReconciliation,
    CancelHoldingRequest,
    DashboardStats,
    DepositRequest,
    Holding,
    HoldingStatus,
    Package,
    PackageCategory,
    PackageInput,
    ProcessTransactionRequest,
    PurchaseRequest,
    PurchaseResult,
    RegisterUserRequest,
    RejectTransactionRequest,
    Transaction,
    TransactionPage,
    TransactionResult,
    TransactionStatus,
    TransactionType,
    User,
    VerifyDepositRequest,
    WithdrawalRequest,
)
from .service import LedgerService

app = FastAPI(
    title="Sun Ledger API",
    description="Balances, deposits, withdrawals and daily-profit investment packages",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = LedgerService()

STATUS_BY_ERROR = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    IdempotencyViolation: status.HTTP_409_CONFLICT,
}


def get_service() -> LedgerService:
    return ledger_service


@app.exception_handler(LedgerServiceError)
def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
    code = STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "sunledger"}


# Users

@app.post("/users", response_model=User, response_model_exclude={"pin_hash"},
          status_code=status.HTTP_201_CREATED, tags=["Users"])
def register_user(request: RegisterUserRequest, service: LedgerService = Depends(get_service)) -> User:
    return service.register_user(request)


@app.get("/users/{user_id}", response_model=User, response_model_exclude={"pin_hash"}, tags=["Users"])
def get_user(user_id: UUID, service: LedgerService = Depends(get_service)) -> User:
    return service.get_user(user_id)


@app.get("/users/{user_id}/transactions", response_model=TransactionPage, tags=["Users"])
def get_user_transactions(
    user_id: UUID,
    type: Optional[TransactionType] = None,
    status: Optional[TransactionStatus] = None,
    page: int = 1,
    limit: int = 20,
    service: LedgerService = Depends(get_service),
) -> TransactionPage:
    service.get_user(user_id)
    return service.list_transactions(user_id, type=type, status=status, page=page, limit=limit)


@app.get("/users/{user_id}/holdings", response_model=list[Holding], tags=["Users"])
def get_user_holdings(
    user_id: UUID, status: Optional[HoldingStatus] = None, service: LedgerService = Depends(get_service)
) -> list[Holding]:
    return service.list_holdings(user_id, status)


@app.get("/users/{user_id}/reconciliation", response_model=BalanceReconciliation, tags=["Users"])
def reconcile_user(user_id: UUID, service: LedgerService = Depends(get_service)) -> BalanceReconciliation:
    return service.reconcile_user(user_id)


# Deposits and withdrawals

@app.post("/deposits", response_model=TransactionResult, status_code=status.HTTP_201_CREATED, tags=["Deposits"])
def create_deposit(request: DepositRequest, service: LedgerService = Depends(get_service)) -> TransactionResult:
    txn = service.create_deposit(request)
    return TransactionResult(
        transaction=txn, message="Please complete the payment and verify with transaction ID"
    )


@app.post("/deposits/{transaction_id}/verify", response_model=TransactionResult, tags=["Deposits"])
def verify_deposit(
    transaction_id: UUID, request: VerifyDepositRequest, service: LedgerService = Depends(get_service)
) -> TransactionResult:
    txn = service.verify_deposit(transaction_id, request.gateway_transaction_id, request.admin_id)
    return TransactionResult(transaction=txn, message="Deposit verified successfully")


@app.post("/withdrawals", response_model=TransactionResult, status_code=status.HTTP_201_CREATED, tags=["Withdrawals"])
def create_withdrawal(request: WithdrawalRequest, service: LedgerService = Depends(get_service)) -> TransactionResult:
    txn = service.create_withdrawal(request)
    return TransactionResult(
        transaction=txn, message="Withdrawal request submitted. It will be processed within 24 hours."
    )


@app.post("/withdrawals/{transaction_id}/process", response_model=TransactionResult, tags=["Withdrawals"])
def process_withdrawal(
    transaction_id: UUID, request: ProcessTransactionRequest, service: LedgerService = Depends(get_service)
) -> TransactionResult:
    txn = service.process_withdrawal(transaction_id, request.admin_id, request.notes)
    return TransactionResult(transaction=txn, message="Transaction processed successfully")


@app.post("/withdrawals/{transaction_id}/reject", response_model=TransactionResult, tags=["Withdrawals"])
def reject_withdrawal(
    transaction_id: UUID, request: RejectTransactionRequest, service: LedgerService = Depends(get_service)
) -> TransactionResult:
    txn = service.reject_withdrawal(transaction_id, request.admin_id, request.reason)
    return TransactionResult(transaction=txn, message="Transaction rejected successfully")


# Packages and holdings

@app.get("/packages", response_model=list[Package], tags=["Packages"])
def list_packages(
    category: Optional[PackageCategory] = None,
    active_only: bool = True,
    sort_by: str = "price",
    descending: bool = False,
    service: LedgerService = Depends(get_service),
) -> list[Package]:
    return service.list_packages(category, active_only, sort_by, descending)


@app.post("/packages", response_model=Package, status_code=status.HTTP_201_CREATED, tags=["Packages"])
def create_package(request: PackageInput, service: LedgerService = Depends(get_service)) -> Package:
    return service.create_package(request)


@app.get("/packages/{package_id}", response_model=Package, tags=["Packages"])
def get_package(package_id: UUID, service: LedgerService = Depends(get_service)) -> Package:
    return service.get_package(package_id)


@app.post("/packages/{package_id}/purchase", response_model=PurchaseResult, tags=["Packages"])
def purchase_package(
    package_id: UUID, request: PurchaseRequest, service: LedgerService = Depends(get_service)
) -> PurchaseResult:
    return service.purchase_package(request.user_id, package_id, request.quantity, request.pin)


@app.post("/holdings/{holding_id}/cancel", response_model=Holding, tags=["Packages"])
def cancel_holding(
    holding_id: UUID, request: CancelHoldingRequest, service: LedgerService = Depends(get_service)
) -> Holding:
    return service.cancel_holding(holding_id, request.reason, request.actor_id)


# Admin and scheduler

@app.post("/accruals/run", response_model=AccrualReport, tags=["Admin"])
def run_accrual(service: LedgerService = Depends(get_service)) -> AccrualReport:
    return service.accrue_daily_profit()


@app.get("/admin/transactions/pending", response_model=list[Transaction], tags=["Admin"])
def get_pending_transactions(
    type: Optional[TransactionType] = None, service: LedgerService = Depends(get_service)
) -> list[Transaction]:
    return service.list_pending(type)


@app.get("/admin/dashboard", response_model=DashboardStats, tags=["Admin"])
def get_dashboard(service: LedgerService = Depends(get_service)) -> DashboardStats:
    return service.dashboard_stats()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
