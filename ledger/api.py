import logging
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import LedgerSettings, configure_logging
from .errors import (
    AccountNotFound,
    CompensationFailed,
    CurrencyLocked,
    CurrencyNotFound,
    InsufficientBalance,
    ItemAlreadyOwned,
    ItemUnavailable,
    LedgerError,
    TransactionNotFound,
)
from .models import (
    AdminAdjustRequest,
    BalanceView,
    BatchAggregateRequest,
    CheckInResult,
    CheckInStatus,
    CreditRequest,
    Currency,
    CurrencyStats,
    DebitRequest,
    EntityAggregate,
    GiftRequest,
    InventoryItem,
    PurchaseRequest,
    PurchaseResult,
    RankingEntry,
    RankingField,
    ReconciliationReport,
    RefundRequest,
    ReverseRequest,
    ShopItem,
    TipRequest,
    TipResult,
    Transaction,
    TransactionPage,
    TransactionType,
    TransferRequest,
    TransferResult,
    WalletEntry,
)
from .service import LedgerService, build_service

logger = logging.getLogger(__name__)

settings = LedgerSettings()
configure_logging(settings.log_level)

app = FastAPI(
    title="Credits Ledger API",
    description="Multi-currency virtual credit ledger with idempotent grants and audit trails",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = build_service(settings)


def get_service() -> LedgerService:
    return ledger_service


NOT_FOUND = (CurrencyNotFound, AccountNotFound, TransactionNotFound)
CONFLICT = (InsufficientBalance, ItemAlreadyOwned, ItemUnavailable, CurrencyLocked)


def status_for(exc: LedgerError) -> int:
    if isinstance(exc, NOT_FOUND):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, CONFLICT):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, CompensationFailed):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    if exc.retryable:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    code = status_for(exc)
    if exc.user_visible:
        body = {"detail": exc.message, "code": exc.code}
        if isinstance(exc, InsufficientBalance):
            body.update(balance=exc.balance, required=exc.required)
    else:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        body = {"detail": "The ledger is busy, please try again", "code": exc.code}
    return JSONResponse(status_code=code, content=body)


class CurrencyStatusRequest(BaseModel):
    is_active: bool


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "credits-ledger"}


# Balances and history

@app.get("/users/{user_id}/balances/{currency_code}", response_model=BalanceView, tags=["Users"])
def get_user_balance(user_id: str, currency_code: str, service: LedgerService = Depends(get_service)) -> BalanceView:
    return service.get_balance(user_id, currency_code)


@app.get("/users/{user_id}/transactions", response_model=TransactionPage, tags=["Users"])
def get_user_history(
    user_id: str,
    currency_code: str = settings.default_currency,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    types: Optional[list[TransactionType]] = Query(default=None),
    service: LedgerService = Depends(get_service),
) -> TransactionPage:
    return service.get_history(user_id, currency_code, page=page, limit=limit, types=types)


@app.get("/users/{user_id}/wallet", response_model=list[WalletEntry], tags=["Users"])
def get_user_wallet(user_id: str, service: LedgerService = Depends(get_service)):
    return service.list_wallet(user_id)


@app.get("/users/{user_id}/inventory", response_model=list[InventoryItem], tags=["Users"])
def get_user_inventory(user_id: str, service: LedgerService = Depends(get_service)):
    return service.list_inventory(user_id)


# Core mutations

@app.post("/transactions/credit", response_model=Transaction, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def credit(request: CreditRequest, service: LedgerService = Depends(get_service)) -> Transaction:
    return service.credit(
        request.user_id, request.currency_code, request.amount, request.description,
        related_entity=request.related_entity, idempotency_key=request.idempotency_key,
    )


@app.post("/transactions/debit", response_model=Transaction, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def debit(request: DebitRequest, service: LedgerService = Depends(get_service)) -> Transaction:
    return service.debit(
        request.user_id, request.currency_code, request.amount, request.description,
        related_entity=request.related_entity, idempotency_key=request.idempotency_key,
    )


@app.post("/transfers", response_model=TransferResult, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def transfer(request: TransferRequest, service: LedgerService = Depends(get_service)) -> TransferResult:
    return service.transfer(
        request.from_user_id, request.to_user_id, request.currency_code, request.amount,
        request.description, related_entity=request.related_entity,
        idempotency_key=request.idempotency_key,
    )


@app.get("/transactions", response_model=TransactionPage, tags=["Transactions"])
def list_transactions(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user_id: Optional[str] = None,
    currency_code: Optional[str] = None,
    types: Optional[list[TransactionType]] = Query(default=None),
    service: LedgerService = Depends(get_service),
) -> TransactionPage:
    return service.list_transactions(
        page=page, limit=limit, user_id=user_id, currency_code=currency_code, types=types,
    )


@app.get("/transactions/{transaction_id}", response_model=Transaction, tags=["Transactions"])
def get_transaction(transaction_id: UUID, service: LedgerService = Depends(get_service)) -> Transaction:
    return service.get_transaction(transaction_id)


@app.post("/transactions/{transaction_id}/reverse", response_model=Transaction, tags=["Transactions"])
def reverse_transaction(
    transaction_id: UUID, request: ReverseRequest, service: LedgerService = Depends(get_service)
) -> Transaction:
    return service.reverse(transaction_id, request.reason)


@app.post("/transactions/{transaction_id}/refund", response_model=Transaction, tags=["Shop"])
def refund_transaction(
    transaction_id: UUID, request: RefundRequest, service: LedgerService = Depends(get_service)
) -> Transaction:
    return service.refund(transaction_id, request.reason)


# Rewards

@app.post("/users/{user_id}/check-in", response_model=CheckInResult, tags=["Rewards"])
def check_in(user_id: str, currency_code: Optional[str] = None, service: LedgerService = Depends(get_service)):
    return service.check_in(user_id, currency_code)


@app.get("/users/{user_id}/check-in", response_model=CheckInStatus, tags=["Rewards"])
def get_check_in_status(user_id: str, currency_code: Optional[str] = None, service: LedgerService = Depends(get_service)):
    return service.check_in_status(user_id, currency_code)


@app.post("/tips", response_model=TipResult, status_code=status.HTTP_201_CREATED, tags=["Rewards"])
def tip(request: TipRequest, service: LedgerService = Depends(get_service)) -> TipResult:
    return service.tip(
        request.from_user_id, request.post_owner_id, request.post_id, request.amount,
        currency_code=request.currency_code, message=request.message,
        idempotency_key=request.idempotency_key,
    )


@app.get("/posts/{post_id}/rewards", response_model=EntityAggregate, tags=["Rewards"])
def get_post_rewards(post_id: str, service: LedgerService = Depends(get_service)) -> EntityAggregate:
    return service.get_aggregate_for_entity("post", post_id)


@app.post("/posts/rewards/batch", response_model=dict[str, EntityAggregate], tags=["Rewards"])
def get_post_rewards_batch(request: BatchAggregateRequest, service: LedgerService = Depends(get_service)):
    return service.get_aggregates_for_entities("post", request.post_ids)


# Shop

@app.get("/shop/items", response_model=list[ShopItem], tags=["Shop"])
def list_shop_items(service: LedgerService = Depends(get_service)):
    return service.list_shop_items()


@app.post("/shop/purchase", response_model=PurchaseResult, status_code=status.HTTP_201_CREATED, tags=["Shop"])
def purchase(request: PurchaseRequest, service: LedgerService = Depends(get_service)) -> PurchaseResult:
    return service.purchase(request.user_id, request.item_id, idempotency_key=request.idempotency_key)


@app.post("/shop/gift", response_model=PurchaseResult, status_code=status.HTTP_201_CREATED, tags=["Shop"])
def gift(request: GiftRequest, service: LedgerService = Depends(get_service)) -> PurchaseResult:
    return service.gift(request.sender_id, request.receiver_id, request.item_id, message=request.message)


# Currencies and reporting

@app.get("/currencies", response_model=list[Currency], tags=["Currencies"])
def list_currencies(active_only: bool = False, service: LedgerService = Depends(get_service)):
    return service.list_currencies(active_only=active_only)


@app.post("/currencies", response_model=Currency, status_code=status.HTTP_201_CREATED, tags=["Currencies"])
def create_currency(currency: Currency, service: LedgerService = Depends(get_service)) -> Currency:
    return service.create_currency(currency)


@app.put("/currencies/{code}/status", response_model=Currency, tags=["Currencies"])
def set_currency_status(
    code: str, request: CurrencyStatusRequest, service: LedgerService = Depends(get_service)
) -> Currency:
    return service.set_currency_active(code, request.is_active)


@app.get("/currencies/{code}/stats", response_model=CurrencyStats, tags=["Currencies"])
def get_currency_stats(code: str, user_id: Optional[str] = None, service: LedgerService = Depends(get_service)):
    return service.get_currency_stats(code, user_id=user_id)


@app.get("/currencies/{code}/ranking", response_model=list[RankingEntry], tags=["Currencies"])
def get_ranking(
    code: str,
    by: RankingField = RankingField.BALANCE,
    limit: int = Query(default=50, ge=1, le=100),
    service: LedgerService = Depends(get_service),
):
    return service.get_ranking(code, by=by, limit=limit)


# Administration

@app.post("/admin/adjust", response_model=Transaction, status_code=status.HTTP_201_CREATED, tags=["Admin"])
def admin_adjust(request: AdminAdjustRequest, service: LedgerService = Depends(get_service)) -> Transaction:
    return service.admin_adjust(
        request.user_id, request.currency_code, request.amount, request.direction,
        description=request.description, actor_id=request.actor_id,
    )


@app.get("/admin/accounts/{account_id}/reconcile", response_model=ReconciliationReport, tags=["Admin"])
def reconcile_account(account_id: UUID, service: LedgerService = Depends(get_service)):
    return service.reconcile(account_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
