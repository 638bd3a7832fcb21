from datetime import date, datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, computed_field, field_validator


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    CHECK_IN = "check_in"
    POST_REWARD = "post_reward"
    SHOP_PURCHASE = "shop_purchase"
    GIFT_SENT = "gift_sent"
    REFUND = "refund"
    REVERSAL = "reversal"
    ADMIN_GRANT = "admin_grant"
    ADMIN_DEDUCT = "admin_deduct"


class AdjustDirection(str, Enum):
    GRANT = "grant"
    DEDUCT = "deduct"


class RankingField(str, Enum):
    BALANCE = "balance"
    TOTAL_EARNED = "total_earned"


class RelatedEntity(BaseModel):
    kind: str
    id: str

    model_config = ConfigDict(frozen=True)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> str:
        return str(value)


class CurrencyRules(BaseModel):
    check_in_base_amount: int = Field(default=10, ge=0)
    check_in_streak_bonus: int = Field(default=5, ge=0)
    check_in_streak_cap_days: int = Field(default=6, ge=0)
    reward_min_amount: int = Field(default=1, ge=1)
    reward_max_amount: int = Field(default=1000, ge=1)


class Currency(BaseModel):
    code: str = Field(..., min_length=1, max_length=20)
    name: str
    symbol: Optional[str] = None
    is_active: bool = True
    allow_negative_balance: bool = False
    starting_balance: int = 0
    rules: CurrencyRules = Field(default_factory=CurrencyRules)

    model_config = ConfigDict(frozen=True)


class Account(BaseModel):
    id: UUID
    user_id: str
    currency_code: str
    balance: int
    version: int = 0
    opening_balance: int = 0
    total_earned: int = 0
    total_spent: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class Transaction(BaseModel):
    id: UUID
    account_id: UUID
    user_id: str
    currency_code: str
    type: TransactionType
    amount: int
    balance_after: int
    sequence: int
    description: str
    related_entity: Optional[RelatedEntity] = None
    related_user_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class AppliedTransaction(BaseModel):
    transaction: Transaction
    replayed: bool = False


class TransferResult(BaseModel):
    debit_transaction: Transaction
    credit_transaction: Transaction


class TransactionFilter(BaseModel):
    user_id: Optional[str] = None
    currency_code: Optional[str] = None
    types: Optional[list[TransactionType]] = None
    related_entity: Optional[RelatedEntity] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    def matches(self, txn: Transaction) -> bool:
        if self.user_id is not None and txn.user_id != self.user_id:
            return False
        if self.currency_code is not None and txn.currency_code != self.currency_code:
            return False
        if self.types and txn.type not in self.types:
            return False
        if self.related_entity is not None and txn.related_entity != self.related_entity:
            return False
        if self.since is not None and txn.created_at < self.since:
            return False
        if self.until is not None and txn.created_at >= self.until:
            return False
        return True


class TransactionPage(BaseModel):
    items: list[Transaction]
    total: int
    page: int
    limit: int


class BalanceView(BaseModel):
    user_id: str
    currency_code: str
    balance: int
    exists: bool
    version: int = 0


class WalletEntry(BaseModel):
    currency: Currency
    balance: int
    total_earned: int
    total_spent: int


class EntityAggregate(BaseModel):
    kind: str
    id: str
    total_amount: int = 0
    total_spent: int = 0
    credit_count: int = 0
    debit_count: int = 0
    unique_senders: int = 0


class CurrencyStats(BaseModel):
    scope: str
    currency_code: str
    user_id: Optional[str] = None
    balance: Optional[int] = None
    total_earned: Optional[int] = None
    total_spent: Optional[int] = None
    total_circulation: Optional[int] = None
    today_earned: Optional[int] = None
    today_spent: Optional[int] = None
    account_count: Optional[int] = None


class RankingEntry(BaseModel):
    user_id: str
    balance: int
    total_earned: int


class ReconciliationReport(BaseModel):
    account_id: UUID
    balance: int
    opening_balance: int
    ledger_sum: int
    transaction_count: int
    chain_consistent: bool
    first_broken_sequence: Optional[int] = None

    @computed_field
    @property
    def consistent(self) -> bool:
        return self.chain_consistent and self.balance == self.opening_balance + self.ledger_sum


class CheckInResult(BaseModel):
    user_id: str
    currency_code: str
    amount: int
    balance: int
    streak: int
    check_in_date: date
    already_checked_in: bool
    transaction: Transaction


class CheckInStatus(BaseModel):
    user_id: str
    streak: int = 0
    last_check_in_date: Optional[date] = None
    checked_in_today: bool = False


class TipResult(BaseModel):
    post_id: str
    amount: int
    balance: int
    transfer: TransferResult


class ShopItem(BaseModel):
    id: str
    name: str
    price: int = Field(..., gt=0)
    currency_code: str
    item_type: str = "generic"
    is_active: bool = True
    stock: Optional[int] = None


class InventoryItem(BaseModel):
    id: UUID
    user_id: str
    item_id: str
    source: str
    acquired_at: datetime
    metadata: dict = Field(default_factory=dict)


class PurchaseResult(BaseModel):
    item: InventoryItem
    balance: int
    transaction: Transaction


# Inbound request bodies for the HTTP adapter

class CreditRequest(BaseModel):
    user_id: str
    currency_code: str
    amount: int = Field(..., gt=0)
    description: str
    related_entity: Optional[RelatedEntity] = None
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "42",
            "currency_code": "credits",
            "amount": 100,
            "description": "Welcome bonus",
            "idempotency_key": "welcome:42",
        }
    })


class DebitRequest(CreditRequest):
    pass


class TransferRequest(BaseModel):
    from_user_id: str
    to_user_id: str
    currency_code: str
    amount: int = Field(..., gt=0)
    description: str
    related_entity: Optional[RelatedEntity] = None
    idempotency_key: Optional[str] = None


class ReverseRequest(BaseModel):
    reason: str = Field(..., description="Reason for reversal")


class TipRequest(BaseModel):
    from_user_id: str
    post_owner_id: str
    post_id: str
    amount: int = Field(..., gt=0)
    currency_code: Optional[str] = None
    message: Optional[str] = Field(default=None, max_length=200)
    idempotency_key: Optional[str] = None


class PurchaseRequest(BaseModel):
    user_id: str
    item_id: str
    idempotency_key: Optional[str] = None


class GiftRequest(BaseModel):
    sender_id: str
    receiver_id: str
    item_id: str
    message: Optional[str] = Field(default=None, max_length=200)


class RefundRequest(BaseModel):
    reason: str


class AdminAdjustRequest(BaseModel):
    user_id: str
    currency_code: str
    amount: int = Field(..., gt=0)
    direction: AdjustDirection
    description: Optional[str] = None
    actor_id: Optional[str] = None


class BatchAggregateRequest(BaseModel):
    post_ids: list[str]
