"""
Grant policies: the idempotency-bearing business flows built on the engine.

Each policy derives a stable idempotency key (or accepts one from the caller)
so that a retried request never grants or charges twice.
"""

import logging
from datetime import date, datetime, timedelta, tzinfo
from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from .engine import LedgerEngine, offset_key
from .errors import (
    Contention,
    InsufficientBalance,
    InvalidAmount,
    InvalidOperation,
    ItemAlreadyOwned,
    ItemUnavailable,
    SelfTipNotAllowed,
)
from .inventory import Inventory, ShopCatalog
from .models import (
    AdjustDirection,
    CheckInResult,
    CheckInStatus,
    PurchaseResult,
    RelatedEntity,
    ShopItem,
    TipResult,
    Transaction,
    TransactionType,
    TransferResult,
)

logger = logging.getLogger(__name__)


def check_in_key(user_id: str, day: date) -> str:
    return f"checkin:{user_id}:{day.isoformat()}"


def check_in_amount(rules, streak: int) -> int:
    bonus_days = min(max(streak - 1, 0), rules.check_in_streak_cap_days)
    return rules.check_in_base_amount + bonus_days * rules.check_in_streak_bonus


class GrantPolicies:
    def __init__(
        self,
        engine: LedgerEngine,
        catalog: Optional[ShopCatalog] = None,
        inventory: Optional[Inventory] = None,
        default_currency: str = "credits",
        tz: Optional[tzinfo] = None,
    ):
        self.engine = engine
        self.accounts = engine.accounts
        self.log = engine.log
        self.currencies = engine.currencies
        self.catalog = catalog or ShopCatalog()
        self.inventory = inventory or Inventory()
        self.default_currency = default_currency
        self.tz = tz or ZoneInfo("UTC")

    # -----------------------------
    # Daily check-in
    # -----------------------------
    def check_in(self, user_id: str, currency_code: Optional[str] = None) -> CheckInResult:
        currency_code = currency_code or self.default_currency
        currency = self.currencies.require_active(currency_code)
        today = self._today()
        key = check_in_key(user_id, today)

        account = self.accounts.get_or_create_account(user_id, currency_code)
        existing = self.log.find_by_idempotency_key(account.id, key)
        if existing is not None:
            return self._check_in_result(user_id, currency_code, existing, replayed=True)

        last_date, last_streak = self._last_check_in(account.id)
        streak = last_streak + 1 if last_date == today - timedelta(days=1) else 1
        amount = check_in_amount(currency.rules, streak)

        applied = self.engine.apply(
            user_id, currency_code, amount,
            f"Daily check-in (day {streak})",
            type=TransactionType.CHECK_IN,
            idempotency_key=key,
            metadata={"check_in_date": today.isoformat(), "streak": streak},
        )
        if not applied.replayed:
            logger.info("User %s checked in (streak %d, +%d %s)", user_id, streak, amount, currency_code)
        return self._check_in_result(user_id, currency_code, applied.transaction, replayed=applied.replayed)

    def check_in_status(self, user_id: str, currency_code: Optional[str] = None) -> CheckInStatus:
        currency_code = currency_code or self.default_currency
        account = self.accounts.get_account(user_id, currency_code)
        if account is None:
            return CheckInStatus(user_id=user_id)

        last_date, streak = self._last_check_in(account.id)
        today = self._today()
        if last_date is None:
            return CheckInStatus(user_id=user_id)
        # A streak survives until the end of the day after the last check-in.
        alive = last_date >= today - timedelta(days=1)
        return CheckInStatus(
            user_id=user_id,
            streak=streak if alive else 0,
            last_check_in_date=last_date,
            checked_in_today=last_date == today,
        )

    # -----------------------------
    # Content rewards
    # -----------------------------
    def tip(
        self,
        from_user_id: str,
        to_owner_id: str,
        post_id: str,
        amount: int,
        currency_code: Optional[str] = None,
        message: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TipResult:
        if from_user_id == to_owner_id:
            raise SelfTipNotAllowed()
        currency_code = currency_code or self.default_currency
        rules = self.currencies.require_active(currency_code).rules
        if isinstance(amount, bool) or not isinstance(amount, int) or not (
            rules.reward_min_amount <= amount <= rules.reward_max_amount
        ):
            raise InvalidAmount(
                f"Reward amount must be between {rules.reward_min_amount} and {rules.reward_max_amount}"
            )

        metadata = {"post_id": str(post_id)}
        if message:
            metadata["message"] = message
        debit, credit = self.engine.apply_transfer(
            from_user_id, to_owner_id, currency_code, amount,
            f"Reward for post {post_id}",
            related_entity=RelatedEntity(kind="post", id=post_id),
            idempotency_key=idempotency_key,
            debit_type=TransactionType.POST_REWARD,
            credit_type=TransactionType.POST_REWARD,
            metadata=metadata,
        )
        return TipResult(
            post_id=str(post_id),
            amount=amount,
            balance=debit.transaction.balance_after,
            transfer=TransferResult(
                debit_transaction=debit.transaction,
                credit_transaction=credit.transaction,
            ),
        )

    # -----------------------------
    # Shop
    # -----------------------------
    def purchase(self, user_id: str, item_id: str, idempotency_key: Optional[str] = None) -> PurchaseResult:
        item = self.catalog.get_item(item_id)
        if idempotency_key is not None:
            replay = self._purchase_replay(user_id, item, idempotency_key)
            if replay is not None:
                return replay
        return self._buy(
            payer_id=user_id,
            owner_id=user_id,
            item=item,
            txn_type=TransactionType.SHOP_PURCHASE,
            description=f"Purchase: {item.name}",
            source="purchase",
            idempotency_key=idempotency_key,
        )

    def gift(self, sender_id: str, receiver_id: str, item_id: str, message: Optional[str] = None) -> PurchaseResult:
        if sender_id == receiver_id:
            raise InvalidOperation("Cannot gift an item to yourself")
        item = self.catalog.get_item(item_id)
        metadata = {"receiver_id": receiver_id}
        if message:
            metadata["message"] = message
        return self._buy(
            payer_id=sender_id,
            owner_id=receiver_id,
            item=item,
            txn_type=TransactionType.GIFT_SENT,
            description=f"Gift: {item.name}",
            source="gift",
            related_user_id=receiver_id,
            metadata=metadata,
        )

    def refund(self, transaction_id: UUID, reason: str) -> Transaction:
        original = self.log.get(transaction_id)
        if original.amount >= 0:
            raise InvalidOperation("Only debits can be refunded")
        applied = self.engine.offset(transaction_id, reason, TransactionType.REFUND)
        if not applied.replayed and original.type == TransactionType.SHOP_PURCHASE and original.related_entity:
            item_id = original.related_entity.id
            if self.inventory.revoke_item(original.user_id, item_id):
                self.catalog.release_stock(item_id)
        return applied.transaction

    # -----------------------------
    # Administration
    # -----------------------------
    def admin_adjust(
        self,
        user_id: str,
        currency_code: str,
        amount: int,
        direction: AdjustDirection,
        description: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Transaction:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(f"Amount must be a positive integer, got {amount!r}")
        direction = AdjustDirection(direction)
        grant = direction == AdjustDirection.GRANT
        applied = self.engine.apply(
            user_id, currency_code, amount if grant else -amount,
            description or f"Admin {direction.value}",
            type=TransactionType.ADMIN_GRANT if grant else TransactionType.ADMIN_DEDUCT,
            metadata={"actor_id": actor_id} if actor_id else None,
            require_active=False,
            allow_overdraft=not grant,
        )
        logger.info("Admin %s of %d %s for user %s by %s",
                    direction.value, amount, currency_code, user_id, actor_id or "system")
        return applied.transaction

    # -----------------------------
    # Helpers
    # -----------------------------
    def _buy(
        self,
        payer_id: str,
        owner_id: str,
        item: ShopItem,
        txn_type: TransactionType,
        description: str,
        source: str,
        related_user_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> PurchaseResult:
        if not item.is_active:
            raise ItemUnavailable(f"Item {item.id} is not available")
        if self.inventory.owns(owner_id, item.id):
            raise ItemAlreadyOwned(f"User {owner_id} already owns item {item.id}")
        currency = self.currencies.require_active(item.currency_code)

        account = self.accounts.get_account(payer_id, item.currency_code)
        balance = account.balance if account else currency.starting_balance
        if balance < item.price and not currency.allow_negative_balance:
            raise InsufficientBalance(item.currency_code, balance, item.price)

        self.catalog.reserve_stock(item.id)
        try:
            applied = self.engine.apply(
                payer_id, item.currency_code, -item.price, description,
                type=txn_type,
                related_entity=RelatedEntity(kind="shopItem", id=item.id),
                related_user_id=related_user_id,
                idempotency_key=idempotency_key,
                metadata={"item_id": item.id, "item_name": item.name, **(metadata or {})},
            )
        except Exception:
            self.catalog.release_stock(item.id)
            raise

        debit = applied.transaction
        if applied.replayed:
            # A concurrent request with the same key committed this purchase.
            self.catalog.release_stock(item.id)
            return self._existing_purchase(owner_id, item, debit)

        try:
            owned = self.inventory.grant_item(
                owner_id, item.id, source, metadata={"transaction_id": str(debit.id)},
            )
        except Exception as exc:
            self.catalog.release_stock(item.id)
            self.engine.compensate(debit, exc, TransactionType.REFUND)
            raise

        return PurchaseResult(item=owned, balance=debit.balance_after, transaction=debit)

    def _purchase_replay(self, user_id: str, item: ShopItem, idempotency_key: str) -> Optional[PurchaseResult]:
        account = self.accounts.get_account(user_id, item.currency_code)
        if account is None:
            return None
        existing = self.log.find_by_idempotency_key(account.id, idempotency_key)
        if existing is None:
            return None
        return self._existing_purchase(user_id, item, existing)

    def _existing_purchase(self, owner_id: str, item: ShopItem, debit: Transaction) -> PurchaseResult:
        key = debit.idempotency_key
        if debit.related_entity is None or debit.related_entity.id != item.id:
            raise InvalidOperation(f"Idempotency key '{key}' was used for a different operation")
        owned = next((i for i in self.inventory.list_items(owner_id) if i.item_id == item.id), None)
        if owned is not None:
            return PurchaseResult(item=owned, balance=debit.balance_after, transaction=debit)
        if self.log.find_by_idempotency_key(debit.account_id, offset_key(debit.id)) is not None:
            raise InvalidOperation(f"Idempotency key '{key}' belongs to a purchase that was refunded")
        raise Contention(f"Purchase {debit.id} is still being completed")

    def _last_check_in(self, account_id: UUID) -> tuple[Optional[date], int]:
        last = self.log.latest_of_type(account_id, TransactionType.CHECK_IN)
        if last is None:
            return None, 0
        return date.fromisoformat(last.metadata["check_in_date"]), int(last.metadata.get("streak", 1))

    def _check_in_result(self, user_id: str, currency_code: str, txn: Transaction, replayed: bool) -> CheckInResult:
        account = self.accounts.get_account(user_id, currency_code)
        return CheckInResult(
            user_id=user_id,
            currency_code=currency_code,
            amount=txn.amount,
            balance=account.balance if account else txn.balance_after,
            streak=int(txn.metadata.get("streak", 1)),
            check_in_date=date.fromisoformat(txn.metadata["check_in_date"]),
            already_checked_in=replayed,
            transaction=txn,
        )

    def _today(self) -> date:
        now: datetime = self.engine.storage.clock()
        return now.astimezone(self.tz).date()
