import logging
from typing import Iterable, Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from .accounts import AccountStore
from .cache import BalanceCache
from .config import LedgerSettings
from .currencies import CurrencyRegistry
from .engine import LedgerEngine
from .inventory import Inventory, ShopCatalog
from .models import (
    AdjustDirection,
    BalanceView,
    CheckInResult,
    CheckInStatus,
    Currency,
    CurrencyRules,
    CurrencyStats,
    EntityAggregate,
    InventoryItem,
    PurchaseResult,
    RankingEntry,
    RankingField,
    ReconciliationReport,
    RelatedEntity,
    ShopItem,
    TipResult,
    Transaction,
    TransactionPage,
    TransactionType,
    TransferResult,
    WalletEntry,
)
from .policies import GrantPolicies
from .query import QueryFacade
from .storage import InMemoryStorage, LedgerStorage
from .transactions import TransactionLog

logger = logging.getLogger(__name__)


def _uid(user_id) -> str:
    return str(user_id)


class LedgerService:
    """Inbound surface of the ledger.

    Takes plain identifiers, returns pydantic models and raises
    ``LedgerError`` subclasses. User ids of any type are normalised to
    strings so that ``42`` and ``"42"`` address the same account.
    """

    def __init__(
        self,
        currencies: CurrencyRegistry,
        accounts: AccountStore,
        log: TransactionLog,
        engine: LedgerEngine,
        policies: GrantPolicies,
        query: QueryFacade,
        settings: Optional[LedgerSettings] = None,
    ):
        self.currencies = currencies
        self.accounts = accounts
        self.log = log
        self.engine = engine
        self.policies = policies
        self.query = query
        self.settings = settings or LedgerSettings()

    @property
    def storage(self) -> LedgerStorage:
        return self.accounts.storage

    # -----------------------------
    # Core mutations
    # -----------------------------
    def credit(
        self,
        user_id,
        currency_code: str,
        amount: int,
        description: str,
        related_entity: Optional[RelatedEntity] = None,
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        return self.engine.credit(
            _uid(user_id), currency_code, amount, description,
            related_entity=related_entity, idempotency_key=idempotency_key,
        )

    def debit(
        self,
        user_id,
        currency_code: str,
        amount: int,
        description: str,
        related_entity: Optional[RelatedEntity] = None,
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        return self.engine.debit(
            _uid(user_id), currency_code, amount, description,
            related_entity=related_entity, idempotency_key=idempotency_key,
        )

    def transfer(
        self,
        from_user_id,
        to_user_id,
        currency_code: str,
        amount: int,
        description: str,
        related_entity: Optional[RelatedEntity] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        return self.engine.transfer(
            _uid(from_user_id), _uid(to_user_id), currency_code, amount, description,
            related_entity=related_entity, idempotency_key=idempotency_key,
        )

    def reverse(self, transaction_id: UUID, reason: str) -> Transaction:
        return self.engine.reverse(transaction_id, reason)

    def get_or_create_account(self, user_id, currency_code: str):
        return self.accounts.get_or_create_account(_uid(user_id), currency_code)

    # -----------------------------
    # Grant policies
    # -----------------------------
    def check_in(self, user_id, currency_code: Optional[str] = None) -> CheckInResult:
        return self.policies.check_in(_uid(user_id), currency_code)

    def check_in_status(self, user_id, currency_code: Optional[str] = None) -> CheckInStatus:
        return self.policies.check_in_status(_uid(user_id), currency_code)

    def tip(
        self,
        from_user_id,
        to_owner_id,
        post_id,
        amount: int,
        currency_code: Optional[str] = None,
        message: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TipResult:
        return self.policies.tip(
            _uid(from_user_id), _uid(to_owner_id), str(post_id), amount,
            currency_code=currency_code, message=message, idempotency_key=idempotency_key,
        )

    def purchase(self, user_id, item_id: str, idempotency_key: Optional[str] = None) -> PurchaseResult:
        return self.policies.purchase(_uid(user_id), str(item_id), idempotency_key=idempotency_key)

    def gift(self, sender_id, receiver_id, item_id: str, message: Optional[str] = None) -> PurchaseResult:
        return self.policies.gift(_uid(sender_id), _uid(receiver_id), str(item_id), message=message)

    def refund(self, transaction_id: UUID, reason: str) -> Transaction:
        return self.policies.refund(transaction_id, reason)

    def admin_adjust(
        self,
        user_id,
        currency_code: str,
        amount: int,
        direction: AdjustDirection,
        description: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Transaction:
        return self.policies.admin_adjust(
            _uid(user_id), currency_code, amount, direction,
            description=description, actor_id=actor_id,
        )

    def list_inventory(self, user_id) -> list[InventoryItem]:
        return self.policies.inventory.list_items(_uid(user_id))

    def list_shop_items(self) -> list[ShopItem]:
        return self.policies.catalog.list_items()

    def add_shop_item(self, item: ShopItem) -> ShopItem:
        self.currencies.get_currency(item.currency_code)
        return self.policies.catalog.add_item(item)

    # -----------------------------
    # Reads
    # -----------------------------
    def get_balance(self, user_id, currency_code: str) -> BalanceView:
        return self.query.get_balance(_uid(user_id), currency_code)

    def get_history(
        self,
        user_id,
        currency_code: str,
        page: int = 1,
        limit: int = 20,
        types: Optional[list[TransactionType]] = None,
    ) -> TransactionPage:
        return self.query.get_history(_uid(user_id), currency_code, page=page, limit=limit, types=types)

    def get_transaction(self, transaction_id: UUID) -> Transaction:
        return self.log.get(transaction_id)

    def list_transactions(
        self,
        page: int = 1,
        limit: int = 20,
        user_id=None,
        currency_code: Optional[str] = None,
        types: Optional[list[TransactionType]] = None,
    ) -> TransactionPage:
        return self.query.list_transactions(
            page=page, limit=limit,
            user_id=_uid(user_id) if user_id is not None else None,
            currency_code=currency_code, types=types,
        )

    def get_aggregate_for_entity(self, kind: str, entity_id) -> EntityAggregate:
        return self.query.get_aggregate_for_entity(kind, str(entity_id))

    def get_aggregates_for_entities(self, kind: str, entity_ids: Iterable) -> dict[str, EntityAggregate]:
        return self.query.get_aggregates_for_entities(kind, entity_ids)

    def list_wallet(self, user_id) -> list[WalletEntry]:
        return self.query.list_wallet(_uid(user_id))

    def get_currency_stats(self, currency_code: str, user_id=None) -> CurrencyStats:
        return self.query.get_currency_stats(
            currency_code, user_id=_uid(user_id) if user_id is not None else None,
        )

    def get_ranking(
        self,
        currency_code: str,
        by: RankingField = RankingField.BALANCE,
        limit: int = 50,
    ) -> list[RankingEntry]:
        return self.query.get_ranking(currency_code, by=RankingField(by), limit=limit)

    def reconcile(self, account_id: UUID) -> ReconciliationReport:
        return self.query.reconcile(account_id)

    # -----------------------------
    # Currencies
    # -----------------------------
    def list_currencies(self, active_only: bool = False) -> list[Currency]:
        if active_only:
            return self.currencies.list_active_currencies()
        return self.currencies.list_currencies()

    def get_currency(self, code: str) -> Currency:
        return self.currencies.get_currency(code)

    def create_currency(self, currency: Currency) -> Currency:
        return self.currencies.create_currency(currency)

    def set_currency_active(self, code: str, active: bool) -> Currency:
        return self.currencies.set_active(code, active)

    def update_currency(
        self,
        code: str,
        *,
        name: Optional[str] = None,
        symbol: Optional[str] = None,
        rules: Optional[CurrencyRules] = None,
        allow_negative_balance: Optional[bool] = None,
        migrate: bool = False,
    ) -> Currency:
        return self.currencies.update_currency(
            code, name=name, symbol=symbol, rules=rules,
            allow_negative_balance=allow_negative_balance, migrate=migrate,
        )


def build_service(
    settings: Optional[LedgerSettings] = None,
    storage: Optional[LedgerStorage] = None,
    clock=None,
    catalog: Optional[ShopCatalog] = None,
    inventory: Optional[Inventory] = None,
) -> LedgerService:
    """Wire every ledger component from one settings object.

    ``storage`` overrides the backend chosen by ``settings.database_url``
    (in-memory when unset).
    """
    settings = settings or LedgerSettings()

    if storage is None:
        if settings.database_url:
            from .sql_storage import create_sql_storage

            storage = create_sql_storage(
                settings.database_url,
                attempt_timeout=settings.attempt_timeout_seconds,
                clock=clock,
            )
        else:
            storage = InMemoryStorage(clock=clock)

    currencies = CurrencyRegistry(settings.currencies)
    accounts = AccountStore(
        storage, currencies,
        allow_inactive_creation=settings.allow_inactive_account_creation,
        attempt_timeout=settings.attempt_timeout_seconds,
    )
    currencies.bind_reference_check(accounts.has_accounts)
    log = TransactionLog(storage, attempt_timeout=settings.attempt_timeout_seconds)
    engine = LedgerEngine(
        accounts, log, currencies,
        max_attempts=settings.max_attempts,
        attempt_timeout=settings.attempt_timeout_seconds,
        retry_backoff=settings.retry_backoff_seconds,
    )

    tz = ZoneInfo(settings.check_in_timezone)
    cache = BalanceCache(ttl_seconds=settings.cache_ttl_seconds, max_entries=settings.cache_max_entries)
    engine.add_commit_listener(cache.invalidate_transaction)

    policies = GrantPolicies(
        engine, catalog=catalog, inventory=inventory,
        default_currency=settings.default_currency, tz=tz,
    )
    query = QueryFacade(accounts, log, currencies, cache=cache, tz=tz)
    logger.info(
        "Ledger ready (%s backend, %d currencies)",
        storage.__class__.__name__, len(currencies.list_currencies()),
    )
    return LedgerService(currencies, accounts, log, engine, policies, query, settings=settings)
