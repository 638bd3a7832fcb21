import logging
from datetime import datetime, time as dt_time, timedelta, tzinfo
from typing import Iterable, Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from .accounts import AccountStore
from .cache import BalanceCache
from .currencies import CurrencyRegistry
from .engine import OFFSET_TYPES
from .models import (
    BalanceView,
    CurrencyStats,
    EntityAggregate,
    RankingEntry,
    RankingField,
    ReconciliationReport,
    RelatedEntity,
    TransactionFilter,
    TransactionPage,
    TransactionType,
    WalletEntry,
)
from .transactions import TransactionLog

logger = logging.getLogger(__name__)


class QueryFacade:
    """Read-only views over accounts and the transaction log.

    Nothing here feeds a balance-mutating decision; the engine always reads
    the store directly.
    """

    def __init__(
        self,
        accounts: AccountStore,
        log: TransactionLog,
        currencies: CurrencyRegistry,
        cache: Optional[BalanceCache] = None,
        tz: Optional[tzinfo] = None,
    ):
        self.accounts = accounts
        self.log = log
        self.currencies = currencies
        self.cache = cache if cache is not None else BalanceCache(ttl_seconds=0)
        self.tz = tz or ZoneInfo("UTC")

    def get_balance(self, user_id: str, currency_code: str) -> BalanceView:
        currency = self.currencies.get_currency(currency_code)

        def load() -> BalanceView:
            account = self.accounts.get_account(user_id, currency_code)
            if account is None:
                return BalanceView(
                    user_id=user_id, currency_code=currency_code,
                    balance=currency.starting_balance, exists=False,
                )
            return BalanceView(
                user_id=user_id, currency_code=currency_code,
                balance=account.balance, exists=True, version=account.version,
            )

        return self.cache.remember((user_id, currency_code), "balance", load)

    def get_history(
        self,
        user_id: str,
        currency_code: str,
        page: int = 1,
        limit: int = 20,
        types: Optional[list[TransactionType]] = None,
    ) -> TransactionPage:
        self.currencies.get_currency(currency_code)
        type_key = tuple(sorted(t.value for t in types)) if types else ()

        def load() -> TransactionPage:
            account = self.accounts.get_account(user_id, currency_code)
            if account is None:
                return TransactionPage(items=[], total=0, page=max(page, 1), limit=limit)
            return self.log.list_for_account(
                account.id, page=page, limit=limit, filter=TransactionFilter(types=types),
            )

        return self.cache.remember((user_id, currency_code), ("history", page, limit, type_key), load)

    def list_transactions(
        self,
        page: int = 1,
        limit: int = 20,
        user_id: Optional[str] = None,
        currency_code: Optional[str] = None,
        types: Optional[list[TransactionType]] = None,
    ) -> TransactionPage:
        return self.log.list_all(
            page=page, limit=limit,
            filter=TransactionFilter(user_id=user_id, currency_code=currency_code, types=types),
        )

    def get_aggregate_for_entity(self, kind: str, entity_id: str) -> EntityAggregate:
        entity = RelatedEntity(kind=kind, id=entity_id)
        aggregate = EntityAggregate(kind=entity.kind, id=entity.id)
        senders = set()
        for txn in self.log.list_for_entity(entity):
            if txn.type in OFFSET_TYPES:
                continue
            if txn.amount > 0:
                aggregate.total_amount += txn.amount
                aggregate.credit_count += 1
                if txn.related_user_id:
                    senders.add(txn.related_user_id)
            else:
                aggregate.total_spent += -txn.amount
                aggregate.debit_count += 1
                senders.add(txn.user_id)
        aggregate.unique_senders = len(senders)
        return aggregate

    def get_aggregates_for_entities(self, kind: str, entity_ids: Iterable[str]) -> dict[str, EntityAggregate]:
        return {str(i): self.get_aggregate_for_entity(kind, str(i)) for i in entity_ids}

    def list_wallet(self, user_id: str) -> list[WalletEntry]:
        accounts = {a.currency_code: a for a in self.accounts.list_accounts(user_id=user_id)}
        wallet = []
        for currency in self.currencies.list_active_currencies():
            account = accounts.get(currency.code)
            wallet.append(WalletEntry(
                currency=currency,
                balance=account.balance if account else currency.starting_balance,
                total_earned=account.total_earned if account else 0,
                total_spent=account.total_spent if account else 0,
            ))
        return wallet

    def get_currency_stats(self, currency_code: str, user_id: Optional[str] = None) -> CurrencyStats:
        self.currencies.get_currency(currency_code)
        if user_id is not None:
            account = self.accounts.get_account(user_id, currency_code)
            return CurrencyStats(
                scope="user",
                currency_code=currency_code,
                user_id=user_id,
                balance=account.balance if account else 0,
                total_earned=account.total_earned if account else 0,
                total_spent=account.total_spent if account else 0,
            )

        accounts = self.accounts.list_accounts(currency_code=currency_code)
        start, end = self._today_bounds()
        todays = self.log.storage.list_transactions(
            None,
            TransactionFilter(currency_code=currency_code, since=start, until=end),
            offset=0,
            limit=None,
        )[0]
        return CurrencyStats(
            scope="system",
            currency_code=currency_code,
            total_circulation=sum(a.balance for a in accounts),
            today_earned=sum(t.amount for t in todays if t.amount > 0),
            today_spent=-sum(t.amount for t in todays if t.amount < 0),
            account_count=len(accounts),
        )

    def get_ranking(
        self,
        currency_code: str,
        by: RankingField = RankingField.BALANCE,
        limit: int = 50,
    ) -> list[RankingEntry]:
        accounts = self.accounts.list_accounts(currency_code=currency_code)
        accounts.sort(key=lambda a: getattr(a, by.value), reverse=True)
        return [
            RankingEntry(user_id=a.user_id, balance=a.balance, total_earned=a.total_earned)
            for a in accounts[:limit]
        ]

    def reconcile(self, account_id: UUID) -> ReconciliationReport:
        """Audit an account against its transaction log."""
        account = self.accounts.get_account_by_id(account_id)
        history = self.log.history(account_id)

        running = account.opening_balance
        broken = None
        for expected_sequence, txn in enumerate(history, start=1):
            running += txn.amount
            if txn.sequence != expected_sequence or txn.balance_after != running:
                broken = txn.sequence
                break

        report = ReconciliationReport(
            account_id=account.id,
            balance=account.balance,
            opening_balance=account.opening_balance,
            ledger_sum=self.log.sum_for_account(account_id),
            transaction_count=len(history),
            chain_consistent=broken is None,
            first_broken_sequence=broken,
        )
        if not report.consistent:
            logger.error("Account %s failed reconciliation: %s", account_id, report.model_dump())
        return report

    def _today_bounds(self) -> tuple[datetime, datetime]:
        today = self.log.storage.clock().astimezone(self.tz).date()
        start = datetime.combine(today, dt_time.min, tzinfo=self.tz)
        return start, start + timedelta(days=1)
