import logging
from typing import Optional
from uuid import UUID, uuid4

from .currencies import CurrencyRegistry
from .errors import AccountNotFound, CurrencyInactive
from .models import Account
from .storage import LedgerStorage, StorageUnit

logger = logging.getLogger(__name__)


class AccountStore:
    """One balance record per (user, currency), created lazily."""

    def __init__(
        self,
        storage: LedgerStorage,
        currencies: CurrencyRegistry,
        allow_inactive_creation: bool = False,
        attempt_timeout: Optional[float] = None,
    ):
        self.storage = storage
        self.currencies = currencies
        self.allow_inactive_creation = allow_inactive_creation
        self.attempt_timeout = attempt_timeout

    def get_or_create_account(self, user_id: str, currency_code: str) -> Account:
        currency = self.currencies.get_currency(currency_code)
        account = self.storage.get_account(user_id, currency_code)
        if account is not None:
            return account
        if not currency.is_active and not self.allow_inactive_creation:
            raise CurrencyInactive(currency_code)

        now = self.storage.clock()
        created = self.storage.create_account(Account(
            id=uuid4(),
            user_id=user_id,
            currency_code=currency_code,
            balance=currency.starting_balance,
            opening_balance=currency.starting_balance,
            version=0,
            created_at=now,
            updated_at=now,
        ))
        logger.debug("Account %s for user %s in %s", created.id, user_id, currency_code)
        return created

    def get_account(self, user_id: str, currency_code: str) -> Optional[Account]:
        return self.storage.get_account(user_id, currency_code)

    def get_account_by_id(self, account_id: UUID) -> Account:
        account = self.storage.get_account_by_id(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    def list_accounts(self, user_id: Optional[str] = None, currency_code: Optional[str] = None) -> list[Account]:
        return self.storage.list_accounts(user_id=user_id, currency_code=currency_code)

    def has_accounts(self, currency_code: str) -> bool:
        return bool(self.storage.list_accounts(currency_code=currency_code))

    def compare_and_swap_balance(
        self,
        account_id: UUID,
        expected_version: int,
        new_balance: int,
        unit: Optional[StorageUnit] = None,
    ) -> Account:
        """Write ``new_balance`` only if the account is still at ``expected_version``.

        Pass ``unit`` to make the write part of a larger atomic unit (the
        engine appends the matching transaction in the same unit). Raises
        ``VersionConflict`` when another writer got there first.
        """
        if unit is not None:
            return unit.compare_and_swap(account_id, expected_version, new_balance)
        with self.storage.unit_of_work(account_id, timeout=self.attempt_timeout) as own_unit:
            return own_unit.compare_and_swap(account_id, expected_version, new_balance)
