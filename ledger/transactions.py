from typing import Optional
from uuid import UUID

from .errors import TransactionNotFound
from .models import RelatedEntity, Transaction, TransactionFilter, TransactionPage, TransactionType
from .storage import LedgerStorage, StorageUnit


class TransactionLog:
    """Append-only record of balance mutations.

    Appends only happen inside a storage unit together with the balance
    compare-and-swap; there is no update or delete.
    """

    def __init__(self, storage: LedgerStorage, attempt_timeout: Optional[float] = None):
        self.storage = storage
        self.attempt_timeout = attempt_timeout

    def append(self, transaction: Transaction, unit: Optional[StorageUnit] = None) -> Transaction:
        if unit is not None:
            return unit.append(transaction)
        with self.storage.unit_of_work(transaction.account_id, timeout=self.attempt_timeout) as own_unit:
            return own_unit.append(transaction)

    def get(self, transaction_id: UUID) -> Transaction:
        txn = self.storage.get_transaction(transaction_id)
        if txn is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return txn

    def find_by_idempotency_key(self, account_id: UUID, idempotency_key: str) -> Optional[Transaction]:
        return self.storage.find_transaction(account_id, idempotency_key)

    def list_for_account(
        self,
        account_id: UUID,
        page: int = 1,
        limit: int = 20,
        filter: Optional[TransactionFilter] = None,
    ) -> TransactionPage:
        return self._page(account_id, page, limit, filter)

    def list_all(self, page: int = 1, limit: int = 20, filter: Optional[TransactionFilter] = None) -> TransactionPage:
        return self._page(None, page, limit, filter)

    def latest_of_type(self, account_id: UUID, txn_type: TransactionType) -> Optional[Transaction]:
        items, _ = self.storage.list_transactions(
            account_id, TransactionFilter(types=[txn_type]), offset=0, limit=1
        )
        return items[0] if items else None

    def list_for_entity(
        self,
        entity: RelatedEntity,
        types: Optional[list[TransactionType]] = None,
    ) -> list[Transaction]:
        items, _ = self.storage.list_transactions(
            None, TransactionFilter(related_entity=entity, types=types), offset=0, limit=None
        )
        return items

    def history(self, account_id: UUID) -> list[Transaction]:
        """All transactions of an account, oldest first."""
        items, _ = self.storage.list_transactions(account_id, None, offset=0, limit=None)
        return list(reversed(items))

    def sum_for_account(self, account_id: UUID) -> int:
        return self.storage.sum_transactions(account_id)

    def _page(self, account_id, page, limit, filter) -> TransactionPage:
        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        items, total = self.storage.list_transactions(account_id, filter, offset=(page - 1) * limit, limit=limit)
        return TransactionPage(items=items, total=total, page=page, limit=limit)
