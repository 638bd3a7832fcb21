import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, ContextManager, Iterator, Optional, Protocol
from uuid import UUID

from .clock import utcnow
from .errors import AccountNotFound, AttemptTimeout, DuplicateIdempotencyKey, VersionConflict
from .models import Account, Transaction, TransactionFilter


class StorageUnit(Protocol):
    """One all-or-nothing write against a single account."""

    def compare_and_swap(self, account_id: UUID, expected_version: int, new_balance: int) -> Account: ...

    def append(self, transaction: Transaction) -> Transaction: ...


class LedgerStorage(Protocol):
    clock: Callable[[], datetime]

    def unit_of_work(self, account_id: UUID, timeout: Optional[float] = None) -> ContextManager[StorageUnit]: ...

    def get_account(self, user_id: str, currency_code: str) -> Optional[Account]: ...

    def get_account_by_id(self, account_id: UUID) -> Optional[Account]: ...

    def create_account(self, account: Account) -> Account: ...

    def list_accounts(self, user_id: Optional[str] = None, currency_code: Optional[str] = None) -> list[Account]: ...

    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]: ...

    def find_transaction(self, account_id: UUID, idempotency_key: str) -> Optional[Transaction]: ...

    def list_transactions(
        self,
        account_id: Optional[UUID],
        filter: Optional[TransactionFilter],
        offset: int,
        limit: Optional[int],
    ) -> tuple[list[Transaction], int]: ...

    def sum_transactions(self, account_id: UUID) -> int: ...


def apply_delta(account: Account, new_balance: int, now) -> Account:
    delta = new_balance - account.balance
    return account.model_copy(update={
        "balance": new_balance,
        "version": account.version + 1,
        "total_earned": account.total_earned + max(delta, 0),
        "total_spent": account.total_spent + max(-delta, 0),
        "updated_at": now,
    })


class _MemoryUnit:
    def __init__(self, storage: "InMemoryStorage", account_id: UUID):
        self._storage = storage
        self._account_id = account_id
        self.account: Optional[Account] = None
        self.transactions: list[Transaction] = []

    def compare_and_swap(self, account_id: UUID, expected_version: int, new_balance: int) -> Account:
        if account_id != self._account_id:
            raise ValueError("A storage unit covers exactly one account")
        current = self.account or self._storage.get_account_by_id(account_id)
        if current is None:
            raise AccountNotFound(f"Account {account_id} not found")
        if current.version != expected_version:
            raise VersionConflict(account_id, expected_version, current.version)
        self.account = apply_delta(current, new_balance, self._storage.clock())
        return self.account

    def append(self, transaction: Transaction) -> Transaction:
        if transaction.account_id != self._account_id:
            raise ValueError("A storage unit covers exactly one account")
        key = transaction.idempotency_key
        if key is not None:
            existing = self._storage.find_transaction(transaction.account_id, key)
            staged = next((t for t in self.transactions if t.idempotency_key == key), None)
            if existing or staged:
                raise DuplicateIdempotencyKey(key, existing or staged)
        self.transactions.append(transaction)
        return transaction


class InMemoryStorage:
    """Process-local backend.

    Each account has its own lock; a unit of work holds it for the whole
    compare-and-swap plus append, and publishes staged rows only when the
    block exits cleanly. ``_lock`` only guards the shared indexes.
    """

    def __init__(self, clock=None):
        self.clock = clock or utcnow
        self.accounts: dict[UUID, Account] = {}
        self.account_index: dict[tuple[str, str], UUID] = {}
        self.transactions: dict[UUID, Transaction] = {}
        self.account_transactions: dict[UUID, list[UUID]] = {}
        self.idempotency_index: dict[tuple[UUID, str], UUID] = {}
        self._account_locks: dict[UUID, threading.Lock] = {}
        self._lock = threading.RLock()

    @contextmanager
    def unit_of_work(self, account_id: UUID, timeout: Optional[float] = None) -> Iterator[_MemoryUnit]:
        with self._lock:
            account_lock = self._account_locks.setdefault(account_id, threading.Lock())
        acquired = account_lock.acquire(timeout=timeout if timeout is not None else -1)
        if not acquired:
            raise AttemptTimeout(account_id, timeout)
        try:
            unit = _MemoryUnit(self, account_id)
            yield unit
            self._publish(unit)
        finally:
            account_lock.release()

    def _publish(self, unit: _MemoryUnit) -> None:
        with self._lock:
            if unit.account is not None:
                self.accounts[unit.account.id] = unit.account
            for txn in unit.transactions:
                self.transactions[txn.id] = txn
                self.account_transactions.setdefault(txn.account_id, []).append(txn.id)
                if txn.idempotency_key is not None:
                    self.idempotency_index[(txn.account_id, txn.idempotency_key)] = txn.id

    def get_account(self, user_id: str, currency_code: str) -> Optional[Account]:
        with self._lock:
            account_id = self.account_index.get((user_id, currency_code))
            return self.accounts.get(account_id) if account_id else None

    def get_account_by_id(self, account_id: UUID) -> Optional[Account]:
        with self._lock:
            return self.accounts.get(account_id)

    def create_account(self, account: Account) -> Account:
        with self._lock:
            existing_id = self.account_index.get((account.user_id, account.currency_code))
            if existing_id is not None:
                return self.accounts[existing_id]
            self.accounts[account.id] = account
            self.account_index[(account.user_id, account.currency_code)] = account.id
            return account

    def list_accounts(self, user_id: Optional[str] = None, currency_code: Optional[str] = None) -> list[Account]:
        with self._lock:
            accounts = list(self.accounts.values())
        return [
            a for a in accounts
            if (user_id is None or a.user_id == user_id)
            and (currency_code is None or a.currency_code == currency_code)
        ]

    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        with self._lock:
            return self.transactions.get(transaction_id)

    def find_transaction(self, account_id: UUID, idempotency_key: str) -> Optional[Transaction]:
        with self._lock:
            txn_id = self.idempotency_index.get((account_id, idempotency_key))
            return self.transactions.get(txn_id) if txn_id else None

    def list_transactions(
        self,
        account_id: Optional[UUID],
        filter: Optional[TransactionFilter],
        offset: int,
        limit: Optional[int],
    ) -> tuple[list[Transaction], int]:
        with self._lock:
            if account_id is None:
                rows = list(self.transactions.values())
            else:
                rows = [self.transactions[i] for i in self.account_transactions.get(account_id, [])]
        if filter is not None:
            rows = [t for t in rows if filter.matches(t)]
        if account_id is None:
            rows.sort(key=lambda t: (t.created_at, t.sequence), reverse=True)
        else:
            rows.sort(key=lambda t: t.sequence, reverse=True)
        end = None if limit is None else offset + limit
        return rows[offset:end], len(rows)

    def sum_transactions(self, account_id: UUID) -> int:
        with self._lock:
            return sum(self.transactions[i].amount for i in self.account_transactions.get(account_id, []))
