"""
Ledger engine: atomic credit, debit and transfer.

Every mutation is a read-modify-write against one account, committed as a
single storage unit (balance compare-and-swap plus transaction append) and
retried on version conflicts up to a fixed number of attempts.
"""

import logging
import random
import time
from typing import Callable, Optional
from uuid import UUID, uuid4

from .accounts import AccountStore
from .currencies import CurrencyRegistry
from .errors import (
    CompensationFailed,
    Contention,
    DuplicateIdempotencyKey,
    InsufficientBalance,
    InvalidAmount,
    InvalidOperation,
    VersionConflict,
)
from .models import (
    Account,
    AppliedTransaction,
    RelatedEntity,
    Transaction,
    TransactionType,
    TransferResult,
)
from .transactions import TransactionLog

logger = logging.getLogger(__name__)

CommitListener = Callable[[Transaction], None]

TRANSFER_TYPES = (TransactionType.TRANSFER_OUT, TransactionType.TRANSFER_IN)
OFFSET_TYPES = (TransactionType.REVERSAL, TransactionType.REFUND)


def offset_key(transaction_id: UUID) -> str:
    # Shared by reversals and refunds so at most one offset per original commits.
    return f"offset:{transaction_id}"


def is_transfer_leg(txn: Transaction) -> bool:
    return txn.type in TRANSFER_TYPES or "transfer_leg" in txn.metadata


def _require_positive(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"Amount must be a positive integer, got {amount!r}")
    return amount


class LedgerEngine:
    def __init__(
        self,
        accounts: AccountStore,
        log: TransactionLog,
        currencies: CurrencyRegistry,
        max_attempts: int = 5,
        attempt_timeout: Optional[float] = 2.0,
        retry_backoff: float = 0.005,
    ):
        self.accounts = accounts
        self.log = log
        self.currencies = currencies
        self.storage = accounts.storage
        self.max_attempts = max_attempts
        self.attempt_timeout = attempt_timeout
        self.retry_backoff = retry_backoff
        self._listeners: list[CommitListener] = []

    def add_commit_listener(self, listener: CommitListener) -> None:
        self._listeners.append(listener)

    # -----------------------------
    # Public operations
    # -----------------------------
    def credit(
        self,
        user_id: str,
        currency_code: str,
        amount: int,
        description: str,
        related_entity: Optional[RelatedEntity] = None,
        idempotency_key: Optional[str] = None,
        **options,
    ) -> Transaction:
        options.setdefault("type", TransactionType.CREDIT)
        return self.apply(
            user_id, currency_code, _require_positive(amount), description,
            related_entity=related_entity, idempotency_key=idempotency_key, **options,
        ).transaction

    def debit(
        self,
        user_id: str,
        currency_code: str,
        amount: int,
        description: str,
        related_entity: Optional[RelatedEntity] = None,
        idempotency_key: Optional[str] = None,
        **options,
    ) -> Transaction:
        options.setdefault("type", TransactionType.DEBIT)
        return self.apply(
            user_id, currency_code, -_require_positive(amount), description,
            related_entity=related_entity, idempotency_key=idempotency_key, **options,
        ).transaction

    def transfer(
        self,
        from_user_id: str,
        to_user_id: str,
        currency_code: str,
        amount: int,
        description: str,
        related_entity: Optional[RelatedEntity] = None,
        idempotency_key: Optional[str] = None,
        **options,
    ) -> TransferResult:
        debit, credit = self.apply_transfer(
            from_user_id, to_user_id, currency_code, amount, description,
            related_entity=related_entity, idempotency_key=idempotency_key, **options,
        )
        return TransferResult(debit_transaction=debit.transaction, credit_transaction=credit.transaction)

    def reverse(self, transaction_id: UUID, reason: str) -> Transaction:
        return self.offset(transaction_id, reason, TransactionType.REVERSAL).transaction

    # -----------------------------
    # Core mutation
    # -----------------------------
    def apply(
        self,
        user_id: str,
        currency_code: str,
        signed_amount: int,
        description: str,
        *,
        type: TransactionType,
        related_entity: Optional[RelatedEntity] = None,
        related_user_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
        require_active: bool = True,
        allow_overdraft: bool = False,
    ) -> AppliedTransaction:
        """Post ``signed_amount`` to the user's account.

        Returns the committed transaction, or the earlier one (``replayed``)
        when ``idempotency_key`` was already used on this account.
        """
        if isinstance(signed_amount, bool) or not isinstance(signed_amount, int) or signed_amount == 0:
            raise InvalidAmount(f"Amount must be a non-zero integer, got {signed_amount!r}")
        if require_active:
            currency = self.currencies.require_active(currency_code)
        else:
            currency = self.currencies.get_currency(currency_code)
        account = self.accounts.get_or_create_account(user_id, currency_code)

        for attempt in range(1, self.max_attempts + 1):
            if idempotency_key is not None:
                existing = self.log.find_by_idempotency_key(account.id, idempotency_key)
                if existing is not None:
                    logger.info("Idempotent replay of %s on account %s", idempotency_key, account.id)
                    return AppliedTransaction(transaction=existing, replayed=True)

            new_balance = account.balance + signed_amount
            if (
                signed_amount < 0
                and new_balance < 0
                and not currency.allow_negative_balance
                and not allow_overdraft
            ):
                raise InsufficientBalance(currency_code, account.balance, -signed_amount)

            draft = self._draft(
                account, signed_amount, new_balance, description, type,
                related_entity, related_user_id, idempotency_key, metadata,
            )
            try:
                with self.storage.unit_of_work(account.id, timeout=self.attempt_timeout) as unit:
                    self.accounts.compare_and_swap_balance(account.id, account.version, new_balance, unit=unit)
                    txn = self.log.append(draft, unit=unit)
            except DuplicateIdempotencyKey as exc:
                logger.info("Idempotent replay of %s on account %s", idempotency_key, account.id)
                return AppliedTransaction(transaction=exc.existing, replayed=True)
            except VersionConflict as exc:
                logger.info("Attempt %d/%d on account %s lost the race: %s",
                            attempt, self.max_attempts, account.id, exc)
                if attempt < self.max_attempts:
                    self._backoff(attempt)
                account = self.accounts.get_account_by_id(account.id)
                continue

            logger.debug("Committed %s %+d on account %s (balance %d, seq %d)",
                         txn.type.value, txn.amount, account.id, txn.balance_after, txn.sequence)
            self._notify(txn)
            return AppliedTransaction(transaction=txn)

        raise Contention(
            f"Account {account.id} is busy; gave up after {self.max_attempts} attempts"
        )

    def apply_transfer(
        self,
        from_user_id: str,
        to_user_id: str,
        currency_code: str,
        amount: int,
        description: str,
        *,
        related_entity: Optional[RelatedEntity] = None,
        idempotency_key: Optional[str] = None,
        debit_type: TransactionType = TransactionType.TRANSFER_OUT,
        credit_type: TransactionType = TransactionType.TRANSFER_IN,
        metadata: Optional[dict] = None,
    ) -> tuple[AppliedTransaction, AppliedTransaction]:
        """Debit the source, then credit the destination.

        A failed credit is compensated with a reversal on the source before
        the error is re-raised, so no transfer is ever left half-applied.
        """
        _require_positive(amount)
        if from_user_id == to_user_id:
            raise InvalidOperation("Cannot transfer to the same user")
        currency = self.currencies.require_active(currency_code)

        source = self.accounts.get_or_create_account(from_user_id, currency_code)
        self.accounts.get_or_create_account(to_user_id, currency_code)

        out_key, in_key = self._transfer_keys(source, idempotency_key)
        already_debited = out_key is not None and self.log.find_by_idempotency_key(source.id, out_key)
        if not already_debited and source.balance < amount and not currency.allow_negative_balance:
            raise InsufficientBalance(currency_code, source.balance, amount)

        debit = self.apply(
            from_user_id, currency_code, -amount, description,
            type=debit_type, related_entity=related_entity, related_user_id=to_user_id,
            idempotency_key=out_key, metadata={**(metadata or {}), "transfer_leg": "out"},
        )
        try:
            credit = self.apply(
                to_user_id, currency_code, amount, description,
                type=credit_type, related_entity=related_entity, related_user_id=from_user_id,
                idempotency_key=in_key, metadata={**(metadata or {}), "transfer_leg": "in"},
            )
        except Exception as exc:
            self.compensate(debit.transaction, exc)
            raise
        return debit, credit

    def offset(
        self,
        transaction_id: UUID,
        reason: str,
        txn_type: TransactionType,
        allow_overdraft: bool = False,
    ) -> AppliedTransaction:
        """Post the exact opposite of an earlier transaction.

        History is never edited; the offset references the original through
        ``related_entity``. Reversals and refunds share one idempotency key
        per original, so an original is offset at most once whichever kind
        gets there first. A single transfer leg cannot be offset because its
        counterpart would stay in place.
        """
        original = self.log.get(transaction_id)
        if original.type in OFFSET_TYPES:
            raise InvalidOperation("Offsetting transactions cannot themselves be offset")
        if is_transfer_leg(original):
            raise InvalidOperation(f"Transaction {original.id} is one leg of a transfer and cannot be offset alone")

        applied = self._post_offset(original, reason, txn_type, allow_overdraft)
        if applied.replayed and applied.transaction.type != txn_type:
            raise InvalidOperation(
                f"Transaction {original.id} was already offset by a {applied.transaction.type.value}"
            )
        return applied

    def compensate(
        self,
        transaction: Transaction,
        cause: Exception,
        txn_type: TransactionType = TransactionType.REVERSAL,
    ) -> Transaction:
        """Offset a transaction this process just committed, after a later step failed.

        Unlike ``offset`` this accepts transfer legs and an existing offset of
        either kind, and may overdraw the account.
        """
        logger.warning("Compensating transaction %s after failure: %s", transaction.id, cause)
        try:
            return self._post_offset(
                transaction, f"compensation ({cause.__class__.__name__})", txn_type, allow_overdraft=True,
            ).transaction
        except Exception as exc:
            logger.critical("Compensation of transaction %s failed: %s", transaction.id, exc)
            raise CompensationFailed(transaction.id, exc) from exc

    # -----------------------------
    # Helpers
    # -----------------------------
    def _post_offset(
        self,
        original: Transaction,
        reason: str,
        txn_type: TransactionType,
        allow_overdraft: bool,
    ) -> AppliedTransaction:
        return self.apply(
            original.user_id, original.currency_code, -original.amount,
            f"{txn_type.value.capitalize()}: {reason}",
            type=txn_type,
            related_entity=RelatedEntity(kind="transaction", id=original.id),
            related_user_id=original.related_user_id,
            idempotency_key=offset_key(original.id),
            metadata={
                "reason": reason,
                "original_transaction_id": str(original.id),
                "original_amount": original.amount,
                "original_type": original.type.value,
            },
            require_active=False,
            allow_overdraft=allow_overdraft,
        )

    def _transfer_keys(self, source: Account, idempotency_key: Optional[str]):
        if idempotency_key is None:
            return None, None
        # A compensated attempt voids its legs; retries start a new generation.
        generation = 0
        while True:
            suffix = "" if generation == 0 else f"#{generation}"
            out_key = f"{idempotency_key}:out{suffix}"
            previous = self.log.find_by_idempotency_key(source.id, out_key)
            if previous is None or not self.log.find_by_idempotency_key(
                source.id, offset_key(previous.id)
            ):
                return out_key, f"{idempotency_key}:in{suffix}"
            generation += 1

    def _draft(
        self,
        account: Account,
        signed_amount: int,
        new_balance: int,
        description: str,
        txn_type: TransactionType,
        related_entity: Optional[RelatedEntity],
        related_user_id: Optional[str],
        idempotency_key: Optional[str],
        metadata: Optional[dict],
    ) -> Transaction:
        return Transaction(
            id=uuid4(),
            account_id=account.id,
            user_id=account.user_id,
            currency_code=account.currency_code,
            type=txn_type,
            amount=signed_amount,
            balance_after=new_balance,
            sequence=account.version + 1,
            description=description,
            related_entity=related_entity,
            related_user_id=related_user_id,
            idempotency_key=idempotency_key,
            metadata=metadata or {},
            created_at=self.storage.clock(),
        )

    def _backoff(self, attempt: int) -> None:
        if self.retry_backoff > 0:
            time.sleep(self.retry_backoff * attempt * random.uniform(0.5, 1.5))

    def _notify(self, txn: Transaction) -> None:
        for listener in self._listeners:
            try:
                listener(txn)
            except Exception:
                logger.exception("Commit listener failed for transaction %s", txn.id)
