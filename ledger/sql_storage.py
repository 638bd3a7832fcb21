"""
SQLAlchemy-backed ledger storage.

Tables:
- ledger_accounts      (id pk, user_id, currency_code, balance, version, ...,
                        unique(user_id, currency_code))
- ledger_transactions  (id pk, account_id fk, type, amount, balance_after,
                        sequence, ..., unique(account_id, sequence),
                        unique(account_id, idempotency_key) where key is not null)

A unit of work is one database transaction: the version-guarded UPDATE of
the account row and the INSERT of the transaction row commit or roll back
together.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    create_engine,
    func,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .clock import utcnow
from .errors import (
    AccountNotFound,
    AttemptTimeout,
    DuplicateIdempotencyKey,
    LedgerError,
    StorageFailure,
    VersionConflict,
)
from .models import Account, RelatedEntity, Transaction, TransactionFilter, TransactionType


class Base(DeclarativeBase):
    pass


class AccountRow(Base):
    __tablename__ = "ledger_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    currency_code: Mapped[str] = mapped_column(String(20), index=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    opening_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("user_id", "currency_code", name="uq_ledger_accounts_user_currency"),
    )


class TransactionRow(Base):
    __tablename__ = "ledger_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    account_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("ledger_accounts.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    currency_code: Mapped[str] = mapped_column(String(20))
    type: Mapped[str] = mapped_column(String(32), index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    related_entity_kind: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    related_entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    related_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    __table_args__ = (
        UniqueConstraint("account_id", "sequence", name="uq_ledger_transactions_account_sequence"),
        Index(
            "uq_ledger_transactions_idempotency",
            "account_id",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL"),
            sqlite_where=text("idempotency_key IS NOT NULL"),
        ),
        Index("ix_ledger_transactions_related", "related_entity_kind", "related_entity_id"),
    )


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def account_from_row(row: AccountRow) -> Account:
    return Account(
        id=row.id,
        user_id=row.user_id,
        currency_code=row.currency_code,
        balance=row.balance,
        version=row.version,
        opening_balance=row.opening_balance,
        total_earned=row.total_earned,
        total_spent=row.total_spent,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def transaction_from_row(row: TransactionRow) -> Transaction:
    related = None
    if row.related_entity_kind is not None:
        related = RelatedEntity(kind=row.related_entity_kind, id=row.related_entity_id)
    return Transaction(
        id=row.id,
        account_id=row.account_id,
        user_id=row.user_id,
        currency_code=row.currency_code,
        type=TransactionType(row.type),
        amount=row.amount,
        balance_after=row.balance_after,
        sequence=row.sequence,
        description=row.description or "",
        related_entity=related,
        related_user_id=row.related_user_id,
        idempotency_key=row.idempotency_key,
        metadata=row.meta or {},
        created_at=_aware(row.created_at),
    )


def transaction_to_row(txn: Transaction) -> TransactionRow:
    return TransactionRow(
        id=txn.id,
        account_id=txn.account_id,
        user_id=txn.user_id,
        currency_code=txn.currency_code,
        type=txn.type.value,
        amount=txn.amount,
        balance_after=txn.balance_after,
        sequence=txn.sequence,
        description=txn.description,
        related_entity_kind=txn.related_entity.kind if txn.related_entity else None,
        related_entity_id=txn.related_entity.id if txn.related_entity else None,
        related_user_id=txn.related_user_id,
        idempotency_key=txn.idempotency_key,
        meta=txn.metadata,
        created_at=txn.created_at,
    )


class _SqlUnit:
    def __init__(self, session: Session, account_id: uuid.UUID, clock):
        self.session = session
        self.account_id = account_id
        self.clock = clock

    def compare_and_swap(self, account_id: uuid.UUID, expected_version: int, new_balance: int) -> Account:
        if account_id != self.account_id:
            raise ValueError("A storage unit covers exactly one account")
        row = self.session.execute(
            select(AccountRow).where(AccountRow.id == account_id)
        ).scalar_one_or_none()
        if row is None:
            raise AccountNotFound(f"Account {account_id} not found")
        if row.version != expected_version:
            raise VersionConflict(account_id, expected_version, row.version)

        delta = new_balance - row.balance
        now = self.clock()
        result = self.session.execute(
            update(AccountRow)
            .where(AccountRow.id == account_id, AccountRow.version == expected_version)
            .values(
                balance=new_balance,
                version=expected_version + 1,
                total_earned=AccountRow.total_earned + max(delta, 0),
                total_spent=AccountRow.total_spent + max(-delta, 0),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise VersionConflict(account_id, expected_version)

        return account_from_row(row).model_copy(update={
            "balance": new_balance,
            "version": expected_version + 1,
            "total_earned": row.total_earned + max(delta, 0),
            "total_spent": row.total_spent + max(-delta, 0),
            "updated_at": now,
        })

    def append(self, transaction: Transaction) -> Transaction:
        if transaction.account_id != self.account_id:
            raise ValueError("A storage unit covers exactly one account")
        key = transaction.idempotency_key
        if key is not None:
            existing = self.session.execute(
                select(TransactionRow).where(
                    TransactionRow.account_id == transaction.account_id,
                    TransactionRow.idempotency_key == key,
                )
            ).scalar_one_or_none()
            if existing is not None:
                raise DuplicateIdempotencyKey(key, transaction_from_row(existing))
        self.session.add(transaction_to_row(transaction))
        try:
            self.session.flush()
        except IntegrityError as exc:
            # A concurrent writer claimed the same sequence or key first.
            raise VersionConflict(transaction.account_id, transaction.sequence - 1) from exc
        return transaction


class SqlStorage:
    def __init__(self, engine, clock=None):
        self.engine = engine
        self.clock = clock or utcnow
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def unit_of_work(self, account_id: uuid.UUID, timeout: Optional[float] = None) -> Iterator[_SqlUnit]:
        session = self._sessions()
        try:
            with session.begin():
                yield _SqlUnit(session, account_id, self.clock)
        except LedgerError:
            raise
        except PoolTimeoutError as exc:
            raise AttemptTimeout(account_id, timeout) from exc
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Storage error: {exc}") from exc
        finally:
            session.close()

    @contextmanager
    def _reading(self) -> Iterator[Session]:
        session = self._sessions()
        try:
            yield session
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Storage error: {exc}") from exc
        finally:
            session.close()

    def get_account(self, user_id: str, currency_code: str) -> Optional[Account]:
        with self._reading() as session:
            row = session.execute(
                select(AccountRow).where(
                    AccountRow.user_id == user_id, AccountRow.currency_code == currency_code
                )
            ).scalar_one_or_none()
            return account_from_row(row) if row else None

    def get_account_by_id(self, account_id: uuid.UUID) -> Optional[Account]:
        with self._reading() as session:
            row = session.get(AccountRow, account_id)
            return account_from_row(row) if row else None

    def create_account(self, account: Account) -> Account:
        session = self._sessions()
        try:
            with session.begin():
                session.add(AccountRow(**account.model_dump()))
            return account
        except IntegrityError:
            # Lost the creation race; the winner's row is the account.
            existing = self.get_account(account.user_id, account.currency_code)
            if existing is None:
                raise StorageFailure(f"Could not create account for {account.user_id}")
            return existing
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Storage error: {exc}") from exc
        finally:
            session.close()

    def list_accounts(self, user_id: Optional[str] = None, currency_code: Optional[str] = None) -> list[Account]:
        stmt = select(AccountRow)
        if user_id is not None:
            stmt = stmt.where(AccountRow.user_id == user_id)
        if currency_code is not None:
            stmt = stmt.where(AccountRow.currency_code == currency_code)
        with self._reading() as session:
            return [account_from_row(r) for r in session.execute(stmt).scalars()]

    def get_transaction(self, transaction_id: uuid.UUID) -> Optional[Transaction]:
        with self._reading() as session:
            row = session.get(TransactionRow, transaction_id)
            return transaction_from_row(row) if row else None

    def find_transaction(self, account_id: uuid.UUID, idempotency_key: str) -> Optional[Transaction]:
        with self._reading() as session:
            row = session.execute(
                select(TransactionRow).where(
                    TransactionRow.account_id == account_id,
                    TransactionRow.idempotency_key == idempotency_key,
                )
            ).scalar_one_or_none()
            return transaction_from_row(row) if row else None

    def list_transactions(
        self,
        account_id: Optional[uuid.UUID],
        filter: Optional[TransactionFilter],
        offset: int,
        limit: Optional[int],
    ) -> tuple[list[Transaction], int]:
        conditions = []
        if account_id is not None:
            conditions.append(TransactionRow.account_id == account_id)
        if filter is not None:
            if filter.user_id is not None:
                conditions.append(TransactionRow.user_id == filter.user_id)
            if filter.currency_code is not None:
                conditions.append(TransactionRow.currency_code == filter.currency_code)
            if filter.types:
                conditions.append(TransactionRow.type.in_([t.value for t in filter.types]))
            if filter.related_entity is not None:
                conditions.append(TransactionRow.related_entity_kind == filter.related_entity.kind)
                conditions.append(TransactionRow.related_entity_id == filter.related_entity.id)
            if filter.since is not None:
                conditions.append(TransactionRow.created_at >= filter.since.astimezone(timezone.utc))
            if filter.until is not None:
                conditions.append(TransactionRow.created_at < filter.until.astimezone(timezone.utc))

        if account_id is not None:
            order = (TransactionRow.sequence.desc(),)
        else:
            order = (TransactionRow.created_at.desc(), TransactionRow.sequence.desc())
        stmt = select(TransactionRow).where(*conditions).order_by(*order).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        count_stmt = select(func.count()).select_from(TransactionRow).where(*conditions)

        with self._reading() as session:
            items = [transaction_from_row(r) for r in session.execute(stmt).scalars()]
            total = session.execute(count_stmt).scalar_one()
        return items, total

    def sum_transactions(self, account_id: uuid.UUID) -> int:
        with self._reading() as session:
            return session.execute(
                select(func.coalesce(func.sum(TransactionRow.amount), 0)).where(
                    TransactionRow.account_id == account_id
                )
            ).scalar_one()


def create_sql_storage(database_url: str, attempt_timeout: Optional[float] = None, clock=None) -> SqlStorage:
    if database_url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
            options["poolclass"] = StaticPool
    else:
        options = {"pool_pre_ping": True}
        if attempt_timeout is not None:
            options["pool_timeout"] = attempt_timeout
    storage = SqlStorage(create_engine(database_url, **options), clock=clock)
    storage.create_schema()
    return storage
