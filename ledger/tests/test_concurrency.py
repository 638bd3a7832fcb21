"""
Concurrency and failure-path tests

Tests cover:
1. Racing debits never overdraw
2. Balance == ledger sum under concurrent load
3. Transfer compensation when the credit leg fails
4. Bounded retries ending in Contention
5. Concurrent check-ins and same-key purchases grant once
6. A racing reversal and refund offset the original once
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from ledger.errors import Contention, InsufficientBalance, InvalidOperation, StorageFailure
from ledger.inventory import ShopCatalog
from ledger.models import PurchaseResult, ShopItem, TransactionType
from ledger.service import build_service
from ledger.storage import InMemoryStorage

from .support import make_settings


class FlakyStorage(InMemoryStorage):
    """In-memory storage whose units fail for selected accounts."""

    def __init__(self, clock=None):
        super().__init__(clock=clock)
        self.broken = set()

    def unit_of_work(self, account_id, timeout=None):
        if account_id in self.broken:
            raise StorageFailure(f"Storage unavailable for account {account_id}")
        return super().unit_of_work(account_id, timeout)


class BarrierCatalog(ShopCatalog):
    """Catalog that holds every reservation until all parties have reserved."""

    def __init__(self, parties):
        super().__init__()
        self.barrier = threading.Barrier(parties)

    def reserve_stock(self, item_id):
        reserved = super().reserve_stock(item_id)
        self.barrier.wait(timeout=5)
        return reserved


class TestRacingDebits:
    """Two debits of 60 against a balance of 100."""

    def test_exactly_one_debit_wins(self, service):
        service.credit("racer", "credits", 100, "seed")
        barrier = threading.Barrier(2)

        def spend():
            barrier.wait()
            try:
                return service.debit("racer", "credits", 60, "purchase")
            except InsufficientBalance as exc:
                return exc

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(lambda _: spend(), range(2)))

        failures = [r for r in results if isinstance(r, InsufficientBalance)]
        assert len(failures) == 1
        assert service.get_balance("racer", "credits").balance == 40

    def test_many_debits_never_go_negative(self, clock):
        service = build_service(make_settings(max_attempts=50), clock=clock)
        service.credit("racer", "credits", 100, "seed")

        def spend(_):
            try:
                service.debit("racer", "credits", 7, "purchase")
                return True
            except (InsufficientBalance, Contention):
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            wins = sum(pool.map(spend, range(40)))

        assert wins <= 14
        assert service.get_balance("racer", "credits").balance == 100 - 7 * wins
        assert service.get_balance("racer", "credits").balance >= 0


class TestConcurrentLoad:
    """N concurrent operations on one account, then reconcile."""

    def test_balance_matches_ledger(self, clock):
        service = build_service(make_settings(max_attempts=100), clock=clock)
        account = service.get_or_create_account("busy", "credits")
        service.credit("busy", "credits", 500, "seed")

        def operate(i):
            try:
                if i % 3 == 0:
                    service.debit("busy", "credits", 4, f"debit {i}")
                else:
                    service.credit("busy", "credits", 3, f"credit {i}")
            except Contention:
                pass

        with ThreadPoolExecutor(max_workers=10) as pool:
            list(pool.map(operate, range(90)))

        report = service.reconcile(account.id)
        assert report.consistent
        assert report.transaction_count == service.get_history("busy", "credits").total

    def test_unrelated_accounts_progress_in_parallel(self, clock):
        service = build_service(make_settings(max_attempts=50), clock=clock)

        def grant(i):
            return service.credit(f"user-{i % 5}", "credits", 1, "grant")

        with ThreadPoolExecutor(max_workers=5) as pool:
            list(pool.map(grant, range(50)))

        for i in range(5):
            assert service.get_balance(f"user-{i}", "credits").balance == 10


class TestTransferAtomicity:
    """A failed credit leg is compensated on the source account."""

    def test_failed_credit_restores_source(self, clock):
        storage = FlakyStorage(clock=clock)
        service = build_service(make_settings(), storage=storage, clock=clock)
        service.credit("alice", "credits", 100, "seed")
        bob = service.get_or_create_account("bob", "credits")
        storage.broken.add(bob.id)

        with pytest.raises(StorageFailure):
            service.transfer("alice", "bob", "credits", 40, "tip", idempotency_key="tip-1")

        assert service.get_balance("alice", "credits").balance == 100
        assert service.get_balance("bob", "credits").balance == 0
        history = service.get_history("alice", "credits").items
        assert [t.type for t in history] == [
            TransactionType.REVERSAL, TransactionType.TRANSFER_OUT, TransactionType.CREDIT,
        ]
        assert history[0].idempotency_key == f"offset:{history[1].id}"

    def test_retry_after_compensation_uses_fresh_keys(self, clock):
        storage = FlakyStorage(clock=clock)
        service = build_service(make_settings(), storage=storage, clock=clock)
        service.credit("alice", "credits", 100, "seed")
        bob = service.get_or_create_account("bob", "credits")
        storage.broken.add(bob.id)
        with pytest.raises(StorageFailure):
            service.transfer("alice", "bob", "credits", 40, "tip", idempotency_key="tip-1")
        storage.broken.clear()

        result = service.transfer("alice", "bob", "credits", 40, "tip", idempotency_key="tip-1")

        assert result.debit_transaction.idempotency_key == "tip-1:out#1"
        assert result.credit_transaction.idempotency_key == "tip-1:in#1"
        assert service.get_balance("alice", "credits").balance == 60
        assert service.get_balance("bob", "credits").balance == 40


class TestBoundedRetries:
    """Attempts that cannot enter the account's unit give up with Contention."""

    def test_lock_timeout_exhausts_attempts(self, clock):
        storage = InMemoryStorage(clock=clock)
        service = build_service(
            make_settings(max_attempts=2, attempt_timeout_seconds=0.01),
            storage=storage, clock=clock,
        )
        account = service.get_or_create_account("stuck", "credits")
        lock = storage._account_locks.setdefault(account.id, threading.Lock())
        lock.acquire()
        try:
            with pytest.raises(Contention):
                service.credit("stuck", "credits", 10, "bonus")
        finally:
            lock.release()

        assert service.get_balance("stuck", "credits").balance == 0
        service.credit("stuck", "credits", 10, "bonus")
        assert service.get_balance("stuck", "credits").balance == 10


class TestConcurrentGrants:
    """Idempotent grants stay single under concurrent requests."""

    def test_concurrent_check_ins_grant_once(self, service):
        barrier = threading.Barrier(8)

        def check_in(_):
            barrier.wait(timeout=5)
            return service.check_in("reader")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(check_in, range(8)))

        assert len({r.transaction.id for r in results}) == 1
        assert sum(not r.already_checked_in for r in results) == 1
        assert service.get_balance("reader", "credits").balance == 10
        history = service.get_history("reader", "credits").items
        assert [t.type for t in history] == [TransactionType.CHECK_IN]

    def test_same_key_purchases_debit_once(self, clock):
        catalog = BarrierCatalog(2)
        service = build_service(make_settings(), clock=clock, catalog=catalog)
        service.add_shop_item(ShopItem(
            id="frame-gold", name="Gold frame", price=30, currency_code="credits", stock=5,
        ))
        service.credit("buyer", "credits", 100, "seed")

        def buy(_):
            try:
                return service.purchase("buyer", "frame-gold", idempotency_key="order-1")
            except Contention as exc:
                return exc

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(buy, range(2)))

        purchases = [r for r in results if isinstance(r, PurchaseResult)]
        assert purchases
        assert all(isinstance(r, (PurchaseResult, Contention)) for r in results)
        assert len({p.transaction.id for p in purchases}) == 1

        retried = service.purchase("buyer", "frame-gold", idempotency_key="order-1")
        assert retried.transaction.id == purchases[0].transaction.id
        assert service.get_balance("buyer", "credits").balance == 70
        assert [i.item_id for i in service.list_inventory("buyer")] == ["frame-gold"]
        assert catalog.get_item("frame-gold").stock == 4
        types = [t.type for t in service.get_history("buyer", "credits").items]
        assert types == [TransactionType.SHOP_PURCHASE, TransactionType.CREDIT]


class TestConcurrentOffsets:
    """A reversal and a refund racing on one debit."""

    def test_only_one_offset_commits(self, service):
        service.credit("buyer", "credits", 500, "seed")

        for round_number in range(10):
            txn = service.debit("buyer", "credits", 40, f"spend {round_number}")
            barrier = threading.Barrier(2)

            def offset(kind):
                barrier.wait(timeout=5)
                try:
                    if kind == "reverse":
                        return service.reverse(txn.id, "race")
                    return service.refund(txn.id, "race")
                except InvalidOperation as exc:
                    return exc

            with ThreadPoolExecutor(max_workers=2) as pool:
                results = list(pool.map(offset, ["reverse", "refund"]))

            assert sum(isinstance(r, InvalidOperation) for r in results) == 1
            assert service.get_balance("buyer", "credits").balance == 500

        offsets = [
            t for t in service.get_history("buyer", "credits", limit=100).items
            if t.type in (TransactionType.REVERSAL, TransactionType.REFUND)
        ]
        assert len(offsets) == 10
        assert len({t.related_entity.id for t in offsets}) == 10
