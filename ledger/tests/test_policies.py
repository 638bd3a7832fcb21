"""
Tests for the grant policies

Tests cover:
1. Daily check-in (idempotency, streaks, timezone)
2. Post rewards (tips)
3. Shop purchases, gifts and refunds
4. Admin adjustments
"""

import pytest

from ledger.errors import (
    Contention,
    InsufficientBalance,
    InvalidAmount,
    InvalidOperation,
    ItemAlreadyOwned,
    ItemGrantFailed,
    ItemUnavailable,
    SelfTipNotAllowed,
)
from ledger.inventory import Inventory
from ledger.models import AdjustDirection, RelatedEntity, ShopItem, TransactionType
from ledger.service import build_service

from .support import make_settings


class BrokenInventory(Inventory):
    def grant_item(self, user_id, item_id, source, metadata=None):
        raise ItemGrantFailed("Inventory service unavailable")


def stock_shop(service, stock=None, price=30):
    return service.add_shop_item(ShopItem(
        id="frame-gold", name="Gold frame", price=price, currency_code="credits", stock=stock,
    ))


class TestCheckIn:
    """Tests for the daily check-in grant."""

    def test_second_check_in_same_day_is_a_replay(self, service):
        first = service.check_in("reader")
        second = service.check_in("reader")

        assert first.already_checked_in is False
        assert second.already_checked_in is True
        assert second.transaction.id == first.transaction.id
        assert first.amount == 10
        assert first.streak == 1
        assert first.transaction.idempotency_key == "checkin:reader:2024-03-10"
        assert service.get_balance("reader", "credits").balance == 10
        assert service.get_history("reader", "credits").total == 1

    def test_consecutive_days_build_a_streak(self, service, clock):
        service.check_in("reader")
        clock.advance(days=1)

        result = service.check_in("reader")

        assert result.streak == 2
        assert result.amount == 15
        assert result.transaction.type == TransactionType.CHECK_IN
        assert result.transaction.metadata["streak"] == 2

    def test_missed_day_resets_streak(self, service, clock):
        service.check_in("reader")
        clock.advance(days=1)
        service.check_in("reader")
        clock.advance(days=2)

        result = service.check_in("reader")

        assert result.streak == 1
        assert result.amount == 10

    def test_streak_bonus_is_capped(self, service, clock):
        amounts = []
        for _ in range(9):
            amounts.append(service.check_in("reader").amount)
            clock.advance(days=1)

        assert amounts == [10, 15, 20, 25, 30, 35, 40, 40, 40]

    def test_status(self, service, clock):
        assert service.check_in_status("reader").streak == 0

        service.check_in("reader")
        status = service.check_in_status("reader")
        assert status.checked_in_today is True
        assert status.streak == 1

        clock.advance(days=1)
        status = service.check_in_status("reader")
        assert status.checked_in_today is False
        assert status.streak == 1

        clock.advance(days=1)
        assert service.check_in_status("reader").streak == 0

    def test_day_boundary_follows_configured_timezone(self, clock):
        service = build_service(make_settings(check_in_timezone="Asia/Shanghai"), clock=clock)
        clock.advance(hours=8)  # 17:00 UTC is already the next day in UTC+8

        result = service.check_in("reader")

        assert str(result.check_in_date) == "2024-03-11"


class TestTip:
    """Tests for rewarding a post's owner."""

    def test_tip_moves_credits_and_tags_post(self, service):
        service.credit("fan", "credits", 100, "seed")

        result = service.tip("fan", "author", 77, 25, message="great post")

        assert result.balance == 75
        assert result.post_id == "77"
        assert result.transfer.credit_transaction.type == TransactionType.POST_REWARD
        assert result.transfer.credit_transaction.metadata["message"] == "great post"
        assert service.get_balance("author", "credits").balance == 25

        aggregate = service.get_aggregate_for_entity("post", 77)
        assert aggregate.total_amount == 25
        assert aggregate.credit_count == 1
        assert aggregate.unique_senders == 1

    def test_self_tip_rejected_before_any_write(self, service):
        service.credit("author", "credits", 100, "seed")

        with pytest.raises(SelfTipNotAllowed):
            service.tip("author", "author", "p-1", 10)
        assert service.get_history("author", "credits").total == 1

    @pytest.mark.parametrize("amount", [0, 1001])
    def test_amount_outside_reward_bounds(self, service, amount):
        service.credit("fan", "credits", 2000, "seed")

        with pytest.raises(InvalidAmount):
            service.tip("fan", "author", "p-1", amount)

    def test_tip_legs_cannot_be_offset_alone(self, service):
        service.credit("fan", "credits", 100, "seed")
        result = service.tip("fan", "author", "p-1", 40)

        with pytest.raises(InvalidOperation):
            service.refund(result.transfer.debit_transaction.id, "regret")
        with pytest.raises(InvalidOperation):
            service.reverse(result.transfer.credit_transaction.id, "regret")

        fan = service.get_balance("fan", "credits").balance
        author = service.get_balance("author", "credits").balance
        assert (fan, author) == (60, 40)
        assert fan + author == 100

    def test_tip_without_funds(self, service):
        with pytest.raises(InsufficientBalance):
            service.tip("fan", "author", "p-1", 10)
        assert service.get_balance("author", "credits").balance == 0

    def test_batch_aggregates(self, service):
        service.credit("fan", "credits", 100, "seed")
        service.credit("other", "credits", 100, "seed")
        service.tip("fan", "author", "p-1", 10)
        service.tip("other", "author", "p-1", 5)
        service.tip("fan", "author", "p-2", 7)

        result = service.get_aggregates_for_entities("post", ["p-1", "p-2", "p-3"])

        assert result["p-1"].total_amount == 15
        assert result["p-1"].unique_senders == 2
        assert result["p-2"].total_amount == 7
        assert result["p-3"].total_amount == 0


class TestShop:
    """Tests for purchases, gifts and refunds."""

    def test_purchase_debits_and_grants(self, service):
        stock_shop(service)
        service.credit("buyer", "credits", 100, "seed")

        result = service.purchase("buyer", "frame-gold")

        assert result.balance == 70
        assert result.transaction.type == TransactionType.SHOP_PURCHASE
        assert result.transaction.related_entity.kind == "shopItem"
        assert result.item.item_id == "frame-gold"
        assert [i.item_id for i in service.list_inventory("buyer")] == ["frame-gold"]

    def test_cannot_buy_twice(self, service):
        stock_shop(service)
        service.credit("buyer", "credits", 100, "seed")
        service.purchase("buyer", "frame-gold")

        with pytest.raises(ItemAlreadyOwned):
            service.purchase("buyer", "frame-gold")
        assert service.get_balance("buyer", "credits").balance == 70

    def test_idempotent_purchase(self, service):
        stock_shop(service)
        service.credit("buyer", "credits", 100, "seed")

        first = service.purchase("buyer", "frame-gold", idempotency_key="order-1")
        second = service.purchase("buyer", "frame-gold", idempotency_key="order-1")

        assert first.transaction.id == second.transaction.id
        assert service.get_balance("buyer", "credits").balance == 70

    def test_out_of_stock(self, service):
        stock_shop(service, stock=1)
        service.credit("buyer", "credits", 100, "seed")
        service.credit("late", "credits", 100, "seed")
        service.purchase("buyer", "frame-gold")

        with pytest.raises(ItemUnavailable):
            service.purchase("late", "frame-gold")
        assert service.get_balance("late", "credits").balance == 100

    def test_unknown_item(self, service):
        with pytest.raises(ItemUnavailable):
            service.purchase("buyer", "nothing")

    def test_insufficient_balance_keeps_stock(self, service):
        stock_shop(service, stock=1)

        with pytest.raises(InsufficientBalance):
            service.purchase("buyer", "frame-gold")
        assert service.list_shop_items()[0].stock == 1

    def test_failed_grant_is_refunded(self, clock):
        service = build_service(make_settings(), clock=clock, inventory=BrokenInventory())
        stock_shop(service, stock=3)
        service.credit("buyer", "credits", 100, "seed")

        with pytest.raises(ItemGrantFailed):
            service.purchase("buyer", "frame-gold")

        assert service.get_balance("buyer", "credits").balance == 100
        types = [t.type for t in service.get_history("buyer", "credits").items]
        assert types == [TransactionType.REFUND, TransactionType.SHOP_PURCHASE, TransactionType.CREDIT]
        assert service.list_shop_items()[0].stock == 3

    def test_gift(self, service):
        stock_shop(service)
        service.credit("sender", "credits", 100, "seed")

        result = service.gift("sender", "friend", "frame-gold", message="enjoy")

        assert result.transaction.type == TransactionType.GIFT_SENT
        assert result.transaction.related_user_id == "friend"
        assert result.item.user_id == "friend"
        assert result.item.source == "gift"
        assert service.get_balance("sender", "credits").balance == 70
        assert service.list_inventory("sender") == []

    def test_gift_to_self_rejected(self, service):
        stock_shop(service)
        service.credit("sender", "credits", 100, "seed")

        with pytest.raises(InvalidOperation):
            service.gift("sender", "sender", "frame-gold")

    def test_refund_purchase(self, service):
        stock_shop(service, stock=1)
        service.credit("buyer", "credits", 100, "seed")
        purchase = service.purchase("buyer", "frame-gold")

        refund = service.refund(purchase.transaction.id, "changed my mind")
        again = service.refund(purchase.transaction.id, "changed my mind")

        assert refund.id == again.id
        assert refund.type == TransactionType.REFUND
        assert refund.amount == 30
        assert refund.idempotency_key == f"offset:{purchase.transaction.id}"
        assert service.get_balance("buyer", "credits").balance == 100
        assert service.list_inventory("buyer") == []
        assert service.list_shop_items()[0].stock == 1

    def test_only_debits_are_refundable(self, service):
        txn = service.credit("buyer", "credits", 100, "seed")

        with pytest.raises(InvalidOperation):
            service.refund(txn.id, "no")

    def test_refund_and_reversal_are_exclusive(self, service):
        service.credit("buyer", "credits", 100, "seed")
        txn = service.debit("buyer", "credits", 40, "spend")
        service.reverse(txn.id, "error")

        with pytest.raises(InvalidOperation):
            service.refund(txn.id, "also refund")
        assert service.get_balance("buyer", "credits").balance == 100

    def test_reversal_after_refund_is_rejected(self, service):
        service.credit("buyer", "credits", 100, "seed")
        txn = service.debit("buyer", "credits", 40, "spend")
        refund = service.refund(txn.id, "return")

        with pytest.raises(InvalidOperation):
            service.reverse(txn.id, "also reverse")
        assert refund.idempotency_key == f"offset:{txn.id}"
        assert service.get_balance("buyer", "credits").balance == 100

    def test_replay_while_grant_in_flight_is_retryable(self, service):
        stock_shop(service)
        service.credit("buyer", "credits", 100, "seed")
        # The debit has committed but the item has not been granted yet.
        debit = service.engine.apply(
            "buyer", "credits", -30, "Purchase: Gold frame",
            type=TransactionType.SHOP_PURCHASE,
            related_entity=RelatedEntity(kind="shopItem", id="frame-gold"),
            idempotency_key="order-1",
        ).transaction

        with pytest.raises(Contention) as excinfo:
            service.purchase("buyer", "frame-gold", idempotency_key="order-1")
        assert excinfo.value.retryable
        assert service.get_balance("buyer", "credits").balance == 70

        service.refund(debit.id, "abandoned")
        with pytest.raises(InvalidOperation, match="refunded"):
            service.purchase("buyer", "frame-gold", idempotency_key="order-1")

    def test_key_reused_for_another_item(self, service):
        stock_shop(service)
        service.add_shop_item(ShopItem(id="badge", name="Badge", price=10, currency_code="credits"))
        service.credit("buyer", "credits", 100, "seed")
        service.purchase("buyer", "frame-gold", idempotency_key="order-1")

        with pytest.raises(InvalidOperation):
            service.purchase("buyer", "badge", idempotency_key="order-1")
        assert service.list_inventory("buyer")[0].item_id == "frame-gold"
        assert service.get_balance("buyer", "credits").balance == 70


class TestAdminAdjust:
    """Tests for manual grants and deductions."""

    def test_grant(self, service):
        txn = service.admin_adjust("member", "credits", 50, AdjustDirection.GRANT, actor_id="admin-1")

        assert txn.type == TransactionType.ADMIN_GRANT
        assert txn.metadata["actor_id"] == "admin-1"
        assert service.get_balance("member", "credits").balance == 50

    def test_deduct_may_go_negative(self, service):
        service.credit("member", "credits", 10, "seed")

        txn = service.admin_adjust("member", "credits", 25, "deduct", description="chargeback")

        assert txn.type == TransactionType.ADMIN_DEDUCT
        assert txn.description == "chargeback"
        assert txn.balance_after == -15
