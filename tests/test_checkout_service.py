"""Tests for the checkout lifecycle: create, pay, finalize."""

from decimal import Decimal

import pytest

from cartflow.checkout_service import CheckoutService
from cartflow.exceptions import (
    CartNotFoundError,
    CheckoutNotFoundError,
    InvalidInputError,
    InvalidStateError,
    StorageError,
)
from cartflow.models import PaymentStatus
from conftest import make_line


def _create(checkout_service, user_id="u1", items=None, total_price=Decimal("10")):
    return checkout_service.create_checkout(
        user_id=user_id,
        checkout_items=items if items is not None else [make_line("p1", "10", 1)],
        shipping_address={"address": "1 George St", "city": "Sydney", "postal_code": "2000", "country": "AU"},
        payment_method="PayPal",
        total_price=total_price,
    )


def _order_count(fake_redis):
    return fake_redis.zcard("orders:all")


class TestCreateCheckout:
    def test_creates_pending_session(self, checkout_service):
        checkout = _create(checkout_service)

        assert checkout.payment_status == PaymentStatus.PENDING
        assert checkout.is_paid is False
        assert checkout.is_finalized is False
        assert checkout.total_price == Decimal("10")
        assert checkout_service.get_checkout(checkout.id) == checkout

    def test_rejects_empty_items(self, checkout_service, fake_redis):
        with pytest.raises(InvalidInputError, match="No items in checkout"):
            _create(checkout_service, items=[])
        assert fake_redis.keys("checkout:*") == []

    def test_total_is_captured_as_given(self, checkout_service):
        checkout = _create(checkout_service, total_price=Decimal("7.99"))
        assert checkout.total_price == Decimal("7.99")

    def test_total_defaults_to_line_sum(self, checkout_service):
        checkout = _create(
            checkout_service,
            items=[make_line("p1", "10", 2), make_line("p2", "25.50", 1)],
            total_price=None,
        )
        assert checkout.total_price == Decimal("45.50")

    def test_snapshot_is_stable_against_cart_changes(self, cart_service, checkout_service):
        cart, _ = cart_service.add_item("p1", 1, user_id="u1")
        checkout = _create(checkout_service, items=cart.products, total_price=cart.total_price)

        cart_service.add_item("p1", 4, user_id="u1")
        cart_service.add_item("p2", 1, user_id="u1")

        stored = checkout_service.get_checkout(checkout.id)
        assert [(line.product_id, line.quantity) for line in stored.checkout_items] == [("p1", 1)]
        assert stored.total_price == Decimal("10")

    def test_get_missing(self, checkout_service):
        with pytest.raises(CheckoutNotFoundError):
            checkout_service.get_checkout("missing")


class TestMarkPaid:
    def test_marks_session_paid(self, checkout_service):
        checkout = _create(checkout_service)
        paid = checkout_service.mark_paid(checkout.id, "paid", {"transaction_id": "tx-1"})

        assert paid.is_paid is True
        assert paid.payment_status == PaymentStatus.PAID
        assert paid.payment_details == {"transaction_id": "tx-1"}
        assert paid.paid_at is not None
        assert checkout_service.get_checkout(checkout.id).is_paid is True

    @pytest.mark.parametrize("status", ["failed", "Paid", "", "pending"])
    def test_rejects_other_statuses(self, checkout_service, status):
        checkout = _create(checkout_service)
        with pytest.raises(InvalidInputError):
            checkout_service.mark_paid(checkout.id, status)

        stored = checkout_service.get_checkout(checkout.id)
        assert stored.is_paid is False
        assert stored.payment_status == PaymentStatus.PENDING

    def test_missing_session(self, checkout_service):
        with pytest.raises(CheckoutNotFoundError):
            checkout_service.mark_paid("missing", "paid")

    def test_cannot_pay_twice(self, checkout_service):
        checkout = _create(checkout_service)
        first = checkout_service.mark_paid(checkout.id, "paid", {"transaction_id": "tx-1"})

        with pytest.raises(InvalidStateError, match="already paid"):
            checkout_service.mark_paid(checkout.id, "paid", {"transaction_id": "tx-2"})
        assert checkout_service.get_checkout(checkout.id).paid_at == first.paid_at


class TestFinalize:
    def test_creates_order_and_clears_cart(self, cart_service, checkout_service, order_service):
        cart_service.add_item("p1", 1, user_id="u1")
        checkout = _create(checkout_service)
        checkout_service.mark_paid(checkout.id, "paid", {"transaction_id": "tx-1"})

        order = checkout_service.finalize_checkout(checkout.id)

        assert order.user_id == "u1"
        assert order.checkout_id == checkout.id
        assert order.total_price == Decimal("10")
        assert order.is_paid is True
        assert order.payment_details == {"transaction_id": "tx-1"}
        assert order_service.get_order(order.id) == order

        stored = checkout_service.get_checkout(checkout.id)
        assert stored.is_finalized is True
        assert stored.finalized_at is not None
        assert stored.order_id == order.id

        with pytest.raises(CartNotFoundError):
            cart_service.get_cart(user_id="u1")

    def test_finalize_without_cart(self, checkout_service):
        checkout = _create(checkout_service)
        checkout_service.mark_paid(checkout.id, "paid")
        assert checkout_service.finalize_checkout(checkout.id).user_id == "u1"

    def test_only_clears_the_session_users_cart(self, cart_service, checkout_service):
        cart_service.add_item("p1", 1, user_id="u2")
        cart_service.add_item("p1", 1, guest_id="g1")
        checkout = _create(checkout_service)
        checkout_service.mark_paid(checkout.id, "paid")

        checkout_service.finalize_checkout(checkout.id)

        assert cart_service.get_cart(user_id="u2").products
        assert cart_service.get_cart(guest_id="g1").products

    def test_unpaid_session_is_rejected(self, checkout_service, cart_service, fake_redis):
        cart_service.add_item("p1", 1, user_id="u1")
        checkout = _create(checkout_service)

        with pytest.raises(InvalidStateError, match="not paid"):
            checkout_service.finalize_checkout(checkout.id)

        assert _order_count(fake_redis) == 0
        assert checkout_service.get_checkout(checkout.id).is_finalized is False
        assert cart_service.get_cart(user_id="u1").products

    def test_finalize_once(self, checkout_service, fake_redis):
        checkout = _create(checkout_service)
        checkout_service.mark_paid(checkout.id, "paid")
        order = checkout_service.finalize_checkout(checkout.id)

        with pytest.raises(InvalidStateError, match="already finalized"):
            checkout_service.finalize_checkout(checkout.id)

        assert _order_count(fake_redis) == 1
        assert checkout_service.get_checkout(checkout.id).order_id == order.id

    def test_cannot_pay_after_finalize(self, checkout_service):
        checkout = _create(checkout_service)
        checkout_service.mark_paid(checkout.id, "paid")
        checkout_service.finalize_checkout(checkout.id)

        with pytest.raises(InvalidStateError, match="already finalized"):
            checkout_service.mark_paid(checkout.id, "paid")

    def test_missing_session(self, checkout_service):
        with pytest.raises(CheckoutNotFoundError):
            checkout_service.finalize_checkout("missing")

    def test_concurrent_finalize_creates_one_order(
        self, redis_client, checkout_service, order_service, fake_redis, monkeypatch
    ):
        rival = CheckoutService(redis_client)
        checkout = _create(checkout_service)
        checkout_service.mark_paid(checkout.id, "paid")
        original_read = checkout_service._read_checkout
        rival_orders = []

        def racing_read(reader, checkout_id):
            session = original_read(reader, checkout_id)
            if not rival_orders:
                rival_orders.append(rival.finalize_checkout(checkout_id))
            return session

        monkeypatch.setattr(checkout_service, "_read_checkout", racing_read)
        with pytest.raises(InvalidStateError, match="already finalized"):
            checkout_service.finalize_checkout(checkout.id)

        assert _order_count(fake_redis) == 1
        assert [order.id for order in order_service.list_for_user("u1")] == [rival_orders[0].id]

    def test_lost_exec_reply_leaves_one_order(
        self, cart_service, checkout_service, order_service, lose_next_exec_reply
    ):
        cart_service.add_item("p1", 1, user_id="u1")
        checkout = _create(checkout_service)
        checkout_service.mark_paid(checkout.id, "paid")

        lose_next_exec_reply()
        with pytest.raises(StorageError):
            checkout_service.finalize_checkout(checkout.id)

        stored = checkout_service.get_checkout(checkout.id)
        assert stored.is_finalized is True
        assert [order.id for order in order_service.list_for_user("u1")] == [stored.order_id]
        with pytest.raises(CartNotFoundError):
            cart_service.get_cart(user_id="u1")

    def test_order_is_independent_of_later_changes(self, cart_service, checkout_service, order_service):
        checkout = _create(checkout_service)
        checkout_service.mark_paid(checkout.id, "paid")
        order = checkout_service.finalize_checkout(checkout.id)

        cart_service.add_item("p2", 3, user_id="u1")

        stored = order_service.get_order(order.id)
        assert [(line.product_id, line.quantity) for line in stored.order_items] == [("p1", 1)]
        assert stored.total_price == Decimal("10")
