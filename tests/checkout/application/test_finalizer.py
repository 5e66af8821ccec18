"""Tests for CheckoutFinalizer: order creation and compensation."""

from decimal import Decimal

import pytest
from checkout.cart.cart import Cart
from checkout.cart.items import AddToCart, ClearCart, RemoveFromCart, process_cart_command
from checkout.errors import ProviderUnavailable
from checkout.order.finalization import CheckoutFinalizer
from checkout.order.order import Order
from checkout.payment.attempt import AttemptStatus, PaymentAttempt, RefundStatus
from checkout.payment.intents import PaymentIntentFactory
from protean import current_domain


@pytest.fixture()
def finalizer():
    return CheckoutFinalizer()


def _pay(cart_id, currency, provider, key, settled=None):
    """Create an attempt and mark it provider-confirmed."""
    attempt = PaymentIntentFactory().create_or_reuse(cart_id, currency, provider, idempotency_key=key)
    repo = current_domain.repository_for(PaymentAttempt)
    stored = repo.get(attempt.id)
    stored.record_success(Decimal(settled) if settled else None, f"txn-{key}")
    repo.add(stored)
    return stored


def _reload(attempt):
    return current_domain.repository_for(PaymentAttempt).get(attempt.id)


def _orders(cart_id):
    return current_domain.repository_for(Order).for_cart(cart_id)


class TestSettlement:
    def test_single_currency_cart_settles(self, finalizer, fill_cart, catalog):
        cart_id = fill_cart(("shirt", 1), ("mug", 2))
        attempt = _pay(cart_id, "USD", "card", "usd")

        result = finalizer.finalize(cart_id)

        assert result.status == "settled"
        order = current_domain.repository_for(Order).get(result.order_id)
        assert len(order.lines) == 2
        assert Decimal(order.total_by_currency["USD"]) == Decimal("34.50")
        assert order.attempt_ids == [str(attempt.id)]
        assert order.manual_review is False

        cart = current_domain.repository_for(Cart).get(cart_id)
        assert cart.items == []
        assert cart.generation == 2
        assert catalog.products["shirt"].stock == 4
        assert catalog.products["mug"].stock == 8

    def test_partial_payment_waits(self, finalizer, fill_cart):
        cart_id = fill_cart(("shirt", 1), ("ape-42", 1))
        _pay(cart_id, "USD", "card", "usd")

        result = finalizer.finalize(cart_id)

        assert result.status == "partial"
        assert result.paid_currencies == ["USD"]
        assert result.unpaid_currencies == ["ETH"]
        assert _orders(cart_id) == []

    def test_unpaid_cart_is_open(self, finalizer, fill_cart):
        cart_id = fill_cart(("shirt", 1))
        assert finalizer.finalize(cart_id).status == "open"

    def test_finalizing_twice_creates_one_order(self, finalizer, fill_cart):
        cart_id = fill_cart(("shirt", 1))
        _pay(cart_id, "USD", "card", "usd")

        first = finalizer.finalize(cart_id)
        second = finalizer.finalize(cart_id)

        assert second.status == "settled"
        assert second.order_id == first.order_id
        assert len(_orders(cart_id)) == 1


class TestInventoryConflicts:
    def test_sold_out_item_is_refunded(self, finalizer, fill_cart, catalog, card):
        cart_id = fill_cart(("shirt", 1), ("mug", 2))
        attempt = _pay(cart_id, "USD", "card", "usd")
        # another buyer takes the last mugs between payment and finalization
        catalog.update_product("mug", stock=1)

        result = finalizer.finalize(cart_id)

        assert result.status == "settled"
        assert result.manual_review is False
        assert len(result.refunded_item_ids) == 1

        order = current_domain.repository_for(Order).get(result.order_id)
        assert [line.product_id for line in order.lines] == ["shirt"]
        assert order.manual_review is False

        stored = _reload(attempt)
        assert stored.status == AttemptStatus.PARTIALLY_REFUNDED.value
        assert stored.total_refunded == 14.5
        assert stored.refunds[0].order_line_ref == result.refunded_item_ids[0]
        assert card.refunds[0]["amount"] == Decimal("14.50")
        assert catalog.refunds[0]["order_item_ref"] == result.refunded_item_ids[0]

    def test_all_lines_conflicting_refunds_everything(self, finalizer, fill_cart, catalog):
        cart_id = fill_cart(("shirt", 1))
        attempt = _pay(cart_id, "USD", "card", "usd")
        catalog.update_product("shirt", stock=0)

        result = finalizer.finalize(cart_id)

        assert result.status == "refunded"
        assert result.order_id is None
        assert _orders(cart_id) == []
        assert _reload(attempt).status == AttemptStatus.REFUNDED.value
        assert current_domain.repository_for(Cart).get(cart_id).items == []

    def test_failed_refund_flags_manual_review(self, finalizer, fill_cart, catalog, card):
        cart_id = fill_cart(("shirt", 1), ("mug", 2))
        attempt = _pay(cart_id, "USD", "card", "usd")
        catalog.update_product("mug", stock=0)
        card.configure(refund_failures=10)

        result = finalizer.finalize(cart_id)

        assert result.status == "settled"
        assert result.manual_review is True
        order = current_domain.repository_for(Order).get(result.order_id)
        assert order.manual_review is True

        stored = _reload(attempt)
        assert stored.manual_review is True
        assert stored.refunds[0].status == RefundStatus.FAILED.value
        assert stored.status == AttemptStatus.SUCCEEDED.value

    def test_transient_refund_errors_are_retried(self, finalizer, fill_cart, catalog, card):
        cart_id = fill_cart(("shirt", 1), ("mug", 2))
        _pay(cart_id, "USD", "card", "usd")
        catalog.update_product("mug", stock=0)
        card.configure(refund_failures=2)

        result = finalizer.finalize(cart_id)

        assert result.manual_review is False
        assert len(card.refunds) == 1


class TestStalePayments:
    def test_overpayment_is_refunded(self, finalizer, fill_cart, card):
        cart_id = fill_cart(("shirt", 1))
        attempt = _pay(cart_id, "USD", "card", "usd", settled="25.00")

        result = finalizer.finalize(cart_id)

        assert result.status == "settled"
        assert card.refunds[0]["amount"] == Decimal("5.00")
        assert _reload(attempt).status == AttemptStatus.PARTIALLY_REFUNDED.value

    def test_payment_for_changed_group_is_refunded(self, finalizer, fill_cart, card):
        cart_id = fill_cart(("shirt", 1))
        attempt = _pay(cart_id, "USD", "card", "usd")
        process_cart_command(AddToCart(owner_id="owner-1", product_id="mug", quantity=1), cart_id=cart_id)

        result = finalizer.finalize(cart_id)

        assert result.status == "open"
        assert _reload(attempt).status == AttemptStatus.REFUNDED.value
        assert card.refunds[0]["amount"] == Decimal("20.00")

    def test_payment_for_removed_group_is_refunded(self, finalizer, fill_cart):
        cart_id = fill_cart(("shirt", 1), ("basket", 1))
        attempt = _pay(cart_id, "RWF", "mobile_money", "rwf")
        cart = current_domain.repository_for(Cart).get(cart_id)
        basket = next(i for i in cart.items if str(i.product_id) == "basket")
        process_cart_command(RemoveFromCart(cart_id=cart_id, item_id=str(basket.id)), cart_id=cart_id)

        result = finalizer.finalize(cart_id)

        assert result.unpaid_currencies == ["USD"]
        assert _reload(attempt).status == AttemptStatus.REFUNDED.value

    def test_payment_after_cart_cleared_is_refunded(self, finalizer, fill_cart, card):
        cart_id = fill_cart(("shirt", 1))
        attempt = PaymentIntentFactory().create_or_reuse(cart_id, "USD", "card", idempotency_key="usd")
        process_cart_command(ClearCart(cart_id=cart_id), cart_id=cart_id)

        repo = current_domain.repository_for(PaymentAttempt)
        stored = repo.get(attempt.id)
        stored.record_success(None, "txn-late")
        repo.add(stored)

        result = finalizer.finalize(cart_id)

        assert result.status == "open"
        assert _reload(attempt).status == AttemptStatus.REFUNDED.value
        assert _orders(cart_id) == []


class TestRetriedFinalization:
    @pytest.fixture()
    def flaky_catalog(self, catalog, monkeypatch):
        """Catalog that is unreachable on the first decrement of ``hat``."""
        catalog.add_product("hat", "12.00", "USD", name="Hat", stock=4)
        real_decrement = catalog.try_decrement
        outages = {"hat": 1}

        def try_decrement(product_id, quantity, idempotency_key=None):
            if outages.get(product_id):
                outages[product_id] -= 1
                raise ProviderUnavailable("Inventory service unavailable")
            return real_decrement(product_id, quantity, idempotency_key=idempotency_key)

        monkeypatch.setattr(catalog, "try_decrement", try_decrement)
        return catalog

    def test_rerun_after_catalog_outage_decrements_and_refunds_once(self, finalizer, fill_cart, flaky_catalog, card):
        cart_id = fill_cart(("mug", 2), ("shirt", 1), ("hat", 1))
        attempt = _pay(cart_id, "USD", "card", "usd")
        flaky_catalog.update_product("shirt", stock=0)

        with pytest.raises(ProviderUnavailable):
            finalizer.finalize(cart_id)
        assert _orders(cart_id) == []

        result = finalizer.finalize(cart_id)

        assert result.status == "settled"
        assert flaky_catalog.products["mug"].stock == 8
        assert flaky_catalog.products["hat"].stock == 3
        assert [(r["amount"], r["reason"]) for r in card.refunds] == [
            (Decimal("20.00"), "Item no longer available: Shirt")
        ]
        assert len(flaky_catalog.refunds) == 1

        stored = _reload(attempt)
        assert stored.total_refunded == 20.0
        assert len(stored.refunds) == 1
        assert stored.manual_review is False

        order = current_domain.repository_for(Order).get(result.order_id)
        assert sorted(line.product_id for line in order.lines) == ["hat", "mug"]
