"""Concurrent triggers for the same cart never produce more than one Order."""

import threading
from decimal import Decimal

import pytest
from checkout.domain import checkout
from checkout.order.finalization import CheckoutFinalizer
from checkout.order.order import Order
from checkout.payment.attempt import PaymentAttempt
from checkout.payment.intents import PaymentIntentFactory
from checkout.payment.reconciliation import PaymentStatusReconciler
from protean import current_domain

THREADS = 8


def _in_threads(fn):
    """Run ``fn`` concurrently, each thread inside its own domain context."""
    results, errors = [], []
    barrier = threading.Barrier(THREADS)

    def target():
        with checkout.domain_context():
            barrier.wait()
            try:
                results.append(fn())
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=target) for _ in range(THREADS)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


@pytest.fixture()
def paid_cart(fill_cart, card):
    cart_id = fill_cart(("shirt", 1), ("mug", 1))
    attempt = PaymentIntentFactory().create_or_reuse(cart_id, "USD", "card", idempotency_key="key-1")
    card.settle(attempt.external_reference)
    return cart_id, attempt


def test_parallel_finalize_creates_one_order(paid_cart):
    cart_id, attempt = paid_cart
    repo = current_domain.repository_for(PaymentAttempt)
    stored = repo.get(attempt.id)
    stored.record_success(Decimal("27.25"), "txn-1")
    repo.add(stored)

    results, errors = _in_threads(lambda: CheckoutFinalizer().finalize(cart_id))

    assert errors == []
    assert {r.status for r in results} == {"settled"}
    assert len({r.order_id for r in results}) == 1
    assert len(current_domain.repository_for(Order).for_cart(cart_id)) == 1


def test_parallel_confirmations_settle_once(paid_cart, catalog):
    cart_id, attempt = paid_cart

    results, errors = _in_threads(lambda: PaymentStatusReconciler().report_client_completion(str(attempt.id)))

    assert errors == []
    assert sum(1 for r in results if not r["duplicate"]) == 1
    assert len(current_domain.repository_for(Order).for_cart(cart_id)) == 1
    assert catalog.products["shirt"].stock == 4


def test_parallel_intent_creation_calls_provider_once(fill_cart, card):
    cart_id = fill_cart(("shirt", 1))

    results, errors = _in_threads(
        lambda: PaymentIntentFactory().create_or_reuse(cart_id, "USD", "card", idempotency_key="key-1")
    )

    assert errors == []
    assert len({str(a.id) for a in results}) == 1
    assert len([c for c in card.calls if c["method"] == "initiate"]) == 1
