"""End-to-end on-chain settlement through the reconciler and the chain verifier."""

from decimal import Decimal

import pytest
from checkout.errors import DuplicateAttemptError
from checkout.gateway.chain import erc20_transfer
from checkout.payment.attempt import AttemptStatus, PaymentAttempt
from checkout.payment.intents import PaymentIntentFactory
from checkout.payment.reconciliation import PaymentStatusReconciler
from protean import current_domain
from protean.exceptions import ValidationError

ONE_CENT_OF_ETH = 10**16
TX = "0x" + "1f" * 32


@pytest.fixture()
def reconciler():
    return PaymentStatusReconciler()


@pytest.fixture()
def nft_attempt(fill_cart, onchain):
    cart_id = fill_cart(("ape-42", 1))
    return PaymentIntentFactory().create_or_reuse(cart_id, "ETH", "onchain", idempotency_key="nft-key")


def _reload(attempt):
    return current_domain.repository_for(PaymentAttempt).get(attempt.id)


def test_intent_tells_wallet_what_to_pay(nft_attempt, onchain):
    payload = nft_attempt.payload
    assert payload["chain_id"] == 1
    assert payload["payee"] == onchain.payee
    assert payload["amount_base_units"] == str(ONE_CENT_OF_ETH)
    assert "token_contract" not in payload


def test_succeeds_once_deep_enough(nft_attempt, onchain, chain, reconciler):
    chain.submit(TX, to=onchain.payee, value=ONE_CENT_OF_ETH)

    first = reconciler.report_client_completion(str(nft_attempt.id), tx_hash=TX)
    assert first["status"] == AttemptStatus.AWAITING_CONFIRMATION.value
    assert _reload(nft_attempt).tx_hash == TX

    chain.mine(2)
    second = reconciler.refresh(str(nft_attempt.id))
    assert second["status"] == AttemptStatus.SUCCEEDED.value
    assert second["checkout"]["status"] == "settled"

    third = reconciler.refresh(str(nft_attempt.id))
    assert third["duplicate"] is True

    stored = _reload(nft_attempt)
    assert stored.settled_value == Decimal("0.01")
    assert stored.provider_transaction_id == TX


def test_unmined_transaction_stays_pending(nft_attempt, onchain, chain, reconciler):
    chain.submit(TX, to=onchain.payee, value=ONE_CENT_OF_ETH, mined=False)
    result = reconciler.report_client_completion(str(nft_attempt.id), tx_hash=TX)
    assert result["status"] == AttemptStatus.AWAITING_CONFIRMATION.value


def test_wrong_payee_fails(nft_attempt, chain, reconciler):
    chain.submit(TX, to="0x" + "cd" * 20, value=ONE_CENT_OF_ETH)
    chain.mine(5)

    result = reconciler.report_client_completion(str(nft_attempt.id), tx_hash=TX)

    assert result["status"] == AttemptStatus.FAILED.value
    assert "merchant" in _reload(nft_attempt).failure_reason


def test_underpayment_fails(nft_attempt, onchain, chain, reconciler):
    chain.submit(TX, to=onchain.payee, value=ONE_CENT_OF_ETH - 1)
    chain.mine(5)

    result = reconciler.report_client_completion(str(nft_attempt.id), tx_hash=TX)

    assert result["status"] == AttemptStatus.FAILED.value


def test_reverted_transaction_fails(nft_attempt, onchain, chain, reconciler):
    chain.submit(TX, to=onchain.payee, value=ONE_CENT_OF_ETH, status=0)
    result = reconciler.report_client_completion(str(nft_attempt.id), tx_hash=TX)
    assert result["status"] == AttemptStatus.FAILED.value


def test_overpayment_is_recorded_as_settled_amount(nft_attempt, onchain, chain, reconciler):
    chain.submit(TX, to=onchain.payee, value=2 * ONE_CENT_OF_ETH)
    chain.mine(5)

    reconciler.report_client_completion(str(nft_attempt.id), tx_hash=TX)

    stored = _reload(nft_attempt)
    assert stored.status == AttemptStatus.SUCCEEDED.value
    assert stored.settled_value == Decimal("0.02")
    # on-chain overpayment cannot be refunded automatically
    assert stored.manual_review is True


def test_malformed_hash_is_rejected(nft_attempt, reconciler):
    with pytest.raises(ValidationError):
        reconciler.report_client_completion(str(nft_attempt.id), tx_hash="0x1234")


def test_transaction_cannot_pay_two_attempts(fill_cart, onchain, chain, reconciler, catalog):
    catalog.add_product("ape-43", "0.01", "ETH", name="Ape #43", is_nft=True)
    first = PaymentIntentFactory().create_or_reuse(
        fill_cart(("ape-42", 1), owner_id="owner-a"), "ETH", "onchain", idempotency_key="key-a"
    )
    second = PaymentIntentFactory().create_or_reuse(
        fill_cart(("ape-43", 1), owner_id="owner-b"), "ETH", "onchain", idempotency_key="key-b"
    )
    chain.submit(TX, to=onchain.payee, value=ONE_CENT_OF_ETH)

    reconciler.report_client_completion(str(first.id), tx_hash=TX)
    with pytest.raises(DuplicateAttemptError):
        reconciler.report_client_completion(str(second.id), tx_hash=TX)


def test_erc20_payment(fill_cart, catalog, chain, onchain, reconciler):
    catalog.add_product("pass", "25", "USDC", name="Season pass", is_nft=True)
    cart_id = fill_cart(("pass", 1))
    attempt = PaymentIntentFactory().create_or_reuse(cart_id, "USDC", "onchain", idempotency_key="usdc-key")
    token = attempt.payload["token_contract"]

    chain.submit(
        TX,
        to=token,
        transfers=[erc20_transfer(token, "0x" + "11" * 20, onchain.payee, 25 * 10**6)],
    )
    chain.mine(5)
    result = reconciler.report_client_completion(str(attempt.id), tx_hash=TX)

    assert result["status"] == AttemptStatus.SUCCEEDED.value


def test_full_precision_price_is_paid_to_the_wei(fill_cart, catalog, chain, onchain, reconciler):
    catalog.add_product("ape-44", "0.123456789012345678", "ETH", name="Ape #44", is_nft=True)
    cart_id = fill_cart(("ape-44", 1))
    attempt = PaymentIntentFactory().create_or_reuse(cart_id, "ETH", "onchain", idempotency_key="wei-key")

    assert attempt.payload["amount_base_units"] == "123456789012345678"
    assert _reload(attempt).amount_value == Decimal("0.123456789012345678")

    chain.submit(TX, to=onchain.payee, value=123456789012345678)
    chain.mine(5)
    result = reconciler.report_client_completion(str(attempt.id), tx_hash=TX)

    assert result["status"] == AttemptStatus.SUCCEEDED.value
    stored = _reload(attempt)
    assert stored.settled_value == Decimal("0.123456789012345678")
    assert stored.manual_review is False


def test_success_event_raised_exactly_once(nft_attempt, onchain, chain, reconciler):
    chain.submit(TX, to=onchain.payee, value=ONE_CENT_OF_ETH)
    chain.mine(5)

    reconciler.report_client_completion(str(nft_attempt.id), tx_hash=TX)
    reconciler.refresh(str(nft_attempt.id))

    messages = current_domain.event_store.store.read("checkout::payment_attempt")
    succeeded = [
        m
        for m in messages
        if m.metadata
        and m.metadata.headers
        and m.metadata.headers.type == "Checkout.PaymentAttemptSucceeded.v1"
        and m.data["attempt_id"] == str(nft_attempt.id)
    ]
    assert len(succeeded) == 1
