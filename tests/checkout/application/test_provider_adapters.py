"""Tests for the provider adapters against stubbed provider APIs."""

import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest
import stripe
from checkout.errors import (
    ConfirmationTimeout,
    IntentCreationFailed,
    MalformedCallback,
    ProviderUnavailable,
    RefundNotSupported,
    TransientProviderError,
    WebhookVerificationError,
)
from checkout.gateway.card_adapter import StripeCardAdapter, from_minor_units, to_minor_units
from checkout.gateway.fake_adapter import FakeProviderAdapter
from checkout.gateway.mobile_money_adapter import FlutterwaveAdapter, tx_ref_for
from checkout.gateway.port import AttemptRef, ProviderStatus


def _ref(reference, amount="20.00", currency="USD", txid=None):
    return AttemptRef(
        external_reference=reference,
        amount=Decimal(amount),
        currency=currency,
        provider_transaction_id=txid,
    )


# ---------------------------------------------------------------------------
# Fake adapter
# ---------------------------------------------------------------------------
class TestFakeAdapter:
    def test_intents_start_pending(self):
        adapter = FakeProviderAdapter("card")
        result = adapter.initiate(Decimal("10.00"), "USD", {}, "key-1")
        assert result.external_reference.startswith("fake_card_")
        assert adapter.confirm(_ref(result.external_reference)).status == ProviderStatus.PENDING.value

    def test_settle_with_amount(self):
        adapter = FakeProviderAdapter("card")
        reference = adapter.initiate(Decimal("10.00"), "USD", {}, "key-1").external_reference
        adapter.settle(reference, amount="12.00")

        result = adapter.confirm(_ref(reference))

        assert result.status == ProviderStatus.SUCCEEDED.value
        assert result.settled_amount == Decimal("12.00")

    def test_auto_settle(self):
        adapter = FakeProviderAdapter("mobile_money")
        adapter.configure(auto_settle=True)
        reference = adapter.initiate(Decimal("10.00"), "RWF", {}, "key-1").external_reference
        assert adapter.confirm(_ref(reference)).settled_amount == Decimal("10.00")

    def test_callback_requires_signature(self):
        adapter = FakeProviderAdapter("card")
        body = json.dumps({"reference": "r", "status": "succeeded"}).encode()
        with pytest.raises(WebhookVerificationError):
            adapter.accept_callback(body, {})
        with pytest.raises(MalformedCallback):
            adapter.accept_callback(b"{", {"X-Fake-Signature": "test-signature"})

    def test_refund_support_switch(self):
        adapter = FakeProviderAdapter("onchain")
        adapter.configure(refunds_supported=False)
        with pytest.raises(RefundNotSupported):
            adapter.refund(_ref("r"), Decimal("1"), "test", "key")

    def test_repeated_refund_key_is_deduplicated(self):
        adapter = FakeProviderAdapter("card")

        first = adapter.refund(_ref("r"), Decimal("5"), "test", "refund-key")
        again = adapter.refund(_ref("r"), Decimal("5"), "test", "refund-key")

        assert again.provider_refund_id == first.provider_refund_id
        assert len(adapter.refunds) == 1


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------
@pytest.fixture()
def stripe_adapter(monkeypatch):
    # keep global client configuration from leaking between tests
    monkeypatch.setattr(stripe, "api_key", stripe.api_key)
    monkeypatch.setattr(stripe, "max_network_retries", stripe.max_network_retries)
    monkeypatch.setattr(stripe, "default_http_client", getattr(stripe, "default_http_client", None))
    return StripeCardAdapter(secret_key="sk_test_123", webhook_secret="whsec_test")


class TestStripeAdapter:
    def test_minor_units(self):
        assert to_minor_units(Decimal("34.50")) == 3450
        assert to_minor_units(Decimal("0.005")) == 1
        assert from_minor_units(3450) == Decimal("34.5")

    def test_initiate(self, stripe_adapter, monkeypatch):
        seen = {}

        def create(**kwargs):
            seen.update(kwargs)
            return {"id": "pi_123", "client_secret": "pi_123_secret"}

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)

        result = stripe_adapter.initiate(Decimal("34.50"), "USD", {"cart_id": "c1"}, "key-1")

        assert result.external_reference == "pi_123"
        assert result.client_payload["client_secret"] == "pi_123_secret"
        assert seen["amount"] == 3450
        assert seen["currency"] == "usd"
        assert seen["idempotency_key"] == "key-1"

    def test_initiate_retries_connection_errors(self, stripe_adapter, monkeypatch):
        calls = []

        def create(**kwargs):
            calls.append(kwargs)
            if len(calls) < 3:
                raise stripe.APIConnectionError("connection reset")
            return {"id": "pi_123", "client_secret": "secret"}

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)

        assert stripe_adapter.initiate(Decimal("1"), "USD", {}, "key-1").external_reference == "pi_123"
        assert len(calls) == 3
        assert {c["idempotency_key"] for c in calls} == {"key-1"}

    def test_initiate_gives_up_as_unavailable(self, stripe_adapter, monkeypatch):
        def create(**kwargs):
            raise stripe.APIConnectionError("down")

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)
        with pytest.raises(ProviderUnavailable):
            stripe_adapter.initiate(Decimal("1"), "USD", {}, "key-1")

    def test_initiate_rejection(self, stripe_adapter, monkeypatch):
        def create(**kwargs):
            raise stripe.InvalidRequestError("Amount too small", "amount")

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)
        with pytest.raises(IntentCreationFailed):
            stripe_adapter.initiate(Decimal("0.01"), "USD", {}, "key-1")

    @pytest.mark.parametrize(
        "intent, expected",
        [
            ({"status": "succeeded", "amount_received": 2000}, ProviderStatus.SUCCEEDED.value),
            ({"status": "processing"}, ProviderStatus.PENDING.value),
            ({"status": "requires_payment_method"}, ProviderStatus.PENDING.value),
            (
                {"status": "requires_payment_method", "last_payment_error": {"message": "Card declined"}},
                ProviderStatus.FAILED.value,
            ),
            ({"status": "canceled"}, ProviderStatus.FAILED.value),
        ],
    )
    def test_confirm_status_mapping(self, stripe_adapter, monkeypatch, intent, expected):
        monkeypatch.setattr(stripe.PaymentIntent, "retrieve", lambda ref: {"id": ref, **intent})
        assert stripe_adapter.confirm(_ref("pi_123")).status == expected

    def test_confirm_reports_amount_received(self, stripe_adapter, monkeypatch):
        monkeypatch.setattr(
            stripe.PaymentIntent,
            "retrieve",
            lambda ref: {"id": ref, "status": "succeeded", "amount_received": 2500, "latest_charge": "ch_1"},
        )
        result = stripe_adapter.confirm(_ref("pi_123"))
        assert result.settled_amount == Decimal("25")
        assert result.provider_transaction_id == "ch_1"

    def test_confirm_timeout(self, stripe_adapter, monkeypatch):
        def retrieve(ref):
            raise stripe.APIConnectionError("timeout")

        monkeypatch.setattr(stripe.PaymentIntent, "retrieve", retrieve)
        with pytest.raises(ConfirmationTimeout):
            stripe_adapter.confirm(_ref("pi_123"))

    def test_webhook(self, stripe_adapter, monkeypatch):
        event = {
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_123", "amount_received": 2000, "currency": "usd"}},
        }
        monkeypatch.setattr(stripe.Webhook, "construct_event", lambda body, sig, secret: event)

        result = stripe_adapter.accept_callback(b"{}", {"Stripe-Signature": "t=1,v1=abc"})

        assert result.external_reference == "pi_123"
        assert result.status == ProviderStatus.SUCCEEDED.value
        assert result.amount == Decimal("20")
        assert result.currency == "USD"

    def test_webhook_signature(self, stripe_adapter, monkeypatch):
        def construct_event(body, sig, secret):
            raise stripe.SignatureVerificationError("bad signature", sig)

        monkeypatch.setattr(stripe.Webhook, "construct_event", construct_event)
        with pytest.raises(WebhookVerificationError):
            stripe_adapter.accept_callback(b"{}", {"Stripe-Signature": "forged"})
        with pytest.raises(WebhookVerificationError):
            stripe_adapter.accept_callback(b"{}", {})

    def test_refund(self, stripe_adapter, monkeypatch):
        seen = {}

        def create(**kwargs):
            seen.update(kwargs)
            return {"id": "re_1", "status": "succeeded"}

        monkeypatch.setattr(stripe.Refund, "create", create)

        result = stripe_adapter.refund(_ref("pi_123"), Decimal("14.50"), "Item sold out", "key-1:refund:r1")

        assert result.success is True
        assert result.provider_refund_id == "re_1"
        assert seen["amount"] == 1450
        assert seen["payment_intent"] == "pi_123"

    def test_refund_transient_error_propagates_for_retry(self, stripe_adapter, monkeypatch):
        def create(**kwargs):
            raise stripe.RateLimitError("slow down")

        monkeypatch.setattr(stripe.Refund, "create", create)
        with pytest.raises(TransientProviderError):
            stripe_adapter.refund(_ref("pi_123"), Decimal("1"), "test", "key")


# ---------------------------------------------------------------------------
# Flutterwave
# ---------------------------------------------------------------------------
def _flutterwave(handler):
    client = httpx.Client(base_url="https://flutterwave.test/v3", transport=httpx.MockTransport(handler))
    adapter = FlutterwaveAdapter(client=client)
    adapter.secret_hash = "fw-secret"
    return adapter


class TestFlutterwaveAdapter:
    def test_initiate_creates_payment_link(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"status": "success", "data": {"link": "https://pay.test/abc"}})

        adapter = _flutterwave(handler)
        result = adapter.initiate(Decimal("15000"), "RWF", {"owner_id": "o1"}, "key-1")

        assert result.external_reference == tx_ref_for("key-1")
        assert result.client_payload["link"] == "https://pay.test/abc"
        assert requests[0].url.path == "/v3/payments"
        sent = json.loads(requests[0].content)
        assert sent["tx_ref"] == "chk_key-1"
        assert sent["amount"] == "15000"
        assert sent["payment_options"] == "mobilemoney"

    def test_initiate_retries_server_errors(self):
        responses = iter(
            [
                httpx.Response(502),
                httpx.Response(200, json={"status": "success", "data": {"link": "https://pay.test/abc"}}),
            ]
        )
        adapter = _flutterwave(lambda request: next(responses))
        assert adapter.initiate(Decimal("100"), "RWF", {}, "key-1").external_reference == "chk_key-1"

    def test_initiate_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(ProviderUnavailable):
            _flutterwave(handler).initiate(Decimal("100"), "RWF", {}, "key-1")

    def test_initiate_rejected(self):
        adapter = _flutterwave(lambda request: httpx.Response(400, json={"status": "error", "message": "Bad currency"}))
        with pytest.raises(IntentCreationFailed):
            adapter.initiate(Decimal("100"), "XYZ", {}, "key-1")

    def test_confirm_successful(self):
        def handler(request):
            assert request.url.params["tx_ref"] == "chk_key-1"
            return httpx.Response(
                200,
                json={"status": "success", "data": {"id": 987, "status": "successful", "amount": 15000, "currency": "RWF"}},
            )

        result = _flutterwave(handler).confirm(_ref("chk_key-1", "15000", "RWF"))

        assert result.status == ProviderStatus.SUCCEEDED.value
        assert result.settled_amount == Decimal("15000")
        assert result.provider_transaction_id == "987"

    def test_confirm_currency_mismatch_fails(self):
        adapter = _flutterwave(
            lambda request: httpx.Response(
                200, json={"data": {"id": 1, "status": "successful", "amount": 15000, "currency": "KES"}}
            )
        )
        result = adapter.confirm(_ref("chk_key-1", "15000", "RWF"))
        assert result.status == ProviderStatus.FAILED.value

    def test_confirm_unknown_reference_is_pending(self):
        adapter = _flutterwave(lambda request: httpx.Response(404, json={"status": "error"}))
        assert adapter.confirm(_ref("chk_key-1")).status == ProviderStatus.PENDING.value

    def test_confirm_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow")

        with pytest.raises(ConfirmationTimeout):
            _flutterwave(handler).confirm(_ref("chk_key-1"))

    def test_webhook_verif_hash(self):
        body = json.dumps({"event": "charge.completed", "data": {"id": 5, "tx_ref": "chk_key-1", "status": "successful"}})
        result = _flutterwave(lambda r: httpx.Response(200)).accept_callback(body.encode(), {"verif-hash": "fw-secret"})
        assert result.external_reference == "chk_key-1"
        assert result.status == ProviderStatus.SUCCEEDED.value
        assert result.provider_transaction_id == "5"

    def test_webhook_hmac_signature(self):
        body = json.dumps({"data": {"tx_ref": "chk_key-1", "status": "failed"}}).encode()
        signature = hmac.new(b"fw-secret", body, hashlib.sha256).hexdigest()
        result = _flutterwave(lambda r: httpx.Response(200)).accept_callback(body, {"flutterwave-signature": signature})
        assert result.status == ProviderStatus.FAILED.value

    def test_webhook_rejects_bad_signature(self):
        adapter = _flutterwave(lambda r: httpx.Response(200))
        with pytest.raises(WebhookVerificationError):
            adapter.accept_callback(b"{}", {"verif-hash": "wrong"})

    def test_refund(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"status": "success", "data": {"id": 321}})

        result = _flutterwave(handler).refund(_ref("chk_key-1", txid="987"), Decimal("500"), "Sold out", "k:refund:1")

        assert result.success is True
        assert result.provider_refund_id == "321"
        assert requests[0].url.path == "/v3/transactions/987/refund"
        assert requests[0].headers["Idempotency-Key"] == "k:refund:1"

    def test_refund_without_transaction_id(self):
        result = _flutterwave(lambda r: httpx.Response(200)).refund(_ref("chk_key-1"), Decimal("1"), "x", "k")
        assert result.success is False
