"""Card gateway adapter backed by Stripe PaymentIntents.

The intent's client secret is handed to the browser, which confirms the card
with Stripe.js. The server only ever trusts ``PaymentIntent.retrieve`` or a
signed webhook for the outcome.
"""

from decimal import ROUND_HALF_UP, Decimal

import stripe
import structlog

from checkout.config import get_settings
from checkout.errors import (
    ConfirmationTimeout,
    IntentCreationFailed,
    MalformedCallback,
    ProviderUnavailable,
    TransientProviderError,
    WebhookVerificationError,
)
from checkout.gateway.port import (
    AttemptRef,
    CallbackResult,
    ConfirmResult,
    IntentResult,
    ProviderAdapter,
    ProviderStatus,
    RefundResult,
)
from checkout.utils.retry import provider_retrying

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)

_PENDING_STATUSES = {"processing", "requires_action", "requires_confirmation", "requires_capture"}

_WEBHOOK_STATUS = {
    "payment_intent.succeeded": ProviderStatus.SUCCEEDED.value,
    "payment_intent.payment_failed": ProviderStatus.FAILED.value,
    "payment_intent.canceled": ProviderStatus.FAILED.value,
}


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int | None) -> Decimal | None:
    if amount is None:
        return None
    return Decimal(amount) / 100


def _intent_status(intent) -> str:
    status = intent["status"]
    if status == "succeeded":
        return ProviderStatus.SUCCEEDED.value
    if status == "canceled":
        return ProviderStatus.FAILED.value
    if status in _PENDING_STATUSES:
        return ProviderStatus.PENDING.value
    # requires_payment_method: failed only once a payment error was recorded
    if intent.get("last_payment_error"):
        return ProviderStatus.FAILED.value
    return ProviderStatus.PENDING.value


class StripeCardAdapter(ProviderAdapter):
    """Card rail on top of the Stripe API."""

    rail = "card"

    def __init__(self, secret_key: str | None = None, webhook_secret: str | None = None) -> None:
        settings = get_settings()
        stripe.api_key = secret_key or settings.stripe_secret_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.provider_timeout_seconds)
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

        logger.info("stripe_adapter_initialized", test_mode=stripe.api_key.startswith("sk_test"))

    def _call(self, fn, *args, **kwargs):
        """Invoke a Stripe API call, turning transient errors into retryable ones."""
        try:
            return fn(*args, **kwargs)
        except TRANSIENT_ERRORS as exc:
            logger.warning("stripe_transient_error", error=str(exc))
            raise TransientProviderError(str(exc)) from exc

    def initiate(self, amount, currency, metadata, idempotency_key) -> IntentResult:
        try:
            intent = provider_retrying()(
                self._call,
                stripe.PaymentIntent.create,
                amount=to_minor_units(amount),
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )
        except TransientProviderError as exc:
            raise ProviderUnavailable("Card gateway unavailable", provider=self.rail) from exc
        except stripe.StripeError as exc:
            logger.error("stripe_intent_rejected", code=getattr(exc, "code", None), error=str(exc))
            raise IntentCreationFailed(
                exc.user_message or str(exc), provider=self.rail, code=getattr(exc, "code", None)
            ) from exc

        return IntentResult(
            external_reference=intent["id"],
            client_payload={"client_secret": intent["client_secret"], "payment_intent_id": intent["id"]},
        )

    def confirm(self, attempt: AttemptRef) -> ConfirmResult:
        try:
            intent = provider_retrying()(
                self._call, stripe.PaymentIntent.retrieve, attempt.external_reference
            )
        except (TransientProviderError, stripe.StripeError) as exc:
            raise ConfirmationTimeout("Card gateway did not answer", provider=self.rail) from exc

        status = _intent_status(intent)
        error = intent.get("last_payment_error") or {}
        return ConfirmResult(
            status=status,
            settled_amount=(
                from_minor_units(intent.get("amount_received"))
                if status == ProviderStatus.SUCCEEDED.value
                else None
            ),
            provider_transaction_id=intent.get("latest_charge"),
            failure_reason=error.get("message") if status == ProviderStatus.FAILED.value else None,
        )

    def accept_callback(self, raw_body: bytes, headers: dict) -> CallbackResult:
        signature = {k.lower(): v for k, v in headers.items()}.get("stripe-signature")
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header", provider=self.rail)
        try:
            event = stripe.Webhook.construct_event(raw_body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise WebhookVerificationError("Invalid Stripe signature", provider=self.rail) from exc
        except ValueError as exc:
            raise MalformedCallback("Invalid Stripe payload", provider=self.rail) from exc

        try:
            obj = event["data"]["object"]
            amount = obj.get("amount_received") or obj.get("amount")
            return CallbackResult(
                external_reference=obj["id"],
                status=_WEBHOOK_STATUS.get(event["type"], ProviderStatus.PENDING.value),
                amount=from_minor_units(amount),
                currency=(obj.get("currency") or "").upper() or None,
                provider_transaction_id=obj.get("latest_charge"),
            )
        except (KeyError, TypeError) as exc:
            raise MalformedCallback("Stripe event has no payment intent", provider=self.rail) from exc

    def refund(self, attempt: AttemptRef, amount, reason, idempotency_key) -> RefundResult:
        try:
            refund = self._call(
                stripe.Refund.create,
                payment_intent=attempt.external_reference,
                amount=to_minor_units(amount),
                reason="requested_by_customer",
                metadata={"reason": reason[:500]},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            logger.error("stripe_refund_rejected", reference=attempt.external_reference, error=str(exc))
            return RefundResult(success=False, failure_reason=str(exc))

        if refund["status"] in ("failed", "canceled"):
            return RefundResult(success=False, provider_refund_id=refund["id"], failure_reason=refund["status"])
        return RefundResult(success=True, provider_refund_id=refund["id"])
