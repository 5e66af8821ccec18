"""Mobile-money gateway adapter backed by Flutterwave (v3 REST API).

Intents are Flutterwave Standard payment links keyed by ``tx_ref``. The
reference is derived from the idempotency key, so a retried initiate reuses
the same provider transaction instead of opening a second one.
"""

import hashlib
import hmac
import json
from decimal import Decimal, InvalidOperation

import httpx
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

_STATUS = {
    "successful": ProviderStatus.SUCCEEDED.value,
    "failed": ProviderStatus.FAILED.value,
    "cancelled": ProviderStatus.FAILED.value,
}


def tx_ref_for(idempotency_key: str) -> str:
    return f"chk_{idempotency_key[:32]}"


class FlutterwaveAdapter(ProviderAdapter):
    """Mobile-money rail on top of the Flutterwave API."""

    rail = "mobile_money"

    def __init__(self, client: httpx.Client | None = None) -> None:
        settings = get_settings()
        self.secret_hash = settings.flutterwave_secret_hash
        self.redirect_url = settings.flutterwave_redirect_url
        self.client = client or httpx.Client(
            base_url=settings.flutterwave_base_url,
            timeout=settings.provider_timeout_seconds,
            headers={"Authorization": f"Bearer {settings.flutterwave_secret_key}"},
        )

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("flutterwave_transport_error", url=url, error=str(exc))
            raise TransientProviderError(str(exc)) from exc
        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("flutterwave_server_error", url=url, status_code=response.status_code)
            raise TransientProviderError(f"Flutterwave returned {response.status_code}")
        return response

    def initiate(self, amount, currency, metadata, idempotency_key) -> IntentResult:
        tx_ref = tx_ref_for(idempotency_key)
        payload = {
            "tx_ref": tx_ref,
            "amount": str(amount),
            "currency": currency,
            "redirect_url": self.redirect_url,
            "payment_options": "mobilemoney",
            "meta": metadata,
            "customer": {"email": metadata.get("customer_email") or f"{metadata.get('owner_id')}@customers.invalid"},
        }
        try:
            response = provider_retrying()(self._request, "POST", "/payments", json=payload)
        except TransientProviderError as exc:
            raise ProviderUnavailable("Mobile-money gateway unavailable", provider=self.rail) from exc

        body = response.json()
        if response.status_code >= 400 or body.get("status") != "success":
            logger.error("flutterwave_intent_rejected", tx_ref=tx_ref, message=body.get("message"))
            raise IntentCreationFailed(body.get("message") or "Payment link rejected", provider=self.rail)

        return IntentResult(
            external_reference=tx_ref,
            client_payload={"tx_ref": tx_ref, "link": body["data"]["link"]},
        )

    def confirm(self, attempt: AttemptRef) -> ConfirmResult:
        try:
            response = provider_retrying()(
                self._request,
                "GET",
                "/transactions/verify_by_reference",
                params={"tx_ref": attempt.external_reference},
            )
        except TransientProviderError as exc:
            raise ConfirmationTimeout("Mobile-money gateway did not answer", provider=self.rail) from exc

        if response.status_code == 404:
            return ConfirmResult(status=ProviderStatus.PENDING.value)

        data = response.json().get("data") or {}
        status = _STATUS.get(str(data.get("status", "")).lower(), ProviderStatus.PENDING.value)

        if status == ProviderStatus.SUCCEEDED.value:
            if str(data.get("currency", "")).upper() != attempt.currency:
                return ConfirmResult(
                    status=ProviderStatus.FAILED.value,
                    provider_transaction_id=str(data.get("id")),
                    failure_reason="Currency mismatch",
                )
            return ConfirmResult(
                status=status,
                settled_amount=Decimal(str(data["amount"])),
                provider_transaction_id=str(data.get("id")),
            )

        return ConfirmResult(
            status=status,
            provider_transaction_id=str(data["id"]) if data.get("id") else None,
            failure_reason=data.get("processor_response") if status == ProviderStatus.FAILED.value else None,
        )

    def _verify_signature(self, raw_body: bytes, headers: dict) -> None:
        if not self.secret_hash:
            raise WebhookVerificationError("Flutterwave webhook not configured", provider=self.rail)

        headers = {k.lower(): v for k, v in headers.items()}
        verif_hash = headers.get("verif-hash")
        if verif_hash and hmac.compare_digest(verif_hash, self.secret_hash):
            return

        signature = headers.get("flutterwave-signature")
        if signature:
            computed = hmac.new(self.secret_hash.encode(), raw_body, hashlib.sha256).hexdigest()
            if hmac.compare_digest(computed, signature):
                return

        raise WebhookVerificationError("Invalid Flutterwave signature", provider=self.rail)

    def accept_callback(self, raw_body: bytes, headers: dict) -> CallbackResult:
        self._verify_signature(raw_body, headers)

        try:
            event = json.loads(raw_body)
            data = event.get("data") or event
            tx_ref = str(data["tx_ref"])
            amount = data.get("amount")
            return CallbackResult(
                external_reference=tx_ref,
                status=_STATUS.get(str(data.get("status", "")).lower(), ProviderStatus.PENDING.value),
                amount=Decimal(str(amount)) if amount is not None else None,
                currency=data.get("currency"),
                provider_transaction_id=str(data["id"]) if data.get("id") else None,
            )
        except (ValueError, KeyError, TypeError, AttributeError, InvalidOperation) as exc:
            raise MalformedCallback("Invalid Flutterwave event data", provider=self.rail) from exc

    def refund(self, attempt: AttemptRef, amount, reason, idempotency_key) -> RefundResult:
        if not attempt.provider_transaction_id:
            return RefundResult(success=False, failure_reason="No Flutterwave transaction id recorded")

        response = self._request(
            "POST",
            f"/transactions/{attempt.provider_transaction_id}/refund",
            json={"amount": str(amount), "comments": reason[:200]},
            headers={"Idempotency-Key": idempotency_key},
        )
        body = response.json()
        if response.status_code >= 400 or body.get("status") != "success":
            logger.error("flutterwave_refund_rejected", tx_ref=attempt.external_reference, message=body.get("message"))
            return RefundResult(success=False, failure_reason=body.get("message") or "Refund rejected")

        return RefundResult(success=True, provider_refund_id=str(body["data"]["id"]))
