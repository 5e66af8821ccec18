"""Configurable fake payment provider for development and testing.

One instance stands in for each rail. Intents stay pending until settled,
either explicitly through ``settle()`` or automatically when ``auto_settle``
is on, which makes the fake usable for:
- Manual API testing via /checkout/providers/{provider}/configure
- Automated tests with predictable, step-by-step outcomes
- Development without real provider credentials

Callbacks are signed with the fixed header ``x-fake-signature: test-signature``.
"""

import json
import threading
from decimal import Decimal, InvalidOperation
from uuid import uuid4

from checkout.errors import (
    ConfirmationTimeout,
    IntentCreationFailed,
    MalformedCallback,
    ProviderUnavailable,
    RefundNotSupported,
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

SIGNATURE_HEADER = "x-fake-signature"
TEST_SIGNATURE = "test-signature"


class FakeProviderAdapter(ProviderAdapter):
    """Configurable fake provider."""

    def __init__(self, rail: str) -> None:
        self.rail = rail
        self._lock = threading.Lock()
        self.intents: dict[str, dict] = {}
        self.refunds: list[dict] = []
        self._refunds_by_key: dict[str, RefundResult] = {}
        self.calls: list[dict] = []
        self.reject_reason: str | None = None
        self.unavailable: bool = False
        self.auto_settle: bool = False
        self.refund_failures: int = 0
        self.refund_reject_reason: str | None = None
        self.refunds_supported: bool = True

    def configure(
        self,
        reject_reason: str | None = None,
        unavailable: bool = False,
        auto_settle: bool = False,
        refund_failures: int = 0,
        refund_reject_reason: str | None = None,
        refunds_supported: bool = True,
    ) -> None:
        """Configure provider behavior at runtime."""
        self.reject_reason = reject_reason
        self.unavailable = unavailable
        self.auto_settle = auto_settle
        self.refund_failures = refund_failures
        self.refund_reject_reason = refund_reject_reason
        self.refunds_supported = refunds_supported

    def settle(
        self,
        external_reference: str,
        status: str = ProviderStatus.SUCCEEDED.value,
        amount: Decimal | str | None = None,
        failure_reason: str | None = None,
    ) -> None:
        """Move an intent to a provider-side outcome."""
        with self._lock:
            intent = self.intents[external_reference]
            intent["status"] = status
            intent["failure_reason"] = failure_reason
            if amount is not None:
                intent["settled_amount"] = Decimal(str(amount))

    def initiate(self, amount, currency, metadata, idempotency_key) -> IntentResult:
        self.calls.append(
            {
                "method": "initiate",
                "amount": amount,
                "currency": currency,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            }
        )
        if self.unavailable:
            raise ProviderUnavailable(f"{self.rail} provider unavailable", provider=self.rail)
        if self.reject_reason:
            raise IntentCreationFailed(self.reject_reason, provider=self.rail)

        reference = f"fake_{self.rail}_{uuid4().hex[:12]}"
        with self._lock:
            self.intents[reference] = {
                "amount": Decimal(str(amount)),
                "currency": currency,
                "status": ProviderStatus.PENDING.value,
                "settled_amount": None,
                "failure_reason": None,
                "transaction_id": f"fake_txn_{uuid4().hex[:12]}",
            }
        return IntentResult(
            external_reference=reference,
            client_payload={"reference": reference, "provider": self.rail},
        )

    def confirm(self, attempt: AttemptRef) -> ConfirmResult:
        self.calls.append(
            {
                "method": "confirm",
                "external_reference": attempt.external_reference,
                "tx_hash": attempt.tx_hash,
            }
        )
        if self.unavailable:
            raise ConfirmationTimeout(f"{self.rail} provider did not answer", provider=self.rail)

        with self._lock:
            intent = self.intents.get(attempt.external_reference)
            if intent is None:
                return ConfirmResult(status=ProviderStatus.FAILED.value, failure_reason="Unknown reference")
            if self.auto_settle and intent["status"] == ProviderStatus.PENDING.value:
                intent["status"] = ProviderStatus.SUCCEEDED.value

            status = intent["status"]
            settled = intent["settled_amount"]
            if status == ProviderStatus.SUCCEEDED.value and settled is None:
                settled = intent["amount"]
            return ConfirmResult(
                status=status,
                settled_amount=settled,
                provider_transaction_id=intent["transaction_id"],
                failure_reason=intent["failure_reason"],
            )

    def accept_callback(self, raw_body: bytes, headers: dict) -> CallbackResult:
        signature = {k.lower(): v for k, v in headers.items()}.get(SIGNATURE_HEADER)
        if signature != TEST_SIGNATURE:
            raise WebhookVerificationError("Invalid callback signature", provider=self.rail)

        try:
            payload = json.loads(raw_body)
            amount = payload.get("amount")
            return CallbackResult(
                external_reference=payload["reference"],
                status=ProviderStatus(payload["status"]).value,
                amount=Decimal(str(amount)) if amount is not None else None,
                currency=payload.get("currency"),
            )
        except (ValueError, KeyError, TypeError, AttributeError, InvalidOperation) as exc:
            raise MalformedCallback("Malformed callback payload", provider=self.rail) from exc

    def refund(self, attempt: AttemptRef, amount, reason, idempotency_key) -> RefundResult:
        self.calls.append(
            {
                "method": "refund",
                "external_reference": attempt.external_reference,
                "amount": amount,
                "reason": reason,
                "idempotency_key": idempotency_key,
            }
        )
        if not self.refunds_supported:
            raise RefundNotSupported(f"{self.rail} refunds require manual handling")
        with self._lock:
            if self.refund_failures > 0:
                self.refund_failures -= 1
                raise TransientProviderError(f"{self.rail} refund temporarily failed")
        if self.refund_reject_reason:
            return RefundResult(success=False, failure_reason=self.refund_reject_reason)

        with self._lock:
            if idempotency_key in self._refunds_by_key:
                return self._refunds_by_key[idempotency_key]

            refund_id = f"fake_ref_{uuid4().hex[:12]}"
            self.refunds.append(
                {
                    "refund_id": refund_id,
                    "external_reference": attempt.external_reference,
                    "amount": Decimal(str(amount)),
                    "reason": reason,
                }
            )
            result = RefundResult(success=True, provider_refund_id=refund_id)
            self._refunds_by_key[idempotency_key] = result
        return result
