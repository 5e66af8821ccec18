"""PaymentAttempt aggregate (CQRS): one provider-side payment for one currency group.

State Machine:
    Created → AwaitingConfirmation → Succeeded | Failed
    Succeeded → Refunded | PartiallyRefunded
    PartiallyRefunded → Refunded

Only the reconciler moves an attempt forward, and only on a provider-confirmed
status. Refund bookkeeping is the single way out of Succeeded.
"""

import json
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Decimal as DecimalField, HasMany, Identifier, Integer, String, Text

from checkout.domain import checkout
from checkout.gateway.port import AttemptRef
from checkout.payment.events import (
    AttemptFlaggedForReview,
    PaymentAttemptCreated,
    PaymentAttemptFailed,
    PaymentAttemptSucceeded,
    PaymentAwaitingConfirmation,
    RefundCompleted,
    RefundIssuanceFailed,
    RefundRequested,
)
from checkout.utils.retry import next_poll_delay


def as_decimal(value) -> Decimal:
    return Decimal(str(value or 0))


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class AttemptStatus(Enum):
    CREATED = "Created"
    AWAITING_CONFIRMATION = "AwaitingConfirmation"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    REFUNDED = "Refunded"
    PARTIALLY_REFUNDED = "PartiallyRefunded"


class RefundStatus(Enum):
    REQUESTED = "Requested"
    COMPLETED = "Completed"
    FAILED = "Failed"


NON_TERMINAL = frozenset({AttemptStatus.CREATED.value, AttemptStatus.AWAITING_CONFIRMATION.value})

_VALID_TRANSITIONS = {
    AttemptStatus.CREATED: {AttemptStatus.AWAITING_CONFIRMATION, AttemptStatus.FAILED},
    AttemptStatus.AWAITING_CONFIRMATION: {AttemptStatus.SUCCEEDED, AttemptStatus.FAILED},
    AttemptStatus.SUCCEEDED: {AttemptStatus.REFUNDED, AttemptStatus.PARTIALLY_REFUNDED},
    AttemptStatus.PARTIALLY_REFUNDED: {AttemptStatus.REFUNDED},
    AttemptStatus.FAILED: set(),  # Terminal
    AttemptStatus.REFUNDED: set(),  # Terminal
}


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@checkout.entity(part_of="PaymentAttempt")
class Refund:
    """A refund issued against this attempt."""

    amount = DecimalField(required=True, min_value=0)
    reason = String(max_length=500, required=True)
    order_line_ref = String(max_length=255)
    status = String(max_length=50, choices=RefundStatus, default=RefundStatus.REQUESTED.value)
    provider_refund_id = String(max_length=255)
    inventory_refund_ref = String(max_length=255)
    requested_at = DateTime(required=True)
    processed_at = DateTime()


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@checkout.aggregate
class PaymentAttempt:
    cart_id = Identifier(required=True)
    cart_generation = Integer(required=True, min_value=1)
    currency = String(max_length=10, required=True)
    provider = String(max_length=50, required=True)
    idempotency_key = String(max_length=255, required=True)
    external_reference = String(max_length=255, required=True)
    provider_transaction_id = String(max_length=255)
    tx_hash = String(max_length=66)
    status = String(choices=AttemptStatus, default=AttemptStatus.CREATED.value)
    amount = DecimalField(required=True, min_value=0)
    settled_amount = DecimalField()
    total_refunded = DecimalField(default=Decimal("0"))
    refunds = HasMany(Refund)
    manual_review = Boolean(default=False)
    review_reason = String(max_length=1000)
    poll_count = Integer(default=0)
    next_poll_at = DateTime()
    client_payload = Text()  # JSON handed to the client to complete payment
    failure_reason = String(max_length=1000)
    created_at = DateTime()
    updated_at = DateTime()

    # -------------------------------------------------------------------
    # Factory method
    # -------------------------------------------------------------------
    @classmethod
    def create(
        cls,
        cart_id: str,
        cart_generation: int,
        currency: str,
        provider: str,
        idempotency_key: str,
        amount: Decimal,
        external_reference: str,
        client_payload: dict,
    ):
        now = datetime.now(UTC)
        attempt = cls(
            cart_id=cart_id,
            cart_generation=cart_generation,
            currency=currency,
            provider=provider,
            idempotency_key=idempotency_key,
            amount=as_decimal(amount),
            external_reference=external_reference,
            client_payload=json.dumps(client_payload),
            status=AttemptStatus.CREATED.value,
            created_at=now,
            updated_at=now,
        )
        attempt.raise_(
            PaymentAttemptCreated(
                attempt_id=str(attempt.id),
                cart_id=str(cart_id),
                cart_generation=cart_generation,
                currency=currency,
                provider=provider,
                amount=as_decimal(amount),
                external_reference=external_reference,
                created_at=now,
            )
        )
        return attempt

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    @property
    def is_terminal(self) -> bool:
        return self.status not in NON_TERMINAL

    @property
    def amount_value(self) -> Decimal:
        return as_decimal(self.amount)

    @property
    def settled_value(self) -> Decimal:
        if self.settled_amount is None:
            return self.amount_value
        return as_decimal(self.settled_amount)

    @property
    def refundable_value(self) -> Decimal:
        reserved = sum(
            (as_decimal(r.amount) for r in (self.refunds or []) if r.status == RefundStatus.REQUESTED.value),
            Decimal("0"),
        )
        return self.settled_value - as_decimal(self.total_refunded) - reserved

    @property
    def payload(self) -> dict:
        return json.loads(self.client_payload) if self.client_payload else {}

    def ref(self) -> AttemptRef:
        return AttemptRef(
            external_reference=self.external_reference,
            amount=self.amount_value,
            currency=self.currency,
            provider_transaction_id=self.provider_transaction_id,
            tx_hash=self.tx_hash,
        )

    # -------------------------------------------------------------------
    # State transition helper
    # -------------------------------------------------------------------
    def _assert_can_transition(self, target_status: AttemptStatus) -> None:
        current = AttemptStatus(self.status)
        if target_status not in _VALID_TRANSITIONS.get(current, set()):
            raise ValidationError({"status": [f"Cannot transition from {current.value} to {target_status.value}"]})

    # -------------------------------------------------------------------
    # Confirmation lifecycle
    # -------------------------------------------------------------------
    def bind_tx_hash(self, tx_hash: str) -> None:
        tx_hash = tx_hash.lower()
        if self.tx_hash and self.tx_hash != tx_hash:
            raise ValidationError({"tx_hash": ["A different transaction is already bound to this attempt"]})
        self.tx_hash = tx_hash
        self.updated_at = datetime.now(UTC)

    def mark_awaiting_confirmation(self) -> None:
        """Record that the customer finished the provider flow."""
        self._assert_can_transition(AttemptStatus.AWAITING_CONFIRMATION)
        now = datetime.now(UTC)
        self.status = AttemptStatus.AWAITING_CONFIRMATION.value
        self.updated_at = now

        self.raise_(
            PaymentAwaitingConfirmation(
                attempt_id=str(self.id),
                cart_id=str(self.cart_id),
                tx_hash=self.tx_hash,
                marked_at=now,
            )
        )

    def schedule_poll(self, now: datetime | None = None) -> None:
        """Push the next background status check out with exponential backoff."""
        now = now or datetime.now(UTC)
        self.poll_count = (self.poll_count or 0) + 1
        self.next_poll_at = now + timedelta(seconds=next_poll_delay(self.poll_count))
        self.updated_at = now

    def record_success(self, settled_amount: Decimal | None, provider_transaction_id: str | None = None) -> None:
        """Record a provider-confirmed payment."""
        if self.status == AttemptStatus.CREATED.value:
            self.mark_awaiting_confirmation()
        self._assert_can_transition(AttemptStatus.SUCCEEDED)

        now = datetime.now(UTC)
        settled = self.amount_value if settled_amount is None else as_decimal(settled_amount)
        self.status = AttemptStatus.SUCCEEDED.value
        self.settled_amount = settled
        if provider_transaction_id:
            self.provider_transaction_id = provider_transaction_id
        self.next_poll_at = None
        self.updated_at = now

        self.raise_(
            PaymentAttemptSucceeded(
                attempt_id=str(self.id),
                cart_id=str(self.cart_id),
                currency=self.currency,
                amount=self.amount,
                settled_amount=self.settled_amount,
                provider_transaction_id=self.provider_transaction_id,
                succeeded_at=now,
            )
        )

    def record_failure(self, reason: str) -> None:
        """Record a provider-confirmed failure. Terminal."""
        self._assert_can_transition(AttemptStatus.FAILED)
        now = datetime.now(UTC)
        self.status = AttemptStatus.FAILED.value
        self.failure_reason = reason
        self.next_poll_at = None
        self.updated_at = now

        self.raise_(
            PaymentAttemptFailed(
                attempt_id=str(self.id),
                cart_id=str(self.cart_id),
                reason=reason,
                failed_at=now,
            )
        )

    # -------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------
    def request_refund(self, amount: Decimal, reason: str, order_line_ref: str | None = None) -> str:
        """Reserve a refund against this attempt.

        Returns the refund_id for tracking.
        """
        if AttemptStatus(self.status) not in (AttemptStatus.SUCCEEDED, AttemptStatus.PARTIALLY_REFUNDED):
            raise ValidationError(
                {"status": ["Refunds can only be requested for succeeded or partially refunded attempts"]}
            )

        amount = as_decimal(amount)
        if amount <= 0:
            raise ValidationError({"amount": ["Refund amount must be positive"]})
        if amount > self.refundable_value:
            raise ValidationError(
                {"amount": [f"Refund ({amount}) would exceed the refundable amount ({self.refundable_value})"]}
            )

        now = datetime.now(UTC)
        refund = Refund(
            id=str(uuid4()),
            amount=as_decimal(amount),
            reason=reason,
            order_line_ref=order_line_ref,
            status=RefundStatus.REQUESTED.value,
            requested_at=now,
        )
        self.add_refunds(refund)
        self.updated_at = now

        self.raise_(
            RefundRequested(
                attempt_id=str(self.id),
                refund_id=str(refund.id),
                amount=refund.amount,
                reason=reason,
                order_line_ref=order_line_ref,
                requested_at=now,
            )
        )
        return str(refund.id)

    def _find_refund(self, refund_id: str) -> Refund:
        refund = next((r for r in (self.refunds or []) if str(r.id) == str(refund_id)), None)
        if refund is None:
            raise ValidationError({"refund_id": ["Refund not found"]})
        if refund.status != RefundStatus.REQUESTED.value:
            raise ValidationError({"refund": ["Refund is not in Requested state"]})
        return refund

    def complete_refund(
        self,
        refund_id: str,
        provider_refund_id: str | None,
        inventory_refund_ref: str | None = None,
    ) -> None:
        """Complete a refund after provider confirmation."""
        refund = self._find_refund(refund_id)
        now = datetime.now(UTC)

        refund.status = RefundStatus.COMPLETED.value
        refund.provider_refund_id = provider_refund_id
        refund.inventory_refund_ref = inventory_refund_ref
        refund.processed_at = now

        total = as_decimal(self.total_refunded) + as_decimal(refund.amount)
        self.total_refunded = total
        target = AttemptStatus.REFUNDED if total >= self.settled_value else AttemptStatus.PARTIALLY_REFUNDED
        if AttemptStatus(self.status) != target:
            self._assert_can_transition(target)
            self.status = target.value
        self.updated_at = now

        self.raise_(
            RefundCompleted(
                attempt_id=str(self.id),
                refund_id=str(refund_id),
                amount=refund.amount,
                provider_refund_id=provider_refund_id,
                completed_at=now,
            )
        )

    def fail_refund(self, refund_id: str, reason: str) -> None:
        """Give up on a refund and hand the attempt to an operator."""
        refund = self._find_refund(refund_id)
        now = datetime.now(UTC)
        refund.status = RefundStatus.FAILED.value
        refund.processed_at = now

        self.raise_(
            RefundIssuanceFailed(
                attempt_id=str(self.id),
                refund_id=str(refund_id),
                amount=refund.amount,
                reason=reason,
                failed_at=now,
            )
        )
        self.flag_for_review(f"Refund of {refund.amount} {self.currency} failed: {reason}")

    def flag_for_review(self, reason: str) -> None:
        now = datetime.now(UTC)
        self.manual_review = True
        self.review_reason = f"{self.review_reason}; {reason}" if self.review_reason else reason
        self.updated_at = now

        self.raise_(
            AttemptFlaggedForReview(
                attempt_id=str(self.id),
                cart_id=str(self.cart_id),
                reason=reason,
                flagged_at=now,
            )
        )
