"""Domain events for the PaymentAttempt aggregate.

Attempts are plain CQRS aggregates; these events record every provider-driven
state change for downstream consumers (order history, manual-review tooling).
"""

from protean.fields import DateTime, Decimal, Identifier, Integer, String

from checkout.domain import checkout


@checkout.event(part_of="PaymentAttempt")
class PaymentAttemptCreated:
    """A provider-side payment object was created for a currency group."""

    __version__ = 1

    attempt_id = Identifier(required=True)
    cart_id = Identifier(required=True)
    cart_generation = Integer(required=True)
    currency = String(required=True)
    provider = String(required=True)
    amount = Decimal(required=True)
    external_reference = String(required=True)
    created_at = DateTime(required=True)


@checkout.event(part_of="PaymentAttempt")
class PaymentAwaitingConfirmation:
    """The customer completed the provider flow; the outcome is not yet known."""

    __version__ = 1

    attempt_id = Identifier(required=True)
    cart_id = Identifier(required=True)
    tx_hash = String()
    marked_at = DateTime(required=True)


@checkout.event(part_of="PaymentAttempt")
class PaymentAttemptSucceeded:
    """The provider confirmed the payment."""

    __version__ = 1

    attempt_id = Identifier(required=True)
    cart_id = Identifier(required=True)
    currency = String(required=True)
    amount = Decimal(required=True)
    settled_amount = Decimal(required=True)
    provider_transaction_id = String()
    succeeded_at = DateTime(required=True)


@checkout.event(part_of="PaymentAttempt")
class PaymentAttemptFailed:
    """The provider reported the payment as failed. Terminal."""

    __version__ = 1

    attempt_id = Identifier(required=True)
    cart_id = Identifier(required=True)
    reason = String(required=True)
    failed_at = DateTime(required=True)


@checkout.event(part_of="PaymentAttempt")
class RefundRequested:
    __version__ = 1

    attempt_id = Identifier(required=True)
    refund_id = Identifier(required=True)
    amount = Decimal(required=True)
    reason = String(required=True)
    order_line_ref = String()
    requested_at = DateTime(required=True)


@checkout.event(part_of="PaymentAttempt")
class RefundCompleted:
    __version__ = 1

    attempt_id = Identifier(required=True)
    refund_id = Identifier(required=True)
    amount = Decimal(required=True)
    provider_refund_id = String()
    completed_at = DateTime(required=True)


@checkout.event(part_of="PaymentAttempt")
class RefundIssuanceFailed:
    """A refund could not be issued after retries."""

    __version__ = 1

    attempt_id = Identifier(required=True)
    refund_id = Identifier(required=True)
    amount = Decimal(required=True)
    reason = String(required=True)
    failed_at = DateTime(required=True)


@checkout.event(part_of="PaymentAttempt")
class AttemptFlaggedForReview:
    """An automated compensation failed and needs an operator."""

    __version__ = 1

    attempt_id = Identifier(required=True)
    cart_id = Identifier(required=True)
    reason = String(required=True)
    flagged_at = DateTime(required=True)
