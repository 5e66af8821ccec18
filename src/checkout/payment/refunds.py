"""Refund issuance with retries and manual-review escalation.

Runs inside the caller's unit of work: the attempt is mutated in memory and
persisted by the caller together with whatever else it changed. When that
unit of work rolls back, the refund bookkeeping is lost but the provider and
catalog calls are not, so both are keyed on what the refund is for rather
than on the generated refund id. A rerun sends the same keys and gets the
first outcome back.
"""

import hashlib
from decimal import Decimal

import structlog

from checkout.config import get_settings
from checkout.errors import ProviderUnavailable, RefundFailed, TransientProviderError
from checkout.gateway import get_adapter
from checkout.inventory import get_inventory
from checkout.payment.attempt import PaymentAttempt
from checkout.utils.retry import provider_retrying

logger = structlog.get_logger(__name__)


def derive_refund_key(attempt: PaymentAttempt, purpose: str) -> str:
    """Stable key for one refund of an attempt: a line reference or a reason."""
    raw = f"{attempt.id}|{purpose}"
    return f"refund_{hashlib.sha256(raw.encode()).hexdigest()[:32]}"


def issue_refund(
    attempt: PaymentAttempt,
    amount: Decimal,
    reason: str,
    order_line_ref: str | None = None,
) -> bool:
    """Refund ``amount`` of a settled attempt.

    When ``order_line_ref`` is given the refunded line is also reported to the
    catalog. Returns False, with the attempt flagged for manual review, when
    the provider could not refund after retries.
    """
    refund_id = attempt.request_refund(amount, reason, order_line_ref=order_line_ref)
    adapter = get_adapter(attempt.provider)
    idempotency_key = derive_refund_key(attempt, order_line_ref or reason)

    try:
        result = provider_retrying(get_settings().refund_retry_attempts)(
            adapter.refund, attempt.ref(), amount, reason, idempotency_key
        )
    except (TransientProviderError, RefundFailed) as exc:
        logger.error(
            "refund_failed",
            attempt_id=str(attempt.id),
            amount=str(amount),
            currency=attempt.currency,
            error=str(exc),
        )
        attempt.fail_refund(refund_id, str(exc))
        return False

    if not result.success:
        logger.error(
            "refund_rejected",
            attempt_id=str(attempt.id),
            amount=str(amount),
            reason=result.failure_reason,
        )
        attempt.fail_refund(refund_id, result.failure_reason or "Refund rejected")
        return False

    inventory_ref = None
    if order_line_ref:
        try:
            inventory_ref = get_inventory().refund_product(order_line_ref, amount, idempotency_key=idempotency_key)
        except ProviderUnavailable:
            logger.warning("inventory_refund_unrecorded", attempt_id=str(attempt.id), order_line_ref=order_line_ref)

    attempt.complete_refund(refund_id, result.provider_refund_id, inventory_refund_ref=inventory_ref)
    logger.info(
        "refund_completed",
        attempt_id=str(attempt.id),
        amount=str(amount),
        currency=attempt.currency,
        provider_refund_id=result.provider_refund_id,
    )
    return True


def refund_in_full(attempt: PaymentAttempt, reason: str) -> bool:
    """Refund whatever is still refundable on the attempt."""
    remaining = attempt.refundable_value
    if remaining <= 0:
        return True
    return issue_refund(attempt, remaining, reason)
