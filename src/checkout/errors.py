"""Checkout orchestration errors.

Invariant violations inside aggregates raise Protean's ``ValidationError``.
The exceptions below describe orchestration outcomes that callers must be
able to tell apart: structural misuse, provider rejections, retryable
timeouts, and compensation failures.
"""


class CheckoutError(Exception):
    """Base class for checkout orchestration errors."""

    status_code = 400
    code = "checkout_error"
    retryable = False

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class EmptyCartError(CheckoutError):
    code = "empty_cart"


class IntentCreationFailed(CheckoutError):
    """The provider rejected creation of a payment object."""

    status_code = 402
    code = "intent_creation_failed"


class DuplicateAttemptError(CheckoutError):
    """An idempotency key or currency group was reused in a conflicting way."""

    status_code = 409
    code = "duplicate_attempt"


class ProviderUnavailable(CheckoutError):
    """The provider could not be reached after retries. Safe to retry."""

    status_code = 503
    code = "provider_unavailable"
    retryable = True


class ConfirmationTimeout(CheckoutError):
    """A status poll timed out. The attempt stays AwaitingConfirmation."""

    status_code = 504
    code = "confirmation_timeout"
    retryable = True


class InventoryConflict(CheckoutError):
    status_code = 409
    code = "inventory_conflict"


class RefundFailed(CheckoutError):
    status_code = 502
    code = "refund_failed"


class RefundNotSupported(RefundFailed):
    """The rail cannot refund automatically (e.g. on-chain payments)."""

    code = "refund_not_supported"


class ChainVerificationFailed(CheckoutError):
    """On-chain transaction does not pay the expected payee/amount. Terminal."""

    status_code = 422
    code = "chain_verification_failed"


class WebhookVerificationError(CheckoutError):
    status_code = 401
    code = "invalid_signature"


class MalformedCallback(CheckoutError):
    code = "malformed_callback"


class TransientProviderError(Exception):
    """Raised inside adapters for errors worth retrying with backoff."""
