"""Payment provider port (abstract interface).

Defines the contract shared by the card gateway, the mobile-money gateway and
the on-chain settlement verifier, so the intent factory and the reconciler
never branch on which rail they are talking to.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class ProviderStatus(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class IntentResult:
    """Provider-side payment object created for one currency group."""

    external_reference: str
    client_payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class AttemptRef:
    """What an adapter needs to know about an existing attempt."""

    external_reference: str
    amount: Decimal
    currency: str
    provider_transaction_id: str | None = None
    tx_hash: str | None = None


@dataclass(frozen=True)
class ConfirmResult:
    """Authoritative provider status of an attempt."""

    status: str
    settled_amount: Decimal | None = None
    provider_transaction_id: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class CallbackResult:
    """A verified provider callback, reduced to the fields reconciliation needs."""

    external_reference: str
    status: str
    amount: Decimal | None = None
    currency: str | None = None
    provider_transaction_id: str | None = None
    tx_hash: str | None = None


@dataclass(frozen=True)
class RefundResult:
    success: bool
    provider_refund_id: str | None = None
    failure_reason: str | None = None


class ProviderAdapter(ABC):
    """Abstract payment provider interface."""

    rail: str

    @abstractmethod
    def initiate(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict,
        idempotency_key: str,
    ) -> IntentResult:
        """Create the provider-side payment object.

        Raises ``IntentCreationFailed`` on rejection and ``ProviderUnavailable``
        once transient errors have exhausted their retries.
        """
        ...

    @abstractmethod
    def confirm(self, attempt: AttemptRef) -> ConfirmResult:
        """Ask the provider for the authoritative status of an attempt.

        Raises ``ConfirmationTimeout`` when the provider cannot be reached.
        """
        ...

    @abstractmethod
    def accept_callback(self, raw_body: bytes, headers: dict) -> CallbackResult:
        """Verify and parse a provider callback.

        Raises ``WebhookVerificationError`` or ``MalformedCallback``.
        """
        ...

    @abstractmethod
    def refund(
        self,
        attempt: AttemptRef,
        amount: Decimal,
        reason: str,
        idempotency_key: str,
    ) -> RefundResult:
        """Refund part or all of a settled attempt.

        Transient failures raise ``TransientProviderError`` so the caller can
        retry with backoff. Rails without automatic refunds raise
        ``RefundNotSupported``.
        """
        ...
