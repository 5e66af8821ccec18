"""Payment status reconciliation.

Client completions, provider callbacks, explicit refreshes and background
re-polls all funnel into one command. Whatever the trigger says, only the
provider's own answer to ``confirm`` moves an attempt forward. Updates per
attempt are serialized on its idempotency key, and a fresh success hands the
cart to the CheckoutFinalizer once the attempt is committed.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

import structlog
from protean import handle
from protean.exceptions import ObjectNotFoundError, ValidationError
from protean.fields import Identifier, String
from protean.utils.globals import current_domain

from checkout.config import get_settings
from checkout.domain import checkout
from checkout.errors import ChainVerificationFailed, CheckoutError, ConfirmationTimeout, DuplicateAttemptError
from checkout.gateway import get_adapter
from checkout.gateway.chain import is_tx_hash
from checkout.gateway.port import CallbackResult, ProviderStatus
from checkout.payment.attempt import AttemptStatus, PaymentAttempt
from checkout.utils.locks import attempt_locks

logger = structlog.get_logger(__name__)


class Trigger(Enum):
    CLIENT = "client"
    CALLBACK = "callback"
    REFRESH = "refresh"
    REPOLL = "repoll"


@dataclass(frozen=True)
class ReconcileOutcome:
    attempt_id: str
    cart_id: str
    status: str
    succeeded_now: bool = False
    duplicate: bool = False
    timed_out: bool = False


@checkout.command(part_of="PaymentAttempt")
class ReconcileAttempt:
    attempt_id = Identifier(required=True)
    trigger = String(required=True, choices=Trigger)
    tx_hash = String(max_length=66)


@checkout.command_handler(part_of=PaymentAttempt)
class ReconcileAttemptHandler:
    @handle(ReconcileAttempt)
    def reconcile(self, command):
        repo = current_domain.repository_for(PaymentAttempt)
        attempt = repo.get(command.attempt_id)

        if attempt.is_terminal:
            logger.info(
                "reconcile_skipped_terminal",
                attempt_id=str(attempt.id),
                status=attempt.status,
                trigger=command.trigger,
            )
            return self._outcome(attempt, duplicate=True)

        if command.tx_hash:
            self._bind_tx_hash(repo, attempt, command.tx_hash)

        if attempt.status == AttemptStatus.CREATED.value and command.trigger != Trigger.REPOLL.value:
            attempt.mark_awaiting_confirmation()

        try:
            result = get_adapter(attempt.provider).confirm(attempt.ref())
        except ChainVerificationFailed as exc:
            logger.warning("chain_verification_failed", attempt_id=str(attempt.id), **exc.details)
            attempt.record_failure(exc.message)
            repo.add(attempt)
            return self._outcome(attempt)
        except ConfirmationTimeout:
            logger.warning("confirmation_timeout", attempt_id=str(attempt.id), trigger=command.trigger)
            attempt.schedule_poll()
            repo.add(attempt)
            return self._outcome(attempt, timed_out=True)

        succeeded_now = False
        if result.status == ProviderStatus.SUCCEEDED.value:
            attempt.record_success(result.settled_amount, result.provider_transaction_id)
            succeeded_now = True
        elif result.status == ProviderStatus.FAILED.value:
            attempt.record_failure(result.failure_reason or "Payment failed at provider")
        elif attempt.status == AttemptStatus.AWAITING_CONFIRMATION.value:
            attempt.schedule_poll()

        repo.add(attempt)
        logger.info(
            "attempt_reconciled",
            attempt_id=str(attempt.id),
            trigger=command.trigger,
            provider_status=result.status,
            status=attempt.status,
        )
        return self._outcome(attempt, succeeded_now=succeeded_now)

    def _bind_tx_hash(self, repo, attempt: PaymentAttempt, tx_hash: str) -> None:
        if attempt.provider != "onchain":
            raise ValidationError({"tx_hash": ["Only on-chain payments carry a transaction hash"]})
        if not is_tx_hash(tx_hash):
            raise ValidationError({"tx_hash": ["Transaction hash must be 0x followed by 64 hex characters"]})

        bound = repo.find_by_tx_hash(tx_hash)
        if bound is not None and str(bound.id) != str(attempt.id):
            raise DuplicateAttemptError(
                "Transaction hash is already bound to another payment",
                attempt_id=str(bound.id),
            )
        attempt.bind_tx_hash(tx_hash)

    def _outcome(self, attempt: PaymentAttempt, **flags) -> ReconcileOutcome:
        return ReconcileOutcome(
            attempt_id=str(attempt.id),
            cart_id=str(attempt.cart_id),
            status=attempt.status,
            **flags,
        )


class PaymentStatusReconciler:
    """Single entry point for every signal about a payment's outcome."""

    def __init__(self, finalizer=None) -> None:
        if finalizer is None:
            from checkout.order.finalization import CheckoutFinalizer

            finalizer = CheckoutFinalizer()
        self.finalizer = finalizer

    def report_client_completion(self, attempt_id: str, tx_hash: str | None = None) -> dict:
        return self._run(attempt_id, Trigger.CLIENT, tx_hash=tx_hash)

    def refresh(self, attempt_id: str) -> dict:
        return self._run(attempt_id, Trigger.REFRESH)

    def process_callback(self, provider: str, callback: CallbackResult) -> dict:
        """Reconcile the attempt a verified callback refers to.

        Raises ``ObjectNotFoundError`` for references this service never issued.
        """
        attempt = current_domain.repository_for(PaymentAttempt).find_by_reference(
            provider, callback.external_reference
        )
        if attempt is None:
            raise ObjectNotFoundError(
                {"external_reference": [f"No {provider} payment with reference {callback.external_reference}"]}
            )
        logger.info(
            "provider_callback_received",
            provider=provider,
            attempt_id=str(attempt.id),
            reported_status=callback.status,
        )
        return self._run(str(attempt.id), Trigger.CALLBACK, tx_hash=callback.tx_hash)

    def repoll_due(self, now: datetime | None = None, limit: int | None = None) -> int:
        """Re-check attempts whose next poll time has passed. Returns how many were polled."""
        now = now or datetime.now(UTC)
        due = current_domain.repository_for(PaymentAttempt).due_for_poll(
            now, limit or get_settings().repoll_batch_size
        )
        for attempt in due:
            try:
                self._run(str(attempt.id), Trigger.REPOLL)
            except CheckoutError as exc:
                logger.warning("repoll_failed", attempt_id=str(attempt.id), code=exc.code, error=exc.message)
        if due:
            logger.info("repoll_sweep_completed", polled=len(due))
        return len(due)

    def _run(self, attempt_id: str, trigger: Trigger, tx_hash: str | None = None) -> dict:
        attempt = current_domain.repository_for(PaymentAttempt).get(attempt_id)

        with attempt_locks.hold(attempt.idempotency_key):
            outcome = current_domain.process(
                ReconcileAttempt(attempt_id=attempt_id, trigger=trigger.value, tx_hash=tx_hash),
                asynchronous=False,
            )

        if outcome.timed_out and trigger != Trigger.REPOLL:
            raise ConfirmationTimeout(
                "Provider did not confirm in time; status will be re-checked",
                attempt_id=outcome.attempt_id,
            )

        checkout_result = None
        # an explicit refresh of a settled attempt re-runs finalization
        retry_finalize = trigger == Trigger.REFRESH and outcome.status == AttemptStatus.SUCCEEDED.value
        if outcome.succeeded_now or retry_finalize:
            checkout_result = self.finalizer.finalize(outcome.cart_id)

        return {
            "attempt_id": outcome.attempt_id,
            "status": outcome.status,
            "duplicate": outcome.duplicate,
            "checkout": checkout_result.to_dict() if checkout_result else None,
        }
