"""Payment intent creation: command, handler and factory.

One attempt per currency group. Creation is idempotent on a key derived from
(cart, currency, provider, nonce): replays return the stored attempt without
calling the provider again. The provider call runs inside the unit of work,
so a rejection or timeout leaves nothing persisted.
"""

import hashlib

import structlog
from protean import handle
from protean.exceptions import ValidationError
from protean.fields import Identifier, String
from protean.utils.globals import current_domain

from checkout.cart.cart import Cart
from checkout.cart.grouping import SUPPORTED_CURRENCIES, Provider, find_group, group_cart, refresh_cart
from checkout.domain import checkout
from checkout.errors import DuplicateAttemptError, IntentCreationFailed, InventoryConflict
from checkout.gateway import get_adapter
from checkout.inventory import get_inventory
from checkout.payment.attempt import AttemptStatus, PaymentAttempt
from checkout.utils.locks import group_locks

logger = structlog.get_logger(__name__)

_REPLAYABLE = frozenset(
    {
        AttemptStatus.CREATED.value,
        AttemptStatus.AWAITING_CONFIRMATION.value,
        AttemptStatus.SUCCEEDED.value,
    }
)


def derive_idempotency_key(cart_id: str, currency: str, provider: str, nonce: str) -> str:
    """Deterministic key for one checkout dialog session of one group."""
    raw = "|".join((str(cart_id), currency.upper(), provider, str(nonce)))
    return hashlib.sha256(raw.encode()).hexdigest()


@checkout.command(part_of="PaymentAttempt")
class CreatePaymentIntent:
    cart_id = Identifier(required=True)
    currency = String(required=True, max_length=10)
    provider = String(required=True, choices=Provider)
    idempotency_key = String(required=True, max_length=255)


@checkout.command_handler(part_of=PaymentAttempt)
class CreatePaymentIntentHandler:
    @handle(CreatePaymentIntent)
    def create_payment_intent(self, command):
        repo = current_domain.repository_for(PaymentAttempt)

        existing = repo.find_by_idempotency_key(command.idempotency_key)
        if existing is not None:
            return self._replay(existing, command)

        cart = current_domain.repository_for(Cart).get(command.cart_id)
        refresh_cart(cart, get_inventory())
        group = find_group(group_cart(cart), command.currency)

        if group is None:
            raise ValidationError({"currency": [f"Cart has no items priced in {command.currency}"]})
        if command.provider not in group.rails:
            raise ValidationError(
                {"provider": [f"{command.provider} cannot pay the {group.currency} group, use one of {list(group.rails)}"]}
            )
        if group.currency not in SUPPORTED_CURRENCIES[command.provider]:
            raise ValidationError({"currency": [f"{command.provider} does not support {group.currency}"]})
        if group.unavailable_items:
            raise InventoryConflict(
                f"Some {group.currency} items are no longer available",
                item_ids=[str(item.id) for item in group.unavailable_items],
            )
        if group.subtotal <= 0:
            raise IntentCreationFailed("Group subtotal must be positive", currency=group.currency)

        for attempt in repo.for_cart(cart.id):
            if attempt.cart_generation != cart.generation or attempt.currency != group.currency:
                continue
            if not attempt.is_terminal:
                raise DuplicateAttemptError(
                    f"A payment for the {group.currency} group is already in progress",
                    attempt_id=str(attempt.id),
                )
            if attempt.status == AttemptStatus.SUCCEEDED.value and attempt.amount_value == group.subtotal:
                raise DuplicateAttemptError(
                    f"The {group.currency} group is already paid",
                    attempt_id=str(attempt.id),
                )

        result = get_adapter(command.provider).initiate(
            amount=group.subtotal,
            currency=group.currency,
            metadata={
                "cart_id": str(cart.id),
                "owner_id": str(cart.owner_id),
                "cart_generation": str(cart.generation),
                "currency": group.currency,
            },
            idempotency_key=command.idempotency_key,
        )

        attempt = PaymentAttempt.create(
            cart_id=str(cart.id),
            cart_generation=cart.generation,
            currency=group.currency,
            provider=command.provider,
            idempotency_key=command.idempotency_key,
            amount=group.subtotal,
            external_reference=result.external_reference,
            client_payload=result.client_payload,
        )
        repo.add(attempt)

        logger.info(
            "payment_intent_created",
            attempt_id=str(attempt.id),
            cart_id=str(cart.id),
            currency=group.currency,
            provider=command.provider,
            amount=str(group.subtotal),
        )
        return attempt

    def _replay(self, attempt: PaymentAttempt, command) -> PaymentAttempt:
        if (
            str(attempt.cart_id) != str(command.cart_id)
            or attempt.currency != command.currency
            or attempt.provider != command.provider
        ):
            raise DuplicateAttemptError(
                "Idempotency key was already used for a different payment",
                attempt_id=str(attempt.id),
            )
        if attempt.status not in _REPLAYABLE:
            raise DuplicateAttemptError(
                f"Attempt for this key ended {attempt.status}; start a new checkout session",
                attempt_id=str(attempt.id),
            )

        logger.info("payment_intent_reused", attempt_id=str(attempt.id))
        return attempt


class PaymentIntentFactory:
    """Entry point for intent creation, serialized per (cart, currency)."""

    def create_or_reuse(
        self,
        cart_id: str,
        currency: str,
        provider: str,
        idempotency_key: str | None = None,
        nonce: str | None = None,
    ) -> PaymentAttempt:
        currency = (currency or "").upper()
        if not idempotency_key:
            if not nonce:
                raise ValidationError({"idempotency_key": ["Either idempotency_key or nonce is required"]})
            idempotency_key = derive_idempotency_key(cart_id, currency, provider, nonce)

        with group_locks.hold(f"{cart_id}:{currency}"):
            return current_domain.process(
                CreatePaymentIntent(
                    cart_id=cart_id,
                    currency=currency,
                    provider=provider,
                    idempotency_key=idempotency_key,
                ),
                asynchronous=False,
            )
