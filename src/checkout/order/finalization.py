"""Checkout finalization: turn a fully paid cart into an Order.

Runs after every attempt success and on explicit refresh. Each run recomputes
the currency groups from the catalog, so a payment only counts when it was
made for the current cart generation and for exactly the current group
subtotal. Everything else that was paid gets refunded:

- payments that landed after the cart was cleared
- payments whose group changed or disappeared after paying
- overpayment beyond the attempt amount
- lines whose stock ran out between payment and order creation

Only a refund that still fails after retries raises the manual-review flag.
Runs are serialized per cart, so concurrent triggers create one Order at most.

Stock decrements and refunds leave the process before the unit of work
commits. Both are keyed on (cart, generation, line) or on what is refunded,
so a run that fails partway, for example on a catalog outage, can be rerun
without decrementing or refunding twice.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum

import structlog
from protean import handle
from protean.fields import Identifier
from protean.utils.globals import current_domain

from checkout.cart.cart import Cart
from checkout.cart.grouping import group_cart, line_total, refresh_cart
from checkout.domain import checkout
from checkout.inventory import get_inventory
from checkout.order.order import Order
from checkout.payment.attempt import AttemptStatus, PaymentAttempt
from checkout.payment.refunds import issue_refund, refund_in_full
from checkout.utils.locks import cart_locks

logger = structlog.get_logger(__name__)


class CheckoutState(Enum):
    OPEN = "open"
    PARTIAL = "partial"
    SETTLED = "settled"
    REFUNDED = "refunded"


@dataclass
class FinalizationResult:
    cart_id: str
    status: str
    order_id: str | None = None
    paid_currencies: list[str] = field(default_factory=list)
    unpaid_currencies: list[str] = field(default_factory=list)
    refunded_item_ids: list[str] = field(default_factory=list)
    manual_review: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@checkout.command(part_of="Order")
class FinalizeCheckout:
    cart_id = Identifier(required=True)


@checkout.command_handler(part_of=Order)
class FinalizeCheckoutHandler:
    @handle(FinalizeCheckout)
    def finalize_checkout(self, command):
        cart_repo = current_domain.repository_for(Cart)
        attempt_repo = current_domain.repository_for(PaymentAttempt)
        order_repo = current_domain.repository_for(Order)

        cart = cart_repo.get(command.cart_id)
        attempts = attempt_repo.for_cart(cart.id)
        settled_ids = {aid for order in order_repo.for_cart(cart.id) for aid in order.attempt_ids}
        review_reasons: list[str] = []

        def refund_stale(attempt: PaymentAttempt, reason: str) -> None:
            logger.warning("refunding_stale_payment", attempt_id=str(attempt.id), reason=reason)
            if not refund_in_full(attempt, reason):
                review_reasons.append(f"Refund for attempt {attempt.id} failed")
            attempt_repo.add(attempt)

        unsettled = [
            a for a in attempts if a.status == AttemptStatus.SUCCEEDED.value and str(a.id) not in settled_ids
        ]
        for attempt in unsettled:
            if attempt.cart_generation < cart.generation:
                refund_stale(attempt, "Cart was cleared before the payment settled")

        cart_changed = refresh_cart(cart, get_inventory()) if cart.items else False
        groups = group_cart(cart) if cart.items else []
        groups_by_currency = {g.currency: g for g in groups}

        paid: dict[str, PaymentAttempt] = {}
        current = [a for a in unsettled if a.cart_generation == cart.generation]
        for attempt in sorted(current, key=lambda a: a.updated_at, reverse=True):
            group = groups_by_currency.get(attempt.currency)
            if group is None or attempt.amount_value != group.subtotal or attempt.currency in paid:
                refund_stale(attempt, "Cart changed after payment")
            else:
                paid[attempt.currency] = attempt

        if not groups:
            if cart_changed:
                cart_repo.add(cart)
            previous = order_repo.for_generation(cart.id, cart.generation - 1)
            if previous is not None:
                return FinalizationResult(
                    cart_id=str(cart.id), status=CheckoutState.SETTLED.value, order_id=str(previous.id)
                )
            return FinalizationResult(cart_id=str(cart.id), status=CheckoutState.OPEN.value)

        unpaid = [g.currency for g in groups if g.currency not in paid]
        if unpaid:
            if cart_changed:
                cart_repo.add(cart)
            logger.info("checkout_partial", cart_id=str(cart.id), paid=list(paid), unpaid=unpaid)
            return FinalizationResult(
                cart_id=str(cart.id),
                status=CheckoutState.PARTIAL.value if paid else CheckoutState.OPEN.value,
                paid_currencies=list(paid),
                unpaid_currencies=unpaid,
                manual_review=bool(review_reasons),
            )

        for attempt in paid.values():
            excess = attempt.settled_value - attempt.amount_value
            if excess > 0 and not issue_refund(attempt, excess, "Overpayment"):
                review_reasons.append(f"Overpayment refund for attempt {attempt.id} failed")

        inventory = get_inventory()
        lines, refunded_item_ids = [], []
        for group in groups:
            attempt = paid[group.currency]
            for item in group.items:
                decrement = inventory.try_decrement(
                    str(item.product_id),
                    item.quantity,
                    idempotency_key=f"{cart.id}:{cart.generation}:{item.id}",
                )
                if decrement.ok:
                    lines.append(
                        {
                            "cart_item_id": str(item.id),
                            "product_id": str(item.product_id),
                            "name": item.name,
                            "currency": item.currency,
                            "unit_price": item.unit_price,
                            "quantity": item.quantity,
                            "is_nft": item.is_nft,
                        }
                    )
                    continue

                logger.warning(
                    "inventory_conflict",
                    cart_id=str(cart.id),
                    product_id=str(item.product_id),
                    reason=decrement.reason,
                )
                refunded_item_ids.append(str(item.id))
                refunded = issue_refund(
                    attempt,
                    line_total(item),
                    f"Item no longer available: {item.name}",
                    order_line_ref=str(item.id),
                )
                if not refunded:
                    review_reasons.append(f"Refund for {item.name} failed")

        for attempt in paid.values():
            attempt_repo.add(attempt)

        order = None
        if lines:
            order = Order.create(
                cart_id=str(cart.id),
                owner_id=str(cart.owner_id),
                cart_generation=cart.generation,
                lines=lines,
                attempt_ids=[str(a.id) for a in paid.values()],
            )
            for reason in review_reasons:
                order.flag_for_review(reason)
            order_repo.add(order)
            cart.clear(reason="Checkout completed")
        else:
            cart.clear(reason="All items became unavailable")
        cart_repo.add(cart)

        result = FinalizationResult(
            cart_id=str(cart.id),
            status=CheckoutState.SETTLED.value if order else CheckoutState.REFUNDED.value,
            order_id=str(order.id) if order else None,
            paid_currencies=list(paid),
            refunded_item_ids=refunded_item_ids,
            manual_review=bool(review_reasons),
        )
        logger.info("checkout_finalized", **result.to_dict())
        return result


class CheckoutFinalizer:
    """Per-cart serialized entry point for finalization."""

    def finalize(self, cart_id: str) -> FinalizationResult:
        with cart_locks.hold(str(cart_id)):
            return current_domain.process(FinalizeCheckout(cart_id=str(cart_id)), asynchronous=False)
