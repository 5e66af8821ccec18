"""Read-only checkout status for a cart, reported per currency group."""

from protean.utils.globals import current_domain

from checkout.cart.cart import Cart
from checkout.cart.grouping import group_cart
from checkout.order.order import Order
from checkout.payment.attempt import AttemptStatus, PaymentAttempt


def _group_status(group, attempts: list[PaymentAttempt]) -> dict:
    mine = [a for a in attempts if a.currency == group.currency]
    latest = mine[-1] if mine else None

    if any(a.status == AttemptStatus.SUCCEEDED.value and a.amount_value == group.subtotal for a in mine):
        status = "paid"
    elif any(not a.is_terminal for a in mine):
        status = "pending"
    elif latest is not None and latest.status == AttemptStatus.FAILED.value:
        status = "failed"
    else:
        status = "unpaid"

    return {
        **group.to_dict(),
        "status": status,
        "attempt_id": str(latest.id) if latest else None,
        "provider": latest.provider if latest else None,
        "attempt_status": latest.status if latest else None,
        "manual_review": any(a.manual_review for a in mine),
    }


def checkout_status(cart_id: str) -> dict:
    """Per-group payment status of the cart's current checkout generation."""
    cart = current_domain.repository_for(Cart).get(cart_id)
    attempts = [
        a
        for a in current_domain.repository_for(PaymentAttempt).for_cart(cart.id)
        if a.cart_generation == cart.generation
    ]

    if not cart.items:
        previous = current_domain.repository_for(Order).for_generation(cart.id, cart.generation - 1)
        return {
            "cart_id": str(cart.id),
            "generation": cart.generation,
            "groups": [],
            "overall_status": "settled" if previous else "empty",
            "order_id": str(previous.id) if previous else None,
        }

    groups = [_group_status(group, attempts) for group in group_cart(cart)]
    paid = [g for g in groups if g["status"] == "paid"]
    if len(paid) == len(groups):
        overall = "paid"
    elif paid:
        overall = "partial"
    elif any(g["status"] == "pending" for g in groups):
        overall = "pending"
    else:
        overall = "open"

    return {
        "cart_id": str(cart.id),
        "generation": cart.generation,
        "groups": groups,
        "overall_status": overall,
        "order_id": None,
    }
