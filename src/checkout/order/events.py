"""Domain events for the Order aggregate."""

from protean.fields import DateTime, Identifier, Integer, String, Text

from checkout.domain import checkout


@checkout.event(part_of="Order")
class OrderCreated:
    """A fully settled cart was converted into an order."""

    __version__ = 1

    order_id = Identifier(required=True)
    cart_id = Identifier(required=True)
    owner_id = Identifier(required=True)
    cart_generation = Integer(required=True)
    totals = Text(required=True)  # JSON: {currency: amount}
    payment_attempt_ids = Text(required=True)  # JSON list
    created_at = DateTime(required=True)


@checkout.event(part_of="Order")
class OrderFlaggedForReview:
    __version__ = 1

    order_id = Identifier(required=True)
    reason = String(required=True)
    flagged_at = DateTime(required=True)
