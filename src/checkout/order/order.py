"""Order aggregate: frozen record of a settled checkout.

Created once by the CheckoutFinalizer and never edited afterwards, except that
compensation bookkeeping may raise the manual-review flag.
"""

import json
from datetime import UTC, datetime
from decimal import Decimal

from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Decimal as DecimalField, HasMany, Identifier, Integer, String, Text

from checkout.domain import checkout
from checkout.order.events import OrderCreated, OrderFlaggedForReview


@checkout.entity(part_of="Order")
class OrderLine:
    cart_item_id = Identifier()
    product_id = Identifier(required=True)
    name = String(max_length=255)
    currency = String(max_length=10, required=True)
    unit_price = DecimalField(required=True, min_value=0)
    quantity = Integer(required=True, min_value=1)
    is_nft = Boolean(default=False)
    line_total = DecimalField(required=True, min_value=0)


@checkout.aggregate
class Order:
    cart_id = Identifier(required=True)
    owner_id = Identifier(required=True)
    cart_generation = Integer(required=True)
    lines = HasMany(OrderLine)
    totals = Text()  # JSON: {currency: amount}
    payment_attempt_ids = Text()  # JSON list of settling attempt ids
    manual_review = Boolean(default=False)
    review_reason = String(max_length=1000)
    created_at = DateTime()

    @classmethod
    def create(cls, cart_id, owner_id, cart_generation, lines: list[dict], attempt_ids: list[str]):
        if not lines:
            raise ValidationError({"lines": ["An order needs at least one line"]})

        totals: dict[str, Decimal] = {}
        for line in lines:
            amount = Decimal(str(line["unit_price"])) * line["quantity"]
            totals[line["currency"]] = totals.get(line["currency"], Decimal("0")) + amount

        now = datetime.now(UTC)
        order = cls(
            cart_id=cart_id,
            owner_id=owner_id,
            cart_generation=cart_generation,
            totals=json.dumps({currency: str(total) for currency, total in totals.items()}),
            payment_attempt_ids=json.dumps(attempt_ids),
            created_at=now,
        )
        for line in lines:
            order.add_lines(
                OrderLine(
                    line_total=Decimal(str(line["unit_price"])) * line["quantity"],
                    **line,
                )
            )

        order.raise_(
            OrderCreated(
                order_id=str(order.id),
                cart_id=str(cart_id),
                owner_id=str(owner_id),
                cart_generation=cart_generation,
                totals=order.totals,
                payment_attempt_ids=order.payment_attempt_ids,
                created_at=now,
            )
        )
        return order

    @property
    def attempt_ids(self) -> list[str]:
        return json.loads(self.payment_attempt_ids) if self.payment_attempt_ids else []

    @property
    def total_by_currency(self) -> dict[str, str]:
        return json.loads(self.totals) if self.totals else {}

    def flag_for_review(self, reason: str) -> None:
        now = datetime.now(UTC)
        self.manual_review = True
        self.review_reason = f"{self.review_reason}; {reason}" if self.review_reason else reason
        self.raise_(OrderFlaggedForReview(order_id=str(self.id), reason=reason, flagged_at=now))
