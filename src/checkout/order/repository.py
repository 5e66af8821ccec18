"""Repository for the Order aggregate."""

from checkout.domain import checkout
from checkout.order.order import Order


@checkout.repository(part_of=Order)
class OrderRepository:
    def for_cart(self, cart_id) -> list[Order]:
        """All orders created from a cart, oldest first."""
        orders = self._dao.query.filter(cart_id=str(cart_id)).all().items
        return sorted(orders, key=lambda o: o.created_at)

    def for_generation(self, cart_id, generation: int) -> Order | None:
        orders = self._dao.query.filter(cart_id=str(cart_id), cart_generation=generation).all().items
        return orders[0] if orders else None

    def for_owner(self, owner_id) -> list[Order]:
        orders = self._dao.query.filter(owner_id=str(owner_id)).all().items
        return sorted(orders, key=lambda o: o.created_at)
