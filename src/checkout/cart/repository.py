"""Repository for the Cart aggregate."""

from checkout.cart.cart import Cart
from checkout.domain import checkout


@checkout.repository(part_of=Cart)
class CartRepository:
    def for_owner(self, owner_id) -> Cart | None:
        """Return the owner's cart, if one exists."""
        carts = self._dao.query.filter(owner_id=str(owner_id)).all().items
        return carts[0] if carts else None
