"""Cart aggregate (CQRS): one open cart per owner, cleared after checkout.

Items carry a snapshot of price, currency and availability that is refreshed
from the catalog on every checkout action. ``generation`` identifies the
current checkout session: it is bumped every time the cart is cleared, so
payments started against an earlier generation can be recognised later.
"""

from datetime import UTC, datetime

from protean import invariant
from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Decimal, HasMany, Identifier, Integer, String

from checkout.cart.events import (
    CartCleared,
    CartItemAdded,
    CartItemRefreshed,
    CartItemRemoved,
    CartQuantityUpdated,
)
from checkout.domain import checkout
from checkout.inventory.port import Availability, ProductSnapshot


@checkout.entity(part_of="Cart")
class CartItem:
    product_id = Identifier(required=True)
    name = String(max_length=255)
    unit_price = Decimal(required=True, min_value=0)
    currency = String(max_length=10, required=True)
    quantity = Integer(required=True, min_value=1)
    is_nft = Boolean(default=False)
    availability = String(choices=Availability, default=Availability.AVAILABLE.value)
    added_at = DateTime()


@checkout.aggregate
class Cart:
    owner_id = Identifier(required=True)
    items = HasMany(CartItem)
    generation = Integer(default=1, min_value=1)
    created_at = DateTime()
    last_updated = DateTime()

    @invariant.post
    def nft_items_have_quantity_one(self):
        for item in self.items or []:
            if item.is_nft and item.quantity != 1:
                raise ValidationError({"quantity": ["NFT items always have quantity 1"]})

    # -------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------
    @classmethod
    def create(cls, owner_id):
        now = datetime.now(UTC)
        return cls(owner_id=owner_id, generation=1, created_at=now, last_updated=now)

    def _find_item(self, item_id):
        item = next((i for i in self.items if str(i.id) == str(item_id)), None)
        if item is None:
            raise ValidationError({"item_id": ["Item not found in cart"]})
        return item

    # -------------------------------------------------------------------
    # Item management
    # -------------------------------------------------------------------
    def add_item(self, product: ProductSnapshot, quantity: int = 1):
        """Add a product to the cart (or increase quantity if already present)."""
        if not product.purchasable:
            raise ValidationError({"product_id": ["Product is not available for purchase"]})
        if quantity < 1:
            raise ValidationError({"quantity": ["Quantity must be at least 1"]})

        existing = next((i for i in self.items if str(i.product_id) == str(product.product_id)), None)
        now = datetime.now(UTC)

        if existing:
            if existing.is_nft:
                raise ValidationError({"product_id": ["NFT items cannot be added twice"]})
            existing.quantity += quantity
            item = existing
        else:
            item = CartItem(
                product_id=product.product_id,
                name=product.name,
                unit_price=product.price,
                currency=product.currency.upper(),
                quantity=1 if product.is_nft else quantity,
                is_nft=product.is_nft,
                availability=product.availability,
                added_at=now,
            )
            self.add_items(item)

        self.last_updated = now
        self.raise_(
            CartItemAdded(
                cart_id=str(self.id),
                item_id=str(item.id),
                product_id=str(product.product_id),
                quantity=item.quantity,
                unit_price=item.unit_price,
                currency=item.currency,
            )
        )
        return str(item.id)

    def update_item_quantity(self, item_id, new_quantity: int):
        item = self._find_item(item_id)
        if item.is_nft:
            raise ValidationError({"quantity": ["NFT quantity is fixed at 1"]})

        previous_quantity = item.quantity
        item.quantity = new_quantity
        self.last_updated = datetime.now(UTC)

        self.raise_(
            CartQuantityUpdated(
                cart_id=str(self.id),
                item_id=str(item_id),
                previous_quantity=previous_quantity,
                new_quantity=new_quantity,
            )
        )

    def remove_item(self, item_id):
        item = self._find_item(item_id)
        self.remove_items(item)
        self.last_updated = datetime.now(UTC)

        self.raise_(CartItemRemoved(cart_id=str(self.id), item_id=str(item_id)))

    def refresh_item(self, item_id, product: ProductSnapshot) -> bool:
        """Bring an item's price and availability in line with the catalog.

        Returns True when anything changed.
        """
        item = self._find_item(item_id)
        price = product.price
        if item.unit_price == price and item.availability == product.availability:
            return False

        item.unit_price = price
        item.availability = product.availability
        self.last_updated = datetime.now(UTC)

        self.raise_(
            CartItemRefreshed(
                cart_id=str(self.id),
                item_id=str(item_id),
                unit_price=price,
                availability=product.availability,
            )
        )
        return True

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def clear(self, reason: str = "Cleared by customer"):
        """Remove every item and start a new checkout generation."""
        for item in list(self.items):
            self.remove_items(item)

        self.generation = (self.generation or 1) + 1
        self.last_updated = datetime.now(UTC)

        self.raise_(
            CartCleared(
                cart_id=str(self.id),
                generation=self.generation,
                reason=reason,
            )
        )
