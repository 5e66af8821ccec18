"""Domain events for the Cart aggregate."""

from protean.fields import Decimal, Identifier, Integer, String

from checkout.domain import checkout


@checkout.event(part_of="Cart")
class CartItemAdded:
    """A product was added to the cart."""

    __version__ = 1

    cart_id = Identifier(required=True)
    item_id = Identifier(required=True)
    product_id = Identifier(required=True)
    quantity = Integer(required=True)
    unit_price = Decimal(required=True)
    currency = String(required=True)


@checkout.event(part_of="Cart")
class CartQuantityUpdated:
    """The quantity of a cart item was changed."""

    __version__ = 1

    cart_id = Identifier(required=True)
    item_id = Identifier(required=True)
    previous_quantity = Integer(required=True)
    new_quantity = Integer(required=True)


@checkout.event(part_of="Cart")
class CartItemRemoved:
    """An item was removed from the cart."""

    __version__ = 1

    cart_id = Identifier(required=True)
    item_id = Identifier(required=True)


@checkout.event(part_of="Cart")
class CartItemRefreshed:
    """Price or availability of a cart item changed in the catalog."""

    __version__ = 1

    cart_id = Identifier(required=True)
    item_id = Identifier(required=True)
    unit_price = Decimal(required=True)
    availability = String(required=True)


@checkout.event(part_of="Cart")
class CartCleared:
    """All items were removed and a new checkout generation started."""

    __version__ = 1

    cart_id = Identifier(required=True)
    generation = Integer(required=True)
    reason = String(required=True)
