"""Cart item management: commands and handler.

A cart is created on the first add-to-cart for an owner. Product data always
comes from the catalog, never from the client.
"""

from protean import handle
from protean.fields import Identifier, Integer, String
from protean.utils.globals import current_domain

from checkout.cart.cart import Cart
from checkout.domain import checkout
from checkout.inventory import get_inventory
from checkout.utils.locks import cart_locks


@checkout.command(part_of="Cart")
class AddToCart:
    owner_id = Identifier(required=True)
    product_id = Identifier(required=True)
    quantity = Integer(default=1, min_value=1)


@checkout.command(part_of="Cart")
class UpdateCartQuantity:
    cart_id = Identifier(required=True)
    item_id = Identifier(required=True)
    new_quantity = Integer(required=True, min_value=1)


@checkout.command(part_of="Cart")
class RemoveFromCart:
    cart_id = Identifier(required=True)
    item_id = Identifier(required=True)


@checkout.command(part_of="Cart")
class ClearCart:
    cart_id = Identifier(required=True)
    reason = String(max_length=255, default="Cleared by customer")


@checkout.command_handler(part_of=Cart)
class ManageCartItemsHandler:
    @handle(AddToCart)
    def add_to_cart(self, command):
        product = get_inventory().get_product(command.product_id)

        repo = current_domain.repository_for(Cart)
        cart = repo.for_owner(command.owner_id)
        if cart is None:
            cart = Cart.create(owner_id=command.owner_id)

        item_id = cart.add_item(product, quantity=command.quantity)
        repo.add(cart)
        return {"cart_id": str(cart.id), "item_id": item_id}

    @handle(UpdateCartQuantity)
    def update_cart_quantity(self, command):
        repo = current_domain.repository_for(Cart)
        cart = repo.get(command.cart_id)
        cart.update_item_quantity(
            item_id=command.item_id,
            new_quantity=command.new_quantity,
        )
        repo.add(cart)

    @handle(RemoveFromCart)
    def remove_from_cart(self, command):
        repo = current_domain.repository_for(Cart)
        cart = repo.get(command.cart_id)
        cart.remove_item(item_id=command.item_id)
        repo.add(cart)

    @handle(ClearCart)
    def clear_cart(self, command):
        repo = current_domain.repository_for(Cart)
        cart = repo.get(command.cart_id)
        cart.clear(reason=command.reason)
        repo.add(cart)
        return cart.generation


def process_cart_command(command, cart_id: str | None = None):
    """Run a cart command while holding the cart's finalization lock.

    A cart must not change while a finalization run is reading it. Adding the
    very first item has no cart yet, so it is keyed on the owner instead.
    """
    if cart_id is None:
        cart = current_domain.repository_for(Cart).for_owner(command.owner_id)
        key = str(cart.id) if cart else f"owner:{command.owner_id}"
    else:
        key = str(cart_id)

    with cart_locks.hold(key):
        return current_domain.process(command, asynchronous=False)
