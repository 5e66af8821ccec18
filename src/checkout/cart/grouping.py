"""Cart aggregation: partition a cart into independently payable groups.

Each currency in the cart becomes one CurrencyGroup, paid as a single
provider transaction. Groups are derived on every checkout action and never
stored, so a cart edit is always reflected in the next intent or finalization.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

import structlog
from protean.exceptions import ObjectNotFoundError

from checkout.cart.cart import Cart, CartItem
from checkout.errors import EmptyCartError
from checkout.inventory.port import PURCHASABLE, Availability, InventoryPort

logger = structlog.get_logger(__name__)


class Provider(Enum):
    CARD = "card"
    MOBILE_MONEY = "mobile_money"
    ONCHAIN = "onchain"


SUPPORTED_CURRENCIES = {
    Provider.CARD.value: frozenset({"USD", "EUR", "GBP", "CAD", "AUD"}),
    Provider.MOBILE_MONEY.value: frozenset({"RWF", "USD", "EUR", "KES", "UGX", "TZS", "SOS"}),
    Provider.ONCHAIN.value: frozenset({"ETH", "MATIC", "USDC", "USDT"}),
}

FIAT_RAILS = (Provider.CARD.value, Provider.MOBILE_MONEY.value)
NFT_RAILS = (Provider.ONCHAIN.value,)


def line_total(item: CartItem) -> Decimal:
    return Decimal(str(item.unit_price)) * item.quantity


@dataclass(frozen=True)
class CurrencyGroup:
    currency: str
    items: tuple = field(default_factory=tuple)
    subtotal: Decimal = Decimal("0")
    rails: tuple = FIAT_RAILS
    unavailable_items: tuple = field(default_factory=tuple)

    @property
    def has_nft(self) -> bool:
        return any(item.is_nft for item in self.items)

    def accepts(self, provider: str) -> bool:
        """True if the provider is an eligible rail and handles this currency."""
        return provider in self.rails and self.currency in SUPPORTED_CURRENCIES.get(provider, ())

    def to_dict(self) -> dict:
        return {
            "currency": self.currency,
            "subtotal": str(self.subtotal),
            "rails": list(self.rails),
            "item_ids": [str(item.id) for item in self.items],
            "unavailable_item_ids": [str(item.id) for item in self.unavailable_items],
        }


def group_cart(cart: Cart) -> list[CurrencyGroup]:
    """Partition cart items by currency, in order of first appearance.

    Raises ``EmptyCartError`` when the cart holds no items.
    """
    if not cart.items:
        raise EmptyCartError("Cart has no items", cart_id=str(cart.id))

    buckets: dict[str, list[CartItem]] = {}
    for item in cart.items:
        buckets.setdefault(item.currency.upper(), []).append(item)

    groups = []
    for currency, items in buckets.items():
        has_nft = any(item.is_nft for item in items)
        groups.append(
            CurrencyGroup(
                currency=currency,
                items=tuple(items),
                subtotal=sum((line_total(item) for item in items), Decimal("0")),
                rails=NFT_RAILS if has_nft else FIAT_RAILS,
                unavailable_items=tuple(i for i in items if i.availability not in PURCHASABLE),
            )
        )
    return groups


def find_group(groups: list[CurrencyGroup], currency: str) -> CurrencyGroup | None:
    currency = currency.upper()
    return next((g for g in groups if g.currency == currency), None)


def refresh_cart(cart: Cart, inventory: InventoryPort) -> bool:
    """Refresh price and availability of every item from the catalog.

    Products the catalog no longer knows are marked unavailable. Returns True
    when any item changed, in which case the caller should persist the cart.
    """
    changed = False
    for item in list(cart.items):
        try:
            product = inventory.get_product(str(item.product_id))
        except ObjectNotFoundError:
            if item.availability != Availability.UNAVAILABLE.value:
                item.availability = Availability.UNAVAILABLE.value
                changed = True
            continue

        if cart.refresh_item(item.id, product):
            changed = True

    if changed:
        logger.info("cart_refreshed_from_catalog", cart_id=str(cart.id))
    return changed
