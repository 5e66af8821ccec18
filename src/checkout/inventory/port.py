"""Inventory/catalog port: abstract interface for the stock-owning service.

Checkout never owns stock. It reads authoritative product prices and
availability, asks for an atomic check-and-decrement when an order is
created, and reports refunded order lines back to the catalog.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum


class Availability(Enum):
    AVAILABLE = "available"
    LIMITED = "limited"
    SOLD = "sold"
    UNAVAILABLE = "unavailable"


PURCHASABLE = frozenset({Availability.AVAILABLE.value, Availability.LIMITED.value})


@dataclass(frozen=True)
class ProductSnapshot:
    """Authoritative product data at the time of the read."""

    product_id: str
    name: str
    price: Decimal
    currency: str
    is_nft: bool = False
    availability: str = Availability.AVAILABLE.value
    stock: int | None = None  # None means stock is not tracked

    @property
    def purchasable(self) -> bool:
        return self.availability in PURCHASABLE


@dataclass(frozen=True)
class DecrementResult:
    ok: bool
    product_id: str
    remaining: int | None = None
    reason: str | None = None


class InventoryPort(ABC):
    """Abstract interface for inventory adapters."""

    @abstractmethod
    def get_product(self, product_id: str) -> ProductSnapshot:
        """Return the current product snapshot.

        Raises ``protean.exceptions.ObjectNotFoundError`` for unknown products.
        """
        ...

    @abstractmethod
    def try_decrement(self, product_id: str, quantity: int, idempotency_key: str | None = None) -> DecrementResult:
        """Atomically check stock and decrement it.

        NFTs are marked sold. Returns ``ok=False`` on conflict rather than
        raising, so callers can compensate per line. A repeated
        ``idempotency_key`` returns the first outcome without touching stock.
        """
        ...

    @abstractmethod
    def refund_product(self, order_item_ref: str, amount: Decimal, idempotency_key: str | None = None) -> str:
        """Record a refunded order line with the catalog. Returns a refund ref.

        A repeated ``idempotency_key`` returns the ref of the first record.
        """
        ...
