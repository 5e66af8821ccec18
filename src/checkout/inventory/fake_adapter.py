"""In-memory inventory for development and testing.

Behaves like the catalog service: check-and-decrement happens under a single
lock so two carts finalizing concurrently can never oversell a product.
Keyed calls are remembered, so a retried finalization replays the first
outcome instead of decrementing or recording a refund twice.
"""

import threading
from dataclasses import replace
from decimal import Decimal
from uuid import uuid4

from protean.exceptions import ObjectNotFoundError

from checkout.inventory.port import Availability, DecrementResult, InventoryPort, ProductSnapshot


class FakeInventory(InventoryPort):
    """Thread-safe in-memory product catalog with stock counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.products: dict[str, ProductSnapshot] = {}
        self.refunds: list[dict] = []
        self.calls: list[dict] = []
        self._decrements: dict[str, DecrementResult] = {}
        self._refund_refs: dict[str, str] = {}

    def add_product(
        self,
        product_id: str,
        price: Decimal | str | float,
        currency: str = "USD",
        name: str | None = None,
        is_nft: bool = False,
        stock: int | None = None,
        availability: str = Availability.AVAILABLE.value,
    ) -> ProductSnapshot:
        snapshot = ProductSnapshot(
            product_id=product_id,
            name=name or product_id,
            price=Decimal(str(price)),
            currency=currency.upper(),
            is_nft=is_nft,
            availability=availability,
            stock=1 if is_nft and stock is None else stock,
        )
        with self._lock:
            self.products[product_id] = snapshot
        return snapshot

    def update_product(self, product_id: str, **changes) -> ProductSnapshot:
        with self._lock:
            current = self.products[product_id]
            if "price" in changes:
                changes["price"] = Decimal(str(changes["price"]))
            updated = replace(current, **changes)
            self.products[product_id] = updated
        return updated

    def get_product(self, product_id: str) -> ProductSnapshot:
        with self._lock:
            snapshot = self.products.get(str(product_id))
        if snapshot is None:
            raise ObjectNotFoundError({"product_id": [f"Product {product_id} does not exist"]})
        return snapshot

    def try_decrement(self, product_id: str, quantity: int, idempotency_key: str | None = None) -> DecrementResult:
        with self._lock:
            self.calls.append(
                {
                    "method": "try_decrement",
                    "product_id": product_id,
                    "quantity": quantity,
                    "idempotency_key": idempotency_key,
                }
            )
            if idempotency_key and idempotency_key in self._decrements:
                return self._decrements[idempotency_key]

            result = self._decrement(str(product_id), quantity)
            if idempotency_key:
                self._decrements[idempotency_key] = result
            return result

    def _decrement(self, product_id: str, quantity: int) -> DecrementResult:
        current = self.products.get(product_id)
        if current is None or current.availability not in (
            Availability.AVAILABLE.value,
            Availability.LIMITED.value,
        ):
            return DecrementResult(ok=False, product_id=product_id, reason="Product unavailable")

        if current.stock is not None and current.stock < quantity:
            return DecrementResult(ok=False, product_id=product_id, reason="Insufficient stock")

        remaining = None if current.stock is None else current.stock - quantity
        availability = current.availability
        if current.is_nft or remaining == 0:
            availability = Availability.SOLD.value

        self.products[product_id] = replace(current, stock=remaining, availability=availability)
        return DecrementResult(ok=True, product_id=product_id, remaining=remaining)

    def refund_product(self, order_item_ref: str, amount: Decimal, idempotency_key: str | None = None) -> str:
        with self._lock:
            if idempotency_key and idempotency_key in self._refund_refs:
                return self._refund_refs[idempotency_key]

            refund_ref = f"fake_invref_{uuid4().hex[:12]}"
            self.refunds.append({"order_item_ref": order_item_ref, "amount": amount, "refund_ref": refund_ref})
            if idempotency_key:
                self._refund_refs[idempotency_key] = refund_ref
        return refund_ref
