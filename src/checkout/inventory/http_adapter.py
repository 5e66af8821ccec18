"""HTTP adapter for the external inventory/catalog service."""

from decimal import Decimal

import httpx
import structlog
from protean.exceptions import ObjectNotFoundError

from checkout.errors import ProviderUnavailable, TransientProviderError
from checkout.inventory.port import DecrementResult, InventoryPort, ProductSnapshot
from checkout.utils.retry import provider_retrying

logger = structlog.get_logger(__name__)


def _idempotency_headers(idempotency_key: str | None) -> dict:
    return {"Idempotency-Key": idempotency_key} if idempotency_key else {}


class HttpInventory(InventoryPort):
    """Talks to the catalog service's REST API.

    ``POST /products/{id}/decrement`` must perform the check-and-decrement
    atomically on the server side and answer 409 on conflict.
    """

    def __init__(self, base_url: str, timeout: float, client: httpx.Client | None = None) -> None:
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        def _send() -> httpx.Response:
            try:
                response = self.client.request(method, url, **kwargs)
            except httpx.TransportError as exc:
                raise TransientProviderError(str(exc)) from exc
            if response.status_code >= 500:
                raise TransientProviderError(f"Inventory service error {response.status_code}")
            return response

        try:
            return provider_retrying()(_send)
        except TransientProviderError as exc:
            logger.error("inventory_service_unreachable", url=url, error=str(exc))
            raise ProviderUnavailable("Inventory service unavailable") from exc

    def get_product(self, product_id: str) -> ProductSnapshot:
        response = self._request("GET", f"/products/{product_id}")
        if response.status_code == 404:
            raise ObjectNotFoundError({"product_id": [f"Product {product_id} does not exist"]})
        response.raise_for_status()
        data = response.json()
        return ProductSnapshot(
            product_id=str(data["id"]),
            name=data.get("name", ""),
            price=Decimal(str(data["price"])),
            currency=str(data.get("currency", "USD")).upper(),
            is_nft=bool(data.get("is_nft", False)),
            availability=data.get("availability", "available"),
            stock=data.get("stock"),
        )

    def try_decrement(self, product_id: str, quantity: int, idempotency_key: str | None = None) -> DecrementResult:
        response = self._request(
            "POST",
            f"/products/{product_id}/decrement",
            json={"quantity": quantity},
            headers=_idempotency_headers(idempotency_key),
        )
        if response.status_code in (404, 409):
            reason = response.json().get("message", "Conflict") if response.content else "Conflict"
            return DecrementResult(ok=False, product_id=product_id, reason=reason)
        response.raise_for_status()
        return DecrementResult(ok=True, product_id=product_id, remaining=response.json().get("stock"))

    def refund_product(self, order_item_ref: str, amount: Decimal, idempotency_key: str | None = None) -> str:
        response = self._request(
            "POST",
            "/refunds",
            json={"order_item_ref": order_item_ref, "amount": str(amount)},
            headers=_idempotency_headers(idempotency_key),
        )
        response.raise_for_status()
        return str(response.json()["refund_ref"])
