"""FastAPI routes for the Checkout domain: carts, checkout, orders and provider webhooks.

Handlers that reach a provider, the catalog or a keyed lock are plain ``def``
so FastAPI runs them in its threadpool. A slow provider then holds one worker
thread instead of the event loop.
"""

import os

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from protean.exceptions import ObjectNotFoundError
from protean.utils.globals import current_domain

from checkout.api.schemas import (
    AddToCartRequest,
    CartItemAddedResponse,
    CartResponse,
    CheckoutStatusResponse,
    ConfigureProviderRequest,
    ConfirmRequest,
    CreateIntentRequest,
    IntentResponse,
    OrderLineResponse,
    OrderListResponse,
    OrderResponse,
    ProviderConfigResponse,
    ReconcileResponse,
    UpdateQuantityRequest,
    WebhookAckResponse,
)
from checkout.cart.cart import Cart
from checkout.cart.grouping import group_cart
from checkout.cart.items import AddToCart, ClearCart, RemoveFromCart, UpdateCartQuantity, process_cart_command
from checkout.gateway import RAILS, get_adapter
from checkout.gateway.fake_adapter import FakeProviderAdapter
from checkout.order.order import Order
from checkout.order.status import checkout_status
from checkout.payment.intents import PaymentIntentFactory
from checkout.payment.reconciliation import PaymentStatusReconciler

# ---------------------------------------------------------------------------
# Cart Router
# ---------------------------------------------------------------------------
cart_router = APIRouter(prefix="/carts", tags=["carts"])


@cart_router.post("/items", status_code=201, response_model=CartItemAddedResponse)
def add_to_cart(body: AddToCartRequest) -> CartItemAddedResponse:
    """Add a product to the owner's cart, creating the cart on first use."""
    command = AddToCart(owner_id=body.owner_id, product_id=body.product_id, quantity=body.quantity)
    result = process_cart_command(command)
    return CartItemAddedResponse(**result)


@cart_router.get("/{cart_id}", response_model=CartResponse)
def get_cart(cart_id: str) -> CartResponse:
    cart = current_domain.repository_for(Cart).get(cart_id)
    return CartResponse(
        cart_id=str(cart.id),
        owner_id=str(cart.owner_id),
        generation=cart.generation,
        items=[
            {
                "item_id": str(item.id),
                "product_id": str(item.product_id),
                "name": item.name,
                "unit_price": str(item.unit_price),
                "currency": item.currency,
                "quantity": item.quantity,
                "is_nft": item.is_nft,
                "availability": item.availability,
            }
            for item in cart.items
        ],
        groups=[group.to_dict() for group in group_cart(cart)] if cart.items else [],
    )


@cart_router.put("/{cart_id}/items/{item_id}", status_code=204)
def update_quantity(cart_id: str, item_id: str, body: UpdateQuantityRequest) -> None:
    command = UpdateCartQuantity(cart_id=cart_id, item_id=item_id, new_quantity=body.quantity)
    process_cart_command(command, cart_id=cart_id)


@cart_router.delete("/{cart_id}/items/{item_id}", status_code=204)
def remove_item(cart_id: str, item_id: str) -> None:
    process_cart_command(RemoveFromCart(cart_id=cart_id, item_id=item_id), cart_id=cart_id)


@cart_router.delete("/{cart_id}", status_code=204)
def clear_cart(cart_id: str) -> None:
    """Empty the cart. In-flight payments are refunded if they settle later."""
    process_cart_command(ClearCart(cart_id=cart_id), cart_id=cart_id)


# ---------------------------------------------------------------------------
# Checkout Router
# ---------------------------------------------------------------------------
checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])


@checkout_router.post("/intents", status_code=201, response_model=IntentResponse)
def create_intent(body: CreateIntentRequest) -> IntentResponse:
    """Create (or reuse) the payment attempt for one currency group."""
    attempt = PaymentIntentFactory().create_or_reuse(
        cart_id=body.cart_id,
        currency=body.currency,
        provider=body.provider,
        idempotency_key=body.idempotency_key,
        nonce=body.nonce,
    )
    return IntentResponse(
        attempt_id=str(attempt.id),
        attempt_ref=attempt.external_reference,
        status=attempt.status,
        provider=attempt.provider,
        currency=attempt.currency,
        amount=str(attempt.amount_value),
        provider_client_payload=attempt.payload,
    )


@checkout_router.post("/confirm", response_model=ReconcileResponse)
def confirm_payment(body: ConfirmRequest) -> ReconcileResponse:
    """Client reports that it finished the provider flow. Treated as a hint."""
    result = PaymentStatusReconciler().report_client_completion(body.attempt_id, tx_hash=body.tx_hash)
    return ReconcileResponse(**result)


@checkout_router.post("/attempts/{attempt_id}/refresh", response_model=ReconcileResponse)
def refresh_attempt(attempt_id: str) -> ReconcileResponse:
    result = PaymentStatusReconciler().refresh(attempt_id)
    return ReconcileResponse(**result)


@checkout_router.get("/status/{cart_id}", response_model=CheckoutStatusResponse)
def get_checkout_status(cart_id: str) -> CheckoutStatusResponse:
    return CheckoutStatusResponse(**checkout_status(cart_id))


def _process_webhook(provider: str, raw_body: bytes, headers: dict) -> dict:
    callback = get_adapter(provider).accept_callback(raw_body, headers)
    return PaymentStatusReconciler().process_callback(provider, callback)


@checkout_router.post("/webhooks/{provider}", response_model=WebhookAckResponse)
async def provider_webhook(provider: str, request: Request) -> WebhookAckResponse:
    """Receive a provider callback.

    The payload only identifies the attempt; its status is re-read from the
    provider before anything changes.
    """
    if provider not in RAILS:
        raise HTTPException(status_code=404, detail=f"Unknown provider {provider}")

    raw_body = await request.body()
    try:
        result = await run_in_threadpool(_process_webhook, provider, raw_body, dict(request.headers))
    except ObjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Unknown payment reference") from exc

    return WebhookAckResponse(
        attempt_id=result["attempt_id"],
        status=result["status"],
        duplicate=result["duplicate"],
    )


@checkout_router.post("/providers/{provider}/configure", response_model=ProviderConfigResponse)
def configure_provider(provider: str, body: ConfigureProviderRequest) -> ProviderConfigResponse:
    """Configure a fake provider's behavior (non-production only).

    This endpoint is only available when PROTEAN_ENV is not 'production'.
    """
    if os.environ.get("PROTEAN_ENV") == "production":
        raise HTTPException(status_code=403, detail="Provider configuration not available in production")
    if provider not in RAILS:
        raise HTTPException(status_code=404, detail=f"Unknown provider {provider}")

    adapter = get_adapter(provider)
    if not isinstance(adapter, FakeProviderAdapter):
        raise HTTPException(status_code=400, detail="Provider configuration only available for fake adapters")

    adapter.configure(
        reject_reason=body.reject_reason,
        unavailable=body.unavailable,
        auto_settle=body.auto_settle,
        refund_failures=body.refund_failures,
        refund_reject_reason=body.refund_reject_reason,
    )
    return ProviderConfigResponse(
        provider=provider,
        adapter=type(adapter).__name__,
        reject_reason=adapter.reject_reason,
        unavailable=adapter.unavailable,
        auto_settle=adapter.auto_settle,
    )


# ---------------------------------------------------------------------------
# Order Router
# ---------------------------------------------------------------------------
order_router = APIRouter(prefix="/orders", tags=["orders"])


def _order_response(order: Order) -> OrderResponse:
    return OrderResponse(
        order_id=str(order.id),
        cart_id=str(order.cart_id),
        owner_id=str(order.owner_id),
        cart_generation=order.cart_generation,
        lines=[
            OrderLineResponse(
                line_id=str(line.id),
                cart_item_id=str(line.cart_item_id) if line.cart_item_id else None,
                product_id=str(line.product_id),
                name=line.name,
                currency=line.currency,
                unit_price=str(line.unit_price),
                quantity=line.quantity,
                line_total=str(line.line_total),
                is_nft=line.is_nft,
            )
            for line in order.lines
        ],
        totals=order.total_by_currency,
        payment_attempt_ids=order.attempt_ids,
        manual_review=order.manual_review,
        review_reason=order.review_reason,
        created_at=str(order.created_at) if order.created_at else None,
    )


@order_router.get("", response_model=OrderListResponse)
def list_orders(
    owner_id: str | None = Query(default=None),
    cart_id: str | None = Query(default=None),
) -> OrderListResponse:
    """Orders of an owner, or of one cart, oldest first."""
    if not owner_id and not cart_id:
        raise HTTPException(status_code=400, detail="Either owner_id or cart_id is required")

    repo = current_domain.repository_for(Order)
    orders = repo.for_cart(cart_id) if cart_id else repo.for_owner(owner_id)
    if cart_id and owner_id:
        orders = [o for o in orders if str(o.owner_id) == owner_id]
    return OrderListResponse(orders=[_order_response(order) for order in orders])


@order_router.get("/{order_id}", response_model=OrderResponse)
def get_order(order_id: str) -> OrderResponse:
    return _order_response(current_domain.repository_for(Order).get(order_id))
