"""Pydantic request/response schemas for the Checkout API.

These are external contracts (anti-corruption layer), separate from
internal Protean commands.
"""

from typing import Any

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------
class AddToCartRequest(BaseModel):
    owner_id: str
    product_id: str
    quantity: int = Field(default=1, ge=1)

    model_config = {
        "json_schema_extra": {"examples": [{"owner_id": "user-001", "product_id": "prod-001", "quantity": 2}]}
    }


class UpdateQuantityRequest(BaseModel):
    quantity: int = Field(ge=1)


class CartItemAddedResponse(BaseModel):
    cart_id: str
    item_id: str


class CartItemSchema(BaseModel):
    item_id: str
    product_id: str
    name: str | None = None
    unit_price: str
    currency: str
    quantity: int
    is_nft: bool
    availability: str


class CartResponse(BaseModel):
    cart_id: str
    owner_id: str
    generation: int
    items: list[CartItemSchema]
    groups: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------
class CreateIntentRequest(BaseModel):
    cart_id: str
    currency: str = Field(min_length=3, max_length=10)
    provider: str
    idempotency_key: str | None = Field(default=None, max_length=255)
    nonce: str | None = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def key_or_nonce(self):
        if not self.idempotency_key and not self.nonce:
            raise ValueError("Either idempotency_key or nonce is required")
        return self

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"cart_id": "cart-001", "currency": "USD", "provider": "card", "nonce": "dialog-7f3a"},
            ]
        }
    }


class IntentResponse(BaseModel):
    attempt_id: str
    attempt_ref: str
    status: str
    provider: str
    currency: str
    amount: str
    provider_client_payload: dict[str, Any]


class ConfirmRequest(BaseModel):
    attempt_id: str
    tx_hash: str | None = Field(default=None, max_length=66)


class ReconcileResponse(BaseModel):
    attempt_id: str
    status: str
    duplicate: bool = False
    checkout: dict[str, Any] | None = None


class WebhookAckResponse(BaseModel):
    received: bool = True
    duplicate: bool = False
    attempt_id: str
    status: str


class CheckoutStatusResponse(BaseModel):
    cart_id: str
    generation: int
    groups: list[dict[str, Any]]
    overall_status: str
    order_id: str | None = None


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------
class OrderLineResponse(BaseModel):
    line_id: str
    cart_item_id: str | None = None
    product_id: str
    name: str | None = None
    currency: str
    unit_price: str
    quantity: int
    line_total: str
    is_nft: bool


class OrderResponse(BaseModel):
    order_id: str
    cart_id: str
    owner_id: str
    cart_generation: int
    lines: list[OrderLineResponse]
    totals: dict[str, str]
    payment_attempt_ids: list[str]
    manual_review: bool
    review_reason: str | None = None
    created_at: str | None = None


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]


# ---------------------------------------------------------------------------
# Fake provider configuration
# ---------------------------------------------------------------------------
class ConfigureProviderRequest(BaseModel):
    reject_reason: str | None = None
    unavailable: bool = False
    auto_settle: bool = False
    refund_failures: int = Field(default=0, ge=0)
    refund_reject_reason: str | None = None


class ProviderConfigResponse(BaseModel):
    provider: str
    adapter: str
    reject_reason: str | None
    unavailable: bool
    auto_settle: bool
