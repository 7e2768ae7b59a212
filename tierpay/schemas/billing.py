from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Cart / Checkout ──────────────────────────────────────


class CartItem(CamelModel):
    id: str
    name: str = ""
    quantity: int = Field(default=1, ge=0)
    monthly_price: float = 0
    onetime_price: float = 0
    pricing_type: Literal["monthly", "onetime"]
    category: str | None = None
    stripe_monthly_price_id: str | None = None
    stripe_onetime_price_id: str | None = None
    is_free: bool = False
    free_quantity: int = Field(default=0, ge=0)


class CheckoutRequest(CamelModel):
    client_id: UUID
    items: list[CartItem] = Field(default_factory=list)
    coupon_code: str | None = None
    recommendation_id: UUID | None = None
    selected_tier: Literal["good", "better", "best"] | None = None


class CheckoutResponse(CamelModel):
    client_secret: str
    subscription_id: str
    payment_intent_id: str | None = None
    status: str


class PaymentIntentRequest(CamelModel):
    client_id: UUID
    items: list[CartItem] = Field(default_factory=list)
    coupon_code: str | None = None
    # explicit amount in cents, overrides the cart total
    amount: int | None = None


class PaymentIntentResponse(CamelModel):
    client_secret: str
    payment_intent_id: str
    amount: int
    currency: str


# ── Saved payment methods / free orders ──────────────────


BillingCycle = Literal["monthly", "annual"]


class SetupIntentRequest(CamelModel):
    client_id: UUID
    billing_cycle: BillingCycle = "monthly"


class SetupIntentResponse(CamelModel):
    client_secret: str
    customer_id: str


class SavedMethodCheckoutRequest(CheckoutRequest):
    # returned by the setup intent confirmed in the browser
    payment_method_id: str = ""


class SavedMethodCheckoutResponse(CamelModel):
    success: bool = True
    subscription_id: str
    status: str


class FreeOrderRequest(CamelModel):
    client_id: UUID
    coupon_code: str = ""
    items: list[CartItem] = Field(default_factory=list)
    recommendation_id: UUID | None = None
    selected_tier: Literal["good", "better", "best"] | None = None
    billing_cycle: BillingCycle = "monthly"


class FreeOrderResponse(CamelModel):
    success: bool = True
    subscription_id: str
    status: str = "active"
    is_free_order: bool = True


# ── Coupons ──────────────────────────────────────────────


class CouponValidateRequest(CamelModel):
    code: str = ""


class CouponDiscount(CamelModel):
    type: Literal["percent", "amount"]
    value: float
    currency: str | None = None


class CouponValidateResponse(CamelModel):
    valid: bool
    code: str | None = None
    discount: CouponDiscount | None = None
    error: str | None = None


# ── Webhooks ─────────────────────────────────────────────


class StripeEventData(BaseModel):
    object: dict[str, Any]
    previous_attributes: dict[str, Any] | None = None


class StripeEvent(BaseModel):
    """A verified processor event: type tag plus arbitrary payload."""

    model_config = ConfigDict(extra="ignore")
    id: str
    type: str
    created: int | None = None
    livemode: bool = False
    data: StripeEventData


class WebhookAck(BaseModel):
    received: bool = True
