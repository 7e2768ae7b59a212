"""Checkout API routes called by the recommendation UI."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tierpay.api.deps import get_db
from tierpay.errors import ValidationError
from tierpay.schemas.billing import (
    CheckoutRequest,
    CheckoutResponse,
    CouponValidateRequest,
    CouponValidateResponse,
    FreeOrderRequest,
    FreeOrderResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
    SavedMethodCheckoutRequest,
    SavedMethodCheckoutResponse,
    SetupIntentRequest,
    SetupIntentResponse,
)
from tierpay.services import billing as billing_service

router = APIRouter(prefix="/stripe", tags=["checkout"])


@router.post("/create-subscription", response_model=CheckoutResponse)
def create_subscription(
    payload: CheckoutRequest, db: Session = Depends(get_db)
) -> CheckoutResponse:
    return billing_service.checkout.create_subscription(db, payload)


@router.post("/create-payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    payload: PaymentIntentRequest, db: Session = Depends(get_db)
) -> PaymentIntentResponse:
    return billing_service.checkout.create_payment_intent(db, payload)


@router.post("/setup-intent", response_model=SetupIntentResponse)
def create_setup_intent(
    payload: SetupIntentRequest, db: Session = Depends(get_db)
) -> SetupIntentResponse:
    return billing_service.checkout.create_setup_intent(db, payload)


@router.post(
    "/create-subscription-from-setup", response_model=SavedMethodCheckoutResponse
)
def create_subscription_from_setup(
    payload: SavedMethodCheckoutRequest, db: Session = Depends(get_db)
) -> SavedMethodCheckoutResponse:
    return billing_service.checkout.create_subscription_from_setup(db, payload)


@router.post("/create-free-order", response_model=FreeOrderResponse)
def create_free_order(
    payload: FreeOrderRequest, db: Session = Depends(get_db)
) -> FreeOrderResponse:
    return billing_service.checkout.create_free_order(db, payload)


@router.post("/validate-coupon", response_model=CouponValidateResponse)
def validate_coupon(payload: CouponValidateRequest) -> CouponValidateResponse:
    if not payload.code.strip():
        raise ValidationError("Coupon code is required")
    return billing_service.coupons.validate(payload.code)
