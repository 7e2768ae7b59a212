"""Checkout: turn a cart into an incomplete Stripe subscription (or a
one-time payment intent) and hand back the client secret for payment
confirmation in the browser.

Two further paths skip browser confirmation: a subscription charged to a
payment method saved earlier through a setup intent (card or bank debit),
and a free order fully covered by a coupon, which never reaches Stripe.
"""

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tierpay.config import settings
from tierpay.errors import (
    Conflict,
    NotFound,
    PaymentProcessorError,
    PersistenceError,
    ValidationError,
)
from tierpay.models.billing import SubscriptionStatus
from tierpay.models.recommendation import Recommendation, Tier
from tierpay.schemas.billing import (
    CartItem,
    CheckoutRequest,
    CheckoutResponse,
    FreeOrderRequest,
    FreeOrderResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
    SavedMethodCheckoutRequest,
    SavedMethodCheckoutResponse,
    SetupIntentRequest,
    SetupIntentResponse,
)
from tierpay.services.billing.coupons import coupons
from tierpay.services.billing.customers import customers
from tierpay.services.billing.line_items import build_line_items, paid_quantity
from tierpay.services.billing.payloads import (
    BILLING_CYCLE_KEY,
    CLIENT_ID_KEY,
    build_metadata,
    invoice_payment_intent,
    object_id,
)
from tierpay.services.billing.purchases import PaidAmount, purchase_finalizer
from tierpay.services.billing.subscriptions import subscriptions
from tierpay.services.common import to_cents
from tierpay.services.payment_gateway import stripe_gateway

logger = logging.getLogger(__name__)

SUBSCRIPTION_FAILED = "Failed to create subscription"
PAYMENT_INTENT_FAILED = "Failed to create payment intent"
SETUP_FAILED = "Failed to initialize payment"
# Stripe caps metadata values at 500 characters
METADATA_VALUE_LIMIT = 500


@contextmanager
def _step(name: str, client_id: uuid.UUID, public_message: str) -> Iterator[None]:
    """Log processor failures with the failing step, then re-raise them with
    a generic message for the caller."""
    try:
        yield
    except PaymentProcessorError as exc:
        logger.error(
            "Checkout step %s failed: %s",
            name,
            exc.message,
            extra={"client_id": str(client_id), "step": name},
        )
        raise PaymentProcessorError(
            public_message,
            processor_code=exc.processor_code,
            http_status=exc.http_status,
        ) from exc


def _client_secret(invoice: Any, client_id: uuid.UUID) -> tuple[str | None, str | None]:
    """Find the payment client secret on a subscription's first invoice.

    Returns ``(client_secret, payment_intent_id)``.
    """
    if not isinstance(invoice, dict):
        return None, None
    intent = invoice_payment_intent(invoice)
    if isinstance(intent, str):
        with _step("retrieve_payment_intent", client_id, SUBSCRIPTION_FAILED):
            intent = stripe_gateway.retrieve_payment_intent(intent)
    if isinstance(intent, dict) and intent.get("client_secret"):
        return intent["client_secret"], intent.get("id")
    # newer API versions expose the secret on the invoice itself
    confirmation = invoice.get("confirmation_secret") or {}
    return confirmation.get("client_secret"), object_id(intent)


def _items_summary(items: list[CartItem]) -> str:
    summary = ", ".join(
        f"{item.name or item.id} x{item.quantity}" for item in items
    )
    return summary[:METADATA_VALUE_LIMIT]


def _monthly_total(items: list[CartItem]) -> int:
    """List price of the paid monthly items, in cents."""
    return sum(
        to_cents(item.monthly_price) * paid_quantity(item)
        for item in items
        if item.pricing_type == "monthly" and not item.is_free
    )


def _check_recommendation(db: Session, recommendation_id: uuid.UUID | None) -> None:
    if recommendation_id and not db.get(Recommendation, recommendation_id):
        raise NotFound("Recommendation not found")


class Checkout:
    @staticmethod
    def create_subscription(db: Session, payload: CheckoutRequest) -> CheckoutResponse:
        if not payload.items:
            raise ValidationError("No items provided")
        client = customers.get_client(db, payload.client_id)
        _check_recommendation(db, payload.recommendation_id)
        line_items = build_line_items(payload.items)
        client_id = client.id

        with _step("resolve_customer", client_id, SUBSCRIPTION_FAILED):
            customer_id = customers.resolve(db, client)
        coupon_id = None
        if payload.coupon_code:
            with _step("resolve_coupon", client_id, SUBSCRIPTION_FAILED):
                coupon_id = coupons.resolve(payload.coupon_code)

        metadata = build_metadata(
            client_id, payload.recommendation_id, payload.selected_tier
        )
        with _step("create_subscription", client_id, SUBSCRIPTION_FAILED):
            stripe_subscription = stripe_gateway.create_subscription(
                customer=customer_id,
                items=line_items.subscription_items,
                metadata=metadata,
                coupon=coupon_id,
            )
        invoice = stripe_subscription.get("latest_invoice")
        invoice_id = object_id(invoice)
        if line_items.invoice_items and invoice_id:
            with _step("create_invoice_item", client_id, SUBSCRIPTION_FAILED):
                for item in line_items.invoice_items:
                    stripe_gateway.create_invoice_item(
                        customer=customer_id,
                        invoice=invoice_id,
                        price=item["price"],
                        quantity=item["quantity"],
                    )

        client_secret, payment_intent_id = _client_secret(invoice, client_id)
        if not client_secret:
            logger.error(
                "Subscription %s has no payment client secret",
                stripe_subscription.get("id"),
                extra={"client_id": str(client_id), "step": "retrieve_payment_intent"},
            )
            raise PaymentProcessorError("Failed to get payment client secret")

        if payload.recommendation_id:
            subscriptions.record_checkout(
                db,
                stripe_subscription,
                client_id=client_id,
                recommendation_id=payload.recommendation_id,
                stripe_customer_id=customer_id,
            )

        logger.info(
            "Checkout started: subscription %s (%s)",
            stripe_subscription["id"],
            stripe_subscription.get("status"),
            extra={"client_id": str(client_id)},
        )
        return CheckoutResponse(
            client_secret=client_secret,
            subscription_id=stripe_subscription["id"],
            payment_intent_id=payment_intent_id,
            status=stripe_subscription.get("status") or "incomplete",
        )

    @staticmethod
    def create_payment_intent(
        db: Session, payload: PaymentIntentRequest
    ) -> PaymentIntentResponse:
        """One-time purchase with no recurring items."""
        client = customers.get_client(db, payload.client_id)
        client_id = client.id
        onetime = [
            item
            for item in payload.items
            if item.pricing_type == "onetime" and item.onetime_price > 0 and item.quantity > 0
        ]
        if payload.amount is not None and payload.amount > 0:
            gross = payload.amount
        elif onetime:
            gross = sum(to_cents(item.onetime_price) * item.quantity for item in onetime)
        else:
            raise ValidationError(
                "No one-time items to charge. "
                "Use the subscription endpoint for monthly items."
            )
        percent = coupons.fallback_percent(payload.coupon_code)
        amount = round(gross * (1 - percent / 100)) if percent else gross
        if amount <= 0:
            raise ValidationError("Amount after discount must be positive")

        with _step("resolve_customer", client_id, PAYMENT_INTENT_FAILED):
            customer_id = customers.resolve(db, client)
        currency = settings.billing_currency
        with _step("create_payment_intent", client_id, PAYMENT_INTENT_FAILED):
            intent = stripe_gateway.create_payment_intent(
                amount=amount,
                currency=currency,
                customer=customer_id,
                description=f"One-time purchase for {client.name}",
                metadata={
                    CLIENT_ID_KEY: str(client_id),
                    "coupon_code": (payload.coupon_code or "").strip().upper(),
                    "discount_percent": f"{percent:g}",
                    "items": _items_summary(onetime),
                },
            )
        if not intent.get("client_secret"):
            raise PaymentProcessorError(PAYMENT_INTENT_FAILED)
        return PaymentIntentResponse(
            client_secret=intent["client_secret"],
            payment_intent_id=intent["id"],
            amount=amount,
            currency=currency,
        )

    @staticmethod
    def create_setup_intent(db: Session, payload: SetupIntentRequest) -> SetupIntentResponse:
        """Start saving a payment method for a later charge."""
        client = customers.get_client(db, payload.client_id)
        client_id = client.id
        with _step("resolve_customer", client_id, SETUP_FAILED):
            customer_id = customers.resolve(db, client)
        if payload.billing_cycle == "annual":
            configuration = settings.stripe_pmc_annual
        else:
            configuration = settings.stripe_pmc_monthly
        with _step("create_setup_intent", client_id, SETUP_FAILED):
            intent = stripe_gateway.create_setup_intent(
                customer_id,
                {CLIENT_ID_KEY: str(client_id), BILLING_CYCLE_KEY: payload.billing_cycle},
                configuration or None,
            )
        if not intent.get("client_secret"):
            raise PaymentProcessorError(SETUP_FAILED)
        return SetupIntentResponse(
            client_secret=intent["client_secret"], customer_id=customer_id
        )

    @staticmethod
    def create_subscription_from_setup(
        db: Session, payload: SavedMethodCheckoutRequest
    ) -> SavedMethodCheckoutResponse:
        """Subscribe a client using a payment method saved by a setup intent.

        Stripe charges the saved method straight away. Bank debits usually
        leave the subscription incomplete until the payment settles, and the
        webhook finishes the purchase then; a subscription that is already
        active is finalized here.
        """
        if not payload.payment_method_id.strip():
            raise ValidationError("Payment method is required")
        if not payload.items:
            raise ValidationError("No items provided")
        client = customers.get_client(db, payload.client_id)
        _check_recommendation(db, payload.recommendation_id)
        line_items = build_line_items(payload.items)
        client_id = client.id
        payment_method = payload.payment_method_id.strip()

        with _step("resolve_customer", client_id, SUBSCRIPTION_FAILED):
            customer_id = customers.resolve(db, client)
        with _step("list_subscriptions", client_id, SUBSCRIPTION_FAILED):
            active = stripe_gateway.list_active_subscriptions(customer_id)
        if active:
            raise Conflict(
                "Client already has an active subscription",
                details={"existingSubscriptionId": active[0].get("id")},
            )
        with _step("attach_payment_method", client_id, SUBSCRIPTION_FAILED):
            stripe_gateway.attach_payment_method(payment_method, customer_id)
            stripe_gateway.set_default_payment_method(customer_id, payment_method)
        coupon_id = None
        if payload.coupon_code:
            with _step("resolve_coupon", client_id, SUBSCRIPTION_FAILED):
                coupon_id = coupons.resolve(payload.coupon_code)

        metadata = build_metadata(
            client_id, payload.recommendation_id, payload.selected_tier
        )
        with _step("create_subscription", client_id, SUBSCRIPTION_FAILED):
            stripe_subscription = stripe_gateway.create_charged_subscription(
                customer=customer_id,
                items=line_items.subscription_items,
                payment_method=payment_method,
                metadata=metadata,
                invoice_items=line_items.invoice_items,
                coupon=coupon_id,
            )
        status = stripe_subscription.get("status") or SubscriptionStatus.incomplete.value

        try:
            result = subscriptions.apply_created(db, stripe_subscription)
            if result is not None and status == SubscriptionStatus.active.value:
                purchase_finalizer.finalize(db, stripe_subscription, result.subscription)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "Failed to save subscription %s after Stripe accepted it",
                stripe_subscription.get("id"),
                extra={"client_id": str(client_id), "step": "save_subscription"},
            )

        logger.info(
            "Subscription %s created from saved payment method (%s)",
            stripe_subscription["id"],
            status,
            extra={"client_id": str(client_id)},
        )
        return SavedMethodCheckoutResponse(
            subscription_id=stripe_subscription["id"], status=status
        )

    @staticmethod
    def create_free_order(db: Session, payload: FreeOrderRequest) -> FreeOrderResponse:
        """Complete an order whose coupon takes the whole price off.

        Nothing is charged, so Stripe is only asked about the coupon; the
        subscription lives locally under a ``free_`` id.
        """
        code = payload.coupon_code.strip()
        if not code:
            raise ValidationError("Free orders require a valid coupon code")
        client = customers.get_client(db, payload.client_id)
        client_id = client.id
        _check_recommendation(db, payload.recommendation_id)
        coupon = coupons.validate(code)
        discount = coupon.discount
        if not (
            coupon.valid
            and discount is not None
            and discount.type == "percent"
            and discount.value >= 100
        ):
            raise ValidationError("Coupon does not cover the full order")

        metadata = build_metadata(client_id, payload.recommendation_id, payload.selected_tier)
        metadata.update(
            {
                BILLING_CYCLE_KEY: payload.billing_cycle,
                "coupon_code": code.upper(),
                "free_order": "true",
            }
        )
        tier = Tier(payload.selected_tier) if payload.selected_tier else None
        gross = _monthly_total(payload.items)
        try:
            subscription = subscriptions.record_free_order(
                db,
                client_id=client_id,
                recommendation_id=payload.recommendation_id,
                stripe_customer_id=client.stripe_customer_id,
                metadata=metadata,
                period_days=365 if payload.billing_cycle == "annual" else 30,
            )
            if payload.recommendation_id and purchase_finalizer.mark_accepted(
                db, payload.recommendation_id, tier, subscription.stripe_subscription_id
            ):
                purchase_finalizer.record_purchase(
                    db,
                    subscription,
                    payload.recommendation_id,
                    tier,
                    PaidAmount(0, gross, 100, "free_order"),
                )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception(
                "Failed to save free order",
                extra={"client_id": str(client_id), "step": "save_free_order"},
            )
            raise PersistenceError("Failed to save free order") from exc

        logger.info(
            "Free order %s completed with coupon %s",
            subscription.stripe_subscription_id,
            code.upper(),
            extra={"client_id": str(client_id)},
        )
        return FreeOrderResponse(subscription_id=subscription.stripe_subscription_id)


checkout = Checkout()
