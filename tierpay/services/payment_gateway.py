"""Stripe payment gateway integration."""

import logging
from collections.abc import Callable
from typing import Any

import stripe

from tierpay.config import settings
from tierpay.errors import (
    AuthenticationError,
    ConfigurationError,
    PaymentProcessorError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _as_dict(value: Any) -> dict[str, Any]:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return dict(value)


class StripeGateway:
    """Thin wrapper around the Stripe SDK.

    Every call passes the configured key explicitly, so nothing depends on
    the SDK's module-level ``stripe.api_key``. Results are returned as plain
    dicts and SDK errors surface as PaymentProcessorError.
    """

    def __init__(self) -> None:
        self._secret_key = settings.stripe_secret_key
        self._api_version = settings.stripe_api_version

    def _options(self) -> dict[str, str]:
        options = {"api_key": self._secret_key}
        if self._api_version:
            options["stripe_version"] = self._api_version
        return options

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    def _call(
        self, operation: str, method: Callable[..., Any], *args: Any, **params: Any
    ) -> dict[str, Any]:
        if not self.is_configured():
            raise ConfigurationError("Stripe is not configured")
        params = {key: value for key, value in params.items() if value is not None}
        try:
            result = method(*args, **params, **self._options())
        except stripe.StripeError as exc:
            message = exc.user_message or str(exc) or "Stripe request failed"
            logger.error("Stripe %s failed: %s", operation, message)
            raise PaymentProcessorError(
                message,
                processor_code=exc.code,
                http_status=exc.http_status,
            ) from exc
        return _as_dict(result)

    # ── Customers ────────────────────────────────────────

    def create_customer(
        self, name: str, email: str | None, metadata: dict[str, str]
    ) -> dict[str, Any]:
        customer = self._call(
            "create_customer",
            stripe.Customer.create,
            name=name,
            email=email or None,
            metadata=metadata,
        )
        logger.info("Created Stripe customer: %s", customer.get("id"))
        return customer

    def set_default_payment_method(
        self, customer: str, payment_method: str
    ) -> dict[str, Any]:
        return self._call(
            "set_default_payment_method",
            stripe.Customer.modify,
            customer,
            invoice_settings={"default_payment_method": payment_method},
        )

    def attach_payment_method(self, payment_method: str, customer: str) -> dict[str, Any]:
        return self._call(
            "attach_payment_method",
            stripe.PaymentMethod.attach,
            payment_method,
            customer=customer,
        )

    # ── Setup intents ────────────────────────────────────

    def create_setup_intent(
        self,
        customer: str,
        metadata: dict[str, str],
        payment_method_configuration: str | None = None,
    ) -> dict[str, Any]:
        """Collect a payment method now (card or bank debit) for a later charge."""
        params: dict[str, Any] = {"customer": customer, "metadata": metadata}
        if payment_method_configuration:
            params["payment_method_configuration"] = payment_method_configuration
        else:
            params["automatic_payment_methods"] = {"enabled": True}
        intent = self._call("create_setup_intent", stripe.SetupIntent.create, **params)
        logger.info("Created Stripe setup intent: %s", intent.get("id"))
        return intent

    # ── Subscriptions ────────────────────────────────────

    def create_subscription(
        self,
        customer: str,
        items: list[dict[str, Any]],
        metadata: dict[str, str],
        coupon: str | None = None,
    ) -> dict[str, Any]:
        """Create a subscription that waits for explicit payment confirmation."""
        subscription = self._call(
            "create_subscription",
            stripe.Subscription.create,
            customer=customer,
            items=items,
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            expand=["latest_invoice.payment_intent"],
            metadata=metadata,
            discounts=[{"coupon": coupon}] if coupon else None,
        )
        logger.info(
            "Created Stripe subscription: %s (status=%s)",
            subscription.get("id"),
            subscription.get("status"),
        )
        return subscription

    def create_charged_subscription(
        self,
        customer: str,
        items: list[dict[str, Any]],
        payment_method: str,
        metadata: dict[str, str],
        invoice_items: list[dict[str, Any]] | None = None,
        coupon: str | None = None,
    ) -> dict[str, Any]:
        """Create a subscription charged straight away to a saved payment method.

        One-time items ride along on the first invoice.
        """
        subscription = self._call(
            "create_charged_subscription",
            stripe.Subscription.create,
            customer=customer,
            items=items,
            default_payment_method=payment_method,
            add_invoice_items=invoice_items or None,
            expand=["latest_invoice"],
            metadata=metadata,
            discounts=[{"coupon": coupon}] if coupon else None,
        )
        logger.info(
            "Created Stripe subscription from saved method: %s (status=%s)",
            subscription.get("id"),
            subscription.get("status"),
        )
        return subscription

    def list_active_subscriptions(self, customer: str, limit: int = 1) -> list[dict[str, Any]]:
        page = self._call(
            "list_subscriptions",
            stripe.Subscription.list,
            customer=customer,
            status="active",
            limit=limit,
        )
        return [_as_dict(item) for item in page.get("data") or []]

    # ── Invoices ─────────────────────────────────────────

    def create_invoice_item(
        self, customer: str, invoice: str, price: str, quantity: int
    ) -> dict[str, Any]:
        return self._call(
            "create_invoice_item",
            stripe.InvoiceItem.create,
            customer=customer,
            invoice=invoice,
            price=price,
            quantity=quantity,
        )

    def retrieve_invoice(self, invoice_id: str) -> dict[str, Any]:
        return self._call("retrieve_invoice", stripe.Invoice.retrieve, invoice_id)

    # ── Payment intents ──────────────────────────────────

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer: str,
        description: str,
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        intent = self._call(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            customer=customer,
            description=description,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
        )
        logger.info("Created Stripe payment intent: %s", intent.get("id"))
        return intent

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        return self._call(
            "retrieve_payment_intent", stripe.PaymentIntent.retrieve, payment_intent_id
        )

    # ── Coupons & promotion codes ────────────────────────

    def retrieve_coupon(self, coupon_id: str) -> dict[str, Any]:
        return self._call("retrieve_coupon", stripe.Coupon.retrieve, coupon_id)

    def create_coupon(
        self, coupon_id: str, percent_off: float, name: str
    ) -> dict[str, Any]:
        return self._call(
            "create_coupon",
            stripe.Coupon.create,
            id=coupon_id,
            percent_off=percent_off,
            duration="forever",
            name=name,
        )

    def retrieve_promotion_code(self, promotion_code_id: str) -> dict[str, Any]:
        return self._call(
            "retrieve_promotion_code",
            stripe.PromotionCode.retrieve,
            promotion_code_id,
            expand=["coupon"],
        )

    def find_promotion_code(self, code: str) -> dict[str, Any] | None:
        """Return the first active promotion code matching ``code`` exactly."""
        page = self._call(
            "list_promotion_codes",
            stripe.PromotionCode.list,
            code=code,
            active=True,
            limit=1,
            expand=["data.coupon"],
        )
        matches = page.get("data") or []
        return _as_dict(matches[0]) if matches else None

    # ── Webhook ──────────────────────────────────────────

    @staticmethod
    def construct_event(
        payload: bytes,
        signature_header: str,
        secret: str,
        tolerance: int | None = None,
    ) -> dict[str, Any]:
        """Verify a Stripe-Signature header against the raw body and parse it."""
        if tolerance is None:
            tolerance = settings.stripe_webhook_tolerance_seconds
        try:
            event = stripe.Webhook.construct_event(
                payload, signature_header, secret, tolerance=tolerance
            )
        except stripe.SignatureVerificationError as exc:
            raise AuthenticationError(str(exc) or "Invalid signature") from exc
        except ValueError as exc:
            raise ValidationError("Invalid JSON payload") from exc
        return _as_dict(event)


stripe_gateway = StripeGateway()
