"""Stripe webhook verification, delivery ledger and event dispatch."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tierpay.config import settings
from tierpay.errors import (
    AuthenticationError,
    ConfigurationError,
    PersistenceError,
    ValidationError,
    WebhookHandlerError,
)
from tierpay.metrics import WEBHOOK_EVENTS
from tierpay.models.billing import SubscriptionStatus, WebhookEvent, WebhookEventStatus
from tierpay.models.client import Client
from tierpay.schemas.billing import StripeEvent
from tierpay.services.activity import activity_log
from tierpay.services.billing.payloads import (
    invoice_subscription_id,
    object_id,
    read_metadata,
)
from tierpay.services.billing.purchases import purchase_finalizer
from tierpay.services.billing.revenue import revenue_ledger
from tierpay.services.billing.subscriptions import subscriptions
from tierpay.services.common import format_money, from_unix, get_or_create
from tierpay.services.payment_gateway import stripe_gateway

logger = logging.getLogger(__name__)

PROVIDER = "stripe"


def verify_event(body: bytes, signature: str | None) -> StripeEvent:
    """Authenticate a delivery against the raw request body."""
    if not signature:
        raise AuthenticationError("Missing stripe-signature header")
    secret = settings.stripe_webhook_secret
    if not secret:
        logger.error("Webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        raise ConfigurationError("Webhook secret not configured")
    try:
        payload = stripe_gateway.construct_event(body, signature, secret)
    except AuthenticationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc.message)
        raise
    try:
        return StripeEvent.model_validate(payload)
    except ValueError as exc:
        raise ValidationError("Malformed event payload") from exc


# ── Delivery ledger ──────────────────────────────────────


class WebhookEvents:
    @staticmethod
    def begin(db: Session, event: StripeEvent) -> tuple[WebhookEvent, bool]:
        """Record the delivery. Returns ``(row, already_processed)``."""
        item, created = get_or_create(
            db,
            WebhookEvent,
            defaults={
                "provider": PROVIDER,
                "event_type": event.type,
                "payload": event.model_dump(mode="json"),
                "status": WebhookEventStatus.pending,
            },
            event_id=event.id,
        )
        if not created and item.status == WebhookEventStatus.processed:
            return item, True
        if not created:
            item.status = WebhookEventStatus.pending
            item.error_message = None
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError("Failed to record webhook event") from exc
        return item, False

    @staticmethod
    def mark_processed(db: Session, item: WebhookEvent) -> None:
        item.status = WebhookEventStatus.processed
        item.processed_at = datetime.now(UTC)
        item.error_message = None

    @staticmethod
    def mark_failed(db: Session, item: WebhookEvent, error: str) -> None:
        item.status = WebhookEventStatus.failed
        item.error_message = error[:2000]
        db.commit()


webhook_events = WebhookEvents()


# ── Handlers ─────────────────────────────────────────────


def _client_for(db: Session, obj: dict[str, Any]) -> Client | None:
    """The client behind a processor object: metadata first, then customer."""
    client_id = read_metadata(obj).client_id
    if client_id:
        client = db.get(Client, client_id)
        if client:
            return client
    customer_id = object_id(obj.get("customer"))
    if customer_id:
        stmt = select(Client).where(Client.stripe_customer_id == customer_id)
        return db.scalars(stmt).first()
    return None


def _amount(obj: dict[str, Any], *keys: str) -> int:
    for key in keys:
        if obj.get(key) is not None:
            return int(obj[key])
    return 0


def _log_unattributed(event: StripeEvent) -> None:
    logger.info(
        "No client for %s; nothing to record",
        event.type,
        extra={"event_id": event.id, "event_type": event.type},
    )


def handle_setup_intent_succeeded(db: Session, event: StripeEvent) -> None:
    obj = event.data.object
    client = _client_for(db, obj)
    if client is None:
        _log_unattributed(event)
        return
    activity_log.record(
        db,
        client.id,
        "payment_method_saved",
        "Payment method saved",
        metadata={"setup_intent_id": obj.get("id")},
    )


def handle_setup_intent_failed(db: Session, event: StripeEvent) -> None:
    obj = event.data.object
    client = _client_for(db, obj)
    if client is None:
        _log_unattributed(event)
        return
    reason = (obj.get("last_setup_error") or {}).get("message") or "unknown error"
    activity_log.record(
        db,
        client.id,
        "payment_method_failed",
        f"Payment method setup failed: {reason}",
        metadata={"setup_intent_id": obj.get("id")},
    )


def handle_payment_intent_processing(db: Session, event: StripeEvent) -> None:
    obj = event.data.object
    client = _client_for(db, obj)
    if client is None:
        _log_unattributed(event)
        return
    amount = _amount(obj, "amount")
    activity_log.record(
        db,
        client.id,
        "payment_processing",
        f"Payment of {format_money(amount)} is processing",
        metadata={"payment_intent_id": obj.get("id"), "amount": amount},
    )


def handle_payment_intent_succeeded(db: Session, event: StripeEvent) -> None:
    obj = event.data.object
    if obj.get("invoice"):
        # subscription charges are recorded from the invoice events
        return
    client = _client_for(db, obj)
    if client is None:
        _log_unattributed(event)
        return
    amount = _amount(obj, "amount_received", "amount")
    activity_log.record(
        db,
        client.id,
        "payment",
        f"One-time payment of {format_money(amount)} received",
        metadata={"payment_intent_id": obj.get("id"), "amount": amount},
    )


def handle_payment_intent_failed(db: Session, event: StripeEvent) -> None:
    obj = event.data.object
    client = _client_for(db, obj)
    if client is None:
        _log_unattributed(event)
        return
    amount = _amount(obj, "amount")
    reason = (obj.get("last_payment_error") or {}).get("message") or "unknown error"
    activity_log.record(
        db,
        client.id,
        "payment_failed",
        f"Payment of {format_money(amount)} failed: {reason}",
        metadata={"payment_intent_id": obj.get("id"), "amount": amount},
    )


def handle_subscription_created(db: Session, event: StripeEvent) -> None:
    subscriptions.apply_created(db, event.data.object, from_unix(event.created))


def handle_subscription_updated(db: Session, event: StripeEvent) -> None:
    obj = event.data.object
    result = subscriptions.apply_updated(db, obj, from_unix(event.created))
    if result is None:
        return
    if obj.get("status") == SubscriptionStatus.active.value:
        purchase_finalizer.finalize(db, obj, result.subscription)


def handle_subscription_deleted(db: Session, event: StripeEvent) -> None:
    subscriptions.apply_deleted(db, event.data.object, from_unix(event.created))


def handle_invoice_payment_succeeded(db: Session, event: StripeEvent) -> None:
    invoice = event.data.object
    record = revenue_ledger.record_invoice_payment(db, invoice)
    if record is None or invoice.get("billing_reason") != "subscription_cycle":
        return
    amount = _amount(invoice, "amount_paid")
    activity_log.record(
        db,
        record.client_id,
        "payment",
        f"Monthly payment of {format_money(amount)} received",
        metadata={"invoice_id": invoice.get("id"), "amount": amount},
    )


def handle_invoice_payment_failed(db: Session, event: StripeEvent) -> None:
    invoice = event.data.object
    stripe_subscription_id = invoice_subscription_id(invoice)
    if not stripe_subscription_id:
        return
    subscription = subscriptions.mark_past_due(db, stripe_subscription_id)
    if subscription is None:
        return
    amount = _amount(invoice, "amount_due")
    activity_log.record(
        db,
        subscription.client_id,
        "payment_failed",
        f"Monthly payment of {format_money(amount)} failed",
        metadata={
            "invoice_id": invoice.get("id"),
            "amount": amount,
            "attempt_count": invoice.get("attempt_count"),
        },
    )


Handler = Callable[[Session, StripeEvent], None]

HANDLERS: dict[str, Handler] = {
    "setup_intent.succeeded": handle_setup_intent_succeeded,
    "setup_intent.setup_failed": handle_setup_intent_failed,
    "payment_intent.processing": handle_payment_intent_processing,
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
    "customer.subscription.created": handle_subscription_created,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
}


# ── Dispatch ─────────────────────────────────────────────


def dispatch(db: Session, event: StripeEvent) -> bool:
    """Run the handler for ``event``. Returns False for ignored types."""
    handler = HANDLERS.get(event.type)
    if handler is None:
        logger.info(
            "Ignoring unhandled event type %s",
            event.type,
            extra={"event_id": event.id, "event_type": event.type},
        )
        return False
    handler(db, event)
    return True


def process(db: Session, event: StripeEvent) -> None:
    """Apply a verified event exactly as far as its handler is idempotent.

    Handler failures roll back the handler's writes, mark the delivery failed
    and raise so Stripe redelivers: PersistenceError when the store rejected a
    write, WebhookHandlerError otherwise.
    """
    log_extra = {"event_id": event.id, "event_type": event.type}
    ledger, duplicate = webhook_events.begin(db, event)
    if duplicate:
        logger.info("Duplicate delivery of processed event", extra=log_extra)
        WEBHOOK_EVENTS.labels(event_type=event.type, outcome="duplicate").inc()
        return

    try:
        handled = dispatch(db, event)
        webhook_events.mark_processed(db, ledger)
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception("Webhook handler failed", extra=log_extra)
        WEBHOOK_EVENTS.labels(event_type=event.type, outcome="failed").inc()
        try:
            webhook_events.mark_failed(db, ledger, f"{type(exc).__name__}: {exc}")
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not mark webhook event failed", extra=log_extra)
        if isinstance(exc, SQLAlchemyError):
            raise PersistenceError("Failed to save webhook event state") from exc
        raise WebhookHandlerError() from exc

    outcome = "processed" if handled else "ignored"
    WEBHOOK_EVENTS.labels(event_type=event.type, outcome=outcome).inc()
    logger.info("Webhook %s", outcome, extra=log_extra)
