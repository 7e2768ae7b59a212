"""Local subscription state, reconciled from Stripe events.

Stripe is the source of truth for status and period fields. Rows are keyed
by ``stripe_subscription_id``; every write goes through an upsert on that
key, so events may arrive in any order and any number of times.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tierpay.models.billing import Subscription, SubscriptionHistory, SubscriptionStatus
from tierpay.models.client import Client
from tierpay.models.recommendation import Recommendation
from tierpay.services.billing.payloads import (
    object_id,
    parse_status,
    read_metadata,
    subscription_period,
)
from tierpay.services.common import as_utc, from_unix, get_or_create

logger = logging.getLogger(__name__)

FREE_ORDER_PREFIX = "free_"

_PRE_ACTIVE = {
    None,
    SubscriptionStatus.incomplete,
    SubscriptionStatus.trialing,
}
_PAST_DUE_FROM = {
    SubscriptionStatus.active,
    SubscriptionStatus.incomplete,
    SubscriptionStatus.trialing,
}


@dataclass
class ReconcileResult:
    subscription: Subscription
    created: bool
    previous_status: SubscriptionStatus | None
    applied: bool


def _add_history(db: Session, subscription: Subscription, action: str, details: str) -> None:
    db.add(
        SubscriptionHistory(
            subscription_id=subscription.id, action=action, details=details
        )
    )
    logger.info(
        "Subscription history: %s",
        action,
        extra={"subscription_id": subscription.stripe_subscription_id},
    )


def _tier_label(obj: dict[str, Any]) -> str | None:
    tier = read_metadata(obj).selected_tier
    return tier.value.capitalize() if tier else None


class Subscriptions:
    @staticmethod
    def get_by_external_id(db: Session, stripe_subscription_id: str) -> Subscription | None:
        stmt = select(Subscription).where(
            Subscription.stripe_subscription_id == stripe_subscription_id
        )
        return db.scalars(stmt).first()

    @staticmethod
    def record_checkout(
        db: Session,
        stripe_subscription: dict[str, Any],
        client_id: uuid.UUID,
        recommendation_id: uuid.UUID,
        stripe_customer_id: str,
    ) -> Subscription | None:
        """Save the pending subscription created at checkout.

        A webhook may already have created the row; in that case it is left
        alone. A failed write is logged and swallowed: the checkout already
        succeeded at Stripe and the ``created`` event will upsert the row.
        """
        try:
            item, created = get_or_create(
                db,
                Subscription,
                defaults={
                    "client_id": client_id,
                    "recommendation_id": recommendation_id,
                    "stripe_customer_id": stripe_customer_id,
                    "status": SubscriptionStatus.incomplete,
                    "current_period_start": subscription_period(
                        stripe_subscription, "current_period_start"
                    ),
                    "current_period_end": subscription_period(
                        stripe_subscription, "current_period_end"
                    ),
                    "metadata_": stripe_subscription.get("metadata"),
                },
                stripe_subscription_id=stripe_subscription["id"],
            )
            if created:
                _add_history(db, item, "created", "Subscription initiated")
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "Failed to save subscription %s after Stripe accepted it",
                stripe_subscription.get("id"),
                extra={"client_id": str(client_id), "step": "save_subscription"},
            )
            return None
        return item

    @staticmethod
    def record_free_order(
        db: Session,
        client_id: uuid.UUID,
        recommendation_id: uuid.UUID | None,
        stripe_customer_id: str | None,
        metadata: dict[str, str],
        period_days: int,
    ) -> Subscription:
        """Create an active local subscription that Stripe never sees.

        The synthetic ``free_`` id keeps the unique key populated and can
        never collide with a processor id.
        """
        now = datetime.now(UTC)
        subscription = Subscription(
            stripe_subscription_id=f"{FREE_ORDER_PREFIX}{uuid.uuid4().hex}",
            client_id=client_id,
            recommendation_id=recommendation_id,
            stripe_customer_id=stripe_customer_id,
            status=SubscriptionStatus.active,
            current_period_start=now,
            current_period_end=now + timedelta(days=period_days),
            metadata_=metadata,
        )
        db.add(subscription)
        db.flush()
        _add_history(db, subscription, "created", "Free order activated")
        return subscription

    @staticmethod
    def _upsert(
        db: Session, obj: dict[str, Any], event_at: datetime | None
    ) -> ReconcileResult | None:
        stripe_id = obj["id"]
        meta = read_metadata(obj)
        subscription = Subscriptions.get_by_external_id(db, stripe_id)
        created = False
        if subscription is None:
            if meta.client_id is None or db.get(Client, meta.client_id) is None:
                logger.warning(
                    "Subscription %s has no known client in metadata; skipping",
                    stripe_id,
                    extra={"subscription_id": stripe_id},
                )
                return None
            subscription, created = get_or_create(
                db,
                Subscription,
                defaults={
                    "client_id": meta.client_id,
                    "stripe_customer_id": object_id(obj.get("customer")),
                    "status": SubscriptionStatus.incomplete,
                },
                stripe_subscription_id=stripe_id,
            )
            if created:
                _add_history(db, subscription, "created", "Subscription initiated")

        previous = None if created else subscription.status
        last_seen = as_utc(subscription.last_event_at)
        if event_at and last_seen and event_at < last_seen:
            logger.info(
                "Ignoring stale event for subscription %s (%s < %s)",
                stripe_id,
                event_at.isoformat(),
                last_seen.isoformat(),
                extra={"subscription_id": stripe_id},
            )
            return ReconcileResult(subscription, created, previous, applied=False)

        status = parse_status(obj.get("status"))
        if status is None:
            logger.warning(
                "Unknown subscription status %r; keeping %s",
                obj.get("status"),
                subscription.status,
                extra={"subscription_id": stripe_id},
            )
        else:
            subscription.status = status
        subscription.current_period_start = subscription_period(obj, "current_period_start")
        subscription.current_period_end = subscription_period(obj, "current_period_end")
        subscription.canceled_at = from_unix(obj.get("canceled_at"))
        customer = object_id(obj.get("customer"))
        if customer:
            subscription.stripe_customer_id = customer
        if obj.get("metadata"):
            subscription.metadata_ = obj["metadata"]
        if (
            subscription.recommendation_id is None
            and meta.recommendation_id
            and db.get(Recommendation, meta.recommendation_id) is not None
        ):
            subscription.recommendation_id = meta.recommendation_id
        if event_at:
            subscription.last_event_at = event_at
        return ReconcileResult(subscription, created, previous, applied=True)

    @staticmethod
    def _record_transition(db: Session, result: ReconcileResult, obj: dict[str, Any]) -> None:
        subscription = result.subscription
        previous = result.previous_status
        current = subscription.status
        if current == previous:
            return
        if current == SubscriptionStatus.active:
            if previous in _PRE_ACTIVE:
                tier = _tier_label(obj)
                details = (
                    f"Subscription activated with {tier} plan"
                    if tier
                    else "Subscription activated"
                )
                _add_history(db, subscription, "activated", details)
            else:
                _add_history(db, subscription, "payment_recovered", "Payment recovered")
        elif current == SubscriptionStatus.canceled:
            _add_history(db, subscription, "canceled", "Subscription canceled")
        elif current == SubscriptionStatus.incomplete_expired:
            _add_history(db, subscription, "expired", "Initial payment was never completed")

    @classmethod
    def apply_created(
        cls, db: Session, obj: dict[str, Any], event_at: datetime | None = None
    ) -> ReconcileResult | None:
        result = cls._upsert(db, obj, event_at)
        if result and result.applied:
            cls._record_transition(db, result, obj)
        return result

    @classmethod
    def apply_updated(
        cls, db: Session, obj: dict[str, Any], event_at: datetime | None = None
    ) -> ReconcileResult | None:
        result = cls._upsert(db, obj, event_at)
        if result and result.applied:
            cls._record_transition(db, result, obj)
        return result

    @classmethod
    def apply_deleted(
        cls, db: Session, obj: dict[str, Any], event_at: datetime | None = None
    ) -> ReconcileResult | None:
        # cancellation is terminal, so it is applied even if it looks stale
        result = cls._upsert(db, {**obj, "status": SubscriptionStatus.canceled.value}, None)
        if result is None:
            return None
        subscription = result.subscription
        if subscription.canceled_at is None:
            subscription.canceled_at = datetime.now(UTC)
        if event_at and (
            subscription.last_event_at is None
            or event_at > as_utc(subscription.last_event_at)
        ):
            subscription.last_event_at = event_at
        cls._record_transition(db, result, obj)
        return result

    @staticmethod
    def mark_past_due(db: Session, stripe_subscription_id: str) -> Subscription | None:
        subscription = Subscriptions.get_by_external_id(db, stripe_subscription_id)
        if subscription is None:
            logger.info(
                "No local subscription for failed invoice",
                extra={"subscription_id": stripe_subscription_id},
            )
            return None
        if subscription.status in _PAST_DUE_FROM:
            subscription.status = SubscriptionStatus.past_due
            _add_history(db, subscription, "payment_failed", "Invoice payment failed")
        return subscription


subscriptions = Subscriptions()
