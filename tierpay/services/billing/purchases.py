"""Marks a recommendation as purchased when its subscription first goes
active."""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from tierpay.errors import CommerceError
from tierpay.models.billing import Subscription
from tierpay.models.client import Client
from tierpay.models.recommendation import (
    Recommendation,
    RecommendationHistory,
    RecommendationStatus,
    Tier,
)
from tierpay.services.activity import activity_log
from tierpay.services.billing.payloads import object_id, read_metadata
from tierpay.services.common import format_money
from tierpay.services.payment_gateway import stripe_gateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaidAmount:
    paid: int
    original: int
    discount_percent: float
    source: str


def discount_percent(stripe_subscription: dict[str, Any]) -> float:
    """Percent-off of the subscription's coupon, 0 when none applies."""
    discounts: list[Any] = []
    if isinstance(stripe_subscription.get("discount"), dict):
        discounts.append(stripe_subscription["discount"])
    discounts.extend(d for d in stripe_subscription.get("discounts") or [] if isinstance(d, dict))
    for discount in discounts:
        coupon = discount.get("coupon")
        if coupon is None:
            coupon = (discount.get("source") or {}).get("coupon")
        if isinstance(coupon, dict) and coupon.get("percent_off"):
            return float(coupon["percent_off"])
    return 0


def line_item_total(stripe_subscription: dict[str, Any]) -> int:
    total = 0
    for item in (stripe_subscription.get("items") or {}).get("data") or []:
        price = item.get("price") or {}
        total += int(price.get("unit_amount") or 0) * int(item.get("quantity") or 1)
    return total


def original_amount(paid: int, percent: float) -> int:
    if 0 < percent < 100:
        return round(paid / (1 - percent / 100))
    return paid


def paid_amount(stripe_subscription: dict[str, Any]) -> PaidAmount:
    """What the client pays per month, in cents.

    The latest invoice total is authoritative (proration and discounts are
    already applied). If it cannot be read, the line items are summed and the
    coupon applied locally.
    """
    percent = discount_percent(stripe_subscription)
    invoice = stripe_subscription.get("latest_invoice")
    invoice_id = object_id(invoice)
    if invoice_id:
        try:
            if not isinstance(invoice, dict) or invoice.get("total") is None:
                invoice = stripe_gateway.retrieve_invoice(invoice_id)
            total = invoice.get("total")
            if total is None:
                total = invoice.get("amount_paid")
            if total is not None:
                paid = int(total)
                return PaidAmount(paid, original_amount(paid, percent), percent, "invoice")
        except CommerceError as exc:
            logger.warning(
                "Invoice %s unavailable, using line items: %s",
                invoice_id,
                exc,
                extra={"subscription_id": stripe_subscription.get("id")},
            )

    gross = line_item_total(stripe_subscription)
    paid = round(gross * (1 - percent / 100)) if percent else gross
    return PaidAmount(paid, gross if percent else paid, percent, "line_items")


def purchase_description(client: Client, tier: Tier | None, amount: PaidAmount) -> str:
    who = client.contact_name or client.name
    if tier is None:
        plan = f"{who} completed a purchase"
    else:
        plan = f"{who} purchased the {tier.value.capitalize()} Plan"
    if amount.discount_percent and amount.original != amount.paid:
        return (
            f"{plan} - {format_money(amount.original)}/mo → "
            f"{format_money(amount.paid)}/mo ({amount.discount_percent:g}% off)"
        )
    return f"{plan} - {format_money(amount.paid)}/mo"


def history_details(tier: Tier | None) -> str:
    if tier is None:
        return "Client completed purchase"
    return f"Client purchased the {tier.value.capitalize()} plan"


class PurchaseFinalizer:
    @staticmethod
    def mark_accepted(
        db: Session,
        recommendation_id: uuid.UUID,
        tier: Tier | None,
        subscription_id: str,
    ) -> bool:
        """Move a recommendation to accepted unless it already is.

        The status guard and the write are a single conditional UPDATE, so a
        redelivered or concurrent purchase affects zero rows. Returns True only
        for the call that performed the transition.
        """
        now = datetime.now(UTC)
        db.flush()
        result = db.execute(
            update(Recommendation)
            .where(
                Recommendation.id == recommendation_id,
                Recommendation.status != RecommendationStatus.accepted,
            )
            .values(
                status=RecommendationStatus.accepted,
                purchased_tier=tier,
                purchased_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "Recommendation %s already accepted or missing; skipping",
                recommendation_id,
                extra={"subscription_id": subscription_id},
            )
            return False
        db.add(
            RecommendationHistory(
                recommendation_id=recommendation_id,
                action="purchased",
                details=history_details(tier),
            )
        )
        return True

    @staticmethod
    def record_purchase(
        db: Session,
        subscription: Subscription,
        recommendation_id: uuid.UUID,
        tier: Tier | None,
        amount: PaidAmount,
    ) -> None:
        client = db.get(Client, subscription.client_id)
        if client is not None:
            activity_log.record(
                db,
                client.id,
                "purchase",
                purchase_description(client, tier, amount),
                metadata={
                    "tier": tier.value if tier else None,
                    "amount_paid": amount.paid,
                    "original_amount": amount.original,
                    "discount_percent": amount.discount_percent,
                    "amount_source": amount.source,
                    "stripe_subscription_id": subscription.stripe_subscription_id,
                },
            )
        logger.info(
            "Recommendation %s accepted with %s tier (%s/mo from %s)",
            recommendation_id,
            tier.value if tier else "no",
            format_money(amount.paid),
            amount.source,
            extra={"subscription_id": subscription.stripe_subscription_id},
        )

    @classmethod
    def finalize(
        cls,
        db: Session,
        stripe_subscription: dict[str, Any],
        subscription: Subscription,
    ) -> bool:
        """Accept the originating recommendation once its subscription is active.

        A missing tier still completes the purchase; only a subscription with
        no recommendation is skipped.
        """
        meta = read_metadata(stripe_subscription)
        recommendation_id = subscription.recommendation_id or meta.recommendation_id
        if recommendation_id is None:
            logger.info(
                "Active subscription has no recommendation; nothing to finalize",
                extra={"subscription_id": subscription.stripe_subscription_id},
            )
            return False

        if not cls.mark_accepted(
            db, recommendation_id, meta.selected_tier, subscription.stripe_subscription_id
        ):
            return False
        cls.record_purchase(
            db,
            subscription,
            recommendation_id,
            meta.selected_tier,
            paid_amount(stripe_subscription),
        )
        return True


purchase_finalizer = PurchaseFinalizer()
