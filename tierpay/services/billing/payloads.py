"""Readers for processor payloads.

Stripe does not enforce the shape of metadata and has moved some fields
between API versions, so every accessor here tolerates missing keys.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from tierpay.models.billing import SubscriptionStatus
from tierpay.models.recommendation import Tier
from tierpay.services.common import from_unix, parse_uuid

logger = logging.getLogger(__name__)

CLIENT_ID_KEY = "client_id"
RECOMMENDATION_ID_KEY = "recommendation_id"
SELECTED_TIER_KEY = "selected_tier"
BILLING_CYCLE_KEY = "billing_cycle"


@dataclass(frozen=True)
class CheckoutMetadata:
    client_id: uuid.UUID | None
    recommendation_id: uuid.UUID | None
    selected_tier: Tier | None


def build_metadata(
    client_id: uuid.UUID,
    recommendation_id: uuid.UUID | None,
    selected_tier: str | None,
) -> dict[str, str]:
    return {
        CLIENT_ID_KEY: str(client_id),
        RECOMMENDATION_ID_KEY: str(recommendation_id) if recommendation_id else "",
        SELECTED_TIER_KEY: selected_tier or "",
    }


def read_metadata(obj: dict[str, Any]) -> CheckoutMetadata:
    metadata = obj.get("metadata") or {}
    tier_value = metadata.get(SELECTED_TIER_KEY) or None
    tier: Tier | None = None
    if tier_value:
        try:
            tier = Tier(str(tier_value).lower())
        except ValueError:
            logger.warning("Ignoring unknown tier %r on %s", tier_value, obj.get("id"))
    return CheckoutMetadata(
        client_id=parse_uuid(metadata.get(CLIENT_ID_KEY)),
        recommendation_id=parse_uuid(metadata.get(RECOMMENDATION_ID_KEY)),
        selected_tier=tier,
    )


def object_id(value: Any) -> str | None:
    """Return the id of an expandable field, which is either an id or an object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None


def parse_status(value: Any) -> SubscriptionStatus | None:
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return None


def subscription_period(obj: dict[str, Any], key: str) -> datetime | None:
    """Period bounds live on the subscription in older API versions and on
    its items in newer ones."""
    if obj.get(key):
        return from_unix(obj[key])
    items = (obj.get("items") or {}).get("data") or []
    for item in items:
        if item.get(key):
            return from_unix(item[key])
    return None


def invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    direct = object_id(invoice.get("subscription"))
    if direct:
        return direct
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return object_id(details.get("subscription"))


def invoice_payment_intent(invoice: dict[str, Any]) -> Any:
    """The invoice's payment intent as an id or an expanded object."""
    if invoice.get("payment_intent"):
        return invoice["payment_intent"]
    payments = (invoice.get("payments") or {}).get("data") or []
    for payment in payments:
        intent = (payment.get("payment") or {}).get("payment_intent")
        if intent:
            return intent
    return None
