"""Split a checkout cart into Stripe subscription items and one-time
invoice items."""

import logging
from dataclasses import dataclass, field
from typing import Any

from tierpay.errors import ValidationError
from tierpay.schemas.billing import CartItem

logger = logging.getLogger(__name__)


@dataclass
class LineItems:
    subscription_items: list[dict[str, Any]] = field(default_factory=list)
    invoice_items: list[dict[str, Any]] = field(default_factory=list)


def paid_quantity(item: CartItem) -> int:
    """Units actually billed once the free allowance is taken off."""
    free = min(item.free_quantity, item.quantity)
    return max(0, item.quantity - free)


def build_line_items(items: list[CartItem]) -> LineItems:
    monthly = [
        item
        for item in items
        if item.pricing_type == "monthly" and item.monthly_price > 0 and not item.is_free
    ]
    billable = []
    for item in monthly:
        if not item.stripe_monthly_price_id:
            logger.warning("Skipping monthly item %s without a Stripe price", item.id)
            continue
        billable.append(item)
    if not billable:
        raise ValidationError(
            "No monthly items with Stripe price IDs. "
            "Use the payment-intent endpoint for one-time only purchases."
        )

    result = LineItems()
    for item in billable:
        quantity = paid_quantity(item)
        if quantity > 0:
            result.subscription_items.append(
                {"price": item.stripe_monthly_price_id, "quantity": quantity}
            )
    if not result.subscription_items:
        raise ValidationError("No paid monthly items after accounting for free items")

    for item in items:
        if (
            item.pricing_type == "onetime"
            and item.onetime_price > 0
            and item.stripe_onetime_price_id
            and item.quantity > 0
        ):
            result.invoice_items.append(
                {"price": item.stripe_onetime_price_id, "quantity": item.quantity}
            )
    return result
