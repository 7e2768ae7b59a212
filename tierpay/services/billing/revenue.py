import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from tierpay.models.billing import RevenueChangeType, RevenueRecord
from tierpay.services.billing.payloads import invoice_subscription_id
from tierpay.services.billing.subscriptions import subscriptions
from tierpay.services.common import current_month, get_or_create

logger = logging.getLogger(__name__)


class RevenueLedger:
    @staticmethod
    def record_invoice_payment(
        db: Session, invoice: dict[str, Any], now: datetime | None = None
    ) -> RevenueRecord | None:
        """Write this month's MRR for the client behind a paid invoice.

        The (client, month) row is replaced, never incremented, so a
        redelivered invoice event leaves the figure unchanged.
        """
        stripe_subscription_id = invoice_subscription_id(invoice)
        if not stripe_subscription_id:
            logger.info("Invoice %s is not for a subscription; skipping", invoice.get("id"))
            return None
        subscription = subscriptions.get_by_external_id(db, stripe_subscription_id)
        if subscription is None:
            logger.warning(
                "Paid invoice %s for untracked subscription; skipping",
                invoice.get("id"),
                extra={"subscription_id": stripe_subscription_id},
            )
            return None

        amount = int(invoice.get("amount_paid") or 0)
        change_type = (
            RevenueChangeType.new
            if invoice.get("billing_reason") == "subscription_create"
            else RevenueChangeType.recurring
        )
        month = current_month(now)
        values = {
            "mrr": amount,
            "change_type": change_type,
            "change_amount": amount,
            "stripe_invoice_id": invoice.get("id"),
        }
        record, created = get_or_create(
            db,
            RevenueRecord,
            defaults=values,
            client_id=subscription.client_id,
            month=month,
        )
        if not created:
            for key, value in values.items():
                setattr(record, key, value)
        logger.info(
            "Revenue %s for %s: %s cents (%s)",
            "recorded" if created else "updated",
            month,
            amount,
            record.change_type.value,
            extra={"client_id": str(subscription.client_id)},
        )
        return record


revenue_ledger = RevenueLedger()
