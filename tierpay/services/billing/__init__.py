from tierpay.services.billing.checkout import Checkout, checkout
from tierpay.services.billing.coupons import Coupons, coupons
from tierpay.services.billing.customers import Customers, customers
from tierpay.services.billing.purchases import PurchaseFinalizer, purchase_finalizer
from tierpay.services.billing.revenue import RevenueLedger, revenue_ledger
from tierpay.services.billing.subscriptions import Subscriptions, subscriptions
from tierpay.services.billing.webhooks import WebhookEvents, webhook_events

__all__ = [
    "Checkout",
    "checkout",
    "Coupons",
    "coupons",
    "Customers",
    "customers",
    "PurchaseFinalizer",
    "purchase_finalizer",
    "RevenueLedger",
    "revenue_ledger",
    "Subscriptions",
    "subscriptions",
    "WebhookEvents",
    "webhook_events",
]
