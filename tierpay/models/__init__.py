from tierpay.models.client import Client  # noqa: F401
from tierpay.models.recommendation import (  # noqa: F401
    Recommendation,
    RecommendationHistory,
    RecommendationItem,
    RecommendationStatus,
    Tier,
)
from tierpay.models.billing import (  # noqa: F401
    RevenueChangeType,
    RevenueRecord,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventStatus,
)
from tierpay.models.activity import ActivityLogEntry  # noqa: F401
