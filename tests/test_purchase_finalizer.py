from sqlalchemy import select

from conftest import subscription_object
from tierpay.errors import PaymentProcessorError
from tierpay.models import (
    ActivityLogEntry,
    Recommendation,
    RecommendationHistory,
    RecommendationStatus,
    Tier,
)
from tierpay.services.billing.purchases import (
    discount_percent,
    original_amount,
    paid_amount,
    purchase_finalizer,
)
from tierpay.services.billing.subscriptions import subscriptions
from tierpay.services.common import from_unix


def _active(db_session, billing_client, recommendation, **extra):
    obj = subscription_object("sub_buy", billing_client.id, recommendation.id, **extra)
    result = subscriptions.apply_updated(db_session, obj, from_unix(1760000000))
    return obj, result.subscription


def _purchases(db_session, client_id) -> list[ActivityLogEntry]:
    stmt = select(ActivityLogEntry).where(
        ActivityLogEntry.client_id == client_id,
        ActivityLogEntry.activity_type == "purchase",
    )
    return list(db_session.scalars(stmt))


def test_first_activation_accepts_recommendation(
    db_session, billing_client, recommendation, gateway
):
    gateway.retrieve_invoice.return_value = {"id": "in_test", "total": 50000}
    obj, subscription = _active(db_session, billing_client, recommendation)

    assert purchase_finalizer.finalize(db_session, obj, subscription) is True
    db_session.commit()

    rec = db_session.get(Recommendation, recommendation.id)
    assert rec.status == RecommendationStatus.accepted
    assert rec.purchased_tier == Tier.better
    assert rec.purchased_at is not None
    history = db_session.scalars(
        select(RecommendationHistory).where(
            RecommendationHistory.recommendation_id == recommendation.id
        )
    ).all()
    assert [(h.action, h.details) for h in history] == [
        ("purchased", "Client purchased the Better plan")
    ]
    [entry] = _purchases(db_session, billing_client.id)
    assert entry.description == "Dana Reyes purchased the Better Plan - $500/mo"
    assert entry.metadata_["amount_paid"] == 50000
    assert entry.metadata_["amount_source"] == "invoice"
    assert entry.metadata_["stripe_subscription_id"] == "sub_buy"


def test_repeated_activation_finalizes_once(db_session, billing_client, recommendation, gateway):
    gateway.retrieve_invoice.return_value = {"id": "in_test", "total": 50000}
    obj, subscription = _active(db_session, billing_client, recommendation)
    assert purchase_finalizer.finalize(db_session, obj, subscription) is True
    db_session.commit()
    first_purchased_at = db_session.get(Recommendation, recommendation.id).purchased_at

    for _ in range(3):
        assert purchase_finalizer.finalize(db_session, obj, subscription) is False
        db_session.commit()

    rec = db_session.get(Recommendation, recommendation.id)
    assert rec.purchased_at == first_purchased_at
    assert len(_purchases(db_session, billing_client.id)) == 1
    assert gateway.retrieve_invoice.call_count == 1


def test_missing_tier_still_completes_purchase(
    db_session, billing_client, recommendation, gateway
):
    gateway.retrieve_invoice.return_value = {"id": "in_test", "total": 50000}
    obj, subscription = _active(db_session, billing_client, recommendation, tier="")

    assert purchase_finalizer.finalize(db_session, obj, subscription) is True
    db_session.commit()

    rec = db_session.get(Recommendation, recommendation.id)
    assert rec.status == RecommendationStatus.accepted
    assert rec.purchased_tier is None
    assert rec.purchased_at is not None
    history = db_session.scalars(
        select(RecommendationHistory).where(
            RecommendationHistory.recommendation_id == recommendation.id
        )
    ).all()
    assert [(h.action, h.details) for h in history] == [
        ("purchased", "Client completed purchase")
    ]
    [entry] = _purchases(db_session, billing_client.id)
    assert entry.description == "Dana Reyes completed a purchase - $500/mo"
    assert entry.metadata_["tier"] is None


def test_missing_recommendation_skips_finalization(db_session, billing_client, gateway):
    obj = subscription_object("sub_norec", billing_client.id)
    result = subscriptions.apply_updated(db_session, obj, from_unix(1760000000))

    assert purchase_finalizer.finalize(db_session, obj, result.subscription) is False
    assert _purchases(db_session, billing_client.id) == []
    gateway.retrieve_invoice.assert_not_called()


def test_invoice_failure_falls_back_to_line_items(
    db_session, billing_client, recommendation, gateway
):
    gateway.retrieve_invoice.side_effect = PaymentProcessorError("timeout")
    obj, subscription = _active(db_session, billing_client, recommendation)

    assert purchase_finalizer.finalize(db_session, obj, subscription) is True
    db_session.commit()

    [entry] = _purchases(db_session, billing_client.id)
    assert entry.metadata_["amount_source"] == "line_items"
    assert entry.metadata_["amount_paid"] == 50000


def test_discount_is_shown_with_original_price(
    db_session, billing_client, recommendation, gateway
):
    gateway.retrieve_invoice.return_value = {"id": "in_test", "total": 45000}
    obj, subscription = _active(
        db_session,
        billing_client,
        recommendation,
        discount={"coupon": {"id": "CULTIVATE10", "percent_off": 10}},
    )

    purchase_finalizer.finalize(db_session, obj, subscription)
    db_session.commit()

    [entry] = _purchases(db_session, billing_client.id)
    assert entry.description == (
        "Dana Reyes purchased the Better Plan - $500/mo → $450/mo (10% off)"
    )
    assert entry.metadata_["original_amount"] == 50000
    assert entry.metadata_["discount_percent"] == 10


def test_discount_percent_reads_expanded_discounts():
    sub = {"discounts": ["di_unexpanded", {"coupon": {"percent_off": 5}}]}

    assert discount_percent(sub) == 5
    assert discount_percent({}) == 0


def test_original_amount_only_for_partial_discounts():
    assert original_amount(45000, 10) == 50000
    assert original_amount(0, 100) == 0
    assert original_amount(50000, 0) == 50000


def test_paid_amount_uses_expanded_invoice_without_fetch(gateway):
    sub = {
        "id": "sub_x",
        "latest_invoice": {"id": "in_x", "total": 1234},
        "items": {"data": []},
    }

    amount = paid_amount(sub)

    assert (amount.paid, amount.source) == (1234, "invoice")
    gateway.retrieve_invoice.assert_not_called()


def test_line_item_fallback_applies_discount(gateway):
    sub = {
        "id": "sub_y",
        "discount": {"coupon": {"percent_off": 10}},
        "items": {
            "data": [
                {"price": {"unit_amount": 20000}, "quantity": 2},
                {"price": {"unit_amount": 10000}, "quantity": 1},
            ]
        },
    }

    amount = paid_amount(sub)

    assert amount.source == "line_items"
    assert amount.original == 50000
    assert amount.paid == 45000
