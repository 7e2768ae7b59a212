"""Unit tests for the Stripe gateway service."""

import json
import time
from unittest.mock import MagicMock, patch

import pytest
import stripe

from conftest import compute_signature
from tierpay.errors import (
    AuthenticationError,
    ConfigurationError,
    PaymentProcessorError,
    ValidationError,
)
from tierpay.services import payment_gateway


@pytest.fixture()
def stripe_secret_key() -> str:
    return "sk_test_abc123"


@pytest.fixture()
def configured_gateway(
    monkeypatch: pytest.MonkeyPatch, stripe_secret_key: str
) -> payment_gateway.StripeGateway:
    monkeypatch.setattr(payment_gateway.settings, "stripe_secret_key", stripe_secret_key)
    monkeypatch.setattr(payment_gateway.settings, "stripe_api_version", "")
    return payment_gateway.StripeGateway()


@pytest.fixture()
def unconfigured_gateway(monkeypatch: pytest.MonkeyPatch) -> payment_gateway.StripeGateway:
    monkeypatch.setattr(payment_gateway.settings, "stripe_secret_key", "")
    return payment_gateway.StripeGateway()


# ── Requests ─────────────────────────────────────────────


def test_is_configured_reflects_secret_key(configured_gateway, unconfigured_gateway):
    assert configured_gateway.is_configured() is True
    assert unconfigured_gateway.is_configured() is False


def test_unconfigured_gateway_raises_before_any_stripe_call(unconfigured_gateway):
    with patch.object(stripe.Customer, "create") as create:
        with pytest.raises(ConfigurationError, match="Stripe is not configured"):
            unconfigured_gateway.create_customer("Acme", "a@example.com", {"client_id": "1"})

    create.assert_not_called()


def test_create_customer_passes_key_and_drops_empty_email(
    configured_gateway: payment_gateway.StripeGateway, stripe_secret_key: str
):
    with patch.object(stripe.Customer, "create", return_value={"id": "cus_123"}) as create:
        result = configured_gateway.create_customer("Acme Lawn", "", {"client_id": "c-1"})

    assert result == {"id": "cus_123"}
    create.assert_called_once_with(
        name="Acme Lawn",
        metadata={"client_id": "c-1"},
        api_key=stripe_secret_key,
    )


def test_results_are_converted_to_plain_dicts(configured_gateway):
    sdk_object = MagicMock()
    sdk_object.to_dict.return_value = {"id": "in_1", "total": 50000}

    with patch.object(stripe.Invoice, "retrieve", return_value=sdk_object) as retrieve:
        result = configured_gateway.retrieve_invoice("in_1")

    assert result == {"id": "in_1", "total": 50000}
    assert retrieve.call_args.args == ("in_1",)


def test_create_subscription_requests_incomplete_payment_and_discount(configured_gateway):
    with patch.object(
        stripe.Subscription, "create", return_value={"id": "sub_1", "status": "incomplete"}
    ) as create:
        configured_gateway.create_subscription(
            customer="cus_1",
            items=[{"price": "price_a", "quantity": 2}],
            metadata={"client_id": "c-1", "recommendation_id": "", "selected_tier": "good"},
            coupon="HARVEST5X",
        )

    params = create.call_args.kwargs
    assert params["payment_behavior"] == "default_incomplete"
    assert params["payment_settings"] == {"save_default_payment_method": "on_subscription"}
    assert params["expand"] == ["latest_invoice.payment_intent"]
    assert params["items"] == [{"price": "price_a", "quantity": 2}]
    assert params["discounts"] == [{"coupon": "HARVEST5X"}]


def test_create_subscription_without_coupon_sends_no_discounts(configured_gateway):
    with patch.object(stripe.Subscription, "create", return_value={"id": "sub_1"}) as create:
        configured_gateway.create_subscription("cus_1", [{"price": "p"}], {})

    assert "discounts" not in create.call_args.kwargs


def test_charged_subscription_uses_saved_method_and_first_invoice_items(configured_gateway):
    with patch.object(
        stripe.Subscription, "create", return_value={"id": "sub_2", "status": "active"}
    ) as create:
        configured_gateway.create_charged_subscription(
            customer="cus_1",
            items=[{"price": "price_a", "quantity": 1}],
            payment_method="pm_bank",
            metadata={},
            invoice_items=[{"price": "price_setup", "quantity": 1}],
        )

    params = create.call_args.kwargs
    assert params["default_payment_method"] == "pm_bank"
    assert params["add_invoice_items"] == [{"price": "price_setup", "quantity": 1}]
    assert "payment_behavior" not in params


def test_setup_intent_prefers_configured_payment_methods(configured_gateway):
    with patch.object(stripe.SetupIntent, "create", return_value={"id": "seti_1"}) as create:
        configured_gateway.create_setup_intent("cus_1", {"client_id": "c-1"}, "pmc_annual")
        configured_gateway.create_setup_intent("cus_1", {"client_id": "c-1"})

    first, second = create.call_args_list
    assert first.kwargs["payment_method_configuration"] == "pmc_annual"
    assert "automatic_payment_methods" not in first.kwargs
    assert second.kwargs["automatic_payment_methods"] == {"enabled": True}


def test_find_promotion_code_returns_first_match(configured_gateway):
    with patch.object(
        stripe.PromotionCode,
        "list",
        return_value={"data": [{"id": "promo_1", "code": "SPRING"}]},
    ) as list_codes:
        result = configured_gateway.find_promotion_code("SPRING")

    assert result == {"id": "promo_1", "code": "SPRING"}
    params = list_codes.call_args.kwargs
    assert params["code"] == "SPRING"
    assert params["active"] is True
    assert params["expand"] == ["data.coupon"]


def test_find_promotion_code_returns_none_when_no_match(configured_gateway):
    with patch.object(stripe.PromotionCode, "list", return_value={"data": []}):
        assert configured_gateway.find_promotion_code("NOPE") is None


def test_api_version_sent_when_pinned(monkeypatch, configured_gateway):
    monkeypatch.setattr(payment_gateway.settings, "stripe_api_version", "2024-06-20")
    gw = payment_gateway.StripeGateway()

    with patch.object(stripe.Invoice, "retrieve", return_value={"id": "in_1"}) as retrieve:
        gw.retrieve_invoice("in_1")

    assert retrieve.call_args.kwargs["stripe_version"] == "2024-06-20"


def test_api_error_raises_payment_processor_error(configured_gateway):
    error = stripe.InvalidRequestError(
        "No such price: 'price_x'", "items", code="resource_missing", http_status=400
    )

    with patch.object(stripe.Subscription, "create", side_effect=error):
        with pytest.raises(PaymentProcessorError, match="No such price") as exc_info:
            configured_gateway.create_subscription("cus_1", [{"price": "price_x"}], {})

    assert exc_info.value.processor_code == "resource_missing"
    assert exc_info.value.http_status == 400


def test_connection_error_raises_payment_processor_error(configured_gateway):
    with patch.object(
        stripe.Invoice, "retrieve", side_effect=stripe.APIConnectionError("connection refused")
    ):
        with pytest.raises(PaymentProcessorError, match="connection refused"):
            configured_gateway.retrieve_invoice("in_1")


# ── Webhook signatures ───────────────────────────────────


SECRET = "whsec_unit"


def _payload() -> bytes:
    return json.dumps(
        {"id": "evt_1", "object": "event", "type": "invoice.paid", "data": {"object": {}}}
    ).encode()


def test_construct_event_accepts_valid_signature():
    body = _payload()
    header = compute_signature(body, SECRET, int(time.time()))

    event = payment_gateway.StripeGateway.construct_event(body, header, SECRET)

    assert event["id"] == "evt_1"
    assert event["type"] == "invoice.paid"


def test_construct_event_accepts_any_matching_v1_signature():
    body = _payload()
    ts = int(time.time())
    valid = compute_signature(body, SECRET, ts).split(",")[1]
    header = f"t={ts},v1={'0' * 64},{valid}"

    event = payment_gateway.StripeGateway.construct_event(body, header, SECRET)

    assert event["type"] == "invoice.paid"


def test_construct_event_rejects_tampered_body():
    body = _payload()
    header = compute_signature(body, SECRET, int(time.time()))
    tampered = body.replace(b"invoice.paid", b"invoice.void")

    with pytest.raises(AuthenticationError):
        payment_gateway.StripeGateway.construct_event(tampered, header, SECRET)


def test_construct_event_rejects_wrong_secret():
    body = _payload()
    header = compute_signature(body, "whsec_other", int(time.time()))

    with pytest.raises(AuthenticationError):
        payment_gateway.StripeGateway.construct_event(body, header, SECRET)


@pytest.mark.parametrize("header", ["garbage", "t=abc,v1=deadbeef", "t=123"])
def test_construct_event_rejects_malformed_header(header: str):
    with pytest.raises(AuthenticationError):
        payment_gateway.StripeGateway.construct_event(_payload(), header, SECRET)


def test_construct_event_rejects_old_timestamp():
    body = _payload()
    header = compute_signature(body, SECRET, int(time.time()) - 3600)

    with pytest.raises(AuthenticationError, match="tolerance"):
        payment_gateway.StripeGateway.construct_event(body, header, SECRET, tolerance=300)


def test_construct_event_rejects_invalid_json_after_valid_signature():
    body = b"not-json"
    header = compute_signature(body, SECRET, int(time.time()))

    with pytest.raises(ValidationError, match="Invalid JSON payload"):
        payment_gateway.StripeGateway.construct_event(body, header, SECRET)
