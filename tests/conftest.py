import hashlib
import hmac
import json
import sys
import time
import uuid
from datetime import UTC, datetime
from types import ModuleType
from typing import Any
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import DateTime, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

# Create a test engine BEFORE any tierpay imports
_test_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# pysqlite defers BEGIN until the first DML statement, which breaks SAVEPOINT
# (used by get_or_create and the activity log); let SQLAlchemy emit BEGIN.
@event.listens_for(_test_engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(_test_engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


class TestBase(DeclarativeBase):
    pass


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


mock_db_module = ModuleType("tierpay.db")
mock_db_module.Base = TestBase
mock_db_module.TimestampMixin = TimestampMixin
mock_db_module.SessionLocal = _TestSessionLocal
mock_db_module.get_engine = lambda: _test_engine

# Also mock tierpay.config to prevent .env loading
mock_config_module = ModuleType("tierpay.config")

WEBHOOK_SECRET = "whsec_test_secret"


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    db_pool_size = 5
    db_max_overflow = 10
    db_pool_timeout = 30
    db_pool_recycle = 1800
    stripe_secret_key = "sk_test_tierpay"
    stripe_webhook_secret = WEBHOOK_SECRET
    stripe_api_version = ""
    stripe_webhook_tolerance_seconds = 300
    stripe_pmc_monthly = ""
    stripe_pmc_annual = ""
    billing_currency = "usd"
    coupon_codes = "HARVEST5X:5,CULTIVATE10:10"
    promotion_code_ids = ""
    cors_origins = ""


mock_config_module.settings = MockSettings()
mock_config_module.Settings = MockSettings
mock_config_module.validate_settings = lambda s: []

sys.modules["tierpay.config"] = mock_config_module
sys.modules["tierpay.db"] = mock_db_module

from tierpay.models import (  # noqa: E402
    Client,
    Recommendation,
    RecommendationItem,
    RecommendationStatus,
    Tier,
)
from tierpay.services.payment_gateway import stripe_gateway  # noqa: E402

TestBase.metadata.create_all(_test_engine)

Base = TestBase


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture()
def db_session(engine):
    """Session on the shared StaticPool connection; tables are emptied after
    each test so rows never leak between tests."""
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.rollback()
        for table in reversed(TestBase.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
        session.close()


@pytest.fixture()
def client(db_session):
    """Create a test client with database dependency override."""
    from tierpay.api.deps import get_db
    from tierpay.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def billing_client(db_session):
    """A client account that already has a Stripe customer."""
    item = Client(
        name="Green Acres Landscaping",
        contact_name="Dana Reyes",
        contact_email=f"dana-{uuid.uuid4().hex[:8]}@example.com",
        stripe_customer_id=f"cus_{uuid.uuid4().hex[:12]}",
    )
    db_session.add(item)
    db_session.commit()
    db_session.refresh(item)
    return item


@pytest.fixture()
def recommendation(db_session, billing_client):
    """A sent recommendation with a $500/mo "better" tier and a free add-on."""
    item = Recommendation(client_id=billing_client.id, status=RecommendationStatus.sent)
    db_session.add(item)
    db_session.flush()
    db_session.add_all(
        [
            RecommendationItem(
                recommendation_id=item.id,
                tier=Tier.better,
                item_ref="seo-growth",
                quantity=1,
                monthly_price=50000,
            ),
            RecommendationItem(
                recommendation_id=item.id,
                tier=Tier.better,
                item_ref="review-widget",
                quantity=1,
                monthly_price=0,
                is_free=True,
            ),
        ]
    )
    db_session.commit()
    db_session.refresh(item)
    return item


@pytest.fixture()
def gateway(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Replace every Stripe call made through the gateway singleton."""
    mock = MagicMock(name="stripe_gateway")
    for name in (
        "create_customer",
        "create_subscription",
        "create_charged_subscription",
        "list_active_subscriptions",
        "create_setup_intent",
        "attach_payment_method",
        "set_default_payment_method",
        "create_invoice_item",
        "retrieve_invoice",
        "create_payment_intent",
        "retrieve_payment_intent",
        "retrieve_coupon",
        "create_coupon",
        "retrieve_promotion_code",
        "find_promotion_code",
    ):
        monkeypatch.setattr(stripe_gateway, name, getattr(mock, name))
    mock.find_promotion_code.return_value = None
    mock.list_active_subscriptions.return_value = []
    return mock


# ============ Stripe payload helpers ============


def stripe_event(
    event_type: str,
    obj: dict[str, Any],
    created: int | None = None,
    event_id: str | None = None,
) -> dict[str, Any]:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": created if created is not None else int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


def subscription_object(
    stripe_subscription_id: str,
    client_id: uuid.UUID,
    recommendation_id: uuid.UUID | None = None,
    status: str = "active",
    tier: str = "better",
    **extra: Any,
) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "id": stripe_subscription_id,
        "object": "subscription",
        "customer": "cus_test",
        "status": status,
        "current_period_start": 1760000000,
        "current_period_end": 1762600000,
        "canceled_at": None,
        "latest_invoice": "in_test",
        "metadata": {
            "client_id": str(client_id),
            "recommendation_id": str(recommendation_id) if recommendation_id else "",
            "selected_tier": tier,
        },
        "items": {
            "data": [
                {"price": {"id": "price_seo", "unit_amount": 50000}, "quantity": 1}
            ]
        },
    }
    obj.update(extra)
    return obj


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    """Stripe-Signature header value: HMAC-SHA256 over "<t>." + body."""
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def signed_headers(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> dict[str, str]:
    ts = timestamp if timestamp is not None else int(time.time())
    return {
        "stripe-signature": compute_signature(body, secret, ts),
        "content-type": "application/json",
    }


@pytest.fixture()
def post_event(client):
    """Sign and deliver an event to the webhook endpoint."""

    def _post(event: dict[str, Any]):
        body = json.dumps(event).encode("utf-8")
        return client.post("/stripe/webhook", content=body, headers=signed_headers(body))

    return _post
