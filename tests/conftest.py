import hashlib
import hmac
import json
import os
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from types import ModuleType

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

WEBHOOK_SECRET = "whsec_test_secret"

# Create a test engine BEFORE any app imports
_test_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Create a mock for the app.db module that uses our test engine
class TestBase(DeclarativeBase):
    pass


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)

mock_db_module = ModuleType("app.db")
mock_db_module.Base = TestBase
mock_db_module.SessionLocal = _TestSessionLocal
mock_db_module.get_engine = lambda: _test_engine

# Also mock app.config to prevent .env loading
mock_config_module = ModuleType("app.config")


@dataclass(frozen=True)
class QueueSettings:
    max_attempts: int
    backoff_base_seconds: int
    backoff_cap_seconds: int
    retention_on_success: int
    retention_on_failure: int


@dataclass
class MockSettings:
    database_url: str = "sqlite+pysqlite:///:memory:"
    redis_url: str = "redis://localhost:6379/0"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800
    app_name: str = "SubsFlow"
    app_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"
    stripe_secret_key: str = "sk_test_dummy"
    stripe_webhook_secret: str = WEBHOOK_SECRET
    stripe_webhook_tolerance_seconds: int = 300
    stripe_timeout_seconds: int = 10
    email_queue: QueueSettings = field(
        default_factory=lambda: QueueSettings(3, 5, 300, 100, 500)
    )
    subscription_queue: QueueSettings = field(
        default_factory=lambda: QueueSettings(3, 10, 600, 50, 200)
    )
    job_batch_size: int = 100
    job_stale_after_seconds: int = 900
    job_relay_after_seconds: int = 300
    recurring_lock_timeout_seconds: int = 3600
    renewal_reminder_days: int = 3
    trial_ending_days: int = 2
    expired_archive_after_days: int = 180
    processed_event_retention_days: int = 7
    cron_check_expiry: str = "0 * * * *"
    cron_renewal_reminders: str = "0 9 * * *"
    cron_trial_ending: str = "0 10 * * *"
    cron_cleanup_expired: str = "0 2 * * 0"
    cron_relay_pending_jobs: str = "*/5 * * * *"


mock_config_module.settings = MockSettings()
mock_config_module.Settings = MockSettings
mock_config_module.QueueSettings = QueueSettings
mock_config_module.validate_settings = lambda s: []

# Insert mocks before any app imports
sys.modules["app.config"] = mock_config_module
sys.modules["app.db"] = mock_db_module

os.environ.setdefault("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)

# Now import the models - they'll use our mocked db module
from app.models.billing import Subscription, SubscriptionStatus  # noqa: E402
from app.models.plan import Plan  # noqa: E402
from app.models.user import User  # noqa: E402
from app.schemas.billing_events import SubscriptionObject  # noqa: E402
from app.services.billing.errors import BillingProviderError  # noqa: E402
from app.services.billing.webhooks import BillingWebhookRouter  # noqa: E402
from app.services.jobs import JobQueue  # noqa: E402

# Create all tables
TestBase.metadata.create_all(_test_engine)

# Re-export Base for compatibility
Base = TestBase


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture(autouse=True)
def _clean_tables(engine):
    """Every test starts from empty tables on the shared in-memory database."""
    yield
    with engine.begin() as conn:
        for table in reversed(TestBase.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def db_session(engine):
    """Create a database session for testing.

    Uses the same connection as the StaticPool engine to ensure
    all operations see the same data.
    """
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def session_factory():
    return _TestSessionLocal


def _unique_email() -> str:
    return f"test-{uuid.uuid4().hex}@example.com"


@pytest.fixture()
def user(db_session):
    user = User(email=_unique_email(), name="Test User", is_active=True)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def make_user(db_session):
    def _make_user(**overrides) -> User:
        data = {"email": _unique_email(), "name": "Other User", "is_active": True}
        data.update(overrides)
        item = User(**data)
        db_session.add(item)
        db_session.commit()
        db_session.refresh(item)
        return item

    return _make_user


@pytest.fixture()
def plan(db_session):
    plan = Plan(
        name="Pro",
        slug="pro",
        price=2499,
        currency="usd",
        trial_days=14,
        tier_level=2,
        stripe_price_id="price_pro_monthly",
        stripe_product_id="prod_pro",
        is_active=True,
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture()
def make_subscription(db_session, user, plan):
    """Insert a local subscription directly, bypassing the webhook path."""

    def _make_subscription(**overrides) -> Subscription:
        now = datetime.now(UTC)
        data = {
            "user_id": user.id,
            "plan_id": plan.id,
            "provider_subscription_id": f"sub_{uuid.uuid4().hex[:12]}",
            "provider_customer_id": "cus_test",
            "status": SubscriptionStatus.active,
            "current_period_start": now - timedelta(days=10),
            "current_period_end": now + timedelta(days=20),
            "cancel_at_period_end": False,
        }
        data.update(overrides)
        item = Subscription(**data)
        db_session.add(item)
        db_session.commit()
        db_session.refresh(item)
        return item

    return _make_subscription


# ============ Billing provider and broker fakes ============


class FakeProvider:
    """Stands in for StripeBillingProvider; serves canned subscriptions."""

    def __init__(self) -> None:
        self.subscriptions: dict[str, dict] = {}
        self.calls: list[str] = []
        self.error: Exception | None = None

    def add(self, subscription_id: str, **fields) -> dict:
        now = int(time.time())
        data = {
            "id": subscription_id,
            "customer": "cus_test",
            "status": "active",
            "current_period_start": now - 86400,
            "current_period_end": now + 29 * 86400,
            "cancel_at_period_end": False,
            "items": {"data": [{"price": {"id": "price_pro_monthly"}}]},
        }
        data.update(fields)
        self.subscriptions[subscription_id] = data
        return data

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionObject:
        self.calls.append(subscription_id)
        if self.error is not None:
            raise self.error
        if subscription_id not in self.subscriptions:
            raise BillingProviderError(f"No such subscription: {subscription_id}")
        return SubscriptionObject.model_validate(self.subscriptions[subscription_id])


class FakePublisher:
    """Records broker publishes instead of talking to Celery."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, int | None]] = []
        self.fail = False

    def __call__(self, job_id: str, queue: str, countdown: int | None) -> None:
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.calls.append((job_id, queue, countdown))


@pytest.fixture()
def provider():
    return FakeProvider()


@pytest.fixture()
def publisher():
    return FakePublisher()


@pytest.fixture()
def job_queue(publisher):
    return JobQueue(publisher=publisher)


@pytest.fixture()
def webhook_router(provider, job_queue):
    return BillingWebhookRouter(
        _TestSessionLocal,
        provider=provider,
        job_queue=job_queue,
        webhook_secret=WEBHOOK_SECRET,
        tolerance=300,
    )


# ============ Signed event helpers ============


def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture()
def sign():
    return _sign


class EventFactory:
    """Builds provider event bodies the way the billing provider sends them."""

    def _event(self, event_type: str, obj: dict, event_id: str | None = None) -> dict:
        return {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": obj},
        }

    def checkout_completed(
        self,
        subscription_id: str,
        user_id,
        *,
        price_id: str | None = "price_pro_monthly",
        event_id: str | None = None,
    ) -> dict:
        metadata = {"userId": str(user_id)} if user_id is not None else {}
        if price_id:
            metadata["priceId"] = price_id
        return self._event(
            "checkout.session.completed",
            {
                "id": f"cs_{uuid.uuid4().hex[:12]}",
                "object": "checkout.session",
                "mode": "subscription",
                "subscription": subscription_id,
                "customer": "cus_test",
                "metadata": metadata,
            },
            event_id,
        )

    def invoice(
        self,
        event_type: str,
        subscription_id: str | None,
        *,
        payment_intent: str | None = None,
        amount: int = 2499,
        attempt_count: int = 1,
        event_id: str | None = None,
    ) -> dict:
        return self._event(
            event_type,
            {
                "id": f"in_{uuid.uuid4().hex[:12]}",
                "object": "invoice",
                "subscription": subscription_id,
                "customer": "cus_test",
                "payment_intent": payment_intent or f"pi_{uuid.uuid4().hex[:12]}",
                "amount_paid": amount if event_type != "invoice.payment_failed" else 0,
                "amount_due": amount,
                "currency": "usd",
                "attempt_count": attempt_count,
            },
            event_id,
        )

    def subscription(
        self,
        event_type: str,
        subscription_id: str,
        *,
        status: str = "active",
        event_id: str | None = None,
        **fields,
    ) -> dict:
        now = int(time.time())
        obj = {
            "id": subscription_id,
            "object": "subscription",
            "customer": "cus_test",
            "status": status,
            "current_period_start": now - 86400,
            "current_period_end": now + 29 * 86400,
            "cancel_at_period_end": False,
        }
        obj.update(fields)
        return self._event(event_type, obj, event_id)


@pytest.fixture()
def events():
    return EventFactory()


@pytest.fixture()
def deliver(webhook_router, sign):
    """Sign and hand an event body to the webhook router."""

    def _deliver(event: dict, router: BillingWebhookRouter | None = None):
        body = json.dumps(event)
        return (router or webhook_router).handle(body.encode(), sign(body))

    return _deliver


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(webhook_router):
    """Test client with the webhook router wired to the fakes above."""
    from app.api.deps import get_webhook_router
    from app.main import app

    app.dependency_overrides[get_webhook_router] = lambda: webhook_router
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
