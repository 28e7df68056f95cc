"""
Pytest configuration and fixtures for testing
"""
import os
import tempfile

# Configure the app before anything imports config.settings
_TMP_DIR = tempfile.mkdtemp(prefix="paywall-tests-")
os.environ["GPT_API_KEY"] = "test-api-key"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_PRICE_ID"] = "price_test_pro"
os.environ["RATE_LIMIT_PER_MINUTE"] = "100000"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR}/app.db"
os.environ["LOG_DIR"] = os.path.join(_TMP_DIR, "logs")
os.environ.pop("REDIS_URL", None)
os.environ.pop("RENDER", None)
os.environ.pop("ENV", None)

import hashlib
import hmac
import json
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from itertools import count

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from database import Base, get_db
from services.stripe_gateway import (
    CustomerInfo,
    InvoiceInfo,
    StripeGateway,
    SubscriptionInfo,
    get_stripe_gateway,
)
from utils.errors import NotFoundError, UpstreamError

API_KEY = "test-api-key"
WEBHOOK_SECRET = "whsec_test_secret"


class FakeStripeGateway(StripeGateway):
    """
    In-memory stand-in for Stripe. Webhook signature verification is
    inherited from StripeGateway and runs through the real Stripe SDK.
    """

    def __init__(self):
        self.api_key = "sk_test_fake"
        self.customers = {}
        self.subscriptions = {}
        self.invoices = {}
        self.sent_invoices = []
        self.new_subscription_status = "active"
        self.fail_invoice_lookup = False
        self.fail_subscription_lookup = False
        self._ids = count(1)

    def _id(self, prefix):
        return f"{prefix}_{next(self._ids)}"

    # -- helpers used by tests ----------------------------------------------

    def add_customer(self, email, deleted=False):
        customer = CustomerInfo(id=self._id("cus"), email=email, deleted=deleted)
        self.customers[customer.id] = customer
        return customer

    def add_subscription(
        self,
        customer_id,
        status="active",
        collection_method="send_invoice",
        invoice_status="open",
        period_end=None,
    ):
        subscription_id = self._id("sub")
        invoice = None
        if invoice_status is not None:
            invoice = InvoiceInfo(
                id=self._id("in"),
                status=invoice_status,
                customer_id=customer_id,
                subscription_id=subscription_id,
                hosted_invoice_url=f"https://invoice.stripe.com/i/{subscription_id}",
            )
            self.invoices[invoice.id] = invoice
        subscription = SubscriptionInfo(
            id=subscription_id,
            customer_id=customer_id,
            status=status,
            collection_method=collection_method,
            latest_invoice_id=invoice.id if invoice else None,
            current_period_end=period_end or datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=30),
            trial_end=None,
        )
        self.subscriptions[subscription.id] = subscription
        return subscription

    def pay_invoice(self, invoice_id):
        self.invoices[invoice_id] = replace(self.invoices[invoice_id], status="paid")
        return self.invoices[invoice_id]

    def set_subscription_status(self, subscription_id, status):
        self.subscriptions[subscription_id] = replace(self.subscriptions[subscription_id], status=status)
        return self.subscriptions[subscription_id]

    # -- StripeGateway API ------------------------------------------------------

    def retrieve_customer(self, customer_id):
        if customer_id not in self.customers:
            raise NotFoundError("Stripe resource not found while trying to retrieve customer")
        return self.customers[customer_id]

    def find_customer_by_email(self, email):
        for customer in self.customers.values():
            if customer.email == email and not customer.deleted:
                return customer
        return None

    def create_customer(self, email, metadata):
        return self.add_customer(email)

    def list_subscriptions(self, customer_id, limit=10):
        return [s for s in self.subscriptions.values() if s.customer_id == customer_id][:limit]

    def create_subscription(self, customer_id, price_id, trial_period_days, days_until_due, metadata):
        self.last_create_subscription = {
            "customer_id": customer_id,
            "price_id": price_id,
            "trial_period_days": trial_period_days,
            "days_until_due": days_until_due,
            "metadata": metadata,
        }
        return self.add_subscription(customer_id, status=self.new_subscription_status)

    def retrieve_subscription(self, subscription_id):
        if self.fail_subscription_lookup:
            raise UpstreamError("Stripe request failed: retrieve subscription")
        if subscription_id not in self.subscriptions:
            raise NotFoundError("Stripe resource not found while trying to retrieve subscription")
        return self.subscriptions[subscription_id]

    def retrieve_invoice(self, invoice_id):
        if self.fail_invoice_lookup:
            raise UpstreamError("Stripe request failed: retrieve invoice")
        if invoice_id not in self.invoices:
            raise NotFoundError("Stripe resource not found while trying to retrieve invoice")
        return self.invoices[invoice_id]

    def latest_invoice_for_subscription(self, subscription_id):
        if self.fail_invoice_lookup:
            raise UpstreamError("Stripe request failed: list invoices")
        matches = [i for i in self.invoices.values() if i.subscription_id == subscription_id]
        return matches[-1] if matches else None

    def latest_open_invoice(self, customer_id):
        matches = [i for i in self.invoices.values() if i.customer_id == customer_id and i.status == "open"]
        return matches[-1] if matches else None

    def send_invoice(self, invoice_id):
        self.sent_invoices.append(invoice_id)
        return self.invoices[invoice_id]

    def create_portal_session(self, customer_id, return_url):
        return f"https://billing.stripe.com/p/session/{customer_id}"


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }).encode("utf-8")


@pytest.fixture
async def session_factory(tmp_path):
    """
    Fresh SQLite file database per test.
    NullPool keeps connections from being shared across event loops.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        # Import models to ensure they're registered with Base
        import database_models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    await engine.dispose()


@pytest.fixture
async def test_db(session_factory):
    """Isolated AsyncSession for repository and service tests."""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@pytest.fixture
def fake_gateway():
    return FakeStripeGateway()


@pytest.fixture
def signer():
    return sign_payload


@pytest.fixture
def event_payload():
    return stripe_event


@pytest.fixture
def auth_headers():
    return {"x-api-key": API_KEY}


@pytest.fixture
async def async_client(session_factory, fake_gateway):
    """
    Async HTTP client against the app with the test database and the
    fake Stripe gateway wired in.
    """
    from main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: fake_gateway

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
