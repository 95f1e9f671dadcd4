# accessgate/conftest.py
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

# Settings are read at import time; configure the test environment first
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("SUPER_ADMIN_EMAIL", "admin@example.com")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from sqlalchemy import update

from accessgate.core.database import accounts, get_db_session, init_engine, reset_database
from accessgate.features.accounts.service import create_account, get_account
from accessgate.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    ProviderCustomer,
    ProviderSubscription,
)
from accessgate.features.notifications.email import InMemoryEmailSender, set_email_sender

ADMIN_EMAIL = "admin@example.com"
FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeBillingProvider:
    """In-memory BillingProvider keyed by customer email."""

    def __init__(self):
        self.customers: Dict[str, ProviderCustomer] = {}
        self.subscriptions: Dict[str, List[ProviderSubscription]] = {}
        self.failing_emails = set()
        self.failing_subscriptions = set()
        self.webhook_result: Optional[BillingWebhookResult] = None
        self.calls: List[str] = []

    def add_customer(self, email: str, customer_id: str) -> ProviderCustomer:
        customer = ProviderCustomer(id=customer_id, email=email)
        self.customers[email.lower()] = customer
        self.subscriptions.setdefault(customer_id, [])
        return customer

    def add_subscription(
        self,
        customer_id: str,
        subscription_id: str,
        status: str,
        *,
        created: datetime,
        period_end: Optional[datetime] = None,
    ) -> ProviderSubscription:
        sub = ProviderSubscription(
            id=subscription_id,
            status=status,
            created=created,
            current_period_end=period_end,
            customer_id=customer_id,
        )
        self.subscriptions.setdefault(customer_id, []).append(sub)
        return sub

    def set_status(self, subscription_id: str, status: str) -> None:
        for customer_id, subs in self.subscriptions.items():
            self.subscriptions[customer_id] = [
                ProviderSubscription(s.id, status, s.created, s.current_period_end, s.customer_id) if s.id == subscription_id else s
                for s in subs
            ]

    def find_customer_by_email(self, email: str) -> Optional[ProviderCustomer]:
        self.calls.append(f"customer:{email}")
        if email.lower() in self.failing_emails:
            raise BillingProviderError("Stripe customer lookup failed: timeout")
        return self.customers.get(email.lower())

    def list_subscriptions(self, customer_id: str) -> List[ProviderSubscription]:
        self.calls.append(f"subscriptions:{customer_id}")
        return list(self.subscriptions.get(customer_id, []))

    def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        for subs in self.subscriptions.values():
            for sub in subs:
                if sub.id == subscription_id:
                    return sub
        raise BillingProviderError("Subscription not found")

    def cancel_subscription(self, subscription_id: str, *, comment: Optional[str] = None) -> ProviderSubscription:
        self.calls.append(f"cancel:{subscription_id}")
        if subscription_id in self.failing_subscriptions:
            raise BillingProviderError("Stripe subscription cancellation failed: timeout")
        self.get_subscription(subscription_id)
        self.set_status(subscription_id, "canceled")
        return self.get_subscription(subscription_id)

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        if headers.get("stripe-signature") != "valid":
            raise BillingWebhookError("Invalid webhook signature")
        if self.webhook_result is None:
            raise BillingWebhookError("Invalid webhook payload")
        return self.webhook_result


@pytest.fixture(autouse=True)
def db():
    """Fresh in-memory database for every test."""
    init_engine("sqlite://")
    reset_database()
    yield


@pytest.fixture(autouse=True)
def outbox():
    sender = InMemoryEmailSender()
    set_email_sender(sender)
    yield sender
    set_email_sender(None)


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def make_account(now):
    """
    Create an account, optionally overriding stored columns.

    Usage:
        account = make_account("acct_1", created_at=now - timedelta(days=2), courtesy_access=True)
    """
    counter = {"n": 0}

    def _make(account_id: Optional[str] = None, email: Optional[str] = None, *, created_at: Optional[datetime] = None, **columns):
        counter["n"] += 1
        account_id = account_id or f"acct_{counter['n']}"
        email = email or f"{account_id}@example.com"
        create_account(account_id, email, created_at=created_at or now)
        if columns:
            with get_db_session() as session:
                session.execute(update(accounts).where(accounts.c.account_id == account_id).values(**columns))
        return get_account(account_id)

    return _make


@pytest.fixture
def admin_account(make_account):
    return make_account("acct_admin", ADMIN_EMAIL)


@pytest.fixture
def fake_provider(monkeypatch):
    """FakeBillingProvider installed as the configured provider."""
    import accessgate.features.billing.service as billing_service
    from accessgate.core.config import settings

    provider = FakeBillingProvider()
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_fake")
    monkeypatch.setattr(billing_service, "get_provider", lambda: provider)
    return provider


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from accessgate.main import app

    with TestClient(app) as test_client:
        yield test_client
