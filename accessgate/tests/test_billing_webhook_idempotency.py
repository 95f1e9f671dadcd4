"""
Test billing webhook processing.

Verifies signature rejection, event application and that duplicate
events are not reprocessed unless an earlier attempt failed.
"""
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from accessgate.core.database import billing_events, get_db_session
from accessgate.features.accounts.service import get_account
from accessgate.features.billing.provider import BillingProviderError, BillingWebhookError, BillingWebhookResult
from accessgate.features.billing.service import process_webhook_event
from accessgate.models.account import SubscriptionStatus

HEADERS = {"stripe-signature": "valid"}


def _event_count(event_id):
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(billing_events).where(billing_events.c.stripe_event_id == event_id)
        ).scalar()


def test_subscription_update_applied_once(make_account, fake_provider, now):
    make_account("acct_1", "payer@example.com", billing_customer_ref="cus_1")
    fake_provider.add_customer("payer@example.com", "cus_1")
    fake_provider.add_subscription("cus_1", "sub_1", "active", created=now - timedelta(days=1), period_end=now + timedelta(days=30))
    fake_provider.webhook_result = BillingWebhookResult(
        event_id="evt_1",
        event_type="customer.subscription.updated",
        customer_id="cus_1",
        subscription_id="sub_1",
        status="active",
        current_period_end=now + timedelta(days=30),
    )

    result = process_webhook_event(HEADERS, b'{"id": "evt_1"}', now=now)
    assert result.event_id == "evt_1"

    account = get_account("acct_1")
    assert account.billing_subscription_status == SubscriptionStatus.ACTIVE
    assert account.billing_subscription_id == "sub_1"
    assert account.billing_period_end == now + timedelta(days=30)

    with get_db_session() as session:
        event = session.execute(select(billing_events).where(billing_events.c.stripe_event_id == "evt_1")).first()
    assert event.processed is True

    # Redelivery of the same event after a later change must not roll it back
    fake_provider.set_status("sub_1", "canceled")
    process_webhook_event(HEADERS, b'{"id": "evt_1"}', now=now)
    assert get_account("acct_1").billing_subscription_status == SubscriptionStatus.ACTIVE
    assert _event_count("evt_1") == 1


def test_event_for_old_subscription_keeps_preferred_one(make_account, fake_provider, now):
    make_account(
        "acct_1",
        "payer@example.com",
        billing_customer_ref="cus_1",
        billing_subscription_id="sub_new",
        billing_subscription_status="active",
    )
    fake_provider.add_customer("payer@example.com", "cus_1")
    fake_provider.add_subscription("cus_1", "sub_old", "canceled", created=now - timedelta(days=60))
    fake_provider.add_subscription("cus_1", "sub_new", "active", created=now - timedelta(days=1), period_end=now + timedelta(days=29))
    fake_provider.webhook_result = BillingWebhookResult(
        event_id="evt_old",
        event_type="customer.subscription.deleted",
        customer_id="cus_1",
        subscription_id="sub_old",
        status="canceled",
    )

    process_webhook_event(HEADERS, b'{"id": "evt_old"}', now=now)

    account = get_account("acct_1")
    assert account.billing_subscription_status == SubscriptionStatus.ACTIVE
    assert account.billing_subscription_id == "sub_new"
    assert account.billing_period_end == now + timedelta(days=29)
    assert account.canceled_at is None


def test_failed_event_is_applied_on_redelivery(make_account, fake_provider, now):
    make_account("acct_1", "buyer@example.com")
    fake_provider.add_customer("buyer@example.com", "cus_7")
    fake_provider.add_subscription("cus_7", "sub_7", "active", created=now, period_end=now + timedelta(days=30))
    fake_provider.webhook_result = BillingWebhookResult(
        event_id="evt_retry",
        event_type="checkout.session.completed",
        account_id="acct_1",
        customer_id="cus_7",
    )
    fake_provider.failing_emails.add("buyer@example.com")

    with pytest.raises(BillingProviderError):
        process_webhook_event(HEADERS, b'{"id": "evt_retry"}', now=now)
    assert get_account("acct_1").billing_subscription_status is None
    with get_db_session() as session:
        event = session.execute(select(billing_events).where(billing_events.c.stripe_event_id == "evt_retry")).first()
    assert event.processed is False
    assert "timeout" in event.error

    fake_provider.failing_emails.clear()
    process_webhook_event(HEADERS, b'{"id": "evt_retry"}', now=now)

    assert get_account("acct_1").billing_subscription_status == SubscriptionStatus.ACTIVE
    assert _event_count("evt_retry") == 1
    with get_db_session() as session:
        event = session.execute(select(billing_events).where(billing_events.c.stripe_event_id == "evt_retry")).first()
    assert event.processed is True
    assert event.error is None


def test_invalid_signature_rejected(fake_provider):
    with pytest.raises(BillingWebhookError) as exc:
        process_webhook_event({"stripe-signature": "forged"}, b"{}")
    assert exc.value.status_code == 400


def test_payment_failed_marks_account(make_account, fake_provider, now):
    make_account("acct_1", "payer@example.com", billing_subscription_id="sub_1", billing_subscription_status="active")
    fake_provider.webhook_result = BillingWebhookResult(
        event_id="evt_2",
        event_type="invoice.payment_failed",
        subscription_id="sub_1",
    )

    process_webhook_event(HEADERS, b'{"id": "evt_2"}', now=now)
    account = get_account("acct_1")
    assert account.payment_failed_at == now
    assert account.past_due_since == now


def test_checkout_completed_triggers_reconcile(make_account, fake_provider, now):
    make_account("acct_1", "buyer@example.com")
    fake_provider.add_customer("buyer@example.com", "cus_7")
    fake_provider.add_subscription("cus_7", "sub_7", "active", created=now, period_end=now + timedelta(days=30))
    fake_provider.webhook_result = BillingWebhookResult(
        event_id="evt_3",
        event_type="checkout.session.completed",
        account_id="acct_1",
        customer_id="cus_7",
        customer_email="buyer@example.com",
    )

    process_webhook_event(HEADERS, b'{"id": "evt_3"}', now=now)
    account = get_account("acct_1")
    assert account.billing_subscription_status == SubscriptionStatus.ACTIVE
    assert account.billing_customer_ref == "cus_7"


def test_unmatched_event_is_recorded(fake_provider, now):
    fake_provider.webhook_result = BillingWebhookResult(
        event_id="evt_4",
        event_type="customer.subscription.updated",
        customer_id="cus_unknown",
        status="active",
    )
    process_webhook_event(HEADERS, b'{"id": "evt_4"}', now=now)
    assert _event_count("evt_4") == 1


def test_billing_disabled_rejects_webhooks(monkeypatch):
    import accessgate.features.billing.service as billing_service

    monkeypatch.setattr(billing_service, "get_provider", lambda: None)
    with pytest.raises(BillingWebhookError) as exc:
        process_webhook_event(HEADERS, b"{}")
    assert exc.value.code == "billing_disabled"
