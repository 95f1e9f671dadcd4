"""Tests for per-account billing reconciliation."""

from datetime import timedelta

import pytest

from accessgate.core.errors import NotFoundError
from accessgate.features.access.service import AccessTier, resolve_access
from accessgate.features.accounts.service import get_account
from accessgate.features.audit.service import list_admin_audit
from accessgate.features.billing.provider import BillingProviderError, ProviderSubscription
from accessgate.features.billing.reconcile import choose_subscription, reconcile_account
from accessgate.features.billing.service import reconcile_by_email, reconcile_self
from accessgate.models.account import SubscriptionStatus


def _sub(sub_id, status, created):
    return ProviderSubscription(id=sub_id, status=status, created=created)


def test_choose_prefers_newest_relevant(now):
    subs = [
        _sub("sub_old_active", "active", now - timedelta(days=60)),
        _sub("sub_new_canceled", "canceled", now - timedelta(days=1)),
        _sub("sub_mid_past_due", "past_due", now - timedelta(days=10)),
    ]
    assert choose_subscription(subs).id == "sub_mid_past_due"


def test_choose_falls_back_to_newest_any_status(now):
    subs = [
        _sub("sub_a", "canceled", now - timedelta(days=60)),
        _sub("sub_b", "incomplete_expired", now - timedelta(days=5)),
    ]
    assert choose_subscription(subs).id == "sub_b"
    assert choose_subscription([]) is None


def test_reconcile_active_subscription(make_account, fake_provider, now):
    account = make_account("acct_1", "payer@example.com", created_at=now - timedelta(days=30))
    fake_provider.add_customer("payer@example.com", "cus_1")
    fake_provider.add_subscription("cus_1", "sub_1", "active", created=now - timedelta(days=3), period_end=now + timedelta(days=27))

    result = reconcile_account(account, fake_provider, now=now)
    assert result.changed is True
    assert result.status == "active"
    assert result.to_response() == {
        "success": True,
        "status": "active",
        "subscription_id": "sub_1",
        "current_period_end": int((now + timedelta(days=27)).timestamp()),
    }

    stored = get_account("acct_1")
    assert stored.billing_customer_ref == "cus_1"
    assert stored.billing_subscription_id == "sub_1"
    assert stored.billing_subscription_status == SubscriptionStatus.ACTIVE
    assert stored.billing_period_end == now + timedelta(days=27)
    assert resolve_access(stored, now).tier == AccessTier.PREMIUM


def test_reconcile_is_idempotent(make_account, fake_provider, now):
    make_account("acct_1", "payer@example.com")
    fake_provider.add_customer("payer@example.com", "cus_1")
    fake_provider.add_subscription("cus_1", "sub_1", "past_due", created=now, period_end=now + timedelta(days=30))

    first = reconcile_account(get_account("acct_1"), fake_provider, now=now)
    snapshot = get_account("acct_1")
    second = reconcile_account(snapshot, fake_provider, now=now + timedelta(hours=1))

    assert first.changed is True
    assert second.changed is False
    again = get_account("acct_1")
    assert again.past_due_since == now
    assert again.updated_at == snapshot.updated_at


def test_recovery_from_past_due_is_stamped(make_account, fake_provider, now):
    make_account("acct_1", "payer@example.com")
    fake_provider.add_customer("payer@example.com", "cus_1")
    fake_provider.add_subscription("cus_1", "sub_1", "past_due", created=now)
    reconcile_account(get_account("acct_1"), fake_provider, now=now)

    fake_provider.set_status("sub_1", "active")
    later = now + timedelta(days=2)
    reconcile_account(get_account("acct_1"), fake_provider, now=later)

    account = get_account("acct_1")
    assert account.billing_subscription_status == SubscriptionStatus.ACTIVE
    assert account.past_due_since is None
    assert account.payment_recovered_at == later


def test_cancellation_is_stamped_once(make_account, fake_provider, now):
    make_account("acct_1", "payer@example.com")
    fake_provider.add_customer("payer@example.com", "cus_1")
    fake_provider.add_subscription("cus_1", "sub_1", "canceled", created=now)

    reconcile_account(get_account("acct_1"), fake_provider, now=now)
    reconcile_account(get_account("acct_1"), fake_provider, now=now + timedelta(days=1))
    assert get_account("acct_1").canceled_at == now


def test_no_customer_means_inactive(make_account, fake_provider, now):
    make_account("acct_1", "nobody@example.com", billing_customer_ref="cus_stale", billing_subscription_status="active")
    result = reconcile_account(get_account("acct_1"), fake_provider, now=now)

    assert result.status == "inactive"
    account = get_account("acct_1")
    assert account.billing_subscription_status == SubscriptionStatus.INACTIVE
    assert account.billing_customer_ref is None
    assert account.billing_subscription_id is None


def test_customer_without_subscriptions_keeps_customer_ref(make_account, fake_provider, now):
    make_account("acct_1", "new@example.com")
    fake_provider.add_customer("new@example.com", "cus_9")
    result = reconcile_account(get_account("acct_1"), fake_provider, now=now)

    assert result.status == "inactive"
    assert get_account("acct_1").billing_customer_ref == "cus_9"


def test_provider_failure_leaves_account_untouched(make_account, fake_provider, now):
    make_account("acct_1", "flaky@example.com", billing_subscription_status="active")
    fake_provider.failing_emails.add("flaky@example.com")

    with pytest.raises(BillingProviderError):
        reconcile_account(get_account("acct_1"), fake_provider, now=now)
    assert get_account("acct_1").billing_subscription_status == SubscriptionStatus.ACTIVE


def test_reconcile_self_uses_configured_provider(make_account, fake_provider, now):
    make_account("acct_1", "payer@example.com")
    fake_provider.add_customer("payer@example.com", "cus_1")
    fake_provider.add_subscription("cus_1", "sub_1", "trialing", created=now)

    result = reconcile_self("acct_1", now=now)
    assert result.status == "trialing"


def test_admin_reconcile_by_email_is_audited(make_account, fake_provider, now):
    make_account("acct_1", "Payer@Example.com")
    fake_provider.add_customer("payer@example.com", "cus_1")
    fake_provider.add_subscription("cus_1", "sub_1", "active", created=now)

    result = reconcile_by_email("payer@example.com", actor="admin@example.com", now=now)
    assert result.account_id == "acct_1"

    audit = list_admin_audit("acct_1")
    assert audit[0]["actor"] == "admin@example.com"
    assert audit[0]["action"] == "billing.reconcile"
    assert audit[0]["payload"]["status"] == "active"

    with pytest.raises(NotFoundError):
        reconcile_by_email("ghost@example.com", actor="admin@example.com", now=now)
