"""API tests for /subscription/status, /admin/* and /billing/*."""

from datetime import datetime, timedelta, timezone

import pytest

from accessgate.core.config import settings
from accessgate.features.accounts.service import get_account
from accessgate.features.audit.service import list_admin_audit
from accessgate.models.account import SubscriptionStatus

ADMIN = {"X-User-Id": "acct_admin"}


def _utcnow():
    return datetime.now(timezone.utc)


@pytest.fixture
def admin(make_account):
    return make_account("acct_admin", "admin@example.com", created_at=_utcnow() - timedelta(days=400))


def test_fresh_signup_is_on_trial(client, make_account):
    make_account("acct_1", created_at=_utcnow())
    resp = client.get("/subscription/status", headers={"X-User-Id": "acct_1"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["subscribed"] is True
    assert body["account_type"] == "none"
    assert body["tier"] == "trial_active"
    assert body["trial_days_remaining"] == 7


def test_expired_trial_is_denied(client, make_account):
    make_account("acct_1", created_at=_utcnow() - timedelta(days=10))
    body = client.get("/subscription/status", headers={"X-User-Id": "acct_1"}).json()
    assert body["subscribed"] is False
    assert body["account_type"] == "none"
    assert body["reason"] == "expired_trial"


def test_admin_always_has_access(client, admin):
    body = client.get("/subscription/status", headers=ADMIN).json()
    assert body["subscribed"] is True
    assert body["account_type"] == "admin"
    assert body["current_period_end"] is None


def test_unknown_account_is_404(client):
    resp = client.get("/subscription/status", headers={"X-User-Id": "ghost"})
    assert resp.status_code == 404


def test_status_refresh_reconciles_first(client, make_account, fake_provider):
    make_account("acct_1", "payer@example.com", created_at=_utcnow() - timedelta(days=30))
    fake_provider.add_customer("payer@example.com", "cus_1")
    fake_provider.add_subscription("cus_1", "sub_1", "active", created=_utcnow(), period_end=_utcnow() + timedelta(days=30))

    stale = client.get("/subscription/status", headers={"X-User-Id": "acct_1"}).json()
    assert stale["subscribed"] is False

    fresh = client.get("/subscription/status", params={"refresh": "true"}, headers={"X-User-Id": "acct_1"}).json()
    assert fresh["subscribed"] is True
    assert fresh["account_type"] == "premium"


def test_admin_trial_actions(client, admin, make_account):
    make_account("acct_1", created_at=_utcnow() - timedelta(days=30))

    listed = client.post("/admin/trial", headers=ADMIN, json={"action": "list_trial_users"}).json()
    assert [u["id"] for u in listed["users"]] == ["acct_1"]
    assert listed["users"][0]["is_expired"] is True

    expiration = (_utcnow() + timedelta(days=14)).isoformat()
    resp = client.post(
        "/admin/trial",
        headers=ADMIN,
        json={"action": "set_trial_expiration", "user_id": "acct_1", "expiration_date": expiration},
    )
    assert resp.status_code == 200
    user = resp.json()["user"]
    assert user["has_custom_expiration"] is True
    assert user["trial_modified_by"] == "admin@example.com"

    status = client.get("/subscription/status", headers={"X-User-Id": "acct_1"}).json()
    assert status["tier"] == "trial_active"

    resp = client.post("/admin/trial", headers=ADMIN, json={"action": "remove_custom_expiration", "user_id": "acct_1"})
    assert resp.json()["user"]["has_custom_expiration"] is False

    actions = [entry["action"] for entry in list_admin_audit("acct_1")]
    assert actions == ["trial.clear_override", "trial.set_override"]


def test_admin_trial_validation(client, admin, make_account):
    make_account("acct_1")
    missing_user = client.post("/admin/trial", headers=ADMIN, json={"action": "set_trial_expiration"})
    assert missing_user.status_code == 400

    bad_date = client.post(
        "/admin/trial",
        headers=ADMIN,
        json={"action": "set_trial_expiration", "user_id": "acct_1", "expiration_date": "someday"},
    )
    assert bad_date.status_code == 400
    assert bad_date.json()["code"] == "invalid_date"

    unknown = client.post(
        "/admin/trial",
        headers=ADMIN,
        json={"action": "set_trial_expiration", "user_id": "ghost", "expiration_date": "2030-01-01"},
    )
    assert unknown.status_code == 404


def test_non_admin_is_forbidden(client, admin, make_account):
    make_account("acct_1")
    for path, body in [
        ("/admin/trial", {"action": "list_trial_users"}),
        ("/admin/courtesy", {"user_id": "acct_1", "enabled": True}),
    ]:
        resp = client.post(path, headers={"X-User-Id": "acct_1"}, json=body)
        assert resp.status_code == 403
        assert resp.json()["code"] == "admin_required"


def test_no_admin_configured_forbids_everyone(client, admin, monkeypatch):
    monkeypatch.setattr(settings, "SUPER_ADMIN_EMAIL", None)
    resp = client.post("/admin/trial", headers=ADMIN, json={"action": "list_trial_users"})
    assert resp.status_code == 403


def test_courtesy_grant_and_revoke(client, admin, make_account):
    make_account("acct_1", created_at=_utcnow() - timedelta(days=30))

    resp = client.post("/admin/courtesy", headers=ADMIN, json={"user_id": "acct_1", "enabled": True})
    assert resp.json() == {"success": True, "user_id": "acct_1", "courtesy_access": True}
    status = client.get("/subscription/status", headers={"X-User-Id": "acct_1"}).json()
    assert status["account_type"] == "amigo"

    client.post("/admin/courtesy", headers=ADMIN, json={"user_id": "acct_1", "enabled": False})
    status = client.get("/subscription/status", headers={"X-User-Id": "acct_1"}).json()
    assert status["subscribed"] is False

    actions = [entry["action"] for entry in list_admin_audit("acct_1")]
    assert actions == ["courtesy.revoke", "courtesy.grant"]


def test_billing_reconcile_self(client, make_account, fake_provider):
    period_end = datetime(2030, 1, 1, tzinfo=timezone.utc)
    make_account("acct_1", "payer@example.com")
    fake_provider.add_customer("payer@example.com", "cus_1")
    fake_provider.add_subscription("cus_1", "sub_1", "active", created=_utcnow(), period_end=period_end)

    resp = client.post("/billing/reconcile", headers={"X-User-Id": "acct_1"})
    assert resp.status_code == 200
    assert resp.json() == {
        "success": True,
        "status": "active",
        "subscription_id": "sub_1",
        "current_period_end": int(period_end.timestamp()),
    }


def test_billing_reconcile_admin_path(client, admin, make_account, fake_provider):
    make_account("acct_1", "payer@example.com")
    fake_provider.add_customer("payer@example.com", "cus_1")
    fake_provider.add_subscription("cus_1", "sub_1", "past_due", created=_utcnow())

    forbidden = client.post(
        "/billing/reconcile",
        headers={"X-User-Id": "acct_1"},
        json={"admin_action": True, "email_to_fix": "payer@example.com"},
    )
    assert forbidden.status_code == 403

    resp = client.post("/billing/reconcile", headers=ADMIN, json={"admin_action": True, "email_to_fix": "payer@example.com"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "past_due"
    assert list_admin_audit("acct_1")[0]["actor"] == "admin@example.com"


def test_billing_disabled_is_503(client, make_account, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    make_account("acct_1")
    resp = client.post("/billing/reconcile", headers={"X-User-Id": "acct_1"})
    assert resp.status_code == 503
    assert resp.json()["code"] == "billing_disabled"


def test_billing_provider_failure_is_surfaced(client, make_account, fake_provider):
    make_account("acct_1", "flaky@example.com")
    fake_provider.failing_emails.add("flaky@example.com")
    resp = client.post("/billing/reconcile", headers={"X-User-Id": "acct_1"})
    assert resp.status_code == 500
    assert resp.json()["code"] == "billing_provider_error"


def test_webhook_endpoint(client, make_account, fake_provider):
    from accessgate.features.billing.provider import BillingWebhookResult

    make_account("acct_1", "payer@example.com", billing_customer_ref="cus_1")
    fake_provider.add_customer("payer@example.com", "cus_1")
    fake_provider.add_subscription("cus_1", "sub_1", "active", created=_utcnow())
    fake_provider.webhook_result = BillingWebhookResult(
        event_id="evt_http",
        event_type="customer.subscription.updated",
        customer_id="cus_1",
        subscription_id="sub_1",
        status="active",
    )

    bad = client.post("/billing/webhook", content=b"{}", headers={"stripe-signature": "forged"})
    assert bad.status_code == 400

    ok = client.post("/billing/webhook", content=b'{"id": "evt_http"}', headers={"stripe-signature": "valid"})
    assert ok.status_code == 200
    assert ok.json() == {"received": True, "event_id": "evt_http"}
    assert get_account("acct_1").billing_subscription_status == SubscriptionStatus.ACTIVE


def test_webhook_processing_runs_off_the_event_loop(client, make_account, fake_provider, monkeypatch):
    import accessgate.api.billing as billing_api
    from accessgate.features.billing.provider import BillingWebhookResult

    make_account("acct_1", "payer@example.com", billing_customer_ref="cus_1")
    fake_provider.webhook_result = BillingWebhookResult(event_id="evt_pool", event_type="invoice.payment_failed", customer_id="cus_1")

    offloaded = []
    original = billing_api.run_in_threadpool

    async def recording_threadpool(func, *args, **kwargs):
        offloaded.append(func.__name__)
        return await original(func, *args, **kwargs)

    monkeypatch.setattr(billing_api, "run_in_threadpool", recording_threadpool)
    resp = client.post("/billing/webhook", content=b'{"id": "evt_pool"}', headers={"stripe-signature": "valid"})
    assert resp.status_code == 200
    assert offloaded == ["process_webhook_event"]
    assert get_account("acct_1").payment_failed_at is not None
