"""Tests for the scheduled billing reconciliation sweep."""

import json
from datetime import timedelta

from sqlalchemy import select

from accessgate.core.database import billing_job_runs, get_db_session
from accessgate.features.accounts.service import get_account
from accessgate.features.audit.service import list_admin_audit
from accessgate.features.billing.reconcile_job import JOB_NAME, run_reconcile_job
from accessgate.models.account import SubscriptionStatus


def _runs():
    with get_db_session() as session:
        return session.execute(select(billing_job_runs).order_by(billing_job_runs.c.id)).fetchall()


def test_job_fixes_drifted_accounts(make_account, fake_provider, now):
    # Stored as active, but the provider says the card failed
    make_account("acct_drift", "drift@example.com", billing_customer_ref="cus_1", billing_subscription_id="sub_1", billing_subscription_status="active")
    make_account("acct_ok", "ok@example.com", billing_customer_ref="cus_2", billing_subscription_id="sub_2", billing_subscription_status="active")
    make_account("acct_trial", "trial@example.com")

    fake_provider.add_customer("drift@example.com", "cus_1")
    fake_provider.add_subscription("cus_1", "sub_1", "past_due", created=now - timedelta(days=40))
    fake_provider.add_customer("ok@example.com", "cus_2")
    fake_provider.add_subscription("cus_2", "sub_2", "active", created=now - timedelta(days=40))

    summary = run_reconcile_job(now=now)

    assert summary["status"] == "success"
    assert summary["accounts_checked"] == 2
    assert summary["accounts_changed"] == 1
    assert summary["errors"] == []
    assert summary["timestamp"] == now.isoformat()

    assert get_account("acct_drift").billing_subscription_status == SubscriptionStatus.PAST_DUE
    assert "customer:trial@example.com" not in fake_provider.calls

    audit = list_admin_audit("acct_drift")
    assert audit[0]["actor"] == "system_job"
    assert audit[0]["action"] == "billing.reconcile_fix"
    assert list_admin_audit("acct_ok") == []

    runs = _runs()
    assert len(runs) == 1
    assert runs[0].job_name == JOB_NAME
    assert runs[0].status == "success"
    assert json.loads(runs[0].stats_json)["accounts_changed"] == 1


def test_second_run_changes_nothing(make_account, fake_provider, now):
    make_account("acct_1", "drift@example.com", billing_customer_ref="cus_1", billing_subscription_status="active")
    fake_provider.add_customer("drift@example.com", "cus_1")
    fake_provider.add_subscription("cus_1", "sub_1", "canceled", created=now)

    assert run_reconcile_job(now=now)["accounts_changed"] == 1
    assert run_reconcile_job(now=now + timedelta(hours=1))["accounts_changed"] == 0


def test_provider_errors_make_run_partial(make_account, fake_provider, now):
    make_account("acct_bad", "bad@example.com", billing_customer_ref="cus_bad")
    make_account("acct_good", "good@example.com", billing_customer_ref="cus_good")
    fake_provider.failing_emails.add("bad@example.com")
    fake_provider.add_customer("good@example.com", "cus_good")
    fake_provider.add_subscription("cus_good", "sub_g", "active", created=now)

    summary = run_reconcile_job(now=now)

    assert summary["status"] == "partial"
    assert summary["accounts_checked"] == 2
    assert [e["account_id"] for e in summary["errors"]] == ["acct_bad"]
    assert get_account("acct_good").billing_subscription_status == SubscriptionStatus.ACTIVE
    assert _runs()[0].status == "partial"


def test_all_failing_run_is_failed(make_account, fake_provider, now):
    make_account("acct_bad", "bad@example.com", billing_customer_ref="cus_bad")
    fake_provider.failing_emails.add("bad@example.com")
    assert run_reconcile_job(now=now)["status"] == "failed"
