"""
Scheduled cancellation of delinquent subscriptions.

Accounts stored as past_due for longer than DELINQUENCY_GRACE_DAYS have
their subscription canceled at the provider and are marked canceled with
cancellation_reason="automatic_nonpayment". The provider is asked first: a
subscription that is no longer past_due there is only mirrored, never
canceled. One billing_job_runs row is recorded per run.
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import insert, update

from accessgate.core.config import settings
from accessgate.core.database import get_db_session, accounts, billing_job_runs
from accessgate.core.logging import log_event
from accessgate.core.metrics import billing_delinquency_total
from accessgate.features.accounts.service import iter_delinquent_accounts
from accessgate.features.audit.service import record_admin_audit
from accessgate.features.billing.provider import BillingProvider, BillingProviderError
from accessgate.features.billing.reconcile import apply_billing_state, billing_changes
from accessgate.features.billing.service import require_provider
from accessgate.models.account import Account, SubscriptionStatus

JOB_NAME = "billing.delinquency"
CANCELLATION_REASON = "automatic_nonpayment"
CANCEL_COMMENT = "Canceled automatically: payment overdue beyond the grace period"


def _mark_canceled(account: Account, customer_ref: Optional[str], subscription_id: str, period_end: Optional[datetime], now: datetime) -> None:
    values = billing_changes(
        account,
        status=SubscriptionStatus.CANCELED,
        customer_ref=customer_ref,
        subscription_id=subscription_id,
        period_end=period_end,
        now=now,
    )
    values.update(payment_failed_at=None, past_due_since=None, cancellation_reason=CANCELLATION_REASON)
    with get_db_session() as session:
        session.execute(
            update(accounts)
            .where(accounts.c.account_id == account.account_id)
            .values(**values, updated_at=now)
        )


def cancel_delinquent_account(account: Account, provider: BillingProvider, *, now: datetime) -> bool:
    """Cancel one delinquent account's subscription. Returns False if the provider no longer has it past_due.

    Raises:
        BillingProviderError: provider call failed; the account is left untouched
    """
    current = provider.get_subscription(account.billing_subscription_id)
    if current.status != SubscriptionStatus.PAST_DUE.value:
        apply_billing_state(
            account,
            status=SubscriptionStatus.parse(current.status),
            customer_ref=account.billing_customer_ref or current.customer_id,
            subscription_id=current.id,
            period_end=current.current_period_end,
            now=now,
        )
        return False

    canceled = provider.cancel_subscription(current.id, comment=CANCEL_COMMENT)
    _mark_canceled(account, account.billing_customer_ref or canceled.customer_id, canceled.id, canceled.current_period_end, now)
    billing_delinquency_total.inc(labels={"outcome": "canceled"})
    log_event(
        "warning",
        "billing.delinquency_canceled",
        account_id=account.account_id,
        event_type=JOB_NAME,
        extra={
            "subscription_id": canceled.id,
            "days_overdue": (now - account.past_due_since).days if account.past_due_since else None,
        },
    )
    return True


def run_delinquency_job(
    now: Optional[datetime] = None,
    limit: int = 500,
    provider: Optional[BillingProvider] = None,
    grace_days: Optional[int] = None,
) -> Dict[str, Any]:
    started = now or datetime.now(timezone.utc)
    if provider is None:
        provider = require_provider()
    grace = timedelta(days=grace_days if grace_days is not None else settings.DELINQUENCY_GRACE_DAYS)

    checked = 0
    canceled = 0
    errors = []

    for account in iter_delinquent_accounts(started - grace, limit=limit):
        checked += 1
        if not account.billing_subscription_id:
            errors.append({"account_id": account.account_id, "error": "No subscription on record"})
            continue
        try:
            was_canceled = cancel_delinquent_account(account, provider, now=started)
        except BillingProviderError as e:
            errors.append({"account_id": account.account_id, "error": e.message})
            continue
        if was_canceled:
            canceled += 1
            record_admin_audit(
                "system_job",
                "billing.delinquency_cancel",
                target_account_id=account.account_id,
                payload={"subscription_id": account.billing_subscription_id, "reason": CANCELLATION_REASON},
            )

    if errors and len(errors) == checked:
        status = "failed"
    elif errors:
        status = "partial"
    else:
        status = "success"

    stats = {
        "accounts_checked": checked,
        "subscriptions_canceled": canceled,
        "grace_days": grace.days,
        "errors": errors,
    }
    with get_db_session() as session:
        session.execute(
            insert(billing_job_runs).values(
                job_name=JOB_NAME,
                started_at=started,
                finished_at=datetime.now(timezone.utc),
                status=status,
                stats_json=json.dumps(stats),
            )
        )

    log_event(
        "warning" if errors else "info",
        "billing.delinquency_job_finished",
        event_type=JOB_NAME,
        extra={"status": status, "checked": checked, "canceled": canceled, "errors": len(errors)},
    )
    return {
        "status": status,
        "accounts_checked": checked,
        "subscriptions_canceled": canceled,
        "errors": errors,
        "timestamp": started.isoformat(),
    }
