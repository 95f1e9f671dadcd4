"""
Scheduled billing reconciliation.

Runs reconcile_account over every account that has a billing customer
reference, records one billing_job_runs row per run and audits each account
whose state changed with actor="system_job". A provider failure on one
account is recorded and the sweep moves on; the run is then "partial".
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import insert

from accessgate.core.database import get_db_session, billing_job_runs
from accessgate.core.logging import log_event
from accessgate.features.accounts.service import iter_accounts
from accessgate.features.audit.service import record_admin_audit
from accessgate.features.billing.provider import BillingProvider, BillingProviderError
from accessgate.features.billing.reconcile import reconcile_account
from accessgate.features.billing.service import require_provider

JOB_NAME = "billing.reconcile"


def run_reconcile_job(now: Optional[datetime] = None, limit: int = 500, provider: Optional[BillingProvider] = None) -> Dict[str, Any]:
    started = now or datetime.now(timezone.utc)
    if provider is None:
        provider = require_provider()

    checked = 0
    changed = 0
    errors = []

    for account in iter_accounts(only_billing_customers=True, limit=limit):
        checked += 1
        try:
            result = reconcile_account(account, provider, now=started)
        except BillingProviderError as e:
            errors.append({"account_id": account.account_id, "error": e.message})
            continue
        if result.changed:
            changed += 1
            record_admin_audit(
                "system_job",
                "billing.reconcile_fix",
                target_account_id=account.account_id,
                payload={"status": result.status, "subscription_id": result.subscription_id},
            )

    if errors and len(errors) == checked:
        status = "failed"
    elif errors:
        status = "partial"
    else:
        status = "success"

    stats = {
        "accounts_checked": checked,
        "accounts_changed": changed,
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
        "billing.reconcile_job_finished",
        event_type=JOB_NAME,
        extra={"status": status, "checked": checked, "changed": changed, "errors": len(errors)},
    )
    return {
        "status": status,
        "accounts_checked": checked,
        "accounts_changed": changed,
        "errors": errors,
        "timestamp": started.isoformat(),
    }
