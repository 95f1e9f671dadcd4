"""
Billing reconciliation for a single account.

Reads the provider's view (customer by email, then that customer's
subscriptions) and mirrors it onto the account in one UPDATE. Running it
twice against the same provider state leaves the account unchanged: marker
timestamps are only stamped on the transition that sets them.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import update

from accessgate.core.database import get_db_session, accounts
from accessgate.core.logging import log_event
from accessgate.core.metrics import billing_reconcile_total
from accessgate.features.billing.provider import BillingProvider, BillingProviderError, ProviderSubscription
from accessgate.models.account import Account, SubscriptionStatus

# Statuses that describe the subscription the customer currently cares about
RELEVANT_STATUSES = ("active", "trialing", "past_due")
_FAILED = {SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID}


@dataclass(frozen=True)
class ReconcileResult:
    account_id: str
    status: str
    customer_ref: Optional[str]
    subscription_id: Optional[str]
    current_period_end: Optional[datetime]
    changed: bool

    def to_response(self) -> dict:
        return {
            "success": True,
            "status": self.status,
            "subscription_id": self.subscription_id,
            "current_period_end": int(self.current_period_end.timestamp()) if self.current_period_end else None,
        }


def _normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def choose_subscription(subscriptions: Iterable[ProviderSubscription]) -> Optional[ProviderSubscription]:
    """Newest subscription in a relevant status, else the newest of any status."""
    subs = list(subscriptions)
    if not subs:
        return None
    relevant = [s for s in subs if s.status in RELEVANT_STATUSES]
    pool = relevant or subs
    return max(pool, key=lambda s: s.created)


def billing_changes(
    account: Account,
    *,
    status: SubscriptionStatus,
    customer_ref: Optional[str],
    subscription_id: Optional[str],
    period_end: Optional[datetime],
    now: datetime,
) -> Dict[str, Any]:
    """Column values that bring the account in line with the given provider state."""
    values: Dict[str, Any] = {
        "billing_customer_ref": customer_ref,
        "billing_subscription_id": subscription_id,
        "billing_subscription_status": status.value,
        "billing_period_end": period_end,
    }

    if status == SubscriptionStatus.ACTIVE:
        had_failure = (
            account.payment_failed_at is not None
            or account.past_due_since is not None
            or account.billing_subscription_status in _FAILED
        )
        values["payment_failed_at"] = None
        values["past_due_since"] = None
        values["cancellation_reason"] = None
        if had_failure:
            values["payment_recovered_at"] = now
    elif status in _FAILED and account.past_due_since is None:
        values["past_due_since"] = now

    if status == SubscriptionStatus.CANCELED and account.canceled_at is None:
        values["canceled_at"] = now

    return values


def _differs(account: Account, values: Dict[str, Any]) -> bool:
    for key, value in values.items():
        current = getattr(account, key)
        if isinstance(current, SubscriptionStatus):
            current = current.value
        if current != value:
            return True
    return False


def apply_billing_state(
    account: Account,
    *,
    status: SubscriptionStatus,
    customer_ref: Optional[str],
    subscription_id: Optional[str],
    period_end: Optional[datetime],
    now: Optional[datetime] = None,
) -> bool:
    """Persist provider state onto the account atomically. Returns True if anything changed."""
    stamp = _normalize_now(now)
    values = billing_changes(
        account,
        status=status,
        customer_ref=customer_ref,
        subscription_id=subscription_id,
        period_end=period_end,
        now=stamp,
    )
    if not _differs(account, values):
        return False
    with get_db_session() as session:
        session.execute(
            update(accounts)
            .where(accounts.c.account_id == account.account_id)
            .values(**values, updated_at=stamp)
        )
    return True


def reconcile_account(account: Account, provider: BillingProvider, *, now: Optional[datetime] = None) -> ReconcileResult:
    """Sync one account with the provider.

    Raises:
        BillingProviderError: provider call failed; the account is left untouched
    """
    stamp = _normalize_now(now)
    try:
        customer = provider.find_customer_by_email(account.email)
        chosen = choose_subscription(provider.list_subscriptions(customer.id)) if customer else None
    except BillingProviderError as e:
        billing_reconcile_total.inc(labels={"status": "provider_error"})
        log_event(
            "error",
            "billing.reconcile_failed",
            account_id=account.account_id,
            event_type="billing.reconcile",
            error_code=e.code,
            extra={"error": e.message},
        )
        raise

    if customer is None:
        status, customer_ref, subscription_id, period_end = SubscriptionStatus.INACTIVE, None, None, None
    elif chosen is None:
        status, customer_ref, subscription_id, period_end = SubscriptionStatus.INACTIVE, customer.id, None, None
    else:
        status = SubscriptionStatus.parse(chosen.status)
        customer_ref, subscription_id, period_end = customer.id, chosen.id, chosen.current_period_end

    changed = apply_billing_state(
        account,
        status=status,
        customer_ref=customer_ref,
        subscription_id=subscription_id,
        period_end=period_end,
        now=stamp,
    )
    billing_reconcile_total.inc(labels={"status": status.value})
    log_event(
        "info",
        "billing.reconciled",
        account_id=account.account_id,
        event_type="billing.reconcile",
        extra={"status": status.value, "changed": changed},
    )
    return ReconcileResult(
        account_id=account.account_id,
        status=status.value,
        customer_ref=customer_ref,
        subscription_id=subscription_id,
        current_period_end=period_end,
        changed=changed,
    )
