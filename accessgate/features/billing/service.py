"""
Billing service orchestrator.

Coordinates:
- Provider selection (Stripe when configured)
- On-demand reconciliation (self and admin paths)
- Webhook processing, idempotent on the provider event id

All Stripe-specific code is in stripe_provider.py.
"""
import hashlib
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from accessgate.core.config import settings
from accessgate.core.database import get_db_session, accounts, billing_events
from accessgate.core.errors import NotFoundError
from accessgate.core.logging import log_event
from accessgate.features.accounts.service import (
    find_account,
    find_account_by_customer,
    find_account_by_email,
    find_account_by_subscription,
    get_account,
)
from accessgate.features.audit.service import record_admin_audit
from accessgate.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
)
from accessgate.features.billing.reconcile import ReconcileResult, reconcile_account
from accessgate.features.billing.stripe_provider import StripeProvider
from accessgate.models.account import Account

# Events answered by a full reconcile of the matched account
SUBSCRIPTION_EVENTS = (
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    return StripeProvider()


def require_provider() -> BillingProvider:
    provider = get_provider()
    if provider is None:
        raise BillingProviderError("Billing is not configured", code="billing_disabled")
    return provider


def reconcile_self(account_id: str, *, now: Optional[datetime] = None) -> ReconcileResult:
    return reconcile_account(get_account(account_id), require_provider(), now=now)


def reconcile_by_email(email: str, *, actor: str, now: Optional[datetime] = None) -> ReconcileResult:
    """Admin path: reconcile someone else's account, audited."""
    account = find_account_by_email(email)
    if account is None:
        raise NotFoundError("Account not found", code="account_not_found")
    result = reconcile_account(account, require_provider(), now=now)
    record_admin_audit(
        actor,
        "billing.reconcile",
        target_account_id=account.account_id,
        payload={"status": result.status, "subscription_id": result.subscription_id, "changed": result.changed},
    )
    return result


def _account_for_event(result: BillingWebhookResult) -> Optional[Account]:
    if result.account_id:
        account = find_account(result.account_id)
        if account:
            return account
    if result.subscription_id:
        account = find_account_by_subscription(result.subscription_id)
        if account:
            return account
    if result.customer_id:
        account = find_account_by_customer(result.customer_id)
        if account:
            return account
    if result.customer_email:
        return find_account_by_email(result.customer_email)
    return None


def _mark_payment_failed(account: Account, now: datetime) -> None:
    with get_db_session() as session:
        session.execute(
            update(accounts)
            .where(accounts.c.account_id == account.account_id)
            .values(
                payment_failed_at=now,
                past_due_since=account.past_due_since or now,
                updated_at=now,
            )
        )


def apply_webhook_event(result: BillingWebhookResult, provider: BillingProvider, now: datetime) -> Optional[str]:
    """Apply one verified event. Returns the affected account id, if any."""
    account = _account_for_event(result)
    if account is None:
        log_event(
            "warning",
            "billing.webhook_unmatched",
            event_type=result.event_type,
            extra={"event_id": result.event_id},
        )
        return None

    if result.event_type in SUBSCRIPTION_EVENTS:
        # The account mirrors the preferred subscription, not the one in the event
        reconcile_account(account, provider, now=now)
    elif result.event_type == "invoice.payment_failed":
        _mark_payment_failed(account, now)
    else:
        return None
    return account.account_id


def process_webhook_event(headers: Dict[str, str], body: bytes, *, now: Optional[datetime] = None) -> BillingWebhookResult:
    """
    Process billing webhook event (idempotent).

    1. Verify signature
    2. Check idempotency (skip if already processed; a recorded but failed
       event is applied again on redelivery)
    3. Apply state changes
    4. Mark as processed, or record the error and re-raise

    Raises:
        BillingWebhookError: If signature invalid or billing disabled
    """
    provider = get_provider()
    if not provider:
        raise BillingWebhookError("Billing not enabled", code="billing_disabled")

    result = provider.handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()
    stamp = now or datetime.now(timezone.utc)

    try:
        with get_db_session() as session:
            existing = session.execute(
                select(billing_events.c.id, billing_events.c.processed).where(billing_events.c.stripe_event_id == result.event_id)
            ).first()
            if existing and existing.processed:
                log_event("info", "billing.webhook_duplicate", event_type=result.event_type, extra={"event_id": result.event_id})
                return result
            if existing is None:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=result.event_id,
                        event_type=result.event_type,
                        payload_hash=payload_hash,
                        processed=False,
                    )
                )
            else:
                log_event("info", "billing.webhook_retry", event_type=result.event_type, extra={"event_id": result.event_id})
    except IntegrityError:
        # Another worker recorded the same event first
        return result

    try:
        account_id = apply_webhook_event(result, provider, stamp)
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(processed=True, processed_at=stamp, error=None)
            )
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(error=str(e)[:2000])
            )
        raise

    log_event(
        "info",
        "billing.webhook_processed",
        account_id=account_id,
        event_type=result.event_type,
        extra={"event_id": result.event_id},
    )
    return result
