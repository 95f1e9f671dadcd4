"""
Account lookups and account-level admin mutations.

Accounts are created at signup with trial defaults: no override, no billing
state, finance-PIN lock enabled with no PIN yet.
"""
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError

from accessgate.core.database import get_db_session, accounts
from accessgate.core.errors import ConflictError, NotFoundError
from accessgate.core.logging import log_event
from accessgate.features.audit.service import record_admin_audit
from accessgate.models.account import Account


def _normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def create_account(account_id: str, email: str, *, created_at: Optional[datetime] = None) -> Account:
    created = _normalize_now(created_at)
    try:
        with get_db_session() as session:
            session.execute(
                insert(accounts).values(
                    account_id=account_id,
                    email=email.strip(),
                    created_at=created,
                    courtesy_access=False,
                    finance_pin_lock_enabled=True,
                    finance_pin_lock_generation=0,
                    finance_pin_failed_attempts=0,
                    updated_at=created,
                )
            )
    except IntegrityError:
        raise ConflictError("Account already exists", code="account_exists")
    log_event("info", "account.created", account_id=account_id, event_type="account.created")
    return get_account(account_id)


def find_account(account_id: str) -> Optional[Account]:
    with get_db_session() as session:
        row = session.execute(select(accounts).where(accounts.c.account_id == account_id)).first()
    return Account.from_row(row) if row else None


def get_account(account_id: str) -> Account:
    account = find_account(account_id)
    if account is None:
        raise NotFoundError("Account not found", code="account_not_found")
    return account


def find_account_by_email(email: str) -> Optional[Account]:
    with get_db_session() as session:
        row = session.execute(
            select(accounts).where(func.lower(accounts.c.email) == email.strip().lower())
        ).first()
    return Account.from_row(row) if row else None


def find_account_by_subscription(subscription_id: str) -> Optional[Account]:
    with get_db_session() as session:
        row = session.execute(
            select(accounts).where(accounts.c.billing_subscription_id == subscription_id)
        ).first()
    return Account.from_row(row) if row else None


def find_account_by_customer(customer_ref: str) -> Optional[Account]:
    with get_db_session() as session:
        row = session.execute(
            select(accounts).where(accounts.c.billing_customer_ref == customer_ref)
        ).first()
    return Account.from_row(row) if row else None


def iter_accounts(*, only_billing_customers: bool = False, limit: Optional[int] = None) -> Iterable[Account]:
    query = select(accounts).order_by(accounts.c.created_at.asc())
    if only_billing_customers:
        query = query.where(accounts.c.billing_customer_ref.is_not(None))
    if limit:
        query = query.limit(limit)
    with get_db_session() as session:
        rows = session.execute(query).fetchall()
    return [Account.from_row(row) for row in rows]


def iter_delinquent_accounts(past_due_before: datetime, *, limit: Optional[int] = None) -> Iterable[Account]:
    """Accounts whose subscription has been past_due since before the cutoff."""
    query = (
        select(accounts)
        .where(accounts.c.billing_subscription_status == "past_due")
        .where(accounts.c.past_due_since.is_not(None))
        .where(accounts.c.past_due_since <= past_due_before)
        .order_by(accounts.c.past_due_since.asc())
    )
    if limit:
        query = query.limit(limit)
    with get_db_session() as session:
        rows = session.execute(query).fetchall()
    return [Account.from_row(row) for row in rows]


def set_courtesy_access(account_id: str, enabled: bool, *, actor: str, now: Optional[datetime] = None) -> Account:
    """Grant or revoke indefinite free access. Audited."""
    stamp = _normalize_now(now)
    with get_db_session() as session:
        result = session.execute(
            update(accounts)
            .where(accounts.c.account_id == account_id)
            .values(courtesy_access=enabled, updated_at=stamp)
        )
        if result.rowcount == 0:
            raise NotFoundError("Account not found", code="account_not_found")
        record_admin_audit(
            actor,
            "courtesy.grant" if enabled else "courtesy.revoke",
            target_account_id=account_id,
            payload={"enabled": enabled},
            session=session,
        )
    log_event(
        "info",
        "account.courtesy_changed",
        account_id=account_id,
        event_type="courtesy.grant" if enabled else "courtesy.revoke",
        extra={"actor": actor},
    )
    return get_account(account_id)
