"""
Trial lifecycle.

An account's trial ends at its admin override when one is set, otherwise at
created_at + TRIAL_LENGTH_DAYS. The trial is still active at the end instant.
Overrides are set and cleared only by the super-admin and are audited.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Union

from sqlalchemy import update

from accessgate.core.config import settings
from accessgate.core.database import get_db_session, accounts
from accessgate.core.errors import NotFoundError, ValidationError
from accessgate.core.logging import log_event
from accessgate.features.accounts.service import get_account, iter_accounts
from accessgate.features.audit.service import record_admin_audit
from accessgate.models.account import Account, SubscriptionStatus

SECONDS_PER_DAY = 86400
PAYING_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}


@dataclass(frozen=True)
class TrialStatus:
    trial_end: datetime
    is_expired: bool
    days_remaining: int
    has_custom_expiration: bool


def _normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def trial_end(account: Account, *, trial_length_days: Optional[int] = None) -> datetime:
    if account.trial_expires_at_override is not None:
        return account.trial_expires_at_override
    days = trial_length_days if trial_length_days is not None else settings.TRIAL_LENGTH_DAYS
    return account.created_at + timedelta(days=days)


def is_trial_expired(account: Account, now: Optional[datetime] = None) -> bool:
    return _normalize_now(now) > trial_end(account)


def days_remaining(account: Account, now: Optional[datetime] = None) -> int:
    remaining = (trial_end(account) - _normalize_now(now)).total_seconds()
    if remaining <= 0:
        return 0
    return math.ceil(remaining / SECONDS_PER_DAY)


def trial_status(account: Account, now: Optional[datetime] = None) -> TrialStatus:
    current = _normalize_now(now)
    return TrialStatus(
        trial_end=trial_end(account),
        is_expired=is_trial_expired(account, current),
        days_remaining=days_remaining(account, current),
        has_custom_expiration=account.trial_expires_at_override is not None,
    )


def parse_expiration(value: Union[str, datetime, None]) -> datetime:
    """Accept an aware/naive datetime or an ISO-8601 string; naive means UTC."""
    if value is None or value == "":
        raise ValidationError("expiration_date is required", code="invalid_date")
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            raise ValidationError("Invalid date", code="invalid_date")
    else:
        raise ValidationError("Invalid date", code="invalid_date")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _write_override(account_id: str, value: Optional[datetime], *, actor: str, action: str, now: datetime) -> None:
    with get_db_session() as session:
        result = session.execute(
            update(accounts)
            .where(accounts.c.account_id == account_id)
            .values(
                trial_expires_at_override=value,
                trial_modified_by=actor,
                trial_modified_at=now,
                updated_at=now,
            )
        )
        if result.rowcount == 0:
            raise NotFoundError("Account not found", code="account_not_found")
        record_admin_audit(
            actor,
            action,
            target_account_id=account_id,
            payload={"trial_expires_at": value.isoformat() if value else None},
            session=session,
        )


def set_override(account_id: str, expiration: Union[str, datetime], *, actor: str, now: Optional[datetime] = None) -> Account:
    value = parse_expiration(expiration)
    stamp = _normalize_now(now)
    _write_override(account_id, value, actor=actor, action="trial.set_override", now=stamp)
    log_event(
        "info",
        "trial.override_set",
        account_id=account_id,
        event_type="trial.set_override",
        extra={"actor": actor, "trial_expires_at": value.isoformat()},
    )
    return get_account(account_id)


def clear_override(account_id: str, *, actor: str, now: Optional[datetime] = None) -> Account:
    """Revert to the default created_at + TRIAL_LENGTH_DAYS formula."""
    stamp = _normalize_now(now)
    _write_override(account_id, None, actor=actor, action="trial.clear_override", now=stamp)
    log_event("info", "trial.override_cleared", account_id=account_id, event_type="trial.clear_override", extra={"actor": actor})
    return get_account(account_id)


def describe_trial(account: Account, now: Optional[datetime] = None) -> dict:
    status = trial_status(account, now)
    return {
        "id": account.account_id,
        "email": account.email,
        "created_at": account.created_at.isoformat(),
        "trial_end_date": status.trial_end.isoformat(),
        "is_expired": status.is_expired,
        "days_remaining": status.days_remaining,
        "has_custom_expiration": status.has_custom_expiration,
        "subscription_status": account.billing_subscription_status.value if account.billing_subscription_status else None,
        "trial_modified_by": account.trial_modified_by,
        "trial_modified_at": account.trial_modified_at.isoformat() if account.trial_modified_at else None,
    }


def list_trial_accounts(now: Optional[datetime] = None) -> List[dict]:
    """Accounts still governed by the trial: not super-admin, not courtesy, not paying."""
    current = _normalize_now(now)
    listed = [
        describe_trial(account, current)
        for account in iter_accounts()
        if not account.is_super_admin()
        and not account.courtesy_access
        and account.billing_subscription_status not in PAYING_STATUSES
    ]
    return sorted(listed, key=lambda item: (item["days_remaining"], item["trial_end_date"]))
