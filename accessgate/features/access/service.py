"""
Access tier resolution.

Precedence, first match wins:

1. super-admin (email equals SUPER_ADMIN_EMAIL)  -> admin, no expiry
2. courtesy_access                               -> courtesy, no expiry
3. billing status active | trialing              -> premium, expiry = billing period end
4. trial not expired                             -> trial_active, expiry = trial end
5. otherwise                                     -> none, with a denial reason

resolve_access is pure: it reads only the Account snapshot, the clock and
the configured super-admin identity.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from accessgate.core.logging import log_event
from accessgate.core.metrics import access_decisions_total
from accessgate.features.trial.service import days_remaining, is_trial_expired, trial_end
from accessgate.models.account import Account, SubscriptionStatus


class AccessTier(str, Enum):
    ADMIN = "admin"
    COURTESY = "courtesy"
    PREMIUM = "premium"
    TRIAL_ACTIVE = "trial_active"
    NONE = "none"


class DenialReason(str, Enum):
    EXPIRED_TRIAL = "expired_trial"
    NO_SUBSCRIPTION = "no_subscription"
    PAYMENT_FAILED = "payment_failed"


# account_type values of GET /subscription/status
ACCOUNT_TYPE_BY_TIER = {
    AccessTier.ADMIN: "admin",
    AccessTier.COURTESY: "amigo",
    AccessTier.PREMIUM: "premium",
    AccessTier.TRIAL_ACTIVE: "none",
    AccessTier.NONE: "none",
}

_PAYING = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
_PAYMENT_FAILED = {SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID}


@dataclass(frozen=True)
class AccessDecision:
    access_granted: bool
    tier: AccessTier
    period_end: Optional[datetime]
    message: str
    reason: Optional[DenialReason] = None
    trial_days_remaining: Optional[int] = None

    @property
    def account_type(self) -> str:
        return ACCOUNT_TYPE_BY_TIER[self.tier]


def _normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def denial_reason(account: Account) -> DenialReason:
    status = account.billing_subscription_status
    if status in _PAYMENT_FAILED:
        return DenialReason.PAYMENT_FAILED
    if status is None or status == SubscriptionStatus.INACTIVE:
        return DenialReason.EXPIRED_TRIAL
    return DenialReason.NO_SUBSCRIPTION


_DENIAL_MESSAGES = {
    DenialReason.PAYMENT_FAILED: "Payment failed. Update your payment method to restore access.",
    DenialReason.NO_SUBSCRIPTION: "No active subscription.",
    DenialReason.EXPIRED_TRIAL: "Your free trial has ended. Subscribe to continue.",
}


def resolve_access(account: Account, now: Optional[datetime] = None, *, super_admin_email: Optional[str] = None) -> AccessDecision:
    current = _normalize_now(now)

    if account.is_super_admin(super_admin_email):
        return AccessDecision(True, AccessTier.ADMIN, None, "Administrator access")

    if account.courtesy_access:
        return AccessDecision(True, AccessTier.COURTESY, None, "Courtesy access granted")

    if account.billing_subscription_status in _PAYING:
        return AccessDecision(True, AccessTier.PREMIUM, account.billing_period_end, "Active subscription")

    if not is_trial_expired(account, current):
        remaining = days_remaining(account, current)
        return AccessDecision(
            True,
            AccessTier.TRIAL_ACTIVE,
            trial_end(account),
            f"Free trial active: {remaining} day(s) remaining",
            trial_days_remaining=remaining,
        )

    reason = denial_reason(account)
    return AccessDecision(False, AccessTier.NONE, None, _DENIAL_MESSAGES[reason], reason=reason, trial_days_remaining=0)


def record_access_decision(account: Account, decision: AccessDecision) -> None:
    access_decisions_total.inc(labels={"tier": decision.tier.value})
    if not decision.access_granted:
        log_event(
            "info",
            "access.denied",
            account_id=account.account_id,
            event_type="access.denied",
            extra={"reason": decision.reason.value if decision.reason else None},
        )


def subscription_status_payload(account: Account, decision: AccessDecision) -> dict:
    """Body of GET /subscription/status."""
    if decision.tier in (AccessTier.ADMIN, AccessTier.COURTESY):
        status = "active"
    elif account.billing_subscription_status is not None:
        status = account.billing_subscription_status.value
    elif decision.tier == AccessTier.TRIAL_ACTIVE:
        status = "trial"
    else:
        status = "inactive"

    period_end = decision.period_end
    return {
        "subscribed": decision.access_granted,
        "account_type": decision.account_type,
        "tier": decision.tier.value,
        "subscription_status": status,
        "current_period_end": period_end.isoformat() if period_end else None,
        "message": decision.message,
        "reason": decision.reason.value if decision.reason else None,
        "trial_days_remaining": decision.trial_days_remaining,
    }
