"""
Finance PIN recovery.

Three steps, each its own request:

1. request_reset: the signed-in owner asks for a link; a single-use token is
   issued (superseding any older one) and emailed.
2. verify_reset_token: public; answers only valid / not valid.
3. reset_with_token: public; re-checks the token, validates the new PIN and
   swaps digest-for-token in one update.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

from accessgate.core.config import settings
from accessgate.core.errors import ExpiredError, NotFoundError, RateLimitError
from accessgate.core.logging import log_event
from accessgate.core.metrics import finance_pin_resets_total
from accessgate.features.accounts.service import get_account
from accessgate.features.finance_pin import store
from accessgate.features.notifications.email import EmailDeliveryError, EmailSender, send_pin_reset_email
from accessgate.features.security.hashing import hash_pin, validate_pin_format

INVALID_LINK = "Invalid or expired link"
RESET_PATH = "/reset-finance-pin"


class TokenNotFound(NotFoundError):
    code = "token_not_found"
    status_code = 400


class TokenExpired(ExpiredError):
    code = "token_expired"


@dataclass(frozen=True)
class TokenCheck:
    valid: bool
    error: Optional[str] = None


def _now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def build_reset_link(token: str) -> str:
    return f"{settings.SITE_URL.rstrip('/')}{RESET_PATH}?{urlencode({'token': token})}"


def request_reset(account_id: str, *, now: Optional[datetime] = None, sender: Optional[EmailSender] = None) -> dict:
    current = _now(now)
    account = get_account(account_id)

    last_requested = store.get_reset_requested_at(account_id)
    cooldown = timedelta(seconds=settings.PIN_RESET_COOLDOWN_SECONDS)
    if last_requested is not None and current - last_requested < cooldown:
        raise RateLimitError("A reset link was sent recently. Check your email or try again shortly.", code="pin_reset_cooldown")

    ttl_minutes = settings.PIN_RESET_TOKEN_TTL_MINUTES
    token = store.issue_reset_token(account_id, now=current, ttl=timedelta(minutes=ttl_minutes))
    try:
        send_pin_reset_email(account.email, build_reset_link(token), ttl_minutes, sender=sender)
    except EmailDeliveryError:
        # An undelivered link is withdrawn and does not start the cooldown
        store.clear_reset_token(account_id, token)
        raise
    store.mark_reset_requested(account_id, now=current)

    finance_pin_resets_total.inc(labels={"stage": "requested"})
    log_event("info", "finance_pin.reset_requested", account_id=account_id, event_type="finance_pin.reset_requested")
    return {"message": "A reset link was sent to your email"}


def _resolve_token(token: Optional[str], now: datetime) -> store.ResetTokenRecord:
    record = store.lookup_reset_token(token or "")
    if record is None:
        raise TokenNotFound(INVALID_LINK)
    if record.is_expired(now):
        raise TokenExpired(INVALID_LINK)
    return record


def verify_reset_token(token: Optional[str], *, now: Optional[datetime] = None) -> TokenCheck:
    try:
        _resolve_token(token, _now(now))
    except (TokenNotFound, TokenExpired):
        finance_pin_resets_total.inc(labels={"stage": "link_rejected"})
        return TokenCheck(valid=False, error=INVALID_LINK)
    return TokenCheck(valid=True)


def reset_with_token(token: Optional[str], new_pin: Optional[str], *, now: Optional[datetime] = None) -> dict:
    """Set a new PIN using a reset token.

    Raises:
        TokenNotFound: unknown, superseded or already-used token
        TokenExpired: token past its expiry
        InvalidPinFormat: new_pin is not exactly 4 digits
        PersistenceFailure: the store could not be written
    """
    current = _now(now)
    record = _resolve_token(token, current)
    validate_pin_format(new_pin)

    if not store.consume_reset_token(record.account_id, token, hash_pin(new_pin), now=current):
        # Lost a race with another consume, or a newer token superseded this one
        raise TokenNotFound(INVALID_LINK)

    finance_pin_resets_total.inc(labels={"stage": "completed"})
    log_event("info", "finance_pin.reset_completed", account_id=record.account_id, event_type="finance_pin.reset_completed")
    return {"message": "PIN reset successfully"}
