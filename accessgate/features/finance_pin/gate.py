"""
Financial visibility gate.

Decides whether monetary values may be shown. The server-side decision is
validate_pin; FinanceVisibilitySession models one device's Locked/Unlocked
state on top of it.

Rules:
- Lock disabled: every check passes without a PIN (the digest stays stored).
- Lock enabled: a correct 4-digit PIN is required. A missing PIN and a wrong
  PIN produce the same "PIN incorrect" answer.
- Repeated wrong PINs lock the account's PIN checks out for a while.
- Turning the lock on bumps the lock generation; sessions unlocked under an
  older generation fall back to Locked on their next refresh.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from accessgate.core.config import settings
from accessgate.core.errors import ConflictError, PermissionError, RateLimitError, ValidationError
from accessgate.core.logging import log_event
from accessgate.core.metrics import finance_pin_checks_total
from accessgate.features.finance_pin import store
from accessgate.features.finance_pin.store import PinState
from accessgate.features.security.hashing import hash_pin, validate_pin_format, verify_pin

PIN_INCORRECT = "PIN incorrect"
LOCKED_OUT = "Too many incorrect attempts. Try again later."


class VisibilityState(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


@dataclass(frozen=True)
class PinCheckResult:
    verified: bool
    message: Optional[str] = None
    lock_generation: int = 0


def _now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _lockout_window() -> timedelta:
    return timedelta(minutes=settings.FINANCE_PIN_LOCKOUT_MINUTES)


def _ensure_not_locked_out(state: PinState, now: datetime) -> None:
    if state.is_locked_out(now):
        finance_pin_checks_total.inc(labels={"outcome": "locked_out"})
        raise RateLimitError(LOCKED_OUT, code="pin_locked_out")


def _register_failure(account_id: str, now: datetime) -> None:
    state = store.record_failed_attempt(
        account_id,
        now=now,
        max_attempts=settings.FINANCE_PIN_MAX_FAILED_ATTEMPTS,
        lockout=_lockout_window(),
    )
    if state.is_locked_out(now):
        log_event(
            "warning",
            "finance_pin.locked_out",
            account_id=account_id,
            event_type="finance_pin.locked_out",
            extra={"locked_until": state.locked_until},
        )


def validate_pin(account_id: str, attempt: Optional[str], *, now: Optional[datetime] = None) -> PinCheckResult:
    """Check a PIN attempt for the account.

    Raises:
        InvalidPinFormat: attempt is not exactly 4 digits (nothing is hashed)
        RateLimitError: the account is in a wrong-PIN lockout
    """
    validate_pin_format(attempt)
    current = _now(now)
    state = store.get_pin_state(account_id)

    if not state.lock_enabled:
        finance_pin_checks_total.inc(labels={"outcome": "bypass"})
        return PinCheckResult(verified=True, lock_generation=state.lock_generation)

    _ensure_not_locked_out(state, current)

    if not verify_pin(attempt, state.pin_hash):
        _register_failure(account_id, current)
        finance_pin_checks_total.inc(labels={"outcome": "rejected"})
        log_event("info", "finance_pin.rejected", account_id=account_id, event_type="finance_pin.rejected")
        return PinCheckResult(verified=False, message=PIN_INCORRECT, lock_generation=state.lock_generation)

    if state.failed_attempts or state.locked_until is not None:
        store.clear_failed_attempts(account_id)
    finance_pin_checks_total.inc(labels={"outcome": "verified"})
    return PinCheckResult(verified=True, lock_generation=state.lock_generation)


def set_lock_enabled(account_id: str, enabled: bool, *, now: Optional[datetime] = None) -> PinState:
    state = store.set_lock_enabled(account_id, enabled, now=_now(now))
    log_event(
        "info",
        "finance_pin.lock_toggled",
        account_id=account_id,
        event_type="finance_pin.lock_enabled" if enabled else "finance_pin.lock_disabled",
    )
    return state


def get_settings_status(account_id: str) -> dict:
    state = store.get_pin_state(account_id)
    return {"enabled": state.lock_enabled, "has_pin": state.has_pin}


def set_pin(
    account_id: str,
    new_pin: Optional[str],
    *,
    current_pin: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Create the PIN, or change it when one exists (current PIN required)."""
    validate_pin_format(new_pin)
    current = _now(now)
    state = store.get_pin_state(account_id)

    if state.has_pin:
        if not current_pin:
            raise ValidationError("Current PIN is required to change the PIN", code="current_pin_required")
        _ensure_not_locked_out(state, current)
        if not verify_pin(current_pin, state.pin_hash):
            _register_failure(account_id, current)
            raise PermissionError("Current PIN incorrect", code="current_pin_incorrect")

    stored = store.set_pin_hash(
        account_id,
        hash_pin(new_pin),
        now=current,
        expected_hash=state.pin_hash,
        require_expected=True,
    )
    if not stored:
        raise ConflictError("PIN changed by another request; try again", code="pin_changed")
    log_event(
        "info",
        "finance_pin.updated" if state.has_pin else "finance_pin.created",
        account_id=account_id,
        event_type="finance_pin.set",
    )


class FinanceVisibilitySession:
    """Locked/Unlocked state for one (account, device) pair.

    Starts Locked when the account's lock is on and Unlocked when it is off.
    A remembered PIN is kept only for this device and is always re-validated
    through validate_pin on refresh; it never unlocks on its own.
    """

    def __init__(
        self,
        account_id: str,
        *,
        remembered_pin: Optional[str] = None,
        validator: Callable[..., PinCheckResult] = validate_pin,
        state_loader: Callable[[str], PinState] = store.get_pin_state,
    ):
        self.account_id = account_id
        self.remembered_pin = remembered_pin
        self._validator = validator
        self._state_loader = state_loader
        self._unlocked_generation: Optional[int] = None
        self._hidden = False
        self.state = VisibilityState.LOCKED
        self.refresh()

    @property
    def is_visible(self) -> bool:
        return self.state == VisibilityState.UNLOCKED

    def refresh(self, *, now: Optional[datetime] = None) -> VisibilityState:
        pin_state = self._state_loader(self.account_id)

        if not pin_state.lock_enabled:
            self.state = VisibilityState.LOCKED if self._hidden else VisibilityState.UNLOCKED
            return self.state

        if self.state == VisibilityState.UNLOCKED and self._unlocked_generation == pin_state.lock_generation:
            return self.state

        self.state = VisibilityState.LOCKED
        self._unlocked_generation = None
        if self.remembered_pin and not self._hidden:
            try:
                result = self._validator(self.account_id, self.remembered_pin, now=now)
            except (ValidationError, RateLimitError):
                result = PinCheckResult(verified=False)
            if result.verified:
                self._mark_unlocked(pin_state.lock_generation)
            else:
                self.remembered_pin = None
        return self.state

    def unlock(self, attempt: str, *, remember: bool = False, now: Optional[datetime] = None) -> PinCheckResult:
        result = self._validator(self.account_id, attempt, now=now)
        if result.verified:
            self._hidden = False
            self._mark_unlocked(result.lock_generation)
            if remember:
                self.remembered_pin = attempt
        return result

    def reveal(self) -> bool:
        """Show values without a PIN; only possible while the lock is off."""
        pin_state = self._state_loader(self.account_id)
        if pin_state.lock_enabled:
            return False
        self._hidden = False
        self.state = VisibilityState.UNLOCKED
        return True

    def hide(self) -> None:
        self._hidden = True
        self.state = VisibilityState.LOCKED
        self._unlocked_generation = None

    def forget_device(self) -> None:
        self.remembered_pin = None

    def _mark_unlocked(self, generation: int) -> None:
        self.state = VisibilityState.UNLOCKED
        self._unlocked_generation = generation
