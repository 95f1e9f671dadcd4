"""
Finance PIN lock store.

Persistence for the per-account PIN digest, the lock flag, the lock
generation counter and the single outstanding reset token. Every mutation is
one conditional UPDATE inside one transaction, so concurrent requests never
observe a half-applied change:

- issuing a reset token overwrites any previous one (supersession);
- consuming a token stores the new digest and clears the token together,
  and only if the token is still the current one and unexpired;
- enabling the lock bumps the lock generation, which relocks every device
  session that unlocked under the previous generation.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, case, select, update
from sqlalchemy.exc import SQLAlchemyError

from accessgate.core.database import get_db_session, accounts, as_utc
from accessgate.core.errors import NotFoundError, PersistenceError
from accessgate.features.security.hashing import generate_reset_token, hash_token


class PersistenceFailure(PersistenceError):
    code = "persistence_failure"


@dataclass(frozen=True)
class PinState:
    account_id: str
    has_pin: bool
    lock_enabled: bool = True
    lock_generation: int = 0
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    pin_hash: Optional[str] = field(default=None, repr=False)

    def is_locked_out(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass(frozen=True)
class ResetTokenRecord:
    account_id: str
    email: str
    expires_at: Optional[datetime]

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at <= now


@contextmanager
def _store_session():
    try:
        with get_db_session() as session:
            yield session
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"Finance PIN store unavailable: {e.__class__.__name__}")


def _require_account(session, account_id: str) -> None:
    exists = session.execute(
        select(accounts.c.account_id).where(accounts.c.account_id == account_id)
    ).first()
    if not exists:
        raise NotFoundError("Account not found", code="account_not_found")


def get_pin_state(account_id: str) -> PinState:
    """Current PIN state; accounts without a row get the signup defaults."""
    with _store_session() as session:
        row = session.execute(
            select(
                accounts.c.finance_pin_hash,
                accounts.c.finance_pin_lock_enabled,
                accounts.c.finance_pin_lock_generation,
                accounts.c.finance_pin_failed_attempts,
                accounts.c.finance_pin_locked_until,
            ).where(accounts.c.account_id == account_id)
        ).first()
    if row is None:
        return PinState(account_id=account_id, has_pin=False)
    return PinState(
        account_id=account_id,
        has_pin=bool(row.finance_pin_hash),
        lock_enabled=bool(row.finance_pin_lock_enabled),
        lock_generation=int(row.finance_pin_lock_generation or 0),
        failed_attempts=int(row.finance_pin_failed_attempts or 0),
        locked_until=as_utc(row.finance_pin_locked_until),
        pin_hash=row.finance_pin_hash,
    )


def set_pin_hash(
    account_id: str,
    pin_hash: str,
    *,
    now: datetime,
    expected_hash: Optional[str] = None,
    require_expected: bool = False,
) -> bool:
    """Store a new PIN digest and relock every device.

    With require_expected, the write only lands if the stored digest still
    equals expected_hash (None meaning "no PIN yet"); returns False otherwise.
    """
    conditions = [accounts.c.account_id == account_id]
    if require_expected:
        if expected_hash is None:
            conditions.append(accounts.c.finance_pin_hash.is_(None))
        else:
            conditions.append(accounts.c.finance_pin_hash == expected_hash)

    with _store_session() as session:
        result = session.execute(
            update(accounts)
            .where(and_(*conditions))
            .values(
                finance_pin_hash=pin_hash,
                finance_pin_lock_generation=accounts.c.finance_pin_lock_generation + 1,
                finance_pin_failed_attempts=0,
                finance_pin_locked_until=None,
                updated_at=now,
            )
        )
        if result.rowcount == 0:
            _require_account(session, account_id)
            return False
    return True


def clear_pin_hash(account_id: str, *, now: datetime) -> None:
    with _store_session() as session:
        result = session.execute(
            update(accounts)
            .where(accounts.c.account_id == account_id)
            .values(
                finance_pin_hash=None,
                finance_pin_failed_attempts=0,
                finance_pin_locked_until=None,
                updated_at=now,
            )
        )
        if result.rowcount == 0:
            raise NotFoundError("Account not found", code="account_not_found")


def set_lock_enabled(account_id: str, enabled: bool, *, now: datetime) -> PinState:
    """Set the lock flag. Idempotent; only an off-to-on transition bumps the generation.

    The stored digest is kept when the lock is turned off.
    """
    with _store_session() as session:
        result = session.execute(
            update(accounts)
            .where(accounts.c.account_id == account_id)
            .where(accounts.c.finance_pin_lock_enabled != enabled)
            .values(
                finance_pin_lock_enabled=enabled,
                finance_pin_lock_generation=accounts.c.finance_pin_lock_generation + (1 if enabled else 0),
                updated_at=now,
            )
        )
        if result.rowcount == 0:
            _require_account(session, account_id)
    return get_pin_state(account_id)


def record_failed_attempt(account_id: str, *, now: datetime, max_attempts: int, lockout: timedelta) -> PinState:
    """Count a wrong PIN; the attempt that reaches max_attempts starts a lockout."""
    attempts = accounts.c.finance_pin_failed_attempts + 1
    with _store_session() as session:
        session.execute(
            update(accounts)
            .where(accounts.c.account_id == account_id)
            .values(
                finance_pin_failed_attempts=case(
                    (attempts >= max_attempts, 0),
                    else_=attempts,
                ),
                finance_pin_locked_until=case(
                    (attempts >= max_attempts, now + lockout),
                    else_=accounts.c.finance_pin_locked_until,
                ),
            )
        )
    return get_pin_state(account_id)


def clear_failed_attempts(account_id: str) -> None:
    with _store_session() as session:
        session.execute(
            update(accounts)
            .where(accounts.c.account_id == account_id)
            .where(
                (accounts.c.finance_pin_failed_attempts != 0)
                | accounts.c.finance_pin_locked_until.is_not(None)
            )
            .values(finance_pin_failed_attempts=0, finance_pin_locked_until=None)
        )


def issue_reset_token(account_id: str, *, now: datetime, ttl: timedelta) -> str:
    """Create a fresh reset token, superseding any outstanding one.

    Only the token's SHA-256 digest is stored; the raw value is returned once.
    """
    token = generate_reset_token()
    with _store_session() as session:
        result = session.execute(
            update(accounts)
            .where(accounts.c.account_id == account_id)
            .values(
                finance_pin_reset_token_hash=hash_token(token),
                finance_pin_reset_expires_at=now + ttl,
                updated_at=now,
            )
        )
        if result.rowcount == 0:
            raise NotFoundError("Account not found", code="account_not_found")
    return token


def lookup_reset_token(token: str) -> Optional[ResetTokenRecord]:
    if not token:
        return None
    with _store_session() as session:
        row = session.execute(
            select(
                accounts.c.account_id,
                accounts.c.email,
                accounts.c.finance_pin_reset_expires_at,
            ).where(accounts.c.finance_pin_reset_token_hash == hash_token(token))
        ).first()
    if row is None:
        return None
    return ResetTokenRecord(
        account_id=row.account_id,
        email=row.email,
        expires_at=as_utc(row.finance_pin_reset_expires_at),
    )


def consume_reset_token(account_id: str, token: str, new_pin_hash: str, *, now: datetime) -> bool:
    """Store new_pin_hash and clear the token in a single conditional update.

    Returns False when the token is no longer the account's current,
    unexpired token (already used, superseded, or expired meanwhile).
    """
    with _store_session() as session:
        result = session.execute(
            update(accounts)
            .where(accounts.c.account_id == account_id)
            .where(accounts.c.finance_pin_reset_token_hash == hash_token(token))
            .where(accounts.c.finance_pin_reset_expires_at > now)
            .values(
                finance_pin_hash=new_pin_hash,
                finance_pin_reset_token_hash=None,
                finance_pin_reset_expires_at=None,
                finance_pin_lock_generation=accounts.c.finance_pin_lock_generation + 1,
                finance_pin_failed_attempts=0,
                finance_pin_locked_until=None,
                updated_at=now,
            )
        )
        consumed = result.rowcount == 1
    return consumed


def clear_reset_token(account_id: str, token: str) -> None:
    """Withdraw a token, unless a newer one has already replaced it."""
    with _store_session() as session:
        session.execute(
            update(accounts)
            .where(accounts.c.account_id == account_id)
            .where(accounts.c.finance_pin_reset_token_hash == hash_token(token))
            .values(finance_pin_reset_token_hash=None, finance_pin_reset_expires_at=None)
        )


def mark_reset_requested(account_id: str, *, now: datetime) -> None:
    """Start the request cooldown; called once the reset link went out."""
    with _store_session() as session:
        session.execute(
            update(accounts)
            .where(accounts.c.account_id == account_id)
            .values(finance_pin_reset_requested_at=now)
        )


def get_reset_requested_at(account_id: str) -> Optional[datetime]:
    with _store_session() as session:
        value = session.execute(
            select(accounts.c.finance_pin_reset_requested_at).where(accounts.c.account_id == account_id)
        ).scalar()
    return as_utc(value)
