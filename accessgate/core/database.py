"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for in-memory SQLite)
- Test database support
- Table definitions for accounts, admin audit and billing bookkeeping
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
import logging
import os

from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index, UniqueConstraint
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func, expression

from accessgate.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None

logger = logging.getLogger("accessgate")


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # Single shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on success, rolls back on any exception.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo (SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Accounts: one row per holder; trial, billing and finance-PIN state live together
accounts = Table(
    'accounts',
    metadata,
    Column('account_id', String(100), primary_key=True),
    Column('email', String(320), nullable=False, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('courtesy_access', Boolean, nullable=False, server_default=expression.false()),
    # Trial
    Column('trial_expires_at_override', DateTime(timezone=True), nullable=True),
    Column('trial_modified_by', String(320), nullable=True),
    Column('trial_modified_at', DateTime(timezone=True), nullable=True),
    # Billing (mirrors provider state, never recomputed)
    Column('billing_customer_ref', String(100), nullable=True),
    Column('billing_subscription_id', String(100), nullable=True),
    Column('billing_subscription_status', String(50), nullable=True),
    Column('billing_period_end', DateTime(timezone=True), nullable=True),
    Column('payment_failed_at', DateTime(timezone=True), nullable=True),
    Column('past_due_since', DateTime(timezone=True), nullable=True),
    Column('payment_recovered_at', DateTime(timezone=True), nullable=True),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('cancellation_reason', String(100), nullable=True),
    # Finance PIN
    Column('finance_pin_hash', String(128), nullable=True),
    Column('finance_pin_lock_enabled', Boolean, nullable=False, server_default=expression.true()),
    Column('finance_pin_lock_generation', Integer, nullable=False, server_default='0'),
    Column('finance_pin_failed_attempts', Integer, nullable=False, server_default='0'),
    Column('finance_pin_locked_until', DateTime(timezone=True), nullable=True),
    Column('finance_pin_reset_token_hash', String(64), nullable=True),
    Column('finance_pin_reset_expires_at', DateTime(timezone=True), nullable=True),
    Column('finance_pin_reset_requested_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_accounts_email', 'email'),
    Index('idx_accounts_billing_customer_ref', 'billing_customer_ref'),
    Index('idx_accounts_billing_subscription_id', 'billing_subscription_id'),
    Index('idx_accounts_finance_pin_reset_token_hash', 'finance_pin_reset_token_hash'),
)

# Admin audit log (trial overrides, courtesy grants, admin reconciles)
access_admin_audit = Table(
    'access_admin_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor', String(320), nullable=False),  # admin email or "system_job"
    Column('action', String(100), nullable=False),  # "trial.set_override", "courtesy.grant", etc.
    Column('target_account_id', String(100), nullable=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_access_admin_audit_actor', 'actor'),
    Index('idx_access_admin_audit_action', 'action'),
    Index('idx_access_admin_audit_target', 'target_account_id'),
    Index('idx_access_admin_audit_created_at', 'created_at'),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash for deduplication
    Column('processed', Boolean, nullable=False, server_default=expression.false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_received_at', 'received_at'),
    Index('idx_billing_events_processed', 'processed'),
)

# Scheduled job runs
billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(50), nullable=False),  # success | partial | failed
    Column('stats_json', Text, nullable=True),
    Index('idx_billing_job_runs_job_started', 'job_name', 'started_at'),
)
