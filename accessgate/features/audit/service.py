"""
Admin audit trail.

Every privileged mutation (trial overrides, courtesy grants, admin-triggered
reconciles, scheduled job corrections) writes one row to access_admin_audit.
Callers that already hold a session pass it in so the audit row commits or
rolls back together with the change it describes.
"""
import json
from typing import Optional

from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from accessgate.core.database import get_db_session, access_admin_audit
from accessgate.core.errors import PersistenceError


def record_admin_audit(
    actor: str,
    action: str,
    target_account_id: Optional[str] = None,
    payload: Optional[dict] = None,
    *,
    session: Optional[Session] = None,
) -> None:
    """
    Record an admin action in the audit log.

    Args:
        actor: Admin email, or "system_job" for scheduled runs
        action: Action name (e.g., "trial.set_override", "courtesy.grant")
        target_account_id: Account affected by the action
        payload: Additional context (JSON-serialized)
        session: Existing session to join; a new one is opened otherwise
    """
    stmt = insert(access_admin_audit).values(
        actor=actor,
        action=action,
        target_account_id=target_account_id,
        payload_json=json.dumps(payload, default=str) if payload else None,
    )
    try:
        if session is not None:
            session.execute(stmt)
            return
        with get_db_session() as own_session:
            own_session.execute(stmt)
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to write admin audit: {e.__class__.__name__}", code="admin_audit_failed")


def list_admin_audit(target_account_id: Optional[str] = None, limit: int = 100) -> list[dict]:
    query = select(access_admin_audit).order_by(access_admin_audit.c.id.desc()).limit(limit)
    if target_account_id:
        query = query.where(access_admin_audit.c.target_account_id == target_account_id)
    with get_db_session() as session:
        rows = session.execute(query).fetchall()
    return [
        {
            "actor": row.actor,
            "action": row.action,
            "target_account_id": row.target_account_id,
            "payload": json.loads(row.payload_json) if row.payload_json else None,
            "created_at": row.created_at,
        }
        for row in rows
    ]
