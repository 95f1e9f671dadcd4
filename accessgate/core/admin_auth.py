"""
Super-admin authorization.

There is exactly one administrator identity per deployment, configured as
SUPER_ADMIN_EMAIL. A caller is the super-admin when their authenticated
account's email matches it (case-insensitive). Every admin action is
audited with the actor's email.
"""
from dataclasses import dataclass
from typing import Literal, Optional

from fastapi import Depends

from accessgate.core.auth import get_current_account_id
from accessgate.core.config import settings
from accessgate.core.errors import PermissionError


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str
    actor_email: str
    actor_type: Literal["super_admin", "system_job"] = "super_admin"

    @property
    def audit_name(self) -> str:
        return self.actor_email


def super_admin_configured() -> bool:
    return bool(settings.SUPER_ADMIN_EMAIL)


def resolve_admin_actor(account_id: str) -> Optional[AdminActor]:
    """Return an AdminActor if the account is the super-admin, else None."""
    from accessgate.features.accounts.service import find_account

    if not super_admin_configured():
        return None
    account = find_account(account_id)
    if account is None or not account.is_super_admin():
        return None
    return AdminActor(actor_id=account.account_id, actor_email=account.email)


def require_super_admin(account_id: str = Depends(get_current_account_id)) -> AdminActor:
    """
    FastAPI dependency: caller must be the configured super-admin.

    Usage:
        @router.post("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_super_admin)):
            ...
    """
    actor = resolve_admin_actor(account_id)
    if actor is None:
        raise PermissionError("Super-admin access required", code="admin_required")
    return actor
