"""
Super-admin API routes.

- POST /admin/trial     list_trial_users | set_trial_expiration | remove_custom_expiration
- POST /admin/courtesy  grant or revoke courtesy access

Non-admin callers get 403.
"""
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from accessgate.core.admin_auth import AdminActor, require_super_admin
from accessgate.core.errors import ValidationError
from accessgate.features.accounts.service import set_courtesy_access
from accessgate.features.trial.service import clear_override, describe_trial, list_trial_accounts, set_override

router = APIRouter(prefix="/admin", tags=["admin"])


class TrialActionRequest(BaseModel):
    action: Literal["list_trial_users", "set_trial_expiration", "remove_custom_expiration"]
    user_id: Optional[str] = None
    expiration_date: Optional[str] = None


class CourtesyRequest(BaseModel):
    user_id: str
    enabled: bool


@router.post("/trial")
def manage_trial(body: TrialActionRequest, actor: AdminActor = Depends(require_super_admin)):
    if body.action == "list_trial_users":
        users = list_trial_accounts()
        return {"success": True, "users": users, "total": len(users)}

    if not body.user_id:
        raise ValidationError("user_id is required")

    if body.action == "set_trial_expiration":
        account = set_override(body.user_id, body.expiration_date, actor=actor.audit_name)
        return {
            "success": True,
            "message": "Trial expiration updated",
            "user": describe_trial(account),
        }

    account = clear_override(body.user_id, actor=actor.audit_name)
    return {
        "success": True,
        "message": "Custom trial expiration removed; default trial length applies",
        "user": describe_trial(account),
    }


@router.post("/courtesy")
def manage_courtesy(body: CourtesyRequest, actor: AdminActor = Depends(require_super_admin)):
    account = set_courtesy_access(body.user_id, body.enabled, actor=actor.audit_name)
    return {"success": True, "user_id": account.account_id, "courtesy_access": account.courtesy_access}
