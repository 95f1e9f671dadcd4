"""
Billing API routes.

- POST /billing/reconcile: sync the caller's billing state with Stripe, or
  (super-admin only) another account's state by email
- POST /billing/webhook: Handle Stripe webhooks
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from accessgate.core.admin_auth import resolve_admin_actor
from accessgate.core.auth import get_current_account_id
from accessgate.core.errors import AppError, PermissionError, ValidationError
from accessgate.features.billing.service import (
    billing_enabled,
    process_webhook_event,
    reconcile_by_email,
    reconcile_self,
)

router = APIRouter(prefix="/billing", tags=["billing"])


class ReconcileRequest(BaseModel):
    admin_action: Optional[bool] = None
    email_to_fix: Optional[str] = None


class ReconcileResponse(BaseModel):
    success: bool
    status: str
    subscription_id: Optional[str] = None
    current_period_end: Optional[int] = None


def _require_billing() -> None:
    if not billing_enabled():
        raise AppError("Billing disabled", code="billing_disabled", status_code=503)


@router.post("/reconcile", response_model=ReconcileResponse)
def reconcile(body: Optional[ReconcileRequest] = None, account_id: str = Depends(get_current_account_id)):
    """
    Returns:
        {"success", "status", "subscription_id", "current_period_end"}
        with current_period_end in epoch seconds

    Errors:
        403: admin_action without super-admin rights
        503: Billing disabled
    """
    _require_billing()
    body = body or ReconcileRequest()

    if body.admin_action:
        actor = resolve_admin_actor(account_id)
        if actor is None:
            raise PermissionError("Super-admin access required", code="admin_required")
        if not body.email_to_fix:
            raise ValidationError("email_to_fix is required")
        result = reconcile_by_email(body.email_to_fix, actor=actor.audit_name)
    else:
        result = reconcile_self(account_id)

    return result.to_response()


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature, processes event idempotently, and updates the
    account's billing state. Deduplication uses the Stripe event id
    (billing_events table).

    Returns:
        {"received": true, "event_id": ...}

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    _require_billing()

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    result = await run_in_threadpool(process_webhook_event, headers, body)
    return {"received": True, "event_id": result.event_id}
