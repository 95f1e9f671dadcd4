"""
Subscription status API.

GET /subscription/status answers "may this account use the product, and
why". With refresh=true the account is reconciled with the billing provider
first (used right after checkout).
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from accessgate.core.auth import get_current_account_id
from accessgate.features.access.service import record_access_decision, resolve_access, subscription_status_payload
from accessgate.features.accounts.service import get_account
from accessgate.features.billing.service import billing_enabled, reconcile_self

router = APIRouter(prefix="/subscription", tags=["subscription"])


class SubscriptionStatusResponse(BaseModel):
    subscribed: bool
    account_type: str
    tier: str
    subscription_status: str
    current_period_end: Optional[str] = None
    message: str
    reason: Optional[str] = None
    trial_days_remaining: Optional[int] = None


@router.get("/status", response_model=SubscriptionStatusResponse)
def subscription_status(
    refresh: bool = Query(False, description="Reconcile with the billing provider first"),
    account_id: str = Depends(get_current_account_id),
):
    if refresh and billing_enabled():
        reconcile_self(account_id)
    account = get_account(account_id)
    decision = resolve_access(account)
    record_access_decision(account, decision)
    return subscription_status_payload(account, decision)
