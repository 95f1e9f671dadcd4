"""
Finance PIN API routes.

- POST /finance-pin/verify          check a PIN attempt
- POST /finance-pin/settings        toggle the lock or read its status
- POST /finance-pin/set             create or change the PIN
- POST /finance-pin/reset/request   email a reset link (signed-in owner)
- POST /finance-pin/reset/verify    public: is this reset token usable?
- POST /finance-pin/reset/complete  public: set a new PIN with a token
"""
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from accessgate.core.auth import get_current_account_id
from accessgate.core.errors import ValidationError
from accessgate.features.finance_pin import gate, recovery

router = APIRouter(prefix="/finance-pin", tags=["finance-pin"])


class VerifyPinRequest(BaseModel):
    pinAttempt: Optional[str] = None


class VerifyPinResponse(BaseModel):
    verified: bool
    message: Optional[str] = None


class PinSettingsRequest(BaseModel):
    action: Literal["toggle", "status"]
    enabled: Optional[bool] = None


class SetPinRequest(BaseModel):
    newPin: Optional[str] = None
    currentPin: Optional[str] = None


class ResetTokenRequest(BaseModel):
    token: Optional[str] = None


class ResetTokenResponse(BaseModel):
    valid: bool
    error: Optional[str] = None


class CompleteResetRequest(BaseModel):
    token: Optional[str] = None
    newPin: Optional[str] = None


class MessageResponse(BaseModel):
    message: str


@router.post("/verify", response_model=VerifyPinResponse, response_model_exclude_none=True)
def verify_pin(body: VerifyPinRequest, account_id: str = Depends(get_current_account_id)):
    result = gate.validate_pin(account_id, body.pinAttempt)
    return {"verified": result.verified, "message": result.message}


@router.post("/settings")
def pin_settings(body: PinSettingsRequest, account_id: str = Depends(get_current_account_id)):
    """
    toggle: {"success", "message", "enabled"}
    status: {"success", "enabled", "hasPin"}
    """
    if body.action == "status":
        status = gate.get_settings_status(account_id)
        return {"success": True, "enabled": status["enabled"], "hasPin": status["has_pin"]}

    if body.enabled is None:
        raise ValidationError("'enabled' (boolean) is required for toggle")

    state = gate.set_lock_enabled(account_id, body.enabled)
    if not state.lock_enabled:
        message = "Financial data lock disabled"
    elif state.has_pin:
        message = "Financial data lock enabled"
    else:
        message = "Financial data lock enabled. Set a PIN to unlock financial data."
    return {"success": True, "message": message, "enabled": state.lock_enabled}


@router.post("/set")
def set_pin(body: SetPinRequest, account_id: str = Depends(get_current_account_id)):
    gate.set_pin(account_id, body.newPin, current_pin=body.currentPin)
    return {"success": True, "message": "PIN saved"}


@router.post("/reset/request", response_model=MessageResponse)
def request_reset(account_id: str = Depends(get_current_account_id)):
    return recovery.request_reset(account_id)


@router.post("/reset/verify", response_model=ResetTokenResponse, response_model_exclude_none=True)
def verify_reset_token(body: ResetTokenRequest):
    check = recovery.verify_reset_token(body.token)
    return {"valid": check.valid, "error": check.error}


@router.post("/reset/complete", response_model=MessageResponse)
def complete_reset(body: CompleteResetRequest):
    return recovery.reset_with_token(body.token, body.newPin)
