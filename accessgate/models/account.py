from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict

from accessgate.core.config import settings
from accessgate.core.database import as_utc


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"
    INACTIVE = "inactive"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["SubscriptionStatus"]:
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            # Unknown provider states are treated as not paying
            return cls.INACTIVE


_DATETIME_FIELDS = (
    "created_at",
    "trial_expires_at_override",
    "trial_modified_at",
    "billing_period_end",
    "payment_failed_at",
    "past_due_since",
    "payment_recovered_at",
    "canceled_at",
    "finance_pin_locked_until",
    "finance_pin_reset_expires_at",
    "finance_pin_reset_requested_at",
    "updated_at",
)


class Account(BaseModel):
    """Snapshot of one account row.

    The finance PIN hash and the reset token digest are excluded from
    serialization; neither ever leaves the service.
    """

    model_config = ConfigDict(frozen=True)

    account_id: str
    email: str
    created_at: datetime
    courtesy_access: bool = False

    trial_expires_at_override: Optional[datetime] = None
    trial_modified_by: Optional[str] = None
    trial_modified_at: Optional[datetime] = None

    billing_customer_ref: Optional[str] = None
    billing_subscription_id: Optional[str] = None
    billing_subscription_status: Optional[SubscriptionStatus] = None
    billing_period_end: Optional[datetime] = None
    payment_failed_at: Optional[datetime] = None
    past_due_since: Optional[datetime] = None
    payment_recovered_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    finance_pin_hash: Optional[str] = None
    finance_pin_lock_enabled: bool = True
    finance_pin_lock_generation: int = 0
    finance_pin_failed_attempts: int = 0
    finance_pin_locked_until: Optional[datetime] = None
    finance_pin_reset_token_hash: Optional[str] = None
    finance_pin_reset_expires_at: Optional[datetime] = None
    finance_pin_reset_requested_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "Account":
        data = dict(row._mapping)
        for key in _DATETIME_FIELDS:
            data[key] = as_utc(data.get(key))
        data["billing_subscription_status"] = SubscriptionStatus.parse(data.get("billing_subscription_status"))
        return cls(**data)

    def is_super_admin(self, super_admin_email: Optional[str] = None) -> bool:
        configured = super_admin_email if super_admin_email is not None else settings.SUPER_ADMIN_EMAIL
        if not configured:
            return False
        return self.email.strip().lower() == configured.strip().lower()

    @property
    def has_pin(self) -> bool:
        return bool(self.finance_pin_hash)

    def public_dict(self) -> dict:
        return self.model_dump(
            mode="json",
            exclude={"finance_pin_hash", "finance_pin_reset_token_hash"},
        )
