"""
Billing provider protocol.

The provider is the source of truth for subscription state; this service
reads it (customer lookup, subscription listing, webhook parsing), mirrors
the result onto the account and cancels subscriptions left unpaid too long.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime

from accessgate.core.errors import UpstreamError


@dataclass(frozen=True)
class ProviderCustomer:
    id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class ProviderSubscription:
    id: str
    status: str
    created: datetime
    current_period_end: Optional[datetime] = None
    customer_id: Optional[str] = None


@dataclass
class BillingWebhookResult:
    """Normalized billing webhook event."""
    event_id: str
    event_type: str
    account_id: Optional[str] = None  # checkout client_reference_id
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    subscription_id: Optional[str] = None
    status: Optional[str] = None
    current_period_end: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer lookup by email
    - Subscription listing (all statuses), retrieval and cancellation
    - Webhook signature verification and parsing

    Every call is bounded by a timeout and raises BillingProviderError on
    failure; nothing is retried silently.
    """

    def find_customer_by_email(self, email: str) -> Optional[ProviderCustomer]:
        ...

    def list_subscriptions(self, customer_id: str) -> List[ProviderSubscription]:
        """All of the customer's subscriptions, any status."""
        ...

    def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    def cancel_subscription(self, subscription_id: str, *, comment: Optional[str] = None) -> ProviderSubscription:
        """Cancel immediately and return the canceled subscription."""
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(UpstreamError):
    """Billing provider unreachable, misconfigured, or returned an error."""
    code = "billing_provider_error"


class BillingWebhookError(BillingProviderError):
    """Webhook rejected (bad signature or payload)."""
    code = "billing_webhook_invalid"
    status_code = 400
