"""
Stripe billing provider implementation.

Implements the BillingProvider protocol on the Stripe API. All calls go
through one HTTP client with a bounded timeout and no automatic retries.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe

from accessgate.core.config import settings
from accessgate.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    ProviderCustomer,
    ProviderSubscription,
)

SUBSCRIPTION_LIST_LIMIT = 10


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a StripeObject or plain dict."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return getattr(obj, key, default)
    return default if value is None else value


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None, timeout_seconds: Optional[int] = None):
        """
        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
            timeout_seconds: Per-request timeout (defaults to STRIPE_TIMEOUT_SECONDS)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET or os.getenv("STRIPE_WEBHOOK_SECRET")

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds or settings.STRIPE_TIMEOUT_SECONDS)

    def find_customer_by_email(self, email: str) -> Optional[ProviderCustomer]:
        try:
            customers = stripe.Customer.list(email=email, limit=1)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer lookup failed: {e.user_message or e.__class__.__name__}")
        data = _field(customers, "data", [])
        if not data:
            return None
        customer = data[0]
        return ProviderCustomer(id=_field(customer, "id"), email=_field(customer, "email"))

    def list_subscriptions(self, customer_id: str) -> List[ProviderSubscription]:
        try:
            subscriptions = stripe.Subscription.list(customer=customer_id, status="all", limit=SUBSCRIPTION_LIST_LIMIT)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription listing failed: {e.user_message or e.__class__.__name__}")
        return [self._to_subscription(sub) for sub in _field(subscriptions, "data", [])]

    def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed: {e.user_message or e.__class__.__name__}")
        return self._to_subscription(subscription)

    def cancel_subscription(self, subscription_id: str, *, comment: Optional[str] = None) -> ProviderSubscription:
        params: Dict[str, Any] = {}
        if comment:
            params["cancellation_details"] = {"comment": comment}
        try:
            subscription = stripe.Subscription.cancel(subscription_id, **params)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancellation failed: {e.user_message or e.__class__.__name__}")
        return self._to_subscription(subscription)

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError:
            raise BillingWebhookError("Invalid signature")

        return self._parse_event(event)

    @staticmethod
    def _period_end(subscription: Any) -> Optional[datetime]:
        # Newer API versions carry the period on each item instead of the subscription
        direct = _field(subscription, "current_period_end")
        if direct:
            return _from_timestamp(direct)
        items = _field(_field(subscription, "items"), "data", [])
        if items:
            return _from_timestamp(_field(items[0], "current_period_end"))
        return None

    def _to_subscription(self, subscription: Any) -> ProviderSubscription:
        return ProviderSubscription(
            id=_field(subscription, "id"),
            status=_field(subscription, "status", "inactive"),
            created=_from_timestamp(_field(subscription, "created", 0)),
            current_period_end=self._period_end(subscription),
            customer_id=_field(subscription, "customer"),
        )

    def _parse_event(self, event: Any) -> BillingWebhookResult:
        """Parse Stripe event into normalized BillingWebhookResult."""
        event_type = _field(event, "type")
        data = _field(_field(event, "data"), "object", {})
        result = BillingWebhookResult(
            event_id=_field(event, "id"),
            event_type=event_type,
            customer_id=_field(data, "customer"),
            metadata=dict(_field(data, "metadata", {}) or {}),
        )

        if event_type.startswith("customer.subscription."):
            result.subscription_id = _field(data, "id")
            result.status = "canceled" if event_type == "customer.subscription.deleted" else _field(data, "status")
            result.current_period_end = self._period_end(data)
        elif event_type == "checkout.session.completed":
            result.account_id = _field(data, "client_reference_id")
            result.subscription_id = _field(data, "subscription")
            result.customer_email = _field(_field(data, "customer_details"), "email") or _field(data, "customer_email")
        elif event_type == "invoice.payment_failed":
            result.subscription_id = _field(data, "subscription")
            result.customer_email = _field(data, "customer_email")

        return result
