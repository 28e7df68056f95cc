"""
Stripe Gateway - the only module that talks to the Stripe SDK.

Stripe objects are converted to small dataclasses here so that Stripe's
vocabulary (and its API-version differences) never leak into the
reconciler or the billing service.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

import stripe

from config.settings import settings
from utils.errors import ConfigurationError, NotFoundError, SignatureError, UpstreamError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CustomerInfo:
    id: str
    email: Optional[str]
    deleted: bool = False


@dataclass(frozen=True)
class SubscriptionInfo:
    id: str
    customer_id: Optional[str]
    status: Optional[str]
    collection_method: Optional[str] = None
    latest_invoice_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None


@dataclass(frozen=True)
class InvoiceInfo:
    id: str
    status: Optional[str]
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    hosted_invoice_url: Optional[str] = None


def field(obj: Any, key: str) -> Any:
    """Read a key from a Stripe object or plain dict, None when absent."""
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return None


def ref(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return field(value, "id")


def from_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def customer_from_stripe(obj: Any) -> CustomerInfo:
    return CustomerInfo(
        id=field(obj, "id"),
        email=field(obj, "email"),
        deleted=bool(field(obj, "deleted")),
    )


def subscription_period_end(obj: Any) -> Optional[datetime]:
    """
    Newer Stripe API versions moved current_period_end from the
    subscription onto its items; read whichever is present.
    """
    period_end = field(obj, "current_period_end")
    if not period_end:
        items = field(field(obj, "items"), "data") or []
        if items:
            period_end = field(items[0], "current_period_end")
    return from_timestamp(period_end)


def subscription_from_stripe(obj: Any) -> SubscriptionInfo:
    return SubscriptionInfo(
        id=field(obj, "id"),
        customer_id=ref(field(obj, "customer")),
        status=field(obj, "status"),
        collection_method=field(obj, "collection_method"),
        latest_invoice_id=ref(field(obj, "latest_invoice")),
        current_period_end=subscription_period_end(obj),
        trial_end=from_timestamp(field(obj, "trial_end")),
    )


def invoice_subscription_ref(obj: Any) -> Optional[str]:
    """Invoices carry their subscription at the top level or under parent."""
    subscription = ref(field(obj, "subscription"))
    if subscription:
        return subscription
    details = field(field(obj, "parent"), "subscription_details")
    return ref(field(details, "subscription"))


def invoice_from_stripe(obj: Any) -> InvoiceInfo:
    return InvoiceInfo(
        id=field(obj, "id"),
        status=field(obj, "status"),
        customer_id=ref(field(obj, "customer")),
        subscription_id=invoice_subscription_ref(obj),
        hosted_invoice_url=field(obj, "hosted_invoice_url"),
    )


class StripeGateway:
    """
    Thin wrapper over the Stripe SDK.

    Every call raises NotFoundError for missing resources, UpstreamError for
    any other Stripe failure and ConfigurationError when no secret key is set.
    """

    def __init__(self, api_key: Optional[str]):
        self.api_key = api_key
        if api_key:
            stripe.api_key = api_key

    def _call(self, action: str, fn: Callable, *args, **kwargs):
        if not self.api_key:
            logger.error(f"STRIPE_SECRET_KEY is not set. Cannot {action}.")
            raise ConfigurationError("Stripe is not configured")
        try:
            return fn(*args, **kwargs)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise NotFoundError(f"Stripe resource not found while trying to {action}") from e
            logger.error(f"Stripe rejected request to {action}: {e}")
            raise UpstreamError(f"Stripe request failed: {action}") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe call failed ({action}): {e}")
            raise UpstreamError(f"Stripe request failed: {action}") from e

    # -- customers ---------------------------------------------------------

    def retrieve_customer(self, customer_id: str) -> CustomerInfo:
        obj = self._call("retrieve customer", stripe.Customer.retrieve, customer_id)
        return customer_from_stripe(obj)

    def find_customer_by_email(self, email: str) -> Optional[CustomerInfo]:
        result = self._call("list customers", stripe.Customer.list, email=email, limit=1)
        data = field(result, "data") or []
        return customer_from_stripe(data[0]) if data else None

    def create_customer(self, email: str, metadata: dict) -> CustomerInfo:
        obj = self._call("create customer", stripe.Customer.create, email=email, metadata=metadata)
        return customer_from_stripe(obj)

    # -- subscriptions -----------------------------------------------------

    def list_subscriptions(self, customer_id: str, limit: int = 10) -> List[SubscriptionInfo]:
        result = self._call(
            "list subscriptions",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=limit,
        )
        return [subscription_from_stripe(s) for s in (field(result, "data") or [])]

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        trial_period_days: int,
        days_until_due: int,
        metadata: dict,
    ) -> SubscriptionInfo:
        obj = self._call(
            "create subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            trial_period_days=trial_period_days,
            collection_method="send_invoice",
            days_until_due=days_until_due,
            metadata=metadata,
        )
        return subscription_from_stripe(obj)

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionInfo:
        obj = self._call("retrieve subscription", stripe.Subscription.retrieve, subscription_id)
        return subscription_from_stripe(obj)

    # -- invoices ----------------------------------------------------------

    def retrieve_invoice(self, invoice_id: str) -> InvoiceInfo:
        obj = self._call("retrieve invoice", stripe.Invoice.retrieve, invoice_id)
        return invoice_from_stripe(obj)

    def latest_invoice_for_subscription(self, subscription_id: str) -> Optional[InvoiceInfo]:
        result = self._call("list invoices", stripe.Invoice.list, subscription=subscription_id, limit=1)
        data = field(result, "data") or []
        return invoice_from_stripe(data[0]) if data else None

    def latest_open_invoice(self, customer_id: str) -> Optional[InvoiceInfo]:
        result = self._call("list invoices", stripe.Invoice.list, customer=customer_id, status="open", limit=1)
        data = field(result, "data") or []
        return invoice_from_stripe(data[0]) if data else None

    def send_invoice(self, invoice_id: str) -> InvoiceInfo:
        obj = self._call("send invoice", stripe.Invoice.send_invoice, invoice_id)
        return invoice_from_stripe(obj)

    # -- portal / webhooks -------------------------------------------------

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = self._call(
            "create billing portal session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return field(session, "url")

    def construct_event(self, payload: bytes, signature: str, secret: str) -> stripe.Event:
        """Verify the Stripe-Signature header over the raw body."""
        try:
            return stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Stripe webhook signature verification failed: {e}")
            raise SignatureError("Invalid webhook signature") from e
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise SignatureError("Invalid payload format") from e


def get_stripe_gateway() -> StripeGateway:
    """FastAPI dependency; overridden in tests with a fake gateway."""
    return StripeGateway(settings.stripe_secret_key)
