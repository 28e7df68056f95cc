"""
Webhook ingress: verify a Stripe delivery, translate it into a reconciler
event and dispatch it.

unverified -> verified   requires a valid Stripe-Signature over the raw body
verified   -> dispatched routes by event type; unknown types are dropped
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from models.subscription import (
    CheckoutCompleted,
    InvoicePaid,
    ReconcileEvent,
    SubscriptionChanged,
    SubscriptionDeleted,
)
from services.reconciler import SubscriptionReconciler
from services.stripe_gateway import (
    StripeGateway,
    field,
    invoice_subscription_ref,
    ref,
    subscription_from_stripe,
)
from utils.errors import ConfigurationError, SignatureError

logger = logging.getLogger(__name__)


class WebhookState(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    DISPATCHED = "dispatched"


@dataclass
class WebhookResult:
    event_id: Optional[str]
    event_type: str
    state: WebhookState
    handled: bool


def _subscription_event(obj: Any, deleted: bool = False) -> SubscriptionChanged:
    subscription = subscription_from_stripe(obj)
    cls = SubscriptionDeleted if deleted else SubscriptionChanged
    return cls(
        subscription_ref=subscription.id,
        customer_ref=subscription.customer_id,
        raw_status=subscription.status,
        collection_mode=subscription.collection_method,
        latest_invoice_ref=subscription.latest_invoice_id,
        current_period_end=subscription.current_period_end,
    )


def _checkout_event(obj: Any) -> CheckoutCompleted:
    return CheckoutCompleted(
        customer_ref=ref(field(obj, "customer")),
        subscription_ref=ref(field(obj, "subscription")),
    )


def _invoice_paid_event(obj: Any) -> InvoicePaid:
    return InvoicePaid(
        invoice_ref=field(obj, "id"),
        customer_ref=ref(field(obj, "customer")),
        subscription_ref=invoice_subscription_ref(obj),
    )


EVENT_PARSERS = {
    "checkout.session.completed": _checkout_event,
    "customer.subscription.created": _subscription_event,
    "customer.subscription.updated": _subscription_event,
    "customer.subscription.deleted": lambda obj: _subscription_event(obj, deleted=True),
    "invoice.paid": _invoice_paid_event,
    "invoice.payment_succeeded": _invoice_paid_event,
}


def parse_event(event_type: str, obj: Any) -> Optional[ReconcileEvent]:
    """Translate a Stripe event payload object; None for unhandled types."""
    parser = EVENT_PARSERS.get(event_type)
    if parser is None:
        return None
    return parser(obj)


class WebhookIngress:
    def __init__(self, gateway: StripeGateway, reconciler: SubscriptionReconciler, webhook_secret: Optional[str]):
        self.gateway = gateway
        self.reconciler = reconciler
        self.webhook_secret = webhook_secret

    def verify(self, payload: bytes, signature: Optional[str]):
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not set")
            raise ConfigurationError("Webhook secret not configured")
        if not signature:
            logger.error("Missing Stripe-Signature header")
            raise SignatureError("Missing stripe-signature header")
        return self.gateway.construct_event(payload, signature, self.webhook_secret)

    async def process(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Verify and dispatch one delivery.

        Raises:
            SignatureError: verification failed; Stripe should not retry
            UpstreamError: a handler failed; the 5xx makes Stripe redeliver
        """
        event = self.verify(payload, signature)
        event_type = field(event, "type")
        event_id = field(event, "id")
        logger.info(f"Webhook verified - event {event_id} type {event_type}")

        parsed = parse_event(event_type, field(field(event, "data"), "object"))
        if parsed is None:
            logger.info(f"Unhandled event type {event_type}")
            return WebhookResult(event_id, event_type, WebhookState.VERIFIED, handled=False)

        await self.reconciler.apply(parsed)
        return WebhookResult(event_id, event_type, WebhookState.DISPATCHED, handled=True)
