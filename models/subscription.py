"""
Subscription domain types: internal status vocabulary, reconciler events,
and the request/response schemas of the paywall API.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    """Canonical access-control status stored on every user record."""

    NONE = "none"
    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"

    @classmethod
    def decode(cls, value: Optional[str]) -> Optional["SubscriptionStatus"]:
        """
        Decode a stored status string.

        ``None`` stays ``None`` (status never set); anything unrecognized
        decodes to NONE so stale vocabulary never grants access.
        """
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return cls.NONE


ACCESS_GRANTING_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

# Stripe collection_method for deferred-invoice billing
DEFERRED_INVOICE = "send_invoice"


# ---------------------------------------------------------------------------
# Reconciler events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CheckoutCompleted:
    customer_ref: str
    subscription_ref: Optional[str]


@dataclass(frozen=True)
class SubscriptionChanged:
    subscription_ref: str
    customer_ref: str
    raw_status: Optional[str]
    collection_mode: Optional[str] = None
    latest_invoice_ref: Optional[str] = None
    current_period_end: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionDeleted(SubscriptionChanged):
    pass


@dataclass(frozen=True)
class InvoicePaid:
    invoice_ref: str
    customer_ref: str
    subscription_ref: Optional[str] = None


ReconcileEvent = Union[CheckoutCompleted, SubscriptionChanged, SubscriptionDeleted, InvoicePaid]


@dataclass(frozen=True)
class AccessDecision:
    has_access: bool
    plan: Optional[str]
    status: Optional[SubscriptionStatus]
    current_period_end: Optional[datetime]


# ---------------------------------------------------------------------------
# API schemas
# ---------------------------------------------------------------------------

class CheckoutRequest(BaseModel):
    email: Optional[str] = None
    plan_tier: Optional[str] = None
    plan: Optional[str] = None


class EmailRequest(BaseModel):
    email: Optional[str] = None


class UserUpsertRequest(BaseModel):
    email: Optional[str] = None
    plan: Optional[str] = None
    custom_fields: Dict[str, Any] = Field(default_factory=dict)


class AccessResponse(BaseModel):
    has_access: bool
    plan: Optional[str] = None
    status: Optional[str] = None
    current_period_end: Optional[str] = None
    user_created: bool = False
    message: Optional[str] = None


class CheckoutResponse(BaseModel):
    subscription_id: str
    status: Optional[str] = None
    internal_status: str
    subscription_created: bool
    collection_method: Optional[str] = None
    trial_end: Optional[str] = None
    current_period_end: Optional[str] = None
    customer_id: str
