"""
Stripe status vocabulary -> internal SubscriptionStatus.
"""
from typing import Optional

from config.settings import PLAN_FREE, PLAN_PRO
from models.subscription import SubscriptionStatus

STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.PENDING,
    "incomplete_expired": SubscriptionStatus.NONE,
}

PLAN_MAP = {
    "pro": PLAN_PRO,
    "free": PLAN_FREE,
}


def normalize_stripe_status(stripe_status: Optional[str]) -> SubscriptionStatus:
    """
    Map a Stripe subscription status onto the internal enum.

    Never raises: unknown or missing tokens map to NONE so that a status
    Stripe adds later denies access instead of granting it.
    """
    if not isinstance(stripe_status, str):
        return SubscriptionStatus.NONE
    return STRIPE_STATUS_MAP.get(stripe_status.strip().lower(), SubscriptionStatus.NONE)


def normalize_plan(plan_input: Optional[str] = "pro") -> str:
    """Normalize a requested plan tier to the tag stored on user records."""
    if not plan_input or not plan_input.strip():
        return PLAN_PRO
    return PLAN_MAP.get(plan_input.strip().lower(), plan_input.strip())
