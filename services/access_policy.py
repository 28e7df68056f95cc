"""
Access policy: decides whether a stored user record currently grants access.
"""
from datetime import datetime, timezone
from typing import Optional

from database_models import User
from models.subscription import ACCESS_GRANTING_STATUSES, AccessDecision
from utils.errors import NotFoundError


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def evaluate_access(user: Optional[User], now: datetime) -> AccessDecision:
    """
    Grant access only while the status is active/trialing AND the paid
    period has not elapsed. A stale "active" flag left behind by a lost
    renewal event therefore stops granting access at period end.

    Raises:
        NotFoundError: when there is no record; the caller decides whether
            to create one.
    """
    if user is None:
        raise NotFoundError("User not found")

    status = user.subscription_status
    period_end = as_utc(user.current_period_end)
    has_access = (
        status in ACCESS_GRANTING_STATUSES
        and period_end is not None
        and period_end > as_utc(now)
    )
    return AccessDecision(
        has_access=has_access,
        plan=user.plan,
        status=status,
        current_period_end=period_end,
    )
