"""
Unit tests for the access policy evaluator
"""
from datetime import datetime, timedelta, timezone

import pytest

from database_models import User
from models.subscription import SubscriptionStatus
from services.access_policy import evaluate_access
from utils.errors import NotFoundError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_user(status, period_end):
    return User(
        email="gpt-user@example.com",
        plan="Pro",
        status=status.value if status else None,
        current_period_end=period_end,
    )


@pytest.mark.parametrize("status", list(SubscriptionStatus) + [None])
@pytest.mark.parametrize(
    "period_end",
    [None, NOW - timedelta(days=1), NOW, NOW + timedelta(seconds=1), NOW + timedelta(days=30)],
)
def test_access_iff_live_status_and_future_period(status, period_end):
    decision = evaluate_access(make_user(status, period_end), NOW)

    expected = (
        status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
        and period_end is not None
        and period_end > NOW
    )
    assert decision.has_access is expected
    assert decision.status is status


def test_active_without_period_end_is_denied():
    decision = evaluate_access(make_user(SubscriptionStatus.ACTIVE, None), NOW)
    assert decision.has_access is False


def test_naive_period_end_is_treated_as_utc():
    naive_future = (NOW + timedelta(hours=1)).replace(tzinfo=None)
    decision = evaluate_access(make_user(SubscriptionStatus.ACTIVE, naive_future), NOW)

    assert decision.has_access is True
    assert decision.current_period_end.tzinfo is timezone.utc


def test_missing_record_is_not_found():
    with pytest.raises(NotFoundError):
        evaluate_access(None, NOW)


def test_decision_carries_plan():
    decision = evaluate_access(make_user(SubscriptionStatus.TRIALING, NOW + timedelta(days=1)), NOW)
    assert decision.plan == "Pro"
