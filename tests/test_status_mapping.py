"""
Unit tests for Stripe status and plan normalization
"""
import pytest

from models.subscription import SubscriptionStatus
from services.status_mapping import normalize_plan, normalize_stripe_status


@pytest.mark.parametrize(
    "stripe_status,expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("trialing", SubscriptionStatus.TRIALING),
        ("past_due", SubscriptionStatus.PAST_DUE),
        ("unpaid", SubscriptionStatus.PAST_DUE),
        ("canceled", SubscriptionStatus.CANCELED),
        ("cancelled", SubscriptionStatus.CANCELED),
        ("incomplete", SubscriptionStatus.PENDING),
        ("incomplete_expired", SubscriptionStatus.NONE),
    ],
)
def test_known_statuses(stripe_status, expected):
    assert normalize_stripe_status(stripe_status) is expected


def test_unknown_status_denies():
    assert normalize_stripe_status("some_future_status") is SubscriptionStatus.NONE


@pytest.mark.parametrize("value", [None, "", 42, {"status": "active"}])
def test_garbage_never_raises(value):
    assert normalize_stripe_status(value) is SubscriptionStatus.NONE


def test_tokens_are_trimmed_and_case_folded():
    assert normalize_stripe_status("  Active ") is SubscriptionStatus.ACTIVE


def test_normalize_plan():
    assert normalize_plan("pro") == "Pro"
    assert normalize_plan(" FREE ") == "Free"
    assert normalize_plan("enterprise") == "enterprise"
    assert normalize_plan(None) == "Pro"


def test_stored_status_decoding():
    assert SubscriptionStatus.decode(None) is None
    assert SubscriptionStatus.decode("awaiting_payment") is SubscriptionStatus.AWAITING_PAYMENT
    # Vocabulary from an older store schema must not grant access
    assert SubscriptionStatus.decode("paid") is SubscriptionStatus.NONE
