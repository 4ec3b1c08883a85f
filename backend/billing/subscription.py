"""Subscription policy — which billing states may use the service, and how much.

Statuses come from the payments provider webhook mirror:
  active      — paid subscription
  incomplete  — payment processing (checkout in flight)
  canceled    — cancelled, still inside the paid period
  past_due / unpaid — payment problem, no access
  None        — new user, default allowance
"""
from datetime import datetime, timezone
from typing import Optional

from schemas.account import SubscriptionStatus

VALID_SUBSCRIPTION_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.INCOMPLETE.value,
    SubscriptionStatus.CANCELED.value,
})

ATTENTION_STATUSES = frozenset({
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.INCOMPLETE.value,
    SubscriptionStatus.UNPAID.value,
})

INCOMPLETE_SESSION_LIMIT_MINUTES = 30

_STATUS_MESSAGES = {
    "active": "Your subscription is active",
    "incomplete": "Payment processing - your subscription will be active shortly",
    "canceled": "Your subscription has been canceled but you still have access until your current period ends",
    "past_due": "Your subscription payment is past due. Please update your payment method.",
    "unpaid": "Your subscription payment failed. Please update your payment method.",
    None: "No active subscription found",
}


def is_valid_subscription_status(status: Optional[str]) -> bool:
    return status is not None and status in VALID_SUBSCRIPTION_STATUSES


def is_valid_for_translation(status: Optional[str]) -> bool:
    """New users (no status yet) may translate on the default allowance."""
    return status is None or status in VALID_SUBSCRIPTION_STATUSES


def requires_subscription_attention(status: Optional[str]) -> bool:
    return status in ATTENTION_STATUSES


def get_subscription_status_message(status: Optional[str]) -> str:
    return _STATUS_MESSAGES.get(status, "Unknown subscription status")


def is_cancelled_subscription_active(
    status: Optional[str],
    period_end: Optional[datetime],
    now: Optional[datetime] = None,
) -> bool:
    """A cancelled subscription keeps access until its paid period ends.

    No period end means the subscription was deleted outright.
    """
    if status != SubscriptionStatus.CANCELED.value or period_end is None:
        return False
    now = now or datetime.now(timezone.utc)
    if period_end.tzinfo is None:
        period_end = period_end.replace(tzinfo=timezone.utc)
    return now < period_end


def get_session_limit(
    status: Optional[str],
    session_limit_minutes: Optional[int],
    default_minutes: int = 180,
) -> int:
    """Effective allowance in minutes for a billing state."""
    if status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELED.value, None):
        return session_limit_minutes or default_minutes
    if status == SubscriptionStatus.INCOMPLETE.value:
        return INCOMPLETE_SESSION_LIMIT_MINUTES
    return 0
