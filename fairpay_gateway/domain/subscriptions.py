"""Stripe subscription status vocabulary mapping"""

from typing import Dict, Optional

from fairpay_gateway.domain.models import SubscriptionStatus

STRIPE_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "trialing": SubscriptionStatus.TRIALING,
}

# Statuses that count as the user's current subscription
CURRENT_SUBSCRIPTION_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)

UNPAID_SUBSCRIPTION_STATUSES = (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID)


def map_subscription_status(external_status: Optional[str]) -> SubscriptionStatus:
    """
    Map a Stripe status string to the local enum.

    Anything outside the table (incomplete, incomplete_expired, paused, ...)
    maps to TRIALING.
    """
    return STRIPE_STATUS_MAP.get((external_status or "").lower(), SubscriptionStatus.TRIALING)
