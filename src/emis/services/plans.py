"""Subscription plan limits shared by every service."""

from __future__ import annotations

from types import MappingProxyType

from emis.core.enums import SubscriptionPlan

DEFAULT_MAX_USERS = 50

PLAN_MAX_USERS: MappingProxyType[SubscriptionPlan, int] = MappingProxyType(
    {
        SubscriptionPlan.TRIAL: 50,
        SubscriptionPlan.BASIC: 100,
        SubscriptionPlan.STANDARD: 500,
        SubscriptionPlan.PROFESSIONAL: 2000,
        SubscriptionPlan.ENTERPRISE: 2_147_483_647,
    }
)


def plan_max_users(plan: SubscriptionPlan | str) -> int:
    """User capacity of *plan*; unknown plan names get the trial limit."""
    try:
        return PLAN_MAX_USERS[SubscriptionPlan(plan)]
    except ValueError:
        return DEFAULT_MAX_USERS
