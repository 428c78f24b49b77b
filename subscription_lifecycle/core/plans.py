"""
Plan tiers, payment thresholds and entitlements.

Maps a payment amount to the plan it buys and describes what each plan
unlocks.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from subscription_lifecycle.config.loader import PlanThresholds
from subscription_lifecycle.storage.models import PlanType

UNLIMITED = -1


@dataclass(frozen=True)
class PlanFeatures:
    """Entitlements granted by a plan. UNLIMITED marks no cap."""
    monthly_queries: int
    file_uploads: int
    advanced_analysis: bool
    contract_generation: bool
    priority_support: bool
    api_access: bool


PLAN_FEATURES: Dict[PlanType, PlanFeatures] = {
    PlanType.FREE: PlanFeatures(100, 5, False, False, False, False),
    PlanType.BASIC: PlanFeatures(1000, 50, True, True, False, False),
    PlanType.PRO: PlanFeatures(10000, 500, True, True, True, True),
    PlanType.ENTERPRISE: PlanFeatures(UNLIMITED, UNLIMITED, True, True, True, True),
}

LIST_PRICE_CURRENCY = "USD"
LIST_PRICES: Dict[PlanType, int] = {
    PlanType.FREE: 0,
    PlanType.BASIC: 29,
    PlanType.PRO: 99,
    PlanType.ENTERPRISE: 299,
}


def plan_for_amount(amount: int, thresholds: Optional[PlanThresholds] = None) -> Optional[PlanType]:
    """Return the highest plan whose threshold the amount reaches.

    Args:
        amount: Total payment amount in minor currency units
        thresholds: Tier thresholds, defaults to the standard price list

    Returns:
        The purchased plan, or None when the amount buys no paid tier
    """
    thresholds = thresholds or PlanThresholds()
    if amount >= thresholds.enterprise:
        return PlanType.ENTERPRISE
    if amount >= thresholds.pro:
        return PlanType.PRO
    if amount >= thresholds.basic:
        return PlanType.BASIC
    return None


def list_price_delta(from_plan: PlanType, to_plan: PlanType) -> int:
    """Monthly list price difference, in LIST_PRICE_CURRENCY, of a plan change."""
    return LIST_PRICES[to_plan] - LIST_PRICES[from_plan]


def plan_features(plan: PlanType) -> PlanFeatures:
    """Return the entitlements for a plan."""
    return PLAN_FEATURES[plan]


@dataclass(frozen=True)
class PlanSummary:
    """Current plan of a user with its entitlements."""
    plan: PlanType
    features: PlanFeatures
    is_active: bool
    can_upgrade: bool
    can_downgrade: bool


def summarize_plan(plan: PlanType) -> PlanSummary:
    """Describe a plan for account pages."""
    return PlanSummary(
        plan=plan,
        features=plan_features(plan),
        is_active=plan != PlanType.FREE,
        can_upgrade=plan in (PlanType.FREE, PlanType.BASIC),
        can_downgrade=plan in (PlanType.PRO, PlanType.ENTERPRISE)
    )
