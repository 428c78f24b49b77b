"""
Tests for plan tiers, thresholds and entitlements.
"""
import pytest

from subscription_lifecycle.config.loader import PlanThresholds
from subscription_lifecycle.core.plans import (
    UNLIMITED,
    list_price_delta,
    plan_features,
    plan_for_amount,
    summarize_plan,
)
from subscription_lifecycle.storage.models import ChangeType, PlanType


class TestPlanForAmount:
    """Test the amount to plan threshold function."""

    @pytest.mark.parametrize("amount, expected", [
        (0, None),
        (37999, None),
        (38000, PlanType.BASIC),
        (128999, PlanType.BASIC),
        (129000, PlanType.PRO),
        (389999, PlanType.PRO),
        (390000, PlanType.ENTERPRISE),
    ])
    def test_default_thresholds(self, amount, expected):
        assert plan_for_amount(amount) == expected

    def test_monotonic(self):
        ranks = [(plan_for_amount(amount) or PlanType.FREE).rank for amount in range(0, 500000, 1000)]
        assert ranks == sorted(ranks)

    def test_custom_thresholds(self):
        thresholds = PlanThresholds(basic=29, pro=99, enterprise=299)
        assert plan_for_amount(99, thresholds) == PlanType.PRO
        assert plan_for_amount(28, thresholds) is None

    def test_thresholds_must_ascend(self):
        with pytest.raises(ValueError, match="ascend"):
            PlanThresholds(basic=100, pro=100, enterprise=300)


class TestPlanType:
    """Test plan parsing and ordering."""

    def test_premium_alias(self):
        assert PlanType.parse("premium") == PlanType.PRO
        assert PlanType.parse(" Enterprise ") == PlanType.ENTERPRISE

    def test_invalid_plan(self):
        with pytest.raises(ValueError, match="Invalid plan"):
            PlanType.parse("platinum")

    @pytest.mark.parametrize("from_plan, to_plan, expected", [
        (PlanType.BASIC, PlanType.PRO, ChangeType.UPGRADE),
        (PlanType.ENTERPRISE, PlanType.BASIC, ChangeType.DOWNGRADE),
        (PlanType.PRO, PlanType.FREE, ChangeType.CANCELLATION),
        (PlanType.FREE, PlanType.BASIC, ChangeType.REACTIVATION),
        (PlanType.PRO, PlanType.PRO, ChangeType.UNCHANGED),
    ])
    def test_change_type(self, from_plan, to_plan, expected):
        assert ChangeType.between(from_plan, to_plan) == expected


class TestPlanFeatures:
    """Test plan entitlements."""

    def test_enterprise_unlimited(self):
        features = plan_features(PlanType.ENTERPRISE)
        assert features.monthly_queries == UNLIMITED
        assert features.api_access

    def test_free_summary(self):
        summary = summarize_plan(PlanType.FREE)
        assert not summary.is_active
        assert summary.can_upgrade
        assert not summary.can_downgrade
        assert summary.features.monthly_queries == 100

    @pytest.mark.parametrize("from_plan, to_plan, expected", [
        (PlanType.FREE, PlanType.PRO, 99),
        (PlanType.PRO, PlanType.BASIC, -70),
        (PlanType.ENTERPRISE, PlanType.FREE, -299),
        (PlanType.BASIC, PlanType.BASIC, 0),
    ])
    def test_list_price_delta(self, from_plan, to_plan, expected):
        assert list_price_delta(from_plan, to_plan) == expected
