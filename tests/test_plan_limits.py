from datetime import datetime, timedelta

import pytest

from gamesales.models import Company
from gamesales.plan_limits import (
    PLAN_FEATURES,
    can_add_product,
    can_add_user,
    effective_plan,
    get_annual_monthly_equivalent,
    get_annual_price,
    get_catalogue,
    get_minimum_plan_for_feature,
    get_next_plan,
    get_plan_features,
    get_product_limit,
    get_trial_info,
    get_user_limit,
    has_feature,
)

NOW = datetime(2025, 3, 10, 12, 0, 0)


def company(plan="starter", status="active", trial_ends_at=None):
    return Company(name="Acme", plan=plan, subscription_status=status, trial_ends_at=trial_ends_at)


class TestFeatures:
    def test_unknown_plan_falls_back_to_starter(self):
        assert get_plan_features("gold") == PLAN_FEATURES["starter"]
        assert get_plan_features(None) == PLAN_FEATURES["starter"]
        assert get_plan_features(" PRO ") == PLAN_FEATURES["pro"]

    def test_has_feature_per_plan(self):
        assert has_feature("starter", "metas") is False
        assert has_feature("plus", "metas") is True
        assert has_feature("plus", "gamification") is False
        assert has_feature("pro", "gamification") is True
        assert has_feature("pro", "integrations") is False
        assert has_feature("enterprise", "integrations") is True

    def test_super_admin_bypasses_every_feature(self):
        assert has_feature("starter", "integrations", is_super_admin=True) is True

    def test_minimum_plan_for_feature(self):
        assert get_minimum_plan_for_feature("metas") == "plus"
        assert get_minimum_plan_for_feature("calls") == "plus"
        assert get_minimum_plan_for_feature("gamification") == "pro"
        assert get_minimum_plan_for_feature("integrations") == "enterprise"
        assert get_minimum_plan_for_feature("teleport") == "enterprise"


class TestLimits:
    def test_user_limit(self):
        assert get_user_limit("starter") == 2
        assert get_user_limit("enterprise") is None

    def test_can_add_user(self):
        assert can_add_user("starter", 1) == (True, None)
        allowed, message = can_add_user("starter", 2)
        assert allowed is False
        assert "2 usuários" in message
        assert can_add_user("enterprise", 5000) == (True, None)

    def test_product_limit(self):
        assert get_product_limit("plus") == 10
        assert get_product_limit("pro") is None
        assert can_add_product("starter", 2) == (True, None)
        allowed, message = can_add_product("starter", 3)
        assert allowed is False
        assert "3 produtos" in message


class TestPricing:
    def test_annual_price_applies_discount(self):
        assert get_annual_price("starter") == pytest.approx(1587.6)
        assert get_annual_price("plus") == pytest.approx(4287.6)
        assert get_annual_monthly_equivalent("starter") == pytest.approx(132.3)

    def test_annual_price_of_unpriced_plan(self):
        assert get_annual_price("enterprise") == 0

    def test_next_plan(self):
        assert get_next_plan("starter")["id"] == "plus"
        assert get_next_plan("plus")["id"] == "pro"
        assert get_next_plan("pro") is None
        assert get_next_plan("enterprise") is None
        assert get_next_plan(None) is None

    def test_catalogue(self):
        catalogue = get_catalogue()
        assert [plan["id"] for plan in catalogue] == ["starter", "plus", "pro"]
        assert catalogue[1]["annual_monthly_equivalent"] == pytest.approx(357.3)


class TestTrial:
    def test_active_trial(self):
        info = get_trial_info(company(status="trialing", trial_ends_at=NOW + timedelta(days=3, hours=1)), NOW)
        assert info["days_remaining"] == 3
        assert info["is_trial_active"] is True
        assert info["is_expired"] is False
        assert info["plan_name"] == "Pro (Trial)"

    def test_trial_ending_today_is_still_active(self):
        info = get_trial_info(company(status="trialing", trial_ends_at=NOW - timedelta(hours=5)), NOW)
        assert info["days_remaining"] == 0
        assert info["is_trial_active"] is True

    def test_expired_trial(self):
        info = get_trial_info(
            company(plan="plus", status="trialing", trial_ends_at=NOW - timedelta(days=2)), NOW
        )
        assert info["is_expired"] is True
        assert info["is_trial_active"] is False
        assert info["days_remaining"] == 0
        assert info["plan_name"] == "Plus"

    def test_paying_company(self):
        info = get_trial_info(company(plan="pro", status="active"), NOW)
        assert info["is_trial_active"] is False
        assert info["plan_name"] == "Pro"
        assert info["subscription_status"] == "active"

    def test_super_admin(self):
        info = get_trial_info(None, NOW, is_super_admin=True)
        assert info["days_remaining"] == 999
        assert info["plan_name"] == "Pro (Admin)"

    def test_without_company(self):
        info = get_trial_info(None, NOW)
        assert info["plan_name"] == "Starter"
        assert info["is_trial_active"] is False


class TestEffectivePlan:
    def test_trial_unlocks_pro(self):
        trialing = company(status="trialing", trial_ends_at=NOW + timedelta(days=5))
        assert effective_plan(trialing, NOW) == "pro"

    def test_expired_trial_uses_company_plan(self):
        expired = company(plan="plus", status="trialing", trial_ends_at=NOW - timedelta(days=1, hours=1))
        assert effective_plan(expired, NOW) == "plus"

    def test_no_company(self):
        assert effective_plan(None) == "starter"
