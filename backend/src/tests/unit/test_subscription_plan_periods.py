"""
Unit tests for the plan catalog and billing period arithmetic.
"""

import pytest
from datetime import datetime, timezone

from src.config.subscription_plans import (
    SubscriptionPlanCatalog,
    get_plan_catalog,
    plan_period_end,
)
from src.models.subscription import SubscriptionPlan


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestPlanPeriodEnd:
    """Period end per plan."""

    def test_weekly_adds_seven_days(self):
        assert plan_period_end("weekly", _utc(2026, 3, 10, 12)) == _utc(2026, 3, 17, 12)

    def test_monthly_from_jan_31_lands_on_last_day_of_february(self):
        assert plan_period_end("monthly", _utc(2026, 1, 31, 9, 30)) == _utc(2026, 2, 28, 9, 30)

    def test_monthly_in_leap_year(self):
        assert plan_period_end("monthly", _utc(2028, 1, 31)) == _utc(2028, 2, 29)

    def test_quarterly_adds_three_calendar_months(self):
        assert plan_period_end("quarterly", _utc(2026, 11, 30)) == _utc(2027, 2, 28)

    def test_semestral_adds_six_calendar_months(self):
        assert plan_period_end("semestral", _utc(2026, 8, 31)) == _utc(2027, 2, 28)

    def test_yearly_adds_one_calendar_year(self):
        assert plan_period_end("yearly", _utc(2026, 3, 10)) == _utc(2027, 3, 10)

    def test_yearly_from_leap_day(self):
        assert plan_period_end("yearly", _utc(2028, 2, 29)) == _utc(2029, 2, 28)

    def test_unknown_plan_raises(self):
        with pytest.raises(ValueError):
            plan_period_end("lifetime", _utc(2026, 3, 10))


class TestCatalogPrices:
    """Price resolution and listing."""

    def test_yaml_prices(self, monkeypatch):
        monkeypatch.delenv("MERCADOPAGO_PRICE_MONTHLY", raising=False)
        catalog = get_plan_catalog()
        assert catalog.get_price("weekly") == 1300
        assert catalog.get_price("monthly") == 5348
        assert catalog.get_price("yearly") == 54549

    def test_env_override_wins(self, monkeypatch):
        monkeypatch.setenv("MERCADOPAGO_PRICE_MONTHLY", "3600")
        assert get_plan_catalog().get_price("monthly") == 3600

    def test_non_integer_override_is_ignored(self, monkeypatch):
        monkeypatch.setenv("MERCADOPAGO_PRICE_MONTHLY", "cheap")
        assert get_plan_catalog().get_price("monthly") == 5348

    def test_unknown_plan_has_no_price(self):
        assert get_plan_catalog().get_price("lifetime") == 0

    def test_listing_includes_savings_against_monthly(self, monkeypatch):
        monkeypatch.delenv("MERCADOPAGO_PRICE_MONTHLY", raising=False)
        monkeypatch.delenv("MERCADOPAGO_PRICE_QUARTERLY", raising=False)
        plans = get_plan_catalog().get_all()
        assert set(plans) == {"weekly", "monthly", "quarterly", "semestral", "yearly"}
        assert plans["quarterly"]["savings"] == 5348 * 3 - 15562
        assert "savings" not in plans["weekly"]

    def test_product_mapping(self):
        catalog = get_plan_catalog()
        assert catalog.plan_for_product("com.anto.app.yearly") == "yearly"
        assert catalog.plan_for_product("com.other.app") is None
        assert catalog.duration_days("quarterly") == 90


class TestCatalogFromFile:
    """Loading an explicit YAML file."""

    def test_custom_catalog(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MERCADOPAGO_PRICE_WEEKLY", raising=False)
        config_path = tmp_path / "plans.yml"
        config_path.write_text(
            "currency: USD\n"
            "plans:\n"
            "  weekly:\n"
            "    name: Weekly\n"
            "    price: 2\n"
            "    interval: week\n"
            "    period: {days: 7}\n"
            "    duration_days: 7\n"
        )
        catalog = SubscriptionPlanCatalog(config_path=str(config_path))
        assert catalog.plan_ids == ["weekly"]
        assert catalog.get_plan("weekly").delta.days == 7
        assert catalog.get_price("weekly") == 2

    def test_plan_outside_the_billable_set_is_rejected(self, tmp_path):
        config_path = tmp_path / "plans.yml"
        config_path.write_text(
            "plans:\n"
            "  daily:\n"
            "    name: Daily\n"
            "    price: 2\n"
            "    period: {days: 1}\n"
        )
        with pytest.raises(ValueError, match="daily"):
            SubscriptionPlanCatalog(config_path=str(config_path))

    def test_shipped_catalog_covers_every_plan(self):
        assert set(get_plan_catalog().plan_ids) == {plan.value for plan in SubscriptionPlan}
