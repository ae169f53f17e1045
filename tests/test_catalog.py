"""
Tests for the product catalog and credit-cycle calendar arithmetic.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from photoledger.core.errors import UnknownProductError
from photoledger.models.entitlement import BillingPeriod, PurchaseType, Tier
from photoledger.models.workflow import ProcessingMode
from photoledger.services.catalog import (
    MODE_CREDIT_COSTS,
    add_months,
    credit_cycle_boundary,
    credit_pack_product_id,
    get_product,
    list_products,
    mode_cost,
    period_end,
    subscription_product_id,
)


def _dt(y, m, d):
    return datetime(y, m, d, 12, 0, tzinfo=timezone.utc)


class TestProducts:
    def test_subscription_product_id(self):
        assert subscription_product_id(Tier.PRO, BillingPeriod.MONTHLY, prefix="com.x") == "com.x.pro.1month"
        assert subscription_product_id(Tier.BASIC, BillingPeriod.WEEKLY, prefix="com.x") == "com.x.basic.weekly"
        assert subscription_product_id(Tier.PREMIUM, BillingPeriod.QUARTERLY, prefix="com.x") == "com.x.premium.3months"

    def test_credit_pack_product_id(self):
        assert credit_pack_product_id("pack_25", prefix="com.x") == "com.x.credits.25"

    def test_catalog_has_no_free_subscription(self):
        products = list_products(prefix="com.x")
        assert all(p.tier != Tier.FREE for p in products)
        # 4 packs + 3 paid tiers x 3 periods
        assert len(products) == 13

    def test_get_subscription_product(self):
        product = get_product("com.x.pro.3months", prefix="com.x")
        assert product.purchase_type == PurchaseType.SUBSCRIPTION
        assert product.tier == Tier.PRO
        assert product.billing_period == BillingPeriod.QUARTERLY
        assert product.credits == Decimal("50")

    def test_get_pack_product(self):
        product = get_product("com.x.credits.100", prefix="com.x")
        assert product.purchase_type == PurchaseType.CREDIT_PACK
        assert product.credits == Decimal("100")

    def test_unknown_product(self):
        with pytest.raises(UnknownProductError):
            get_product("com.x.credits.7", prefix="com.x")


class TestModeCosts:
    def test_every_mode_priced(self):
        assert set(MODE_CREDIT_COSTS) == set(ProcessingMode)

    def test_utility_passes_are_fractional(self):
        assert mode_cost(ProcessingMode.UPSCALE) == Decimal("0.3")
        assert mode_cost(ProcessingMode.POP_FIGURE) == Decimal("1")


class TestCalendar:
    def test_add_months_clamps_day(self):
        assert add_months(_dt(2026, 1, 31), 1) == _dt(2026, 2, 28)
        assert add_months(_dt(2028, 1, 31), 1) == _dt(2028, 2, 29)

    def test_add_months_rolls_year(self):
        assert add_months(_dt(2026, 11, 15), 3) == _dt(2027, 2, 15)

    def test_period_end(self):
        start = _dt(2026, 1, 10)
        assert period_end(start, BillingPeriod.WEEKLY) == _dt(2026, 1, 17)
        assert period_end(start, BillingPeriod.MONTHLY) == _dt(2026, 2, 10)
        assert period_end(start, BillingPeriod.QUARTERLY) == _dt(2026, 4, 10)

    def test_cycle_boundaries_do_not_drift(self):
        anchor = _dt(2026, 1, 31)
        # Chained add_months would stick at the 28th after February
        assert credit_cycle_boundary(anchor, BillingPeriod.MONTHLY, 1) == _dt(2026, 2, 28)
        assert credit_cycle_boundary(anchor, BillingPeriod.MONTHLY, 2) == _dt(2026, 3, 31)

    def test_quarterly_cycles_are_monthly(self):
        anchor = _dt(2026, 1, 10)
        assert credit_cycle_boundary(anchor, BillingPeriod.QUARTERLY, 1) == _dt(2026, 2, 10)

    def test_weekly_cycle(self):
        anchor = _dt(2026, 1, 10)
        assert credit_cycle_boundary(anchor, BillingPeriod.WEEKLY, 2) == _dt(2026, 1, 24)
