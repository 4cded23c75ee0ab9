"""
Unit tests for the dynamic pricing engine
"""

import pytest
from datetime import datetime, timedelta, timezone

from vera.services.pricing import (
    DEMAND_RATIO_CEILING,
    DynamicPricingEngine,
    PricingPolicy,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_policy(**overrides) -> PricingPolicy:
    fields = dict(
        base_price_naira=10000,
        is_paid=True,
        dynamic_enabled=True,
        capacity=100,
        sensitivity=0.6,
        floor_ratio=0.8,
        cap_ratio=1.5,
    )
    fields.update(overrides)
    return PricingPolicy(**fields)


@pytest.mark.unit
class TestDynamicPricingEngine:
    """Test price computation"""

    def setup_method(self):
        self.engine = DynamicPricingEngine()

    def test_static_price_when_dynamic_disabled(self):
        quote = self.engine.price(make_policy(dynamic_enabled=False), NOW + timedelta(days=1), 90, 5, NOW)

        assert quote.unit_price_naira == 10000
        assert quote.insight.dynamic_applied is False
        assert quote.insight.multiplier == 1.0

    def test_free_event_is_zero(self):
        quote = self.engine.price(make_policy(is_paid=False), NOW + timedelta(days=1), 50, 0, NOW)

        assert quote.unit_price_naira == 0
        assert quote.insight.dynamic_applied is False

    def test_zero_base_price_is_zero(self):
        quote = self.engine.price(make_policy(base_price_naira=0), NOW + timedelta(days=1), 50, 0, NOW)
        assert quote.unit_price_naira == 0

    def test_low_demand_far_out_hits_floor(self):
        # blended = 0, multiplier = 1 - 0.5 * 0.6 = 0.7, clamped to 0.8
        quote = self.engine.price(make_policy(), NOW + timedelta(days=30), 0, 0, NOW)

        assert quote.unit_price_naira == 8000
        assert quote.insight.dynamic_applied is True
        assert quote.insight.demand_ratio == 0.0
        assert quote.insight.time_pressure == 0.0
        assert quote.insight.multiplier == 0.8

    def test_half_demand_far_out(self):
        # blended = 0.75 * 0.5 = 0.375, multiplier = 1 + (0.375 - 0.5) * 0.6 = 0.925
        quote = self.engine.price(make_policy(), NOW + timedelta(days=30), 40, 10, NOW)

        assert quote.unit_price_naira == 9250
        assert quote.insight.reserved_count == 50
        assert quote.insight.blended_pressure == 0.375

    def test_sold_out_at_start_hits_cap(self):
        quote = self.engine.price(make_policy(), NOW, 100, 0, NOW)

        # blended = 0.75 + 0.25 = 1.0, multiplier = 1.3
        assert quote.unit_price_naira == 13000
        assert quote.insight.time_pressure == 1.0

    def test_demand_ratio_is_clamped(self):
        quote = self.engine.price(make_policy(cap_ratio=5.0), NOW, 500, 0, NOW)

        assert quote.insight.demand_ratio == DEMAND_RATIO_CEILING

    def test_zero_capacity_uses_demand_ceiling(self):
        quote = self.engine.price(make_policy(capacity=0, cap_ratio=5.0), NOW + timedelta(days=30), 0, 0, NOW)

        assert quote.insight.demand_ratio == DEMAND_RATIO_CEILING

    def test_time_pressure_is_linear_inside_horizon(self):
        quote = self.engine.price(make_policy(), NOW + timedelta(days=7), 0, 0, NOW)

        assert quote.insight.time_pressure == 0.5
        assert quote.insight.minutes_to_start == 7 * 24 * 60

    def test_started_occurrence_has_full_time_pressure(self):
        quote = self.engine.price(make_policy(), NOW - timedelta(hours=1), 0, 0, NOW)
        assert quote.insight.time_pressure == 1.0

    def test_multiplier_capped(self):
        quote = self.engine.price(make_policy(sensitivity=3.0), NOW, 160, 0, NOW)

        assert quote.insight.multiplier == 1.5
        assert quote.unit_price_naira == 15000

    def test_absolute_bounds_apply_after_ratios(self):
        far = NOW + timedelta(days=30)
        floored = self.engine.price(make_policy(min_price_naira=9500), far, 0, 0, NOW)
        capped = self.engine.price(make_policy(max_price_naira=11000), NOW, 100, 0, NOW)

        assert floored.unit_price_naira == 9500
        assert capped.unit_price_naira == 11000

    def test_rounds_half_up(self):
        # multiplier 0.925 on 1010 is 934.25 -> 934; on 1030 is 952.75 -> 953
        far = NOW + timedelta(days=30)
        low = self.engine.price(make_policy(base_price_naira=1010), far, 40, 10, NOW)
        high = self.engine.price(make_policy(base_price_naira=1030), far, 40, 10, NOW)

        assert low.unit_price_naira == 934
        assert high.unit_price_naira == 953

    def test_exact_half_rounds_up(self):
        # 0.925 * 1060 = 980.5 and 0.925 * 1020 = 943.5, never banker's rounding
        far = NOW + timedelta(days=30)
        assert self.engine.price(make_policy(base_price_naira=1060), far, 40, 10, NOW).unit_price_naira == 981
        assert self.engine.price(make_policy(base_price_naira=1020), far, 40, 10, NOW).unit_price_naira == 944

    def test_pending_counts_toward_demand(self):
        far = NOW + timedelta(days=30)
        sold_only = self.engine.price(make_policy(), far, 50, 0, NOW)
        mixed = self.engine.price(make_policy(), far, 25, 25, NOW)

        assert sold_only.unit_price_naira == mixed.unit_price_naira

    def test_insight_serializes(self):
        quote = self.engine.price(make_policy(), NOW + timedelta(days=7), 10, 0, NOW)
        data = quote.insight.as_dict()

        assert data["base_price_naira"] == 10000
        assert data["dynamic_applied"] is True
        assert set(data) >= {"demand_ratio", "time_pressure", "multiplier", "reserved_count"}
