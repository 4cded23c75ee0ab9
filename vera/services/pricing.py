"""
Demand-adjusted ticket pricing.

The engine is a pure function of the event policy, the occurrence start and
live reservation counts, so the same quote can be shown on a listing page
and locked into a ticket at reservation time.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from vera.config import settings
from vera.models.event import Event, TicketCategory

DEMAND_RATIO_CEILING = 1.6
TIME_PRESSURE_HORIZON_MINUTES = 14 * 24 * 60
DEMAND_WEIGHT = 0.75
TIME_WEIGHT = 0.25


@dataclass(frozen=True)
class PricingPolicy:
    base_price_naira: int
    is_paid: bool
    dynamic_enabled: bool
    capacity: int
    sensitivity: float
    floor_ratio: float
    cap_ratio: float
    min_price_naira: Optional[int] = None
    max_price_naira: Optional[int] = None

    @classmethod
    def for_event(cls, event: Event, category: Optional[TicketCategory] = None) -> "PricingPolicy":
        base_price = category.price_naira if category is not None else event.ticket_price_naira
        capacity = category.capacity if category is not None else event.expected_tickets
        return cls(
            base_price_naira=int(base_price or 0),
            is_paid=bool(event.is_paid),
            dynamic_enabled=bool(event.dynamic_pricing_enabled),
            capacity=int(capacity or 0),
            sensitivity=_or_default(event.pricing_sensitivity, settings.PRICING_SENSITIVITY),
            floor_ratio=_or_default(event.pricing_floor_ratio, settings.PRICING_FLOOR_RATIO),
            cap_ratio=_or_default(event.pricing_cap_ratio, settings.PRICING_CAP_RATIO),
            min_price_naira=event.pricing_min_price_naira,
            max_price_naira=event.pricing_max_price_naira,
        )


@dataclass(frozen=True)
class PriceInsight:
    base_price_naira: int
    dynamic_applied: bool
    demand_ratio: float = 0.0
    time_pressure: float = 0.0
    blended_pressure: float = 0.0
    multiplier: float = 1.0
    reserved_count: int = 0
    minutes_to_start: Optional[float] = None

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class PriceQuote:
    unit_price_naira: int
    insight: PriceInsight


def _or_default(value, default):
    return float(default if value is None else value)


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def _round_naira(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class DynamicPricingEngine:
    """
    Computes the unit price for one occurrence of an event
    """

    def price(
        self,
        policy: PricingPolicy,
        occurrence_starts_at: datetime,
        sold_count: int,
        pending_count: int,
        now: datetime,
    ) -> PriceQuote:
        base = policy.base_price_naira if policy.is_paid else 0

        if not policy.is_paid or base <= 0 or not policy.dynamic_enabled:
            return PriceQuote(
                unit_price_naira=base,
                insight=PriceInsight(base_price_naira=base, dynamic_applied=False),
            )

        reserved = max(0, sold_count) + max(0, pending_count)
        if policy.capacity > 0:
            demand_ratio = _clamp(reserved / policy.capacity, 0.0, DEMAND_RATIO_CEILING)
        else:
            demand_ratio = DEMAND_RATIO_CEILING

        minutes_to_start = (occurrence_starts_at - now).total_seconds() / 60
        time_pressure = _clamp(1 - minutes_to_start / TIME_PRESSURE_HORIZON_MINUTES, 0.0, 1.0)

        blended = DEMAND_WEIGHT * demand_ratio + TIME_WEIGHT * time_pressure
        multiplier = 1 + (blended - 0.5) * policy.sensitivity
        multiplier = _clamp(multiplier, policy.floor_ratio, policy.cap_ratio)

        price = base * multiplier
        if policy.min_price_naira is not None:
            price = max(price, policy.min_price_naira)
        if policy.max_price_naira is not None:
            price = min(price, policy.max_price_naira)

        return PriceQuote(
            unit_price_naira=max(0, _round_naira(price)),
            insight=PriceInsight(
                base_price_naira=base,
                dynamic_applied=True,
                demand_ratio=round(demand_ratio, 4),
                time_pressure=round(time_pressure, 4),
                blended_pressure=round(blended, 4),
                multiplier=round(multiplier, 4),
                reserved_count=reserved,
                minutes_to_start=round(minutes_to_start, 2),
            ),
        )


pricing_engine = DynamicPricingEngine()
