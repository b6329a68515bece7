"""
Pricing for access credits.

Volume purchases use a cliff-tiered schedule: the discount depends only on
the units requested in one call, never on cumulative history.

    base     = units * base_price_per_unit
    discount = tier_2_bps if units >= tier_2_threshold
               else tier_1_bps if units >= tier_1_threshold
               else 0
    price    = base - floor(base * discount / 10_000)

Subscriptions are flat (units, price, duration) bundles and expiry
extensions are prorated from the base price over a 30-day month.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from .checked import bps_of, checked_div, checked_mul, checked_sub, require_u64
from .config import IssuerConfig
from .constants import (
    EXTENSION_PRORATION_DAYS,
    MONTHLY_SUBSCRIPTION,
    QUARTERLY_SUBSCRIPTION,
    YEARLY_SUBSCRIPTION,
)


@dataclass(frozen=True)
class PriceSchedule:
    """Base price and the two volume-discount tiers."""
    base_price_per_unit: int
    tier_1_threshold: int
    tier_1_discount_bps: int
    tier_2_threshold: int
    tier_2_discount_bps: int

    @classmethod
    def from_config(cls, config: IssuerConfig, base_price_per_unit: Optional[int] = None) -> "PriceSchedule":
        return cls(
            base_price_per_unit=base_price_per_unit if base_price_per_unit is not None else config.base_price_per_unit,
            tier_1_threshold=config.tier_1_threshold,
            tier_1_discount_bps=config.tier_1_discount_bps,
            tier_2_threshold=config.tier_2_threshold,
            tier_2_discount_bps=config.tier_2_discount_bps,
        )


def discount_bps(units: int, schedule: PriceSchedule) -> int:
    if units >= schedule.tier_2_threshold:
        return schedule.tier_2_discount_bps
    if units >= schedule.tier_1_threshold:
        return schedule.tier_1_discount_bps
    return 0


def calculate_price(units: int, schedule: PriceSchedule) -> int:
    """
    Price of `units` under `schedule`.

    Raises:
        LedgerArithmeticError: units * base price overflows u64
    """
    require_u64(units, "units")
    base = checked_mul(units, schedule.base_price_per_unit, "base price")
    discount = bps_of(base, discount_bps(units, schedule), "discount")
    return checked_sub(base, discount, "price")


def extension_price(base_price_per_unit: int, days: int) -> int:
    """Prorated charge for extending a credit by `days`."""
    return checked_div(
        checked_mul(base_price_per_unit, days, "extension price"),
        EXTENSION_PRORATION_DAYS,
        "extension price",
    )


class SubscriptionTier(Enum):
    """Flat-price subscription bundles."""
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def units(self) -> int:
        return SUBSCRIPTION_TABLE[self][0]

    @property
    def price(self) -> int:
        return SUBSCRIPTION_TABLE[self][1]

    @property
    def duration_days(self) -> int:
        return SUBSCRIPTION_TABLE[self][2]


SUBSCRIPTION_TABLE: Dict[SubscriptionTier, tuple] = {
    SubscriptionTier.MONTHLY: MONTHLY_SUBSCRIPTION,
    SubscriptionTier.QUARTERLY: QUARTERLY_SUBSCRIPTION,
    SubscriptionTier.YEARLY: YEARLY_SUBSCRIPTION,
}
