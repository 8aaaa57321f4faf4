"""
Tier selection for group buying sessions.

A session carries four prices, one per fill threshold. The more of the
MOQ is filled, the cheaper the tier:

    fill < 25%           -> tier 25
    25% <= fill < 50%    -> tier 50
    50% <= fill < 100%   -> tier 75
    fill >= 100%         -> tier 100

A fill exactly on a threshold gets the cheaper tier.
"""
from decimal import Decimal
from typing import Dict, Tuple

TIER_25 = 25
TIER_50 = 50
TIER_75 = 75
TIER_100 = 100

TIERS = (TIER_25, TIER_50, TIER_75, TIER_100)

# (minimum fill percentage, tier), highest threshold first
TIER_BANDS = (
    (Decimal('100'), TIER_100),
    (Decimal('50'), TIER_75),
    (Decimal('25'), TIER_50),
)


def fill_percentage(quantity: int, target_moq: int) -> Decimal:
    """Percentage of the MOQ covered by quantity."""
    if target_moq <= 0:
        raise ValueError('target_moq must be positive')
    return Decimal(100) * Decimal(quantity) / Decimal(target_moq)


def tier_for_fill(fill: Decimal) -> int:
    for threshold, tier in TIER_BANDS:
        if fill >= threshold:
            return tier
    return TIER_25


def select_tier(quantity: int, target_moq: int, tier_prices: Dict[int, Decimal]) -> Tuple[int, Decimal]:
    """
    Pick the tier and its price for a given quantity.

    Args:
        quantity: Units committed (real only, or real plus bot at settlement)
        target_moq: Session MOQ
        tier_prices: Mapping of tier to price, as GroupBuyingSession.tier_prices

    Returns:
        (tier, price)
    """
    tier = tier_for_fill(fill_percentage(quantity, target_moq))
    return tier, tier_prices[tier]


def validate_tier_prices(tier_prices: Dict[int, Decimal]) -> bool:
    """All four prices present, positive and non-increasing from tier 25 to tier 100."""
    prices = [tier_prices.get(tier) for tier in TIERS]
    if any(price is None or price <= 0 for price in prices):
        return False
    return all(earlier >= later for earlier, later in zip(prices, prices[1:]))


def refund_per_unit(base_price: Decimal, final_price: Decimal) -> Decimal:
    """What each unit is owed back once the final tier is known; never negative."""
    return max(Decimal('0'), base_price - final_price)
