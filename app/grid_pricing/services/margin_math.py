"""
Markup / margin arithmetic.

Markup is cost-based (``sell = cost * (1 + markup / 100)``); margin is
price-based (the share of the sell price that is profit).  All functions are
pure.
"""

from __future__ import annotations

from grid_pricing.errors import ValidationError


def markup_to_margin(markup_percent: float) -> float:
    """Margin percentage equivalent to *markup_percent* (0 for markup <= 0)."""
    if markup_percent <= 0:
        return 0.0
    return markup_percent / (100.0 + markup_percent) * 100.0


def margin_to_markup(margin_percent: float) -> float:
    """Markup percentage needed to earn *margin_percent* on the sell price."""
    if margin_percent <= 0:
        return 0.0
    if margin_percent >= 100:
        raise ValidationError(
            f"Margin must be below 100% (got {margin_percent})"
        )
    return margin_percent / (100.0 - margin_percent) * 100.0


def apply_markup(cost: float, markup_percent: float) -> float:
    """Sell price for *cost* at *markup_percent*."""
    if cost < 0:
        raise ValidationError(f"Cost cannot be negative (got {cost})")
    if markup_percent < -100:
        raise ValidationError(
            f"Markup {markup_percent}% would produce a negative sell price"
        )
    return cost * (1.0 + markup_percent / 100.0)


def gross_margin(cost: float, sell_price: float) -> float:
    """Profit as a percentage of *sell_price* (0 when nothing is sold)."""
    if sell_price <= 0:
        return 0.0
    return (sell_price - cost) / sell_price * 100.0
