"""
Markup resolution.

Walks the fallback chain for a priced line item and returns the applied
percentage together with the tier that produced it:

1. grid override (an explicit 0 counts)
2. category markup (> 0)
3. material or labor markup (> 0), depending on the line kind
4. account default
5. minimum floor, applied last to whatever the tiers above produced

The order decides historical prices and must not change.
"""

from __future__ import annotations

import logging

from grid_pricing.models import LineKind, MarkupResult, MarkupSettings, MarkupSource

logger = logging.getLogger(__name__)

_LABOR_CATEGORIES = {"installation", "fitting", "labor", "labour", "making"}


def normalize_category_key(category_key: str | None) -> str | None:
    """Fold ``"Curtain Making"`` / ``"curtain-making"`` to ``"curtain_making"``."""
    if not category_key:
        return None
    key = category_key.strip().lower().replace("-", "_").replace(" ", "_")
    return key or None


def classify_line_kind(category_key: str | None) -> LineKind:
    """Infer whether a category is priced as labor or material."""
    key = normalize_category_key(category_key)
    if key and (key in _LABOR_CATEGORIES or key.endswith("_making")):
        return "labor"
    return "material"


def _category_markup(settings: MarkupSettings, category_key: str | None) -> float:
    key = normalize_category_key(category_key)
    if key is None:
        return 0.0
    for name, percent in settings.category_markups.items():
        if normalize_category_key(name) == key:
            return float(percent or 0)
    return 0.0


def resolve_markup(
    settings: MarkupSettings,
    *,
    grid_markup: float | None = None,
    category_key: str | None = None,
    line_kind: LineKind | None = None,
) -> MarkupResult:
    """Resolve the effective markup for one line item."""
    if grid_markup is not None:
        percent, source = float(grid_markup), MarkupSource.GRID
    else:
        category_percent = _category_markup(settings, category_key)
        kind = line_kind or classify_line_kind(category_key)
        tier_percent = (
            settings.labor_markup_percentage
            if kind == "labor"
            else settings.material_markup_percentage
        )

        if category_percent > 0:
            percent, source = category_percent, MarkupSource.CATEGORY
        elif tier_percent > 0:
            percent, source = float(tier_percent), MarkupSource.MATERIAL_OR_LABOR
        else:
            percent, source = float(settings.default_markup_percentage), MarkupSource.DEFAULT

    if percent < settings.minimum_markup_percentage:
        logger.debug(
            "Markup %s%% from %s is below the %s%% floor",
            percent,
            source.value,
            settings.minimum_markup_percentage,
        )
        percent, source = float(settings.minimum_markup_percentage), MarkupSource.MINIMUM_FLOOR

    return MarkupResult(percent=percent, source=source)
