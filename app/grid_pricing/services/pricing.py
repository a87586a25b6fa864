"""
Price resolution service.

Combines the grid lookup, markup resolution, and markup arithmetic into a
full ``PriceBreakdown`` for one window treatment.

Two costing paths:

* **grid** -- the treatment's grid supplies the base cost for its width and
  drop.  When the grid price excludes fabric, the fabric is costed on top in
  whole fabric widths.
* **unit_price** -- no grid applies; base cost is ``unit_price * quantity``.

Pricing fails loudly: bad measurements raise ``ValidationError`` before any
lookup, and a treatment with neither a grid nor a unit price raises
``ConfigurationError`` rather than pricing at zero.
"""

from __future__ import annotations

import logging
import math

from grid_pricing.errors import ConfigurationError, ValidationError
from grid_pricing.models import (
    FabricSpec,
    MarkupSettings,
    MeasurementUnit,
    PriceBreakdown,
    TreatmentInput,
)
from grid_pricing.services.grid_lookup import lookup_price
from grid_pricing.services.margin_math import (
    apply_markup,
    gross_margin,
    markup_to_margin,
)
from grid_pricing.services.markup_resolver import resolve_markup

logger = logging.getLogger(__name__)

_UNITS_PER_METRE: dict[str, float] = {"cm": 100.0, "mm": 1000.0}


def validate_measurements(treatment: TreatmentInput) -> None:
    """Reject non-positive width/drop and negative quantity."""
    if treatment.width <= 0 or treatment.drop <= 0:
        raise ValidationError(
            f"Width and drop must be positive (got width={treatment.width}, "
            f"drop={treatment.drop})"
        )
    if treatment.quantity < 0:
        raise ValidationError(
            f"Quantity cannot be negative (got {treatment.quantity})"
        )


def fabric_requirement(
    width: float,
    drop: float,
    fabric: FabricSpec,
    unit: MeasurementUnit = "cm",
) -> tuple[int, float]:
    """Return ``(widths_required, linear_metres)`` of fabric for one window.

    Fabric is cut in whole widths, so the number of widths is a ceiling.
    Each width is cut to the drop plus hem allowances, rounded up to a whole
    pattern repeat.
    """
    if fabric.roll_width <= 0:
        raise ConfigurationError(
            f"Fabric roll width must be positive (got {fabric.roll_width})"
        )

    widths_required = max(1, math.ceil(width * fabric.fullness / fabric.roll_width))

    cut_drop = drop + fabric.header_allowance + fabric.bottom_allowance
    if fabric.pattern_repeat > 0:
        cut_drop = math.ceil(cut_drop / fabric.pattern_repeat) * fabric.pattern_repeat

    linear_metres = widths_required * cut_drop / _UNITS_PER_METRE[unit]
    return widths_required, linear_metres


class PriceResolutionService:
    """Prices treatments against one ``MarkupSettings`` snapshot."""

    def __init__(self, settings: MarkupSettings) -> None:
        self.settings = settings

    def price(self, treatment: TreatmentInput) -> PriceBreakdown:
        """Compute the full price breakdown for *treatment*."""
        validate_measurements(treatment)

        grid = treatment.grid
        grid_cost = 0.0
        fabric_units = 0.0
        fabric_cost = 0.0
        widths_required = 0

        if grid is not None:
            grid_cost = lookup_price(
                grid, treatment.width, treatment.drop, treatment.measurement_unit
            )
            if not grid.includes_fabric_price:
                if treatment.fabric is None:
                    raise ConfigurationError(
                        f"Grid {grid.grid_id or '<inline>'} excludes fabric but the "
                        "treatment has no fabric details"
                    )
                widths_required, fabric_units = fabric_requirement(
                    treatment.width,
                    treatment.drop,
                    treatment.fabric,
                    treatment.measurement_unit,
                )
                fabric_cost = fabric_units * treatment.fabric.unit_cost
            base_cost = (grid_cost + fabric_cost) * treatment.quantity
            method = "grid"
        elif treatment.unit_price is not None:
            if treatment.unit_price < 0:
                raise ConfigurationError(
                    f"Unit price cannot be negative (got {treatment.unit_price})"
                )
            base_cost = treatment.unit_price * treatment.quantity
            method = "unit_price"
        else:
            raise ConfigurationError(
                "Treatment material has neither a pricing grid nor a unit price"
            )

        markup = resolve_markup(
            self.settings,
            grid_markup=grid.markup_percentage if grid is not None else None,
            category_key=treatment.category_key,
            line_kind=treatment.line_kind,
        )
        sell_price = apply_markup(base_cost, markup.percent)

        logger.debug(
            "Priced %s treatment %sx%s: cost %.2f, markup %s%% (%s), sell %.2f",
            method,
            treatment.width,
            treatment.drop,
            base_cost,
            markup.percent,
            markup.source.value,
            sell_price,
        )

        return PriceBreakdown(
            pricing_method=method,
            grid_cost=grid_cost,
            fabric_required_units=fabric_units,
            fabric_cost=fabric_cost,
            widths_required=widths_required,
            base_cost=base_cost,
            resolved_markup_percent=markup.percent,
            resolved_markup_source=markup.source,
            sell_price=sell_price,
            margin_percent_equivalent=markup_to_margin(markup.percent),
            gross_margin=gross_margin(base_cost, sell_price),
        )
