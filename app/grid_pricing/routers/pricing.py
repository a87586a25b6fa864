"""
Pricing router.

Single-item price resolution, markup resolution, and markup/margin
conversion.  Pricing errors propagate to the exception handlers registered in
``grid_pricing.main`` so the caller sees the failure instead of a guessed
price.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from grid_pricing.errors import PricingError
from grid_pricing.models import (
    MarginConversion,
    MarkupResolveRequest,
    MarkupResult,
    MarkupSettings,
    PriceBreakdown,
    PriceRequest,
    TreatmentInput,
)
from grid_pricing.services.margin_math import markup_to_margin
from grid_pricing.services.markup_resolver import resolve_markup
from grid_pricing.services.pricing import PriceResolutionService
from grid_pricing.services.store import PricingStore, default_markup_settings, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["pricing"])


def _settings_for(
    store: PricingStore,
    inline: MarkupSettings | None,
    account_id: str | None,
) -> MarkupSettings:
    """Inline settings win; otherwise the account's; otherwise defaults."""
    if inline is not None:
        return inline
    if account_id:
        return store.get_markup_settings(account_id)
    return default_markup_settings()


# ---------------------------------------------------------------------------
# POST /price
# ---------------------------------------------------------------------------
@router.post(
    "/price",
    response_model=PriceBreakdown,
    summary="Price a single window treatment",
)
async def api_price_treatment(
    request: PriceRequest,
    store: PricingStore = Depends(get_store),
) -> PriceBreakdown:
    """Resolve the base cost, markup, and sell price for one treatment.

    The grid is taken inline or loaded by ``grid_id``; markup settings are
    taken inline or loaded for ``account_id``.
    """
    try:
        grid = request.grid
        if grid is None and request.grid_id:
            grid = store.get_grid(request.grid_id)
            if grid is None:
                raise HTTPException(
                    status_code=404,
                    detail=f"Pricing grid '{request.grid_id}' not found",
                )

        settings = _settings_for(store, request.markup_settings, request.account_id)
        treatment = TreatmentInput(
            width=request.width,
            drop=request.drop,
            quantity=request.quantity,
            measurement_unit=request.measurement_unit,
            category_key=request.category_key,
            line_kind=request.line_kind,
            grid=grid,
            unit_price=request.unit_price,
            fabric=request.fabric,
        )
        return PriceResolutionService(settings).price(treatment)
    except (HTTPException, PricingError):
        raise
    except Exception as exc:
        logger.exception("Pricing failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# POST /markup/resolve
# ---------------------------------------------------------------------------
@router.post(
    "/markup/resolve",
    response_model=MarkupResult,
    summary="Resolve the effective markup for a line item",
)
async def api_resolve_markup(
    request: MarkupResolveRequest,
    store: PricingStore = Depends(get_store),
) -> MarkupResult:
    """Walk the grid -> category -> material/labor -> default -> floor chain."""
    settings = _settings_for(store, request.markup_settings, request.account_id)
    return resolve_markup(
        settings,
        grid_markup=request.grid_markup,
        category_key=request.category_key,
        line_kind=request.line_kind,
    )


# ---------------------------------------------------------------------------
# GET /margin/convert
# ---------------------------------------------------------------------------
@router.get(
    "/margin/convert",
    response_model=MarginConversion,
    summary="Convert a markup percentage to its margin equivalent",
)
async def api_convert_margin(
    markup_percent: float = Query(..., ge=-100, description="Markup on cost, in percent"),
) -> MarginConversion:
    return MarginConversion(
        markup_percent=markup_percent,
        margin_percent=round(markup_to_margin(markup_percent), 4),
    )
