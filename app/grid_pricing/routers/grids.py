"""
Pricing grids router.

Registers grids produced by the importer (any supported record shape is
normalised first), looks prices up, and soft-deletes grids.  Registering a
grid deactivates the previous active grid for the same supplier / product /
price group.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from grid_pricing.errors import PricingError
from grid_pricing.models import GridLookupResponse, GridTable, GridUploadRequest
from grid_pricing.services.grid_lookup import grid_from_record, lookup_price
from grid_pricing.services.store import PricingStore, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/grids", tags=["grids"])


def _get_grid_or_404(store: PricingStore, grid_id: str) -> GridTable:
    grid = store.get_grid(grid_id)
    if grid is None:
        raise HTTPException(status_code=404, detail=f"Pricing grid '{grid_id}' not found")
    return grid


@router.post(
    "/",
    response_model=GridTable,
    status_code=201,
    summary="Register a pricing grid",
)
async def api_create_grid(
    body: GridUploadRequest,
    store: PricingStore = Depends(get_store),
) -> GridTable:
    """Normalise and store a parsed grid, replacing the active one."""
    grid = grid_from_record(
        body.grid_data,
        supplier_id=body.supplier_id,
        product_type=body.product_type,
        price_group=body.price_group,
        unit=body.unit,
        currency=body.currency,
        includes_fabric_price=body.includes_fabric_price,
        markup_percentage=body.markup_percentage,
    )
    saved = store.save_grid(grid)
    logger.info(
        "Registered grid %s for %s/%s/%s (%d x %d)",
        saved.grid_id,
        saved.supplier_id,
        saved.product_type,
        saved.price_group,
        len(saved.width_columns),
        len(saved.drop_rows),
    )
    return saved


@router.get(
    "/{grid_id}",
    response_model=GridTable,
    summary="Retrieve a pricing grid",
)
async def api_get_grid(
    grid_id: str,
    store: PricingStore = Depends(get_store),
) -> GridTable:
    return _get_grid_or_404(store, grid_id)


@router.get(
    "/{grid_id}/lookup",
    response_model=GridLookupResponse,
    summary="Look up the grid cost for a width and drop",
)
async def api_lookup_grid(
    grid_id: str,
    width: float = Query(..., description="Window width"),
    drop: float = Query(..., description="Window drop"),
    unit: str = Query("cm", pattern="^(cm|mm)$", description="Measurement unit"),
    store: PricingStore = Depends(get_store),
) -> GridLookupResponse:
    """Return the banded grid price (next size up, clamped at the largest size)."""
    try:
        grid = _get_grid_or_404(store, grid_id)
        price = lookup_price(grid, width, drop, unit)
        return GridLookupResponse(grid_id=grid_id, width=width, drop=drop, unit=unit, price=price)
    except (HTTPException, PricingError):
        raise
    except Exception as exc:
        logger.exception("Grid lookup failed for %s", grid_id)
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.delete(
    "/{grid_id}",
    summary="Deactivate a pricing grid",
)
async def api_deactivate_grid(
    grid_id: str,
    store: PricingStore = Depends(get_store),
) -> dict[str, str]:
    """Soft-delete: the grid stays readable for treatments that reference it."""
    _get_grid_or_404(store, grid_id)
    store.deactivate_grid(grid_id)
    return {"status": "deactivated", "grid_id": grid_id}
