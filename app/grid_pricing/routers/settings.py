"""
Markup settings router.

Saving settings kicks off a changed-only resync of the account's treatments
in the background; the response carries the job id so the caller can report
how many records were updated once it finishes.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from grid_pricing.models import MarkupSettings, ResyncScope, SettingsSaveResponse
from grid_pricing.services.resync import ResyncJobRegistry, get_job_registry
from grid_pricing.services.store import PricingStore, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/markup-settings", tags=["settings"])


@router.get(
    "/{account_id}",
    response_model=MarkupSettings,
    summary="Return an account's markup settings",
)
async def api_get_markup_settings(
    account_id: str,
    store: PricingStore = Depends(get_store),
) -> MarkupSettings:
    return store.get_markup_settings(account_id)


@router.put(
    "/{account_id}",
    response_model=SettingsSaveResponse,
    summary="Save markup settings and resync changed prices",
)
async def api_save_markup_settings(
    account_id: str,
    settings: MarkupSettings,
    resync: bool = True,
    store: PricingStore = Depends(get_store),
    registry: ResyncJobRegistry = Depends(get_job_registry),
) -> SettingsSaveResponse:
    """Persist *settings*; unless ``resync=false``, start a changed-only
    resync over the account with the saved values."""
    saved = store.save_markup_settings(account_id, settings)

    job_id = None
    if resync:
        job_id = registry.start(
            store,
            ResyncScope(account_id=account_id),
            mode="changed-only",
            settings=saved,
        )
    return SettingsSaveResponse(settings=saved, resync_job_id=job_id)
