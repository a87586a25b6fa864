"""
Resync router.

"Recalculate All" style triggers: run a resync inline (``wait=true``) or as
a cancellable background job, and poll or cancel jobs by id.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from grid_pricing.models import ResyncJobStatus, ResyncRequest, ResyncScope
from grid_pricing.services.resync import (
    ResyncCoordinator,
    ResyncJobRegistry,
    get_job_registry,
)
from grid_pricing.services.store import PricingStore, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/resync", tags=["resync"])


@router.post(
    "/",
    summary="Recompute stored treatment totals",
)
def api_start_resync(
    request: ResyncRequest,
    store: PricingStore = Depends(get_store),
    registry: ResyncJobRegistry = Depends(get_job_registry),
) -> dict[str, Any]:
    """With ``wait=true`` the report is returned directly; otherwise a
    background job is started and its id returned."""
    scope = ResyncScope(account_id=request.account_id, project_id=request.project_id)

    if request.wait:
        report = ResyncCoordinator(store, max_workers=registry.max_workers).resync(
            scope, mode=request.mode
        )
        return {"status": "completed", "report": report.model_dump(mode="json")}

    job_id = registry.start(store, scope, mode=request.mode)
    return {"status": "running", "job_id": job_id}


@router.get(
    "/{job_id}",
    response_model=ResyncJobStatus,
    summary="Poll a resync job",
)
async def api_get_resync_job(
    job_id: str,
    registry: ResyncJobRegistry = Depends(get_job_registry),
) -> ResyncJobStatus:
    job = registry.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Resync job '{job_id}' not found")
    return job


@router.post(
    "/{job_id}/cancel",
    summary="Cancel a running resync job",
)
async def api_cancel_resync_job(
    job_id: str,
    registry: ResyncJobRegistry = Depends(get_job_registry),
) -> dict[str, Any]:
    """Items already written stay written; items not yet started are skipped."""
    job = registry.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Resync job '{job_id}' not found")
    cancelled = registry.cancel(job_id)
    return {"job_id": job_id, "cancel_requested": cancelled, "status": job.status}
