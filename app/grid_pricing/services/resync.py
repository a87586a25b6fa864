"""
Resync coordinator.

Recomputes the stored totals of every treatment in a working set under the
current markup settings and grids, and writes back the results:

* ``changed-only`` -- write only when the new sell price differs from the
  stored one by more than ``RESYNC_PRICE_TOLERANCE`` (or nothing is stored).
  Triggered after a settings save.
* ``force`` -- write every priced record.  Triggered by "Recalculate All".

Items run on a small thread pool so the store sees a bounded number of
requests in flight.  A failing item is logged, counted as skipped, and the
batch carries on.  A cancellation flag is checked before each item starts;
items already written stay written.
"""

from __future__ import annotations

import logging
import math
import threading
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import get_args

from grid_pricing.errors import ConfigurationError, PricingError, ValidationError
from grid_pricing.models import (
    GridTable,
    MarkupSettings,
    ResyncFailure,
    ResyncJobStatus,
    ResyncMode,
    ResyncReport,
    ResyncScope,
    TreatmentInput,
    TreatmentRecord,
)
from grid_pricing.services.pricing import PriceResolutionService
from grid_pricing.services.store import PricingStore
from grid_pricing.utils.config import (
    RESYNC_JOB_HISTORY,
    RESYNC_MAX_WORKERS,
    RESYNC_PRICE_TOLERANCE,
)

logger = logging.getLogger(__name__)

# Per-item outcomes
_UPDATED = "updated"
_REWRITTEN = "rewritten"
_UNCHANGED = "unchanged"
_CANCELLED = "cancelled"
_SKIPPED = "skipped"


def sell_price_changed(stored: float | None, computed: float, tolerance: float) -> bool:
    """True when *computed* differs from *stored* beyond *tolerance*."""
    if stored is None:
        return True
    return not math.isclose(stored, computed, rel_tol=0.0, abs_tol=tolerance)


class ResyncCoordinator:
    """Batch recompute of persisted treatment totals."""

    def __init__(
        self,
        store: PricingStore,
        max_workers: int = RESYNC_MAX_WORKERS,
        tolerance: float = RESYNC_PRICE_TOLERANCE,
    ) -> None:
        self.store = store
        self.max_workers = max(1, max_workers)
        self.tolerance = tolerance

    # -- helpers -------------------------------------------------------------
    def _grid_loader(self):
        """Per-run grid cache shared by the workers of one resync."""
        cache: dict[str, GridTable | None] = {}
        lock = threading.Lock()

        def load(grid_id: str) -> GridTable:
            with lock:
                cached = grid_id in cache
                grid = cache.get(grid_id)
            if not cached:
                # fetched outside the lock; the first result cached wins
                fetched = self.store.get_grid(grid_id)
                with lock:
                    grid = cache.setdefault(grid_id, fetched)
            if grid is None:
                raise ConfigurationError(f"Pricing grid {grid_id} not found")
            return grid

        return load

    def _resync_one(
        self,
        record: TreatmentRecord,
        service: PriceResolutionService,
        load_grid,
        mode: ResyncMode,
        cancel_event: threading.Event | None,
    ) -> tuple[str, ResyncFailure | None]:
        if cancel_event is not None and cancel_event.is_set():
            return _CANCELLED, None

        try:
            treatment = TreatmentInput(
                width=record.width,
                drop=record.drop,
                quantity=record.quantity,
                measurement_unit=record.measurement_unit,
                category_key=record.category_key,
                line_kind=record.line_kind,
                grid=load_grid(record.grid_id) if record.grid_id else None,
                unit_price=record.unit_price,
                fabric=record.fabric,
            )
            breakdown = service.price(treatment)

            changed = sell_price_changed(record.sell_price, breakdown.sell_price, self.tolerance)
            if changed or mode == "force":
                self.store.update_treatment_pricing(record.treatment_id, breakdown)
            if changed:
                return _UPDATED, None
            return (_REWRITTEN if mode == "force" else _UNCHANGED), None
        except PricingError as exc:
            logger.warning(
                "Skipping treatment %s during resync: %s", record.treatment_id, exc
            )
            return _SKIPPED, ResyncFailure(
                treatment_id=record.treatment_id,
                error_type=type(exc).__name__,
                message=str(exc),
            )
        except Exception as exc:
            logger.exception("Unexpected failure resyncing treatment %s", record.treatment_id)
            return _SKIPPED, ResyncFailure(
                treatment_id=record.treatment_id,
                error_type=type(exc).__name__,
                message=str(exc),
            )

    # -- public API ----------------------------------------------------------
    def resync(
        self,
        scope: ResyncScope,
        settings: MarkupSettings | None = None,
        mode: ResyncMode = "changed-only",
        cancel_event: threading.Event | None = None,
    ) -> ResyncReport:
        """Recompute every treatment in *scope* and report aggregate counts.

        Settings default to the account's current settings in the store.
        Store failures while loading the working set propagate; failures of
        individual items do not.
        """
        if mode not in get_args(ResyncMode):
            raise ValidationError(f"Unknown resync mode '{mode}'")

        if settings is None:
            settings = self.store.get_markup_settings(scope.account_id)
        records = self.store.list_treatments(scope)
        report = ResyncReport(mode=mode, total=len(records))

        logger.info(
            "Resync (%s) started for account %s project %s: %d treatments",
            mode,
            scope.account_id,
            scope.project_id,
            len(records),
        )
        if not records:
            return report

        service = PriceResolutionService(settings)
        load_grid = self._grid_loader()
        workers = min(self.max_workers, len(records))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="resync") as executor:
            futures = [
                executor.submit(self._resync_one, record, service, load_grid, mode, cancel_event)
                for record in records
            ]
            outcomes = [f.result() for f in futures]

        for outcome, failure in outcomes:
            if outcome == _UPDATED:
                report.updated += 1
                report.written += 1
            elif outcome == _REWRITTEN:
                report.unchanged += 1
                report.written += 1
            elif outcome == _UNCHANGED:
                report.unchanged += 1
            elif outcome == _CANCELLED:
                report.cancelled += 1
            else:
                report.skipped += 1
                report.failures.append(failure)

        logger.info(
            "Resync (%s) finished for account %s: total=%d updated=%d written=%d "
            "unchanged=%d skipped=%d cancelled=%d",
            mode,
            scope.account_id,
            report.total,
            report.updated,
            report.written,
            report.unchanged,
            report.skipped,
            report.cancelled,
        )
        return report


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------
def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ResyncJobRegistry:
    """Runs resyncs on background threads and tracks their status."""

    def __init__(
        self,
        max_workers: int = RESYNC_MAX_WORKERS,
        history: int = RESYNC_JOB_HISTORY,
    ) -> None:
        self.max_workers = max_workers
        self.history = max(0, history)
        self._lock = threading.Lock()
        self._jobs: dict[str, ResyncJobStatus] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._finished: deque[str] = deque()

    def _finish(self, job_id: str, **updates) -> None:
        """Record the final status and release the job's thread and flag.

        Only the last ``history`` finished jobs stay pollable.
        """
        with self._lock:
            self._jobs[job_id] = self._jobs[job_id].model_copy(update=updates)
            self._cancel_events.pop(job_id, None)
            self._threads.pop(job_id, None)
            self._finished.append(job_id)
            while len(self._finished) > self.history:
                self._jobs.pop(self._finished.popleft(), None)

    def _run(
        self,
        job_id: str,
        store: PricingStore,
        scope: ResyncScope,
        mode: ResyncMode,
        settings: MarkupSettings | None,
    ) -> None:
        event = self._cancel_events[job_id]
        try:
            report = ResyncCoordinator(store, max_workers=self.max_workers).resync(
                scope, settings=settings, mode=mode, cancel_event=event
            )
        except Exception as exc:
            logger.exception("Resync job %s failed", job_id)
            self._finish(job_id, status="failed", error=str(exc), finished_at=_now())
            return

        # cancelled only when the flag actually stopped an item
        status = "cancelled" if report.cancelled > 0 else "completed"
        self._finish(job_id, status=status, report=report, finished_at=_now())

    def start(
        self,
        store: PricingStore,
        scope: ResyncScope,
        mode: ResyncMode = "changed-only",
        settings: MarkupSettings | None = None,
    ) -> str:
        """Start a background resync and return its job id."""
        job_id = str(uuid.uuid4())[:8]
        with self._lock:
            self._jobs[job_id] = ResyncJobStatus(
                job_id=job_id,
                scope=scope,
                mode=mode,
                status="running",
                started_at=_now(),
            )
            self._cancel_events[job_id] = threading.Event()

        thread = threading.Thread(
            target=self._run,
            args=(job_id, store, scope, mode, settings),
            name=f"resync-job-{job_id}",
            daemon=True,
        )
        with self._lock:
            self._threads[job_id] = thread
        thread.start()
        logger.info("Started %s resync job %s for account %s", mode, job_id, scope.account_id)
        return job_id

    def get(self, job_id: str) -> ResyncJobStatus | None:
        with self._lock:
            return self._jobs.get(job_id)

    def cancel(self, job_id: str) -> bool:
        """Request cancellation; False if the job is unknown or already done."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != "running":
                return False
            self._cancel_events[job_id].set()
        logger.info("Cancellation requested for resync job %s", job_id)
        return True

    def wait(self, job_id: str, timeout: float | None = None) -> ResyncJobStatus | None:
        """Block until the job's thread finishes (or *timeout* elapses)."""
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)
        return self.get(job_id)


_registry: ResyncJobRegistry | None = None


def get_job_registry() -> ResyncJobRegistry:
    """Return the process-wide job registry (FastAPI dependency)."""
    global _registry
    if _registry is None:
        _registry = ResyncJobRegistry()
    return _registry
