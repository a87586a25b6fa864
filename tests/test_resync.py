"""
Tests for the resync coordinator and the background job registry.

Runs against ``InMemoryPricingStore`` so no Databricks workspace is needed.
"""

from __future__ import annotations

import os
import sys
import threading
import time

import pytest

# Ensure the app package is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "app"))

from grid_pricing.errors import StoreError, ValidationError  # noqa: E402
from grid_pricing.models import (  # noqa: E402
    DropRow,
    GridTable,
    MarkupSettings,
    MarkupSource,
    ResyncScope,
    TreatmentRecord,
)
from grid_pricing.services.resync import (  # noqa: E402
    ResyncCoordinator,
    ResyncJobRegistry,
    sell_price_changed,
)
from grid_pricing.services.store import InMemoryPricingStore  # noqa: E402

ACCOUNT = "acct-1"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
def _grid() -> GridTable:
    return GridTable(
        grid_id="G1",
        supplier_id="S1",
        product_type="curtain",
        price_group="A",
        width_columns=(100, 150, 200),
        drop_rows=(DropRow(drop=200, prices=(50, 70, 90)),),
    )


def _treatment(treatment_id: str, **fields) -> TreatmentRecord:
    values = {"account_id": ACCOUNT, "width": 120, "drop": 200}
    values.update(fields)
    return TreatmentRecord(treatment_id=treatment_id, **values)


@pytest.fixture
def store() -> InMemoryPricingStore:
    """Two priceable treatments on the account."""
    s = InMemoryPricingStore()
    s.save_grid(_grid())
    s.save_markup_settings(ACCOUNT, MarkupSettings(default_markup_percentage=100))
    s.add_treatment(_treatment("t1", grid_id="G1", project_id="p1"))
    s.add_treatment(_treatment("t2", unit_price=25, quantity=4, project_id="p2"))
    return s


@pytest.fixture
def scope() -> ResyncScope:
    return ResyncScope(account_id=ACCOUNT)


class FailingUpdateStore(InMemoryPricingStore):
    """Raises on writes for selected treatments."""

    def __init__(self, failing: dict[str, Exception]) -> None:
        super().__init__()
        self.failing = failing

    def update_treatment_pricing(self, treatment_id, breakdown):
        if treatment_id in self.failing:
            raise self.failing[treatment_id]
        super().update_treatment_pricing(treatment_id, breakdown)


class CancelAfterFirstWriteStore(InMemoryPricingStore):
    """Sets a cancellation flag as soon as one item has been written."""

    def __init__(self, event: threading.Event) -> None:
        super().__init__()
        self.event = event

    def update_treatment_pricing(self, treatment_id, breakdown):
        super().update_treatment_pricing(treatment_id, breakdown)
        self.event.set()


class FailingListStore(InMemoryPricingStore):
    def list_treatments(self, scope):
        raise StoreError("warehouse unavailable")


class ConcurrencyTrackingStore(InMemoryPricingStore):
    """Records the peak number of writes in flight."""

    def __init__(self) -> None:
        super().__init__()
        self._gauge = threading.Lock()
        self.in_flight = 0
        self.peak = 0

    def update_treatment_pricing(self, treatment_id, breakdown):
        with self._gauge:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(0.005)
            super().update_treatment_pricing(treatment_id, breakdown)
        finally:
            with self._gauge:
                self.in_flight -= 1


class BarrierGridStore(InMemoryPricingStore):
    """Grid reads only complete when two of them run at the same time."""

    def __init__(self) -> None:
        super().__init__()
        self.barrier = threading.Barrier(2, timeout=5)

    def get_grid(self, grid_id):
        self.barrier.wait()
        return super().get_grid(grid_id)


class GatedWriteStore(InMemoryPricingStore):
    """Holds each write until the test releases it."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def update_treatment_pricing(self, treatment_id, breakdown):
        self.entered.set()
        self.release.wait(5)
        super().update_treatment_pricing(treatment_id, breakdown)


# ---------------------------------------------------------------------------
# Change detection
# ---------------------------------------------------------------------------
class TestSellPriceChanged:
    def test_nothing_stored(self):
        assert sell_price_changed(None, 10, 0.005)

    def test_within_tolerance(self):
        assert not sell_price_changed(140.004, 140, 0.005)

    def test_beyond_tolerance(self):
        assert sell_price_changed(140.01, 140, 0.005)


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------
class TestResyncModes:
    """changed-only and force semantics."""

    def test_changed_only_writes_new_prices(self, store, scope):
        report = ResyncCoordinator(store).resync(scope, mode="changed-only")
        assert report.total == 2
        assert report.updated == 2
        assert report.written == 2
        assert report.skipped == 0

        t1 = store.get_treatment("t1")
        assert t1.base_cost == 70
        assert t1.sell_price == pytest.approx(140)
        assert t1.resolved_markup_source == MarkupSource.DEFAULT
        assert t1.margin_percent_equivalent == pytest.approx(50)
        assert store.get_treatment("t2").sell_price == pytest.approx(200)

    def test_changed_only_second_run_writes_nothing(self, store, scope):
        coordinator = ResyncCoordinator(store)
        coordinator.resync(scope, mode="changed-only")
        report = coordinator.resync(scope, mode="changed-only")
        assert report.updated == 0
        assert report.written == 0
        assert report.unchanged == 2

    def test_force_twice_is_idempotent(self, store, scope):
        """The second forced run rewrites every record but changes none."""
        coordinator = ResyncCoordinator(store)
        first = coordinator.resync(scope, mode="force")
        second = coordinator.resync(scope, mode="force")
        assert first.updated == 2
        assert second.updated == 0
        assert second.written == 2
        assert second.unchanged == 2

    def test_settings_change_is_picked_up(self, store, scope):
        coordinator = ResyncCoordinator(store)
        coordinator.resync(scope)
        report = coordinator.resync(scope, settings=MarkupSettings(default_markup_percentage=50))
        assert report.updated == 2
        assert store.get_treatment("t1").sell_price == pytest.approx(105)

    def test_stored_price_within_tolerance_is_unchanged(self, store, scope):
        store.add_treatment(_treatment("t1", grid_id="G1", sell_price=140.004))
        report = ResyncCoordinator(store).resync(scope)
        assert report.unchanged == 1
        assert store.get_treatment("t1").sell_price == pytest.approx(140.004)

    def test_project_scope(self, store):
        report = ResyncCoordinator(store).resync(ResyncScope(account_id=ACCOUNT, project_id="p1"))
        assert report.total == 1
        assert store.get_treatment("t2").sell_price is None

    def test_empty_scope(self, store):
        report = ResyncCoordinator(store).resync(ResyncScope(account_id="nobody"))
        assert report.total == 0
        assert report.updated == 0

    def test_unknown_mode(self, store, scope):
        with pytest.raises(ValidationError):
            ResyncCoordinator(store).resync(scope, mode="sometimes")


class TestResyncIsolation:
    """A failing item is skipped; the batch carries on."""

    def test_configuration_errors_are_skipped(self, store, scope):
        store.add_treatment(_treatment("t3", grid_id="missing"))
        store.add_treatment(_treatment("t4"))
        report = ResyncCoordinator(store).resync(scope)

        assert report.total == 4
        assert report.updated == 2
        assert report.skipped == 2
        failed = {f.treatment_id: f.error_type for f in report.failures}
        assert failed == {"t3": "ConfigurationError", "t4": "ConfigurationError"}

    def test_validation_error_is_skipped(self, store, scope):
        store.add_treatment(_treatment("bad", grid_id="G1", width=0))
        report = ResyncCoordinator(store).resync(scope)
        assert report.skipped == 1
        assert report.failures[0].error_type == "ValidationError"

    def test_store_error_on_write_is_skipped(self, scope):
        s = FailingUpdateStore({"t1": StoreError("write timed out")})
        s.save_grid(_grid())
        s.add_treatment(_treatment("t1", grid_id="G1"))
        s.add_treatment(_treatment("t2", unit_price=10))

        report = ResyncCoordinator(s).resync(scope)
        assert report.updated == 1
        assert report.skipped == 1
        assert report.failures[0].treatment_id == "t1"
        assert report.failures[0].error_type == "StoreError"
        assert report.failures[0].message == "write timed out"

    def test_unexpected_error_is_skipped(self, scope):
        s = FailingUpdateStore({"t1": RuntimeError("boom")})
        s.add_treatment(_treatment("t1", unit_price=10))
        report = ResyncCoordinator(s).resync(scope)
        assert report.skipped == 1
        assert report.failures[0].error_type == "RuntimeError"

    def test_store_error_loading_working_set_propagates(self, scope):
        with pytest.raises(StoreError):
            ResyncCoordinator(FailingListStore()).resync(scope)


class TestResyncCancellation:
    """The cancel flag is checked before each item."""

    def test_preset_flag_cancels_everything(self, store, scope):
        event = threading.Event()
        event.set()
        report = ResyncCoordinator(store).resync(scope, cancel_event=event)
        assert report.cancelled == 2
        assert report.written == 0
        assert store.get_treatment("t1").sell_price is None

    def test_items_written_before_cancel_stay_written(self, scope):
        event = threading.Event()
        s = CancelAfterFirstWriteStore(event)
        s.add_treatment(_treatment("t1", unit_price=10))
        s.add_treatment(_treatment("t2", unit_price=20))

        report = ResyncCoordinator(s, max_workers=1).resync(scope, cancel_event=event)
        assert report.updated == 1
        assert report.cancelled == 1
        assert s.get_treatment("t1").sell_price == pytest.approx(15)
        assert s.get_treatment("t2").sell_price is None


class TestResyncConcurrency:
    """The worker pool bounds the load on the store."""

    @pytest.mark.parametrize("max_workers", [1, 3, 5])
    def test_writes_in_flight_never_exceed_pool_size(self, scope, max_workers):
        s = ConcurrencyTrackingStore()
        for i in range(30):
            s.add_treatment(_treatment(f"t{i}", unit_price=10 + i))

        report = ResyncCoordinator(s, max_workers=max_workers).resync(scope, mode="force")
        assert report.written == 30
        assert 1 <= s.peak <= max_workers

    def test_grid_reads_do_not_block_each_other(self, scope):
        """Two first-time grid fetches run at the same time."""
        s = BarrierGridStore()
        s.save_grid(_grid())
        s.save_grid(_grid().model_copy(update={"grid_id": "G2", "price_group": "B"}))
        s.add_treatment(_treatment("t1", grid_id="G1"))
        s.add_treatment(_treatment("t2", grid_id="G2"))

        report = ResyncCoordinator(s, max_workers=2).resync(scope)
        assert report.failures == []
        assert report.updated == 2


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------
class TestResyncJobRegistry:
    """Jobs run on background threads and can be polled or cancelled."""

    def test_job_completes(self, store, scope):
        registry = ResyncJobRegistry(max_workers=2)
        job_id = registry.start(store, scope, mode="force")
        job = registry.wait(job_id, timeout=10)

        assert job.status == "completed"
        assert job.finished_at is not None
        assert job.report.updated == 2
        assert store.get_treatment("t1").sell_price == pytest.approx(140)

    def test_job_uses_given_settings(self, store, scope):
        registry = ResyncJobRegistry()
        job_id = registry.start(
            store, scope, settings=MarkupSettings(default_markup_percentage=0)
        )
        job = registry.wait(job_id, timeout=10)
        assert job.report.mode == "changed-only"
        assert store.get_treatment("t1").sell_price == pytest.approx(70)

    def test_failed_job(self, scope):
        registry = ResyncJobRegistry()
        job_id = registry.start(FailingListStore(), scope)
        job = registry.wait(job_id, timeout=10)
        assert job.status == "failed"
        assert "warehouse unavailable" in job.error

    def test_cancel_finished_job_returns_false(self, store, scope):
        registry = ResyncJobRegistry()
        job_id = registry.start(store, scope)
        registry.wait(job_id, timeout=10)
        assert registry.cancel(job_id) is False

    def test_unknown_job(self):
        registry = ResyncJobRegistry()
        assert registry.get("nope") is None
        assert registry.cancel("nope") is False
        assert registry.wait("nope") is None

    def test_cancel_after_last_item_started_completes(self, scope):
        """A cancel that stops no item leaves the job completed."""
        s = GatedWriteStore()
        s.add_treatment(_treatment("t1", unit_price=10))
        registry = ResyncJobRegistry()

        job_id = registry.start(s, scope)
        assert s.entered.wait(5)
        assert registry.cancel(job_id) is True
        s.release.set()
        job = registry.wait(job_id, timeout=10)

        assert job.status == "completed"
        assert job.report.cancelled == 0
        assert s.get_treatment("t1").sell_price == pytest.approx(15)

    def test_cancel_that_stops_items_marks_job_cancelled(self, scope):
        s = GatedWriteStore()
        s.add_treatment(_treatment("t1", unit_price=10))
        s.add_treatment(_treatment("t2", unit_price=20))
        registry = ResyncJobRegistry(max_workers=1)

        job_id = registry.start(s, scope)
        assert s.entered.wait(5)
        registry.cancel(job_id)
        s.release.set()
        job = registry.wait(job_id, timeout=10)

        assert job.status == "cancelled"
        assert job.report.updated == 1
        assert job.report.cancelled == 1

    def test_finished_jobs_are_bounded(self, store, scope):
        """Finished jobs release their thread and flag; only the newest are kept."""
        registry = ResyncJobRegistry(history=3)
        job_ids = []
        for _ in range(20):
            job_id = registry.start(store, scope)
            registry.wait(job_id, timeout=10)
            job_ids.append(job_id)

        assert len(registry._jobs) == 3
        assert registry._threads == {}
        assert registry._cancel_events == {}
        assert registry.get(job_ids[0]) is None
        assert registry.get(job_ids[-1]).status == "completed"
