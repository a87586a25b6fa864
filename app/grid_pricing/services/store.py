"""
Record store for treatments, pricing grids, and markup settings.

The pricing engine performs no I/O itself; the resync coordinator and the
HTTP layer go through the ``PricingStore`` contract.  Two implementations:

* ``InMemoryPricingStore`` -- process-local dictionaries, for tests and
  local development (``STORE_BACKEND=memory``).
* ``DatabricksPricingStore`` -- Unity Catalog tables queried through the
  SQL Statement Execution API.

Every failure surfaces as ``StoreError``.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any

from grid_pricing.errors import StoreError
from grid_pricing.models import (
    FabricSpec,
    GridTable,
    MarkupSettings,
    PriceBreakdown,
    ResyncScope,
    TreatmentRecord,
)
from grid_pricing.services.grid_lookup import grid_from_record, grid_to_record
from grid_pricing.utils.config import (
    DEFAULT_MARKUP_PERCENTAGE,
    DEFAULT_MINIMUM_MARKUP_PERCENTAGE,
    STORE_BACKEND,
    TABLE_MARKUP_SETTINGS,
    TABLE_PRICING_GRIDS,
    TABLE_TREATMENTS,
)
from grid_pricing.utils.databricks_client import execute_sql, invalidate_cache

logger = logging.getLogger(__name__)


def default_markup_settings() -> MarkupSettings:
    """Settings used for an account that has never saved its own."""
    return MarkupSettings(
        default_markup_percentage=DEFAULT_MARKUP_PERCENTAGE,
        minimum_markup_percentage=DEFAULT_MINIMUM_MARKUP_PERCENTAGE,
    )


def _new_id() -> str:
    return str(uuid.uuid4())[:8]


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------
class PricingStore(ABC):
    """Read/write contract the engine's callers rely on."""

    @abstractmethod
    def list_treatments(self, scope: ResyncScope) -> list[TreatmentRecord]:
        """Return every persisted treatment in *scope*."""

    @abstractmethod
    def update_treatment_pricing(self, treatment_id: str, breakdown: PriceBreakdown) -> None:
        """Overwrite the stored pricing fields of one treatment."""

    @abstractmethod
    def get_grid(self, grid_id: str) -> GridTable | None:
        """Return a grid by id (active or not), or None."""

    @abstractmethod
    def find_active_grid(
        self, supplier_id: str, product_type: str, price_group: str
    ) -> GridTable | None:
        """Return the active grid for an identity, or None."""

    @abstractmethod
    def save_grid(self, grid: GridTable) -> GridTable:
        """Persist *grid*, deactivating any active grid with the same identity."""

    @abstractmethod
    def deactivate_grid(self, grid_id: str) -> None:
        """Soft-delete a grid."""

    @abstractmethod
    def get_markup_settings(self, account_id: str) -> MarkupSettings:
        """Return the account's settings (defaults if none were saved)."""

    @abstractmethod
    def save_markup_settings(self, account_id: str, settings: MarkupSettings) -> MarkupSettings:
        """Replace the account's settings."""


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------
class InMemoryPricingStore(PricingStore):
    """Thread-safe dictionary-backed store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._treatments: dict[str, TreatmentRecord] = {}
        self._grids: dict[str, GridTable] = {}
        self._settings: dict[str, MarkupSettings] = {}

    # -- treatments ---------------------------------------------------------
    def add_treatment(self, record: TreatmentRecord) -> None:
        with self._lock:
            self._treatments[record.treatment_id] = record

    def get_treatment(self, treatment_id: str) -> TreatmentRecord | None:
        with self._lock:
            return self._treatments.get(treatment_id)

    def list_treatments(self, scope: ResyncScope) -> list[TreatmentRecord]:
        with self._lock:
            return [
                t
                for t in self._treatments.values()
                if t.account_id == scope.account_id
                and (scope.project_id is None or t.project_id == scope.project_id)
            ]

    def update_treatment_pricing(self, treatment_id: str, breakdown: PriceBreakdown) -> None:
        with self._lock:
            record = self._treatments.get(treatment_id)
            if record is None:
                raise StoreError(f"Treatment {treatment_id} not found")
            self._treatments[treatment_id] = record.model_copy(
                update={
                    "base_cost": breakdown.base_cost,
                    "sell_price": breakdown.sell_price,
                    "resolved_markup_percent": breakdown.resolved_markup_percent,
                    "resolved_markup_source": breakdown.resolved_markup_source,
                    "margin_percent_equivalent": breakdown.margin_percent_equivalent,
                }
            )

    # -- grids --------------------------------------------------------------
    def get_grid(self, grid_id: str) -> GridTable | None:
        with self._lock:
            return self._grids.get(grid_id)

    def find_active_grid(
        self, supplier_id: str, product_type: str, price_group: str
    ) -> GridTable | None:
        with self._lock:
            for grid in self._grids.values():
                if grid.active and (grid.supplier_id, grid.product_type, grid.price_group) == (
                    supplier_id,
                    product_type,
                    price_group,
                ):
                    return grid
        return None

    def save_grid(self, grid: GridTable) -> GridTable:
        saved = grid if grid.grid_id else grid.model_copy(update={"grid_id": _new_id()})
        identity = (saved.supplier_id, saved.product_type, saved.price_group)
        with self._lock:
            if saved.active:
                for gid, existing in list(self._grids.items()):
                    if (
                        gid != saved.grid_id
                        and existing.active
                        and (existing.supplier_id, existing.product_type, existing.price_group) == identity
                    ):
                        self._grids[gid] = existing.model_copy(update={"active": False})
            self._grids[saved.grid_id] = saved
        return saved

    def deactivate_grid(self, grid_id: str) -> None:
        with self._lock:
            grid = self._grids.get(grid_id)
            if grid is None:
                raise StoreError(f"Grid {grid_id} not found")
            self._grids[grid_id] = grid.model_copy(update={"active": False})

    # -- settings -----------------------------------------------------------
    def get_markup_settings(self, account_id: str) -> MarkupSettings:
        with self._lock:
            return self._settings.get(account_id) or default_markup_settings()

    def save_markup_settings(self, account_id: str, settings: MarkupSettings) -> MarkupSettings:
        with self._lock:
            self._settings[account_id] = settings
        return settings


# ---------------------------------------------------------------------------
# Databricks implementation
# ---------------------------------------------------------------------------
def _opt_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "t", "yes")


_TREATMENT_COLUMNS = """
    treatment_id, account_id, project_id, width, drop, quantity,
    measurement_unit, category_key, line_kind, grid_id, unit_price,
    fabric_roll_width, fabric_unit_cost, fabric_pattern_repeat,
    fabric_header_allowance, fabric_bottom_allowance, fabric_fullness,
    base_cost, sell_price, resolved_markup_percent, resolved_markup_source,
    margin_percent_equivalent
"""


class DatabricksPricingStore(PricingStore):
    """Unity Catalog tables accessed through ``execute_sql``."""

    def _treatment_from_row(self, r: dict[str, Any]) -> TreatmentRecord:
        fabric = None
        if r.get("fabric_roll_width") not in (None, ""):
            fabric = FabricSpec(
                roll_width=float(r["fabric_roll_width"]),
                unit_cost=float(r.get("fabric_unit_cost") or 0),
                pattern_repeat=float(r.get("fabric_pattern_repeat") or 0),
                header_allowance=float(r.get("fabric_header_allowance") or 0),
                bottom_allowance=float(r.get("fabric_bottom_allowance") or 0),
                fullness=float(r.get("fabric_fullness") or 1),
            )
        return TreatmentRecord(
            treatment_id=str(r["treatment_id"]),
            account_id=str(r["account_id"]),
            project_id=r.get("project_id"),
            width=float(r["width"]),
            drop=float(r["drop"]),
            quantity=float(r.get("quantity") or 1),
            measurement_unit=r.get("measurement_unit") or "cm",
            category_key=r.get("category_key"),
            line_kind=r.get("line_kind") or None,
            grid_id=r.get("grid_id") or None,
            unit_price=_opt_float(r.get("unit_price")),
            fabric=fabric,
            base_cost=_opt_float(r.get("base_cost")),
            sell_price=_opt_float(r.get("sell_price")),
            resolved_markup_percent=_opt_float(r.get("resolved_markup_percent")),
            resolved_markup_source=r.get("resolved_markup_source") or None,
            margin_percent_equivalent=_opt_float(r.get("margin_percent_equivalent")),
        )

    def _grid_from_row(self, r: dict[str, Any]) -> GridTable:
        try:
            data = json.loads(r["grid_data"])
        except (TypeError, ValueError) as exc:
            raise StoreError(f"Grid {r.get('grid_id')} has unreadable grid_data") from exc
        return grid_from_record(
            data,
            grid_id=str(r["grid_id"]),
            supplier_id=r.get("supplier_id"),
            product_type=r.get("product_type"),
            price_group=r.get("price_group"),
            unit=r.get("unit") or None,
            currency=r.get("currency") or None,
            includes_fabric_price=_as_bool(r.get("includes_fabric_price", True)),
            markup_percentage=_opt_float(r.get("markup_percentage")),
            active=_as_bool(r.get("active", True)),
        )

    # -- treatments ---------------------------------------------------------
    def list_treatments(self, scope: ResyncScope) -> list[TreatmentRecord]:
        params: dict[str, Any] = {"account_id": scope.account_id}
        where_sql = "WHERE account_id = :account_id"
        if scope.project_id:
            where_sql += " AND project_id = :project_id"
            params["project_id"] = scope.project_id

        query = f"""
            SELECT {_TREATMENT_COLUMNS}
            FROM {TABLE_TREATMENTS}
            {where_sql}
            ORDER BY treatment_id
        """
        rows = execute_sql(query, parameters=params)
        return [self._treatment_from_row(r) for r in rows]

    def update_treatment_pricing(self, treatment_id: str, breakdown: PriceBreakdown) -> None:
        query = f"""
            UPDATE {TABLE_TREATMENTS}
            SET base_cost = :base_cost,
                sell_price = :sell_price,
                resolved_markup_percent = :resolved_markup_percent,
                resolved_markup_source = :resolved_markup_source,
                margin_percent_equivalent = :margin_percent_equivalent,
                fabric_required_units = :fabric_required_units,
                priced_at = current_timestamp()
            WHERE treatment_id = :treatment_id
        """
        execute_sql(
            query,
            parameters={
                "treatment_id": treatment_id,
                "base_cost": breakdown.base_cost,
                "sell_price": breakdown.sell_price,
                "resolved_markup_percent": breakdown.resolved_markup_percent,
                "resolved_markup_source": breakdown.resolved_markup_source.value,
                "margin_percent_equivalent": breakdown.margin_percent_equivalent,
                "fabric_required_units": breakdown.fabric_required_units,
            },
        )

    # -- grids --------------------------------------------------------------
    def get_grid(self, grid_id: str) -> GridTable | None:
        query = f"""
            SELECT *
            FROM {TABLE_PRICING_GRIDS}
            WHERE grid_id = :grid_id
            LIMIT 1
        """
        rows = execute_sql(query, parameters={"grid_id": grid_id}, cache_key=f"grid:{grid_id}")
        return self._grid_from_row(rows[0]) if rows else None

    def find_active_grid(
        self, supplier_id: str, product_type: str, price_group: str
    ) -> GridTable | None:
        query = f"""
            SELECT *
            FROM {TABLE_PRICING_GRIDS}
            WHERE supplier_id = :supplier_id
              AND product_type = :product_type
              AND price_group = :price_group
              AND active = true
            LIMIT 1
        """
        rows = execute_sql(
            query,
            parameters={
                "supplier_id": supplier_id,
                "product_type": product_type,
                "price_group": price_group,
            },
        )
        return self._grid_from_row(rows[0]) if rows else None

    def save_grid(self, grid: GridTable) -> GridTable:
        saved = grid if grid.grid_id else grid.model_copy(update={"grid_id": _new_id()})
        identity = {
            "supplier_id": saved.supplier_id,
            "product_type": saved.product_type,
            "price_group": saved.price_group,
        }
        if saved.active:
            execute_sql(
                f"""
                UPDATE {TABLE_PRICING_GRIDS}
                SET active = false
                WHERE supplier_id = :supplier_id
                  AND product_type = :product_type
                  AND price_group = :price_group
                  AND active = true
                """,
                parameters=identity,
            )
        execute_sql(
            f"""
            INSERT INTO {TABLE_PRICING_GRIDS}
                (grid_id, supplier_id, product_type, price_group, grid_data,
                 unit, currency, includes_fabric_price, markup_percentage,
                 active, created_at)
            VALUES
                (:grid_id, :supplier_id, :product_type, :price_group, :grid_data,
                 :unit, :currency, :includes_fabric_price, :markup_percentage,
                 :active, current_timestamp())
            """,
            parameters={
                **identity,
                "grid_id": saved.grid_id,
                "grid_data": json.dumps(grid_to_record(saved)),
                "unit": saved.unit,
                "currency": saved.currency,
                "includes_fabric_price": saved.includes_fabric_price,
                "markup_percentage": saved.markup_percentage,
                "active": saved.active,
            },
        )
        invalidate_cache("grid:")
        logger.info("Saved pricing grid %s (%s)", saved.grid_id, identity)
        return saved

    def deactivate_grid(self, grid_id: str) -> None:
        execute_sql(
            f"UPDATE {TABLE_PRICING_GRIDS} SET active = false WHERE grid_id = :grid_id",
            parameters={"grid_id": grid_id},
        )
        invalidate_cache(f"grid:{grid_id}")

    # -- settings -----------------------------------------------------------
    def get_markup_settings(self, account_id: str) -> MarkupSettings:
        query = f"""
            SELECT default_markup_percentage, minimum_markup_percentage,
                   material_markup_percentage, labor_markup_percentage,
                   category_markups, show_markup_to_staff
            FROM {TABLE_MARKUP_SETTINGS}
            WHERE account_id = :account_id
            LIMIT 1
        """
        rows = execute_sql(query, parameters={"account_id": account_id})
        if not rows:
            return default_markup_settings()

        r = rows[0]
        try:
            category_markups = json.loads(r.get("category_markups") or "{}")
        except ValueError as exc:
            raise StoreError(f"Unreadable category markups for account {account_id}") from exc
        return MarkupSettings(
            default_markup_percentage=float(r.get("default_markup_percentage") or 0),
            minimum_markup_percentage=float(r.get("minimum_markup_percentage") or 0),
            material_markup_percentage=float(r.get("material_markup_percentage") or 0),
            labor_markup_percentage=float(r.get("labor_markup_percentage") or 0),
            category_markups={k: float(v or 0) for k, v in category_markups.items()},
            show_markup_to_staff=_as_bool(r.get("show_markup_to_staff", False)),
        )

    def save_markup_settings(self, account_id: str, settings: MarkupSettings) -> MarkupSettings:
        query = f"""
            MERGE INTO {TABLE_MARKUP_SETTINGS} AS t
            USING (SELECT :account_id AS account_id) AS s
            ON t.account_id = s.account_id
            WHEN MATCHED THEN UPDATE SET
                default_markup_percentage = :default_markup_percentage,
                minimum_markup_percentage = :minimum_markup_percentage,
                material_markup_percentage = :material_markup_percentage,
                labor_markup_percentage = :labor_markup_percentage,
                category_markups = :category_markups,
                show_markup_to_staff = :show_markup_to_staff,
                updated_at = current_timestamp()
            WHEN NOT MATCHED THEN INSERT
                (account_id, default_markup_percentage, minimum_markup_percentage,
                 material_markup_percentage, labor_markup_percentage,
                 category_markups, show_markup_to_staff, updated_at)
            VALUES
                (:account_id, :default_markup_percentage, :minimum_markup_percentage,
                 :material_markup_percentage, :labor_markup_percentage,
                 :category_markups, :show_markup_to_staff, current_timestamp())
        """
        execute_sql(
            query,
            parameters={
                "account_id": account_id,
                "default_markup_percentage": settings.default_markup_percentage,
                "minimum_markup_percentage": settings.minimum_markup_percentage,
                "material_markup_percentage": settings.material_markup_percentage,
                "labor_markup_percentage": settings.labor_markup_percentage,
                "category_markups": json.dumps(settings.category_markups),
                "show_markup_to_staff": settings.show_markup_to_staff,
            },
        )
        logger.info("Saved markup settings for account %s", account_id)
        return settings


# ---------------------------------------------------------------------------
# Singleton accessor (FastAPI dependency)
# ---------------------------------------------------------------------------
_store: PricingStore | None = None


def get_store() -> PricingStore:
    """Return the process-wide store selected by ``STORE_BACKEND``."""
    global _store
    if _store is not None:
        return _store

    if STORE_BACKEND == "memory":
        logger.info("Using in-memory pricing store")
        _store = InMemoryPricingStore()
    else:
        logger.info("Using Databricks pricing store")
        _store = DatabricksPricingStore()
    return _store
