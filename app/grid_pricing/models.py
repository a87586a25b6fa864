"""
Pydantic data models for the grid pricing engine.

All domain records and request / response schemas are defined here so they
can be shared across services, routers, the record stores, and tests.
Records consumed by a pricing call (grids, settings, treatments) are frozen:
a resolution runs over read-only snapshots.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

MeasurementUnit = Literal["cm", "mm"]
LineKind = Literal["material", "labor"]
ResyncMode = Literal["changed-only", "force"]


# ---------------------------------------------------------------------------
# Pricing grids
# ---------------------------------------------------------------------------
class DropRow(BaseModel):
    """One drop band of a pricing grid, with a price per width column."""

    model_config = ConfigDict(frozen=True)

    drop: float
    prices: tuple[float, ...]


class GridTable(BaseModel):
    """Supplier pricing grid: width columns x drop rows -> base cost."""

    model_config = ConfigDict(frozen=True)

    grid_id: str | None = None
    supplier_id: str | None = None
    product_type: str | None = None
    price_group: str | None = None

    width_columns: tuple[float, ...]
    drop_rows: tuple[DropRow, ...]
    unit: MeasurementUnit = "cm"
    currency: str | None = None

    includes_fabric_price: bool = Field(
        True,
        description="False when fabric must be costed separately on top of the grid price",
    )
    markup_percentage: float | None = Field(
        None,
        description="Grid-level markup override; an explicit 0 is a valid override",
    )
    active: bool = True


# ---------------------------------------------------------------------------
# Markup settings
# ---------------------------------------------------------------------------
class MarkupSettings(BaseModel):
    """Account-wide markup configuration (one record per account)."""

    model_config = ConfigDict(frozen=True)

    default_markup_percentage: float = 50.0
    minimum_markup_percentage: float = 0.0
    material_markup_percentage: float = 0.0
    labor_markup_percentage: float = 0.0
    category_markups: dict[str, float] = Field(default_factory=dict)
    show_markup_to_staff: bool = False


class MarkupSource(str, Enum):
    """Which tier of the fallback chain produced the applied markup."""

    GRID = "grid"
    CATEGORY = "category"
    MATERIAL_OR_LABOR = "material_or_labor"
    DEFAULT = "default"
    MINIMUM_FLOOR = "minimum_floor"


class MarkupResult(BaseModel):
    """Resolved markup with its provenance."""

    model_config = ConfigDict(frozen=True)

    percent: float
    source: MarkupSource


# ---------------------------------------------------------------------------
# Treatments
# ---------------------------------------------------------------------------
class FabricSpec(BaseModel):
    """Fabric metadata needed when a grid price excludes fabric.

    Lengths are in the treatment's measurement unit; ``unit_cost`` is per
    linear metre.
    """

    model_config = ConfigDict(frozen=True)

    roll_width: float
    unit_cost: float
    pattern_repeat: float = 0.0
    header_allowance: float = 0.0
    bottom_allowance: float = 0.0
    fullness: float = 1.0


class TreatmentInput(BaseModel):
    """Everything needed to price one window treatment."""

    model_config = ConfigDict(frozen=True)

    width: float
    drop: float
    quantity: float = 1.0
    measurement_unit: MeasurementUnit = "cm"
    category_key: str | None = None
    line_kind: LineKind | None = None
    grid: GridTable | None = None
    unit_price: float | None = None
    fabric: FabricSpec | None = None


class PriceBreakdown(BaseModel):
    """Priced result written back onto the owning treatment record."""

    model_config = ConfigDict(frozen=True)

    pricing_method: Literal["grid", "unit_price"]
    grid_cost: float = 0.0
    fabric_required_units: float = 0.0
    fabric_cost: float = 0.0
    widths_required: int = 0
    base_cost: float
    resolved_markup_percent: float
    resolved_markup_source: MarkupSource
    sell_price: float
    margin_percent_equivalent: float
    gross_margin: float


class TreatmentRecord(BaseModel):
    """A persisted treatment, including the last stored pricing totals."""

    treatment_id: str
    account_id: str
    project_id: str | None = None

    width: float
    drop: float
    quantity: float = 1.0
    measurement_unit: MeasurementUnit = "cm"
    category_key: str | None = None
    line_kind: LineKind | None = None
    grid_id: str | None = None
    unit_price: float | None = None
    fabric: FabricSpec | None = None

    base_cost: float | None = None
    sell_price: float | None = None
    resolved_markup_percent: float | None = None
    resolved_markup_source: MarkupSource | None = None
    margin_percent_equivalent: float | None = None


# ---------------------------------------------------------------------------
# Resync
# ---------------------------------------------------------------------------
class ResyncScope(BaseModel):
    """Working set of treatments to recompute."""

    account_id: str
    project_id: str | None = None


class ResyncFailure(BaseModel):
    """A treatment that could not be recomputed during a resync run."""

    treatment_id: str
    error_type: str
    message: str


class ResyncReport(BaseModel):
    """Aggregate counts returned to the caller after a resync run."""

    mode: ResyncMode
    total: int = 0
    updated: int = Field(0, description="Records whose stored sell price changed")
    written: int = Field(0, description="Records written back (all priced records in force mode)")
    unchanged: int = 0
    skipped: int = 0
    cancelled: int = 0
    failures: list[ResyncFailure] = Field(default_factory=list)


class ResyncJobStatus(BaseModel):
    """State of a background resync job."""

    job_id: str
    scope: ResyncScope
    mode: ResyncMode
    status: Literal["running", "completed", "cancelled", "failed"]
    started_at: str
    finished_at: str | None = None
    report: ResyncReport | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# API request / response payloads
# ---------------------------------------------------------------------------
class PriceRequest(BaseModel):
    """Price one treatment.  The grid and settings may be given inline or
    looked up from the store by ``grid_id`` / ``account_id``."""

    account_id: str | None = None
    width: float
    drop: float
    quantity: float = 1.0
    measurement_unit: MeasurementUnit = "cm"
    category_key: str | None = None
    line_kind: LineKind | None = None
    grid_id: str | None = None
    grid: GridTable | None = None
    unit_price: float | None = None
    fabric: FabricSpec | None = None
    markup_settings: MarkupSettings | None = None


class MarkupResolveRequest(BaseModel):
    """Resolve a markup without pricing anything."""

    account_id: str | None = None
    grid_markup: float | None = None
    category_key: str | None = None
    line_kind: LineKind | None = None
    markup_settings: MarkupSettings | None = None


class MarginConversion(BaseModel):
    """Markup and its margin equivalent."""

    markup_percent: float
    margin_percent: float


class GridUploadRequest(BaseModel):
    """A parsed grid record as produced by the importer, plus identity."""

    supplier_id: str
    product_type: str
    price_group: str
    grid_data: dict = Field(..., description="Parsed grid in any supported record shape")
    unit: MeasurementUnit | None = None
    currency: str | None = None
    includes_fabric_price: bool = True
    markup_percentage: float | None = None


class GridLookupResponse(BaseModel):
    """Result of a single grid lookup."""

    grid_id: str
    width: float
    drop: float
    unit: MeasurementUnit
    price: float


class ResyncRequest(BaseModel):
    """Trigger a resync over an account (optionally one project)."""

    account_id: str
    project_id: str | None = None
    mode: ResyncMode = "changed-only"
    wait: bool = Field(False, description="Run inline and return the report")


class SettingsSaveResponse(BaseModel):
    """Saved settings plus the changed-only resync job they triggered."""

    settings: MarkupSettings
    resync_job_id: str | None = None
