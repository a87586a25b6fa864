"""
Pricing-grid lookup service.

A grid maps (width, drop) to a base cost.  Lookups use next-size-up banding:
a measurement that falls between two listed sizes is priced at the larger
one, and anything beyond the largest listed size is quoted at that size.
Suppliers sell in discrete cut bands, so there is no interpolation.

Also normalises the record shapes produced by the grid importer into a
``GridTable`` and validates the row/column invariants.
"""

from __future__ import annotations

import logging
import re
from bisect import bisect_left
from typing import Any

from grid_pricing.errors import ConfigurationError, ValidationError
from grid_pricing.models import DropRow, GridTable, MeasurementUnit

logger = logging.getLogger(__name__)

# Dimensions at or above this are taken to be millimetres
_MM_THRESHOLD = 500.0

_NUMBER_CLEANUP = re.compile(r"[^0-9.\-]")


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------
def convert_measurement(
    value: float,
    from_unit: MeasurementUnit,
    to_unit: MeasurementUnit,
) -> float:
    """Convert a length between centimetres and millimetres."""
    if from_unit == to_unit:
        return value
    return value * 10.0 if to_unit == "mm" else value / 10.0


def _band_index(breakpoints: list[float], value: float) -> int:
    """Index of the smallest breakpoint >= *value*, clamped to the last one."""
    idx = bisect_left(breakpoints, value)
    return min(idx, len(breakpoints) - 1)


def lookup_price(
    grid: GridTable,
    width: float,
    drop: float,
    input_unit: MeasurementUnit = "cm",
) -> float:
    """Return the grid cost for a window of *width* x *drop*.

    Out-of-range measurements never raise: they clamp to the last column or
    row.  Non-positive measurements raise ``ValidationError``; a grid that
    breaks its row/column invariants raises ``ConfigurationError``.
    """
    if width <= 0 or drop <= 0:
        raise ValidationError(
            f"Width and drop must be positive (got width={width}, drop={drop})"
        )
    ensure_valid_grid(grid)

    w = convert_measurement(width, input_unit, grid.unit)
    d = convert_measurement(drop, input_unit, grid.unit)

    col = _band_index(list(grid.width_columns), w)
    row = _band_index([r.drop for r in grid.drop_rows], d)

    price = grid.drop_rows[row].prices[col]
    logger.debug(
        "Grid %s: %sx%s %s -> column %s, row %s, price %s",
        grid.grid_id,
        width,
        drop,
        input_unit,
        grid.width_columns[col],
        grid.drop_rows[row].drop,
        price,
    )
    return price


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def validate_grid(grid: GridTable) -> list[str]:
    """Return a list of problems with *grid*; empty when it is usable."""
    errors: list[str] = []
    widths = list(grid.width_columns)
    drops = [r.drop for r in grid.drop_rows]

    if not widths:
        errors.append("No width columns defined")
    if not drops:
        errors.append("No drop rows defined")

    for idx, row in enumerate(grid.drop_rows):
        if len(row.prices) != len(widths):
            errors.append(
                f"Row {idx} (drop {row.drop}) has {len(row.prices)} prices "
                f"but expected {len(widths)}"
            )

    if len(set(widths)) != len(widths):
        errors.append("Duplicate width values found")
    if len(set(drops)) != len(drops):
        errors.append("Duplicate drop values found")

    if any(w <= 0 for w in widths):
        errors.append("Width values must be positive")
    if any(d <= 0 for d in drops):
        errors.append("Drop values must be positive")

    if widths != sorted(widths):
        errors.append("Width columns must be in ascending order")
    if drops != sorted(drops):
        errors.append("Drop rows must be in ascending order")

    return errors


def ensure_valid_grid(grid: GridTable) -> None:
    """Raise ``ConfigurationError`` if *grid* violates its invariants."""
    errors = validate_grid(grid)
    if errors:
        raise ConfigurationError(
            f"Pricing grid {grid.grid_id or '<unsaved>'} is invalid: "
            + "; ".join(errors)
        )


# ---------------------------------------------------------------------------
# Unit conversion
# ---------------------------------------------------------------------------
def convert_grid_unit(grid: GridTable, unit: MeasurementUnit) -> GridTable:
    """Return a copy of *grid* with its breakpoints expressed in *unit*.

    Prices are unaffected.
    """
    if grid.unit == unit:
        return grid
    return grid.model_copy(
        update={
            "unit": unit,
            "width_columns": tuple(
                convert_measurement(w, grid.unit, unit) for w in grid.width_columns
            ),
            "drop_rows": tuple(
                DropRow(
                    drop=convert_measurement(r.drop, grid.unit, unit),
                    prices=r.prices,
                )
                for r in grid.drop_rows
            ),
        }
    )


# ---------------------------------------------------------------------------
# Record normalisation
# ---------------------------------------------------------------------------
def _to_number(value: Any) -> float:
    """Coerce a cell value such as ``"£1,200.50"`` or ``" 90 "`` to float."""
    if isinstance(value, bool):
        raise ConfigurationError(f"Unexpected boolean in grid data: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = _NUMBER_CLEANUP.sub("", value)
        try:
            return float(cleaned)
        except ValueError:
            raise ConfigurationError(f"Non-numeric grid value: {value!r}") from None
    raise ConfigurationError(f"Non-numeric grid value: {value!r}")


def infer_unit(record: dict[str, Any]) -> MeasurementUnit:
    """Infer the grid unit from its largest dimension (>= 500 -> mm)."""
    unit = record.get("unit")
    if unit in ("cm", "mm"):
        return unit

    dims: list[float] = []
    for key in (
        "widthColumns", "width_columns", "widthRanges", "widths",
        "dropRows", "drop_rows", "dropRanges", "heights",
    ):
        for item in record.get(key) or []:
            raw = item.get("drop") if isinstance(item, dict) else item
            try:
                dims.append(_to_number(raw))
            except ConfigurationError:
                continue

    return "mm" if dims and max(dims) >= _MM_THRESHOLD else "cm"


def _rows_from_matrix(drops: list[Any], matrix: list[Any]) -> list[DropRow]:
    return [
        DropRow(
            drop=_to_number(drop),
            prices=tuple(_to_number(p) for p in (matrix[idx] if idx < len(matrix) else [])),
        )
        for idx, drop in enumerate(drops)
    ]


def _sorted_grid_parts(
    widths: list[float],
    rows: list[DropRow],
) -> tuple[tuple[float, ...], tuple[DropRow, ...]]:
    """Sort columns ascending (permuting every row's prices alongside) and
    rows by drop."""
    order = sorted(range(len(widths)), key=lambda i: widths[i])
    sorted_widths = tuple(widths[i] for i in order)
    sorted_rows = []
    for row in sorted(rows, key=lambda r: r.drop):
        if len(row.prices) == len(widths):
            prices = tuple(row.prices[i] for i in order)
        else:
            # left as-is so validation reports the length mismatch
            prices = row.prices
        sorted_rows.append(DropRow(drop=row.drop, prices=prices))
    return sorted_widths, tuple(sorted_rows)


def grid_from_record(record: dict[str, Any], **fields: Any) -> GridTable:
    """Build a ``GridTable`` from any record shape the importer produces.

    Supported shapes:

    * ``{widthColumns, dropRows: [{drop, prices}]}`` (canonical; snake_case
      keys are accepted too)
    * ``{widthRanges, dropRanges, prices: [[...]]}``
    * ``{widthColumns, dropRows: [drop, ...], prices: {"<w>_<d>": price}}``
    * ``{widths, heights, prices: [[...]]}``

    Extra keyword arguments (``grid_id``, ``supplier_id``,
    ``includes_fabric_price``, ...) are set on the resulting grid.
    """
    if not isinstance(record, dict):
        raise ConfigurationError("Grid record must be an object")

    unit = fields.pop("unit", None) or infer_unit(record)
    width_key = next(
        (k for k in ("widthColumns", "width_columns") if k in record), None
    )
    drop_key = next((k for k in ("dropRows", "drop_rows") if k in record), None)

    if width_key and drop_key and record[drop_key] and isinstance(record[drop_key][0], dict):
        widths = [_to_number(w) for w in record[width_key]]
        rows = [
            DropRow(
                drop=_to_number(r.get("drop")),
                prices=tuple(_to_number(p) for p in r.get("prices") or []),
            )
            for r in record[drop_key]
        ]
    elif "widthRanges" in record and "dropRanges" in record:
        widths = [_to_number(w) for w in record["widthRanges"]]
        rows = _rows_from_matrix(record["dropRanges"], record.get("prices") or [])
    elif width_key and drop_key and isinstance(record.get("prices"), dict):
        widths = [_to_number(w) for w in record[width_key]]
        price_map = record["prices"]
        rows = []
        for raw_drop in record[drop_key]:
            drop = _to_number(raw_drop)
            prices = []
            for width in widths:
                keys = (
                    f"{width:g}_{drop:g}",
                    f"{width:g}-{drop:g}",
                    f"{drop:g}_{width:g}",
                )
                value = next((price_map[k] for k in keys if k in price_map), None)
                if value is None:
                    raise ConfigurationError(
                        f"No price for width {width:g} x drop {drop:g}"
                    )
                prices.append(_to_number(value))
            rows.append(DropRow(drop=drop, prices=tuple(prices)))
    elif "widths" in record and "heights" in record:
        widths = [_to_number(w) for w in record["widths"]]
        rows = _rows_from_matrix(record["heights"], record.get("prices") or [])
    else:
        raise ConfigurationError(
            f"Unrecognised grid record shape (keys: {sorted(record)})"
        )

    width_columns, drop_rows = _sorted_grid_parts(widths, rows)
    grid = GridTable(
        width_columns=width_columns,
        drop_rows=drop_rows,
        unit=unit,
        currency=fields.pop("currency", None) or record.get("currency"),
        **fields,
    )
    ensure_valid_grid(grid)
    return grid


def grid_to_record(grid: GridTable) -> dict[str, Any]:
    """Serialise the price matrix of *grid* to the canonical record shape."""
    return {
        "widthColumns": list(grid.width_columns),
        "dropRows": [{"drop": r.drop, "prices": list(r.prices)} for r in grid.drop_rows],
        "unit": grid.unit,
        "currency": grid.currency,
    }
