"""
Tests for markup resolution.

The fallback chain is grid -> category -> material/labor -> default, with
the minimum floor clamped last.  The order decides historical prices, so
each tier and its provenance is pinned here.
"""

from __future__ import annotations

import os
import sys

import numpy as np
import pytest

# Ensure the app package is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "app"))

from grid_pricing.models import MarkupSettings, MarkupSource  # noqa: E402
from grid_pricing.services.markup_resolver import (  # noqa: E402
    classify_line_kind,
    normalize_category_key,
    resolve_markup,
)


@pytest.fixture
def settings() -> MarkupSettings:
    return MarkupSettings(
        default_markup_percentage=50,
        minimum_markup_percentage=0,
        material_markup_percentage=0,
        labor_markup_percentage=0,
        category_markups={"curtain_making": 30},
    )


# ---------------------------------------------------------------------------
# Priority order
# ---------------------------------------------------------------------------
class TestPriority:
    """Each tier wins over the ones below it."""

    def test_grid_beats_category(self, settings):
        result = resolve_markup(settings, grid_markup=15, category_key="curtain_making")
        assert result.percent == 15
        assert result.source == MarkupSource.GRID

    def test_category_when_grid_is_null(self, settings):
        result = resolve_markup(settings, grid_markup=None, category_key="curtain_making")
        assert result.percent == 30
        assert result.source == MarkupSource.CATEGORY

    def test_default_when_nothing_else_set(self, settings):
        result = resolve_markup(settings, category_key="hardware")
        assert result.percent == 50
        assert result.source == MarkupSource.DEFAULT

    def test_explicit_zero_grid_markup_counts(self, settings):
        """A grid markup of 0 is an override, not "unset"."""
        result = resolve_markup(settings, grid_markup=0, category_key="curtain_making")
        assert result.percent == 0
        assert result.source == MarkupSource.GRID

    def test_zero_category_markup_is_skipped(self):
        s = MarkupSettings(
            default_markup_percentage=40,
            material_markup_percentage=25,
            category_markups={"fabric": 0},
        )
        result = resolve_markup(s, category_key="fabric")
        assert result.percent == 25
        assert result.source == MarkupSource.MATERIAL_OR_LABOR

    def test_material_tier(self):
        s = MarkupSettings(material_markup_percentage=35, labor_markup_percentage=20)
        result = resolve_markup(s, category_key="hardware")
        assert result.percent == 35
        assert result.source == MarkupSource.MATERIAL_OR_LABOR

    def test_labor_tier_inferred_from_category(self):
        s = MarkupSettings(material_markup_percentage=35, labor_markup_percentage=20)
        result = resolve_markup(s, category_key="installation")
        assert result.percent == 20
        assert result.source == MarkupSource.MATERIAL_OR_LABOR

    def test_explicit_line_kind_wins_over_inference(self):
        s = MarkupSettings(material_markup_percentage=35, labor_markup_percentage=20)
        result = resolve_markup(s, category_key="installation", line_kind="material")
        assert result.percent == 35

    def test_category_lookup_is_key_normalised(self, settings):
        result = resolve_markup(settings, category_key="Curtain Making")
        assert result.percent == 30
        assert result.source == MarkupSource.CATEGORY


# ---------------------------------------------------------------------------
# Minimum floor
# ---------------------------------------------------------------------------
class TestMinimumFloor:
    """The floor is applied after every tier."""

    def test_floor_beats_low_grid_markup(self):
        s = MarkupSettings(default_markup_percentage=100, minimum_markup_percentage=10)
        result = resolve_markup(s, grid_markup=5)
        assert result.percent == 10
        assert result.source == MarkupSource.MINIMUM_FLOOR

    def test_floor_equal_to_value_keeps_source(self):
        s = MarkupSettings(default_markup_percentage=10, minimum_markup_percentage=10)
        result = resolve_markup(s)
        assert result.percent == 10
        assert result.source == MarkupSource.DEFAULT

    def test_floor_holds_for_generated_settings(self):
        """percent >= minimum for random settings across every tier."""
        rng = np.random.default_rng(2024)
        categories = [None, "curtain_making", "hardware", "installation", "fabric"]
        for _ in range(500):
            values = rng.uniform(0, 120, size=6)
            zeroed = rng.random(size=6) < 0.3
            values[zeroed] = 0
            s = MarkupSettings(
                default_markup_percentage=float(values[0]),
                minimum_markup_percentage=float(values[1]),
                material_markup_percentage=float(values[2]),
                labor_markup_percentage=float(values[3]),
                category_markups={"curtain_making": float(values[4]), "fabric": 0},
            )
            grid_markup = None if rng.random() < 0.5 else float(values[5])
            category = categories[int(rng.integers(len(categories)))]

            result = resolve_markup(s, grid_markup=grid_markup, category_key=category)
            assert result.percent >= s.minimum_markup_percentage


# ---------------------------------------------------------------------------
# Category keys
# ---------------------------------------------------------------------------
class TestCategoryKeys:
    """Key normalisation and line-kind classification."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Curtain Making", "curtain_making"),
            ("roman-making", "roman_making"),
            ("  HARDWARE ", "hardware"),
            ("", None),
            (None, None),
        ],
    )
    def test_normalize_category_key(self, raw, expected):
        assert normalize_category_key(raw) == expected

    @pytest.mark.parametrize(
        "category, kind",
        [
            ("curtain_making", "labor"),
            ("blind_making", "labor"),
            ("installation", "labor"),
            ("Labour", "labor"),
            ("fabric", "material"),
            ("hardware", "material"),
            (None, "material"),
        ],
    )
    def test_classify_line_kind(self, category, kind):
        assert classify_line_kind(category) == kind
