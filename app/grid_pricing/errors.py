"""
Exception taxonomy for the pricing engine.

``ValidationError`` and ``ConfigurationError`` are raised by the pure pricing
functions; ``StoreError`` wraps failures of the record store.  Single-item
pricing lets them propagate to the caller, batch resync isolates them per
treatment.
"""

from __future__ import annotations


class PricingError(Exception):
    """Base class for every error raised by the pricing engine."""


class ValidationError(PricingError):
    """Invalid input: non-positive measurements, negative quantity or cost,
    or a markup that would imply a negative sell price."""


class ConfigurationError(PricingError):
    """The data needed to price an item is missing or inconsistent (no grid
    and no unit price, a malformed grid, missing fabric metadata)."""


class StoreError(PricingError):
    """A read or write against the record store failed."""
