"""
Configuration module for the grid pricing engine.

All settings are configurable via environment variables with sensible defaults
for Databricks Apps deployment.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Unity Catalog
# ---------------------------------------------------------------------------
CATALOG_NAME: str = os.getenv("CATALOG_NAME", "interiors_catalog")
SCHEMA_PRICING: str = os.getenv("SCHEMA_PRICING", "pricing")


def _fqn(schema: str, table: str) -> str:
    """Return a fully-qualified three-level Unity Catalog table name."""
    return f"{CATALOG_NAME}.{schema}.{table}"


TABLE_TREATMENTS: str = _fqn(SCHEMA_PRICING, "window_treatments")
TABLE_PRICING_GRIDS: str = _fqn(SCHEMA_PRICING, "pricing_grids")
TABLE_MARKUP_SETTINGS: str = _fqn(SCHEMA_PRICING, "markup_settings")

# ---------------------------------------------------------------------------
# SQL Warehouse
# ---------------------------------------------------------------------------
WAREHOUSE_ID: str = os.getenv("DATABRICKS_WAREHOUSE_ID", "your-warehouse-id")

# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------
# "databricks" talks to the SQL warehouse, "memory" keeps everything in-process
STORE_BACKEND: str = os.getenv("STORE_BACKEND", "databricks").lower()

# ---------------------------------------------------------------------------
# Caching
# ---------------------------------------------------------------------------
CACHE_TTL: int = int(os.getenv("CACHE_TTL", "300"))  # seconds

# ---------------------------------------------------------------------------
# Databricks connection (local dev fallback)
# ---------------------------------------------------------------------------
DATABRICKS_HOST: str = os.getenv("DATABRICKS_HOST", "")
DATABRICKS_TOKEN: str = os.getenv("DATABRICKS_TOKEN", "")

# ---------------------------------------------------------------------------
# Pricing defaults (used when an account has never saved markup settings)
# ---------------------------------------------------------------------------
DEFAULT_MARKUP_PERCENTAGE: float = float(os.getenv("DEFAULT_MARKUP_PERCENTAGE", "50"))
DEFAULT_MINIMUM_MARKUP_PERCENTAGE: float = float(
    os.getenv("DEFAULT_MINIMUM_MARKUP_PERCENTAGE", "0")
)

# ---------------------------------------------------------------------------
# Resync
# ---------------------------------------------------------------------------
RESYNC_MAX_WORKERS: int = int(os.getenv("RESYNC_MAX_WORKERS", "5"))
# Sell prices closer than this are treated as unchanged
RESYNC_PRICE_TOLERANCE: float = float(os.getenv("RESYNC_PRICE_TOLERANCE", "0.005"))
# Finished background jobs kept for polling; older ones are evicted
RESYNC_JOB_HISTORY: int = int(os.getenv("RESYNC_JOB_HISTORY", "100"))

# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
APP_TITLE: str = "Grid Pricing Engine"
APP_VERSION: str = "1.0.0"
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
