"""Ingestion and metric derivation layer.

Persists to:
- SQLite: data/metrics.db (orders, cost catalog, ad metrics, snapshots)
- JSONL: data/metrics/raw/*.jsonl (append-only audit logs)
"""
from .cursor import CursorStore
from .dashboard import fetch_dashboard_data
from .engine import MetricsResult, compute_metrics
from .entities import MARGIN_FACTOR, EntityKind, derive_ratios, safe_div
from .schema import init_database

__all__ = [
    "CursorStore",
    "EntityKind",
    "MARGIN_FACTOR",
    "MetricsResult",
    "compute_metrics",
    "derive_ratios",
    "fetch_dashboard_data",
    "init_database",
    "safe_div",
]
