"""Idempotent writes to the orders, ad_metrics_* and cost_catalog tables.

Orders are write-once (ON CONFLICT DO NOTHING); ad metric rows and
catalog entries converge to the latest fetch (ON CONFLICT DO UPDATE).
Every write is a single statement keyed by the natural business key.
"""
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .entities import BASE_METRIC_COLUMNS, EntityKind
from .normalizer import NormalizedOrder


logger = logging.getLogger(__name__)


ORDER_COLUMNS = (
    "order_id",
    "order_number",
    "created_at",
    "created_date",
    "total_price",
    "current_total_price",
    "current_total_tax",
    "total_tax",
    "currency",
    "tags",
    "note",
    "status",
    "order_status",
    "refunds",
    "note_attributes",
    "line_items",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "utm_source",
    "total_cost",
)

CATALOG_COLUMNS = (
    "inventory_item_id",
    "variant_id",
    "product_id",
    "title",
    "sku",
    "cost",
    "created_at",
    "updated_at",
    "requires_shipping",
    "country_code_of_origin",
    "province_code_of_origin",
    "harmonized_system_code",
    "tracked",
    "admin_graphql_api_id",
)

_INT_METRICS = {"impressions", "clicks", "unique_clicks", "reach"}


@dataclass
class SaveResult:
    """Outcome of writing one table's rows."""

    table: str
    success: bool
    saved: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {
            "tableName": self.table,
            "success": self.success,
            "saved": self.saved,
            "failed": self.failed,
        }


def _safe_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _safe_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def insert_order(conn: sqlite3.Connection, order: NormalizedOrder) -> bool:
    """Insert an order unless its order_id already exists.

    Returns:
        True if a new row was written, False if the order was already stored
    """
    row = order.to_row()
    column_list = ", ".join(ORDER_COLUMNS)
    placeholders = ", ".join("?" for _ in ORDER_COLUMNS)
    cursor = conn.execute(
        f"""
        INSERT INTO orders ({column_list})
        VALUES ({placeholders})
        ON CONFLICT(order_id) DO NOTHING
        """,
        tuple(row[column] for column in ORDER_COLUMNS),
    )
    conn.commit()
    return cursor.rowcount > 0


def ad_metric_columns(kind: EntityKind) -> tuple[str, ...]:
    return (
        kind.id_column,
        kind.name_column,
        *kind.parent_columns,
        "date_start",
        "date_stop",
        *BASE_METRIC_COLUMNS,
        "data_set",
        "fetched_at",
    )


def _ad_metric_values(kind: EntityKind, row: dict, fetched_at: str) -> tuple:
    values: list[Any] = []
    for column in ad_metric_columns(kind):
        if column == "fetched_at":
            values.append(row.get("fetched_at") or fetched_at)
        elif column in _INT_METRICS:
            values.append(_safe_int(row.get(column)) or 0)
        elif column == "spend":
            values.append(_safe_float(row.get(column)) or 0.0)
        elif column in ("cpc", "ctr", "cpm"):
            values.append(_safe_float(row.get(column)))
        else:
            value = row.get(column)
            values.append(str(value) if value is not None else None)
    return tuple(values)


def upsert_ad_metric(
    conn: sqlite3.Connection,
    kind: EntityKind,
    row: dict,
    fetched_at: Optional[str] = None,
) -> None:
    """Insert or overwrite one (entity_id, date_start) row for this kind.

    Raises:
        ValueError: If the row has no entity id or date_start
    """
    if not row.get(kind.id_column):
        raise ValueError(f"{kind.table} row missing {kind.id_column}")
    if not row.get("date_start"):
        raise ValueError(f"{kind.table} row missing date_start")

    fetched_at = fetched_at or datetime.now(timezone.utc).isoformat()
    columns = ad_metric_columns(kind)
    column_list = ", ".join(columns)
    placeholders = ", ".join("?" for _ in columns)
    updates = ",\n".join(
        f"{column}=excluded.{column}"
        for column in columns
        if column not in (kind.id_column, "date_start")
    )

    conn.execute(
        f"""
        INSERT INTO {kind.table} ({column_list})
        VALUES ({placeholders})
        ON CONFLICT({kind.id_column}, date_start)
        DO UPDATE SET
            {updates}
        """,
        _ad_metric_values(kind, row, fetched_at),
    )


def save_ad_metrics(
    conn: sqlite3.Connection, kind: EntityKind, rows: Iterable[dict]
) -> SaveResult:
    """Upsert rows for one kind, continuing past individual row failures."""
    fetched_at = datetime.now(timezone.utc).isoformat()
    saved = 0
    failed = 0

    for row in rows:
        try:
            upsert_ad_metric(conn, kind, row, fetched_at)
            saved += 1
        except (sqlite3.Error, ValueError) as exc:
            failed += 1
            logger.error(
                "Failed to upsert %s row %s/%s: %s",
                kind.table,
                row.get(kind.id_column),
                row.get("date_start"),
                exc,
            )

    conn.commit()

    result = SaveResult(table=kind.table, success=failed == 0, saved=saved, failed=failed)
    logger.info(
        "Saved %s rows to %s (%s failed)", result.saved, result.table, result.failed
    )
    return result


def upsert_catalog_entry(conn: sqlite3.Connection, entry: dict) -> Optional[float]:
    """Insert or overwrite a cost catalog entry keyed by inventory_item_id.

    Returns:
        The cost stored before this write, or None for a new entry
    """
    inventory_item_id = entry.get("inventory_item_id")
    if inventory_item_id is None:
        raise ValueError("catalog entry missing inventory_item_id")

    previous = conn.execute(
        "SELECT cost FROM cost_catalog WHERE inventory_item_id=?",
        (inventory_item_id,),
    ).fetchone()
    old_cost = previous[0] if previous is not None else None

    values = []
    for column in CATALOG_COLUMNS:
        value = entry.get(column)
        if column == "cost":
            value = _safe_float(value)
        elif column in ("requires_shipping", "tracked") and value is not None:
            value = int(bool(value))
        values.append(value)

    updates = ",\n".join(
        f"{column}=excluded.{column}"
        for column in CATALOG_COLUMNS
        if column != "inventory_item_id"
    )
    column_list = ", ".join(CATALOG_COLUMNS)
    placeholders = ", ".join("?" for _ in CATALOG_COLUMNS)

    conn.execute(
        f"""
        INSERT INTO cost_catalog ({column_list})
        VALUES ({placeholders})
        ON CONFLICT(inventory_item_id)
        DO UPDATE SET
            {updates},
            collected_at=CURRENT_TIMESTAMP
        """,
        tuple(values),
    )
    conn.commit()

    new_cost = _safe_float(entry.get("cost"))
    if previous is not None and old_cost != new_cost:
        logger.info(
            "Cost changed for inventory item %s: %s -> %s",
            inventory_item_id,
            old_cost,
            new_cost,
        )

    return old_cost


def update_order_line_items(
    conn: sqlite3.Connection,
    order_id: int,
    line_items: list,
    total_cost: float,
) -> None:
    """Patch line_items and total_cost of an order inserted without them."""
    conn.execute(
        """
        UPDATE orders
        SET line_items=?, total_cost=?
        WHERE order_id=?
        """,
        (json.dumps(line_items, separators=(",", ":")), total_cost, order_id),
    )
    conn.commit()


def update_order_cost(conn: sqlite3.Connection, order_id: int, total_cost: float) -> None:
    conn.execute(
        "UPDATE orders SET total_cost=? WHERE order_id=?",
        (total_cost, order_id),
    )
    conn.commit()


def mark_order_status(conn: sqlite3.Connection, order_id: int, status: str) -> None:
    """Set orders.status, taking the order out of the line item backfill."""
    conn.execute("UPDATE orders SET status=? WHERE order_id=?", (status, order_id))
    conn.commit()
