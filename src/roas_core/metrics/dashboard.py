"""Order-level dashboard aggregate, independent of the ad metrics join."""
import json
import logging
import sqlite3
from datetime import date
from typing import Any


logger = logging.getLogger(__name__)


BUCKETS = (
    "tags",
    "utm_source",
    "custom1",
    "custom2",
    "facebookOrders",
    "utm_campaign",
    "utm_content",
    "utm_term",
)

UNTAGGED = "Other"
UNKNOWN_VALUE = "Unknown"


def _as_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _load_json_list(value: Any) -> list:
    if not value:
        return []
    if isinstance(value, list):
        return value
    try:
        loaded = json.loads(value)
    except (TypeError, ValueError):
        logger.warning("Unparseable JSON column value, treating as empty")
        return []
    return loaded if isinstance(loaded, list) else []


def _bump(buckets: dict, category: str, key: str, order_value: float) -> None:
    entry = buckets[category].setdefault(
        key, {"count": 0, "totalSales": 0.0, "largestOrder": 0.0}
    )
    entry["count"] += 1
    entry["totalSales"] += order_value
    if order_value > entry["largestOrder"]:
        entry["largestOrder"] = order_value


def aggregate_orders(orders: list[dict]) -> dict:
    """Build the dashboard aggregate from order rows.

    Args:
        orders: Rows with current_total_price, tags, refunds, note_attributes

    Returns:
        Dict with count, revenue, largestOrder and aggregatedData buckets
    """
    buckets: dict[str, dict] = {category: {} for category in BUCKETS}
    revenue = 0.0
    largest = 0.0

    for order in orders:
        order_value = _as_float(order.get("current_total_price"))

        tags = order.get("tags")
        tag_list = [tag.strip() for tag in tags.split(",")] if tags else [UNTAGGED]
        for tag in tag_list:
            _bump(buckets, "tags", tag, order_value)

        for attribute in _load_json_list(order.get("note_attributes")):
            if not isinstance(attribute, dict):
                continue
            name = attribute.get("name")
            key = str(attribute.get("value") or UNKNOWN_VALUE)
            if name in buckets and name not in ("tags", "facebookOrders"):
                _bump(buckets, name, key, order_value)
            if name == "utm_source" and key.lower() == "facebook":
                _bump(buckets, "facebookOrders", key, order_value)

        refunded = sum(
            _as_float(refund.get("amount"))
            for refund in _load_json_list(order.get("refunds"))
            if isinstance(refund, dict)
        )
        revenue += order_value - refunded
        largest = max(largest, order_value)

    return {
        "count": len(orders),
        "revenue": round(revenue, 2),
        "largestOrder": round(largest, 2),
        "aggregatedData": buckets,
    }


def fetch_dashboard_data(
    conn: sqlite3.Connection, start_date: date | str, end_date: date | str
) -> dict:
    """Aggregate all orders created on local days start_date..end_date."""
    start = start_date.isoformat() if isinstance(start_date, date) else start_date
    end = end_date.isoformat() if isinstance(end_date, date) else end_date

    cursor = conn.execute(
        """
        SELECT order_id, current_total_price, tags, refunds, note_attributes
        FROM orders
        WHERE created_date BETWEEN ? AND ?
        ORDER BY order_id
        """,
        (start, end),
    )
    columns = [description[0] for description in cursor.description]
    orders = [dict(zip(columns, record)) for record in cursor.fetchall()]

    return aggregate_orders(orders)
