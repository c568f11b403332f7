"""Order normalization and cost join.

Maps raw Shopify order payloads to canonical rows for the orders table:
UTM attribution keys are lifted out of note_attributes into columns and
total_cost is summed from the cost catalog. Missing data never raises;
it degrades to None / 0 and is logged.
"""
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Iterable, Optional


logger = logging.getLogger(__name__)


ATTRIBUTION_KEYS = ("utm_campaign", "utm_content", "utm_term", "utm_source")

TIP_TITLE = "Tip"


def _safe_float(value: Any) -> float:
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _safe_int(value: Any) -> int:
    if value is None:
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


@dataclass
class NormalizedOrder:
    """Canonical order row as persisted."""

    order_id: int
    order_number: Optional[int]
    created_at: str
    created_date: str
    total_price: float
    current_total_price: float
    current_total_tax: Optional[float]
    total_tax: Optional[float]
    currency: Optional[str]
    tags: str
    note: Optional[str]
    refunds: list = field(default_factory=list)
    note_attributes: list = field(default_factory=list)
    line_items: Optional[list] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    utm_source: Optional[str] = None
    total_cost: float = 0.0
    order_status: Optional[str] = None
    # Backfill bookkeeping (active, missing, no_line_items), not the upstream status.
    status: str = "active"

    def to_row(self) -> dict:
        """Row dict with JSON columns serialized for SQLite."""
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "created_at": self.created_at,
            "created_date": self.created_date,
            "total_price": self.total_price,
            "current_total_price": self.current_total_price,
            "current_total_tax": self.current_total_tax,
            "total_tax": self.total_tax,
            "currency": self.currency,
            "tags": self.tags,
            "note": self.note,
            "status": self.status,
            "order_status": self.order_status,
            "refunds": json.dumps(self.refunds, separators=(",", ":")),
            "note_attributes": json.dumps(self.note_attributes, separators=(",", ":")),
            "line_items": (
                json.dumps(self.line_items, separators=(",", ":"))
                if self.line_items is not None
                else None
            ),
            "utm_campaign": self.utm_campaign,
            "utm_content": self.utm_content,
            "utm_term": self.utm_term,
            "utm_source": self.utm_source,
            "total_cost": self.total_cost,
        }


def extract_note_attribute(
    note_attributes: Optional[Iterable[dict]], name: str
) -> Optional[str]:
    """Return the value of the first attribute with this name, or None."""
    if not note_attributes:
        return None

    for attribute in note_attributes:
        if not isinstance(attribute, dict):
            continue
        if attribute.get("name") == name:
            value = attribute.get("value")
            if value is None or value == "":
                return None
            return str(value)

    return None


def variant_id_of(item: Any) -> Optional[int]:
    """Return the line item's variant id, or None for tips and unusable ids."""
    if not isinstance(item, dict) or item.get("title") == TIP_TITLE:
        return None
    variant_id = item.get("variant_id")
    if variant_id is None:
        return None
    try:
        return int(variant_id)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric variant_id %r", variant_id)
        return None


def line_item_variant_ids(line_items: Optional[Iterable[dict]]) -> list[int]:
    variant_ids: list[int] = []
    for item in line_items or []:
        variant_id = variant_id_of(item)
        if variant_id is not None:
            variant_ids.append(variant_id)
    return variant_ids


def lookup_costs(conn: sqlite3.Connection, variant_ids: Iterable[int]) -> dict[int, float]:
    """Resolve cost basis for variants in one catalog read.

    Returns:
        Mapping variant_id -> cost; variants without a catalog entry are absent
    """
    unique_ids = sorted({int(v) for v in variant_ids})
    if not unique_ids:
        return {}

    placeholders = ",".join("?" for _ in unique_ids)
    cursor = conn.execute(
        f"SELECT variant_id, cost FROM cost_catalog WHERE variant_id IN ({placeholders})",
        unique_ids,
    )

    costs: dict[int, float] = {}
    for variant_id, cost in cursor.fetchall():
        if cost is not None:
            costs[int(variant_id)] = float(cost)
    return costs


def compute_total_cost(
    line_items: Optional[Iterable[dict]], costs: dict[int, float]
) -> float:
    """Sum cost x quantity over line items; unknown cost or quantity counts as 0."""
    total = 0.0
    for item in line_items or []:
        variant_id = variant_id_of(item)
        if variant_id is None:
            continue

        cost = costs.get(variant_id)
        if cost is None:
            logger.debug("No catalog cost for variant %s", variant_id)
            continue

        total += cost * _safe_int(item.get("quantity"))

    return round(total, 2)


def _parse_created_at(raw_created_at: Any, local_tz: tzinfo) -> tuple[str, str]:
    now = None
    if not raw_created_at:
        logger.warning("Order missing created_at, using ingestion time")
    else:
        try:
            now = datetime.fromisoformat(str(raw_created_at).replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable created_at %r, using ingestion time", raw_created_at)

    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    created_utc = now.astimezone(timezone.utc)
    created_local = now.astimezone(local_tz)
    return created_utc.isoformat(), created_local.date().isoformat()


def _join_tags(tags: Any) -> str:
    if tags is None:
        return ""
    if isinstance(tags, (list, tuple)):
        return ", ".join(str(tag) for tag in tags)
    return str(tags)


def normalize_order(
    raw_order: dict, conn: sqlite3.Connection, local_tz: tzinfo
) -> NormalizedOrder:
    """Map one raw order payload to a NormalizedOrder.

    Args:
        raw_order: Order object from the REST orders endpoint
        conn: SQLite connection used for the single catalog lookup
        local_tz: Reporting timezone for created_date

    Returns:
        NormalizedOrder with attribution columns and total_cost set
    """
    note_attributes = raw_order.get("note_attributes") or []
    line_items = raw_order.get("line_items")

    if line_items is None:
        logger.debug("Order %s has no line_items", raw_order.get("id"))

    attribution = {
        key: extract_note_attribute(note_attributes, key) for key in ATTRIBUTION_KEYS
    }
    if attribution["utm_campaign"] is None:
        logger.debug("Order %s has no utm_campaign", raw_order.get("id"))

    costs = lookup_costs(conn, line_item_variant_ids(line_items))
    total_cost = compute_total_cost(line_items, costs)

    created_at, created_date = _parse_created_at(raw_order.get("created_at"), local_tz)

    order_number = raw_order.get("order_number")
    try:
        order_number = int(order_number) if order_number is not None else None
    except (TypeError, ValueError):
        logger.warning("Order %s has non-numeric order_number %r", raw_order.get("id"), order_number)
        order_number = None

    return NormalizedOrder(
        order_id=int(raw_order["id"]),
        order_number=order_number,
        created_at=created_at,
        created_date=created_date,
        total_price=_safe_float(raw_order.get("total_price")),
        current_total_price=_safe_float(
            raw_order.get("current_total_price", raw_order.get("total_price"))
        ),
        current_total_tax=(
            _safe_float(raw_order["current_total_tax"])
            if raw_order.get("current_total_tax") is not None
            else None
        ),
        total_tax=(
            _safe_float(raw_order["total_tax"])
            if raw_order.get("total_tax") is not None
            else None
        ),
        currency=raw_order.get("currency"),
        tags=_join_tags(raw_order.get("tags")),
        note=raw_order.get("note"),
        refunds=raw_order.get("refunds") or [],
        note_attributes=note_attributes,
        line_items=line_items,
        utm_campaign=attribution["utm_campaign"],
        utm_content=attribution["utm_content"],
        utm_term=attribution["utm_term"],
        utm_source=attribution["utm_source"],
        total_cost=total_cost,
        order_status=raw_order.get("status"),
    )
