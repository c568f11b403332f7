"""Shared fixtures: a fresh SQLite database and payload builders."""
from typing import Optional
from zoneinfo import ZoneInfo

import pytest

from roas_core.metrics.entities import EntityKind
from roas_core.metrics.normalizer import normalize_order
from roas_core.metrics.schema import connect, init_database
from roas_core.metrics.store import insert_order, save_ad_metrics, upsert_catalog_entry


LOCAL_TZ = ZoneInfo("America/Los_Angeles")


@pytest.fixture
def local_tz():
    return LOCAL_TZ


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "metrics.db"
    init_database(path)
    return path


@pytest.fixture
def conn(db_path):
    connection = connect(db_path)
    yield connection
    connection.close()


def build_raw_order(
    order_id: int,
    created_at: str = "2024-01-15T10:00:00-08:00",
    total_price: str = "100.00",
    current_total_price: Optional[str] = None,
    utm: Optional[dict] = None,
    line_items: Optional[list] = None,
    tags: str = "",
    refunds: Optional[list] = None,
    extra_attributes: Optional[list] = None,
) -> dict:
    note_attributes = [
        {"name": name, "value": value} for name, value in (utm or {}).items()
    ]
    note_attributes.extend(extra_attributes or [])
    return {
        "id": order_id,
        "order_number": 1000 + order_id,
        "created_at": created_at,
        "total_price": total_price,
        "current_total_price": current_total_price or total_price,
        "current_total_tax": "0.00",
        "total_tax": "0.00",
        "currency": "USD",
        "tags": tags,
        "note": None,
        "refunds": refunds or [],
        "note_attributes": note_attributes,
        "line_items": line_items,
    }


@pytest.fixture
def raw_order():
    return build_raw_order


@pytest.fixture
def add_order(conn):
    """Normalize and insert an order built from build_raw_order kwargs."""

    def _add(order_id: int, total_cost: Optional[float] = None, **kwargs) -> dict:
        raw = build_raw_order(order_id, **kwargs)
        order = normalize_order(raw, conn, LOCAL_TZ)
        if total_cost is not None:
            order.total_cost = total_cost
        insert_order(conn, order)
        return raw

    return _add


@pytest.fixture
def add_ad_metric(conn):
    """Upsert one ad metric row for a kind."""

    def _add(kind: EntityKind, entity_id: str, date_start: str = "2024-01-15", **fields) -> dict:
        row = {
            kind.id_column: entity_id,
            kind.name_column: f"{kind.value} {entity_id}",
            "date_start": date_start,
            "date_stop": date_start,
            "impressions": 0,
            "spend": 0,
            "clicks": 0,
            "unique_clicks": 0,
            "reach": 0,
        }
        row.update(fields)
        result = save_ad_metrics(conn, kind, [row])
        assert result.success
        return row

    return _add


@pytest.fixture
def add_catalog_entry(conn):
    def _add(inventory_item_id: int, variant_id: int, cost: float) -> None:
        upsert_catalog_entry(
            conn,
            {
                "inventory_item_id": inventory_item_id,
                "variant_id": variant_id,
                "product_id": 1,
                "title": f"Variant {variant_id}",
                "cost": cost,
            },
        )

    return _add
