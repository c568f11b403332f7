"""Unit tests for order normalization and the cost join."""
import json

import pytest

from roas_core.metrics.normalizer import (
    compute_total_cost,
    extract_note_attribute,
    line_item_variant_ids,
    lookup_costs,
    normalize_order,
)


def test_extract_note_attribute_first_match():
    """First attribute with the name wins."""
    attrs = [
        {"name": "utm_campaign", "value": "111"},
        {"name": "utm_campaign", "value": "222"},
    ]

    assert extract_note_attribute(attrs, "utm_campaign") == "111"


def test_extract_note_attribute_absent():
    """Missing attributes and empty lists yield None."""
    assert extract_note_attribute([{"name": "custom1", "value": "x"}], "utm_term") is None
    assert extract_note_attribute([], "utm_term") is None
    assert extract_note_attribute(None, "utm_term") is None


def test_lookup_costs_empty_input(conn):
    """No variants means no catalog query and an empty map."""
    assert lookup_costs(conn, []) == {}


def test_lookup_costs_batched(conn, add_catalog_entry):
    """Only variants present in the catalog appear in the result."""
    add_catalog_entry(10, 1, 5.0)
    add_catalog_entry(20, 2, 3.0)

    assert lookup_costs(conn, [1, 2, 3, 1]) == {1: 5.0, 2: 3.0}


def test_compute_total_cost_all_known():
    """cost x quantity summed over line items."""
    line_items = [
        {"variant_id": 1, "quantity": 2, "title": "Widget"},
        {"variant_id": 2, "quantity": 1, "title": "Gadget"},
    ]

    assert compute_total_cost(line_items, {1: 5.00, 2: 3.00}) == pytest.approx(13.00)


def test_compute_total_cost_missing_variant_counts_zero():
    """A variant absent from the catalog contributes 0."""
    line_items = [
        {"variant_id": 1, "quantity": 2, "title": "Widget"},
        {"variant_id": 2, "quantity": 1, "title": "Gadget"},
    ]

    assert compute_total_cost(line_items, {1: 5.00}) == pytest.approx(10.00)


def test_compute_total_cost_tolerates_bad_shapes():
    """Missing quantity, null variants, tips and None line items never raise."""
    line_items = [
        {"variant_id": 1, "title": "Widget"},
        {"variant_id": None, "quantity": 3, "title": "Custom"},
        {"variant_id": 9, "quantity": 1, "title": "Tip"},
    ]

    assert compute_total_cost(line_items, {1: 5.0, 9: 100.0}) == 0
    assert compute_total_cost(None, {1: 5.0}) == 0


def test_normalize_order_extracts_attribution_and_cost(conn, raw_order, add_catalog_entry, local_tz):
    """UTM keys become columns and total_cost comes from the catalog."""
    add_catalog_entry(10, 1, 5.0)
    add_catalog_entry(20, 2, 3.0)
    raw = raw_order(
        5001,
        utm={"utm_campaign": "c1", "utm_content": "ad1", "utm_term": "as1", "utm_source": "facebook"},
        line_items=[
            {"variant_id": 1, "product_id": 7, "title": "Widget", "quantity": 2},
            {"variant_id": 2, "product_id": 8, "title": "Gadget", "quantity": 1},
        ],
    )

    order = normalize_order(raw, conn, local_tz)

    assert order.order_id == 5001
    assert order.utm_campaign == "c1"
    assert order.utm_content == "ad1"
    assert order.utm_term == "as1"
    assert order.utm_source == "facebook"
    assert order.total_cost == pytest.approx(13.0)
    assert order.total_price == pytest.approx(100.0)


def test_normalize_order_missing_data_degrades(conn, raw_order, local_tz):
    """Orders without line items or UTM values still normalize."""
    raw = raw_order(5002, line_items=None)
    raw["note_attributes"] = None

    order = normalize_order(raw, conn, local_tz)

    assert order.utm_campaign is None
    assert order.line_items is None
    assert order.total_cost == 0
    assert order.to_row()["line_items"] is None


def test_normalize_order_created_date_is_local(conn, raw_order, local_tz):
    """created_at is stored in UTC, created_date in the reporting timezone."""
    raw = raw_order(5003, created_at="2024-01-16T06:30:00Z")

    order = normalize_order(raw, conn, local_tz)

    assert order.created_at.startswith("2024-01-16T06:30:00")
    assert order.created_date == "2024-01-15"


def test_normalized_row_serializes_json_columns(conn, raw_order, local_tz):
    raw = raw_order(5004, refunds=[{"amount": "5.00"}], line_items=[])

    row = normalize_order(raw, conn, local_tz).to_row()

    assert json.loads(row["refunds"]) == [{"amount": "5.00"}]
    assert row["line_items"] == "[]"


def test_normalize_order_unparseable_fields_degrade(conn, raw_order, add_catalog_entry, local_tz):
    """Bad timestamps, order numbers and variant ids fall back instead of raising."""
    add_catalog_entry(10, 1, 5.0)
    raw = raw_order(
        5005,
        created_at="15/01/2024 10:00",
        line_items=[
            {"variant_id": "gid://shopify/ProductVariant/1", "quantity": 1, "title": "Widget"},
            {"variant_id": "1", "quantity": 2, "title": "Widget"},
        ],
    )
    raw["order_number"] = "#6005"

    order = normalize_order(raw, conn, local_tz)

    assert order.order_number is None
    assert order.created_at
    assert order.created_date
    assert order.total_cost == pytest.approx(10.0)
    assert line_item_variant_ids(raw["line_items"]) == [1]


def test_upstream_status_kept_apart_from_backfill_status(conn, raw_order, local_tz):
    raw = raw_order(5006)
    raw["status"] = "cancelled"

    row = normalize_order(raw, conn, local_tz).to_row()

    assert row["order_status"] == "cancelled"
    assert row["status"] == "active"
