"""Cost catalog refresher.

Walks the variants referenced by stored orders beyond its own cursor,
resolves each new variant to its inventory item through the order
source and upserts the cost into cost_catalog. Work is done in batches
that never split an order, and the cursor only moves past a batch once
every variant in it was resolved.
"""
import json
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from ..shopify.exceptions import OrderNotFoundError
from ..shopify.orders_client import ShopifyOrdersClient
from .cursor import CATALOG_CURSOR, CursorStore
from .jobs import IngestionJob, JobState
from .normalizer import TIP_TITLE, compute_total_cost, line_item_variant_ids, lookup_costs
from .schema import connect
from .store import update_order_cost, upsert_catalog_entry


logger = logging.getLogger(__name__)


@dataclass
class VariantRef:
    order_id: int
    variant_id: Optional[int]
    product_id: Optional[int]
    title: Optional[str]


@dataclass
class CatalogRefreshResult:
    batches: int = 0
    resolved: int = 0
    not_found: int = 0
    skipped: int = 0
    costs_updated: int = 0
    cursor: int = 0

    def to_dict(self) -> dict:
        return {
            "batches": self.batches,
            "resolved": self.resolved,
            "not_found": self.not_found,
            "skipped": self.skipped,
            "costs_updated": self.costs_updated,
            "cursor": self.cursor,
        }


def _as_int(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def variant_refs_from_line_items(order_id: int, line_items: Optional[list]) -> list[VariantRef]:
    return [
        VariantRef(
            order_id=order_id,
            variant_id=_as_int(item.get("variant_id")),
            product_id=_as_int(item.get("product_id")),
            title=item.get("title"),
        )
        for item in line_items or []
        if isinstance(item, dict)
    ]


def variant_refs_since(conn: sqlite3.Connection, order_id: int) -> list[VariantRef]:
    """Expand line_items of orders with id > order_id into variant references."""
    cursor = conn.execute(
        """
        SELECT o.order_id,
               json_extract(li.value, '$.variant_id'),
               json_extract(li.value, '$.product_id'),
               json_extract(li.value, '$.title')
        FROM orders AS o, json_each(o.line_items) AS li
        WHERE o.order_id > ?
          AND o.line_items IS NOT NULL
          AND json_valid(o.line_items)
        ORDER BY o.order_id
        """,
        (order_id,),
    )
    return [
        VariantRef(
            order_id=int(row[0]),
            variant_id=_as_int(row[1]),
            product_id=_as_int(row[2]),
            title=row[3],
        )
        for row in cursor.fetchall()
    ]


def batch_by_order(refs: list[VariantRef], batch_size: int) -> list[list[VariantRef]]:
    """Group refs into batches of at least batch_size, never splitting an order."""
    batches: list[list[VariantRef]] = []
    current: list[VariantRef] = []

    for ref in refs:
        if len(current) >= batch_size and current[-1].order_id != ref.order_id:
            batches.append(current)
            current = []
        current.append(ref)

    if current:
        batches.append(current)
    return batches


def known_variant_ids(conn: sqlite3.Connection, variant_ids: set[int]) -> set[int]:
    if not variant_ids:
        return set()
    ids = sorted(variant_ids)
    placeholders = ",".join("?" for _ in ids)
    cursor = conn.execute(
        f"SELECT variant_id FROM cost_catalog WHERE variant_id IN ({placeholders})",
        ids,
    )
    return {int(row[0]) for row in cursor.fetchall()}


def recompute_order_costs(conn: sqlite3.Connection, order_ids: Iterable[int]) -> int:
    """Recompute total_cost for the given orders still stored with zero cost.

    Returns:
        Number of orders whose cost changed
    """
    ids = sorted(set(order_ids))
    if not ids:
        return 0

    placeholders = ",".join("?" for _ in ids)
    cursor = conn.execute(
        f"""
        SELECT order_id, line_items FROM orders
        WHERE order_id IN ({placeholders})
          AND total_cost = 0
          AND line_items IS NOT NULL
          AND line_items != '[]'
          AND json_valid(line_items)
        """,
        ids,
    )
    updated = 0
    for order_id, line_items_json in cursor.fetchall():
        line_items = json.loads(line_items_json)
        costs = lookup_costs(conn, line_item_variant_ids(line_items))
        total_cost = compute_total_cost(line_items, costs)
        if total_cost:
            update_order_cost(conn, order_id, total_cost)
            updated += 1

    if updated:
        logger.info("Recomputed total_cost for %s orders", updated)
    return updated


class CostCatalogRefresher:
    """Resumable variant -> inventory item cost walk."""

    def __init__(
        self,
        client: ShopifyOrdersClient,
        db_path: str | Path,
        batch_size: int = 50,
    ) -> None:
        self.client = client
        self.db_path = Path(db_path)
        self.batch_size = batch_size
        self.cursor = CursorStore(self.db_path, CATALOG_CURSOR)

    async def _resolve(self, ref: VariantRef) -> dict:
        """Fetch variant then inventory item and build a catalog entry."""
        variant = await self.client.fetch_variant(ref.variant_id)
        inventory_item_id = variant.get("inventory_item_id")
        if inventory_item_id is None:
            raise OrderNotFoundError("inventory_item for variant", ref.variant_id)

        item = await self.client.fetch_inventory_item(inventory_item_id)
        return {
            "inventory_item_id": inventory_item_id,
            "variant_id": ref.variant_id,
            "product_id": ref.product_id or variant.get("product_id"),
            "title": ref.title,
            "sku": item.get("sku"),
            "cost": item.get("cost"),
            "created_at": item.get("created_at"),
            "updated_at": item.get("updated_at"),
            "requires_shipping": item.get("requires_shipping"),
            "country_code_of_origin": item.get("country_code_of_origin"),
            "province_code_of_origin": item.get("province_code_of_origin"),
            "harmonized_system_code": item.get("harmonized_system_code"),
            "tracked": item.get("tracked"),
            "admin_graphql_api_id": item.get("admin_graphql_api_id"),
        }

    async def _fetch_entries(
        self,
        conn: sqlite3.Connection,
        refs: list[VariantRef],
        result: CatalogRefreshResult,
        processed: set[int],
    ) -> list[dict]:
        candidates = {
            ref.variant_id
            for ref in refs
            if ref.variant_id is not None and ref.title != TIP_TITLE
        }
        known = known_variant_ids(conn, candidates)

        entries = []
        for ref in refs:
            if ref.title == TIP_TITLE or ref.variant_id is None:
                result.skipped += 1
                continue
            if ref.variant_id in known or ref.variant_id in processed:
                result.skipped += 1
                continue

            try:
                entries.append(await self._resolve(ref))
            except OrderNotFoundError:
                result.not_found += 1
                logger.warning("Variant %s not found upstream", ref.variant_id)
            processed.add(ref.variant_id)
        return entries

    async def catalog_refs(
        self, conn: sqlite3.Connection, refs: list[VariantRef]
    ) -> CatalogRefreshResult:
        """Resolve and store uncataloged variants of specific orders.

        Used for orders that gain line items after the cursor walk has
        passed them. The cursor is neither read nor moved.
        """
        result = CatalogRefreshResult()
        for entry in await self._fetch_entries(conn, refs, result, set()):
            upsert_catalog_entry(conn, entry)
            result.resolved += 1
        return result

    async def run(self, job: Optional[IngestionJob] = None) -> CatalogRefreshResult:
        """Process every pending batch.

        Raises:
            OrderSourceError: On a non-404 fetch failure; earlier batches stay
                committed and the cursor stays at the last completed batch
        """
        start_cursor = self.cursor.get()
        result = CatalogRefreshResult(cursor=start_cursor)
        processed: set[int] = set()

        conn = connect(self.db_path)
        try:
            refs = variant_refs_since(conn, start_cursor)
            batches = batch_by_order(refs, self.batch_size)
            logger.info(
                "Catalog refresh: %s line items in %s batches beyond order %s",
                len(refs),
                len(batches),
                start_cursor,
            )

            for batch in batches:
                if job is not None:
                    job.transition(JobState.FETCHING)

                entries = await self._fetch_entries(conn, batch, result, processed)

                if job is not None:
                    job.transition(JobState.UPSERTING)

                for entry in entries:
                    upsert_catalog_entry(conn, entry)
                    result.resolved += 1

                batch_orders = {ref.order_id for ref in batch}
                result.costs_updated += recompute_order_costs(conn, batch_orders)
                result.batches += 1
                result.cursor = self.cursor.set(max(batch_orders))

        finally:
            conn.close()

        logger.info(
            "Catalog refresh done: resolved=%s not_found=%s skipped=%s cursor=%s",
            result.resolved,
            result.not_found,
            result.skipped,
            result.cursor,
        )
        return result


class CatalogRefreshJob(IngestionJob):
    name = "catalog"

    def __init__(self, refresher: CostCatalogRefresher) -> None:
        super().__init__()
        self.refresher = refresher

    async def run(self) -> CatalogRefreshResult:
        return await self.refresher.run(job=self)
