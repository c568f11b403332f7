"""Incremental order ingestion and line item backfill jobs."""
import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, time, tzinfo
from pathlib import Path
from typing import Optional

from ..shopify.exceptions import OrderNotFoundError
from ..shopify.orders_client import ShopifyOrdersClient
from .catalog import CostCatalogRefresher, variant_refs_from_line_items
from .cursor import ORDERS_CURSOR, CursorStore
from .jobs import IngestionJob, JobState, PartialBatchError
from .normalizer import (
    compute_total_cost,
    line_item_variant_ids,
    lookup_costs,
    normalize_order,
)
from .raw_log import append_raw
from .schema import connect
from .store import insert_order, mark_order_status, update_order_line_items


logger = logging.getLogger(__name__)


def _order_id(raw_order: dict) -> Optional[int]:
    try:
        return int(raw_order["id"])
    except (KeyError, TypeError, ValueError):
        return None


@dataclass
class OrderIngestionResult:
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    failed: int = 0
    dropped: int = 0
    cursor: int = 0

    def to_dict(self) -> dict:
        return {
            "fetched": self.fetched,
            "inserted": self.inserted,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "dropped": self.dropped,
            "cursor": self.cursor,
        }


class OrderIngestionJob(IngestionJob):
    """Fetch orders beyond the cursor, normalize, insert, advance the cursor.

    Orders are inserted in ascending id order. The cursor moves to the
    batch's max id only when every order in the batch was stored. After
    a failed row it is pinned just below the lowest failed id, so the
    next tick fetches that order again.
    """

    name = "orders"

    def __init__(
        self,
        client: ShopifyOrdersClient,
        db_path: str | Path,
        local_tz: tzinfo,
        raw_dir: Optional[str | Path] = None,
        initial_floor: Optional[date] = None,
    ) -> None:
        super().__init__()
        self.client = client
        self.db_path = Path(db_path)
        self.local_tz = local_tz
        self.raw_dir = raw_dir
        self.initial_floor = initial_floor
        self.cursor = CursorStore(self.db_path, ORDERS_CURSOR)

    def _starting_point(self, conn: sqlite3.Connection) -> tuple[Optional[int], Optional[str]]:
        since_id = self.cursor.get()
        if since_id:
            return since_id, None

        # Only a cursor that was never written may be seeded from stored orders.
        if not self.cursor.exists():
            stored_max = conn.execute("SELECT MAX(order_id) FROM orders").fetchone()[0]
            if stored_max:
                logger.info("Seeding orders cursor from stored max id %s", stored_max)
                return int(stored_max), None

        if self.initial_floor is not None:
            floor = datetime.combine(self.initial_floor, time.min, tzinfo=self.local_tz)
            return None, floor.isoformat()

        return 0, None

    async def run(self) -> OrderIngestionResult:
        conn = connect(self.db_path)
        try:
            since_id, created_at_min = self._starting_point(conn)
            previous = since_id or 0

            raw_orders = await self.client.fetch_orders(
                since_id=since_id, created_at_min=created_at_min
            )
            if self.raw_dir and raw_orders:
                await append_raw(self.raw_dir, "shopify", "orders", raw_orders)

            result = OrderIngestionResult(fetched=len(raw_orders), cursor=previous)
            if not raw_orders:
                logger.debug("No new orders since %s", previous)
                return result

            self.transition(JobState.NORMALIZING)
            usable = [order for order in raw_orders if _order_id(order) is not None]
            result.dropped = len(raw_orders) - len(usable)
            if result.dropped:
                logger.error("Dropped %s orders without a numeric id", result.dropped)
            raw_orders = sorted(usable, key=_order_id)

            normalized = []
            failed_keys: list[int] = []
            for raw_order in raw_orders:
                try:
                    normalized.append(normalize_order(raw_order, conn, self.local_tz))
                except (KeyError, TypeError, ValueError) as exc:
                    failed_keys.append(_order_id(raw_order))
                    logger.error(
                        "Failed to normalize order %s: %s", raw_order.get("id"), exc
                    )

            self.transition(JobState.UPSERTING)
            for order in normalized:
                try:
                    if insert_order(conn, order):
                        result.inserted += 1
                    else:
                        result.duplicates += 1
                except sqlite3.Error as exc:
                    failed_keys.append(order.order_id)
                    logger.error("Failed to insert order %s: %s", order.order_id, exc)

        finally:
            conn.close()

        result.failed = len(failed_keys)
        if failed_keys:
            held = self.cursor.set(max(previous, min(failed_keys) - 1))
            logger.warning("Orders cursor held at %s below failed orders", held)
            raise PartialBatchError(self.name, failed_keys)

        if raw_orders:
            result.cursor = self.cursor.set(max(_order_id(raw_orders[-1]), previous))

        logger.info(
            "Ingested orders: fetched=%s inserted=%s duplicates=%s cursor=%s",
            result.fetched,
            result.inserted,
            result.duplicates,
            result.cursor,
        )
        return result


@dataclass
class LineItemBackfillResult:
    checked: int = 0
    updated: int = 0
    missing: int = 0
    cataloged: int = 0

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "updated": self.updated,
            "missing": self.missing,
            "cataloged": self.cataloged,
        }


class LineItemBackfillJob(IngestionJob):
    """Re-fetch orders stored without line items and patch line_items/total_cost.

    Patched orders usually sit below the catalog cursor, so when a
    refresher is given their variants are cataloged here before the cost
    is computed.
    """

    name = "line-items"

    BATCH_SIZE = 50

    def __init__(
        self,
        client: ShopifyOrdersClient,
        db_path: str | Path,
        refresher: Optional[CostCatalogRefresher] = None,
    ) -> None:
        super().__init__()
        self.client = client
        self.db_path = Path(db_path)
        self.refresher = refresher

    def _pending_order_ids(self, conn: sqlite3.Connection) -> list[int]:
        cursor = conn.execute(
            """
            SELECT order_id FROM orders
            WHERE (line_items IS NULL OR line_items = '[]')
              AND status = 'active'
            ORDER BY order_id
            LIMIT ?
            """,
            (self.BATCH_SIZE,),
        )
        return [int(row[0]) for row in cursor.fetchall()]

    async def run(self) -> LineItemBackfillResult:
        conn = connect(self.db_path)
        try:
            order_ids = self._pending_order_ids(conn)
            result = LineItemBackfillResult(checked=len(order_ids))

            fetched: dict[int, list] = {}
            for order_id in order_ids:
                try:
                    order = await self.client.fetch_order(order_id)
                except OrderNotFoundError:
                    result.missing += 1
                    mark_order_status(conn, order_id, "missing")
                    logger.warning("Order %s no longer exists upstream", order_id)
                    continue
                fetched[order_id] = order.get("line_items") or []

            if self.refresher is not None and fetched:
                refs = [
                    ref
                    for order_id, line_items in fetched.items()
                    for ref in variant_refs_from_line_items(order_id, line_items)
                ]
                result.cataloged = (await self.refresher.catalog_refs(conn, refs)).resolved

            self.transition(JobState.NORMALIZING)
            patches = []
            for order_id, line_items in fetched.items():
                costs = lookup_costs(conn, line_item_variant_ids(line_items))
                patches.append((order_id, line_items, compute_total_cost(line_items, costs)))

            self.transition(JobState.UPSERTING)
            for order_id, line_items, total_cost in patches:
                update_order_line_items(conn, order_id, line_items, total_cost)
                if not line_items:
                    mark_order_status(conn, order_id, "no_line_items")
                result.updated += 1

        finally:
            conn.close()

        logger.info(
            "Line item backfill: checked=%s updated=%s missing=%s cataloged=%s",
            result.checked,
            result.updated,
            result.missing,
            result.cataloged,
        )
        return result
