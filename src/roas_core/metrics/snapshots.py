"""Daily snapshot archiver.

Each historical day is archived as one transaction: the dashboard
aggregate plus one summary row per entity from the metric engine. Day
status is persisted in snapshot_state so failed days are retried by the
next backfill instead of being silently skipped.
"""
import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo
from pathlib import Path
from typing import Optional

from .dashboard import BUCKETS, fetch_dashboard_data
from .engine import MetricsResult, compute_metrics
from .entities import ROW_TYPES, EntityKind, EntityMetrics, derive_ratios
from .jobs import IngestionJob, JobState
from .schema import (
    connect,
    pending_snapshot_dates,
    record_snapshot_failure,
    record_snapshot_success,
    should_snapshot,
)


logger = logging.getLogger(__name__)


ENTITY_COLUMNS = (
    "snapshot_date",
    "entity_kind",
    "entity_id",
    "entity_name",
    "ad_id",
    "adset_id",
    "campaign_id",
    "account_id",
    "total_impressions",
    "total_spend",
    "unique_clicks",
    "average_cpm",
    "average_ctr",
    "total_revenue",
    "total_cost",
    "order_count",
    "roas",
    "profit",
    "profit_margin",
    "cpa",
    "aov",
    "cvr",
    "epc",
    "cpc",
    "ctr",
    "cpm",
)

_SUMMED = ("total_impressions", "total_spend", "unique_clicks", "total_revenue", "total_cost", "order_count")
_AVERAGED = ("average_cpm", "average_ctr")


@dataclass
class BackfillReport:
    archived: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "archived": self.archived,
            "skipped": len(self.skipped),
            "failed": self.failed,
        }


def _entity_values(day: str, row: EntityMetrics) -> tuple:
    values = {
        "snapshot_date": day,
        "entity_kind": row.kind.value,
        "entity_id": row.entity_id,
        "entity_name": row.entity_name,
        "ad_id": row.entity_id if row.kind is EntityKind.AD else None,
        "adset_id": (
            row.entity_id if row.kind is EntityKind.ADSET else getattr(row, "adset_id", None)
        ),
        "campaign_id": (
            row.entity_id
            if row.kind is EntityKind.CAMPAIGN
            else getattr(row, "campaign_id", None)
        ),
        "account_id": row.account_id,
    }
    return tuple(
        values[column] if column in values else getattr(row, column)
        for column in ENTITY_COLUMNS
    )


def write_snapshot(
    conn: sqlite3.Connection, day: str, dashboard: dict, metrics: MetricsResult
) -> None:
    """Replace all snapshot rows of one day inside a single transaction."""
    column_list = ", ".join(ENTITY_COLUMNS)
    placeholders = ", ".join("?" for _ in ENTITY_COLUMNS)

    with conn:
        conn.execute("DELETE FROM summary_entities WHERE snapshot_date=?", (day,))
        conn.execute("DELETE FROM summary_dashboard WHERE snapshot_date=?", (day,))

        for kind in EntityKind:
            for row in metrics.rows(kind):
                conn.execute(
                    f"INSERT INTO summary_entities ({column_list}) VALUES ({placeholders})",
                    _entity_values(day, row),
                )

        conn.execute(
            """
            INSERT INTO summary_dashboard (
                snapshot_date, order_count, revenue, largest_order,
                aggregated_json, total_profit
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                day,
                dashboard["count"],
                dashboard["revenue"],
                dashboard["largestOrder"],
                json.dumps(dashboard["aggregatedData"], separators=(",", ":")),
                metrics.total_profit,
            ),
        )


class SnapshotArchiver:
    """Archives days into summary_entities / summary_dashboard."""

    def __init__(self, db_path: str | Path, local_tz: tzinfo, floor: date) -> None:
        self.db_path = Path(db_path)
        self.local_tz = local_tz
        self.floor = floor

    def yesterday(self) -> date:
        return datetime.now(self.local_tz).date() - timedelta(days=1)

    def archive_day(self, day: date, force: bool = False) -> bool:
        """Archive one day.

        Args:
            day: Local calendar day
            force: Rebuild even if the day was already archived

        Returns:
            True if archived, False if skipped as already done

        Raises:
            sqlite3.Error: If the write failed; the day is recorded as failed
        """
        day_str = day.isoformat()
        conn = connect(self.db_path)
        try:
            if not force and not should_snapshot(conn, day_str):
                return False

            try:
                dashboard = fetch_dashboard_data(conn, day, day)
                metrics = compute_metrics(conn, day, day)
                write_snapshot(conn, day_str, dashboard, metrics)
            except sqlite3.Error as exc:
                logger.error("Snapshot for %s failed: %s", day_str, exc)
                record_snapshot_failure(conn, day_str, str(exc))
                raise

            record_snapshot_success(
                conn,
                day_str,
                f"orders={dashboard['count']} campaigns={len(metrics.campaigns)}",
            )
            logger.info(
                "Archived %s: %s orders, %s ads, %s campaigns",
                day_str,
                dashboard["count"],
                len(metrics.ads),
                len(metrics.campaigns),
            )
            return True

        finally:
            conn.close()

    def backfill(
        self, floor: Optional[date] = None, until: Optional[date] = None
    ) -> BackfillReport:
        """Walk backward from until (default yesterday) to floor, one day at a time.

        A failing day is logged and recorded, and the walk continues.
        """
        floor = floor or self.floor
        current = until or self.yesterday()
        report = BackfillReport()

        while current >= floor:
            day_str = current.isoformat()
            try:
                if self.archive_day(current):
                    report.archived.append(day_str)
                else:
                    report.skipped.append(day_str)
            except sqlite3.Error:
                report.failed.append(day_str)
            current -= timedelta(days=1)

        logger.info(
            "Backfill %s..%s: archived=%s skipped=%s failed=%s",
            floor.isoformat(),
            (until or self.yesterday()).isoformat(),
            len(report.archived),
            len(report.skipped),
            len(report.failed),
        )
        return report

    def retry_failed(self) -> BackfillReport:
        """Re-archive every day whose last attempt failed."""
        conn = connect(self.db_path)
        try:
            pending = pending_snapshot_dates(conn)
        finally:
            conn.close()

        report = BackfillReport()
        for day_str in pending:
            try:
                self.archive_day(date.fromisoformat(day_str))
                report.archived.append(day_str)
            except sqlite3.Error:
                report.failed.append(day_str)
        return report


def summarize_snapshots(
    conn: sqlite3.Connection, start_date: date | str, end_date: date | str
) -> MetricsResult:
    """Re-aggregate archived entity rows over a date range, recomputing ratios."""
    start = start_date.isoformat() if isinstance(start_date, date) else start_date
    end = end_date.isoformat() if isinstance(end_date, date) else end_date

    summed = ", ".join(f"SUM({column})" for column in _SUMMED)
    averaged = ", ".join(f"AVG({column})" for column in _AVERAGED)
    cursor = conn.execute(
        f"""
        SELECT entity_kind, entity_id,
               MAX(entity_name), MAX(adset_id), MAX(campaign_id), MAX(account_id),
               {summed}, {averaged}
        FROM summary_entities
        WHERE snapshot_date BETWEEN ? AND ?
        GROUP BY entity_kind, entity_id
        ORDER BY entity_kind, entity_id
        """,
        (start, end),
    )

    result = MetricsResult()
    for record in cursor.fetchall():
        kind = EntityKind(record[0])
        row = ROW_TYPES[kind](entity_id=record[1], entity_name=record[2])
        if kind is EntityKind.AD:
            row.adset_id = record[3]
        if kind in (EntityKind.AD, EntityKind.ADSET):
            row.campaign_id = record[4]
        row.account_id = record[5]

        metrics = record[6:]
        for column, value in zip(_SUMMED + _AVERAGED, metrics):
            setattr(row, column, value or 0)
        derive_ratios(row)
        result.rows(kind).append(row)

    result.total_profit = sum(account.profit for account in result.accounts)
    return result


def summarize_dashboard_snapshots(
    conn: sqlite3.Connection, start_date: date | str, end_date: date | str
) -> dict:
    """Merge archived dashboard aggregates over a date range."""
    start = start_date.isoformat() if isinstance(start_date, date) else start_date
    end = end_date.isoformat() if isinstance(end_date, date) else end_date

    cursor = conn.execute(
        """
        SELECT snapshot_date, order_count, revenue, largest_order,
               aggregated_json, total_profit
        FROM summary_dashboard
        WHERE snapshot_date BETWEEN ? AND ?
        ORDER BY snapshot_date
        """,
        (start, end),
    )

    merged: dict[str, dict] = {category: {} for category in BUCKETS}
    summary = {"count": 0, "revenue": 0.0, "largestOrder": 0.0, "totalProfit": 0.0, "days": 0}

    for _, count, revenue, largest, aggregated_json, total_profit in cursor.fetchall():
        summary["days"] += 1
        summary["count"] += count
        summary["revenue"] += revenue
        summary["largestOrder"] = max(summary["largestOrder"], largest)
        summary["totalProfit"] += total_profit

        for category, entries in json.loads(aggregated_json).items():
            target = merged.setdefault(category, {})
            for key, entry in entries.items():
                bucket = target.setdefault(
                    key, {"count": 0, "totalSales": 0.0, "largestOrder": 0.0}
                )
                bucket["count"] += entry["count"]
                bucket["totalSales"] += entry["totalSales"]
                bucket["largestOrder"] = max(bucket["largestOrder"], entry["largestOrder"])

    summary["revenue"] = round(summary["revenue"], 2)
    summary["aggregatedData"] = merged
    return summary


class SnapshotJob(IngestionJob):
    """Nightly archive of yesterday plus a retry of previously failed days.

    Archiving is synchronous sqlite work and runs in a worker thread so
    the event loop keeps serving the API and other timers.
    """

    name = "snapshots"

    def __init__(self, archiver: SnapshotArchiver) -> None:
        super().__init__()
        self.archiver = archiver

    async def run(
        self,
        day: Optional[date] = None,
        backfill: bool = False,
        force: bool = False,
    ) -> BackfillReport:
        self.transition(JobState.UPSERTING)

        if backfill:
            return await asyncio.to_thread(self.archiver.backfill, until=day)
        return await asyncio.to_thread(self._nightly, day, force)

    def _nightly(self, day: Optional[date], force: bool) -> BackfillReport:
        report = self.archiver.retry_failed()
        target = day or self.archiver.yesterday()
        if self.archiver.archive_day(target, force=force):
            report.archived.append(target.isoformat())
        else:
            report.skipped.append(target.isoformat())
        return report
