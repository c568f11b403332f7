"""Attribution join and metric engine.

For a date window, ad metric rows are grouped per entity and joined to
order revenue through the UTM attribution column that carries that
entity's id:

    ad       -> orders.utm_content
    adset    -> orders.utm_term
    campaign -> orders.utm_campaign
    account  -> its campaigns in the window -> orders.utm_campaign

Orders without a matching UTM value are not attributed to any entity.
They still count in the dashboard aggregate, but are invisible to ROAS.
"""
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from .entities import (
    ROW_TYPES,
    AccountMetrics,
    AdMetrics,
    AdsetMetrics,
    CampaignMetrics,
    EntityKind,
    EntityMetrics,
    derive_ratios,
)


logger = logging.getLogger(__name__)


@dataclass
class OrderTotals:
    revenue: float = 0.0
    cost: float = 0.0
    count: int = 0

    def add(self, other: "OrderTotals") -> None:
        self.revenue += other.revenue
        self.cost += other.cost
        self.count += other.count


def _window(start_date: date | str, end_date: date | str) -> tuple[str, str]:
    start = start_date.isoformat() if isinstance(start_date, date) else start_date
    end = end_date.isoformat() if isinstance(end_date, date) else end_date
    return start, end


def attributed_totals(
    conn: sqlite3.Connection, utm_column: str, start: str, end: str
) -> dict[str, OrderTotals]:
    """Sum order revenue, cost and count per attribution value in the window."""
    if utm_column not in ("utm_campaign", "utm_content", "utm_term"):
        raise ValueError(f"Not an attribution column: {utm_column}")

    cursor = conn.execute(
        f"""
        SELECT {utm_column}, SUM(total_price), SUM(total_cost), COUNT(*)
        FROM orders
        WHERE {utm_column} IS NOT NULL
          AND created_date BETWEEN ? AND ?
        GROUP BY {utm_column}
        """,
        (start, end),
    )

    return {
        str(key): OrderTotals(float(revenue or 0), float(cost or 0), int(count or 0))
        for key, revenue, cost, count in cursor.fetchall()
    }


class JoinStrategy:
    """How one entity kind finds the orders attributed to it."""

    def attribute(
        self,
        conn: sqlite3.Connection,
        rows: list[EntityMetrics],
        start: str,
        end: str,
    ) -> None:
        raise NotImplementedError


@dataclass
class DirectAttribution(JoinStrategy):
    """Orders whose utm_column equals the entity id."""

    utm_column: str

    def attribute(self, conn, rows, start, end) -> None:
        totals = attributed_totals(conn, self.utm_column, start, end)
        for row in rows:
            matched = totals.get(row.entity_id)
            if matched is None:
                continue
            row.total_revenue = matched.revenue
            row.total_cost = matched.cost
            row.order_count = matched.count


class CampaignRollup(JoinStrategy):
    """Account totals summed over the account's campaigns seen in the window."""

    def campaigns_by_account(
        self, conn: sqlite3.Connection, start: str, end: str
    ) -> dict[str, set[str]]:
        cursor = conn.execute(
            """
            SELECT DISTINCT account_id, campaign_id
            FROM ad_metrics_campaign
            WHERE date_start BETWEEN ? AND ?
              AND account_id IS NOT NULL
            """,
            (start, end),
        )
        campaigns: dict[str, set[str]] = {}
        for account_id, campaign_id in cursor.fetchall():
            campaigns.setdefault(str(account_id), set()).add(str(campaign_id))
        return campaigns

    def attribute(self, conn, rows, start, end) -> None:
        campaign_totals = attributed_totals(conn, "utm_campaign", start, end)
        campaigns = self.campaigns_by_account(conn, start, end)

        for row in rows:
            totals = OrderTotals()
            for campaign_id in campaigns.get(row.entity_id, ()):
                matched = campaign_totals.get(campaign_id)
                if matched is not None:
                    totals.add(matched)
            row.total_revenue = totals.revenue
            row.total_cost = totals.cost
            row.order_count = totals.count


JOIN_STRATEGIES: dict[EntityKind, JoinStrategy] = {
    EntityKind.AD: DirectAttribution("utm_content"),
    EntityKind.ADSET: DirectAttribution("utm_term"),
    EntityKind.CAMPAIGN: DirectAttribution("utm_campaign"),
    EntityKind.ACCOUNT: CampaignRollup(),
}


@dataclass
class MetricsResult:
    """Metric engine output for one window."""

    ads: list[AdMetrics] = field(default_factory=list)
    adsets: list[AdsetMetrics] = field(default_factory=list)
    campaigns: list[CampaignMetrics] = field(default_factory=list)
    accounts: list[AccountMetrics] = field(default_factory=list)
    total_profit: float = 0.0

    def rows(self, kind: EntityKind) -> list[EntityMetrics]:
        return {
            EntityKind.AD: self.ads,
            EntityKind.ADSET: self.adsets,
            EntityKind.CAMPAIGN: self.campaigns,
            EntityKind.ACCOUNT: self.accounts,
        }[kind]

    def to_dict(self) -> dict:
        return {
            "ads": [row.to_dict() for row in self.ads],
            "adsets": [row.to_dict() for row in self.adsets],
            "campaigns": [row.to_dict() for row in self.campaigns],
            "accounts": [row.to_dict() for row in self.accounts],
            "totalProfit": self.total_profit,
        }


def _select_columns(kind: EntityKind) -> list[str]:
    return [kind.name_column, *kind.parent_columns]


def load_entity_rows(
    conn: sqlite3.Connection, kind: EntityKind, start: str, end: str
) -> list[EntityMetrics]:
    """Group one kind's ad metric rows per entity over the window."""
    descriptive = _select_columns(kind)
    select_descriptive = ", ".join(f"MAX({column})" for column in descriptive)

    cursor = conn.execute(
        f"""
        SELECT {kind.id_column}, {select_descriptive},
               SUM(impressions), SUM(spend), SUM(unique_clicks),
               AVG(cpm), AVG(ctr)
        FROM {kind.table}
        WHERE date_start BETWEEN ? AND ?
        GROUP BY {kind.id_column}
        ORDER BY {kind.id_column}
        """,
        (start, end),
    )

    row_type = ROW_TYPES[kind]
    rows: list[EntityMetrics] = []
    for record in cursor.fetchall():
        entity_id = str(record[0])
        described = dict(zip(descriptive, record[1 : 1 + len(descriptive)]))
        impressions, spend, clicks, avg_cpm, avg_ctr = record[1 + len(descriptive) :]

        row = row_type(entity_id=entity_id)
        row.entity_name = described.pop(kind.name_column)
        for column, value in described.items():
            if value is not None and column.endswith("_id"):
                value = str(value)
            setattr(row, column, value)
        if kind is EntityKind.ACCOUNT:
            row.account_id = entity_id
            row.account_name = row.entity_name

        row.total_impressions = int(impressions or 0)
        row.total_spend = float(spend or 0)
        row.unique_clicks = int(clicks or 0)
        row.average_cpm = float(avg_cpm or 0)
        row.average_ctr = float(avg_ctr or 0)
        rows.append(row)

    return rows


def compute_kind(
    conn: sqlite3.Connection,
    kind: EntityKind,
    start_date: date | str,
    end_date: date | str,
    strategy: Optional[JoinStrategy] = None,
) -> list[EntityMetrics]:
    start, end = _window(start_date, end_date)
    rows = load_entity_rows(conn, kind, start, end)
    (strategy or JOIN_STRATEGIES[kind]).attribute(conn, rows, start, end)
    for row in rows:
        derive_ratios(row)
    return rows


def compute_metrics(
    conn: sqlite3.Connection, start_date: date | str, end_date: date | str
) -> MetricsResult:
    """Compute per-entity metrics for [start_date, end_date] (inclusive dates).

    Args:
        conn: SQLite connection
        start_date: First local day of the window
        end_date: Last local day of the window

    Returns:
        MetricsResult with one row per entity that has ad data in the window
    """
    result = MetricsResult(
        ads=compute_kind(conn, EntityKind.AD, start_date, end_date),
        adsets=compute_kind(conn, EntityKind.ADSET, start_date, end_date),
        campaigns=compute_kind(conn, EntityKind.CAMPAIGN, start_date, end_date),
        accounts=compute_kind(conn, EntityKind.ACCOUNT, start_date, end_date),
    )
    result.total_profit = sum(account.profit for account in result.accounts)

    logger.debug(
        "Computed metrics %s..%s: %s ads, %s adsets, %s campaigns, %s accounts",
        *_window(start_date, end_date),
        len(result.ads),
        len(result.adsets),
        len(result.campaigns),
        len(result.accounts),
    )
    return result
