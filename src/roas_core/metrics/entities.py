"""Entity kinds of the ad hierarchy and their typed metric rows.

account -> campaign -> adset -> ad. Each kind owns one ad_metrics table
and one row class; code that differs per kind dispatches on EntityKind
rather than on table-name strings.
"""
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import ClassVar, Optional


MARGIN_FACTOR = 0.86
"""Share of gross revenue kept after platform and payment fees."""


class EntityKind(str, Enum):
    """Reporting level of an ad metric row."""

    AD = "ad"
    ADSET = "adset"
    CAMPAIGN = "campaign"
    ACCOUNT = "account"

    @property
    def table(self) -> str:
        return f"ad_metrics_{self.value}"

    @property
    def id_column(self) -> str:
        return f"{self.value}_id"

    @property
    def name_column(self) -> str:
        return f"{self.value}_name"

    @property
    def parent_columns(self) -> tuple[str, ...]:
        return _PARENT_COLUMNS[self]


_PARENT_COLUMNS = {
    EntityKind.AD: ("adset_id", "adset_name", "campaign_id", "campaign_name", "account_id", "account_name"),
    EntityKind.ADSET: ("campaign_id", "campaign_name", "account_id", "account_name"),
    EntityKind.CAMPAIGN: ("account_id", "account_name"),
    EntityKind.ACCOUNT: (),
}

BASE_METRIC_COLUMNS = ("impressions", "spend", "clicks", "unique_clicks", "reach", "cpc", "ctr", "cpm")


@dataclass
class EntityMetrics:
    """Aggregated base metrics plus attributed order totals and derived ratios."""

    kind: ClassVar[EntityKind]

    entity_id: str
    entity_name: Optional[str] = None
    account_id: Optional[str] = None
    account_name: Optional[str] = None

    total_impressions: int = 0
    total_spend: float = 0.0
    unique_clicks: int = 0
    average_cpm: float = 0.0
    average_ctr: float = 0.0

    total_revenue: float = 0.0
    total_cost: float = 0.0
    order_count: int = 0

    roas: float = 0.0
    profit: float = 0.0
    profit_margin: float = 0.0
    cpa: float = 0.0
    aov: float = 0.0
    cvr: float = 0.0
    epc: float = 0.0
    cpc: float = 0.0
    ctr: float = 0.0
    cpm: float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data[self.kind.id_column] = self.entity_id
        data[self.kind.name_column] = self.entity_name
        return data

    @classmethod
    def field_names(cls) -> list[str]:
        return [f.name for f in fields(cls)]


@dataclass
class AdMetrics(EntityMetrics):
    kind: ClassVar[EntityKind] = EntityKind.AD

    adset_id: Optional[str] = None
    adset_name: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None


@dataclass
class AdsetMetrics(EntityMetrics):
    kind: ClassVar[EntityKind] = EntityKind.ADSET

    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None


@dataclass
class CampaignMetrics(EntityMetrics):
    kind: ClassVar[EntityKind] = EntityKind.CAMPAIGN


@dataclass
class AccountMetrics(EntityMetrics):
    kind: ClassVar[EntityKind] = EntityKind.ACCOUNT


ROW_TYPES: dict[EntityKind, type[EntityMetrics]] = {
    EntityKind.AD: AdMetrics,
    EntityKind.ADSET: AdsetMetrics,
    EntityKind.CAMPAIGN: CampaignMetrics,
    EntityKind.ACCOUNT: AccountMetrics,
}


def safe_div(numerator: float, denominator: float) -> float:
    """Divide, yielding 0 for a zero or missing denominator."""
    if not denominator:
        return 0.0
    return numerator / denominator


def derive_ratios(row: EntityMetrics) -> EntityMetrics:
    """Fill the derived ratio fields of row in place and return it."""
    revenue = row.total_revenue
    spend = row.total_spend
    clicks = row.unique_clicks
    impressions = row.total_impressions

    row.roas = safe_div(revenue, spend)
    row.profit = revenue * MARGIN_FACTOR - row.total_cost - spend
    row.profit_margin = safe_div(row.profit, revenue) * 100
    row.cpa = safe_div(spend, row.order_count)
    row.aov = safe_div(revenue, row.order_count)
    row.cvr = safe_div(row.order_count, clicks) * 100
    row.epc = safe_div(revenue, clicks)
    row.cpc = safe_div(spend, clicks)
    row.ctr = safe_div(clicks, impressions) * 100
    row.cpm = safe_div(spend, impressions) * 1000
    return row
