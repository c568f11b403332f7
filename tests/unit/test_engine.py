"""Unit tests for the attribution join and metric engine."""
import pytest

from roas_core.metrics.engine import compute_kind, compute_metrics
from roas_core.metrics.entities import (
    MARGIN_FACTOR,
    CampaignMetrics,
    EntityKind,
    derive_ratios,
    safe_div,
)


UTM = {"utm_campaign": "c1", "utm_term": "s1", "utm_content": "a1", "utm_source": "facebook"}


@pytest.fixture
def scenario(add_order, add_ad_metric):
    """One account/campaign/adset/ad with 10 attributed orders of $30 each."""
    for order_id in range(1, 11):
        add_order(order_id, total_cost=5.0, total_price="30.00", utm=UTM)

    metrics = {"impressions": 10000, "spend": 100, "unique_clicks": 50, "cpm": 10, "ctr": 0.5}
    add_ad_metric(
        EntityKind.AD,
        "a1",
        adset_id="s1",
        campaign_id="c1",
        account_id="act1",
        account_name="Main",
        **metrics,
    )
    add_ad_metric(EntityKind.ADSET, "s1", campaign_id="c1", account_id="act1", **metrics)
    add_ad_metric(EntityKind.CAMPAIGN, "c1", account_id="act1", account_name="Main", **metrics)
    add_ad_metric(EntityKind.ACCOUNT, "act1", **metrics)


def test_safe_div_zero_denominator():
    assert safe_div(10, 0) == 0.0
    assert safe_div(10, None) == 0.0
    assert safe_div(10, 4) == pytest.approx(2.5)


def test_derive_ratios_reference_values():
    """spend 100, revenue 300, cost 50, 10 orders, 50 clicks, 10k impressions."""
    row = CampaignMetrics(
        entity_id="c1",
        total_spend=100.0,
        total_revenue=300.0,
        total_cost=50.0,
        order_count=10,
        unique_clicks=50,
        total_impressions=10000,
    )

    derive_ratios(row)

    assert row.roas == pytest.approx(3.0)
    assert row.profit == pytest.approx(300 * MARGIN_FACTOR - 50 - 100)
    assert row.profit == pytest.approx(108.0)
    assert row.profit_margin == pytest.approx(36.0)
    assert row.cpa == pytest.approx(10.0)
    assert row.aov == pytest.approx(30.0)
    assert row.cvr == pytest.approx(20.0)
    assert row.epc == pytest.approx(6.0)
    assert row.cpc == pytest.approx(2.0)
    assert row.ctr == pytest.approx(0.5)
    assert row.cpm == pytest.approx(10.0)


def test_derive_ratios_all_zero_denominators():
    """No spend, orders, clicks or impressions yields zeros, not errors."""
    row = derive_ratios(CampaignMetrics(entity_id="c0"))

    for name in ("roas", "profit_margin", "cpa", "aov", "cvr", "epc", "cpc", "ctr", "cpm"):
        assert getattr(row, name) == 0.0
    assert row.profit == 0.0


def test_derive_ratios_spend_without_revenue():
    row = derive_ratios(CampaignMetrics(entity_id="c0", total_spend=25.0))

    assert row.roas == 0.0
    assert row.profit == pytest.approx(-25.0)
    assert row.profit_margin == 0.0


def test_compute_metrics_all_levels(conn, scenario):
    result = compute_metrics(conn, "2024-01-15", "2024-01-15")

    for kind in EntityKind:
        rows = result.rows(kind)
        assert len(rows) == 1, kind
        row = rows[0]
        assert row.total_revenue == pytest.approx(300.0)
        assert row.total_cost == pytest.approx(50.0)
        assert row.order_count == 10
        assert row.roas == pytest.approx(3.0)
        assert row.profit == pytest.approx(108.0)

    assert result.ads[0].adset_id == "s1"
    assert result.ads[0].account_name == "Main"
    assert result.accounts[0].account_id == "act1"
    assert result.total_profit == pytest.approx(108.0)


def test_compute_metrics_excludes_unattributed_orders(conn, scenario, add_order):
    """Orders without a matching UTM value never reach entity revenue."""
    add_order(50, total_price="500.00")
    add_order(51, total_price="500.00", utm={"utm_campaign": "other"})

    result = compute_metrics(conn, "2024-01-15", "2024-01-15")

    assert result.campaigns[0].total_revenue == pytest.approx(300.0)
    assert result.accounts[0].total_revenue == pytest.approx(300.0)


def test_compute_metrics_respects_window(conn, scenario, add_order, add_ad_metric):
    add_order(60, total_price="70.00", created_at="2024-01-20T10:00:00-08:00", utm=UTM)
    add_ad_metric(EntityKind.CAMPAIGN, "c1", date_start="2024-01-20", spend=30, account_id="act1")

    result = compute_metrics(conn, "2024-01-20", "2024-01-20")

    assert len(result.campaigns) == 1
    assert result.campaigns[0].total_revenue == pytest.approx(70.0)
    assert result.campaigns[0].total_spend == pytest.approx(30.0)
    assert result.ads == []


def test_campaign_totals_sum_across_days(conn, add_ad_metric):
    add_ad_metric(EntityKind.CAMPAIGN, "c1", date_start="2024-01-15", spend=10, impressions=100)
    add_ad_metric(EntityKind.CAMPAIGN, "c1", date_start="2024-01-16", spend=15, impressions=300)

    rows = compute_kind(conn, EntityKind.CAMPAIGN, "2024-01-15", "2024-01-16")

    assert len(rows) == 1
    assert rows[0].total_spend == pytest.approx(25.0)
    assert rows[0].total_impressions == 400


def test_account_rollup_sums_campaigns(conn, add_order, add_ad_metric):
    """Account revenue is the sum over the account's campaigns in the window."""
    add_order(1, total_price="40.00", utm={"utm_campaign": "c1"})
    add_order(2, total_price="60.00", utm={"utm_campaign": "c2"})
    add_order(3, total_price="999.00", utm={"utm_campaign": "c9"})
    add_ad_metric(EntityKind.CAMPAIGN, "c1", account_id="act1")
    add_ad_metric(EntityKind.CAMPAIGN, "c2", account_id="act1")
    add_ad_metric(EntityKind.CAMPAIGN, "c9", account_id="act2")
    add_ad_metric(EntityKind.ACCOUNT, "act1", spend=20)

    rows = compute_kind(conn, EntityKind.ACCOUNT, "2024-01-15", "2024-01-15")

    assert len(rows) == 1
    assert rows[0].total_revenue == pytest.approx(100.0)
    assert rows[0].order_count == 2


def test_metrics_result_to_dict(conn, scenario):
    data = compute_metrics(conn, "2024-01-15", "2024-01-15").to_dict()

    assert set(data) == {"ads", "adsets", "campaigns", "accounts", "totalProfit"}
    assert data["campaigns"][0]["campaign_id"] == "c1"
    assert data["ads"][0]["ad_id"] == "a1"
