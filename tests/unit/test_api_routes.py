"""Unit tests for API routes."""
import pytest
from fastapi.testclient import TestClient

from roas_core.config import Settings
from roas_core.context import IngestionContext
from roas_core.main import create_app
from roas_core.metrics.entities import EntityKind
from roas_core.metrics.jobs import JobState


API_KEY = "test-api-key"


@pytest.fixture
def context(db_path, tmp_path):
    """Context with no upstream credentials: only the snapshot job is built."""
    settings = Settings(db_path=db_path, raw_dir=tmp_path / "raw", api_key=API_KEY)
    return IngestionContext(settings)


@pytest.fixture
def client(context):
    """Create test client around a context whose settings carry the API key."""
    app = create_app(context=context, start_scheduler=False)
    with TestClient(app) as client:
        yield client


def test_orders_by_date_requires_range(client):
    response = client.get("/api/v1/orders-by-date", params={"start": "2024-01-15"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Start and end date parameters are required"


def test_orders_by_date_rejects_bad_dates(client):
    response = client.get(
        "/api/v1/orders-by-date", params={"start": "15/01/2024", "end": "2024-01-16"}
    )
    assert response.status_code == 400

    response = client.get(
        "/api/v1/orders-by-date", params={"start": "2024-01-16", "end": "2024-01-15"}
    )
    assert response.status_code == 400


def test_orders_by_date_aggregates(client, add_order):
    add_order(1, total_price="40.00")
    add_order(2, total_price="60.00", tags="vip")

    response = client.get(
        "/api/v1/orders-by-date", params={"start": "2024-01-15", "end": "2024-01-15"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 2
    assert data["revenue"] == pytest.approx(100.0)
    assert data["aggregatedData"]["tags"]["vip"]["count"] == 1


def test_ad_metrics_endpoint(client, add_order, add_ad_metric):
    add_order(1, total_price="90.00", utm={"utm_campaign": "c1"})
    add_ad_metric(EntityKind.CAMPAIGN, "c1", account_id="act1", spend=30)

    response = client.get(
        "/api/v1/ad-metrics", params={"startDate": "2024-01-15", "endDate": "2024-01-15"}
    )

    assert response.status_code == 200
    campaigns = response.json()["campaigns"]
    assert campaigns[0]["campaign_id"] == "c1"
    assert campaigns[0]["roas"] == pytest.approx(3.0)


def test_ad_metrics_requires_range(client):
    response = client.get("/api/v1/ad-metrics")

    assert response.status_code == 400


def test_summary_endpoints_empty_range(client):
    params = {"startDate": "2024-01-01", "endDate": "2024-01-07"}

    summary = client.get("/api/v1/summary", params=params)
    dashboard = client.get("/api/v1/dashboard-summary", params=params)

    assert summary.status_code == 200
    assert summary.json()["campaigns"] == []
    assert dashboard.status_code == 200
    assert dashboard.json()["days"] == 0


def test_list_jobs(client):
    response = client.get("/api/v1/jobs")

    assert response.status_code == 200
    assert [job["name"] for job in response.json()] == ["snapshots"]
    assert response.json()[0]["state"] == "idle"


def test_trigger_job_missing_api_key(client):
    """Test endpoint rejects request without API key (401)."""
    response = client.post("/api/v1/jobs/snapshots")

    assert response.status_code == 401
    assert "Invalid API key" in response.json()["detail"]


def test_trigger_job_invalid_api_key(client):
    response = client.post(
        "/api/v1/jobs/snapshots", headers={"X-ROAS-API-KEY": "wrong-key"}
    )

    assert response.status_code == 401


def test_trigger_job_key_comes_from_settings(db_path, tmp_path, monkeypatch):
    """An env var set after startup does not open the trigger API."""
    monkeypatch.setenv("ROAS_API_KEY", API_KEY)
    context = IngestionContext(Settings(db_path=db_path, raw_dir=tmp_path / "raw"))
    app = create_app(context=context, start_scheduler=False)

    with TestClient(app) as client:
        response = client.post("/api/v1/jobs/snapshots", headers={"X-ROAS-API-KEY": API_KEY})

    assert response.status_code == 503
    assert context.jobs["snapshots"].status.run_count == 0


def test_trigger_unknown_job(client):
    """Jobs without credentials are not registered."""
    response = client.post("/api/v1/jobs/orders", headers={"X-ROAS-API-KEY": API_KEY})

    assert response.status_code == 404


def test_trigger_job_queued(client, context):
    response = client.post(
        "/api/v1/jobs/snapshots",
        json={"date": "2024-01-15"},
        headers={"X-ROAS-API-KEY": API_KEY},
    )

    assert response.status_code == 202
    assert response.json() == {"name": "snapshots", "status": "queued"}
    assert context.jobs["snapshots"].status.run_count == 1


def test_trigger_job_already_running(client, context):
    context.jobs["snapshots"].status.state = JobState.FETCHING

    response = client.post("/api/v1/jobs/snapshots", headers={"X-ROAS-API-KEY": API_KEY})

    assert response.status_code == 202
    assert response.json()["status"] == "already_running"
    assert context.jobs["snapshots"].status.run_count == 0


def test_trigger_job_bad_date(client):
    response = client.post(
        "/api/v1/jobs/snapshots",
        json={"date": "yesterday"},
        headers={"X-ROAS-API-KEY": API_KEY},
    )

    assert response.status_code == 400


def test_websocket_sends_error_before_cache(client):
    with client.websocket_connect("/ws") as websocket:
        message = websocket.receive_json()

    assert message["event"] == "data-error"
    assert message["data"]["message"] == "Cached data is not available yet"


def test_websocket_sends_cached_payload(client, context):
    context.cache = {"dashboardData": {"count": 0}, "fbData": {"campaigns": []}}

    with client.websocket_connect("/ws") as websocket:
        message = websocket.receive_json()

    assert message["event"] == "data-update"
    assert message["data"]["dashboardData"]["count"] == 0


def test_todays_orders_uses_cache(client, context):
    context.cache = {"dashboardData": {"count": 7}, "fbData": {}}

    response = client.get("/api/v1/todays-orders")

    assert response.json() == {"count": 7}
