"""Unit tests for IngestionContext."""
import threading

import pytest
from unittest.mock import AsyncMock, MagicMock

from roas_core.config import Settings
from roas_core.context import CACHE_NOT_READY, IngestionContext, UnknownJobError
from roas_core.push import PushEvent


@pytest.fixture
def settings(db_path, tmp_path):
    return Settings(db_path=db_path, raw_dir=tmp_path / "raw")


def test_build_jobs_without_credentials(settings):
    jobs = IngestionContext(settings).build_jobs(MagicMock())

    assert list(jobs) == ["snapshots"]


def test_build_jobs_with_credentials(settings):
    settings.shopify_domain = "test-shop.myshopify.com"
    settings.shopify_token = "shpat_test"
    settings.meta_access_token = "meta_test"
    settings.accounts = {"111": "Main"}

    jobs = IngestionContext(settings).build_jobs(MagicMock())

    assert set(jobs) == {"orders", "line-items", "catalog", "ads", "snapshots"}


def test_get_job_unknown(settings):
    with pytest.raises(UnknownJobError):
        IngestionContext(settings).get_job("orders")


def test_current_message_before_cache(settings):
    event, data = IngestionContext(settings).current_message()

    assert event is PushEvent.DATA_ERROR
    assert data == {"message": CACHE_NOT_READY}


@pytest.mark.asyncio
async def test_refresh_cache_broadcasts(settings, add_order):
    add_order(1)
    broadcaster = MagicMock()
    broadcaster.broadcast = AsyncMock(return_value=1)
    context = IngestionContext(settings, broadcaster=broadcaster)

    cache = await context.refresh_cache()

    assert set(cache) == {"dashboardData", "fbData"}
    assert context.cache_updated_at is not None
    event, data = broadcaster.broadcast.await_args.args
    assert event is PushEvent.DATA_UPDATE
    assert data is cache


@pytest.mark.asyncio
async def test_refresh_cache_computes_off_the_event_loop(settings):
    loop_thread = threading.get_ident()
    compute_threads = []
    broadcaster = MagicMock()
    broadcaster.broadcast = AsyncMock(return_value=0)
    context = IngestionContext(settings, broadcaster=broadcaster)

    def compute_today():
        compute_threads.append(threading.get_ident())
        return {"dashboardData": {}, "fbData": {}}

    context.compute_today = compute_today
    await context.refresh_cache()

    assert compute_threads and compute_threads[0] != loop_thread
    assert context.cache == {"dashboardData": {}, "fbData": {}}


def test_backfill_job_shares_catalog_refresher(settings):
    settings.shopify_domain = "test-shop.myshopify.com"
    settings.shopify_token = "shpat_test"

    jobs = IngestionContext(settings).build_jobs(MagicMock())

    assert jobs["line-items"].refresher is jobs["catalog"].refresher
