"""Process-wide ingestion context.

Owns the settings, the shared aiohttp session, the job instances, the
in-memory "today" cache and the push broadcaster. Constructed once at
startup, closed at shutdown, and handed to whatever drives the jobs
(scheduler, API, CLI).
"""
import asyncio
import logging
import sqlite3
from datetime import date, datetime, timezone
from typing import Any, Optional

import aiohttp

from .config import Settings
from .meta.insights_client import MetaInsightsClient
from .metrics.ad_ingestion import AdMetricsIngestionJob
from .metrics.catalog import CatalogRefreshJob, CostCatalogRefresher
from .metrics.dashboard import fetch_dashboard_data
from .metrics.engine import compute_metrics
from .metrics.jobs import IngestionJob
from .metrics.order_ingestion import LineItemBackfillJob, OrderIngestionJob
from .metrics.schema import connect, init_database
from .metrics.snapshots import SnapshotArchiver, SnapshotJob
from .push import ConnectionManager, PushEvent
from .shopify.orders_client import ShopifyOrdersClient


logger = logging.getLogger(__name__)


CACHE_NOT_READY = "Cached data is not available yet"


class UnknownJobError(KeyError):
    """Raised when a job name is not registered (or not configured)."""


class IngestionContext:
    """Shared state for one running engine."""

    def __init__(
        self,
        settings: Settings,
        broadcaster: Optional[ConnectionManager] = None,
    ) -> None:
        self.settings = settings
        self.db_path = settings.db_path
        self.tzinfo = settings.tzinfo
        self.broadcaster = broadcaster or ConnectionManager()

        self.session: Optional[aiohttp.ClientSession] = None
        self.jobs: dict[str, IngestionJob] = {}
        self.archiver = SnapshotArchiver(self.db_path, self.tzinfo, settings.snapshot_floor)

        self.cache: Optional[dict] = None
        self.cache_updated_at: Optional[datetime] = None

    async def start(self, session: Optional[aiohttp.ClientSession] = None) -> None:
        """Initialize the database, open the HTTP session and build jobs."""
        init_database(self.db_path)

        if session is None:
            timeout = aiohttp.ClientTimeout(total=300, connect=30)
            session = aiohttp.ClientSession(timeout=timeout)
        self.session = session

        self.jobs = self.build_jobs(session)
        logger.info("Ingestion context started (jobs: %s)", ", ".join(self.jobs))

    def build_jobs(self, session: aiohttp.ClientSession) -> dict[str, IngestionJob]:
        settings = self.settings
        jobs: list[IngestionJob] = []

        if settings.shopify_configured:
            shopify = ShopifyOrdersClient(
                shop_domain=settings.shopify_domain,
                admin_access_token=settings.shopify_token,
                api_version=settings.shopify_api_version,
                session=session,
            )
            jobs.append(
                OrderIngestionJob(
                    shopify,
                    self.db_path,
                    self.tzinfo,
                    raw_dir=settings.raw_dir,
                    initial_floor=settings.snapshot_floor,
                )
            )
            refresher = CostCatalogRefresher(shopify, self.db_path, settings.catalog_batch_size)
            jobs.append(LineItemBackfillJob(shopify, self.db_path, refresher=refresher))
            jobs.append(CatalogRefreshJob(refresher))
        else:
            logger.warning(
                "Shopify credentials not configured, skipping order and catalog jobs"
            )

        if settings.meta_configured:
            meta = MetaInsightsClient(
                access_token=settings.meta_access_token,
                accounts=settings.accounts,
                session=session,
                api_version=settings.meta_api_version,
            )
            jobs.append(AdMetricsIngestionJob(meta, self.db_path, raw_dir=settings.raw_dir))
        else:
            logger.warning("Meta credentials or ad accounts not configured, skipping ads job")

        jobs.append(SnapshotJob(self.archiver))

        return {job.name: job for job in jobs}

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None
        logger.info("Ingestion context closed")

    def today(self) -> date:
        return datetime.now(self.tzinfo).date()

    def connect(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def get_job(self, name: str) -> IngestionJob:
        try:
            return self.jobs[name]
        except KeyError:
            raise UnknownJobError(name) from None

    async def run_job(self, name: str, **kwargs: Any) -> Any:
        return await self.get_job(name).tick(**kwargs)

    def compute_today(self) -> dict:
        """Dashboard aggregate and metric engine output for the local today."""
        today = self.today()
        conn = self.connect()
        try:
            dashboard = fetch_dashboard_data(conn, today, today)
            metrics = compute_metrics(conn, today, today)
        finally:
            conn.close()
        return {"dashboardData": dashboard, "fbData": metrics.to_dict()}

    def current_message(self) -> tuple[PushEvent, dict]:
        if self.cache is None:
            return PushEvent.DATA_ERROR, {"message": CACHE_NOT_READY}
        return PushEvent.DATA_UPDATE, self.cache

    async def refresh_cache(self) -> Optional[dict]:
        """Recompute today's payload and push it to every connected client."""
        try:
            self.cache = await asyncio.to_thread(self.compute_today)
            self.cache_updated_at = datetime.now(timezone.utc)
        except sqlite3.Error as exc:
            logger.error("Cache refresh failed: %s", exc, exc_info=True)

        await self.broadcast()
        return self.cache

    async def broadcast(self) -> int:
        event, data = self.current_message()
        return await self.broadcaster.broadcast(event, data)
