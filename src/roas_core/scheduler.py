"""Timer wiring for the ingestion jobs, on APScheduler.

- Order ingestion (every ORDER_POLL_SECONDS)
- Ad metrics ingestion (every AD_POLL_SECONDS)
- Today cache refresh + push (every CACHE_REFRESH_SECONDS)
- Cost catalog refresh, then line item backfill (every CATALOG_REFRESH_HOURS)
- Snapshot of yesterday (daily at 00:10 local time)

APScheduler's max_instances=1 drops overlapping runs of the same timer;
each job's own state gate does the same for manual triggers.
"""
import logging
from typing import Any, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .context import IngestionContext


logger = logging.getLogger(__name__)


SNAPSHOT_HOUR = 0
SNAPSHOT_MINUTE = 10


class IngestionScheduler:
    """Registers the context's jobs on an AsyncIOScheduler."""

    def __init__(self, context: IngestionContext) -> None:
        self.context = context
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _add_job(self, job_id: str, func: Callable, trigger: Any) -> None:
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            name=job_id,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.debug("Registered job %s (%s)", job_id, trigger)

    def _tick(self, name: str) -> Callable:
        async def run() -> None:
            await self.context.run_job(name)

        return run

    async def _catalog_then_line_items(self) -> None:
        await self.context.run_job("catalog")
        if "line-items" in self.context.jobs:
            await self.context.run_job("line-items")

    def register_jobs(self) -> None:
        settings = self.context.settings
        tz = self.context.tzinfo
        jobs = self.context.jobs

        if "orders" in jobs:
            self._add_job(
                "orders",
                self._tick("orders"),
                IntervalTrigger(seconds=settings.order_poll_seconds, timezone=tz),
            )

        if "ads" in jobs:
            self._add_job(
                "ads",
                self._tick("ads"),
                IntervalTrigger(seconds=settings.ad_poll_seconds, timezone=tz),
            )

        if "catalog" in jobs:
            self._add_job(
                "catalog",
                self._catalog_then_line_items,
                IntervalTrigger(hours=settings.catalog_refresh_hours, timezone=tz),
            )

        self._add_job(
            "cache",
            self.context.refresh_cache,
            IntervalTrigger(seconds=settings.cache_refresh_seconds, timezone=tz),
        )

        self._add_job(
            "snapshots",
            self._tick("snapshots"),
            CronTrigger(hour=SNAPSHOT_HOUR, minute=SNAPSHOT_MINUTE, timezone=tz),
        )

    def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already started")
            return

        self._scheduler = AsyncIOScheduler(timezone=self.context.tzinfo)
        self.register_jobs()
        self._scheduler.start()
        logger.info("Ingestion scheduler started")

    def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Ingestion scheduler stopped")
        self._scheduler = None

    def describe(self) -> list[dict]:
        """Registered timers with their next fire time."""
        if self._scheduler is None:
            return []
        return [
            {
                "id": job.id,
                "trigger": str(job.trigger),
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            }
            for job in self._scheduler.get_jobs()
        ]
