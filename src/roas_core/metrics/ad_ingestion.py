"""Ad metrics ingestion job (campaign -> ad -> adset -> account)."""
import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Optional

from ..meta.insights_client import MetaInsightsClient
from .entities import EntityKind
from .jobs import IngestionJob, JobState
from .raw_log import append_raw
from .schema import connect
from .store import SaveResult, save_ad_metrics


logger = logging.getLogger(__name__)


@dataclass
class AdIngestionResult:
    fetched: dict[str, int] = field(default_factory=dict)
    saved: list[SaveResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(result.success for result in self.saved)

    def to_dict(self) -> dict:
        return {
            "fetched": self.fetched,
            "saved": [result.to_dict() for result in self.saved],
            "success": self.success,
        }


class AdMetricsIngestionJob(IngestionJob):
    """Fetch today's (or an explicit range's) insights at every level and upsert.

    Adsets are restricted to campaigns returned in the same cycle. Each
    table is written independently, so one failing table still leaves the
    others saved and is reported per table.
    """

    name = "ads"

    def __init__(
        self,
        client: MetaInsightsClient,
        db_path: str | Path,
        raw_dir: Optional[str | Path] = None,
    ) -> None:
        super().__init__()
        self.client = client
        self.db_path = Path(db_path)
        self.raw_dir = raw_dir

    async def _fetch(
        self, since: Optional[date], until: Optional[date]
    ) -> dict[EntityKind, list[dict]]:
        campaigns = await self.client.fetch_level(EntityKind.CAMPAIGN, since, until)
        campaign_ids = {row.get("campaign_id") for row in campaigns if row.get("campaign_id")}

        ads = await self.client.fetch_level(EntityKind.AD, since, until)
        adsets = await self.client.fetch_adsets(campaign_ids, since, until)
        accounts = await self.client.fetch_level(EntityKind.ACCOUNT, since, until)

        return {
            EntityKind.CAMPAIGN: campaigns,
            EntityKind.AD: ads,
            EntityKind.ADSET: adsets,
            EntityKind.ACCOUNT: accounts,
        }

    async def run(
        self, since: Optional[date] = None, until: Optional[date] = None
    ) -> AdIngestionResult:
        fetched = await self._fetch(since, until)

        if self.raw_dir:
            for kind, rows in fetched.items():
                if rows:
                    await append_raw(self.raw_dir, "meta", kind.value, rows)

        self.transition(JobState.NORMALIZING)
        result = AdIngestionResult(
            fetched={kind.value: len(rows) for kind, rows in fetched.items()}
        )

        self.transition(JobState.UPSERTING)
        conn = connect(self.db_path)
        try:
            for kind, rows in fetched.items():
                result.saved.append(save_ad_metrics(conn, kind, rows))
        finally:
            conn.close()

        if not result.success:
            failed_tables = [r.table for r in result.saved if not r.success]
            logger.warning("Ad metrics saved with failures in %s", failed_tables)

        return result
