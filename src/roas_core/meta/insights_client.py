"""Meta Marketing API insights client.

Fetches account, campaign, adset and ad level insights for a fixed list
of ad accounts. A 429 on any page is retried with exponential backoff
until it succeeds; any other failure ends pagination for that account
while keeping the rows it already returned.
"""
import asyncio
import json
import logging
from datetime import date
from typing import Iterable, Optional

import aiohttp

from ..config import redact_text
from ..metrics.entities import EntityKind
from .exceptions import AdSourceError, RateLimitError


logger = logging.getLogger(__name__)


_COMMON_FIELDS = [
    "impressions",
    "spend",
    "clicks",
    "unique_clicks",
    "reach",
    "cpc",
    "ctr",
    "cpm",
    "date_start",
    "date_stop",
]

LEVEL_FIELDS: dict[EntityKind, list[str]] = {
    EntityKind.ACCOUNT: ["account_id", "account_name", *_COMMON_FIELDS],
    EntityKind.CAMPAIGN: ["campaign_id", "campaign_name", *_COMMON_FIELDS],
    EntityKind.ADSET: [
        "campaign_id",
        "campaign_name",
        "adset_id",
        "adset_name",
        *_COMMON_FIELDS,
    ],
    EntityKind.AD: [
        "campaign_id",
        "campaign_name",
        "adset_id",
        "adset_name",
        "ad_id",
        "ad_name",
        *_COMMON_FIELDS,
    ],
}

DATA_SETS: dict[EntityKind, str] = {
    EntityKind.ACCOUNT: "ad_account",
    EntityKind.CAMPAIGN: "campaign",
    EntityKind.ADSET: "adset",
    EntityKind.AD: "ads",
}


class MetaInsightsClient:
    """Async client for Meta insights over a fixed ad account list."""

    BACKOFF_INITIAL = 2.0  # seconds
    BACKOFF_MULTIPLIER = 2.0
    BACKOFF_MAX = 32.0  # seconds
    PAGE_LIMIT = 100

    def __init__(
        self,
        access_token: str,
        accounts: dict[str, str],
        session: aiohttp.ClientSession,
        api_version: str = "v18.0",
    ) -> None:
        """Initialize Meta insights client.

        Args:
            access_token: Meta Marketing API access token
            accounts: Ad account id (without 'act_' prefix) -> display name
            session: aiohttp session for requests
            api_version: Graph API version, e.g. 'v18.0'
        """
        self._access_token = access_token
        self.accounts = {
            account_id.removeprefix("act_"): name for account_id, name in accounts.items()
        }
        self.session = session
        self.api_version = api_version

    def _redact(self, text: str) -> str:
        return redact_text(text, [self._access_token])

    def _insights_url(self, account_id: str) -> str:
        return f"https://graph.facebook.com/{self.api_version}/act_{account_id}/insights"

    def _params(
        self,
        kind: EntityKind,
        since: Optional[date],
        until: Optional[date],
    ) -> dict:
        params = {
            "access_token": self._access_token,
            "level": kind.value,
            "fields": ",".join(LEVEL_FIELDS[kind]),
            "limit": str(self.PAGE_LIMIT),
        }
        if since is not None:
            until = until or since
            params["time_increment"] = "1"
            params["time_range"] = json.dumps(
                {"since": since.isoformat(), "until": until.isoformat()}
            )
        else:
            params["date_preset"] = "today"
        return params

    async def _get_page(self, url: str, params: Optional[dict]) -> dict:
        """GET one insights page.

        Raises:
            RateLimitError: On HTTP 429
            AdSourceError: On any other non-200 status or transport error
        """
        try:
            async with self.session.get(url, params=params) as response:
                if response.status == 429:
                    raise RateLimitError()

                if response.status != 200:
                    error_body = await response.text()
                    logger.error(
                        "Meta API error (%s): %s",
                        response.status,
                        self._redact(error_body[:500]),
                    )
                    raise AdSourceError(
                        f"Meta API request failed: {response.status}",
                        status=response.status,
                    )

                return await response.json()

        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise AdSourceError(f"Meta network error: {exc}") from exc

    def _enrich(self, row: dict, kind: EntityKind, account_id: str) -> dict:
        enriched = dict(row)
        enriched["account_id"] = account_id
        enriched["account_name"] = self.accounts.get(account_id)
        enriched["data_set"] = DATA_SETS[kind]
        return enriched

    async def fetch_account(
        self,
        account_id: str,
        kind: EntityKind,
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> list[dict]:
        """Fetch every page of one account's insights at this level.

        Returns rows fetched before a non-429 error instead of raising.
        """
        url: Optional[str] = self._insights_url(account_id)
        params: Optional[dict] = self._params(kind, since, until)
        delay = self.BACKOFF_INITIAL
        rows: list[dict] = []

        while url:
            try:
                result = await self._get_page(url, params)
            except RateLimitError:
                logger.warning(
                    "Meta rate limit for act_%s (%s), backing off %.0fs",
                    account_id,
                    kind.value,
                    delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * self.BACKOFF_MULTIPLIER, self.BACKOFF_MAX)
                continue
            except AdSourceError as exc:
                logger.error(
                    "Stopping %s pagination for act_%s after %s rows: %s",
                    kind.value,
                    account_id,
                    len(rows),
                    exc,
                )
                break

            delay = self.BACKOFF_INITIAL
            rows.extend(
                self._enrich(row, kind, account_id) for row in result.get("data", [])
            )

            # The next URL already carries every query parameter.
            url = (result.get("paging") or {}).get("next")
            params = None

        return rows

    async def fetch_level(
        self,
        level: EntityKind | str,
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> list[dict]:
        """Fetch insights for all accounts at one level.

        Args:
            level: 'account', 'campaign', 'adset' or 'ad'
            since: First day of an explicit range (defaults to date_preset=today)
            until: Last day of the range (defaults to since)

        Returns:
            Enriched insight rows across accounts
        """
        kind = EntityKind(level)
        all_rows: list[dict] = []

        for account_id in self.accounts:
            account_rows = await self.fetch_account(account_id, kind, since, until)
            all_rows.extend(account_rows)

        logger.info(
            "Fetched %s %s-level insights across %s accounts",
            len(all_rows),
            kind.value,
            len(self.accounts),
        )
        return all_rows

    async def fetch_adsets(
        self,
        campaign_ids: Iterable[str],
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> list[dict]:
        """Fetch adset insights, keeping only adsets of the given campaigns."""
        wanted = {str(campaign_id) for campaign_id in campaign_ids}
        rows = await self.fetch_level(EntityKind.ADSET, since, until)
        kept = [row for row in rows if str(row.get("campaign_id")) in wanted]

        if len(kept) != len(rows):
            logger.debug(
                "Dropped %s adsets outside fetched campaigns", len(rows) - len(kept)
            )
        return kept
