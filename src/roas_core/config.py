"""Runtime settings read from environment variables."""
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo


logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid %s '%s', using %s", name, value, default)
        return default


def redact_text(text: str, secrets: list[Optional[str]]) -> str:
    if not text:
        return text
    redacted = text
    for secret in secrets:
        if secret:
            redacted = redacted.replace(secret, "[REDACTED]")
    return redacted


def resolve_timezone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except Exception:
        logger.warning("Invalid METRICS_TIMEZONE '%s', using UTC", tz_name)
        return ZoneInfo("UTC")


def load_accounts(accounts_path: Optional[str]) -> dict[str, str]:
    """Load the static ad account id -> display name mapping.

    The file is JSON shaped as {"accounts": {"<id>": "<name>"}}. A missing
    path yields an empty mapping so ad ingestion is skipped, not crashed.
    """
    if not accounts_path:
        return {}

    accounts_file = Path(accounts_path)
    if not accounts_file.exists():
        logger.warning("Ad accounts file not found: %s", accounts_path)
        return {}

    with open(accounts_file, encoding="utf-8") as handle:
        data = json.load(handle)

    accounts = data.get("accounts")
    if not isinstance(accounts, dict):
        raise ValueError("accounts must be an object in ad accounts file")

    return {str(account_id): str(name) for account_id, name in accounts.items()}


@dataclass
class Settings:
    """Engine configuration."""

    db_path: Path = Path("data/metrics.db")
    raw_dir: Path = Path("data/metrics/raw")
    timezone: str = "America/Los_Angeles"

    shopify_domain: Optional[str] = None
    shopify_token: Optional[str] = None
    shopify_api_version: str = "2023-10"

    meta_access_token: Optional[str] = None
    meta_api_version: str = "v18.0"
    accounts: dict[str, str] = field(default_factory=dict)

    snapshot_floor: date = date(2023, 12, 1)
    catalog_batch_size: int = 50
    order_poll_seconds: int = 60
    ad_poll_seconds: int = 60
    cache_refresh_seconds: int = 60
    catalog_refresh_hours: int = 12
    scheduler_enabled: bool = True
    api_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        floor_raw = os.getenv("SNAPSHOT_FLOOR_DATE", "2023-12-01")
        try:
            floor = date.fromisoformat(floor_raw)
        except ValueError:
            logger.warning("Invalid SNAPSHOT_FLOOR_DATE '%s', using 2023-12-01", floor_raw)
            floor = date(2023, 12, 1)

        return cls(
            db_path=Path(os.getenv("METRICS_DB_PATH", "data/metrics.db")),
            raw_dir=Path(os.getenv("METRICS_RAW_DIR", "data/metrics/raw")),
            timezone=os.getenv("METRICS_TIMEZONE", "America/Los_Angeles"),
            shopify_domain=os.getenv("SHOPIFY_STORE_DOMAIN"),
            shopify_token=os.getenv("SHOPIFY_ADMIN_ACCESS_TOKEN"),
            shopify_api_version=os.getenv("SHOPIFY_API_VERSION", "2023-10"),
            meta_access_token=os.getenv("META_ACCESS_TOKEN"),
            meta_api_version=os.getenv("META_API_VERSION", "v18.0"),
            accounts=load_accounts(os.getenv("AD_ACCOUNTS_PATH")),
            snapshot_floor=floor,
            catalog_batch_size=_env_int("CATALOG_BATCH_SIZE", 50),
            order_poll_seconds=_env_int("ORDER_POLL_SECONDS", 60),
            ad_poll_seconds=_env_int("AD_POLL_SECONDS", 60),
            cache_refresh_seconds=_env_int("CACHE_REFRESH_SECONDS", 60),
            catalog_refresh_hours=_env_int("CATALOG_REFRESH_HOURS", 12),
            scheduler_enabled=_env_bool("SCHEDULER_ENABLED", True),
            api_key=os.getenv("ROAS_API_KEY"),
        )

    @property
    def tzinfo(self) -> ZoneInfo:
        return resolve_timezone(self.timezone)

    @property
    def shopify_configured(self) -> bool:
        return bool(self.shopify_domain and self.shopify_token)

    @property
    def meta_configured(self) -> bool:
        return bool(self.meta_access_token and self.accounts)
