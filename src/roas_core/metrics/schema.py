"""SQLite schema definitions for the ingestion engine.

Database: data/metrics.db (WAL mode)
Tables: orders, cost_catalog, ad_metrics_{ad,adset,campaign,account},
ingestion_cursors, summary_entities, summary_dashboard, snapshot_state
"""
import logging
import sqlite3
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1


def connect(db_path: str | Path) -> sqlite3.Connection:
    """Open a connection with the pragmas every job expects."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_database(db_path: str | Path) -> None:
    """Initialize metrics database with schema.

    Creates tables if they don't exist.
    Enables WAL mode for concurrent reads.

    Args:
        db_path: Path to SQLite database file
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)

    try:
        conn.execute("PRAGMA journal_mode=WAL")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        cursor = conn.execute("SELECT MAX(version) FROM schema_version")
        current_version = cursor.fetchone()[0] or 0

        if current_version < SCHEMA_VERSION:
            _apply_schema(conn)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            conn.commit()
            logger.info("Database schema initialized (version %s)", SCHEMA_VERSION)
        else:
            logger.debug("Database schema up to date (version %s)", current_version)

    finally:
        conn.close()


def _apply_schema(conn: sqlite3.Connection) -> None:
    """Apply database schema.

    Args:
        conn: SQLite connection (in transaction)
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id INTEGER NOT NULL UNIQUE,
            order_number INTEGER,
            created_at TEXT NOT NULL,
            created_date TEXT NOT NULL,
            total_price REAL NOT NULL DEFAULT 0,
            current_total_price REAL NOT NULL DEFAULT 0,
            current_total_tax REAL,
            total_tax REAL,
            currency TEXT,
            tags TEXT,
            note TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            order_status TEXT,
            refunds TEXT,
            note_attributes TEXT,
            line_items TEXT,
            utm_campaign TEXT,
            utm_content TEXT,
            utm_term TEXT,
            utm_source TEXT,
            total_cost REAL NOT NULL DEFAULT 0,
            collected_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_orders_created ON orders(created_date)"
    )

    for column in ("utm_campaign", "utm_content", "utm_term"):
        conn.execute(
            f"""
            CREATE INDEX IF NOT EXISTS idx_orders_{column}
            ON orders({column}, created_date)
            WHERE {column} IS NOT NULL
            """
        )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cost_catalog (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            inventory_item_id INTEGER NOT NULL UNIQUE,
            variant_id INTEGER,
            product_id INTEGER,
            title TEXT,
            sku TEXT,
            cost REAL,
            created_at TEXT,
            updated_at TEXT,
            requires_shipping INTEGER,
            country_code_of_origin TEXT,
            province_code_of_origin TEXT,
            harmonized_system_code TEXT,
            tracked INTEGER,
            admin_graphql_api_id TEXT,
            collected_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_catalog_variant ON cost_catalog(variant_id)"
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ad_metrics_ad (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ad_id TEXT NOT NULL,
            ad_name TEXT,
            adset_id TEXT,
            adset_name TEXT,
            campaign_id TEXT,
            campaign_name TEXT,
            account_id TEXT,
            account_name TEXT,
            date_start TEXT NOT NULL,
            date_stop TEXT,
            impressions INTEGER NOT NULL DEFAULT 0,
            spend REAL NOT NULL DEFAULT 0,
            clicks INTEGER NOT NULL DEFAULT 0,
            unique_clicks INTEGER NOT NULL DEFAULT 0,
            reach INTEGER NOT NULL DEFAULT 0,
            cpc REAL,
            ctr REAL,
            cpm REAL,
            data_set TEXT,
            fetched_at TEXT,
            UNIQUE(ad_id, date_start)
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ad_metrics_adset (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            adset_id TEXT NOT NULL,
            adset_name TEXT,
            campaign_id TEXT,
            campaign_name TEXT,
            account_id TEXT,
            account_name TEXT,
            date_start TEXT NOT NULL,
            date_stop TEXT,
            impressions INTEGER NOT NULL DEFAULT 0,
            spend REAL NOT NULL DEFAULT 0,
            clicks INTEGER NOT NULL DEFAULT 0,
            unique_clicks INTEGER NOT NULL DEFAULT 0,
            reach INTEGER NOT NULL DEFAULT 0,
            cpc REAL,
            ctr REAL,
            cpm REAL,
            data_set TEXT,
            fetched_at TEXT,
            UNIQUE(adset_id, date_start)
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ad_metrics_campaign (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            campaign_id TEXT NOT NULL,
            campaign_name TEXT,
            account_id TEXT,
            account_name TEXT,
            date_start TEXT NOT NULL,
            date_stop TEXT,
            impressions INTEGER NOT NULL DEFAULT 0,
            spend REAL NOT NULL DEFAULT 0,
            clicks INTEGER NOT NULL DEFAULT 0,
            unique_clicks INTEGER NOT NULL DEFAULT 0,
            reach INTEGER NOT NULL DEFAULT 0,
            cpc REAL,
            ctr REAL,
            cpm REAL,
            data_set TEXT,
            fetched_at TEXT,
            UNIQUE(campaign_id, date_start)
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ad_metrics_account (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id TEXT NOT NULL,
            account_name TEXT,
            date_start TEXT NOT NULL,
            date_stop TEXT,
            impressions INTEGER NOT NULL DEFAULT 0,
            spend REAL NOT NULL DEFAULT 0,
            clicks INTEGER NOT NULL DEFAULT 0,
            unique_clicks INTEGER NOT NULL DEFAULT 0,
            reach INTEGER NOT NULL DEFAULT 0,
            cpc REAL,
            ctr REAL,
            cpm REAL,
            data_set TEXT,
            fetched_at TEXT,
            UNIQUE(account_id, date_start)
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ingestion_cursors (
            name TEXT PRIMARY KEY,
            value INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS summary_entities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            snapshot_date TEXT NOT NULL,
            entity_kind TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            entity_name TEXT,
            ad_id TEXT,
            adset_id TEXT,
            campaign_id TEXT,
            account_id TEXT,
            total_impressions INTEGER NOT NULL DEFAULT 0,
            total_spend REAL NOT NULL DEFAULT 0,
            unique_clicks INTEGER NOT NULL DEFAULT 0,
            average_cpm REAL,
            average_ctr REAL,
            total_revenue REAL NOT NULL DEFAULT 0,
            total_cost REAL NOT NULL DEFAULT 0,
            order_count INTEGER NOT NULL DEFAULT 0,
            roas REAL,
            profit REAL,
            profit_margin REAL,
            cpa REAL,
            aov REAL,
            cvr REAL,
            epc REAL,
            cpc REAL,
            ctr REAL,
            cpm REAL,
            archived_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(snapshot_date, entity_kind, entity_id)
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_summary_kind_date
        ON summary_entities(entity_kind, snapshot_date)
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS summary_dashboard (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            snapshot_date TEXT NOT NULL UNIQUE,
            order_count INTEGER NOT NULL DEFAULT 0,
            revenue REAL NOT NULL DEFAULT 0,
            largest_order REAL NOT NULL DEFAULT 0,
            aggregated_json TEXT NOT NULL,
            total_profit REAL NOT NULL DEFAULT 0,
            archived_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS snapshot_state (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            snapshot_date TEXT NOT NULL UNIQUE,
            status TEXT NOT NULL,
            details TEXT,
            recorded_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )


def record_snapshot_success(
    conn: sqlite3.Connection,
    snapshot_date: str,
    details: Optional[str] = None,
) -> None:
    """Record a successfully archived day.

    Args:
        conn: SQLite connection
        snapshot_date: YYYY-MM-DD format
        details: Optional summary message
    """
    conn.execute(
        """
        INSERT INTO snapshot_state (snapshot_date, status, details)
        VALUES (?, 'success', ?)
        ON CONFLICT(snapshot_date)
        DO UPDATE SET
            status='success',
            details=excluded.details,
            recorded_at=CURRENT_TIMESTAMP
        """,
        (snapshot_date, details),
    )
    conn.commit()


def record_snapshot_failure(
    conn: sqlite3.Connection,
    snapshot_date: str,
    error: str,
) -> None:
    """Record a failed archive attempt so the next backfill retries it.

    Args:
        conn: SQLite connection
        snapshot_date: YYYY-MM-DD format
        error: Error message
    """
    conn.execute(
        """
        INSERT INTO snapshot_state (snapshot_date, status, details)
        VALUES (?, 'failed', ?)
        ON CONFLICT(snapshot_date)
        DO UPDATE SET
            status='failed',
            details=excluded.details,
            recorded_at=CURRENT_TIMESTAMP
        """,
        (snapshot_date, error),
    )
    conn.commit()


def should_snapshot(conn: sqlite3.Connection, snapshot_date: str) -> bool:
    """Check if the archiver should (re)build this day.

    Args:
        conn: SQLite connection
        snapshot_date: YYYY-MM-DD format

    Returns:
        True if no successful snapshot exists for this date
    """
    cursor = conn.execute(
        "SELECT status FROM snapshot_state WHERE snapshot_date=?",
        (snapshot_date,),
    )
    row = cursor.fetchone()

    if row is None:
        return True

    if row[0] == "failed":
        logger.warning("Retrying failed snapshot: %s", snapshot_date)
        return True

    logger.debug("Skipping already archived: %s", snapshot_date)
    return False


def pending_snapshot_dates(conn: sqlite3.Connection) -> list[str]:
    """Return days whose last archive attempt failed."""
    cursor = conn.execute(
        """
        SELECT snapshot_date FROM snapshot_state
        WHERE status='failed'
        ORDER BY snapshot_date DESC
        """
    )
    return [row[0] for row in cursor.fetchall()]
