"""Durable named ingestion cursors.

A cursor is a monotonic integer watermark (largest order id ingested,
last catalog-scanned order id). Regressing writes are ignored by the
store itself so a stale job can never rewind it.
"""
import logging
import sqlite3
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)


ORDERS_CURSOR = "orders"
CATALOG_CURSOR = "cost_catalog"


class CursorStore:
    """Reads and advances one named cursor row in ingestion_cursors."""

    def __init__(self, db_path: str | Path, name: str) -> None:
        self.db_path = Path(db_path)
        self.name = name

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _read(self) -> Optional[int]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT value FROM ingestion_cursors WHERE name=?",
                (self.name,),
            ).fetchone()
        finally:
            conn.close()
        return int(row[0]) if row is not None else None

    def get(self) -> int:
        """Return the last persisted value, or 0 if never set."""
        value = self._read()
        return value if value is not None else 0

    def exists(self) -> bool:
        """True once the cursor row has been written, even with value 0."""
        return self._read() is not None

    def set(self, value: int) -> int:
        """Persist value unless it would move the cursor backward.

        Returns:
            The value stored after the write
        """
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO ingestion_cursors (name, value)
                VALUES (?, ?)
                ON CONFLICT(name)
                DO UPDATE SET
                    value=MAX(ingestion_cursors.value, excluded.value),
                    updated_at=CURRENT_TIMESTAMP
                """,
                (self.name, int(value)),
            )
            conn.commit()
            stored = conn.execute(
                "SELECT value FROM ingestion_cursors WHERE name=?",
                (self.name,),
            ).fetchone()[0]
        finally:
            conn.close()

        if stored != value:
            logger.warning(
                "Cursor %s not regressed: requested=%s, kept=%s",
                self.name,
                value,
                stored,
            )
        else:
            logger.debug("Cursor %s advanced to %s", self.name, stored)

        return int(stored)
