"""Append-only JSONL audit log of raw upstream payloads."""
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import aiofiles
import aiofiles.os


logger = logging.getLogger(__name__)


async def append_raw(
    raw_dir: str | Path,
    source: str,
    kind: str,
    items: list[dict],
) -> Path:
    """Append one envelope per item to raw_{source}_{kind}_{YYYY-MM-DD}.jsonl.

    Args:
        raw_dir: Directory for raw JSONL audit logs
        source: 'shopify' or 'meta'
        kind: Payload kind, e.g. 'orders' or an insights level
        items: Response items as returned upstream

    Returns:
        Path of the file written
    """
    raw_dir = Path(raw_dir)
    await aiofiles.os.makedirs(raw_dir, exist_ok=True)

    fetched_at = datetime.now(timezone.utc)
    jsonl_path = raw_dir / f"raw_{source}_{kind}_{fetched_at.date().isoformat()}.jsonl"

    async with aiofiles.open(jsonl_path, mode="a", encoding="utf-8") as handle:
        for item in items:
            envelope = {
                "source": source,
                "kind": kind,
                "fetched_at": fetched_at.isoformat(),
                "response_item": item,
            }
            await handle.write(json.dumps(envelope, separators=(",", ":")) + "\n")

    logger.debug("Appended %s raw %s %s items to %s", len(items), source, kind, jsonl_path)
    return jsonl_path
