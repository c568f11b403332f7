#!/usr/bin/env python3
"""CLI entry point for one-off ingestion runs.

Usage:
    # Pull new orders since the cursor
    python scripts/run_ingestion.py orders

    # Today's ad insights, or an explicit range
    python scripts/run_ingestion.py ads
    python scripts/run_ingestion.py ads --start 2024-01-01 --end 2024-01-07

    # Cost catalog walk / line item backfill
    python scripts/run_ingestion.py catalog
    python scripts/run_ingestion.py line-items

    # Archive yesterday, a specific day, or backfill to the floor date
    python scripts/run_ingestion.py snapshots
    python scripts/run_ingestion.py snapshots --date 2024-01-15 --force
    python scripts/run_ingestion.py snapshots --backfill
"""
import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from roas_core.config import Settings
from roas_core.context import IngestionContext, UnknownJobError


JOB_NAMES = ("orders", "ads", "catalog", "line-items", "snapshots")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _parse_date(value: str):
    return datetime.strptime(value, "%Y-%m-%d").date()


async def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="roas-core ingestion jobs")
    parser.add_argument("job", choices=JOB_NAMES, help="Job to run once")
    parser.add_argument(
        "--date",
        type=str,
        help="Snapshot day, or last day of a backfill (YYYY-MM-DD)",
    )
    parser.add_argument("--start", type=str, help="Ads range start (YYYY-MM-DD)")
    parser.add_argument("--end", type=str, help="Ads range end (YYYY-MM-DD)")
    parser.add_argument(
        "--backfill",
        action="store_true",
        help="Snapshots: walk back day by day to SNAPSHOT_FLOOR_DATE",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Snapshots: rebuild a day that was already archived",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger("run_ingestion")

    kwargs: dict = {}
    if args.job == "snapshots":
        kwargs = {"backfill": args.backfill, "force": args.force}
        if args.date:
            kwargs["day"] = _parse_date(args.date)
    elif args.job == "ads" and args.start:
        kwargs = {
            "since": _parse_date(args.start),
            "until": _parse_date(args.end or args.start),
        }

    context = IngestionContext(Settings.from_env())
    await context.start()
    try:
        try:
            job = context.get_job(args.job)
        except UnknownJobError:
            logger.error("Job %s is not configured (check credentials)", args.job)
            return 2

        result = await job.tick(**kwargs)
        if job.status.last_error:
            logger.error("Job %s failed: %s", args.job, job.status.last_error)
            return 1

        if hasattr(result, "to_dict"):
            result = result.to_dict()
        print(json.dumps(result, indent=2, default=str))
        return 0

    finally:
        await context.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
