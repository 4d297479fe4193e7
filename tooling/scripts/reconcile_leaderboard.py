#!/usr/bin/env python3
"""Rebuild cached waitlist scores and ranks from the point ledger.

Intended usage: run ad hoc after an incident, or schedule via cron when the
worker's built-in scheduler is disabled.

Example:
    python tooling/scripts/reconcile_leaderboard.py --waitlist-id <uuid>

Use `--dry-run` to report score drift without writing any repairs.
"""

# meta: script: reconcile-leaderboard

from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import UUID

from loguru import logger

from waitlist_referrals.db.session import async_session
from waitlist_referrals.jobs.leaderboard import run_leaderboard_reconciliation


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile waitlist leaderboard scores and ranks")
    parser.add_argument(
        "--waitlist-id",
        type=UUID,
        default=None,
        help="Limit the run to a single waitlist (defaults to every waitlist with subscribers).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report drift and roll back instead of repairing.",
    )
    return parser.parse_args()


async def _run(waitlist_id: UUID | None, dry_run: bool) -> dict:
    return await run_leaderboard_reconciliation(
        session_factory=async_session,
        waitlist_id=waitlist_id,
        repair=not dry_run,
    )


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.waitlist_id, args.dry_run))
    logger.success("Leaderboard reconciliation completed", dry_run=args.dry_run, **summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
