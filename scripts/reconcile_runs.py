#!/usr/bin/env python3
"""
Resume fraud checks whose chain stopped making progress.

Runs one reconciler sweep against the configured database: every in-progress
verification that has not written progress for ``STALE_AFTER_MINUTES`` gets
its next step dispatched again (or is finalized if all documents are done).
Steps are processed by an in-process queue, so the script waits until they
have drained before exiting.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from fraudcheck.config import settings
from fraudcheck.database import create_tables
from fraudcheck.services.dispatch import ChainQueue, set_dispatcher
from fraudcheck.services.fraud_check import record_step_failure, run_step_job
from fraudcheck.services.reconciler import reconcile_once


async def run(dry_run: bool, stale_after: int | None) -> list[str]:
    if stale_after is not None:
        settings.stale_after_minutes = stale_after

    await create_tables()
    queue = ChainQueue(
        step_runner=run_step_job,
        workers=settings.chain_workers,
        retries=settings.chain_dispatch_retries,
        backoff_seconds=settings.chain_retry_backoff_seconds,
        delay_seconds=settings.step_delay_seconds,
        on_failure=record_step_failure,
    )
    set_dispatcher(queue)
    try:
        resumed = await reconcile_once(dry_run=dry_run)
        await queue.join()
    finally:
        await queue.stop()
        set_dispatcher(None)
    return resumed


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Resume stalled document fraud checks."
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only list stalled verifications, do not resume them.",
    )
    parser.add_argument(
        "--stale-after",
        type=int,
        default=None,
        metavar="MINUTES",
        help=f"Minutes without progress before a run counts as stalled (default: {settings.stale_after_minutes}).",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    resumed = asyncio.run(run(args.dry_run, args.stale_after))

    prefix = "[DRY-RUN] Would resume" if args.dry_run else "[OK] Resumed"
    for verification_id in resumed:
        print(f"{prefix}: {verification_id}")
    if not resumed:
        print("[INFO] No stalled verifications found.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
