"""Periodic recovery of fraud check chains that stopped making progress."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List

from fraudcheck.config import settings
from fraudcheck.database import async_session
from fraudcheck.services.fraud_check import build_chain

logger = logging.getLogger(__name__)

reconciler_state = {
    "running": False,
    "last_run": None,
    "last_resumed": [],
    "task": None,  # asyncio.Task
}


async def reconcile_once(session_factory=None, dry_run: bool = False) -> List[str]:
    """One sweep over stalled runs; returns the verification ids it resumed."""
    async with (session_factory or async_session)() as db:
        chain = await build_chain(db)
        return await chain.resume_stalled(
            stale_after=timedelta(minutes=settings.stale_after_minutes),
            max_attempts=settings.max_resume_attempts,
            dry_run=dry_run,
        )


async def reconcile_loop(interval_minutes: int) -> None:
    """Continuous background sweep, started from the app lifespan."""
    logger.info(f"[Reconciler] Started, sweeping every {interval_minutes} min")
    reconciler_state["running"] = True
    try:
        while True:
            try:
                resumed = await reconcile_once()
                reconciler_state["last_resumed"] = resumed
                if resumed:
                    logger.info(f"[Reconciler] Resumed {len(resumed)} stalled verifications")
            except Exception as e:
                logger.error(f"[Reconciler] Sweep failed: {e}")
            reconciler_state["last_run"] = datetime.now().isoformat()
            await asyncio.sleep(interval_minutes * 60)
    finally:
        reconciler_state["running"] = False
        logger.info("[Reconciler] Stopped")
