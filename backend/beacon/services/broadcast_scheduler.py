"""Periodic scheduler and cleanup loops.

A tick claims each due broadcast and runs in-app and push for it; an email
phase goes to the engine's job runner, so one large mailing never holds back
the other broadcasts due in the same tick.
"""
from datetime import datetime
import asyncio
import logging

from beacon.core.clock import utcnow
from beacon.core.config import settings
from beacon.models.notification import BroadcastStatus
from beacon.services.broadcast_engine import BroadcastEngine
from beacon.services.jobs import run_sync

logger = logging.getLogger(__name__)

STARTUP_DELAY_SECONDS = 3


async def run_due_broadcasts(engine: BroadcastEngine, now: datetime | None = None, limit: int | None = None) -> dict[int, str]:
    """One scheduler tick. Returns {notification_id: status after the tick} for broadcasts it dispatched.

    SENDING means the email phase is still running in the job runner.
    """
    now = now or utcnow()
    due = await run_sync(engine.due, now, limit or settings.scheduler_batch_size)
    fired: dict[int, str] = {}
    for nid in due:
        if not await run_sync(engine.claim, nid):
            # Cancelled, or claimed by another worker since the scan
            logger.debug("Notification %s already claimed, skipping", nid)
            continue
        logger.info("Claimed scheduled notification %s", nid)
        try:
            fired[nid] = await engine.deliver_claimed(nid)
        except Exception as e:
            logger.exception("Scheduled notification %s failed", nid)
            await run_sync(engine.fail_broadcast, nid, e)
            fired[nid] = BroadcastStatus.FAILED
    if due:
        logger.info("Scheduler tick: due=%d dispatched=%d", len(due), len(fired))
    return fired


def cleanup_expired(engine: BroadcastEngine, now: datetime | None = None) -> tuple[int, int]:
    tracking, notifications = engine.purge(now or utcnow())
    if tracking or notifications:
        logger.info("Cleanup removed %d tracking row(s) and %d expired notification(s)", tracking, notifications)
    return tracking, notifications


async def broadcast_loop(engine: BroadcastEngine):
    await asyncio.sleep(STARTUP_DELAY_SECONDS)
    while True:
        try:
            await run_due_broadcasts(engine)
        except Exception:
            logger.exception("Scheduler tick failed")
        await asyncio.sleep(settings.scheduler_interval_seconds)


async def cleanup_loop(engine: BroadcastEngine):
    await asyncio.sleep(STARTUP_DELAY_SECONDS)
    while True:
        try:
            await run_sync(cleanup_expired, engine)
        except Exception:
            logger.exception("Cleanup run failed")
        await asyncio.sleep(settings.cleanup_interval_seconds)
