"""
Background Re-matching Worker
=============================

Runs every ``REMATCH_INTERVAL_SECONDS`` (default 15 s).

A ride whose candidates were all claimed by competing requests stays
``requested`` without a driver.  This worker periodically retries
assignment for those rides, oldest first, against a fresh nearby-driver
query.

Concurrency safety
------------------
* **Redis distributed lock** ensures only one instance runs a cycle at a
  time across multiple API processes.
* Each driver claim is a conditional UPDATE, so a cycle racing with live
  ride requests can never double-assign a driver.
* After matching, the cycle reconciles the active-ride index with the
  database, re-adding in-flight rides and dropping ended ones.
"""

from __future__ import annotations

import asyncio
import logging

from src.config import settings
from src.infrastructure.active_rides import get_active_ride_store
from src.infrastructure.database import async_session_factory
from src.infrastructure.locks import DistributedLock
from src.infrastructure.redis_client import get_redis
from src.services.rides import build_ride_service

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_matching_loop() -> None:
    global _task, _stop_event
    if not settings.rematch_enabled:
        logger.info("Re-matching worker disabled")
        return
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop())
    logger.info(
        "Re-matching worker started (interval=%ds)",
        settings.rematch_interval_seconds,
    )


async def stop_matching_loop() -> None:
    global _task, _stop_event
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
        logger.info("Re-matching worker stopped")
    _task = _stop_event = None


# ── Internals ─────────────────────────────────────────────────────────


async def _loop() -> None:
    """Periodic loop: run a cycle then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_matching_cycle()
        except Exception:
            logger.exception("Unhandled error in re-matching cycle")
        # Wait for the interval or until stop is signalled
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.rematch_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next cycle


async def run_matching_cycle() -> int:
    """Execute one cycle.  Returns the number of rides matched."""
    redis = await get_redis()
    lock = DistributedLock(redis, "ride_matcher", ttl_seconds=60)

    if not await lock.acquire():
        logger.debug("Lock held by another worker – skipping cycle")
        return 0

    matched = 0
    try:
        store = await get_active_ride_store()
        async with async_session_factory() as session:
            service = build_ride_service(session, store)
            try:
                matched = await service.rematch_pending()
                await session.commit()
                await service.restore_active_rides()
            except Exception:
                await session.rollback()
                raise
        if matched:
            logger.info("Re-matching cycle: %d rides matched", matched)
    finally:
        await lock.release()

    return matched
