"""
Background Offer-Timeout Worker
===============================

Runs every ``OFFER_SWEEP_INTERVAL_SECONDS`` (default 5 s).

An offer nobody answers within ``OFFER_TIMEOUT_SECONDS`` (30 s, the
countdown the driver app shows) is declined on the driver's behalf with
reason ``timeout``, which sends the ride to the next round exactly like
an explicit decline.  Offers to a rider-selected driver use
``SELECTED_DRIVER_TIMEOUT_SECONDS`` instead; expiring one falls back to
open dispatch.

Concurrency safety
------------------
* **Redis distributed lock** keeps several API processes from sweeping
  the same interval.  When Redis is unreachable the sweep still runs:
  the single-process deployment does not need the lock, and expiry
  itself is guarded by the conditional update in the resolver.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from dispatch_engine.config import Settings
from dispatch_engine.domain.errors import DispatchError
from dispatch_engine.infrastructure.database import utcnow
from dispatch_engine.infrastructure.locks import DistributedLock
from dispatch_engine.infrastructure.repositories import DispatchAttemptRepository
from dispatch_engine.infrastructure.retry import run_in_transaction
from dispatch_engine.services.resolver import ResponseResolver

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_offer_timeout_loop(
    resolver: ResponseResolver, redis: Optional[aioredis.Redis] = None
) -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop(resolver, redis))
    logger.info(
        "Offer timeout worker started (interval=%ds, timeout=%ds)",
        resolver.settings.offer_sweep_interval_seconds,
        resolver.settings.offer_timeout_seconds,
    )


async def stop_offer_timeout_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Offer timeout worker stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(resolver: ResponseResolver, redis: Optional[aioredis.Redis]) -> None:
    """Periodic loop: run a sweep then sleep."""
    assert _stop_event is not None
    interval = resolver.settings.offer_sweep_interval_seconds
    while not _stop_event.is_set():
        try:
            await run_timeout_sweep(resolver, redis)
        except Exception:
            logger.exception("Unhandled error in offer timeout sweep")
        # Wait for the interval or until stop is signalled
        try:
            await asyncio.wait_for(_stop_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass  # next sweep


async def run_timeout_sweep(
    resolver: ResponseResolver, redis: Optional[aioredis.Redis] = None
) -> int:
    """Expire every overdue offer.  Returns the number of offers expired."""
    settings: Settings = resolver.settings
    lock = None
    if redis is not None:
        lock = DistributedLock(
            redis, "offer_timeout_sweep", ttl_seconds=max(10, settings.offer_sweep_interval_seconds * 2)
        )
        try:
            if not await lock.acquire():
                logger.debug("Lock held by another worker - skipping sweep")
                return 0
        except RedisError:
            logger.warning("Redis unavailable; sweeping without the worker lock")
            lock = None

    expired = 0
    try:
        now = utcnow()
        stale = await run_in_transaction(
            resolver.session_factory,
            lambda s: DispatchAttemptRepository(s).list_stale_outstanding(
                open_cutoff=now - timedelta(seconds=settings.offer_timeout_seconds),
                targeted_cutoff=now
                - timedelta(seconds=settings.selected_driver_timeout_seconds),
            ),
            attempts=settings.transient_retry_attempts,
            backoff_seconds=settings.transient_retry_backoff_seconds,
            label="timeout sweep",
        )
        for attempt in stale:
            try:
                if await resolver.expire(attempt.id) is not None:
                    expired += 1
            except DispatchError:
                logger.exception("Could not expire offer %s", attempt.id)
        if expired:
            logger.info("Timeout sweep: %d offers expired", expired)
    finally:
        if lock is not None:
            try:
                await lock.release()
            except RedisError:
                logger.warning("Could not release sweep lock", exc_info=True)

    return expired
