"""
Background Auto-Assign Worker
=============================

Runs every ``AUTO_ASSIGN_INTERVAL_SECONDS`` (default 15 s).

Concurrency safety
------------------
* **Redis distributed lock** keeps a single cycle running across all API
  processes, so instances do not race each other for the same bookings.
* The lock is only an efficiency measure: each assignment is committed by
  ``DispatchService.auto_assign`` inside a transaction that re-validates
  the booking and the driver, so a cycle racing a driver self-accept or an
  admin assign can lose but never double-assign.

Algorithm per cycle
-------------------
1. Fetch up to ``AUTO_ASSIGN_BATCH_SIZE`` waiting bookings, oldest first.
2. Skip bookings without pickup coordinates.
3. ``auto_assign`` each one (nearest available driver).
4. Renew the lock after each booking; stop if it was lost.
5. Stop early once no drivers are left.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from ridedispatch.config import settings
from ridedispatch.domain.commands import AutoAssign
from ridedispatch.domain.errors import (
    NoCandidates,
    NotFound,
    PreconditionFailed,
    TransientStoreFailure,
    ValidationFailed,
)
from ridedispatch.infrastructure.locks import DistributedLock, LockNotAcquired
from ridedispatch.infrastructure.redis_client import get_redis
from ridedispatch.services.dispatch import DispatchService

logger = logging.getLogger(__name__)

_task: Optional[asyncio.Task] = None
_stop_event: Optional[asyncio.Event] = None


@dataclass
class CycleResult:
    assigned: int = 0
    skipped: int = 0
    failed: int = 0
    exhausted: bool = False


# ── Public API ────────────────────────────────────────────────────────


async def start_auto_assign_loop(service: DispatchService) -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop(service))
    logger.info(
        "Auto-assign worker started (interval=%ds)",
        settings.auto_assign_interval_seconds,
    )


async def stop_auto_assign_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Auto-assign worker stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(service: DispatchService) -> None:
    """Periodic loop: run a cycle then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_auto_assign_cycle(service)
        except Exception:
            logger.exception("Unhandled error in auto-assign cycle")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.auto_assign_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass


async def run_auto_assign_cycle(service: DispatchService) -> CycleResult:
    """Execute one cycle under the distributed lock."""
    redis = await get_redis()
    try:
        async with DistributedLock(redis, "auto_assign", ttl_seconds=60) as lock:
            return await assign_waiting_bookings(service, lock=lock)
    except LockNotAcquired:
        logger.debug("Lock held by another worker, skipping cycle")
        return CycleResult()


async def assign_waiting_bookings(
    service: DispatchService,
    batch_size: Optional[int] = None,
    lock: Optional[DistributedLock] = None,
) -> CycleResult:
    """
    Auto-assign one batch of waiting bookings, oldest first.

    When run under *lock*, its TTL is renewed after every booking and the
    batch stops as soon as the lock has been lost to another worker.
    """
    result = CycleResult()
    waiting = await service.store.waiting_bookings(
        batch_size or settings.auto_assign_batch_size
    )

    for booking in waiting:
        if booking.pickup.location is None:
            result.skipped += 1
            continue
        try:
            await service.auto_assign(AutoAssign(booking.id))
            result.assigned += 1
        except NoCandidates:
            result.exhausted = True
            break
        except (NotFound, PreconditionFailed, ValidationFailed) as exc:
            # lost a race or changed since the batch was read
            logger.info("Skipping booking %s: %s", booking.id, exc.message)
            result.skipped += 1
        except TransientStoreFailure as exc:
            logger.warning("Booking %s not assigned: %s", booking.id, exc.message)
            result.failed += 1

        if lock is not None and not await lock.extend():
            logger.warning("Auto-assign lock %s lost, ending cycle early", lock.key)
            break

    if result.assigned or result.failed:
        logger.info(
            "Auto-assign cycle: %d assigned, %d skipped, %d failed%s",
            result.assigned,
            result.skipped,
            result.failed,
            " (no drivers left)" if result.exhausted else "",
        )
    return result
