"""
Payment Sweep Worker
====================

Runs every ``SWEEP_INTERVAL_SECONDS`` (default 60 s).

Online bookings are created PENDING with a gateway order.  If neither the
checkout callback nor the webhook confirms the payment within
``PAYMENT_TIMEOUT_MINUTES``, the booking is abandoned: payment FAILED
("Payment window expired"), booking REJECTED.

Concurrency safety
------------------
* **Redis distributed lock** keeps several API processes from sweeping
  at the same time.
* Each expiry is the reconciler's conditional ``PENDING -> FAILED``
  update, so a capture that lands mid-sweep wins or loses cleanly.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from cabbooking.config import settings
from cabbooking.infrastructure.database import async_session_factory, utcnow
from cabbooking.infrastructure.locks import DistributedLock, LockNotAcquired
from cabbooking.infrastructure.redis_client import get_redis
from cabbooking.infrastructure.repositories import BookingRepository
from cabbooking.integrations.clients import get_gateway, get_notifier
from cabbooking.services.payments import PaymentReconciler

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_sweep_loop() -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop())
    logger.info("Payment sweep started (interval=%ds)", settings.sweep_interval_seconds)


async def stop_sweep_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Payment sweep stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop() -> None:
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_sweep_cycle()
        except Exception:
            logger.exception("Unhandled error in payment sweep")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.sweep_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass


async def expire_stale_bookings(session, now: Optional[datetime] = None) -> int:
    """Expire every overdue online booking visible to *session*."""
    cutoff = (now or utcnow()) - timedelta(minutes=settings.payment_timeout_minutes)
    stale = await BookingRepository(session).get_stale_pending(cutoff)
    if not stale:
        return 0

    reconciler = PaymentReconciler(
        session,
        get_gateway(),
        get_notifier(),
        settings.gateway_key_secret,
        settings.gateway_webhook_secret,
        settings.currency,
    )
    expired = 0
    for booking in stale:
        if await reconciler.expire_stale(booking):
            expired += 1
            logger.info("Booking %s expired awaiting payment", booking.reference)
    await session.commit()
    return expired


async def run_sweep_cycle(redis=None, session_factory=async_session_factory) -> int:
    """Execute one sweep.  Returns the number of bookings expired."""
    redis = redis or await get_redis()
    try:
        async with DistributedLock(redis, "payment_sweep", ttl_seconds=60):
            async with session_factory() as session:
                expired = await expire_stale_bookings(session)
    except LockNotAcquired:
        logger.debug("Lock held by another worker - skipping sweep")
        return 0

    if expired:
        logger.info("Payment sweep: %d bookings expired", expired)
    return expired
