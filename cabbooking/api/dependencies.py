"""FastAPI dependency injection helpers."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cabbooking.config import settings
from cabbooking.domain.cancellation import CancellationPolicy
from cabbooking.domain.fares import FareCalculator
from cabbooking.domain.tariffs import default_tariffs
from cabbooking.infrastructure.database import async_session_factory
from cabbooking.infrastructure.redis_client import get_redis
from cabbooking.infrastructure.search_store import SearchStore
from cabbooking.integrations.clients import (
    get_distance_provider,
    get_gateway,
    get_notifier,
)
from cabbooking.integrations.gateway import PaymentGateway
from cabbooking.integrations.geocoder import DistanceProvider
from cabbooking.integrations.notifier import Notifier
from cabbooking.services.bookings import BookingService
from cabbooking.services.payments import PaymentReconciler

_calculator = FareCalculator(
    default_tariffs(),
    local_timezone=settings.local_timezone,
    min_hours_ahead=settings.min_hours_ahead,
    max_advance_days=settings.max_advance_days,
)


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_fare_calculator() -> FareCalculator:
    return _calculator


def get_cancellation_policy() -> CancellationPolicy:
    return CancellationPolicy(
        settings.cancellation_window_hours, settings.cancellation_charge_percent
    )


async def get_search_store() -> SearchStore:
    return SearchStore(await get_redis(), settings.search_ttl_seconds)


def get_reconciler(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> PaymentReconciler:
    return PaymentReconciler(
        db,
        gateway,
        notifier,
        settings.gateway_key_secret,
        settings.gateway_webhook_secret,
        settings.currency,
    )


def get_booking_service(
    db: AsyncSession = Depends(get_db),
    calculator: FareCalculator = Depends(get_fare_calculator),
    policy: CancellationPolicy = Depends(get_cancellation_policy),
    reconciler: PaymentReconciler = Depends(get_reconciler),
    distance: DistanceProvider = Depends(get_distance_provider),
    notifier: Notifier = Depends(get_notifier),
    search_store: SearchStore = Depends(get_search_store),
) -> BookingService:
    return BookingService(
        db,
        calculator,
        policy,
        reconciler,
        distance,
        notifier,
        search_store,
        currency=settings.currency,
        duplicate_window_minutes=settings.duplicate_window_minutes,
        max_bookings_per_day=settings.max_bookings_per_day,
        search_ttl_seconds=settings.search_ttl_seconds,
    )
