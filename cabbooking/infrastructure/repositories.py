"""
Repository Pattern -- abstracts DB access so the services stay DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.

Status changes on bookings and payments never go through a read-modify-write
of the ORM object.  ``transition`` issues one conditional

    UPDATE ... SET status = :new WHERE id = :id AND status IN (:expected)

and the affected row count says whether this caller won the race.  Losers
see ``False`` and treat the call as an idempotent replay.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .database import utcnow
from .models import (
    BookingModel,
    DriverModel,
    PaymentModel,
    PaymentOrderModel,
    UserModel,
)
from cabbooking.domain.enums import (
    TERMINAL_STATUSES,
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
)


async def _conditional_update(
    session: AsyncSession,
    model,
    row_id: int,
    expected: Iterable,
    new_status,
    values: dict,
) -> bool:
    result = await session.execute(
        update(model)
        .where(model.id == row_id, model.status.in_(list(expected)))
        .values(status=new_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


class BookingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, booking: BookingModel) -> BookingModel:
        self.session.add(booking)
        await self.session.flush()
        return booking

    async def get_by_id(self, booking_id: int) -> Optional[BookingModel]:
        return await self.session.get(BookingModel, booking_id)

    async def refresh(self, booking: BookingModel) -> BookingModel:
        await self.session.refresh(booking)
        return booking

    async def get_by_payment_id(self, payment_id: int) -> Optional[BookingModel]:
        result = await self.session.execute(
            select(BookingModel).where(BookingModel.payment_id == payment_id)
        )
        return result.scalar_one_or_none()

    async def get_by_reference(self, user_id: int, reference: str) -> Optional[BookingModel]:
        result = await self.session.execute(
            select(BookingModel).where(
                BookingModel.reference == reference,
                BookingModel.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_overlapping(
        self,
        user_id: int,
        window_start: datetime,
        window_end: datetime,
        exclude_id: Optional[int] = None,
    ) -> Optional[BookingModel]:
        """An active booking of *user_id* starting inside the window."""
        conditions = [
            BookingModel.user_id == user_id,
            BookingModel.start_time >= window_start,
            BookingModel.start_time <= window_end,
            BookingModel.status.not_in(list(TERMINAL_STATUSES)),
        ]
        if exclude_id is not None:
            conditions.append(BookingModel.id != exclude_id)
        result = await self.session.execute(
            select(BookingModel).where(*conditions).limit(1)
        )
        return result.scalar_one_or_none()

    async def count_created_since(self, user_id: int, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(BookingModel)
            .where(
                BookingModel.user_id == user_id,
                BookingModel.created_at >= since,
            )
        )
        return result.scalar() or 0

    async def list_for_user(
        self,
        user_id: int,
        statuses: Optional[Iterable[BookingStatus]] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[BookingModel], int]:
        conditions = [BookingModel.user_id == user_id]
        if statuses is not None:
            conditions.append(BookingModel.status.in_(list(statuses)))

        total = await self.session.execute(
            select(func.count()).select_from(BookingModel).where(*conditions)
        )
        rows = await self.session.execute(
            select(BookingModel)
            .where(*conditions)
            .order_by(BookingModel.created_at.desc(), BookingModel.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(rows.scalars().all()), total.scalar() or 0

    async def list_upcoming(
        self, user_id: int, now: datetime, limit: int = 10
    ) -> list[BookingModel]:
        """Confirmed or assigned trips still ahead, soonest first."""
        result = await self.session.execute(
            select(BookingModel)
            .where(
                BookingModel.user_id == user_id,
                BookingModel.start_time >= now,
                BookingModel.status.in_(
                    [BookingStatus.CONFIRMED, BookingStatus.ASSIGNED]
                ),
            )
            .order_by(BookingModel.start_time, BookingModel.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_stale_pending(self, created_before: datetime) -> list[BookingModel]:
        """Online bookings still awaiting payment after the payment window."""
        result = await self.session.execute(
            select(BookingModel)
            .join(PaymentModel, PaymentModel.id == BookingModel.payment_id)
            .where(
                BookingModel.status == BookingStatus.PENDING,
                BookingModel.created_at < created_before,
                PaymentModel.status == PaymentStatus.PENDING,
                PaymentModel.method != PaymentMethod.CASH,
            )
            .order_by(BookingModel.created_at)
        )
        return list(result.scalars().all())

    async def transition(
        self,
        booking_id: int,
        expected: Iterable[BookingStatus],
        new_status: BookingStatus,
        **values,
    ) -> bool:
        return await _conditional_update(
            self.session, BookingModel, booking_id, expected, new_status, values
        )

    async def set_fields(self, booking_id: int, expected: Iterable[BookingStatus],
                         **values) -> bool:
        """Conditional update of non-status columns (status is left as is)."""
        result = await self.session.execute(
            update(BookingModel)
            .where(
                BookingModel.id == booking_id,
                BookingModel.status.in_(list(expected)),
            )
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_rating(self, booking_id: int, rating: dict) -> bool:
        """Write-once: succeeds only while the rating column is empty."""
        result = await self.session.execute(
            update(BookingModel)
            .where(
                BookingModel.id == booking_id,
                BookingModel.status == BookingStatus.COMPLETED,
                BookingModel.rating.is_(None),
            )
            .values(rating=rating, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class PaymentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, payment: PaymentModel) -> PaymentModel:
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def get_by_id(self, payment_id: int) -> Optional[PaymentModel]:
        return await self.session.get(PaymentModel, payment_id)

    async def refresh(self, payment: PaymentModel) -> PaymentModel:
        await self.session.refresh(payment)
        return payment

    async def get_many(self, payment_ids: list[int]) -> dict[int, PaymentModel]:
        if not payment_ids:
            return {}
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.id.in_(payment_ids))
        )
        return {p.id: p for p in result.scalars().all()}

    # ── Gateway orders ────────────────────────────────────────────────

    async def add_order(self, payment_id: int, order_id: str, amount: int) -> PaymentOrderModel:
        order = PaymentOrderModel(payment_id=payment_id, order_id=order_id, amount=amount)
        self.session.add(order)
        await self.session.flush()
        return order

    async def get_order(self, order_id: str) -> Optional[PaymentOrderModel]:
        result = await self.session.execute(
            select(PaymentOrderModel).where(PaymentOrderModel.order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def claim_order(
        self, order_pk: int, gateway_payment_id: Optional[str], amount: int
    ) -> bool:
        """Record the first capture on an order; ``False`` for a repeat signal."""
        result = await self.session.execute(
            update(PaymentOrderModel)
            .where(
                PaymentOrderModel.id == order_pk,
                PaymentOrderModel.captured_amount.is_(None),
            )
            .values(
                gateway_payment_id=gateway_payment_id,
                captured_amount=amount,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def settle_order(self, order_pk: int, **values) -> None:
        await self.session.execute(
            update(PaymentOrderModel)
            .where(PaymentOrderModel.id == order_pk)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )

    async def transition(
        self,
        payment_id: int,
        expected: Iterable[PaymentStatus],
        new_status: PaymentStatus,
        **values,
    ) -> bool:
        return await _conditional_update(
            self.session, PaymentModel, payment_id, expected, new_status, values
        )


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: int) -> Optional[UserModel]:
        return await self.session.get(UserModel, user_id)


class DriverRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, driver_id: int) -> Optional[DriverModel]:
        return await self.session.get(DriverModel, driver_id)

    async def get_by_user_id(self, user_id: int) -> Optional[DriverModel]:
        result = await self.session.execute(
            select(DriverModel).where(DriverModel.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def increment_completed(self, driver_id: int) -> None:
        await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .values(completed_rides=DriverModel.completed_rides + 1)
            .execution_options(synchronize_session=False)
        )

    async def record_rating(self, driver_id: int, value: int) -> None:
        """Fold *value* into the running average in a single statement."""
        await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .values(
                rating=(
                    DriverModel.rating * DriverModel.rating_count + value
                ) / (DriverModel.rating_count + 1),
                rating_count=DriverModel.rating_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
