"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 4 customers, 1 admin and 2 drivers (with driver profiles)
  - the worked example booking: one-way Delhi -> Jaipur, sedan, 230 km,
    daytime start -> base 3450, GST 173, final 3623 (cash, CONFIRMED)

Prints a bearer token per user for trying the API from /docs.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import text

from cabbooking.api.auth import issue_token
from cabbooking.config import settings
from cabbooking.domain.enums import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    TripType,
    UserRole,
    VehicleClass,
)
from cabbooking.domain.fares import FareCalculator
from cabbooking.domain.tariffs import default_tariffs
from cabbooking.infrastructure.database import async_session_factory, engine
from cabbooking.infrastructure.models import (
    BookingModel,
    DriverModel,
    PaymentModel,
    UserModel,
)
from cabbooking.services.bookings import generate_reference

USERS = [
    {"name": "Aarav Sharma", "phone": "9876543210", "email": "aarav@example.com", "role": UserRole.CUSTOMER},
    {"name": "Priya Patel", "phone": "9876543211", "email": "priya@example.com", "role": UserRole.CUSTOMER},
    {"name": "Rohan Mehta", "phone": "9876543212", "email": "rohan@example.com", "role": UserRole.CUSTOMER},
    {"name": "Sneha Gupta", "phone": "9876543213", "email": "sneha@example.com", "role": UserRole.CUSTOMER},
    {"name": "Ops Admin", "phone": "9000000001", "email": "ops@example.com", "role": UserRole.ADMIN},
    {"name": "Ramesh Yadav", "phone": "9812345670", "email": None, "role": UserRole.DRIVER},
    {"name": "Suresh Kumar", "phone": "9812345671", "email": None, "role": UserRole.DRIVER},
]

DELHI = {"city": "New Delhi", "address": "Connaught Place", "lat": 28.6315, "lng": 77.2167}
JAIPUR = {"city": "Jaipur", "address": "MI Road", "lat": 26.9124, "lng": 75.7873}


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM users"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Users & drivers ───────────────────────────────────────────
        user_models = []
        for u in USERS:
            m = UserModel(name=u["name"], phone=u["phone"], email=u["email"], role=u["role"])
            session.add(m)
            user_models.append(m)
        await session.flush()

        drivers = []
        for u in user_models:
            if u.role is UserRole.DRIVER:
                d = DriverModel(user_id=u.id, name=u.name, phone=u.phone)
                session.add(d)
                drivers.append(d)
        await session.flush()
        print(f"  Created {len(user_models)} users, {len(drivers)} drivers")

        # ── Worked example booking ────────────────────────────────────
        calculator = FareCalculator(default_tariffs(), settings.local_timezone)
        local_tz = ZoneInfo(settings.local_timezone)
        tomorrow = datetime.now(local_tz).date() + timedelta(days=1)
        start = datetime(
            tomorrow.year, tomorrow.month, tomorrow.day, 10, 0, tzinfo=local_tz
        ).astimezone(timezone.utc)
        fare = calculator.price(TripType.ONE_WAY, VehicleClass.SEDAN, 230, start)

        customer = user_models[0]
        payment = PaymentModel(
            user_id=customer.id,
            amount=fare.final_amount,
            currency=settings.currency,
            status=PaymentStatus.PENDING,
            method=PaymentMethod.CASH,
        )
        session.add(payment)
        await session.flush()
        session.add(
            BookingModel(
                reference=generate_reference(),
                user_id=customer.id,
                trip_type=TripType.ONE_WAY,
                vehicle_class=VehicleClass.SEDAN,
                pickup=DELHI,
                drop=JAIPUR,
                via=[],
                start_time=start,
                passenger={"name": customer.name, "phone": customer.phone, "email": customer.email},
                fare=fare.to_dict(),
                status=BookingStatus.CONFIRMED,
                payment_id=payment.id,
                special_requests=[],
            )
        )
        await session.commit()
        print(
            f"  Created example booking: base {fare.base_fare}, GST {fare.gst}, "
            f"final {fare.final_amount}"
        )

        print("\nBearer tokens:")
        for u in user_models:
            print(f"  {u.role.value:<8} {u.name:<14} {issue_token(u.id, u.role)}")
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
