"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 1 admin, 4 riders
  - 8 drivers spread around Makati / BGC (6 online and approved,
    1 offline, 1 still pending approval)
  - 1 completed ride for history

Prints a bearer token per user so the API and ``/ws/dispatch`` can be
tried straight away.
"""

import asyncio

from sqlalchemy import text

from dispatch_engine.config import settings
from dispatch_engine.domain.enums import (
    DriverStatus,
    RideStatus,
    UserRole,
    VehicleType,
)
from dispatch_engine.domain.pricing import FareCalculator
from dispatch_engine.infrastructure.database import async_session_factory, engine, utcnow
from dispatch_engine.infrastructure.models import (
    DriverProfileModel,
    RideModel,
    UserModel,
)
from dispatch_engine.infrastructure.repositories import DriverRepository
from dispatch_engine.realtime.auth import issue_token

# Ayala Triangle, Makati (approx)
CENTER_LAT, CENTER_LNG = 14.5566, 121.0233


ADMINS = [{"name": "Ops Admin", "phone": "+639170000001"}]

RIDERS = [
    {"name": "Maria Santos", "phone": "+639171000001"},
    {"name": "Jose Reyes", "phone": "+639171000002"},
    {"name": "Ana Cruz", "phone": "+639171000003"},
    {"name": "Paolo Garcia", "phone": "+639171000004"},
]

DRIVERS = [
    {"name": "Ramon Dela Cruz", "phone": "+639172000001", "lat": 14.5580, "lng": 121.0240,
     "vehicle": VehicleType.SEDAN, "make": "Toyota", "model": "Vios", "plate": "NAB 1234", "rating": 4.9},
    {"name": "Liza Mendoza", "phone": "+639172000002", "lat": 14.5520, "lng": 121.0300,
     "vehicle": VehicleType.SEDAN, "make": "Honda", "model": "City", "plate": "NCD 5678", "rating": 4.7},
    {"name": "Carlo Bautista", "phone": "+639172000003", "lat": 14.5490, "lng": 121.0470,
     "vehicle": VehicleType.SUV, "make": "Toyota", "model": "Fortuner", "plate": "NEF 9012", "rating": 4.8},
    {"name": "Grace Villanueva", "phone": "+639172000004", "lat": 14.5650, "lng": 121.0150,
     "vehicle": VehicleType.SEDAN, "make": "Mitsubishi", "model": "Mirage G4", "plate": "NGH 3456", "rating": 4.6},
    {"name": "Miguel Ramos", "phone": "+639172000005", "lat": 14.5800, "lng": 121.0600,
     "vehicle": VehicleType.MOTORCYCLE, "make": "Honda", "model": "Click", "plate": "MC 7890", "rating": 4.5},
    {"name": "Teresa Aquino", "phone": "+639172000006", "lat": 14.6100, "lng": 121.0000,
     "vehicle": VehicleType.SUV, "make": "Ford", "model": "Everest", "plate": "NIJ 1122", "rating": 4.9},
    # Offline
    {"name": "Enrico Lim", "phone": "+639172000007", "lat": 14.5560, "lng": 121.0230,
     "vehicle": VehicleType.SEDAN, "make": "Toyota", "model": "Vios", "plate": "NKL 3344", "rating": 4.4,
     "online": False},
    # Awaiting approval
    {"name": "Rosa Navarro", "phone": "+639172000008", "lat": 14.5570, "lng": 121.0250,
     "vehicle": VehicleType.SEDAN, "make": "Hyundai", "model": "Accent", "plate": "NMN 5566", "rating": None,
     "status": DriverStatus.PENDING},
]


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM users"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Users ─────────────────────────────────────────────────────
        admins, riders = [], []
        for a in ADMINS:
            m = UserModel(name=a["name"], phone_number=a["phone"], role=UserRole.ADMIN)
            session.add(m)
            admins.append(m)
        for r in RIDERS:
            m = UserModel(name=r["name"], phone_number=r["phone"], role=UserRole.RIDER)
            session.add(m)
            riders.append(m)
        await session.flush()
        print(f"  Created {len(admins)} admin(s) and {len(riders)} riders")

        # ── Drivers ───────────────────────────────────────────────────
        driver_repo = DriverRepository(session)
        driver_users, profiles = [], []
        for d in DRIVERS:
            user = UserModel(name=d["name"], phone_number=d["phone"], role=UserRole.DRIVER)
            session.add(user)
            await session.flush()
            profile = DriverProfileModel(
                user_id=user.id,
                status=d.get("status", DriverStatus.APPROVED),
                vehicle_type=d["vehicle"],
                vehicle_make=d["make"],
                vehicle_model=d["model"],
                plate_number=d["plate"],
                rating=d["rating"],
            )
            session.add(profile)
            await session.flush()
            await driver_repo.update_location(
                profile,
                d["lat"],
                d["lng"],
                is_online=d.get("online", True),
                resolution=settings.h3_resolution,
            )
            driver_users.append(user)
            profiles.append(profile)
        print(f"  Created {len(profiles)} drivers")

        # ── A finished ride, for history ──────────────────────────────
        fares = FareCalculator(
            base_fare=settings.base_fare,
            cost_per_km=settings.cost_per_km,
            cost_per_minute=settings.cost_per_minute,
            min_fare=settings.min_fare,
            currency=settings.currency,
        )
        pickup, dropoff = (14.5547, 121.0244), (14.5176, 121.0509)  # Makati -> NAIA T3
        fare = fares.estimate_between(pickup[0], pickup[1], dropoff[0], dropoff[1])
        now = utcnow()
        session.add(
            RideModel(
                rider_id=riders[0].id,
                driver_profile_id=profiles[0].id,
                driver_id=driver_users[0].id,
                status=RideStatus.COMPLETED,
                pickup_lat=pickup[0],
                pickup_lng=pickup[1],
                pickup_address="Ayala Avenue, Makati",
                dropoff_lat=dropoff[0],
                dropoff_lng=dropoff[1],
                dropoff_address="NAIA Terminal 3, Pasay",
                estimated_distance_m=fare.distance_meters,
                estimated_duration_s=fare.duration_seconds,
                base_fare=fare.base_fare,
                distance_fare=fare.distance_fare,
                time_fare=fare.time_fare,
                surge_multiplier=fare.surge_multiplier,
                surge_amount=fare.surge_amount,
                promo_discount=fare.promo_discount,
                total_fare=fare.total_fare,
                accepted_at=now,
                driver_arrived_at=now,
                started_at=now,
                completed_at=now,
            )
        )
        profiles[0].total_rides = 1
        await session.flush()
        print("  Created 1 completed ride")

        await session.commit()

        print("\nBearer tokens:")
        for u in admins + riders + driver_users:
            print(f"  [{u.role.value:<6}] {u.name:<18} {issue_token(u.id, settings)}")
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
