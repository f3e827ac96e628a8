"""
Shared test fixtures.

Each test gets its own file-backed SQLite database (via aiosqlite) so the
services run against real transactions without Docker / PostgreSQL /
Redis.  A file rather than ``:memory:`` gives every session its own
connection, which the concurrency tests rely on.

WebSocket peers are replaced by ``FakeConnection`` objects that record
every event pushed to them.
"""

from __future__ import annotations

import itertools
from datetime import datetime
from typing import Any, Optional

import pytest
import pytest_asyncio

from dispatch_engine.config import Settings
from dispatch_engine.domain.enums import DriverStatus, RideStatus, UserRole
from dispatch_engine.infrastructure.database import (
    Base,
    make_engine,
    make_session_factory,
    utcnow,
)
from dispatch_engine.infrastructure.models import (
    DriverProfileModel,
    RideModel,
    UserModel,
)
from dispatch_engine.infrastructure.repositories import DriverRepository
from dispatch_engine.realtime.registry import ConnectionRegistry
from dispatch_engine.services.dispatcher import DispatchController
from dispatch_engine.services.resolver import ResponseResolver
from dispatch_engine.services.rides import RideService
from dispatch_engine.services.surge import SurgeEstimator

# Ayala Triangle, Makati
PICKUP = (14.5566, 121.0233)
DROPOFF = (14.5176, 121.0509)

TEST_JWT_SECRET = "test-secret-key-with-at-least-32-bytes!"


class FakeConnection:
    """Stands in for a WebSocket; records what the server sends."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(data)

    def events(self, name: Optional[str] = None) -> list[dict[str, Any]]:
        return [m for m in self.sent if name is None or m["event"] == name]


# ── Database ──────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        transient_retry_attempts=2,
        transient_retry_backoff_seconds=0,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield make_session_factory(engine)

    await engine.dispose()


# ── Services ──────────────────────────────────────────────────────────


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def dispatcher(session_factory, registry, settings) -> DispatchController:
    return DispatchController(session_factory, registry, settings)


@pytest.fixture
def resolver(session_factory, registry, dispatcher, settings) -> ResponseResolver:
    return ResponseResolver(session_factory, registry, dispatcher, settings)


@pytest.fixture
def ride_service(session_factory, registry, dispatcher, settings) -> RideService:
    surge = SurgeEstimator(session_factory, settings)
    return RideService(session_factory, registry, dispatcher, surge, settings)


@pytest.fixture
def connect(registry):
    """``await connect(user_id)`` registers and returns a FakeConnection."""

    async def _connect(user_id: int, fail: bool = False) -> FakeConnection:
        conn = FakeConnection(fail=fail)
        await registry.register(user_id, conn)
        return conn

    return _connect


# ── Data factories ────────────────────────────────────────────────────


_phone_numbers = itertools.count(1)


@pytest.fixture
def make_user(session_factory):
    async def _make(role: UserRole = UserRole.RIDER, name: Optional[str] = None) -> UserModel:
        n = next(_phone_numbers)
        async with session_factory() as session:
            user = UserModel(
                name=name or f"{role.value.lower()}-{n}",
                phone_number=f"+63917{n:07d}",
                role=role,
            )
            session.add(user)
            await session.commit()
            return user

    return _make


@pytest.fixture
def make_driver(session_factory, make_user):
    async def _make(
        lat: float = PICKUP[0],
        lng: float = PICKUP[1],
        *,
        online: bool = True,
        status: DriverStatus = DriverStatus.APPROVED,
        rating: Optional[float] = 4.8,
    ) -> DriverProfileModel:
        user = await make_user(UserRole.DRIVER)
        async with session_factory() as session:
            driver = DriverProfileModel(
                user_id=user.id,
                status=status,
                rating=rating,
                vehicle_make="Toyota",
                vehicle_model="Vios",
                plate_number=f"NAB {user.id:04d}",
            )
            session.add(driver)
            await session.flush()
            await DriverRepository(session).update_location(
                driver, lat, lng, is_online=online
            )
            await session.commit()
            return driver

    return _make


@pytest.fixture
def make_ride(session_factory):
    async def _make(
        rider_id: int,
        *,
        pickup: tuple[float, float] = PICKUP,
        status: RideStatus = RideStatus.PENDING,
        created_at: Optional[datetime] = None,
        driver: Optional[DriverProfileModel] = None,
    ) -> RideModel:
        async with session_factory() as session:
            ride = RideModel(
                rider_id=rider_id,
                status=status,
                pickup_lat=pickup[0],
                pickup_lng=pickup[1],
                dropoff_lat=DROPOFF[0],
                dropoff_lng=DROPOFF[1],
                total_fare=150.0,
                created_at=created_at or utcnow(),
                driver_profile_id=driver.id if driver else None,
                driver_id=driver.user_id if driver else None,
            )
            session.add(ride)
            await session.commit()
            return ride

    return _make


@pytest.fixture
def offset():
    """Point roughly *km* north of the pickup (1 deg latitude ~ 111.2 km)."""

    def _offset(km: float) -> tuple[float, float]:
        return PICKUP[0] + km / 111.2, PICKUP[1]

    return _offset
