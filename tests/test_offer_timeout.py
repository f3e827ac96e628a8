"""Offer-timeout sweep: overdue offers are declined and the ride moves on."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import update

from dispatch_engine.domain.enums import DispatchResult
from dispatch_engine.infrastructure.database import utcnow
from dispatch_engine.infrastructure.models import DispatchAttemptModel
from dispatch_engine.services.resolver import TIMEOUT_REASON
from dispatch_engine.workers.offer_timeout import run_timeout_sweep


async def _backdate(session_factory, attempt_id, seconds):
    async with session_factory() as session:
        await session.execute(
            update(DispatchAttemptModel)
            .where(DispatchAttemptModel.id == attempt_id)
            .values(sent_at=utcnow() - timedelta(seconds=seconds))
        )
        await session.commit()


async def _attempt(session_factory, attempt_id):
    async with session_factory() as session:
        return await session.get(DispatchAttemptModel, attempt_id)


@pytest.fixture
def offered(dispatcher, make_user, make_driver, make_ride, offset):
    async def _offered():
        first = await make_driver(*offset(1))
        second = await make_driver(*offset(2))
        rider = await make_user()
        ride = await make_ride(rider.id)
        outcome = await dispatcher.dispatch(ride.id)
        assert outcome.result is DispatchResult.OFFERED
        return ride, first, second, outcome.attempt

    return _offered


class TestTimeoutSweep:
    @pytest.mark.asyncio
    async def test_overdue_offer_is_declined_and_redispatched(
        self, resolver, dispatcher, session_factory, offered, connect
    ):
        ride, first, second, attempt = await offered()
        first_conn = await connect(first.user_id)
        await _backdate(session_factory, attempt.id, 60)

        assert await run_timeout_sweep(resolver) == 1

        expired = await _attempt(session_factory, attempt.id)
        assert expired.accepted is False
        assert expired.decline_reason == TIMEOUT_REASON
        assert first_conn.events("offer-expired")[0]["attempt_id"] == attempt.id

        history = await dispatcher.list_attempts(ride.id)
        assert [a.driver_profile_id for a in history] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_fresh_offer_is_left_alone(self, resolver, session_factory, offered):
        _, _, _, attempt = await offered()

        assert await run_timeout_sweep(resolver) == 0
        assert (await _attempt(session_factory, attempt.id)).responded_at is None

    @pytest.mark.asyncio
    async def test_answered_offer_is_not_swept(self, resolver, session_factory, offered):
        _, first, _, attempt = await offered()
        await resolver.respond(attempt.id, first.user_id, True)
        await _backdate(session_factory, attempt.id, 60)

        assert await run_timeout_sweep(resolver) == 0
        assert (await _attempt(session_factory, attempt.id)).accepted is True


class TestSweepLock:
    @pytest.mark.asyncio
    async def test_skips_when_another_worker_holds_lock(
        self, resolver, session_factory, offered
    ):
        _, _, _, attempt = await offered()
        await _backdate(session_factory, attempt.id, 60)
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=None)

        assert await run_timeout_sweep(resolver, mock_redis) == 0
        assert (await _attempt(session_factory, attempt.id)).responded_at is None
        mock_redis.eval.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_releases_lock_after_sweep(self, resolver, session_factory, offered):
        _, _, _, attempt = await offered()
        await _backdate(session_factory, attempt.id, 60)
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        assert await run_timeout_sweep(resolver, mock_redis) == 1
        mock_redis.eval.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sweeps_without_lock_when_redis_is_down(
        self, resolver, session_factory, offered
    ):
        _, _, _, attempt = await offered()
        await _backdate(session_factory, attempt.id, 60)
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(side_effect=RedisConnectionError("refused"))

        assert await run_timeout_sweep(resolver, mock_redis) == 1
        mock_redis.eval.assert_not_awaited()
