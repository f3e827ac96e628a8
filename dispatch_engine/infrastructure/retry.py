"""
Transactional unit of work with bounded retries on transient DB failures.

A unit of work is an async callable taking an ``AsyncSession``.  It is run
inside a fresh session; success commits, any exception rolls back.  Only
connection-level failures are retried; domain errors propagate at once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.domain.errors import TransientDependencyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    attempts: int = 3,
    backoff_seconds: float = 0.05,
    label: str = "unit of work",
) -> T:
    last_exc: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            async with session_factory() as session:
                try:
                    result = await work(session)
                    await session.commit()
                    return result
                except BaseException:
                    await session.rollback()
                    raise
        except Exception as exc:
            if not is_transient(exc):
                raise
            last_exc = exc
            logger.warning(
                "Transient failure in %s (attempt %d/%d): %s",
                label, attempt, attempts, exc,
            )
            if attempt < attempts:
                await asyncio.sleep(backoff_seconds * attempt)

    raise TransientDependencyError(
        "Service temporarily unavailable, please retry"
    ) from last_exc
