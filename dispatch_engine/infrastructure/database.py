"""
Async SQLAlchemy engine and session factory.

``asyncpg`` is the production driver.  Services receive a session factory
from ``create_app`` rather than importing the module-level one, which is
how the tests run the same code against SQLite.
"""

from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from dispatch_engine.config import settings


def make_engine(database_url: str, **engine_kwargs) -> AsyncEngine:
    return create_async_engine(database_url, pool_pre_ping=True, **engine_kwargs)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = make_engine(
    settings.database_url,
    echo=settings.db_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
)
async_session_factory = make_session_factory(engine)


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


def utcnow() -> datetime:
    """Timezone-aware now; every timestamp column is stored in UTC."""
    return datetime.now(timezone.utc)
