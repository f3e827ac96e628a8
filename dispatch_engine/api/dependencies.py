"""FastAPI dependency injection helpers."""

from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.config import Settings
from dispatch_engine.domain.enums import UserRole
from dispatch_engine.domain.errors import NotAuthorized
from dispatch_engine.infrastructure.repositories import UserRepository
from dispatch_engine.realtime.auth import decode_user_id
from dispatch_engine.realtime.registry import ConnectionRegistry
from dispatch_engine.services.dispatcher import DispatchController
from dispatch_engine.services.resolver import ResponseResolver
from dispatch_engine.services.rides import RideService

bearer_scheme = HTTPBearer(auto_error=False)


async def get_db(request: Request) -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with request.app.state.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> int:
    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_user_id(credentials.credentials, request.app.state.settings)
    except NotAuthorized as exc:
        raise HTTPException(
            status_code=401,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


async def require_admin(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> int:
    user = await UserRepository(db).get_by_id(user_id)
    if user is None or UserRole(user.role) != UserRole.ADMIN:
        raise NotAuthorized("Admin access required")
    return user_id


def get_ride_service(request: Request) -> RideService:
    return request.app.state.rides


def get_dispatcher(request: Request) -> DispatchController:
    return request.app.state.dispatcher


def get_resolver(request: Request) -> ResponseResolver:
    return request.app.state.resolver


def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.registry
