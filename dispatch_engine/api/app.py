"""
FastAPI application factory.

* Wires the connection registry, dispatch controller, response resolver
  and ride service onto ``app.state`` (one set per application instance).
* Registers routes for rides, dispatch, drivers and admin, plus the
  ``/ws/dispatch`` WebSocket gateway.
* Starts / stops the offer-timeout worker via lifespan events.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.api.middleware import limiter
from dispatch_engine.api.routes import admin, dispatch, drivers, rides
from dispatch_engine.config import Settings, settings as default_settings
from dispatch_engine.domain.errors import DispatchError
from dispatch_engine.infrastructure.database import async_session_factory
from dispatch_engine.infrastructure.locks import RideLockManager
from dispatch_engine.infrastructure.redis_client import close_redis, get_redis
from dispatch_engine.realtime import gateway
from dispatch_engine.realtime.registry import ConnectionRegistry
from dispatch_engine.services.dispatcher import DispatchController
from dispatch_engine.services.resolver import ResponseResolver
from dispatch_engine.services.rides import RideService
from dispatch_engine.services.surge import SurgeEstimator
from dispatch_engine.workers import offer_timeout

logging.basicConfig(
    level=default_settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the offer-timeout worker on startup; stop on shutdown."""
    if app.state.start_workers:
        redis = await get_redis()
        await offer_timeout.start_offer_timeout_loop(app.state.resolver, redis)
    yield
    if app.state.start_workers:
        await offer_timeout.stop_offer_timeout_loop()
        await close_redis()


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    registry: Optional[ConnectionRegistry] = None,
    start_workers: bool = True,
) -> FastAPI:
    settings = settings or default_settings
    session_factory = session_factory or async_session_factory

    app = FastAPI(
        title="Ride Dispatch Engine",
        description=(
            "Matches ride requests to nearby drivers one offer at a time, "
            "tracks each ride through its lifecycle and pushes offers and "
            "assignments to connected apps in real time."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Per-instance services
    if registry is None:
        registry = ConnectionRegistry()
    dispatcher = DispatchController(
        session_factory, registry, settings, locks=RideLockManager()
    )
    resolver = ResponseResolver(session_factory, registry, dispatcher, settings)
    surge = SurgeEstimator(session_factory, settings)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.registry = registry
    app.state.dispatcher = dispatcher
    app.state.resolver = resolver
    app.state.surge = surge
    app.state.rides = RideService(session_factory, registry, dispatcher, surge, settings)
    app.state.start_workers = start_workers

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(DispatchError, dispatch_error_handler)

    # Routers
    app.include_router(rides.router, prefix="/api/v1")
    app.include_router(dispatch.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(gateway.router)

    return app
