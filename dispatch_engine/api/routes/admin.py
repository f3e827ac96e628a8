"""
Admin / observability endpoints
===============================

GET /api/v1/admin/health      -- simple health check
GET /api/v1/admin/connections -- live WebSocket users and connections
GET /api/v1/admin/surge-logs  -- most recent surge samples
GET /api/v1/admin/rides/{ride_id}/audit -- who changed a ride, oldest first
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.api.dependencies import get_db, get_registry, require_admin
from dispatch_engine.api.middleware import DEFAULT_RATE_LIMIT, limiter
from dispatch_engine.api.schemas import (
    ConnectionStatsResponse,
    HealthResponse,
    RideAuditEventResponse,
    SurgeLogResponse,
)
from dispatch_engine.infrastructure.repositories import AuditRepository, SurgeLogRepository
from dispatch_engine.realtime.registry import ConnectionRegistry

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/connections",
    response_model=ConnectionStatsResponse,
    summary="Count live real-time connections",
)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def connection_stats(
    request: Request,
    admin_id: int = Depends(require_admin),
    registry: ConnectionRegistry = Depends(get_registry),
):
    return ConnectionStatsResponse(**registry.stats())


@router.get(
    "/surge-logs",
    response_model=list[SurgeLogResponse],
    summary="Most recent surge computations",
)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def surge_logs(
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    admin_id: int = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await SurgeLogRepository(db).list_recent(limit)


@router.get(
    "/rides/{ride_id}/audit",
    response_model=list[RideAuditEventResponse],
    summary="Audit trail of one ride",
)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def ride_audit(
    request: Request,
    ride_id: int,
    admin_id: int = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await AuditRepository(db).list_for_ride(ride_id)


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
