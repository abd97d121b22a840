"""Health check endpoints for liveness and readiness probes."""
from datetime import UTC, datetime
from typing import Literal

import psutil
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from agent_sandbox import __version__
from agent_sandbox.server.database import Database
from agent_sandbox.server.dependencies import get_database


router = APIRouter(prefix="/health", tags=["health"])


class LivenessResponse(BaseModel):
    """Response model for liveness probe."""

    status: Literal["alive"] = "alive"


class ReadinessResponse(BaseModel):
    """Response model for readiness probe."""

    status: Literal["ready", "not_ready"]


class DatabaseStatus(BaseModel):
    """Database health status."""

    status: Literal["healthy", "unhealthy"]
    mode: str = "wal"


class HealthResponse(BaseModel):
    """Response model for detailed health check."""

    status: Literal["healthy", "degraded"]
    version: str
    uptime_seconds: float
    memory_mb: float
    cpu_percent: float
    database: DatabaseStatus


async def get_database_status(db: Database) -> DatabaseStatus:
    """Probe the database with a trivial query."""
    return DatabaseStatus(status="healthy" if await db.is_healthy() else "unhealthy")


@router.get("/live", response_model=LivenessResponse)
async def liveness() -> LivenessResponse:
    """Minimal liveness check - is the server responding?"""
    return LivenessResponse()


@router.get("/ready", response_model=ReadinessResponse)
async def readiness(db: Database = Depends(get_database)) -> ReadinessResponse:
    """Readiness check - can the server reach its database?"""
    db_status = await get_database_status(db)
    return ReadinessResponse(status="ready" if db_status.status == "healthy" else "not_ready")


@router.get("", response_model=HealthResponse)
async def health(request: Request, db: Database = Depends(get_database)) -> HealthResponse:
    """Detailed health check with server metrics.

    Returns:
        Comprehensive health status including:
        - Server status (healthy/degraded)
        - Version info
        - Uptime
        - Memory usage
        - Database status
    """
    process = psutil.Process()
    start_time: datetime = request.app.state.start_time
    uptime = (datetime.now(UTC) - start_time).total_seconds()

    db_status = await get_database_status(db)
    overall_status: Literal["healthy", "degraded"] = (
        "healthy" if db_status.status == "healthy" else "degraded"
    )

    # cpu_percent(interval=None) is non-blocking - returns cached value from previous call
    cpu_percent = process.cpu_percent(interval=None)

    return HealthResponse(
        status=overall_status,
        version=__version__,
        uptime_seconds=uptime,
        memory_mb=round(process.memory_info().rss / 1024 / 1024, 2),
        cpu_percent=cpu_percent,
        database=db_status,
    )
