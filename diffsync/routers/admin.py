from __future__ import annotations
from fastapi import APIRouter, Depends, Request
import sqlalchemy
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from diffsync.auth import require_api_key
from diffsync.cache import ping_redis
from diffsync.database import Databases, get_databases
from diffsync.routers.differential import get_scheduler
from diffsync.schemas import HealthResponse, MetricsResponse
from diffsync.services.scheduler import SyncScheduler

router = APIRouter(prefix="/admin", tags=["admin"])


async def _ping(engine: AsyncEngine) -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(sqlalchemy.text("SELECT 1"))
        return "ok"
    except (SQLAlchemyError, OSError):
        return "error"


@router.get("/health", response_model=HealthResponse)
async def health(request: Request, databases: Databases = Depends(get_databases)):
    """Unauthenticated health check for load balancers."""
    state = request.app.state
    source = await _ping(databases.source)
    destination = await _ping(databases.destination)
    redis_ok = await ping_redis(state.redis)

    return HealthResponse(
        status="ok" if (redis_ok and source == destination == "ok") else "degraded",
        source_database=source,
        destination_database=destination,
        redis="ok" if redis_ok else "error",
        scheduler="running" if state.scheduler.running else "stopped",
        version=state.settings.APP_VERSION,
    )


@router.get("/metrics", response_model=MetricsResponse, dependencies=[Depends(require_api_key)])
async def metrics(scheduler: SyncScheduler = Depends(get_scheduler)):
    return scheduler.metrics()
