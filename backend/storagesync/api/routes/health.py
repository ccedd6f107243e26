"""Health check endpoint."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from storagesync.core.config import settings
from storagesync.core.logging import get_logger
from storagesync.db import get_db
from storagesync.schemas.health import HealthResponse
from storagesync.services.sync import SyncService, get_sync_service

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service),
) -> HealthResponse:
    """Check application health.

    Returns:
        Health status, application version, database connectivity and
        sync sweep state.
    """
    try:
        await db.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        logger.warning("health_database_unavailable", error=str(e))
        database = "disconnected"

    return HealthResponse(
        status="ok" if database == "connected" else "degraded",
        version=settings.version,
        database=database,
        sync=sync_service.stats,
    )
