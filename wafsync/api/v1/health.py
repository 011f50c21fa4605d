"""
Health check and system status endpoints.
"""

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import structlog

from wafsync.core.dependencies import RuntimeDep
from wafsync.schemas.cluster import HealthResponse

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/healthz", response_model=HealthResponse)
async def health_check(runtime: RuntimeDep):
    """
    Basic health check endpoint.

    Returns the service status without checking dependencies.
    """
    return HealthResponse(
        status="healthy",
        version=runtime.settings.app.app_version,
    )


@router.get("/health", response_model=HealthResponse)
async def health_detailed(runtime: RuntimeDep):
    """
    Detailed health check with database status.
    """
    db_status = "unhealthy"
    try:
        async with runtime.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "healthy"
    except SQLAlchemyError as e:
        logger.warning("Database health check failed", error=str(e))

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        version=runtime.settings.app.app_version,
        database=db_status,
    )
