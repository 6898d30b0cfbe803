"""
routers/health.py — Health check endpoints for SignalDesk.

Endpoints:
    GET /health           — Basic application liveness
    GET /health/database  — Database connectivity
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from schemas import HealthResponse, ServiceStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("", response_model=HealthResponse, summary="Application liveness")
async def health_check():
    """Always 200 while the process is serving."""
    return HealthResponse(status="healthy", timestamp=datetime.now(timezone.utc))


@router.get("/database", response_model=HealthResponse, summary="Database connectivity")
async def database_health(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        db_status = ServiceStatus(status="healthy")
    except Exception as exc:
        logger.error("Database health check failed: %s", exc)
        db_status = ServiceStatus(status="error", detail="Cannot connect to database")

    return HealthResponse(
        status="healthy" if db_status.status == "healthy" else "degraded",
        timestamp=datetime.now(timezone.utc),
        services={"database": db_status},
    )
