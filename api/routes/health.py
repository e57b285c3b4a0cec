"""
Health check endpoint with database and configuration status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from api.dependencies import get_db
from core.config import settings, validate_environment
from core.timing import utcnow
from schemas.api import HealthCheckResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Missing or suspicious configuration
    """
    db_connected = False
    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    check = validate_environment()

    return HealthCheckResponse(
        timestamp=utcnow(),
        database_connected=db_connected,
        environment=settings.ENVIRONMENT,
        config_errors=check["errors"],
        config_warnings=check["warnings"],
    )
