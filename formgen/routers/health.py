"""
Liveness check: database round-trip plus the completion backend.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from formgen.database import get_db
from formgen.dependencies.services import get_completion_client
from formgen.models.schemas import HealthCheckResponse

logger = logging.getLogger(__name__)

router = APIRouter()


async def _database_ok(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Health check: database unavailable: %s", exc)
        return False
    return True


async def _llm_ok(client) -> bool:
    # Completion clients without a health check are reported as up
    check = getattr(client, "check_health", None)
    return check is None or await check()


@router.get("/", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    client=Depends(get_completion_client),
):
    """Always 200; ``status`` is ``degraded`` when either backend is down."""
    database_up = await _database_ok(db)
    llm_up = await _llm_ok(client)

    return HealthCheckResponse(
        status="healthy" if database_up and llm_up else "degraded",
        database="ok" if database_up else "error",
        ollama="ok" if llm_up else "error",
        timestamp=datetime.now(timezone.utc),
    )
