import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.database import get_db
from crm.core.rate_limit import get_rate_limiter

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health", summary="Health check")
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict[str, str]:
    """Liveness plus a database probe and the rate limiter state."""
    try:
        await db.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception as exc:  # noqa: BLE001
        db_status = "error"
        logger.exception("Database healthcheck failed", exc_info=exc)

    limiter = get_rate_limiter(request)
    return {
        "status": "ok",
        "database": db_status,
        "rate_limit": "enabled" if limiter.configured else "disabled",
    }
