"""Health check endpoints for monitoring."""

import logging

from fastapi import APIRouter
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from app.api.deps import DB
from app.core.config import settings
from app.models.plan import Plan
from app.utils.envelopes import api_success

router = APIRouter(tags=["health"])

logger = logging.getLogger(__name__)


@router.get("/health", response_model=dict)
async def health_check(db: DB):
    """Database connectivity plus the size of the plan catalog."""
    try:
        plan_count = (await db.execute(select(func.count(Plan.id)))).scalar_one()
        db_status = "healthy"
    except SQLAlchemyError as exc:
        logger.warning("Health check database probe failed: %s", exc)
        plan_count = None
        db_status = "unhealthy"

    return api_success(
        status="ok" if db_status == "healthy" else "degraded",
        service=settings.APP_NAME,
        database=db_status,
        plans=plan_count,
        paymentGateway=settings.PAYMENT_GATEWAY,
    )


@router.get("/health/live", response_model=dict)
async def liveness_check():
    """Kubernetes liveness probe."""
    return api_success(alive=True)
