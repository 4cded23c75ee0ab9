"""
Health check endpoints
"""

from typing import Any
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
import logging

from vera.api.deps import get_gateway, get_session
from vera.config import settings
from vera.services.paystack import PaymentGateway

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/live")
async def liveness() -> Any:
    """
    Kubernetes liveness probe
    """
    return {"status": "alive", "service": "vera-ticketing"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway)
) -> Any:
    """
    Kubernetes readiness probe
    """
    checks = {"database": False, "api": True}

    try:
        result = await db.execute(text("SELECT 1"))
        checks["database"] = result.scalar() == 1
    except Exception as e:
        logger.warning(f"Readiness database check failed: {e}")

    healthy = all(checks.values())
    body = {
        "status": "ready" if healthy else "not ready",
        "checks": checks,
        "payment_gateway": "configured" if gateway.is_configured else (
            "bypass" if settings.paystack_bypass_allowed else "missing"
        ),
        "version": settings.APP_VERSION,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
