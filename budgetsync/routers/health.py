from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from budgetsync.core.config import Settings, get_settings
from budgetsync.core.database import get_db
from budgetsync.models.revolut import RevolutConnection

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(settings: Settings = Depends(get_settings)):
    return {
        "status": "ok",
        "environment": settings.environment,
        "revolut_configured": bool(settings.revolut_client_id and settings.revolut_client_secret),
        "webhooks_enabled": bool(settings.revolut_webhook_secret),
    }


@router.get("/health/db")
async def health_db(db: AsyncSession = Depends(get_db)):
    active = await db.scalar(
        select(func.count(RevolutConnection.id)).where(RevolutConnection.is_active == True)  # noqa: E712
    )
    return {"status": "ok", "database": "connected", "active_connections": active or 0}
