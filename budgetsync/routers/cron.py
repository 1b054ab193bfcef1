import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker

from budgetsync.core.clock import utcnow
from budgetsync.core.config import Settings, get_settings
from budgetsync.core.database import get_session_factory
from budgetsync.core.security import secrets_match
from budgetsync.schemas.revolut import CronResponse, CronSummary, HouseholdSyncResult
from budgetsync.services.revolut_client import RevolutClient, get_revolut_client
from budgetsync.services.scheduler import run_scheduled_sync

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


@router.get("/sync-revolut", response_model=CronResponse)
async def cron_sync_revolut(
    request: Request,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    client: RevolutClient = Depends(get_revolut_client),
    settings: Settings = Depends(get_settings),
):
    auth = request.headers.get("Authorization", "")
    provided = auth[7:] if auth.startswith("Bearer ") else None
    if not secrets_match(provided, settings.cron_secret):
        return JSONResponse(status_code=401, content={"error": "Unauthorized", "code": "unauthorized"})

    summary = await run_scheduled_sync(session_factory, client, settings)
    return CronResponse(
        timestamp=utcnow(),
        summary=CronSummary(
            total_households=summary.total_households,
            successful_syncs=summary.successful_syncs,
            failed_syncs=summary.failed_syncs,
            total_records_synced=summary.total_records_synced,
        ),
        results=[
            HouseholdSyncResult(
                household_id=r.household_id,
                success=r.success,
                records_synced=r.records_synced,
                errors=r.errors or None,
                error=r.error,
            )
            for r in summary.results
        ],
    )
