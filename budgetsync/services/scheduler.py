"""Scheduled Revolut sync across every household with an active connection.

Triggered by Celery beat (daily) or the bearer-protected cron endpoint. Each
household runs ``sync_all`` in its own session so logs never interleave; a
bounded number of households run concurrently. One household failing never
stops the rest, and there is no immediate retry: the next tick is the retry.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from budgetsync.core.clock import utcnow
from budgetsync.core.config import Settings, settings as default_settings
from budgetsync.models.revolut import RevolutConnection
from budgetsync.models.user import Household
from budgetsync.services.revolut_client import RevolutClient
from budgetsync.services.sync import SyncEngine
from budgetsync.worker import celery_app

logger = logging.getLogger(__name__)


@dataclass
class HouseholdOutcome:
    household_id: uuid.UUID
    success: bool
    records_synced: int = 0
    errors: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class SchedulerSummary:
    started_at: datetime
    results: list[HouseholdOutcome] = field(default_factory=list)

    @property
    def total_households(self) -> int:
        return len(self.results)

    @property
    def successful_syncs(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed_syncs(self) -> int:
        return self.total_households - self.successful_syncs

    @property
    def total_records_synced(self) -> int:
        return sum(r.records_synced for r in self.results)


async def active_household_ids(db: AsyncSession) -> list[uuid.UUID]:
    result = await db.execute(
        select(RevolutConnection.household_id)
        .join(Household, Household.id == RevolutConnection.household_id)
        .where(RevolutConnection.is_active == True)  # noqa: E712
        .distinct()
    )
    return list(result.scalars().all())


async def _sync_household(
    session_factory: async_sessionmaker,
    client: RevolutClient,
    settings: Settings,
    household_id: uuid.UUID,
) -> HouseholdOutcome:
    logger.info("Syncing household %s", household_id)
    async with session_factory() as db:
        try:
            result = await SyncEngine(db, client, settings).sync_all(household_id)
        except Exception as exc:
            # Isolation boundary: one household's failure is reported, not raised
            logger.error("Failed to sync household %s: %s", household_id, exc)
            return HouseholdOutcome(household_id, success=False, error=str(exc))

    return HouseholdOutcome(
        household_id,
        success=result.success,
        records_synced=result.records_synced,
        errors=result.errors,
    )


async def run_scheduled_sync(
    session_factory: async_sessionmaker,
    client: RevolutClient,
    settings: Settings | None = None,
    concurrency: int | None = None,
) -> SchedulerSummary:
    settings = settings or default_settings
    summary = SchedulerSummary(started_at=utcnow())

    async with session_factory() as db:
        household_ids = await active_household_ids(db)

    limit = asyncio.Semaphore(max(1, concurrency or settings.sync_concurrency))

    async def bounded(household_id: uuid.UUID) -> HouseholdOutcome:
        async with limit:
            return await _sync_household(session_factory, client, settings, household_id)

    summary.results = list(await asyncio.gather(*(bounded(h) for h in household_ids)))
    logger.info(
        "Scheduled sync completed: %d/%d households, %d records",
        summary.successful_syncs, summary.total_households, summary.total_records_synced,
    )
    return summary


async def _run_in_worker() -> SchedulerSummary:
    engine = create_async_engine(default_settings.database_url, poolclass=NullPool)
    try:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        return await run_scheduled_sync(factory, RevolutClient())
    finally:
        await engine.dispose()


@celery_app.task(name="budgetsync.services.scheduler.sync_all_households")
def sync_all_households() -> dict:
    """Celery task: sync every household with an active Revolut connection."""
    logger.info("Starting scheduled Revolut sync for all households")
    summary = asyncio.run(_run_in_worker())
    return {
        "total_households": summary.total_households,
        "successful_syncs": summary.successful_syncs,
        "failed_syncs": summary.failed_syncs,
        "total_records_synced": summary.total_records_synced,
    }
