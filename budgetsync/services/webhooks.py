"""Revolut webhook processing.

The HTTP route verifies the signature over the raw body and hands the parsed
event to a ``WebhookDispatcher``; the default dispatcher enqueues a Celery task
so processing is retried on transient provider failures and never delays the
acknowledgement sent back to Revolut.

Handled event types:
  transaction.created  → transactions sync for the household owning the account
  balance.updated      → write the pushed balance straight onto the pocket
  account.updated      → balances sync for the owning household
"""

import asyncio
import json
import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from budgetsync.core.clock import utcnow
from budgetsync.core.config import Settings, settings as default_settings
from budgetsync.core.security import verify_signature
from budgetsync.models.pocket import Pocket
from budgetsync.services.errors import AUTH_ERRORS, InvalidSignature, ProviderUnavailable
from budgetsync.services.revolut_client import RevolutClient
from budgetsync.services.sync import SyncEngine
from budgetsync.worker import celery_app

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Revolut-Signature"


def verify_webhook(raw_body: bytes, signature: str | None, secret: str) -> None:
    """Raise InvalidSignature unless ``signature`` is the HMAC of the untouched body."""
    if not verify_signature(raw_body, signature, secret):
        raise InvalidSignature("Missing signature" if not signature else None)


def parse_event(raw_body: bytes) -> dict | None:
    try:
        event = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return None
    return event if isinstance(event, dict) else None


class WebhookProcessor:
    def __init__(self, db: AsyncSession, client: RevolutClient, settings: Settings | None = None):
        self.db = db
        self.client = client
        self.settings = settings or default_settings

    async def _owner_of(self, account_id: str | None) -> uuid.UUID | None:
        if not account_id:
            return None
        result = await self.db.execute(
            select(Pocket.household_id).where(Pocket.revolut_account_id == account_id)
        )
        return result.scalar_one_or_none()

    async def process(self, event: dict) -> str:
        """Apply one event. Returns a short outcome label for logging/tests."""
        event_type = event.get("type")
        data = event.get("data") or {}
        handlers = {
            "transaction.created": self._transaction_created,
            "balance.updated": self._balance_updated,
            "account.updated": self._account_updated,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info("Ignoring unknown Revolut webhook event type: %s", event_type)
            return "ignored"

        try:
            return await handler(data)
        except AUTH_ERRORS as exc:
            # Only a reconnect clears these
            logger.warning("Webhook %s skipped: %s", event_type, exc)
            return "auth_failed"

    async def _transaction_created(self, data: dict) -> str:
        account_id = data.get("accountId")
        household_id = await self._owner_of(account_id)
        if household_id is None:
            logger.info("No pocket linked to Revolut account %s; transaction event dropped", account_id)
            return "no_pocket"

        result = await SyncEngine(self.db, self.client, self.settings).sync_transactions(household_id)
        if result.status == "failed":
            raise ProviderUnavailable("; ".join(result.errors))
        logger.info("Transaction %s synced via webhook", data.get("transactionId"))
        return "synced"

    async def _balance_updated(self, data: dict) -> str:
        account_id = data.get("accountId")
        balance = data.get("balance") or {}
        try:
            amount = Decimal(str(balance["amount"]))
        except (KeyError, InvalidOperation, TypeError, ValueError):
            logger.warning("balance.updated for %s carried no usable amount", account_id)
            return "invalid"
        if balance.get("creditDebitIndicator") in ("DBIT", "DEBIT"):
            amount = -abs(amount)

        result = await self.db.execute(
            update(Pocket)
            .where(Pocket.revolut_account_id == account_id)
            .values(current_balance=amount, last_synced_at=utcnow())
        )
        await self.db.commit()
        if result.rowcount == 0:
            logger.info("No pocket linked to Revolut account %s; balance event dropped", account_id)
            return "no_pocket"
        logger.info("Balance updated via webhook for account %s", account_id)
        return "updated"

    async def _account_updated(self, data: dict) -> str:
        account_id = data.get("accountId")
        household_id = await self._owner_of(account_id)
        if household_id is None:
            logger.info("No pocket linked to Revolut account %s; account event dropped", account_id)
            return "no_pocket"

        result = await SyncEngine(self.db, self.client, self.settings).sync_balances(household_id)
        if result.status == "failed":
            raise ProviderUnavailable("; ".join(result.errors))
        return "synced"


# ─── Dispatch ────────────────────────────────────────────────────────────────

class WebhookDispatcher(Protocol):
    def dispatch(self, event: dict) -> None: ...


class CeleryWebhookDispatcher:
    def dispatch(self, event: dict) -> None:
        process_webhook_event.delay(event)


def get_webhook_dispatcher() -> WebhookDispatcher:
    return CeleryWebhookDispatcher()


async def _process_in_worker(event: dict) -> str:
    # Fresh engine per task: asyncpg pools are bound to the loop that made them
    engine = create_async_engine(default_settings.database_url, poolclass=NullPool)
    try:
        async with async_sessionmaker(engine, expire_on_commit=False)() as db:
            return await WebhookProcessor(db, RevolutClient()).process(event)
    finally:
        await engine.dispose()


@celery_app.task(
    name="budgetsync.services.webhooks.process_webhook_event",
    autoretry_for=(ProviderUnavailable,),
    retry_backoff=True,
    max_retries=5,
)
def process_webhook_event(event: dict) -> str:
    """Celery task: apply one verified Revolut webhook event."""
    logger.info("Processing Revolut webhook %s (%s)", event.get("id"), event.get("type"))
    return asyncio.run(_process_in_worker(event))
