"""Revolut sync engine: idempotent, stage-by-stage.

Stages (each independently invocable):
  accounts      refresh cached name/type on pockets already linked to an account
  balances      copy the provider balance onto every linked pocket
  transactions  upsert booked transactions keyed by revolut_transaction_id

``sync_all`` runs them in that order. A stage failure is recorded and the next
stage still runs; authentication failures abort the whole run. Every public
call opens one SyncLog row and finalizes it on the way out.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from functools import partial

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from budgetsync.core.clock import as_utc, utcnow
from budgetsync.core.config import Settings, settings as default_settings
from budgetsync.models.pocket import Pocket, Transaction
from budgetsync.models.revolut import SyncLog
from budgetsync.services.errors import (
    AUTH_ERRORS,
    AccountMissing,
    AuthExpired,
    RefreshFailed,
    RevolutError,
)
from budgetsync.services.revolut_client import RevolutClient, RevolutTransaction
from budgetsync.services.tokens import TokenManager

logger = logging.getLogger(__name__)

_UPSERT_CHUNK = 50

# Provider-sourced columns refreshed on re-delivery; category/notes stay user-owned
_UPSERT_COLUMNS = (
    "pocket_id",
    "revolut_account_id",
    "amount",
    "currency_code",
    "date",
    "description",
    "merchant_name",
    "transaction_type",
    "updated_at",
)


@dataclass
class SyncResult:
    sync_type: str
    records_synced: int = 0
    inserted: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stages_run: int = 0
    stages_failed: int = 0

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def status(self) -> str:
        if self.stages_run and self.stages_failed == self.stages_run:
            return "failed"
        if self.errors:
            return "partial"
        return "success"

    def merge(self, other: "SyncResult") -> None:
        self.records_synced += other.records_synced
        self.inserted += other.inserted
        self.updated += other.updated
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        self.stages_run += other.stages_run
        self.stages_failed += other.stages_failed


class SyncEngine:
    def __init__(
        self,
        db: AsyncSession,
        client: RevolutClient,
        settings: Settings | None = None,
        tokens: TokenManager | None = None,
    ):
        self.db = db
        self.client = client
        self.settings = settings or default_settings
        self.tokens = tokens or TokenManager(db, client, self.settings)
        self._access_tokens: dict[uuid.UUID, str] = {}

    # ─── Token handling ──────────────────────────────────────────────────

    async def _token(self, household_id: uuid.UUID) -> str:
        if household_id not in self._access_tokens:
            try:
                token = await self.tokens.ensure_valid_token(household_id)
            except RefreshFailed as exc:
                if exc.fatal:
                    raise
                # Another worker rotated the token; read it back
                token = await self.tokens.ensure_valid_token(household_id)
            self._access_tokens[household_id] = token
        return self._access_tokens[household_id]

    async def call_provider(self, household_id: uuid.UUID, fn):
        """Run ``fn(access_token)``; on AuthExpired refresh once and retry."""
        token = await self._token(household_id)
        try:
            return await fn(token)
        except AuthExpired:
            logger.info("Access token rejected for household %s; refreshing once", household_id)
            self._access_tokens.pop(household_id, None)
            try:
                token = await self.tokens.force_refresh(household_id)
            except RefreshFailed as exc:
                if exc.fatal:
                    raise
                token = await self.tokens.ensure_valid_token(household_id)
            self._access_tokens[household_id] = token
            return await fn(token)

    async def _linked_pockets(self, household_id: uuid.UUID) -> list[Pocket]:
        result = await self.db.execute(
            select(Pocket)
            .where(
                Pocket.household_id == household_id,
                Pocket.revolut_account_id.isnot(None),
            )
            .order_by(Pocket.created_at, Pocket.id)
        )
        return list(result.scalars().all())

    # ─── Stages ──────────────────────────────────────────────────────────

    async def _accounts_stage(self, household_id: uuid.UUID) -> SyncResult:
        result = SyncResult("accounts", stages_run=1)
        accounts = await self.call_provider(household_id, self.client.list_accounts)
        by_account = {p.revolut_account_id: p for p in await self._linked_pockets(household_id)}

        for account in accounts:
            pocket = by_account.get(account.account_id)
            if pocket is None:
                # Unlinked accounts wait for the explicit linking flow
                logger.debug("Revolut account %s is not linked to a pocket", account.account_id)
                continue
            pocket.revolut_account_name = account.name
            pocket.revolut_account_type = account.account_type

        result.records_synced = len(accounts)
        await self.tokens.mark_synced(household_id)
        await self.db.commit()
        return result

    async def _balances_stage(self, household_id: uuid.UUID) -> SyncResult:
        result = SyncResult("balances", stages_run=1)
        pockets = await self._linked_pockets(household_id)
        if not pockets:
            await self.tokens.mark_synced(household_id)
            await self.db.commit()
            return result

        accounts = await self.call_provider(household_id, self.client.list_accounts)
        present = {a.account_id for a in accounts}

        for pocket in pockets:
            account_id = pocket.revolut_account_id
            if account_id not in present:
                result.warnings.append(
                    f"Revolut account {account_id} for pocket {pocket.id} is no longer reported; balance left unchanged"
                )
                continue
            try:
                balance = await self.call_provider(
                    household_id, partial(self.client.get_balance, account_id=account_id)
                )
            except AccountMissing:
                result.warnings.append(
                    f"Revolut account {account_id} for pocket {pocket.id} has no balance; left unchanged"
                )
                continue
            except AUTH_ERRORS:
                raise
            except RevolutError as exc:
                result.errors.append(f"Error syncing balance for pocket {pocket.id}: {exc}")
                continue

            pocket.current_balance = balance.amount
            pocket.last_synced_at = utcnow()
            result.records_synced += 1

        await self.tokens.mark_synced(household_id)
        await self.db.commit()
        return result

    async def _transactions_stage(self, household_id: uuid.UUID) -> SyncResult:
        result = SyncResult("transactions", stages_run=1)
        pockets = await self._linked_pockets(household_id)
        started = utcnow()
        first_sync_from = started - timedelta(days=self.settings.transaction_lookback_days)

        for pocket in pockets:
            since = as_utc(pocket.last_transaction_sync_at) or first_sync_from
            try:
                listing = await self.call_provider(
                    household_id,
                    partial(
                        self.client.list_transactions,
                        account_id=pocket.revolut_account_id,
                        date_from=since.date(),
                    ),
                )
            except AccountMissing:
                result.warnings.append(
                    f"Revolut account {pocket.revolut_account_id} for pocket {pocket.id} is no longer reported"
                )
                continue
            except AUTH_ERRORS:
                raise
            except RevolutError as exc:
                result.errors.append(f"Error syncing transactions for pocket {pocket.id}: {exc}")
                continue

            inserted, updated = await self.upsert_transactions(household_id, pocket, listing.transactions)
            result.inserted += inserted
            result.updated += updated
            # No-op upserts count as synced
            result.records_synced += inserted + updated
            if listing.truncated:
                # Watermark stays put so the next run fetches the remainder
                result.warnings.append(
                    f"Transaction history for pocket {pocket.id} exceeded the page limit; "
                    "remaining transactions will be fetched on the next sync"
                )
            else:
                pocket.last_transaction_sync_at = started
            pocket.last_synced_at = utcnow()
            await self.db.commit()

        await self.tokens.mark_synced(household_id)
        await self.db.commit()
        return result

    async def upsert_transactions(
        self,
        household_id: uuid.UUID,
        pocket: Pocket,
        transactions: list[RevolutTransaction],
    ) -> tuple[int, int]:
        """Insert-or-update by revolut_transaction_id. Returns (inserted, updated)."""
        latest = {t.transaction_id: t for t in transactions}
        if not latest:
            return 0, 0

        existing_result = await self.db.execute(
            select(Transaction.revolut_transaction_id).where(
                Transaction.revolut_transaction_id.in_(list(latest))
            )
        )
        existing = set(existing_result.scalars().all())

        now = utcnow()
        rows = [
            {
                "id": uuid.uuid4(),
                "household_id": household_id,
                "pocket_id": pocket.id,
                "revolut_transaction_id": tx.transaction_id,
                "revolut_account_id": tx.account_id,
                "amount": tx.amount,
                "currency_code": tx.currency,
                "date": tx.booked_at,
                "description": tx.description,
                "merchant_name": tx.merchant_name,
                "transaction_type": tx.transaction_type,
                "category": tx.category,
                "is_imported": True,
                "created_at": now,
                "updated_at": now,
            }
            for tx in latest.values()
        ]

        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:
            raise RuntimeError(f"Transaction upsert is not supported on {dialect}")

        for i in range(0, len(rows), _UPSERT_CHUNK):
            stmt = insert(Transaction).values(rows[i:i + _UPSERT_CHUNK])
            stmt = stmt.on_conflict_do_update(
                index_elements=["revolut_transaction_id"],
                set_={col: stmt.excluded[col] for col in _UPSERT_COLUMNS},
            )
            await self.db.execute(stmt)

        inserted = len(latest.keys() - existing)
        return inserted, len(latest) - inserted

    # ─── Logging & orchestration ─────────────────────────────────────────

    async def _open_log(self, household_id: uuid.UUID, sync_type: str) -> uuid.UUID:
        log = SyncLog(
            household_id=household_id,
            sync_type=sync_type,
            status="running",
            started_at=utcnow(),
            errors=[],
            warnings=[],
        )
        self.db.add(log)
        await self.db.flush()
        log_id = log.id
        await self.db.commit()
        return log_id

    async def _close_log(self, log_id: uuid.UUID, result: SyncResult, status: str | None = None) -> None:
        log = await self.db.get(SyncLog, log_id)
        if log is None:
            logger.error("Sync log %s vanished before it could be finalized", log_id)
            return
        log.status = status or result.status
        log.records_synced = result.records_synced
        log.records_inserted = result.inserted
        log.errors = list(result.errors)
        log.warnings = list(result.warnings)
        log.completed_at = utcnow()
        await self.db.commit()

    async def _run_stage(self, name: str, household_id: uuid.UUID, stage) -> SyncResult:
        """Run one stage; provider/storage failures become a failed result, auth errors propagate."""
        try:
            return await stage(household_id)
        except AUTH_ERRORS:
            await self.db.rollback()
            raise
        except (RevolutError, SQLAlchemyError) as exc:
            await self.db.rollback()
            logger.warning("Revolut %s sync failed for household %s: %s", name, household_id, exc)
            return SyncResult(
                name,
                errors=[f"{name.capitalize()} sync failed: {exc}"],
                stages_run=1,
                stages_failed=1,
            )

    async def _run_logged(self, sync_type: str, household_id: uuid.UUID, stages) -> SyncResult:
        log_id = await self._open_log(household_id, sync_type)
        total = SyncResult(sync_type)
        try:
            for name, stage in stages:
                total.merge(await self._run_stage(name, household_id, stage))
        except AUTH_ERRORS as exc:
            total.errors.append(str(exc))
            await self._close_log(log_id, total, status="failed")
            logger.warning("Revolut %s sync aborted for household %s: %s", sync_type, household_id, exc)
            raise
        except Exception as exc:
            await self.db.rollback()
            total.errors.append(f"Unexpected error: {exc}")
            await self._close_log(log_id, total, status="failed")
            logger.exception("Revolut %s sync crashed for household %s", sync_type, household_id)
            raise

        await self._close_log(log_id, total)
        logger.info(
            "Revolut %s sync for household %s: %s, %d records, %d errors",
            sync_type, household_id, total.status, total.records_synced, len(total.errors),
        )
        return total

    async def sync_accounts(self, household_id: uuid.UUID) -> SyncResult:
        return await self._run_logged("accounts", household_id, [("accounts", self._accounts_stage)])

    async def sync_balances(self, household_id: uuid.UUID) -> SyncResult:
        return await self._run_logged("balances", household_id, [("balances", self._balances_stage)])

    async def sync_transactions(self, household_id: uuid.UUID) -> SyncResult:
        return await self._run_logged("transactions", household_id, [("transactions", self._transactions_stage)])

    async def sync_all(self, household_id: uuid.UUID) -> SyncResult:
        # Fixed order: later stages read the linked-account set
        return await self._run_logged(
            "all",
            household_id,
            [
                ("accounts", self._accounts_stage),
                ("balances", self._balances_stage),
                ("transactions", self._transactions_stage),
            ],
        )

    async def run(self, sync_type: str, household_id: uuid.UUID) -> SyncResult:
        runners = {
            "all": self.sync_all,
            "accounts": self.sync_accounts,
            "balances": self.sync_balances,
            "transactions": self.sync_transactions,
        }
        return await runners[sync_type](household_id)
