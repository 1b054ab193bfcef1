"""Explicit linking of Revolut accounts to pockets.

Background sync never creates pockets; this is the only path that does.
Unlinking keeps the pocket and its imported transactions.
"""

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from budgetsync.core.clock import utcnow
from budgetsync.core.config import Settings
from budgetsync.models.pocket import Pocket
from budgetsync.services.errors import AccountAlreadyLinked, AccountMissing, PocketNotFound
from budgetsync.services.revolut_client import RevolutAccount, RevolutClient
from budgetsync.services.sync import SyncEngine

logger = logging.getLogger(__name__)


@dataclass
class LinkedAccount:
    account: RevolutAccount
    pocket_id: uuid.UUID | None = None
    pocket_name: str | None = None


class AccountLinker:
    def __init__(self, db: AsyncSession, client: RevolutClient, settings: Settings | None = None):
        self.db = db
        self.engine = SyncEngine(db, client, settings)
        self.client = client

    async def _pocket_for_account(self, account_id: str) -> Pocket | None:
        result = await self.db.execute(select(Pocket).where(Pocket.revolut_account_id == account_id))
        return result.scalar_one_or_none()

    async def list_accounts(self, household_id: uuid.UUID) -> list[LinkedAccount]:
        accounts = await self.engine.call_provider(household_id, self.client.list_accounts)
        result = await self.db.execute(
            select(Pocket).where(
                Pocket.household_id == household_id,
                Pocket.revolut_account_id.isnot(None),
            )
        )
        by_account = {p.revolut_account_id: p for p in result.scalars().all()}
        out = []
        for account in accounts:
            pocket = by_account.get(account.account_id)
            out.append(LinkedAccount(
                account=account,
                pocket_id=pocket.id if pocket else None,
                pocket_name=pocket.name if pocket else None,
            ))
        return out

    async def link_account(
        self,
        household_id: uuid.UUID,
        account_id: str,
        pocket_id: uuid.UUID | None = None,
    ) -> Pocket:
        """Link to an existing pocket, or create one from the account when no pocket is given."""
        accounts = await self.engine.call_provider(household_id, self.client.list_accounts)
        account = next((a for a in accounts if a.account_id == account_id), None)
        if account is None:
            raise AccountMissing(f"Revolut account {account_id} not found")

        owner = await self._pocket_for_account(account_id)
        if owner is not None:
            if pocket_id is not None and owner.id == pocket_id:
                return owner
            raise AccountAlreadyLinked()

        now = utcnow()
        if pocket_id is None:
            pocket = Pocket(
                household_id=household_id,
                name=account.name,
                current_balance=account.balance,
                currency_code=account.currency,
                target_amount=0,
            )
            self.db.add(pocket)
        else:
            result = await self.db.execute(
                select(Pocket).where(Pocket.id == pocket_id, Pocket.household_id == household_id)
            )
            pocket = result.scalar_one_or_none()
            if pocket is None:
                raise PocketNotFound()

        pocket.revolut_account_id = account_id
        pocket.revolut_account_name = account.name
        pocket.revolut_account_type = account.account_type
        pocket.last_synced_at = now
        pocket.last_transaction_sync_at = None
        await self.db.flush()
        await self.db.commit()
        logger.info("Linked Revolut account %s to pocket %s", account_id, pocket.id)
        return pocket

    async def unlink_account(self, household_id: uuid.UUID, account_id: str) -> Pocket:
        result = await self.db.execute(
            select(Pocket).where(
                Pocket.household_id == household_id,
                Pocket.revolut_account_id == account_id,
            )
        )
        pocket = result.scalar_one_or_none()
        if pocket is None:
            raise PocketNotFound(f"No pocket is linked to Revolut account {account_id}")

        pocket.revolut_account_id = None
        pocket.revolut_account_name = None
        pocket.revolut_account_type = None
        pocket.last_synced_at = None
        pocket.last_transaction_sync_at = None
        await self.db.commit()
        logger.info("Unlinked Revolut account %s from pocket %s", account_id, pocket.id)
        return pocket
