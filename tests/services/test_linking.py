"""
Explicit account ↔ pocket linking.
"""
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from budgetsync.models.pocket import Pocket, Transaction
from budgetsync.services.errors import AccountAlreadyLinked, AccountMissing, PocketNotFound
from budgetsync.services.linking import AccountLinker
from budgetsync.services.sync import SyncEngine
from budgetsync.services.tokens import TokenManager
from conftest import make_tx


@pytest.fixture
async def linker(db, client, settings, fake, household_id, make_connection):
    fake.add_account("acc-1", name="Main", balance="500.00", transactions=[make_tx("tx-1")])
    fake.add_account("acc-2", name="Travel", balance="20.00")
    await make_connection(household_id)
    return AccountLinker(db, client, settings)


class TestLink:
    async def test_link_creates_pocket_from_account(self, linker, household_id):
        pocket = await linker.link_account(household_id, "acc-1")

        assert pocket.name == "Main"
        assert pocket.current_balance == Decimal("500.00")
        assert pocket.revolut_account_id == "acc-1"
        assert pocket.revolut_account_type == "CURRENT"
        assert pocket.last_transaction_sync_at is None

    async def test_link_existing_pocket(self, linker, household_id, make_pocket):
        pocket = await make_pocket(household_id, name="Holidays")

        linked = await linker.link_account(household_id, "acc-2", pocket.id)

        assert linked.id == pocket.id
        assert linked.name == "Holidays"
        assert linked.revolut_account_id == "acc-2"

    async def test_relinking_same_pocket_is_a_no_op(self, linker, household_id):
        pocket = await linker.link_account(household_id, "acc-1")
        again = await linker.link_account(household_id, "acc-1", pocket.id)
        assert again.id == pocket.id

    async def test_account_linked_elsewhere(self, linker, household_id, make_pocket):
        await linker.link_account(household_id, "acc-1")
        other = await make_pocket(household_id, name="Other")

        with pytest.raises(AccountAlreadyLinked):
            await linker.link_account(household_id, "acc-1", other.id)

    async def test_unknown_account(self, linker, household_id):
        with pytest.raises(AccountMissing):
            await linker.link_account(household_id, "acc-404")

    async def test_pocket_of_another_household(self, linker, household_id, make_household, make_pocket):
        foreign = await make_pocket(await make_household(), name="Not yours")
        with pytest.raises(PocketNotFound):
            await linker.link_account(household_id, "acc-1", foreign.id)

    async def test_list_accounts_marks_links(self, linker, household_id):
        pocket = await linker.link_account(household_id, "acc-1")

        listed = {item.account.account_id: item for item in await linker.list_accounts(household_id)}

        assert listed["acc-1"].pocket_id == pocket.id
        assert listed["acc-1"].pocket_name == "Main"
        assert listed["acc-2"].pocket_id is None


class TestUnlink:
    async def test_unlink_keeps_pocket_and_history(self, linker, db, client, settings, household_id):
        pocket = await linker.link_account(household_id, "acc-1")
        await SyncEngine(db, client, settings).sync_transactions(household_id)

        await linker.unlink_account(household_id, "acc-1")

        refreshed = await db.get(Pocket, pocket.id, populate_existing=True)
        assert refreshed.revolut_account_id is None
        assert refreshed.last_synced_at is None
        assert await db.scalar(select(func.count(Transaction.id)).where(Transaction.pocket_id == pocket.id)) == 1

    async def test_unlink_unknown_account(self, linker, household_id):
        with pytest.raises(PocketNotFound):
            await linker.unlink_account(household_id, "acc-1")

    async def test_disconnect_keeps_pockets(self, linker, db, client, settings, household_id):
        pocket = await linker.link_account(household_id, "acc-1")

        await TokenManager(db, client, settings).disconnect(household_id)

        refreshed = await db.get(Pocket, pocket.id, populate_existing=True)
        assert refreshed is not None
        assert refreshed.revolut_account_id == "acc-1"
