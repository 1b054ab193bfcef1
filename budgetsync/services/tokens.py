"""Token lifecycle for Revolut connections.

The TokenManager is the only writer of ``revolut_connections`` rows. Refreshes
use a conditional update keyed on the refresh token that was spent, so two
workers racing on the same household cannot both persist a token pair.
"""

import logging
import uuid
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from budgetsync.core.clock import as_utc, utcnow
from budgetsync.core.config import Settings, settings as default_settings
from budgetsync.core.security import decrypt_value, encrypt_value
from budgetsync.models.revolut import RevolutConnection
from budgetsync.services.errors import NoActiveConnection, RefreshFailed
from budgetsync.services.revolut_client import RevolutClient, TokenGrant

logger = logging.getLogger(__name__)

REFRESH_FAILED = "refresh_failed"


class TokenManager:
    def __init__(self, db: AsyncSession, client: RevolutClient, settings: Settings | None = None):
        self.db = db
        self.client = client
        self.settings = settings or default_settings

    def _encrypt(self, value: str) -> str:
        return encrypt_value(value, self.settings.encryption_key)

    def _decrypt(self, value: str) -> str:
        return decrypt_value(value, self.settings.encryption_key)

    async def active_connection(self, household_id: uuid.UUID) -> RevolutConnection | None:
        result = await self.db.execute(
            select(RevolutConnection)
            .where(
                RevolutConnection.household_id == household_id,
                RevolutConnection.is_active == True,  # noqa: E712
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _require_connection(self, household_id: uuid.UUID) -> RevolutConnection:
        connection = await self.active_connection(household_id)
        if connection is None:
            raise NoActiveConnection()
        if connection.error_code == REFRESH_FAILED:
            raise RefreshFailed()
        return connection

    # ─── Token access ─────────────────────────────────────────────────────

    async def ensure_valid_token(self, household_id: uuid.UUID) -> str:
        """Return a usable access token, refreshing it when near expiry."""
        connection = await self._require_connection(household_id)
        margin = timedelta(seconds=self.settings.token_refresh_margin_seconds)
        if as_utc(connection.expires_at) - margin > utcnow():
            return self._decrypt(connection.encrypted_access_token)

        logger.info("Access token for household %s expired, refreshing", household_id)
        return await self._refresh(connection)

    async def force_refresh(self, household_id: uuid.UUID) -> str:
        connection = await self._require_connection(household_id)
        return await self._refresh(connection)

    async def _refresh(self, connection: RevolutConnection) -> str:
        connection_id = connection.id
        spent = connection.encrypted_refresh_token

        try:
            grant = await self.client.refresh(self._decrypt(spent))
        except RefreshFailed as exc:
            # Mark unusable only if nobody rotated the token in the meantime
            result = await self.db.execute(
                update(RevolutConnection)
                .where(
                    RevolutConnection.id == connection_id,
                    RevolutConnection.encrypted_refresh_token == spent,
                )
                .values(error_code=REFRESH_FAILED)
            )
            await self.db.commit()
            if result.rowcount == 0:
                logger.info("Refresh for connection %s lost a race; token already rotated", connection_id)
                raise RefreshFailed("Connection was refreshed concurrently", fatal=False) from exc
            logger.warning("Revolut rejected refresh token for connection %s: %s", connection_id, exc)
            raise

        # Without a rotated refresh token the current one stays valid
        rotated = self._encrypt(grant.refresh_token) if grant.refresh_token else spent
        result = await self.db.execute(
            update(RevolutConnection)
            .where(
                RevolutConnection.id == connection_id,
                RevolutConnection.is_active == True,  # noqa: E712
                RevolutConnection.encrypted_refresh_token == spent,
            )
            .values(
                encrypted_access_token=self._encrypt(grant.access_token),
                encrypted_refresh_token=rotated,
                expires_at=utcnow() + timedelta(seconds=grant.expires_in),
                error_code=None,
            )
        )
        if result.rowcount == 0:
            logger.info("Discarding refresh for connection %s; another worker stored first", connection_id)
            raise RefreshFailed("Connection was refreshed concurrently", fatal=False)

        await self.db.commit()
        logger.info("Refreshed Revolut token for connection %s", connection_id)
        return grant.access_token

    # ─── Connect / disconnect ─────────────────────────────────────────────

    async def exchange_authorization_code(self, code: str, redirect_uri: str) -> TokenGrant:
        return await self.client.exchange_code(code, redirect_uri)

    async def connect(self, household_id: uuid.UUID, code: str, redirect_uri: str) -> RevolutConnection:
        """Exchange the code and make the result the household's only active connection."""
        grant = await self.exchange_authorization_code(code, redirect_uri)

        await self.db.execute(
            update(RevolutConnection)
            .where(
                RevolutConnection.household_id == household_id,
                RevolutConnection.is_active == True,  # noqa: E712
            )
            .values(is_active=False)
        )
        now = utcnow()
        connection = RevolutConnection(
            household_id=household_id,
            encrypted_access_token=self._encrypt(grant.access_token),
            encrypted_refresh_token=self._encrypt(grant.refresh_token),
            expires_at=now + timedelta(seconds=grant.expires_in),
            consent_id=grant.consent_id,
            is_active=True,
            connected_at=now,
        )
        self.db.add(connection)
        await self.db.flush()
        await self.db.commit()
        logger.info("Household %s connected Revolut (connection %s)", household_id, connection.id)
        return connection

    async def disconnect(self, household_id: uuid.UUID) -> int:
        """Deactivate the household's connection. Pockets and transactions are untouched."""
        result = await self.db.execute(
            update(RevolutConnection)
            .where(
                RevolutConnection.household_id == household_id,
                RevolutConnection.is_active == True,  # noqa: E712
            )
            .values(is_active=False)
        )
        if result.rowcount == 0:
            raise NoActiveConnection()
        await self.db.commit()
        logger.info("Household %s disconnected Revolut", household_id)
        return result.rowcount

    async def mark_synced(self, household_id: uuid.UUID) -> None:
        await self.db.execute(
            update(RevolutConnection)
            .where(
                RevolutConnection.household_id == household_id,
                RevolutConnection.is_active == True,  # noqa: E712
            )
            .values(last_synced_at=utcnow())
        )
