import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConnectResponse(CamelModel):
    auth_url: str


class DisconnectResponse(CamelModel):
    success: bool = True
    message: str = "Revolut disconnected successfully"


class SyncRequest(CamelModel):
    type: str = "all"


class SyncResponse(CamelModel):
    success: bool
    type: str
    records_synced: int
    inserted: int = 0
    updated: int = 0
    errors: list[str] | None = None
    warnings: list[str] | None = None


class RefreshResponse(CamelModel):
    success: bool = True
    message: str = "Token refreshed successfully"


class LatestSync(CamelModel):
    type: str
    status: str
    records_synced: int
    started_at: datetime
    completed_at: datetime | None
    errors: list[str] = []


class StatusResponse(CamelModel):
    connected: bool
    connected_at: datetime | None = None
    last_synced_at: datetime | None = None
    token_expired: bool = False
    expires_at: datetime | None = None
    needs_reauth: bool = False
    linked_accounts: int = 0
    latest_sync: LatestSync | None = None


class WebhookAck(CamelModel):
    received: bool = True


class AccountResponse(CamelModel):
    account_id: str
    name: str
    currency: str
    account_type: str
    balance: Decimal
    iban: str | None = None
    pocket_id: uuid.UUID | None = None
    pocket_name: str | None = None


class LinkRequest(CamelModel):
    pocket_id: uuid.UUID | None = None


class PocketResponse(CamelModel):
    id: uuid.UUID
    name: str
    current_balance: Decimal
    revolut_account_id: str | None
    last_synced_at: datetime | None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class HouseholdSyncResult(BaseModel):
    household_id: uuid.UUID
    success: bool
    records_synced: int = 0
    errors: list[str] | None = None
    error: str | None = None


class CronSummary(BaseModel):
    total_households: int
    successful_syncs: int
    failed_syncs: int
    total_records_synced: int


class CronResponse(BaseModel):
    success: bool = True
    timestamp: datetime
    summary: CronSummary
    results: list[HouseholdSyncResult]
