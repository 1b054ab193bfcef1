"""Revolut integration router.

OAuth flow:
  1. GET  /revolut/connect   → returns the provider auth URL, sets the state cookies.
  2. GET  /revolut/callback  → verifies state, exchanges the code, redirects to /settings.
Sync:
  POST /revolut/sync {type}   all | accounts | balances | transactions
  POST /revolut/webhook      signed push events, acknowledged before processing
"""

import logging
import re
import uuid

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from budgetsync.core.clock import as_utc, utcnow
from budgetsync.core.config import Settings, get_settings
from budgetsync.core.database import get_db
from budgetsync.core.deps import get_current_user
from budgetsync.core.ratelimit import limiter
from budgetsync.core.redis import StateStore, get_state_store
from budgetsync.core.security import generate_oauth_state, secrets_match
from budgetsync.models.pocket import Pocket
from budgetsync.models.revolut import SYNC_TYPES, SyncLog
from budgetsync.models.user import User
from budgetsync.schemas.revolut import (
    AccountResponse,
    ConnectResponse,
    DisconnectResponse,
    LatestSync,
    LinkRequest,
    PocketResponse,
    RefreshResponse,
    StatusResponse,
    SyncRequest,
    SyncResponse,
    WebhookAck,
)
from budgetsync.services.errors import (
    InvalidGrant,
    InvalidState,
    NoActiveConnection,
    ProviderUnavailable,
    RevolutError,
)
from budgetsync.services.linking import AccountLinker
from budgetsync.services.revolut_client import RevolutClient, get_revolut_client
from budgetsync.services.sync import SyncEngine
from budgetsync.services.tokens import REFRESH_FAILED, TokenManager
from budgetsync.services.webhooks import (
    SIGNATURE_HEADER,
    WebhookDispatcher,
    get_webhook_dispatcher,
    parse_event,
    verify_webhook,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/revolut", tags=["revolut"])

STATE_COOKIE = "revolut_oauth_state"
HOUSEHOLD_COOKIE = "revolut_oauth_household"


# ─── Helpers ───────────────────────────────────────────────────────────────

def _redirect_uri(request: Request, settings: Settings) -> str:
    return settings.revolut_redirect_uri or str(request.url_for("revolut_callback"))


def _set_state_cookie(response: Response, key: str, value: str, settings: Settings) -> None:
    response.set_cookie(
        key=key,
        value=value,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        max_age=settings.oauth_state_ttl_seconds,
        path="/",
    )


def _settings_redirect(settings: Settings, query: str) -> RedirectResponse:
    response = RedirectResponse(f"{settings.frontend_url}/settings?{query}", status_code=302)
    response.delete_cookie(STATE_COOKIE, path="/")
    response.delete_cookie(HOUSEHOLD_COOKIE, path="/")
    return response


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9_]+", "_", value.lower()).strip("_")[:50] or "unknown"


async def _verify_state(
    store: StateStore,
    query_state: str,
    cookie_state: str | None,
    cookie_household: str,
) -> None:
    if not secrets_match(cookie_state, query_state):
        raise InvalidState()
    bound_household = await store.get(query_state)
    if bound_household is None or not secrets_match(bound_household, cookie_household):
        raise InvalidState("OAuth state expired or bound to another household")
    # Single use
    await store.delete(query_state)


# ─── OAuth ─────────────────────────────────────────────────────────────────

@router.get("/connect", response_model=ConnectResponse)
@limiter.limit("10/minute")
async def connect(
    request: Request,
    response: Response,
    user: User = Depends(get_current_user),
    store: StateStore = Depends(get_state_store),
    client: RevolutClient = Depends(get_revolut_client),
    settings: Settings = Depends(get_settings),
):
    state = generate_oauth_state()
    household_id = str(user.household_id)
    await store.put(state, household_id, settings.oauth_state_ttl_seconds)

    _set_state_cookie(response, STATE_COOKIE, state, settings)
    _set_state_cookie(response, HOUSEHOLD_COOKIE, household_id, settings)

    return ConnectResponse(auth_url=client.authorization_url(state, _redirect_uri(request, settings)))


@router.get("/callback", name="revolut_callback")
async def callback(
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    store: StateStore = Depends(get_state_store),
    client: RevolutClient = Depends(get_revolut_client),
    settings: Settings = Depends(get_settings),
):
    if error:
        logger.warning("Revolut OAuth error: %s", error)
        return _settings_redirect(settings, f"error=revolut_{_slug(error)}")

    if not code or not state:
        return _settings_redirect(settings, "error=revolut_invalid_callback")

    cookie_household = request.cookies.get(HOUSEHOLD_COOKIE)
    if not cookie_household:
        return _settings_redirect(settings, "error=revolut_missing_household")

    try:
        await _verify_state(store, state, request.cookies.get(STATE_COOKIE), cookie_household)
        household_id = uuid.UUID(cookie_household)
    except InvalidState as exc:
        logger.warning("Revolut callback rejected: %s", exc)
        return _settings_redirect(settings, "error=revolut_invalid_state")
    except ValueError:
        return _settings_redirect(settings, "error=revolut_missing_household")

    try:
        await TokenManager(db, client, settings).connect(household_id, code, _redirect_uri(request, settings))
    except InvalidGrant as exc:
        logger.warning("Revolut code exchange rejected for household %s: %s", household_id, exc)
        return _settings_redirect(settings, "error=revolut_exchange_failed")
    except ProviderUnavailable as exc:
        logger.warning("Revolut unavailable during code exchange: %s", exc)
        return _settings_redirect(settings, "error=revolut_provider_unavailable")
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Failed to store Revolut connection for household %s", household_id)
        return _settings_redirect(settings, "error=revolut_storage_failed")

    return _settings_redirect(settings, "success=revolut_connected")


@router.post("/disconnect", response_model=DisconnectResponse)
async def disconnect(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client: RevolutClient = Depends(get_revolut_client),
    settings: Settings = Depends(get_settings),
):
    # Pockets keep revolut_account_id; a reconnect resumes syncing them
    await TokenManager(db, client, settings).disconnect(user.household_id)
    return DisconnectResponse()


@router.post("/refresh", response_model=RefreshResponse)
@limiter.limit("10/minute")
async def refresh(
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client: RevolutClient = Depends(get_revolut_client),
    settings: Settings = Depends(get_settings),
):
    try:
        await TokenManager(db, client, settings).force_refresh(user.household_id)
    except NoActiveConnection:
        raise
    except RevolutError as exc:
        logger.warning("Manual token refresh failed for household %s: %s", user.household_id, exc)
        return JSONResponse(status_code=500, content={"error": exc.message, "code": exc.code})
    return RefreshResponse()


# ─── Sync ──────────────────────────────────────────────────────────────────

@router.post("/sync", response_model=SyncResponse, response_model_exclude_none=True)
@limiter.limit("10/minute")
async def sync(
    request: Request,
    payload: SyncRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client: RevolutClient = Depends(get_revolut_client),
    settings: Settings = Depends(get_settings),
):
    sync_type = (payload or SyncRequest()).type
    if sync_type not in SYNC_TYPES:
        return JSONResponse(status_code=400, content={"error": "Invalid sync type", "code": "invalid_sync_type"})

    engine = SyncEngine(db, client, settings)
    if await engine.tokens.active_connection(user.household_id) is None:
        raise NoActiveConnection()

    result = await engine.run(sync_type, user.household_id)
    return SyncResponse(
        success=result.success,
        type=sync_type,
        records_synced=result.records_synced,
        inserted=result.inserted,
        updated=result.updated,
        errors=result.errors or None,
        warnings=result.warnings or None,
    )


@router.get("/status", response_model=StatusResponse)
async def connection_status(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client: RevolutClient = Depends(get_revolut_client),
    settings: Settings = Depends(get_settings),
):
    connection = await TokenManager(db, client, settings).active_connection(user.household_id)
    if connection is None:
        return StatusResponse(connected=False)

    latest = (
        await db.execute(
            select(SyncLog)
            .where(SyncLog.household_id == user.household_id)
            .order_by(SyncLog.started_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()

    linked = await db.scalar(
        select(func.count(Pocket.id)).where(
            Pocket.household_id == user.household_id,
            Pocket.revolut_account_id.isnot(None),
        )
    )

    expires_at = as_utc(connection.expires_at)
    return StatusResponse(
        connected=True,
        connected_at=as_utc(connection.connected_at),
        last_synced_at=as_utc(connection.last_synced_at),
        token_expired=expires_at <= utcnow(),
        expires_at=expires_at,
        needs_reauth=connection.error_code == REFRESH_FAILED,
        linked_accounts=linked or 0,
        latest_sync=LatestSync(
            type=latest.sync_type,
            status=latest.status,
            records_synced=latest.records_synced,
            started_at=as_utc(latest.started_at),
            completed_at=as_utc(latest.completed_at),
            errors=latest.errors or [],
        ) if latest else None,
    )


# ─── Account linking ───────────────────────────────────────────────────────

@router.get("/accounts", response_model=list[AccountResponse])
async def list_accounts(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client: RevolutClient = Depends(get_revolut_client),
    settings: Settings = Depends(get_settings),
):
    linked = await AccountLinker(db, client, settings).list_accounts(user.household_id)
    return [
        AccountResponse(
            account_id=item.account.account_id,
            name=item.account.name,
            currency=item.account.currency,
            account_type=item.account.account_type,
            balance=item.account.balance,
            iban=item.account.iban,
            pocket_id=item.pocket_id,
            pocket_name=item.pocket_name,
        )
        for item in linked
    ]


@router.post("/accounts/{account_id}/link", response_model=PocketResponse)
async def link_account(
    account_id: str,
    payload: LinkRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client: RevolutClient = Depends(get_revolut_client),
    settings: Settings = Depends(get_settings),
):
    pocket_id = payload.pocket_id if payload else None
    return await AccountLinker(db, client, settings).link_account(user.household_id, account_id, pocket_id)


@router.delete("/accounts/{account_id}/link", response_model=PocketResponse)
async def unlink_account(
    account_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client: RevolutClient = Depends(get_revolut_client),
    settings: Settings = Depends(get_settings),
):
    return await AccountLinker(db, client, settings).unlink_account(user.household_id, account_id)


# ─── Webhook ───────────────────────────────────────────────────────────────

@router.post("/webhook", response_model=WebhookAck)
async def webhook(
    request: Request,
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
    settings: Settings = Depends(get_settings),
):
    if not settings.revolut_webhook_secret:
        logger.error("REVOLUT_WEBHOOK_SECRET not configured")
        return JSONResponse(status_code=500, content={"error": "Webhook not configured", "code": "misconfigured"})

    raw_body = await request.body()
    # Raises InvalidSignature (401) before the body is parsed
    verify_webhook(raw_body, request.headers.get(SIGNATURE_HEADER), settings.revolut_webhook_secret)

    event = parse_event(raw_body)
    if event is None:
        logger.warning("Discarding signed Revolut webhook with unparseable body")
        return WebhookAck()

    try:
        dispatcher.dispatch(event)
    except Exception:
        # Receipt is acknowledged regardless
        logger.exception("Failed to enqueue Revolut webhook %s", event.get("type"))
    return WebhookAck()
