"""
Shared fixtures: a throwaway SQLite database per test, a fake Revolut API
served through httpx.MockTransport, and an ASGI client with the provider,
state store and webhook dispatcher swapped for in-memory doubles.

Run with:
    pip install -e ".[test]" && pytest -v
"""
import os
import re
import uuid
from datetime import timedelta
from decimal import Decimal
from urllib.parse import parse_qs

from cryptography.fernet import Fernet

# Must be set before budgetsync.core.config is imported
os.environ["ENVIRONMENT"] = "development"
os.environ["API_SECRET_KEY"] = "test-secret-key-that-is-long-enough-0123456789"
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"
os.environ["REVOLUT_API_BASE_URL"] = "https://revolut.test"
os.environ["REVOLUT_CLIENT_ID"] = "client-id"
os.environ["REVOLUT_CLIENT_SECRET"] = "client-secret"
os.environ["REVOLUT_REDIRECT_URI"] = "http://test/api/v1/revolut/callback"
os.environ["REVOLUT_WEBHOOK_SECRET"] = "whsec-test"
os.environ["CRON_SECRET"] = "cron-test"

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from budgetsync.core.clock import utcnow  # noqa: E402
from budgetsync.core.config import settings as app_settings  # noqa: E402
from budgetsync.core.database import Base, get_db, get_session_factory  # noqa: E402
from budgetsync.core.ratelimit import limiter  # noqa: E402
from budgetsync.core.redis import get_state_store  # noqa: E402
from budgetsync.core.security import create_access_token, encrypt_value  # noqa: E402
from budgetsync.main import app  # noqa: E402
from budgetsync.models.pocket import Pocket  # noqa: E402
from budgetsync.models.revolut import RevolutConnection  # noqa: E402
from budgetsync.models.user import Household, User  # noqa: E402
from budgetsync.services.revolut_client import RevolutClient, get_revolut_client  # noqa: E402
from budgetsync.services.webhooks import get_webhook_dispatcher  # noqa: E402


# ── Fake provider ────────────────────────────────────────────────────────────

def make_tx(tx_id: str, amount: str = "12.50", indicator: str = "DBIT", **extra) -> dict:
    raw = {
        "transactionId": tx_id,
        "bookingDate": "2026-10-01",
        "transactionAmount": {"amount": amount, "currency": "EUR"},
        "creditDebitIndicator": indicator,
        "remittanceInformationUnstructured": f"Payment {tx_id}",
        "proprietaryBankTransactionCode": "CARD_PAYMENT",
        "creditorName": "Corner Cafe",
    }
    raw.update(extra)
    return raw


class FakeRevolut:
    """In-memory Revolut Open Banking API. Records every request it serves."""

    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.balances: dict[str, str] = {}
        # account id → list of pages, each a list of raw booked transactions
        self.transactions: dict[str, list[list[dict]]] = {}
        self.status_overrides: dict[str, int] = {}
        # path → JSON body served with 200 in place of the normal resource
        self.body_overrides: dict[str, object] = {}
        self.expired_access: set[str] = set()
        self.valid_refresh: set[str] = {"refresh-0"}
        self.rotate_refresh = True
        self.token_status = 200
        self.expires_in = 3600
        self.requests: list[httpx.Request] = []
        self._issued = 0

    def add_account(self, account_id: str, name: str = "Main", balance: str = "100.00",
                    transactions: list[dict] | None = None) -> None:
        self.accounts[account_id] = {
            "resourceId": account_id,
            "name": name,
            "currency": "EUR",
            "cashAccountType": "CACC",
            "balances": [{"balanceAmount": {"amount": balance, "currency": "EUR"}}],
        }
        self.balances[account_id] = balance
        self.transactions[account_id] = [transactions or []]

    @property
    def token_calls(self) -> int:
        return sum(1 for r in self.requests if r.url.path == "/token")

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.status_overrides:
            return httpx.Response(self.status_overrides[path], json={"message": "forced failure"})
        if path == "/token":
            return self._token(request)
        if path in self.body_overrides:
            return httpx.Response(200, json=self.body_overrides[path])

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token in self.expired_access:
            return httpx.Response(401, json={"message": "token expired"})

        if path == "/accounts":
            return httpx.Response(200, json={"accounts": list(self.accounts.values())})

        match = re.fullmatch(r"/accounts/([^/]+)/(balances|transactions)", path)
        if not match or match.group(1) not in self.accounts:
            return httpx.Response(404, json={"message": "not found"})
        account_id, resource = match.groups()

        if resource == "balances":
            return httpx.Response(200, json={"balances": [{
                "balanceAmount": {"amount": self.balances[account_id], "currency": "EUR"},
                "balanceType": "CLAV",
                "creditDebitIndicator": "CRDT",
            }]})

        pages = self.transactions[account_id]
        page = int(request.url.params.get("page", "1"))
        body = {"transactions": {"booked": pages[page - 1], "pending": []}}
        if page < len(pages):
            body["_links"] = {"next": {"href": f"/accounts/{account_id}/transactions?page={page + 1}"}}
        return httpx.Response(200, json=body)

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_grant"})
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        if form.get("grant_type") == "refresh_token":
            if form.get("refresh_token") not in self.valid_refresh:
                return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Refresh token revoked"})
            if not self.rotate_refresh:
                self._issued += 1
                return httpx.Response(200, json={
                    "access_token": f"access-{self._issued}",
                    "expires_in": self.expires_in,
                    "token_type": "Bearer",
                })
            self.valid_refresh.discard(form["refresh_token"])
        self._issued += 1
        self.valid_refresh.add(f"refresh-{self._issued}")
        return httpx.Response(200, json={
            "access_token": f"access-{self._issued}",
            "refresh_token": f"refresh-{self._issued}",
            "expires_in": self.expires_in,
            "token_type": "Bearer",
            "consent_id": "consent-1",
        })


class MemoryStateStore:
    def __init__(self):
        self.values: dict[str, str] = {}

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        self.values[key] = value

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def delete(self, key: str) -> None:
        self.values.pop(key, None)


class RecordingDispatcher:
    def __init__(self):
        self.events: list[dict] = []

    def dispatch(self, event: dict) -> None:
        self.events.append(event)


# ── Database ─────────────────────────────────────────────────────────────────

@pytest.fixture
def settings():
    return app_settings


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def _seed_household(db, name: str, email: str) -> User:
    household = Household(name=name)
    db.add(household)
    await db.flush()
    user = User(email=email, full_name=name, household_id=household.id)
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def user(db):
    return await _seed_household(db, "Smith household", "alex@example.com")


@pytest.fixture
def household_id(user):
    return user.household_id


@pytest.fixture
def make_household(db):
    async def _make(name: str = "Other household") -> uuid.UUID:
        user = await _seed_household(db, name, f"{uuid.uuid4().hex}@example.com")
        return user.household_id
    return _make


@pytest.fixture
def make_connection(db, settings):
    async def _make(household_id, access: str = "access-0", refresh: str = "refresh-0",
                    expires_in: int = 3600, error_code: str | None = None) -> RevolutConnection:
        connection = RevolutConnection(
            household_id=household_id,
            encrypted_access_token=encrypt_value(access, settings.encryption_key),
            encrypted_refresh_token=encrypt_value(refresh, settings.encryption_key),
            expires_at=utcnow() + timedelta(seconds=expires_in),
            is_active=True,
            error_code=error_code,
            connected_at=utcnow(),
        )
        db.add(connection)
        await db.commit()
        return connection
    return _make


@pytest.fixture
def make_pocket(db):
    async def _make(household_id, name: str = "Groceries", account_id: str | None = None,
                    balance: str = "0") -> Pocket:
        pocket = Pocket(
            household_id=household_id,
            name=name,
            current_balance=Decimal(balance),
            revolut_account_id=account_id,
        )
        db.add(pocket)
        await db.commit()
        return pocket
    return _make


# ── Provider ─────────────────────────────────────────────────────────────────

@pytest.fixture
def fake():
    return FakeRevolut()


@pytest.fixture
def client(fake, settings):
    return RevolutClient(settings, transport=httpx.MockTransport(fake.handler))


# ── HTTP boundary ────────────────────────────────────────────────────────────

@pytest.fixture
def state_store():
    return MemoryStateStore()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
async def api(session_factory, client, state_store, dispatcher):
    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_revolut_client] = lambda: client
    app.dependency_overrides[get_state_store] = lambda: state_store
    app.dependency_overrides[get_webhook_dispatcher] = lambda: dispatcher
    limiter.enabled = False

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    limiter.enabled = True


@pytest.fixture
def auth_headers(user):
    token = create_access_token({"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}
