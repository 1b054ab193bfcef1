"""
Unit tests for the Revolut client: response mapping, pagination and the
HTTP-status → error translation. The network is an httpx.MockTransport.
"""
from datetime import date
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from budgetsync.services.errors import (
    AccountMissing,
    AuthExpired,
    InvalidGrant,
    MalformedResponse,
    ProviderUnavailable,
    RefreshFailed,
)
from budgetsync.services.revolut_client import (
    RevolutClient,
    category_for,
    map_account_type,
    map_transaction_type,
)
from conftest import make_tx


def _client(settings, handler) -> RevolutClient:
    return RevolutClient(settings, transport=httpx.MockTransport(handler))


def _respond(status: int, **kwargs):
    return lambda request: httpx.Response(status, **kwargs)


# ── Mapping helpers ──────────────────────────────────────────────────────────

class TestMapping:
    def test_refund_wins_over_card(self):
        assert map_transaction_type("CARD_REFUND") == "CARD_REFUND"

    def test_card_payment(self):
        assert map_transaction_type("POS_PURCHASE") == "CARD_PAYMENT"

    def test_sepa_is_transfer(self):
        assert map_transaction_type("SEPA_CREDIT") == "TRANSFER"

    def test_unknown_code(self):
        assert map_transaction_type(None) == "OTHER"

    def test_categories(self):
        assert category_for("ATM") == "Cash Withdrawal"
        assert category_for("EXCHANGE") == "Currency Exchange"
        assert category_for("nonsense") == "Other"

    def test_account_types(self):
        assert map_account_type("CACC") == "CURRENT"
        assert map_account_type("Savings") == "SAVINGS"
        assert map_account_type(None) == "OTHER"


# ── OAuth ────────────────────────────────────────────────────────────────────

class TestOAuth:
    def test_authorization_url(self, settings):
        url = RevolutClient(settings).authorization_url("abc123", "https://app.test/cb")
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert url.startswith(f"{settings.revolut_api_base_url}/auth?")
        assert query["state"] == ["abc123"]
        assert query["client_id"] == [settings.revolut_client_id]
        assert query["response_type"] == ["code"]
        assert query["scope"] == ["accounts transactions"]
        assert query["redirect_uri"] == ["https://app.test/cb"]

    async def test_exchange_code(self, client, fake):
        grant = await client.exchange_code("code-1", "https://app.test/cb")
        assert grant.access_token == "access-1"
        assert grant.refresh_token == "refresh-1"
        assert grant.consent_id == "consent-1"
        request = fake.calls_to("/token")[0]
        assert request.headers["Authorization"].startswith("Basic ")
        assert parse_qs(request.content.decode())["grant_type"] == ["authorization_code"]

    async def test_rejected_code_is_invalid_grant(self, settings):
        client = _client(settings, _respond(400, json={"error": "invalid_grant"}))
        with pytest.raises(InvalidGrant):
            await client.exchange_code("bad", "https://app.test/cb")

    async def test_rejected_refresh_is_refresh_failed(self, settings):
        client = _client(settings, _respond(401, json={"error": "invalid_grant"}))
        with pytest.raises(RefreshFailed) as exc_info:
            await client.refresh("refresh-0")
        assert exc_info.value.fatal is True

    async def test_token_endpoint_outage(self, settings):
        client = _client(settings, _respond(502))
        with pytest.raises(ProviderUnavailable):
            await client.refresh("refresh-0")

    async def test_network_error(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderUnavailable):
            await _client(settings, handler).exchange_code("code", "https://app.test/cb")


# ── Status mapping ───────────────────────────────────────────────────────────

class TestStatusMapping:
    async def test_401_is_auth_expired(self, settings):
        with pytest.raises(AuthExpired) as exc_info:
            await _client(settings, _respond(401)).list_accounts("tok")
        assert exc_info.value.code == "token_expired"

    async def test_403_is_revoked_consent(self, settings):
        with pytest.raises(AuthExpired) as exc_info:
            await _client(settings, _respond(403)).list_accounts("tok")
        assert exc_info.value.code == "consent_expired"

    async def test_404_is_account_missing(self, settings):
        with pytest.raises(AccountMissing):
            await _client(settings, _respond(404)).get_balance("tok", "acc-1")

    async def test_429_carries_retry_after(self, settings):
        client = _client(settings, _respond(429, headers={"Retry-After": "30"}))
        with pytest.raises(ProviderUnavailable) as exc_info:
            await client.list_accounts("tok")
        assert exc_info.value.retry_after == 30
        assert exc_info.value.code == "rate_limited"

    async def test_500_is_provider_unavailable(self, settings):
        with pytest.raises(ProviderUnavailable):
            await _client(settings, _respond(500, json={"message": "boom"})).list_accounts("tok")

    async def test_timeout(self, settings):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ProviderUnavailable):
            await _client(settings, handler).list_accounts("tok")


# ── Accounts, balances, transactions ─────────────────────────────────────────

class TestResources:
    async def test_list_accounts(self, client, fake):
        fake.add_account("acc-1", name="Main", balance="250.10")
        [account] = await client.list_accounts("tok")
        assert account.account_id == "acc-1"
        assert account.account_type == "CURRENT"
        assert account.balance == Decimal("250.10")
        assert fake.calls_to("/accounts")[0].headers["Authorization"] == "Bearer tok"

    async def test_unnamed_account_gets_currency_name(self, settings):
        body = {"accounts": [{"resourceId": "acc-9", "currency": "GBP"}]}
        [account] = await _client(settings, _respond(200, json=body)).list_accounts("tok")
        assert account.name == "GBP Account"
        assert account.balance == Decimal("0")

    async def test_balance_prefers_clav_and_signs_debit(self, settings):
        body = {"balances": [
            {"balanceAmount": {"amount": "10.00", "currency": "EUR"}, "balanceType": "ITAV"},
            {"balanceAmount": {"amount": "42.00", "currency": "EUR"}, "balanceType": "CLAV",
             "creditDebitIndicator": "DBIT"},
        ]}
        balance = await _client(settings, _respond(200, json=body)).get_balance("tok", "acc-1")
        assert balance.amount == Decimal("-42.00")
        assert balance.balance_type == "CLAV"

    async def test_transactions_follow_next_links(self, client, fake):
        fake.add_account("acc-1")
        fake.transactions["acc-1"] = [[make_tx("tx-1")], [make_tx("tx-2", indicator="CRDT")]]

        listing = await client.list_transactions("tok", "acc-1", date_from=date(2026, 7, 1))
        txs = listing.transactions

        assert [t.transaction_id for t in txs] == ["tx-1", "tx-2"]
        assert listing.truncated is False
        assert txs[0].amount == Decimal("-12.50")
        assert txs[1].amount == Decimal("12.50")
        assert txs[0].category == "Shopping"
        assert txs[0].merchant_name == "Corner Cafe"
        first, second = fake.calls_to("/accounts/acc-1/transactions")
        assert first.url.params["dateFrom"] == "2026-07-01"
        assert second.url.params["page"] == "2"

    async def test_description_fallback(self, client, fake):
        raw = make_tx("tx-1")
        del raw["remittanceInformationUnstructured"]
        fake.add_account("acc-1", transactions=[raw])
        [tx] = (await client.list_transactions("tok", "acc-1")).transactions
        assert tx.description == "Transaction"

    async def test_paging_stops_at_cap_and_flags_truncation(self, client, fake):
        fake.add_account("acc-1")
        fake.transactions["acc-1"] = [[make_tx(f"tx-{n}")] for n in range(client.max_pages + 5)]

        listing = await client.list_transactions("tok", "acc-1")

        assert listing.truncated is True
        assert len(listing.transactions) == client.max_pages
        assert len(fake.calls_to("/accounts/acc-1/transactions")) == client.max_pages


# ── Malformed payloads ───────────────────────────────────────────────────────

class TestMalformedPayloads:
    async def test_transaction_without_id(self, client, fake):
        raw = make_tx("tx-1")
        del raw["transactionId"]
        fake.add_account("acc-1", transactions=[raw])

        with pytest.raises(MalformedResponse):
            await client.list_transactions("tok", "acc-1")

    async def test_non_object_accounts_body(self, settings):
        with pytest.raises(MalformedResponse) as exc_info:
            await _client(settings, _respond(200, json=["acc-1"])).list_accounts("tok")
        assert exc_info.value.code == "malformed_response"

    async def test_account_without_resource_id(self, settings):
        body = {"accounts": [{"name": "Main", "currency": "EUR"}]}
        with pytest.raises(MalformedResponse):
            await _client(settings, _respond(200, json=body)).list_accounts("tok")

    async def test_balance_without_amount(self, settings):
        body = {"balances": [{"balanceType": "CLAV"}]}
        with pytest.raises(MalformedResponse):
            await _client(settings, _respond(200, json=body)).get_balance("tok", "acc-1")

    async def test_invalid_json(self, settings):
        with pytest.raises(MalformedResponse):
            await _client(settings, _respond(200, content=b"<html>")).list_accounts("tok")

    async def test_code_exchange_requires_refresh_token(self, settings):
        client = _client(settings, _respond(200, json={"access_token": "a", "expires_in": 60}))
        with pytest.raises(MalformedResponse):
            await client.exchange_code("code", "https://app.test/cb")

    async def test_refresh_without_rotated_token(self, settings):
        client = _client(settings, _respond(200, json={"access_token": "a", "expires_in": 60}))
        grant = await client.refresh("refresh-0")
        assert grant.access_token == "a"
        assert grant.refresh_token is None
