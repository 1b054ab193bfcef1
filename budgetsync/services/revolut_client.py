"""Revolut Open Banking client: a typed façade over the token, account,
balance and transaction endpoints.

No retries happen here: 401/403 surface as ``AuthExpired`` so the sync
engine can refresh once, and rate limits / outages surface as
``ProviderUnavailable`` for the caller to schedule around. Payloads missing
the fields a resource needs surface as ``MalformedResponse``.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from urllib.parse import urlencode

import httpx

from budgetsync.core.config import Settings, settings as default_settings
from budgetsync.services.errors import (
    AccountMissing,
    AuthExpired,
    InvalidGrant,
    MalformedResponse,
    ProviderUnavailable,
    RefreshFailed,
)

logger = logging.getLogger(__name__)

_SCOPE = "accounts transactions"
_MAX_PAGES = 50
_PAYLOAD_ERRORS = (KeyError, TypeError, AttributeError, IndexError, ValueError)

# ── Result types ────────────────────────────────────────────────────────────


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: str | None   # refresh responses may omit a rotated token
    expires_in: int
    token_type: str = "Bearer"
    scope: str | None = None
    consent_id: str | None = None


@dataclass
class RevolutAccount:
    account_id: str
    name: str
    currency: str
    account_type: str       # CURRENT | SAVINGS | INVESTMENT | LOAN | OTHER
    balance: Decimal
    iban: str | None = None
    bic: str | None = None


@dataclass
class RevolutBalance:
    account_id: str
    amount: Decimal
    currency: str
    balance_type: str
    reference_date: str | None = None


@dataclass
class RevolutTransaction:
    transaction_id: str
    account_id: str
    amount: Decimal         # signed: debits negative
    currency: str
    booked_at: datetime
    description: str
    transaction_type: str
    category: str
    merchant_name: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class TransactionListing:
    transactions: list[RevolutTransaction]
    # True when paging stopped at the page cap with more pages outstanding
    truncated: bool = False


# ── Mapping helpers ─────────────────────────────────────────────────────────

_CATEGORY_BY_TYPE = {
    "CARD_PAYMENT": "Shopping",
    "CARD_REFUND": "Refund",
    "TRANSFER": "Transfer",
    "ATM": "Cash Withdrawal",
    "FEE": "Fees",
    "EXCHANGE": "Currency Exchange",
    "OTHER": "Other",
}


def map_account_type(raw: str | None) -> str:
    value = (raw or "").upper()
    if "CURRENT" in value or "CACC" in value:
        return "CURRENT"
    if "SAVING" in value or "SVGS" in value:
        return "SAVINGS"
    if "INVEST" in value:
        return "INVESTMENT"
    if "LOAN" in value:
        return "LOAN"
    return "OTHER"


def map_transaction_type(code: str | None) -> str:
    value = (code or "").upper()
    # Refund before card: "CARD_REFUND" contains both
    if "REFUND" in value:
        return "CARD_REFUND"
    if "CARD" in value or "POS" in value:
        return "CARD_PAYMENT"
    if "TRANSFER" in value or "SEPA" in value:
        return "TRANSFER"
    if "ATM" in value or "CASH" in value:
        return "ATM"
    if "FEE" in value or "CHARGE" in value:
        return "FEE"
    if "EXCHANGE" in value or "FX" in value:
        return "EXCHANGE"
    return "OTHER"


def category_for(transaction_type: str) -> str:
    return _CATEGORY_BY_TYPE.get(transaction_type, "Other")


def _to_decimal(value) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0")


def _signed(amount: Decimal, indicator: str | None) -> Decimal:
    return -abs(amount) if indicator in ("DBIT", "DEBIT") else abs(amount)


def _parse_booking_date(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        d = date.fromisoformat(value[:10])
        parsed = datetime(d.year, d.month, d.day)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _error_detail(response: httpx.Response) -> tuple[str | None, str]:
    try:
        body = response.json()
    except ValueError:
        return None, f"HTTP {response.status_code}"
    if not isinstance(body, dict):
        return None, f"HTTP {response.status_code}"
    code = body.get("error") or body.get("code")
    message = (
        body.get("error_description")
        or body.get("message")
        or body.get("error")
        or f"HTTP {response.status_code}"
    )
    return code, message


# ── Client ──────────────────────────────────────────────────────────────────


class RevolutClient:
    max_pages = _MAX_PAGES

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or default_settings
        self._transport = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.revolut_api_base_url,
            timeout=self.settings.revolut_timeout_seconds,
            transport=self._transport,
        )

    # ─── OAuth ────────────────────────────────────────────────────────────

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        params = urlencode({
            "client_id": self.settings.revolut_client_id,
            "response_type": "code",
            "scope": _SCOPE,
            "state": state,
            "redirect_uri": redirect_uri,
        })
        return f"{self.settings.revolut_api_base_url}/auth?{params}"

    async def _token_request(self, data: dict) -> httpx.Response:
        try:
            async with self._http() as client:
                return await client.post(
                    "/token",
                    data=data,
                    auth=(self.settings.revolut_client_id, self.settings.revolut_client_secret),
                )
        except httpx.HTTPError as exc:
            logger.warning("Revolut token endpoint unreachable: %s", exc)
            raise ProviderUnavailable("Failed to connect to Revolut API") from exc

    @staticmethod
    def _grant_from(response: httpx.Response, require_refresh_token: bool = True) -> TokenGrant:
        try:
            body = response.json()
            grant = TokenGrant(
                access_token=body["access_token"],
                refresh_token=body.get("refresh_token"),
                expires_in=int(body.get("expires_in", 3600)),
                token_type=body.get("token_type", "Bearer"),
                scope=body.get("scope"),
                consent_id=body.get("consent_id"),
            )
        except _PAYLOAD_ERRORS as exc:
            raise MalformedResponse("Revolut returned a malformed token response") from exc
        if not grant.access_token or (require_refresh_token and not grant.refresh_token):
            raise MalformedResponse("Revolut token response is missing a token")
        return grant

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        response = await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        })
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailable(f"Token exchange failed: HTTP {response.status_code}")
        if response.is_error:
            _, message = _error_detail(response)
            raise InvalidGrant(message)
        return self._grant_from(response)

    async def refresh(self, refresh_token: str) -> TokenGrant:
        response = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailable(f"Token refresh failed: HTTP {response.status_code}")
        if response.is_error:
            _, message = _error_detail(response)
            raise RefreshFailed(message)
        return self._grant_from(response, require_refresh_token=False)

    # ─── Authenticated requests ──────────────────────────────────────────

    async def _get(self, url: str, access_token: str, params: dict | None = None) -> dict:
        try:
            async with self._http() as client:
                response = await client.get(
                    url,
                    params=params,
                    headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable("Revolut API request timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailable("Failed to connect to Revolut API") from exc

        if response.status_code == 401:
            raise AuthExpired()
        if response.status_code == 403:
            raise AuthExpired("User consent has expired or been revoked", code="consent_expired")
        if response.status_code == 404:
            raise AccountMissing()
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise ProviderUnavailable(
                "Rate limit exceeded",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                code="rate_limited",
            )
        if response.is_error:
            _, message = _error_detail(response)
            raise ProviderUnavailable(message)

        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponse() from exc
        if not isinstance(body, dict):
            raise MalformedResponse(f"Revolut returned a non-object body for {url}")
        return body

    async def list_accounts(self, access_token: str) -> list[RevolutAccount]:
        body = await self._get("/accounts", access_token)
        try:
            return [self._parse_account(raw) for raw in body.get("accounts") or []]
        except _PAYLOAD_ERRORS as exc:
            raise MalformedResponse("Revolut returned a malformed account list") from exc

    @staticmethod
    def _parse_account(raw: dict) -> RevolutAccount:
        balances = raw.get("balances") or []
        amount = _to_decimal(balances[0]["balanceAmount"]["amount"]) if balances else Decimal("0")
        return RevolutAccount(
            account_id=raw["resourceId"],
            name=raw.get("name") or f"{raw.get('currency', '')} Account".strip(),
            currency=raw.get("currency", "EUR"),
            account_type=map_account_type(raw.get("cashAccountType") or raw.get("product")),
            balance=amount,
            iban=raw.get("iban"),
            bic=raw.get("bic"),
        )

    async def get_balance(self, access_token: str, account_id: str) -> RevolutBalance:
        body = await self._get(f"/accounts/{account_id}/balances", access_token)
        balances = body.get("balances") or []
        if not balances:
            raise AccountMissing(f"No balance reported for account {account_id}")
        try:
            chosen = next((b for b in balances if b.get("balanceType") == "CLAV"), balances[0])
            amount_obj = chosen["balanceAmount"]
            return RevolutBalance(
                account_id=account_id,
                amount=_signed(_to_decimal(amount_obj["amount"]), chosen.get("creditDebitIndicator")),
                currency=amount_obj.get("currency", "EUR"),
                balance_type=chosen.get("balanceType", "CLAV"),
                reference_date=chosen.get("referenceDate"),
            )
        except _PAYLOAD_ERRORS as exc:
            raise MalformedResponse(f"Revolut returned a malformed balance for account {account_id}") from exc

    async def list_transactions(
        self,
        access_token: str,
        account_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> TransactionListing:
        """Booked transactions for one account, following ``_links.next`` pages.

        Paging stops after ``max_pages``; the listing is then flagged
        ``truncated`` so callers do not treat it as the full window.
        """
        params = {}
        if date_from:
            params["dateFrom"] = date_from.isoformat()
        if date_to:
            params["dateTo"] = date_to.isoformat()

        url: str | None = f"/accounts/{account_id}/transactions"
        listing = TransactionListing(transactions=[])
        pages = 0
        while url is not None:
            if pages >= self.max_pages:
                logger.warning("Stopped paging transactions for %s after %d pages", account_id, pages)
                listing.truncated = True
                break
            body = await self._get(url, access_token, params=params or None)
            try:
                for raw in (body.get("transactions") or {}).get("booked") or []:
                    listing.transactions.append(self._parse_transaction(raw, account_id))
                url = ((body.get("_links") or {}).get("next") or {}).get("href")
            except _PAYLOAD_ERRORS as exc:
                raise MalformedResponse(
                    f"Revolut returned a malformed transaction page for account {account_id}"
                ) from exc
            # next href already carries the query string
            params = {}
            pages += 1
        return listing

    @staticmethod
    def _parse_transaction(raw: dict, account_id: str) -> RevolutTransaction:
        amount_obj = raw.get("transactionAmount") or {}
        tx_type = map_transaction_type(raw.get("proprietaryBankTransactionCode"))
        transaction_id = raw["transactionId"]
        if not transaction_id:
            raise ValueError("empty transactionId")
        return RevolutTransaction(
            transaction_id=transaction_id,
            account_id=account_id,
            amount=_signed(_to_decimal(amount_obj.get("amount")), raw.get("creditDebitIndicator")),
            currency=amount_obj.get("currency", "EUR"),
            booked_at=_parse_booking_date(raw.get("bookingDate") or raw.get("valueDate")),
            description=(
                raw.get("remittanceInformationUnstructured")
                or raw.get("additionalInformation")
                or "Transaction"
            )[:500],
            transaction_type=tx_type,
            category=category_for(tx_type),
            merchant_name=raw.get("creditorName") or raw.get("debtorName"),
            raw=raw,
        )


def get_revolut_client() -> RevolutClient:
    return RevolutClient()
