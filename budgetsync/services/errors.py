"""Error taxonomy for the Revolut sync pipeline.

Every error carries a stable machine ``code`` and the HTTP status the API
boundary maps it to, so routes never leak provider internals.
"""


class RevolutError(Exception):
    code = "revolut_error"
    status_code = 500

    def __init__(self, message: str | None = None, code: str | None = None):
        super().__init__(message or self.__class__.default_message())
        if code:
            self.code = code

    @classmethod
    def default_message(cls) -> str:
        return "Revolut integration error"

    @property
    def message(self) -> str:
        return str(self)


# ─── Authentication class: abort the whole operation ─────────────────────────

class NoActiveConnection(RevolutError):
    code = "no_connection"
    status_code = 404

    @classmethod
    def default_message(cls) -> str:
        return "No active Revolut connection found"


class InvalidGrant(RevolutError):
    code = "invalid_grant"
    status_code = 401

    @classmethod
    def default_message(cls) -> str:
        return "Revolut rejected the authorization code"


class RefreshFailed(RevolutError):
    """Refresh-token exchange failed.

    ``fatal`` is False when another worker refreshed the same connection first;
    the connection stays usable and the next attempt picks up the new token.
    """
    code = "refresh_failed"
    status_code = 401

    def __init__(self, message: str | None = None, fatal: bool = True):
        super().__init__(message)
        self.fatal = fatal

    @classmethod
    def default_message(cls) -> str:
        return "Revolut token refresh failed; reconnect required"


class AuthExpired(RevolutError):
    code = "token_expired"
    status_code = 401

    @classmethod
    def default_message(cls) -> str:
        return "Revolut rejected the access token"


AUTH_ERRORS = (NoActiveConnection, InvalidGrant, RefreshFailed, AuthExpired)


# ─── Provider transient ──────────────────────────────────────────────────────

class ProviderUnavailable(RevolutError):
    code = "provider_unavailable"
    status_code = 503

    def __init__(self, message: str | None = None, retry_after: int | None = None, code: str | None = None):
        super().__init__(message, code)
        self.retry_after = retry_after

    @classmethod
    def default_message(cls) -> str:
        return "Revolut API is unavailable"


class AccountMissing(RevolutError):
    code = "account_missing"
    status_code = 404

    @classmethod
    def default_message(cls) -> str:
        return "Revolut account no longer exists"


class MalformedResponse(RevolutError):
    code = "malformed_response"
    status_code = 502

    @classmethod
    def default_message(cls) -> str:
        return "Revolut returned a malformed response"


# ─── Inbound validation: rejected before any write ───────────────────────────

class InvalidSignature(RevolutError):
    code = "invalid_signature"
    status_code = 401

    @classmethod
    def default_message(cls) -> str:
        return "Invalid webhook signature"


class InvalidState(RevolutError):
    code = "invalid_state"
    status_code = 400

    @classmethod
    def default_message(cls) -> str:
        return "OAuth state mismatch"


# ─── Local records ───────────────────────────────────────────────────────────

class PocketNotFound(RevolutError):
    code = "pocket_not_found"
    status_code = 404

    @classmethod
    def default_message(cls) -> str:
        return "Pocket not found"


class AccountAlreadyLinked(RevolutError):
    code = "account_already_linked"
    status_code = 409

    @classmethod
    def default_message(cls) -> str:
        return "Revolut account is already linked to another pocket"
