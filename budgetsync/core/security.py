import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet
from jose import JWTError, jwt

from budgetsync.core.config import settings


# ─── Session JWT (issued by the dashboard login) ──────
def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.api_secret_key, algorithm=settings.algorithm)


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.api_secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None


# ─── Fernet encryption (for Revolut tokens at rest) ──────
def get_fernet(key: str | None = None) -> Fernet:
    return Fernet((key or settings.encryption_key).encode())


def encrypt_value(value: str, key: str | None = None) -> str:
    return get_fernet(key).encrypt(value.encode()).decode()


def decrypt_value(encrypted: str, key: str | None = None) -> str:
    return get_fernet(key).decrypt(encrypted.encode()).decode()


# ─── Shared-secret checks ─────────────────────────────
def generate_oauth_state() -> str:
    return secrets.token_hex(32)


def sign_payload(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body, as sent in X-Revolut-Signature."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(payload, secret).encode(), signature.strip().encode())


def secrets_match(provided: str | None, expected: str) -> bool:
    """Constant-time comparison that never matches an unset secret."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())
