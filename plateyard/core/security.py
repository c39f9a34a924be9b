import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import jwt
from passlib.context import CryptContext

from plateyard.core.config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ALGO = "HS256"

MIN_PASSWORD_LENGTH = 6


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_jti() -> str:
    return secrets.token_hex(16)


def _encode(customer_id: int, token_type: str, ttl: timedelta, **claims: Any) -> str:
    now = _now()
    payload: dict[str, Any] = {
        "iss": settings.JWT_ISSUER,
        "sub": str(customer_id),
        "type": token_type,
        "exp": now + ttl,
        "iat": now,
        **claims,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGO)


def make_access_token(customer_id: int) -> str:
    return _encode(customer_id, "access", timedelta(minutes=settings.ACCESS_TTL_MIN))


def make_refresh_token(customer_id: int, jti: str) -> str:
    return _encode(
        customer_id, "refresh", timedelta(days=settings.REFRESH_TTL_DAYS), jti=jti
    )


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(
        token, settings.JWT_SECRET, algorithms=[ALGO], issuer=settings.JWT_ISSUER
    )


def sign_payload(secret: str, body: bytes) -> str:
    """HMAC-SHA256 signature sent with outbound webhooks."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def secrets_match(given: str | None, expected: str) -> bool:
    return bool(given) and hmac.compare_digest(given, expected)
