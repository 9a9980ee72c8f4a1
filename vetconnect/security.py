"""Security helpers: password hashing, access tokens, HMAC digests and cookies."""
from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import get_settings

settings = get_settings()
pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto",
    argon2__memory_cost=settings.argon2_memory_cost,
    argon2__time_cost=settings.argon2_time_cost,
    argon2__parallelism=settings.argon2_parallelism,
)


class TokenError(Exception):
    """Raised when an access token is invalid or expired."""


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_access_token(user_id: str, *, assurance_level: str = "aal1") -> tuple[str, datetime]:
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.access_token_exp_minutes)
    payload = {
        "sub": user_id,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
        "type": "access",
        "aal": assurance_level,
    }
    encoded_jwt = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return encoded_jwt, expire


def decode_token(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:  # pragma: no cover - jose already tested
        raise TokenError(str(exc)) from exc

    if payload.get("type") != "access":
        raise TokenError("Invalid token type")

    return payload


def generate_numeric_code(digits: int = 6) -> str:
    """Generate a one-time numeric code for email sign-in."""

    return "".join(secrets.choice("0123456789") for _ in range(digits))


def generate_object_name() -> str:
    return secrets.token_hex(12)


def hash_token(token: str) -> str:
    """Return an HMAC-SHA256 digest of a token so only the digest is stored."""

    secret = settings.jwt_secret_key.encode("utf-8")
    return hmac.new(secret, token.encode("utf-8"), hashlib.sha256).hexdigest()


def tokens_match(token: str, digest: str) -> bool:
    return hmac.compare_digest(hash_token(token), digest)


def attach_cookie(
    response,
    *,
    name: str,
    value: str | None,
    expires: datetime | None,
    http_only: bool = True,
    same_site: str | None = None,
) -> None:
    """Attach a secure cookie to the response, or expire it when ``value`` is None."""

    response.set_cookie(
        key=name,
        value="" if value is None else value,
        expires=0 if value is None else expires,
        httponly=http_only,
        secure=settings.cookie_secure,
        samesite=same_site or settings.cookie_samesite,
        domain=settings.cookie_domain,
        path="/",
    )
