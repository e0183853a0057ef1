"""Identity-provider session tokens and the get_current_user dependency.

The identity provider is the source of truth for who the caller is; this
module only verifies its signed JWT and reads the claims we need.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, UTC

import jwt
from fastapi import Request

from tokenledger.config import get_settings
from tokenledger.constants import SESSION_COOKIE_NAME, UNKNOWN_USER_DISPLAY_NAME
from tokenledger.errors import Unauthorized


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    display_name: str
    email: str | None = None


def create_jwt(user_id: str, expire_days: int = 7, **claims) -> str:
    """Create a signed HS256 session token (dev seeding and tests)."""
    settings = get_settings()
    payload = {
        "sub": user_id,
        "exp": datetime.now(UTC) + timedelta(days=expire_days),
        **claims,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def _verification_key() -> tuple[str, list[str]]:
    settings = get_settings()
    if settings.jwt_public_key:
        return settings.jwt_public_key, ["RS256"]
    return settings.jwt_secret, [settings.jwt_algorithm]


def _decode_jwt(token: str) -> dict:
    key, algorithms = _verification_key()
    return jwt.decode(token, key, algorithms=algorithms, options={"require": ["exp", "sub"]})


def resolve_display_name(claims: dict) -> str:
    """Name frozen into ``created_by``: full name, first+last, e-mail, fallback."""
    if claims.get("name"):
        return claims["name"]
    first, last = claims.get("first_name"), claims.get("last_name")
    if first and last:
        return f"{first} {last}"
    return claims.get("email") or UNKNOWN_USER_DISPLAY_NAME


def _extract_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return request.cookies.get(SESSION_COOKIE_NAME)


async def get_current_user(request: Request) -> CurrentUser:
    """FastAPI dependency: verify the session token or raise Unauthorized."""
    token = _extract_token(request)
    if not token:
        raise Unauthorized()
    try:
        claims = _decode_jwt(token)
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid or expired session")

    user_id = claims.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise Unauthorized("Invalid or expired session")

    return CurrentUser(
        user_id=user_id,
        display_name=resolve_display_name(claims),
        email=claims.get("email"),
    )
