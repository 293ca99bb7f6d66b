"""
JWT Session Tokens
==================

Access/refresh token pair minted by the API once an auth provider has
verified the user's credentials.

Claims:
- sub: user id from the provider
- roles: from the user_roles table at sign-in
- email, university_id: optional profile claims
- token_type: "access" or "refresh"

Version: 0.1.0
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt
from pydantic import BaseModel, Field

from shared.config import settings
from shared.logging import get_logger


logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenData(BaseModel):
    """Decoded token claims."""

    sub: str = Field(..., description="User ID")
    roles: list[str] = Field(default_factory=list)
    exp: datetime
    iat: datetime = Field(default_factory=lambda: datetime.now(UTC))
    token_type: str = ACCESS

    email: str | None = None
    university_id: str | None = None


class TokenPair(BaseModel):
    """Access and refresh tokens returned at sign-in."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Access token lifetime in seconds")


def _encode(data: dict[str, Any], token_type: str, lifetime: timedelta) -> str:
    now = datetime.now(UTC)
    claims = {
        **data,
        "exp": now + lifetime,
        "iat": now,
        "token_type": token_type,
    }
    token = jwt.encode(
        claims,
        settings.jwt.secret_key.get_secret_value(),
        algorithm=settings.jwt.algorithm,
    )
    logger.debug(f"{token_type}_token_created", sub=data.get("sub"))
    return token


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """
    Create an access token.

    Args:
        data: Claims; must include 'sub'
        expires_delta: Lifetime (defaults to JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    """
    lifetime = expires_delta or timedelta(minutes=settings.jwt.access_token_expire_minutes)
    return _encode(data, ACCESS, lifetime)


def create_refresh_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """
    Create a refresh token.

    Args:
        data: Claims; must include 'sub'
        expires_delta: Lifetime (defaults to JWT_REFRESH_TOKEN_EXPIRE_DAYS)
    """
    lifetime = expires_delta or timedelta(days=settings.jwt.refresh_token_expire_days)
    return _encode(data, REFRESH, lifetime)


def create_token_pair(
    user_id: str,
    roles: list[str] | None = None,
    email: str | None = None,
    university_id: str | None = None,
) -> TokenPair:
    """Mint an access/refresh pair for a verified user."""
    claims: dict[str, Any] = {"sub": user_id, "roles": list(roles or [])}
    if email:
        claims["email"] = email
    if university_id:
        claims["university_id"] = university_id

    return TokenPair(
        access_token=create_access_token(claims),
        refresh_token=create_refresh_token(claims),
        expires_in=settings.jwt.access_token_expire_minutes * 60,
    )


def decode_token(token: str, verify_type: str | None = None) -> TokenData | None:
    """
    Decode and validate a token.

    Args:
        token: Encoded JWT
        verify_type: Expected token_type ('access' or 'refresh')

    Returns:
        TokenData, or None if the token is invalid, expired or of the wrong type
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt.secret_key.get_secret_value(),
            algorithms=[settings.jwt.algorithm],
        )
    except JWTError as e:
        logger.warning("token_decode_failed", error=str(e))
        return None

    if verify_type and payload.get("token_type") != verify_type:
        logger.warning(
            "token_type_mismatch",
            expected=verify_type,
            actual=payload.get("token_type"),
        )
        return None

    return TokenData(
        sub=payload["sub"],
        roles=payload.get("roles", []),
        exp=datetime.fromtimestamp(payload["exp"], tz=UTC),
        iat=datetime.fromtimestamp(payload.get("iat", 0), tz=UTC),
        token_type=payload.get("token_type", ACCESS),
        email=payload.get("email"),
        university_id=payload.get("university_id"),
    )
