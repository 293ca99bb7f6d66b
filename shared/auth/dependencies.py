"""
FastAPI Authentication Dependencies
===================================

Route protection based on the API's own session tokens.

Version: 0.1.0
"""

from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, Field

from shared.audit import Blocklist
from shared.auth.jwt import ACCESS, decode_token
from shared.backend import get_backend
from shared.logging import get_logger


logger = get_logger(__name__)

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="/api/auth/signin",
    auto_error=False,
)


class User(BaseModel):
    """Authenticated caller."""

    id: str = Field(..., description="User ID")
    email: str | None = None
    roles: list[str] = Field(default_factory=list)
    university_id: str | None = None
    is_active: bool = True

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


async def get_current_user(
    token: Annotated[str | None, Depends(oauth2_scheme)],
) -> User:
    """
    Resolve the caller from the bearer token.

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if token is None:
        logger.debug("auth_token_missing")
        raise credentials_exception

    token_data = decode_token(token, verify_type=ACCESS)
    if token_data is None:
        raise credentials_exception

    return User(
        id=token_data.sub,
        email=token_data.email,
        roles=token_data.roles,
        university_id=token_data.university_id,
    )


async def get_current_active_user(
    current_user: Annotated[User, Depends(get_current_user)],
) -> User:
    """
    Ensure the caller is active and not suspended.

    Suspensions are read on every request, so tokens minted before a
    suspension stop working as soon as it is recorded.

    Raises:
        HTTPException: 403 if the user is inactive or suspended
    """
    if not current_user.is_active:
        logger.warning("inactive_user_access_attempt", user_id=current_user.id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Inactive user",
        )

    if await Blocklist(get_backend().database).is_user_suspended(current_user.id):
        logger.warning("suspended_user_access_attempt", user_id=current_user.id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account suspended. Please contact support.",
        )
    return current_user


def require_roles(
    required_roles: list[str],
    require_all: bool = False,
) -> Callable[..., User]:
    """
    Build a dependency that requires roles.

    Args:
        required_roles: Role names
        require_all: Require every role instead of any one

    Usage:
        @router.get("/incidents")
        async def incidents(user: User = Depends(require_roles(["admin"]))):
            ...
    """

    async def role_checker(
        current_user: Annotated[User, Depends(get_current_active_user)],
    ) -> User:
        user_roles = set(current_user.roles)
        required = set(required_roles)

        if require_all:
            has_roles = required.issubset(user_roles)
        else:
            has_roles = bool(required & user_roles)

        if not has_roles:
            logger.warning(
                "insufficient_roles",
                user_id=current_user.id,
                user_roles=sorted(user_roles),
                required_roles=required_roles,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )

        return current_user

    return role_checker


require_admin = require_roles(["admin"])


def client_ip(request: Request) -> str | None:
    """
    Caller address as seen by the application.

    X-Forwarded-For is resolved by uvicorn's ProxyHeadersMiddleware, which
    only trusts hops added by SECURITY_FORWARDED_ALLOW_IPS peers; the raw
    header is never read here.
    """
    return request.client.host if request.client else None
