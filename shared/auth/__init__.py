"""
Authentication Module
=====================

API session tokens and route protection for Mind Measure services.

Features:
- JWT access/refresh tokens minted after a provider sign-in
- bcrypt password hashing for database-backed identities
- Role-based access control (roles from the user_roles table)
- FastAPI dependencies for route protection

Usage:
    from shared.auth import User, create_token_pair, get_current_user, require_admin

    tokens = create_token_pair(user.id, roles=["student"], email=user.email)

    @router.get("/me")
    async def me(user: User = Depends(get_current_user)):
        return {"id": user.id}

    @router.get("/admin-only")
    async def admin_only(user: User = Depends(require_admin)):
        ...
"""

from shared.auth.dependencies import (
    User,
    client_ip,
    get_current_active_user,
    get_current_user,
    oauth2_scheme,
    require_admin,
    require_roles,
)
from shared.auth.jwt import (
    TokenData,
    TokenPair,
    create_access_token,
    create_refresh_token,
    create_token_pair,
    decode_token,
)
from shared.auth.password import hash_password, needs_rehash, verify_password


__all__ = [
    # JWT
    "create_access_token",
    "create_refresh_token",
    "create_token_pair",
    "decode_token",
    "TokenData",
    "TokenPair",
    # Password
    "hash_password",
    "verify_password",
    "needs_rehash",
    # Dependencies
    "User",
    "get_current_user",
    "get_current_active_user",
    "require_roles",
    "require_admin",
    "oauth2_scheme",
    "client_ip",
]
