"""
Auth Routes
===========

Sign-up, sign-in and account verification.

The identity provider verifies credentials; the API then mints its own
access/refresh pair carrying the roles from the user_roles table.

Version: 0.1.0
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from services.app_api.dependencies import (
    BackendDep,
    get_audit_logger,
    get_blocklist,
    get_privacy_service,
)
from shared.audit import AuditLogger, Blocklist
from shared.auth import (
    User,
    client_ip,
    create_token_pair,
    decode_token,
    get_current_active_user,
    get_current_user,
)
from shared.auth.jwt import REFRESH
from shared.backend import AuthError, DatabaseService, QueryOptions
from shared.logging import get_logger
from shared.models.privacy import PrivacyUserCreate
from shared.models.security import AuditAction, RiskLevel
from shared.privacy import PrivacyService


logger = get_logger(__name__)

router = APIRouter()

ROLES_TABLE = "user_roles"


# ============================================================================
# Request Models
# ============================================================================


class SignInRequest(BaseModel):
    email: str
    password: str


class EmailRequest(BaseModel):
    email: str


class ConfirmSignUpRequest(BaseModel):
    email: str
    code: str = Field(..., min_length=1, max_length=10)


class ConfirmForgotPasswordRequest(BaseModel):
    email: str
    code: str = Field(..., min_length=1, max_length=10)
    new_password: str


class RefreshRequest(BaseModel):
    refresh_token: str


async def load_roles(database: DatabaseService, user_id: str) -> list[str]:
    """Role names assigned to a user."""
    rows = (await database.select(ROLES_TABLE, QueryOptions.where(user_id=user_id))).data
    return sorted({row["role"] for row in rows if row.get("role")})


async def _issue_tokens(database: DatabaseService, user_id: str, email: str | None) -> dict[str, Any]:
    roles = await load_roles(database, user_id)
    profile = await database.select_one("profiles", user_id=user_id)
    university_id = (profile or {}).get("university_id")
    tokens = create_token_pair(user_id, roles=roles, email=email, university_id=university_id)
    return {**tokens.model_dump(), "roles": roles}


# ============================================================================
# Endpoints
# ============================================================================


@router.post("/signup", status_code=status.HTTP_201_CREATED)
async def sign_up(
    request: PrivacyUserCreate,
    privacy: Annotated[PrivacyService, Depends(get_privacy_service)],
) -> dict[str, Any]:
    """
    Create an account with a consent decision.

    A confirmation code is sent to the email address unless the provider
    confirms accounts automatically.
    """
    result = await privacy.create_user(request)
    logger.info("user_signed_up", user_id=result.user_id, confirmed=result.user_confirmed)
    return {
        "success": True,
        "user_id": result.user_id,
        "user_confirmed": result.user_confirmed,
        "pseudonym_created": result.pseudonym_created,
        "scheduled_deletion": result.scheduled_deletion,
    }


@router.post("/signin")
async def sign_in(
    request: SignInRequest,
    http_request: Request,
    backend: BackendDep,
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
    blocklist: Annotated[Blocklist, Depends(get_blocklist)],
) -> dict[str, Any]:
    """
    Verify credentials and return an API token pair.

    Every attempt is written to the audit trail with the caller's address.
    """
    ip_address = client_ip(http_request)
    email = request.email.strip().lower()

    try:
        user = await backend.auth.sign_in(email, request.password)
    except AuthError as e:
        await audit.log(
            AuditAction.LOGIN_FAILURE,
            "auth",
            ip_address=ip_address,
            details={"email": email, "code": e.code.value},
            success=False,
            risk_level=RiskLevel.MEDIUM,
        )
        raise

    if await blocklist.is_user_suspended(user.id):
        await audit.log(
            AuditAction.ACCESS_DENIED,
            "auth",
            user_id=user.id,
            ip_address=ip_address,
            details={"reason": "account_suspended"},
            success=False,
            risk_level=RiskLevel.HIGH,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account suspended. Please contact support.",
        )

    issued = await _issue_tokens(backend.database, user.id, user.email)
    await audit.log(
        AuditAction.LOGIN_SUCCESS,
        "auth",
        user_id=user.id,
        ip_address=ip_address,
        user_roles=issued["roles"],
    )
    logger.info("user_signed_in", user_id=user.id)

    return {"success": True, "user": user.model_dump(mode="json"), **issued}


@router.post("/confirm-signup")
async def confirm_sign_up(request: ConfirmSignUpRequest, backend: BackendDep) -> dict[str, Any]:
    """Confirm an account with the emailed code."""
    await backend.auth.confirm_sign_up(request.email.strip().lower(), request.code.strip())
    return {"success": True, "message": "Email verified"}


@router.post("/resend-code")
async def resend_code(request: EmailRequest, backend: BackendDep) -> dict[str, Any]:
    """Send a new confirmation code."""
    await backend.auth.resend_confirmation_code(request.email.strip().lower())
    return {"success": True, "message": "Confirmation code sent"}


@router.post("/forgot-password")
async def forgot_password(request: EmailRequest, backend: BackendDep) -> dict[str, Any]:
    """Start the password reset flow."""
    await backend.auth.reset_password(request.email.strip().lower())
    return {"success": True, "message": "Password reset code sent"}


@router.post("/confirm-forgot-password")
async def confirm_forgot_password(
    request: ConfirmForgotPasswordRequest,
    backend: BackendDep,
) -> dict[str, Any]:
    """Set a new password using the emailed code."""
    await backend.auth.confirm_reset_password(
        request.email.strip().lower(),
        request.code.strip(),
        request.new_password,
    )
    return {"success": True, "message": "Password updated"}


@router.post("/refresh")
async def refresh(
    request: RefreshRequest,
    backend: BackendDep,
    blocklist: Annotated[Blocklist, Depends(get_blocklist)],
) -> dict[str, Any]:
    """
    Exchange a refresh token for a new pair.

    Roles are re-read so that changes apply without signing in again.
    """
    token_data = decode_token(request.refresh_token, verify_type=REFRESH)
    if token_data is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid refresh token",
        )
    if await blocklist.is_user_suspended(token_data.sub):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account suspended. Please contact support.",
        )

    issued = await _issue_tokens(backend.database, token_data.sub, token_data.email)
    return {"success": True, **issued}


@router.post("/signout")
async def sign_out(
    current_user: Annotated[User, Depends(get_current_user)],
    backend: BackendDep,
) -> dict[str, Any]:
    """End the provider session."""
    await backend.auth.sign_out(current_user.id)
    logger.info("user_signed_out", user_id=current_user.id)
    return {"success": True}


@router.get("/me")
async def me(
    current_user: Annotated[User, Depends(get_current_active_user)],
    backend: BackendDep,
) -> dict[str, Any]:
    """The caller's identity, roles and profile."""
    user = await backend.auth.get_user(current_user.id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )

    profile = await backend.database.select_one("profiles", user_id=current_user.id)
    return {
        **user.model_dump(mode="json"),
        "roles": current_user.roles,
        "profile": profile,
    }
