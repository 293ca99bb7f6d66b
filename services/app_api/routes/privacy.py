"""
Privacy Routes
==============

Consent management, the user's pseudonymous wellness history, data export
and account deletion.

Version: 0.1.0
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from services.app_api.dependencies import get_privacy_service
from shared.auth import User, client_ip, get_current_active_user
from shared.logging import get_logger
from shared.models.privacy import (
    ConsentRecord,
    ConsentWithdrawal,
    DataExportResult,
    DeletionRequest,
    DeletionResult,
    UserWellnessData,
)
from shared.privacy import ConsentRequiredError, PrivacyService, ProfileNotFoundError


logger = get_logger(__name__)

router = APIRouter()

CurrentUser = Annotated[User, Depends(get_current_active_user)]
Privacy = Annotated[PrivacyService, Depends(get_privacy_service)]


def _no_profile(e: ProfileNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/consent")
async def get_consent(current_user: CurrentUser, privacy: Privacy) -> dict[str, Any]:
    """The caller's current consent decision."""
    consent = await privacy.get_consent(current_user.id)
    if consent is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No consent recorded",
        )
    return consent.model_dump(mode="json")


@router.post("/consent", status_code=status.HTTP_201_CREATED)
async def record_consent(
    consent: ConsentRecord,
    current_user: CurrentUser,
    privacy: Privacy,
) -> dict[str, Any]:
    """Record a new consent decision and apply it to the analytics pseudonym."""
    try:
        record = await privacy.record_consent(current_user.id, consent)
    except ProfileNotFoundError as e:
        raise _no_profile(e) from e
    return {"success": True, "consent": record}


@router.post("/consent/withdraw")
async def withdraw_consent(
    withdrawal: ConsentWithdrawal,
    current_user: CurrentUser,
    privacy: Privacy,
) -> dict[str, Any]:
    """Switch off optional processing purposes."""
    try:
        record = await privacy.withdraw_consent(current_user.id, withdrawal)
    except ProfileNotFoundError as e:
        raise _no_profile(e) from e
    return {"success": True, "consent": record}


@router.get("/pseudonym")
async def pseudonym_status(current_user: CurrentUser, privacy: Privacy) -> dict[str, bool]:
    """Whether the caller currently takes part in anonymous analytics."""
    return {"active": await privacy.get_user_pseudonym(current_user.id) is not None}


@router.get("/wellness", response_model=UserWellnessData)
async def wellness_data(current_user: CurrentUser, privacy: Privacy) -> UserWellnessData:
    """The caller's own pseudonymous sessions and scores."""
    try:
        return await privacy.get_user_wellness_data(current_user.id)
    except ConsentRequiredError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e


@router.post("/export", response_model=DataExportResult)
async def export_data(
    request: Request,
    current_user: CurrentUser,
    privacy: Privacy,
) -> DataExportResult:
    """Export the caller's data as JSON behind a time-limited download URL."""
    try:
        return await privacy.export_user_data(
            current_user.id,
            ip_address=client_ip(request),
            user_roles=current_user.roles,
        )
    except ProfileNotFoundError as e:
        raise _no_profile(e) from e


@router.delete("/me", response_model=DeletionResult)
async def delete_account(
    request: Request,
    current_user: CurrentUser,
    privacy: Privacy,
    deletion: DeletionRequest | None = None,
) -> DeletionResult:
    """
    Delete the caller's account and identity-domain data.

    A compliance backup is taken first and a deletion certificate is
    returned. Pseudonymous analytics rows are kept, unlinked.
    """
    if not await privacy.has_profile(current_user.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

    reason = (deletion or DeletionRequest()).reason
    logger.warning("account_deletion_requested", user_id=current_user.id, reason=reason)
    return await privacy.delete_user_data(current_user.id, reason, ip_address=client_ip(request))
