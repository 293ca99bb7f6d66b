"""
Buddies Routes
==============

API endpoints for buddy invitations.

The consent and opt-out endpoints are public: the invitee authenticates
with the token from their email.

Version: 0.1.0
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from services.app_api.dependencies import get_buddy_service
from services.app_api.services import (
    BuddyInviteCreate,
    BuddyLimitError,
    BuddyService,
    DuplicateInviteError,
    InviteNotFoundError,
    InviteStateError,
)
from shared.auth import User, get_current_active_user
from shared.logging import get_logger


logger = get_logger(__name__)

router = APIRouter()

CurrentUser = Annotated[User, Depends(get_current_active_user)]
Buddies = Annotated[BuddyService, Depends(get_buddy_service)]


class InviteResponse(BaseModel):
    token: str
    accept: bool


class OptOutRequest(BaseModel):
    token: str


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, InviteNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, InviteStateError):
        code = status.HTTP_410_GONE
    else:
        code = status.HTTP_409_CONFLICT
    return HTTPException(status_code=code, detail=str(e))


@router.get("")
async def list_buddies(current_user: CurrentUser, buddies: Buddies) -> dict[str, Any]:
    """Active buddies in preference order and pending invites."""
    return await buddies.list_buddies(current_user.id)


@router.post("/invites", status_code=status.HTTP_201_CREATED)
async def create_invite(
    request: BuddyInviteCreate,
    current_user: CurrentUser,
    buddies: Buddies,
) -> dict[str, Any]:
    """Invite someone to be a buddy; the invite email carries the consent link."""
    try:
        created = await buddies.create_invite(current_user.id, request)
    except (BuddyLimitError, DuplicateInviteError) as e:
        raise _http_error(e) from e
    return {"success": True, "invite": created["invite"]}


@router.post("/invites/{invite_id}/resend")
async def resend_invite(
    invite_id: str,
    current_user: CurrentUser,
    buddies: Buddies,
) -> dict[str, Any]:
    try:
        resent = await buddies.resend_invite(current_user.id, invite_id)
    except (InviteNotFoundError, InviteStateError) as e:
        raise _http_error(e) from e
    return {"success": True, "invite": resent["invite"]}


@router.delete("/invites/{invite_id}")
async def revoke_invite(
    invite_id: str,
    current_user: CurrentUser,
    buddies: Buddies,
) -> dict[str, Any]:
    try:
        invite = await buddies.revoke_invite(current_user.id, invite_id)
    except (InviteNotFoundError, InviteStateError) as e:
        raise _http_error(e) from e
    return {"success": True, "invite": invite}


@router.delete("/{buddy_id}")
async def remove_buddy(
    buddy_id: str,
    current_user: CurrentUser,
    buddies: Buddies,
) -> dict[str, Any]:
    try:
        buddy = await buddies.remove_buddy(current_user.id, buddy_id)
    except InviteNotFoundError as e:
        raise _http_error(e) from e
    return {"success": True, "buddy": buddy}


# ============================================================================
# Public Endpoints
# ============================================================================


@router.get("/invite/consent")
async def get_invite(
    buddies: Buddies,
    token: str = Query(..., min_length=1),
) -> dict[str, Any]:
    """Invite details shown on the consent page."""
    try:
        return await buddies.get_invite(token)
    except (InviteNotFoundError, InviteStateError) as e:
        raise _http_error(e) from e


@router.post("/invite/consent")
async def respond_to_invite(request: InviteResponse, buddies: Buddies) -> dict[str, Any]:
    """Accept or decline an invite."""
    try:
        result = await buddies.respond_to_invite(request.token, request.accept)
    except (InviteNotFoundError, InviteStateError) as e:
        raise _http_error(e) from e
    return {"success": True, **result}


@router.post("/opt-out")
async def opt_out(request: OptOutRequest, buddies: Buddies) -> dict[str, Any]:
    """A buddy stops receiving notifications."""
    try:
        await buddies.opt_out(request.token)
    except InviteNotFoundError as e:
        raise _http_error(e) from e
    return {"success": True}
