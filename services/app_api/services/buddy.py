"""
Buddy Service
=============

Invitations and the buddy list.

A user may have at most five buddies, counting active buddies and pending
invites together. Invite and opt-out tokens are returned once in raw form;
only their SHA-256 digests are stored.

Version: 0.1.0
"""

import hashlib
import secrets
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, EmailStr, Field

from shared.backend import BackendService, OrderBy, QueryFilter, QueryOptions
from shared.backend.query import as_datetime
from shared.config import settings
from shared.logging import get_logger


logger = get_logger(__name__)

INVITES_TABLE = "buddy_invites"
BUDDIES_TABLE = "buddies"
PROFILES_TABLE = "profiles"

MAX_BUDDIES = 5
MAX_RESENDS = 3

InviteSender = Callable[[dict[str, Any], str], Awaitable[None] | None]


class BuddyInviteCreate(BaseModel):
    """Request model for inviting a buddy."""

    invitee_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    personal_message: str | None = Field(default=None, max_length=500)


class BuddyError(Exception):
    """Buddy workflow failure."""


class BuddyLimitError(BuddyError):
    """The user already has the maximum number of buddies and invites."""


class DuplicateInviteError(BuddyError):
    """A pending invite or active buddy already exists for this email."""


class InviteNotFoundError(BuddyError):
    """No invite or buddy matches."""


class InviteStateError(BuddyError):
    """The invite is no longer pending or has expired."""


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def mask_email(email: str) -> str:
    """j***@example.com"""
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}"


def _public(invite: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in invite.items() if k not in ("token_hash", "contact_value")}


async def _log_invite(invite: dict[str, Any], consent_url: str) -> None:
    if settings.is_production:
        logger.info("buddy_invite_issued", invite_id=invite["id"])
    else:
        logger.info("buddy_invite_issued", invite_id=invite["id"], consent_url=consent_url)


class BuddyService:
    """
    Service for buddy invitations.

    Example:
        >>> buddies = BuddyService(get_backend())
        >>> created = await buddies.create_invite(user.id, BuddyInviteCreate(...))
        >>> await buddies.respond_to_invite(created["token"], accept=True)
    """

    def __init__(self, backend: BackendService, invite_sender: InviteSender | None = None) -> None:
        self._db = backend.database
        self._send = invite_sender or _log_invite

    def _consent_url(self, token: str) -> str:
        return f"{settings.buddy.consent_base_url}?token={token}"

    async def _deliver(self, invite: dict[str, Any], token: str) -> None:
        result = self._send(invite, self._consent_url(token))
        if result is not None:
            await result

    async def _slots_used(self, user_id: str) -> int:
        active = await self._db.select(
            BUDDIES_TABLE,
            QueryOptions.where(user_id=user_id, status="active"),
        )
        pending = await self._db.select(
            INVITES_TABLE,
            QueryOptions.where(user_id=user_id, status="pending"),
        )
        return active.count + pending.count

    async def create_invite(self, user_id: str, request: BuddyInviteCreate) -> dict[str, Any]:
        """
        Invite someone to be a buddy.

        Returns:
            {"invite": ..., "token": raw token, "consent_url": ...}

        Raises:
            BuddyLimitError: If five buddies/invites already exist
            DuplicateInviteError: If the email is already pending or active
        """
        email = str(request.email).lower()

        if await self._slots_used(user_id) >= MAX_BUDDIES:
            raise BuddyLimitError(f"You can have at most {MAX_BUDDIES} buddies")

        duplicate_invite = await self._db.select_one(
            INVITES_TABLE, user_id=user_id, contact_value=email, status="pending"
        )
        duplicate_buddy = await self._db.select_one(
            BUDDIES_TABLE, user_id=user_id, email=email, status="active"
        )
        if duplicate_invite or duplicate_buddy:
            raise DuplicateInviteError("This person has already been invited")

        token = generate_token()
        now = datetime.now(UTC)
        rows = await self._db.insert(
            INVITES_TABLE,
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "invitee_name": request.invitee_name,
                "contact_type": "email",
                "contact_value": email,
                "contact_value_masked": mask_email(email),
                "personal_message": request.personal_message,
                "status": "pending",
                "token_hash": hash_token(token),
                "sent_at": now,
                "expires_at": now + timedelta(days=settings.buddy.invite_expiry_days),
                "resend_count": 0,
            },
        )
        invite = rows[0]
        await self._deliver(invite, token)

        logger.info("buddy_invite_created", user_id=user_id, invite_id=invite["id"])
        return {"invite": _public(invite), "token": token, "consent_url": self._consent_url(token)}

    async def _own_invite(self, user_id: str, invite_id: str) -> dict[str, Any]:
        invite = await self._db.select_one(INVITES_TABLE, id=invite_id, user_id=user_id)
        if invite is None:
            raise InviteNotFoundError(f"Invite not found: {invite_id}")
        return invite

    async def resend_invite(self, user_id: str, invite_id: str) -> dict[str, Any]:
        """
        Issue a fresh token and expiry for a pending invite.

        Raises:
            InviteStateError: If not pending or resent too often
        """
        invite = await self._own_invite(user_id, invite_id)
        if invite["status"] != "pending":
            raise InviteStateError(f"Invite is {invite['status']}")
        if int(invite.get("resend_count") or 0) >= MAX_RESENDS:
            raise InviteStateError("Invite has been resent too many times")

        token = generate_token()
        now = datetime.now(UTC)
        rows = await self._db.update(
            INVITES_TABLE,
            {
                "token_hash": hash_token(token),
                "expires_at": now + timedelta(days=settings.buddy.invite_expiry_days),
                "resend_count": int(invite.get("resend_count") or 0) + 1,
                "last_resend_at": now,
            },
            QueryOptions.where(id=invite_id),
        )
        await self._deliver(rows[0], token)
        logger.info("buddy_invite_resent", invite_id=invite_id)
        return {"invite": _public(rows[0]), "token": token, "consent_url": self._consent_url(token)}

    async def revoke_invite(self, user_id: str, invite_id: str) -> dict[str, Any]:
        invite = await self._own_invite(user_id, invite_id)
        if invite["status"] != "pending":
            raise InviteStateError(f"Invite is {invite['status']}")
        rows = await self._db.update(
            INVITES_TABLE,
            {"status": "revoked"},
            QueryOptions.where(id=invite_id),
        )
        return _public(rows[0])

    async def get_invite(self, token: str) -> dict[str, Any]:
        """
        Look up a pending invite by its raw token.

        An expired invite is marked expired.

        Returns:
            {"invite_id", "invitee_name", "inviter_name", "personal_message", "expires_at"}

        Raises:
            InviteNotFoundError: If no invite matches
            InviteStateError: If already answered or expired
        """
        invite = await self._db.select_one(INVITES_TABLE, token_hash=hash_token(token.strip()))
        if invite is None:
            raise InviteNotFoundError("This invite link was not found or has expired")

        if invite["status"] != "pending":
            raise InviteStateError("You have already accepted or declined this invite")

        if as_datetime(invite["expires_at"]) < datetime.now(UTC):
            await self._db.update(
                INVITES_TABLE,
                {"status": "expired"},
                QueryOptions.where(id=invite["id"]),
            )
            raise InviteStateError("This invite has expired")

        profile = await self._db.select_one(PROFILES_TABLE, user_id=invite["user_id"])
        return {
            "invite_id": invite["id"],
            "invitee_name": invite["invitee_name"],
            "inviter_name": (profile or {}).get("first_name") or "Someone",
            "personal_message": invite.get("personal_message"),
            "expires_at": invite["expires_at"],
        }

    async def respond_to_invite(self, token: str, accept: bool) -> dict[str, Any]:
        """
        Accept or decline an invite.

        The invite leaves the pending state in one conditional update, so of
        two concurrent answers only the first takes effect. Accepting creates
        an active buddy and returns its opt-out token.

        Raises:
            InviteStateError: If the invite was answered in the meantime
        """
        details = await self.get_invite(token)
        claimed = await self._db.update(
            INVITES_TABLE,
            {"status": "accepted" if accept else "declined"},
            QueryOptions.where(id=details["invite_id"], status="pending"),
        )
        if not claimed:
            raise InviteStateError("You have already accepted or declined this invite")
        invite = claimed[0]

        if not accept:
            logger.info("buddy_invite_declined", invite_id=invite["id"])
            return {"action": "declined"}

        active = await self._db.select(
            BUDDIES_TABLE,
            QueryOptions.where(user_id=invite["user_id"], status="active"),
        )
        opt_out_token = generate_token()
        rows = await self._db.insert(
            BUDDIES_TABLE,
            {
                "id": str(uuid.uuid4()),
                "user_id": invite["user_id"],
                "invite_id": invite["id"],
                "name": invite["invitee_name"],
                "email": invite["contact_value"],
                "status": "active",
                "preference_order": active.count,
                "opt_out_token_hash": hash_token(opt_out_token),
            },
        )
        logger.info("buddy_invite_accepted", invite_id=invite["id"], buddy_id=rows[0]["id"])
        return {"action": "accepted", "buddy_id": rows[0]["id"], "opt_out_token": opt_out_token}

    async def list_buddies(self, user_id: str) -> dict[str, list[dict[str, Any]]]:
        """Active buddies in preference order and pending invites."""
        buddy_options = QueryOptions.where(user_id=user_id, status="active")
        buddy_options.order_by = [OrderBy(column="preference_order")]
        buddies = await self._db.select(BUDDIES_TABLE, buddy_options)

        invite_options = QueryOptions.where(
            user_id=user_id,
            status=QueryFilter(operator="in", value=["pending"]),
        )
        invite_options.order_by = [OrderBy(column="sent_at", ascending=False)]
        invites = await self._db.select(INVITES_TABLE, invite_options)

        return {
            "buddies": [
                {k: v for k, v in b.items() if k != "opt_out_token_hash"} for b in buddies.data
            ],
            "invites": [_public(i) for i in invites.data],
        }

    async def remove_buddy(self, user_id: str, buddy_id: str) -> dict[str, Any]:
        buddy = await self._db.select_one(BUDDIES_TABLE, id=buddy_id, user_id=user_id, status="active")
        if buddy is None:
            raise InviteNotFoundError(f"Buddy not found: {buddy_id}")
        rows = await self._db.update(
            BUDDIES_TABLE,
            {"status": "removed"},
            QueryOptions.where(id=buddy_id),
        )
        logger.info("buddy_removed", user_id=user_id, buddy_id=buddy_id)
        return {k: v for k, v in rows[0].items() if k != "opt_out_token_hash"}

    async def opt_out(self, token: str) -> None:
        """A buddy leaves using the token from their acceptance."""
        removed = await self._db.update(
            BUDDIES_TABLE,
            {"status": "removed"},
            QueryOptions.where(opt_out_token_hash=hash_token(token.strip()), status="active"),
        )
        if not removed:
            raise InviteNotFoundError("Opt-out link not recognised")
        logger.info("buddy_opted_out", buddy_id=removed[0]["id"])
