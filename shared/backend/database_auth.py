"""
Database-Backed Authentication
==============================

AuthService implementation that keeps identities in the configured
DatabaseService. Used by the local and postgresql providers so that
sign-up, confirmation codes and password resets behave like the Cognito
flow without any AWS dependency.

Tables:
- auth_users: id, email, password_hash, first_name, last_name,
  email_confirmed, disabled, created_at, updated_at
- auth_codes: id, email, purpose, code_hash, expires_at, used, created_at

Version: 0.1.0
"""

import hashlib
import re
import secrets
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from shared.auth.password import hash_password, needs_rehash, verify_password
from shared.backend.base import AuthEvent, AuthService, AuthUser, DatabaseService, SignUpResult
from shared.backend.errors import AuthError, AuthErrorCode
from shared.backend.query import QueryOptions, as_datetime
from shared.config import settings
from shared.logging import get_logger


logger = get_logger(__name__)

USERS_TABLE = "auth_users"
CODES_TABLE = "auth_codes"

PURPOSE_CONFIRM = "confirm_signup"
PURPOSE_RESET = "reset_password"

CODE_TTL = {
    PURPOSE_CONFIRM: timedelta(hours=24),
    PURPOSE_RESET: timedelta(hours=1),
}

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

CodeSender = Callable[[str, str, str], Awaitable[None] | None]


def _hash_code(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


def _generate_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def validate_password_policy(password: str) -> None:
    """
    Enforce the Cognito default policy: 8+ characters with upper, lower and digit.

    Raises:
        AuthError: INVALID_PASSWORD if the policy is not met
    """
    if (
        len(password) < 8
        or not re.search(r"[A-Z]", password)
        or not re.search(r"[a-z]", password)
        or not re.search(r"\d", password)
    ):
        raise AuthError(AuthErrorCode.INVALID_PASSWORD)


async def _log_code(email: str, purpose: str, code: str) -> None:
    if settings.is_production:
        logger.info("auth_code_issued", email=email, purpose=purpose)
    else:
        logger.info("auth_code_issued", email=email, purpose=purpose, dev_code=code)


class DatabaseAuthService(AuthService):
    """
    Identity provider backed by database tables.

    Passwords are bcrypt-hashed; one-time codes are stored as SHA-256
    digests with an expiry and are single use.
    """

    def __init__(
        self,
        database: DatabaseService,
        code_sender: CodeSender | None = None,
        auto_confirm: bool = False,
    ) -> None:
        """
        Initialize the service.

        Args:
            database: Where identities are stored
            code_sender: Callable(email, purpose, code) delivering codes
            auto_confirm: Mark new accounts confirmed without a code
        """
        super().__init__()
        self._db = database
        self._send_code = code_sender or _log_code
        self._auto_confirm = auto_confirm

    @staticmethod
    def _normalize_email(email: str) -> str:
        email = (email or "").strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise AuthError(AuthErrorCode.INVALID_PARAMETER)
        return email

    @staticmethod
    def _to_user(row: dict[str, Any]) -> AuthUser:
        return AuthUser(
            id=row["id"],
            email=row["email"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            email_confirmed=bool(row.get("email_confirmed")),
            created_at=row.get("created_at"),
        )

    async def _find_by_email(self, email: str) -> dict[str, Any] | None:
        return await self._db.select_one(USERS_TABLE, email=email)

    async def _issue_code(self, email: str, purpose: str) -> None:
        # Invalidate outstanding codes for the same purpose
        await self._db.update(
            CODES_TABLE,
            {"used": True},
            QueryOptions.where(email=email, purpose=purpose, used=False),
        )

        code = _generate_code()
        now = datetime.now(UTC)
        await self._db.insert(
            CODES_TABLE,
            {
                "id": str(uuid.uuid4()),
                "email": email,
                "purpose": purpose,
                "code_hash": _hash_code(code),
                "expires_at": now + CODE_TTL[purpose],
                "used": False,
                "created_at": now,
            },
        )

        result = self._send_code(email, purpose, code)
        if result is not None:
            await result

    async def _consume_code(self, email: str, purpose: str, code: str) -> None:
        row = await self._db.select_one(
            CODES_TABLE,
            email=email,
            purpose=purpose,
            code_hash=_hash_code(code.strip()),
            used=False,
        )
        if row is None:
            raise AuthError(AuthErrorCode.CODE_MISMATCH)

        if as_datetime(row["expires_at"]) < datetime.now(UTC):
            raise AuthError(AuthErrorCode.EXPIRED_CODE)

        await self._db.update(CODES_TABLE, {"used": True}, QueryOptions.where(id=row["id"]))

    async def sign_up(
        self,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> SignUpResult:
        email = self._normalize_email(email)
        validate_password_policy(password)

        if await self._find_by_email(email) is not None:
            raise AuthError(AuthErrorCode.USERNAME_EXISTS)

        now = datetime.now(UTC)
        rows = await self._db.insert(
            USERS_TABLE,
            {
                "id": str(uuid.uuid4()),
                "email": email,
                "password_hash": hash_password(password),
                "first_name": first_name,
                "last_name": last_name,
                "email_confirmed": self._auto_confirm,
                "disabled": False,
                "created_at": now,
                "updated_at": now,
            },
        )
        user = self._to_user(rows[0])

        if not self._auto_confirm:
            await self._issue_code(email, PURPOSE_CONFIRM)

        logger.info("user_signed_up", user_id=user.id, confirmed=user.email_confirmed)
        await self._emit(AuthEvent.SIGNED_UP, user)

        return SignUpResult(
            user_id=user.id,
            user_confirmed=user.email_confirmed,
            delivery_medium=None if self._auto_confirm else "EMAIL",
            delivery_destination=None if self._auto_confirm else email,
        )

    async def sign_in(self, email: str, password: str) -> AuthUser:
        email = self._normalize_email(email)
        row = await self._find_by_email(email)

        if row is None or not verify_password(password, row["password_hash"]):
            raise AuthError(AuthErrorCode.NOT_AUTHORIZED)
        if row.get("disabled"):
            raise AuthError(AuthErrorCode.NOT_AUTHORIZED, "User is disabled.")
        if not row.get("email_confirmed"):
            raise AuthError(AuthErrorCode.USER_NOT_CONFIRMED)

        if needs_rehash(row["password_hash"]):
            await self._db.update(
                USERS_TABLE,
                {"password_hash": hash_password(password)},
                QueryOptions.where(id=row["id"]),
            )

        user = self._to_user(row)
        await self._emit(AuthEvent.SIGNED_IN, user)
        return user

    async def confirm_sign_up(self, email: str, code: str) -> None:
        email = self._normalize_email(email)
        row = await self._find_by_email(email)
        if row is None:
            raise AuthError(AuthErrorCode.USER_NOT_FOUND)

        await self._consume_code(email, PURPOSE_CONFIRM, code)
        updated = await self._db.update(
            USERS_TABLE,
            {"email_confirmed": True, "updated_at": datetime.now(UTC)},
            QueryOptions.where(id=row["id"]),
        )

        logger.info("user_confirmed", user_id=row["id"])
        await self._emit(AuthEvent.USER_CONFIRMED, self._to_user(updated[0]))

    async def resend_confirmation_code(self, email: str) -> None:
        email = self._normalize_email(email)
        row = await self._find_by_email(email)
        if row is None:
            raise AuthError(AuthErrorCode.USER_NOT_FOUND)
        if row.get("email_confirmed"):
            raise AuthError(AuthErrorCode.INVALID_PARAMETER, "User is already confirmed.")

        await self._issue_code(email, PURPOSE_CONFIRM)

    async def reset_password(self, email: str) -> None:
        email = self._normalize_email(email)
        row = await self._find_by_email(email)
        if row is None:
            raise AuthError(AuthErrorCode.USER_NOT_FOUND)

        await self._issue_code(email, PURPOSE_RESET)
        await self._emit(AuthEvent.PASSWORD_RECOVERY, self._to_user(row))

    async def confirm_reset_password(self, email: str, code: str, new_password: str) -> None:
        email = self._normalize_email(email)
        row = await self._find_by_email(email)
        if row is None:
            raise AuthError(AuthErrorCode.USER_NOT_FOUND)

        validate_password_policy(new_password)
        await self._consume_code(email, PURPOSE_RESET, code)
        await self._db.update(
            USERS_TABLE,
            {"password_hash": hash_password(new_password), "updated_at": datetime.now(UTC)},
            QueryOptions.where(id=row["id"]),
        )
        logger.info("password_reset_completed", user_id=row["id"])

    async def sign_out(self, user_id: str) -> None:
        user = await self.get_user(user_id)
        await self._emit(AuthEvent.SIGNED_OUT, user)

    async def get_user(self, user_id: str) -> AuthUser | None:
        row = await self._db.select_one(USERS_TABLE, id=user_id)
        return self._to_user(row) if row else None

    async def delete_user(self, user_id: str) -> bool:
        user = await self.get_user(user_id)
        if user is None:
            return False

        await self._db.delete(CODES_TABLE, QueryOptions.where(email=user.email))
        await self._db.delete(USERS_TABLE, QueryOptions.where(id=user_id))

        logger.info("user_deleted", user_id=user_id)
        await self._emit(AuthEvent.USER_DELETED, user)
        return True
