"""
Database Auth Tests
===================

Tests for the database-backed identity provider.

Version: 0.1.0
"""

from datetime import UTC, datetime, timedelta

import pytest

from shared.backend import AuthError, AuthErrorCode, AuthEvent, QueryOptions
from shared.backend.database_auth import CODES_TABLE, DatabaseAuthService, validate_password_policy
from shared.backend.local import LocalDatabaseService


PASSWORD = "Wellbeing1"


@pytest.fixture
def codes() -> list[tuple[str, str, str]]:
    return []


@pytest.fixture
def db() -> LocalDatabaseService:
    return LocalDatabaseService()


@pytest.fixture
def auth(db, codes) -> DatabaseAuthService:
    return DatabaseAuthService(db, code_sender=lambda email, purpose, code: codes.append((email, purpose, code)))


def last_code(codes, purpose: str) -> str:
    return [c for _, p, c in codes if p == purpose][-1]


class TestPasswordPolicy:
    """Tests for validate_password_policy."""

    @pytest.mark.parametrize("password", ["Short1", "alllowercase1", "ALLUPPERCASE1", "NoDigitsHere"])
    def test_rejected(self, password):
        with pytest.raises(AuthError) as exc:
            validate_password_policy(password)
        assert exc.value.code == AuthErrorCode.INVALID_PASSWORD

    def test_accepted(self):
        validate_password_policy(PASSWORD)


class TestSignUp:
    """Tests for sign-up and confirmation."""

    async def test_sign_up_sends_code(self, auth, codes):
        result = await auth.sign_up("Sam@Uni.ac.uk", PASSWORD, first_name="Sam")
        assert result.user_confirmed is False
        assert result.delivery_medium == "EMAIL"
        assert codes[0][0] == "sam@uni.ac.uk"
        assert codes[0][1] == "confirm_signup"
        assert len(codes[0][2]) == 6

    async def test_duplicate_email(self, auth):
        await auth.sign_up("sam@uni.ac.uk", PASSWORD)
        with pytest.raises(AuthError) as exc:
            await auth.sign_up("SAM@uni.ac.uk", PASSWORD)
        assert exc.value.code == AuthErrorCode.USERNAME_EXISTS

    async def test_invalid_email(self, auth):
        with pytest.raises(AuthError) as exc:
            await auth.sign_up("not-an-email", PASSWORD)
        assert exc.value.code == AuthErrorCode.INVALID_PARAMETER

    async def test_auto_confirm(self, db, codes):
        auth = DatabaseAuthService(db, code_sender=lambda *a: codes.append(a), auto_confirm=True)
        result = await auth.sign_up("sam@uni.ac.uk", PASSWORD)
        assert result.user_confirmed is True
        assert codes == []
        user = await auth.sign_in("sam@uni.ac.uk", PASSWORD)
        assert user.email_confirmed is True

    async def test_unconfirmed_sign_in(self, auth):
        await auth.sign_up("sam@uni.ac.uk", PASSWORD)
        with pytest.raises(AuthError) as exc:
            await auth.sign_in("sam@uni.ac.uk", PASSWORD)
        assert exc.value.code == AuthErrorCode.USER_NOT_CONFIRMED
        assert exc.value.needs_verification is True

    async def test_confirm_then_sign_in(self, auth, codes):
        result = await auth.sign_up("sam@uni.ac.uk", PASSWORD)
        await auth.confirm_sign_up("sam@uni.ac.uk", last_code(codes, "confirm_signup"))

        user = await auth.sign_in("sam@uni.ac.uk", PASSWORD)
        assert user.id == result.user_id
        assert user.email_confirmed is True

    async def test_wrong_code(self, auth, codes):
        await auth.sign_up("sam@uni.ac.uk", PASSWORD)
        wrong = "000000" if last_code(codes, "confirm_signup") != "000000" else "111111"
        with pytest.raises(AuthError) as exc:
            await auth.confirm_sign_up("sam@uni.ac.uk", wrong)
        assert exc.value.code == AuthErrorCode.CODE_MISMATCH

    async def test_code_is_single_use(self, auth, codes):
        await auth.sign_up("sam@uni.ac.uk", PASSWORD)
        code = last_code(codes, "confirm_signup")
        await auth.confirm_sign_up("sam@uni.ac.uk", code)
        with pytest.raises(AuthError):
            await auth.confirm_sign_up("sam@uni.ac.uk", code)

    async def test_resend_invalidates_previous_code(self, auth, codes):
        await auth.sign_up("sam@uni.ac.uk", PASSWORD)
        first = last_code(codes, "confirm_signup")
        await auth.resend_confirmation_code("sam@uni.ac.uk")
        second = last_code(codes, "confirm_signup")

        if first != second:
            with pytest.raises(AuthError):
                await auth.confirm_sign_up("sam@uni.ac.uk", first)
        await auth.confirm_sign_up("sam@uni.ac.uk", second)

    async def test_expired_code(self, auth, db, codes):
        await auth.sign_up("sam@uni.ac.uk", PASSWORD)
        await db.update(
            CODES_TABLE,
            {"expires_at": datetime.now(UTC) - timedelta(minutes=1)},
            QueryOptions.where(email="sam@uni.ac.uk"),
        )
        with pytest.raises(AuthError) as exc:
            await auth.confirm_sign_up("sam@uni.ac.uk", last_code(codes, "confirm_signup"))
        assert exc.value.code == AuthErrorCode.EXPIRED_CODE

    async def test_resend_for_confirmed_user(self, auth, codes):
        await auth.sign_up("sam@uni.ac.uk", PASSWORD)
        await auth.confirm_sign_up("sam@uni.ac.uk", last_code(codes, "confirm_signup"))
        with pytest.raises(AuthError) as exc:
            await auth.resend_confirmation_code("sam@uni.ac.uk")
        assert exc.value.code == AuthErrorCode.INVALID_PARAMETER


class TestSignIn:
    """Tests for sign-in, reset and deletion."""

    @pytest.fixture
    async def user_id(self, auth, codes) -> str:
        result = await auth.sign_up("sam@uni.ac.uk", PASSWORD)
        await auth.confirm_sign_up("sam@uni.ac.uk", last_code(codes, "confirm_signup"))
        return result.user_id

    async def test_wrong_password(self, auth, user_id):
        with pytest.raises(AuthError) as exc:
            await auth.sign_in("sam@uni.ac.uk", "Wrongpass1")
        assert exc.value.code == AuthErrorCode.NOT_AUTHORIZED

    async def test_unknown_user_looks_like_wrong_password(self, auth):
        with pytest.raises(AuthError) as exc:
            await auth.sign_in("nobody@uni.ac.uk", PASSWORD)
        assert exc.value.code == AuthErrorCode.NOT_AUTHORIZED

    async def test_password_reset(self, auth, codes, user_id):
        await auth.reset_password("sam@uni.ac.uk")
        await auth.confirm_reset_password("sam@uni.ac.uk", last_code(codes, "reset_password"), "NewPassw0rd")

        with pytest.raises(AuthError):
            await auth.sign_in("sam@uni.ac.uk", PASSWORD)
        assert (await auth.sign_in("sam@uni.ac.uk", "NewPassw0rd")).id == user_id

    async def test_reset_rejects_weak_password(self, auth, codes, user_id):
        await auth.reset_password("sam@uni.ac.uk")
        with pytest.raises(AuthError) as exc:
            await auth.confirm_reset_password("sam@uni.ac.uk", last_code(codes, "reset_password"), "weak")
        assert exc.value.code == AuthErrorCode.INVALID_PASSWORD

    async def test_reset_unknown_user(self, auth):
        with pytest.raises(AuthError) as exc:
            await auth.reset_password("nobody@uni.ac.uk")
        assert exc.value.code == AuthErrorCode.USER_NOT_FOUND

    async def test_delete_user(self, auth, user_id):
        assert await auth.get_user(user_id) is not None
        assert await auth.delete_user(user_id) is True
        assert await auth.get_user(user_id) is None
        assert await auth.delete_user(user_id) is False

    async def test_auth_events(self, auth, user_id):
        events = []
        unsubscribe = auth.on_auth_state_change(lambda event, user: events.append(event))

        await auth.sign_in("sam@uni.ac.uk", PASSWORD)
        await auth.sign_out(user_id)
        unsubscribe()
        await auth.sign_in("sam@uni.ac.uk", PASSWORD)

        assert events == [AuthEvent.SIGNED_IN, AuthEvent.SIGNED_OUT]
