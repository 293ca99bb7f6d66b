"""
Cognito Auth Provider
=====================

AuthService backed by an AWS Cognito user pool (boto3 cognito-idp).

boto3 is synchronous, so every call runs in a worker thread. Cognito
exception names are translated to AuthError with user-facing copy.

Version: 0.1.0
"""

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from shared.backend.base import AuthEvent, AuthService, AuthUser, SignUpResult
from shared.backend.errors import AuthError, AuthErrorCode
from shared.logging import get_logger


logger = get_logger(__name__)


def _attributes(raw: list[dict[str, str]]) -> dict[str, str]:
    return {attr["Name"]: attr["Value"] for attr in raw}


def _user_from_attributes(
    attrs: dict[str, str],
    created_at: datetime | None = None,
) -> AuthUser:
    return AuthUser(
        id=attrs["sub"],
        email=attrs.get("email", ""),
        first_name=attrs.get("given_name"),
        last_name=attrs.get("family_name"),
        email_confirmed=attrs.get("email_verified", "false").lower() == "true",
        created_at=created_at,
    )


class CognitoAuthService(AuthService):
    """
    Cognito user pool identity provider.

    Usernames are email addresses. Admin operations (get_user, delete_user,
    server-side sign-out) need the user pool id and IAM credentials.
    """

    def __init__(
        self,
        client_id: str,
        user_pool_id: str | None = None,
        region: str = "eu-west-2",
        client: Any | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        super().__init__()
        self._client_id = client_id
        self._user_pool_id = user_pool_id
        self._client = client or boto3.client(
            "cognito-idp",
            region_name=region,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
        )
        # user id -> access token from the last sign-in on this instance
        self._access_tokens: dict[str, str] = {}

        logger.debug("cognito_auth_initialized", region=region, has_pool=bool(user_pool_id))

    async def _call(self, operation: str, **params: Any) -> dict[str, Any]:
        method: Callable[..., dict[str, Any]] = getattr(self._client, operation)
        try:
            return await asyncio.to_thread(method, **params)
        except ClientError as e:
            error = e.response.get("Error", {})
            name = error.get("Code", "")
            logger.warning("cognito_call_failed", operation=operation, error_code=name)
            raise AuthError.from_provider(name, error.get("Message")) from e
        except BotoCoreError as e:
            logger.error("cognito_unavailable", operation=operation, error=str(e))
            raise AuthError(AuthErrorCode.UNKNOWN, "Authentication service unavailable") from e

    def _require_pool(self) -> str:
        if not self._user_pool_id:
            raise AuthError(AuthErrorCode.UNKNOWN, "Cognito user pool id is not configured")
        return self._user_pool_id

    async def _find_username(self, user_id: str) -> tuple[str, dict[str, Any]] | None:
        response = await self._call(
            "list_users",
            UserPoolId=self._require_pool(),
            Filter=f'sub = "{user_id}"',
            Limit=1,
        )
        users = response.get("Users", [])
        if not users:
            return None
        return users[0]["Username"], users[0]

    async def sign_up(
        self,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> SignUpResult:
        attributes = [{"Name": "email", "Value": email}]
        if first_name:
            attributes.append({"Name": "given_name", "Value": first_name})
        if last_name:
            attributes.append({"Name": "family_name", "Value": last_name})

        response = await self._call(
            "sign_up",
            ClientId=self._client_id,
            Username=email,
            Password=password,
            UserAttributes=attributes,
        )
        delivery = response.get("CodeDeliveryDetails") or {}
        result = SignUpResult(
            user_id=response["UserSub"],
            user_confirmed=bool(response.get("UserConfirmed")),
            delivery_medium=delivery.get("DeliveryMedium"),
            delivery_destination=delivery.get("Destination"),
        )

        logger.info("user_signed_up", user_id=result.user_id, confirmed=result.user_confirmed)
        await self._emit(
            AuthEvent.SIGNED_UP,
            AuthUser(id=result.user_id, email=email, first_name=first_name, last_name=last_name),
        )
        return result

    async def sign_in(self, email: str, password: str) -> AuthUser:
        response = await self._call(
            "initiate_auth",
            AuthFlow="USER_PASSWORD_AUTH",
            ClientId=self._client_id,
            AuthParameters={"USERNAME": email, "PASSWORD": password},
        )

        tokens = response.get("AuthenticationResult")
        if not tokens:
            # MFA / new-password challenges are not supported by the app
            logger.warning("cognito_challenge_returned", challenge=response.get("ChallengeName"))
            raise AuthError(AuthErrorCode.NOT_AUTHORIZED, "Additional verification required")

        profile = await self._call("get_user", AccessToken=tokens["AccessToken"])
        user = _user_from_attributes(_attributes(profile.get("UserAttributes", [])))
        self._access_tokens[user.id] = tokens["AccessToken"]

        await self._emit(AuthEvent.SIGNED_IN, user)
        return user

    async def confirm_sign_up(self, email: str, code: str) -> None:
        await self._call(
            "confirm_sign_up",
            ClientId=self._client_id,
            Username=email,
            ConfirmationCode=code.strip(),
        )
        logger.info("user_confirmed", email=email)
        await self._emit(AuthEvent.USER_CONFIRMED, None)

    async def resend_confirmation_code(self, email: str) -> None:
        await self._call("resend_confirmation_code", ClientId=self._client_id, Username=email)

    async def reset_password(self, email: str) -> None:
        await self._call("forgot_password", ClientId=self._client_id, Username=email)
        await self._emit(AuthEvent.PASSWORD_RECOVERY, None)

    async def confirm_reset_password(self, email: str, code: str, new_password: str) -> None:
        await self._call(
            "confirm_forgot_password",
            ClientId=self._client_id,
            Username=email,
            ConfirmationCode=code.strip(),
            Password=new_password,
        )
        logger.info("password_reset_completed", email=email)

    async def sign_out(self, user_id: str) -> None:
        token = self._access_tokens.pop(user_id, None)
        if token is not None:
            await self._call("global_sign_out", AccessToken=token)
        elif self._user_pool_id:
            found = await self._find_username(user_id)
            if found is not None:
                await self._call(
                    "admin_user_global_sign_out",
                    UserPoolId=self._user_pool_id,
                    Username=found[0],
                )
        await self._emit(AuthEvent.SIGNED_OUT, None)

    async def get_user(self, user_id: str) -> AuthUser | None:
        found = await self._find_username(user_id)
        if found is None:
            return None
        _, record = found
        return _user_from_attributes(
            _attributes(record.get("Attributes", [])),
            created_at=record.get("UserCreateDate"),
        )

    async def delete_user(self, user_id: str) -> bool:
        found = await self._find_username(user_id)
        if found is None:
            return False
        username, record = found

        await self._call("admin_delete_user", UserPoolId=self._require_pool(), Username=username)
        self._access_tokens.pop(user_id, None)

        logger.info("user_deleted", user_id=user_id)
        await self._emit(
            AuthEvent.USER_DELETED,
            _user_from_attributes(_attributes(record.get("Attributes", []))),
        )
        return True
