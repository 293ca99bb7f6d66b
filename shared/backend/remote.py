"""
API-Proxied Provider
====================

Database and auth services that call the Mind Measure HTTP API instead of
talking to AWS directly, so credentials stay server-side.

Endpoints used:
- POST /api/database/{select,insert,update,delete,upsert}
- POST /api/auth/{signup,signin,confirm-signup,resend-code,
  forgot-password,confirm-forgot-password,signout}
- GET  /api/auth/me
- GET  /health

Version: 0.1.0
"""

from typing import Any

import httpx
from pydantic_core import to_jsonable_python
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shared.backend.base import AuthEvent, AuthService, AuthUser, ChangeType, DatabaseService, RealtimeService, SignUpResult
from shared.backend.errors import AuthError, AuthErrorCode, DatabaseError
from shared.backend.query import QueryOptions, QueryResult, validate_identifier, validate_options
from shared.logging import get_logger


logger = get_logger(__name__)

MAX_ATTEMPTS = 3


class ApiClient:
    """Thin JSON client for the Mind Measure API."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self.base_url = base_url

    async def close(self) -> None:
        await self._client.aclose()

    @retry(
        retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            "api_retry",
            attempt=retry_state.attempt_number,
        ),
    )
    async def request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> tuple[int, dict[str, Any]]:
        """Send a request and return (status, decoded JSON body)."""
        headers = {"Authorization": f"Bearer {token}"} if token else None
        payload = to_jsonable_python(json) if json is not None else None
        response = await self._client.request(method, path, json=payload, headers=headers)
        try:
            body = response.json()
        except ValueError:
            body = {"error": response.text or response.reason_phrase}
        return response.status_code, body if isinstance(body, dict) else {"data": body}


def _error_message(body: dict[str, Any], default: str) -> str:
    error = body.get("error") or body.get("detail")
    if isinstance(error, dict):
        return str(error.get("message") or default)
    return str(error or default)


# =============================================================================
# Database
# =============================================================================


class ApiDatabaseService(DatabaseService):
    """DatabaseService that forwards every call to /api/database/*."""

    def __init__(self, client: ApiClient, realtime: RealtimeService | None = None) -> None:
        super().__init__(realtime)
        self._api = client

    async def close(self) -> None:
        await self._api.close()

    async def _post(self, operation: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            status, body = await self._api.request("POST", f"/api/database/{operation}", json=payload)
        except httpx.HTTPError as e:
            logger.error("api_database_unreachable", operation=operation, error=str(e))
            raise DatabaseError(f"Database API unreachable: {e}") from e

        if status >= 400 or body.get("error"):
            message = _error_message(body, f"Database {operation} failed ({status})")
            logger.warning("api_database_error", operation=operation, status=status)
            raise DatabaseError(message)
        return body

    @staticmethod
    def _filters(options: QueryOptions) -> dict[str, Any]:
        return {
            column: {"operator": flt.operator.value, "value": flt.value}
            for column, flt in options.filters.items()
        }

    async def select(self, table: str, options: QueryOptions | None = None) -> QueryResult:
        options = options or QueryOptions()
        validate_identifier(table, "table")
        validate_options(options)

        body = await self._post(
            "select",
            {
                "table": table,
                "filters": self._filters(options),
                "columns": options.columns,
                "order_by": [o.model_dump() for o in options.order_by],
                "limit": options.limit,
                "offset": options.offset,
            },
        )
        data = body.get("data") or []
        return QueryResult(data=data, count=body.get("count", len(data)))

    async def insert(
        self,
        table: str,
        rows: dict[str, Any] | list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        validate_identifier(table, "table")
        body = await self._post("insert", {"table": table, "data": rows})
        inserted = body.get("data") or []
        await self._notify(table, ChangeType.INSERT, inserted)
        return inserted

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        options: QueryOptions,
    ) -> list[dict[str, Any]]:
        options = self._require_filters("update", options)
        validate_identifier(table, "table")
        validate_options(options)

        body = await self._post(
            "update",
            {"table": table, "data": values, "filters": self._filters(options)},
        )
        updated = body.get("data") or []
        await self._notify(table, ChangeType.UPDATE, updated)
        return updated

    async def delete(self, table: str, options: QueryOptions) -> int:
        options = self._require_filters("delete", options)
        validate_identifier(table, "table")
        validate_options(options)

        body = await self._post("delete", {"table": table, "filters": self._filters(options)})
        removed = body.get("data") or []
        await self._notify(table, ChangeType.DELETE, removed)
        return int(body.get("count", len(removed)))

    async def upsert(
        self,
        table: str,
        rows: dict[str, Any] | list[dict[str, Any]],
        on_conflict: str = "id",
    ) -> list[dict[str, Any]]:
        validate_identifier(table, "table")
        validate_identifier(on_conflict, "column")
        body = await self._post("upsert", {"table": table, "data": rows, "on_conflict": on_conflict})
        stored = body.get("data") or []
        await self._notify(table, ChangeType.UPDATE, stored)
        return stored

    async def health_check(self) -> dict[str, Any]:
        try:
            status, body = await self._api.request("GET", "/health")
        except httpx.HTTPError as e:
            logger.error("api_health_check_failed", error=str(e))
            return {"status": "unhealthy", "provider": "aws", "error": str(e)}

        return {
            "status": "healthy" if status == 200 else "unhealthy",
            "provider": "aws",
            "api": self._api.base_url,
            "api_status": body.get("status"),
        }


# =============================================================================
# Auth
# =============================================================================


class ApiAuthService(AuthService):
    """AuthService that forwards to /api/auth/* and keeps the issued tokens."""

    def __init__(self, client: ApiClient) -> None:
        super().__init__()
        self._api = client
        # user id -> access token
        self._tokens: dict[str, str] = {}

    def access_token(self, user_id: str) -> str | None:
        """Access token from the user's last sign-in on this instance."""
        return self._tokens.get(user_id)

    async def _post(self, path: str, payload: dict[str, Any], token: str | None = None) -> dict[str, Any]:
        try:
            status, body = await self._api.request("POST", f"/api/auth/{path}", json=payload, token=token)
        except httpx.HTTPError as e:
            logger.error("api_auth_unreachable", path=path, error=str(e))
            raise AuthError(AuthErrorCode.UNKNOWN, "Authentication service unavailable") from e

        if status >= 400:
            raise self._error(body)
        return body

    @staticmethod
    def _error(body: dict[str, Any]) -> AuthError:
        message = _error_message(body, "Authentication failed")
        try:
            code = AuthErrorCode(body.get("code", AuthErrorCode.UNKNOWN.value))
        except ValueError:
            code = AuthErrorCode.UNKNOWN
        return AuthError(code, message)

    async def sign_up(
        self,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> SignUpResult:
        body = await self._post(
            "signup",
            {"email": email, "password": password, "first_name": first_name, "last_name": last_name},
        )
        result = SignUpResult.model_validate(body)
        await self._emit(AuthEvent.SIGNED_UP, AuthUser(id=result.user_id, email=email))
        return result

    async def sign_in(self, email: str, password: str) -> AuthUser:
        body = await self._post("signin", {"email": email, "password": password})
        user = AuthUser.model_validate(body["user"])
        self._tokens[user.id] = body["access_token"]
        await self._emit(AuthEvent.SIGNED_IN, user)
        return user

    async def confirm_sign_up(self, email: str, code: str) -> None:
        await self._post("confirm-signup", {"email": email, "code": code})
        await self._emit(AuthEvent.USER_CONFIRMED, None)

    async def resend_confirmation_code(self, email: str) -> None:
        await self._post("resend-code", {"email": email})

    async def reset_password(self, email: str) -> None:
        await self._post("forgot-password", {"email": email})
        await self._emit(AuthEvent.PASSWORD_RECOVERY, None)

    async def confirm_reset_password(self, email: str, code: str, new_password: str) -> None:
        await self._post(
            "confirm-forgot-password",
            {"email": email, "code": code, "new_password": new_password},
        )

    async def sign_out(self, user_id: str) -> None:
        token = self._tokens.pop(user_id, None)
        if token is not None:
            await self._post("signout", {}, token=token)
        await self._emit(AuthEvent.SIGNED_OUT, None)

    async def get_user(self, user_id: str) -> AuthUser | None:
        token = self._tokens.get(user_id)
        if token is None:
            return None
        try:
            status, body = await self._api.request("GET", "/api/auth/me", token=token)
        except httpx.HTTPError as e:
            raise AuthError(AuthErrorCode.UNKNOWN, "Authentication service unavailable") from e
        if status == 401:
            self._tokens.pop(user_id, None)
            return None
        if status >= 400:
            raise self._error(body)
        return AuthUser.model_validate(body)

    async def delete_user(self, user_id: str) -> bool:
        token = self._tokens.get(user_id)
        if token is None:
            raise AuthError(AuthErrorCode.NOT_AUTHORIZED, "Sign in before deleting the account")
        try:
            status, body = await self._api.request(
                "DELETE", "/api/privacy/me", json={"reason": "user_request"}, token=token
            )
        except httpx.HTTPError as e:
            raise AuthError(AuthErrorCode.UNKNOWN, "Authentication service unavailable") from e
        if status == 404:
            return False
        if status >= 400:
            raise self._error(body)

        self._tokens.pop(user_id, None)
        await self._emit(AuthEvent.USER_DELETED, None)
        return True
