"""
Backend Service Interface
=========================

Abstract contracts for database, authentication, storage, real-time and
function-invocation operations, and the BackendService bundle that groups
them. Concrete providers live in sibling modules.

Version: 0.1.0
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from shared.backend.errors import DatabaseError
from shared.backend.query import QueryOptions, QueryResult
from shared.config import BackendProvider
from shared.logging import get_logger


logger = get_logger(__name__)


# =============================================================================
# Models
# =============================================================================


class AuthEvent(str, Enum):
    """Auth-state change events delivered to listeners."""

    SIGNED_UP = "SIGNED_UP"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    USER_CONFIRMED = "USER_CONFIRMED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"
    USER_DELETED = "USER_DELETED"


class AuthUser(BaseModel):
    """Identity returned by an auth provider."""

    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    email_confirmed: bool = False
    created_at: datetime | None = None


class SignUpResult(BaseModel):
    """Outcome of a sign-up call."""

    user_id: str
    user_confirmed: bool = False
    delivery_medium: str | None = None
    delivery_destination: str | None = None


class StoredObject(BaseModel):
    """Metadata for an object in storage."""

    bucket: str
    key: str
    size: int = 0
    content_type: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    last_modified: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ChangeType(str, Enum):
    """Row change kinds published on the realtime channel."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = "*"


class RealtimeEvent(BaseModel):
    """A row change notification."""

    table: str
    event_type: ChangeType
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


AuthListener = Callable[[AuthEvent, AuthUser | None], Any]
RealtimeCallback = Callable[[RealtimeEvent], Any]


async def _call_listener(callback: Callable[..., Any], *args: Any) -> None:
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(
            "listener_failed",
            listener=getattr(callback, "__name__", repr(callback)),
            error=str(e),
            error_type=type(e).__name__,
        )


# =============================================================================
# Real-time
# =============================================================================


class Subscription:
    """Handle returned by RealtimeService.subscribe."""

    def __init__(
        self,
        service: "RealtimeService",
        table: str,
        event: ChangeType,
        callback: RealtimeCallback,
    ) -> None:
        self.table = table
        self.event = event
        self.callback = callback
        self._service = service
        self.active = True

    def unsubscribe(self) -> None:
        """Stop receiving events."""
        if self.active:
            self._service._remove(self)
            self.active = False


class RealtimeService:
    """
    In-process publish/subscribe channel for row changes.

    Database services publish after every successful write. All providers
    share this implementation; it holds no state across restarts.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        table: str,
        callback: RealtimeCallback,
        event: ChangeType | str = ChangeType.ALL,
    ) -> Subscription:
        """
        Subscribe to changes on a table.

        Args:
            table: Table name, or "*" for every table
            callback: Sync or async callable receiving a RealtimeEvent
            event: INSERT, UPDATE, DELETE or "*"

        Returns:
            Subscription handle with unsubscribe()
        """
        subscription = Subscription(self, table, ChangeType(event), callback)
        self._subscriptions.append(subscription)
        logger.debug("realtime_subscribed", table=table, realtime_event=subscription.event.value)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def remove_all_subscriptions(self) -> None:
        """Drop every subscription."""
        for subscription in list(self._subscriptions):
            subscription.active = False
        self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def publish(
        self,
        table: str,
        event_type: ChangeType,
        new: dict[str, Any] | None = None,
        old: dict[str, Any] | None = None,
    ) -> None:
        """Deliver a change to matching subscribers."""
        event = RealtimeEvent(table=table, event_type=event_type, new=new, old=old)
        for subscription in list(self._subscriptions):
            if subscription.table not in ("*", table):
                continue
            if subscription.event not in (ChangeType.ALL, event_type):
                continue
            await _call_listener(subscription.callback, event)


# =============================================================================
# Database
# =============================================================================


class DatabaseService(ABC):
    """
    Abstract table-oriented database.

    Rows are plain dicts. Failures raise DatabaseError.
    """

    def __init__(self, realtime: RealtimeService | None = None) -> None:
        self._realtime = realtime

    async def _notify(
        self,
        table: str,
        event_type: ChangeType,
        rows: list[dict[str, Any]],
        old_rows: list[dict[str, Any]] | None = None,
    ) -> None:
        if self._realtime is None:
            return
        for index, row in enumerate(rows):
            old = old_rows[index] if old_rows and index < len(old_rows) else None
            if event_type == ChangeType.DELETE:
                await self._realtime.publish(table, event_type, new=None, old=row)
            else:
                await self._realtime.publish(table, event_type, new=row, old=old)

    @staticmethod
    def _require_filters(operation: str, options: QueryOptions | None) -> QueryOptions:
        if options is None or not options.filters:
            raise DatabaseError(f"{operation} requires at least one filter")
        return options

    @abstractmethod
    async def select(self, table: str, options: QueryOptions | None = None) -> QueryResult:
        """
        Select rows.

        Args:
            table: Table name
            options: Filters, projection, ordering and paging

        Returns:
            QueryResult with rows and the total match count
        """
        ...

    @abstractmethod
    async def insert(
        self,
        table: str,
        rows: dict[str, Any] | list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """Insert one or more rows and return them as stored."""
        ...

    @abstractmethod
    async def update(
        self,
        table: str,
        values: dict[str, Any],
        options: QueryOptions,
    ) -> list[dict[str, Any]]:
        """Update rows matching the filters and return the updated rows."""
        ...

    @abstractmethod
    async def delete(self, table: str, options: QueryOptions) -> int:
        """Delete rows matching the filters and return how many were removed."""
        ...

    @abstractmethod
    async def upsert(
        self,
        table: str,
        rows: dict[str, Any] | list[dict[str, Any]],
        on_conflict: str = "id",
    ) -> list[dict[str, Any]]:
        """Insert rows, or update existing rows sharing the conflict column."""
        ...

    @abstractmethod
    async def health_check(self) -> dict[str, Any]:
        """Report database health."""
        ...

    async def select_one(self, table: str, **filters: Any) -> dict[str, Any] | None:
        """Convenience: first row matching equality filters."""
        options = QueryOptions.where(**filters)
        options.limit = 1
        result = await self.select(table, options)
        return result.first()


# =============================================================================
# Authentication
# =============================================================================


class AuthService(ABC):
    """
    Abstract identity provider.

    Implementations raise AuthError with a user-facing message on failure.
    """

    def __init__(self) -> None:
        self._listeners: list[AuthListener] = []

    def on_auth_state_change(self, callback: AuthListener) -> Callable[[], None]:
        """
        Register an auth-state listener.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def _emit(self, event: AuthEvent, user: AuthUser | None) -> None:
        logger.debug("auth_state_changed", auth_event=event.value, user_id=user.id if user else None)
        for listener in list(self._listeners):
            await _call_listener(listener, event, user)

    @abstractmethod
    async def sign_up(
        self,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> SignUpResult:
        """Register a new account; a confirmation code is sent to the email."""
        ...

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> AuthUser:
        """Verify credentials and return the identity."""
        ...

    @abstractmethod
    async def confirm_sign_up(self, email: str, code: str) -> None:
        """Confirm an account with the emailed code."""
        ...

    @abstractmethod
    async def resend_confirmation_code(self, email: str) -> None:
        """Send a new confirmation code."""
        ...

    @abstractmethod
    async def reset_password(self, email: str) -> None:
        """Start the forgot-password flow."""
        ...

    @abstractmethod
    async def confirm_reset_password(self, email: str, code: str, new_password: str) -> None:
        """Finish the forgot-password flow."""
        ...

    @abstractmethod
    async def sign_out(self, user_id: str) -> None:
        """End the user's provider session."""
        ...

    @abstractmethod
    async def get_user(self, user_id: str) -> AuthUser | None:
        """Look up an identity by id."""
        ...

    @abstractmethod
    async def delete_user(self, user_id: str) -> bool:
        """Remove an identity. Returns False if it did not exist."""
        ...


# =============================================================================
# Storage & Functions
# =============================================================================


class StorageService(ABC):
    """Abstract object storage."""

    @abstractmethod
    async def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        """Store an object."""
        ...

    @abstractmethod
    async def download(self, bucket: str, key: str) -> bytes:
        """Fetch an object's bytes. Raises StorageError if missing."""
        ...

    @abstractmethod
    async def delete(self, bucket: str, key: str) -> None:
        """Remove an object."""
        ...

    @abstractmethod
    async def get_signed_url(self, bucket: str, key: str, expires_in: int = 3600) -> str:
        """Return a time-limited URL for the object."""
        ...

    @abstractmethod
    async def list_objects(self, bucket: str, prefix: str = "") -> list[StoredObject]:
        """List objects under a prefix."""
        ...


FunctionHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]] | dict[str, Any]]


class FunctionService(ABC):
    """Abstract remote function invocation."""

    @abstractmethod
    async def invoke(
        self,
        function_name: str,
        payload: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Invoke a named function and return its JSON result."""
        ...


# =============================================================================
# Bundle
# =============================================================================


class BackendService:
    """
    The provider bundle handed to application services.

    Attributes:
        database: Table access
        auth: Identity provider
        storage: Object storage
        realtime: Row-change pub/sub
        functions: Function invocation
    """

    def __init__(
        self,
        provider: BackendProvider,
        database: DatabaseService,
        auth: AuthService,
        storage: StorageService,
        realtime: RealtimeService,
        functions: FunctionService,
    ) -> None:
        self.provider = provider
        self.database = database
        self.auth = auth
        self.storage = storage
        self.realtime = realtime
        self.functions = functions

    async def health_check(self) -> dict[str, Any]:
        """Aggregate component health."""
        try:
            database = await self.database.health_check()
        except Exception as e:
            logger.error("backend_health_check_failed", provider=self.provider.value, error=str(e))
            database = {"status": "unhealthy", "error": str(e)}

        return {
            "status": database.get("status", "unhealthy"),
            "provider": self.provider.value,
            "database": database,
            "realtime_subscriptions": self.realtime.subscription_count,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    async def close(self) -> None:
        """Release provider resources."""
        self.realtime.remove_all_subscriptions()
        closer = getattr(self.database, "close", None)
        if closer is not None:
            result = closer()
            if asyncio.iscoroutine(result):
                await result
