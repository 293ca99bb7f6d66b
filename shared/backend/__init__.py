"""
Backend Module
==============

Provider-neutral database, auth, storage, real-time and function access.

Usage:
    from shared.backend import BackendServiceFactory, QueryOptions, get_database

    BackendServiceFactory.initialize()

    db = get_database()
    result = await db.select("assessment_sessions", QueryOptions.where(user_id=user_id))
    for row in result.data:
        ...
"""

from shared.backend.base import (
    AuthEvent,
    AuthService,
    AuthUser,
    BackendService,
    ChangeType,
    DatabaseService,
    FunctionService,
    RealtimeEvent,
    RealtimeService,
    SignUpResult,
    StorageService,
    StoredObject,
    Subscription,
)
from shared.backend.errors import (
    AuthError,
    AuthErrorCode,
    BackendConfigurationError,
    BackendError,
    DatabaseError,
    FunctionError,
    StorageError,
)
from shared.backend.factory import (
    BackendServiceConfig,
    BackendServiceFactory,
    get_auth,
    get_backend,
    get_database,
    get_functions,
    get_realtime,
    get_storage,
    initialize_backend_service,
)
from shared.backend.query import (
    FilterOperator,
    OrderBy,
    QueryFilter,
    QueryOptions,
    QueryResult,
)


__all__ = [
    # Interfaces
    "BackendService",
    "DatabaseService",
    "AuthService",
    "StorageService",
    "FunctionService",
    "RealtimeService",
    # Models
    "AuthEvent",
    "AuthUser",
    "SignUpResult",
    "StoredObject",
    "ChangeType",
    "RealtimeEvent",
    "Subscription",
    # Queries
    "FilterOperator",
    "QueryFilter",
    "OrderBy",
    "QueryOptions",
    "QueryResult",
    # Errors
    "BackendError",
    "BackendConfigurationError",
    "DatabaseError",
    "StorageError",
    "FunctionError",
    "AuthError",
    "AuthErrorCode",
    # Factory
    "BackendServiceConfig",
    "BackendServiceFactory",
    "initialize_backend_service",
    "get_backend",
    "get_database",
    "get_auth",
    "get_storage",
    "get_realtime",
    "get_functions",
]
