"""
App API Service - Main Application
==================================

FastAPI application serving the Mind Measure apps: authentication,
assessments, buddies and privacy controls.

Version: 0.1.0
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from shared.audit import Blocklist
from shared.auth import client_ip
from shared.backend import (
    AuthError,
    AuthErrorCode,
    BackendServiceFactory,
    get_backend,
    initialize_backend_service,
)
from shared.config import settings
from shared.logging import bind_context, clear_context, get_logger, setup_logging
from shared.models.common import HealthResponse

from services.app_api.routes import assessments, auth, buddies, privacy

# Setup logging
setup_logging(
    log_level=settings.log_level.value,
    json_logs=settings.is_production,
    service_name="app-api",
)

logger = get_logger(__name__)

AUTH_ERROR_STATUS: dict[AuthErrorCode, int] = {
    AuthErrorCode.NOT_AUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    AuthErrorCode.USER_NOT_CONFIRMED: status.HTTP_403_FORBIDDEN,
    AuthErrorCode.USERNAME_EXISTS: status.HTTP_409_CONFLICT,
    AuthErrorCode.USER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    AuthErrorCode.TOO_MANY_REQUESTS: status.HTTP_429_TOO_MANY_REQUESTS,
    AuthErrorCode.LIMIT_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    AuthErrorCode.CODE_MISMATCH: status.HTTP_400_BAD_REQUEST,
    AuthErrorCode.EXPIRED_CODE: status.HTTP_400_BAD_REQUEST,
    AuthErrorCode.INVALID_PASSWORD: status.HTTP_400_BAD_REQUEST,
    AuthErrorCode.INVALID_PARAMETER: status.HTTP_400_BAD_REQUEST,
    AuthErrorCode.UNKNOWN: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

# Paths that stay reachable from blocked addresses
UNGUARDED_PATHS = frozenset({"/health", "/"})


@asynccontextmanager
async def lifespan(app: FastAPI) -> Any:
    """Application lifespan manager."""
    logger.info(
        "app_api_starting",
        environment=settings.environment.value,
        port=settings.ports.app_api,
        provider=settings.backend.provider.value,
    )

    # Startup
    owns_backend = not BackendServiceFactory.is_initialized()
    try:
        if owns_backend:
            initialize_backend_service()
        logger.info("backend_ready", provider=get_backend().provider.value)
    except Exception as e:
        logger.error("startup_failed", error=str(e))
        raise

    yield

    # Shutdown
    logger.info("app_api_shutting_down")
    if owns_backend:
        await BackendServiceFactory.clear_instances()


# Create FastAPI application
app = FastAPI(
    title="Mind Measure App API",
    description="Authentication, assessments, buddies and privacy controls",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors.origins_list,
    allow_credentials=settings.cors.allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def bind_request_context(request: Request, call_next: Any) -> Any:
    """Tag every log line of a request with its id and path."""
    clear_context()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    bind_context(request_id=request_id, path=request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def reject_blocked_ips(request: Request, call_next: Any) -> Any:
    """Refuse requests from addresses blocked by incident response."""
    if request.url.path not in UNGUARDED_PATHS and BackendServiceFactory.is_initialized():
        ip_address = client_ip(request)
        if await Blocklist(get_backend().database).is_ip_blocked(ip_address):
            logger.warning("blocked_ip_rejected", ip_address=ip_address, path=request.url.path)
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={
                    "success": False,
                    "error": "Access denied",
                    "status_code": status.HTTP_403_FORBIDDEN,
                },
            )
    return await call_next(request)


# Resolve the client address before any middleware above reads it
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.security.forwarded_allow_ips_list)


# ============================================================================
# Health Check Endpoints
# ============================================================================


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """
    Service health check.

    Returns health status of the service and its backend.
    """
    components: dict[str, dict[str, Any]] = {
        "backend": await BackendServiceFactory.perform_health_check(),
    }

    all_healthy = all(
        c.get("status") == "healthy" for c in components.values()
    )

    return HealthResponse(
        status="healthy" if all_healthy else "degraded",
        service="app-api",
        version="0.1.0",
        components=components,
    )


@app.get("/", tags=["Health"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": "Mind Measure App API",
        "version": "0.1.0",
        "docs": "/docs",
    }


# ============================================================================
# Include Routers
# ============================================================================

app.include_router(
    auth.router,
    prefix="/api/auth",
    tags=["Auth"],
)

app.include_router(
    assessments.router,
    prefix="/api/assessments",
    tags=["Assessments"],
)

app.include_router(
    buddies.router,
    prefix="/api/buddies",
    tags=["Buddies"],
)

app.include_router(
    privacy.router,
    prefix="/api/privacy",
    tags=["Privacy"],
)


# ============================================================================
# Error Handlers
# ============================================================================


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Translate identity provider failures into user-facing responses."""
    status_code = AUTH_ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST)
    logger.warning(
        "auth_error",
        code=exc.code.value,
        status_code=status_code,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": exc.message,
            "code": exc.code.value,
            "needs_verification": exc.needs_verification,
            "status_code": status_code,
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions."""
    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
            "status_code": exc.status_code,
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "Internal server error",
            "status_code": 500,
        },
    )


# ============================================================================
# Run with Uvicorn
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.app_api.main:app",
        host="0.0.0.0",
        port=settings.ports.app_api,
        reload=settings.debug,
        log_level=settings.log_level.value.lower(),
    )
