"""
Admin Service - Main Application
================================

FastAPI application for staff tooling: the database proxy, security
incidents, compliance and backups. Runs the security monitor when
SECURITY_MONITORING_ENABLED is set.

Version: 0.1.0
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from shared.audit import AuditLogger
from shared.backend import BackendServiceFactory, get_backend, initialize_backend_service
from shared.config import settings
from shared.logging import bind_context, clear_context, get_logger, setup_logging
from shared.models.common import HealthResponse

from services.admin.routes import backups, compliance, database, incidents
from services.admin.security import (
    BackupRecoveryService,
    ComplianceAutomationService,
    IncidentResponseService,
    SecurityMonitor,
)

# Setup logging
setup_logging(
    log_level=settings.log_level.value,
    json_logs=settings.is_production,
    service_name="admin",
)

logger = get_logger(__name__)


def build_monitor() -> SecurityMonitor:
    """Security monitor over the current backend."""
    backend = get_backend()
    audit = AuditLogger(backend.database)
    backup_service = BackupRecoveryService(backend, audit=audit)
    return SecurityMonitor(
        incidents=IncidentResponseService(backend.database, audit=audit, backups=backup_service),
        compliance=ComplianceAutomationService(backend, audit=audit),
        backups=backup_service,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> Any:
    """Application lifespan manager."""
    logger.info(
        "admin_starting",
        environment=settings.environment.value,
        port=settings.ports.admin,
        provider=settings.backend.provider.value,
        monitoring=settings.security.monitoring_enabled,
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

    monitor: SecurityMonitor | None = None
    if settings.security.monitoring_enabled:
        monitor = build_monitor()
        monitor.start_all()
    app.state.monitor = monitor

    yield

    # Shutdown
    logger.info("admin_shutting_down")
    if monitor is not None:
        await monitor.stop_all()
    if owns_backend:
        await BackendServiceFactory.clear_instances()


# Create FastAPI application
app = FastAPI(
    title="Mind Measure Admin API",
    description="Database proxy, security incidents, compliance and backups",
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


# Resolve the client address from trusted proxies only
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.security.forwarded_allow_ips_list)


# ============================================================================
# Health Check Endpoints
# ============================================================================


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(request: Request) -> HealthResponse:
    """
    Service health check.

    Returns health status of the backend and the security monitor.
    """
    components: dict[str, dict[str, Any]] = {
        "backend": await BackendServiceFactory.perform_health_check(),
    }

    monitor: SecurityMonitor | None = getattr(request.app.state, "monitor", None)
    if monitor is not None:
        tasks = monitor.status()
        components["monitor"] = {
            "status": "healthy" if all(t["running"] for t in tasks) else "unhealthy",
            "tasks": tasks,
        }

    all_healthy = all(
        c.get("status") == "healthy" for c in components.values()
    )

    return HealthResponse(
        status="healthy" if all_healthy else "degraded",
        service="admin",
        version="0.1.0",
        components=components,
    )


@app.get("/", tags=["Health"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": "Mind Measure Admin API",
        "version": "0.1.0",
        "docs": "/docs",
    }


# ============================================================================
# Include Routers
# ============================================================================

app.include_router(
    database.router,
    prefix="/api/database",
    tags=["Database"],
)

app.include_router(
    incidents.router,
    prefix="/api/security",
    tags=["Security"],
)

app.include_router(
    compliance.router,
    prefix="/api/compliance",
    tags=["Compliance"],
)

app.include_router(
    backups.router,
    prefix="/api/backups",
    tags=["Backups"],
)


# ============================================================================
# Error Handlers
# ============================================================================


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
        "services.admin.main:app",
        host="0.0.0.0",
        port=settings.ports.admin,
        reload=settings.debug,
        log_level=settings.log_level.value.lower(),
    )
