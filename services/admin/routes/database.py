"""
Database Routes
===============

Allow-listed table access for staff tools and the server-proxied backend
provider.

Every response has the shape ``{"data": ..., "error": None, "count": n}``.
Filters arrive as ``{"column": {"operator": "eq", "value": ...}}`` or as
plain equality values.

Version: 0.1.0
"""

from typing import Any

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from services.admin.dependencies import AdminUser, AuditDep, BackendDep
from shared.audit import AuditLogger
from shared.auth import User, client_ip
from shared.backend import DatabaseError, OrderBy, QueryOptions
from shared.backend.query import normalize_filters, validate_identifier
from shared.config import settings
from shared.logging import get_logger
from shared.models.security import AuditAction, RiskLevel


logger = get_logger(__name__)

router = APIRouter()

PHI_TABLES = frozenset({"assessment_sessions", "fusion_outputs", "user_baselines"})
ROLES_TABLE = "user_roles"


# =============================================================================
# Request Models
# =============================================================================


class TableRequest(BaseModel):
    table: str = Field(..., min_length=1, max_length=63)


class SelectRequest(TableRequest):
    filters: dict[str, Any] = Field(default_factory=dict)
    columns: list[str] | None = None
    order_by: list[OrderBy] = Field(default_factory=list)
    limit: int | None = Field(default=None, ge=0, le=1000)
    offset: int | None = Field(default=None, ge=0)


class InsertRequest(TableRequest):
    data: dict[str, Any] | list[dict[str, Any]]


class UpdateRequest(TableRequest):
    data: dict[str, Any]
    filters: dict[str, Any] = Field(..., min_length=1)


class DeleteRequest(TableRequest):
    filters: dict[str, Any] = Field(..., min_length=1)


class UpsertRequest(InsertRequest):
    on_conflict: str = "id"


# =============================================================================
# Helpers
# =============================================================================


def _allowed_table(table: str) -> str:
    """
    Raises:
        HTTPException: 400 for a malformed name, 403 for a table outside the allow-list
    """
    try:
        validate_identifier(table, "table")
    except DatabaseError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e

    if table not in settings.security.admin_tables_list:
        logger.warning("database_table_not_allowed", table=table)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Table not accessible: {table}",
        )
    return table


def _bad_request(e: DatabaseError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)


def _options(filters: dict[str, Any]) -> QueryOptions:
    try:
        return QueryOptions(filters=normalize_filters(filters))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


async def _audit_role_grants(
    audit: AuditLogger,
    admin: User,
    rows: list[dict[str, Any]],
    operation: str,
    ip_address: str | None,
) -> None:
    """Record a ROLE_ASSIGN audit row for each written user_roles row."""
    for row in rows:
        role = str(row.get("role", ""))
        await audit.log(
            AuditAction.ROLE_ASSIGN,
            "user_roles",
            user_id=str(row.get("user_id")),
            resource_id=str(row.get("id")),
            ip_address=ip_address,
            details={"role_name": role, "assigned_by": admin.id, "operation": operation},
            risk_level=RiskLevel.HIGH if "admin" in role else RiskLevel.MEDIUM,
        )


# =============================================================================
# Endpoints
# =============================================================================


@router.post("/select")
async def select_rows(
    body: SelectRequest,
    request: Request,
    admin: AdminUser,
    backend: BackendDep,
    audit: AuditDep,
) -> dict[str, Any]:
    """Select rows; reads of assessment tables are audited as PHI access."""
    table = _allowed_table(body.table)
    options = _options(body.filters)
    options.columns = body.columns
    options.order_by = body.order_by
    options.limit = body.limit
    options.offset = body.offset

    try:
        result = await backend.database.select(table, options)
    except DatabaseError as e:
        raise _bad_request(e) from e

    if table in PHI_TABLES:
        await audit.log(
            AuditAction.PHI_BULK_ACCESS,
            "phi_data",
            user_id=admin.id,
            resource_id=table,
            ip_address=client_ip(request),
            user_roles=admin.roles,
            details={"table": table, "rows": len(result.data)},
            risk_level=RiskLevel.MEDIUM,
        )

    return {"data": result.data, "error": None, "count": result.count}


@router.post("/insert")
async def insert_rows(
    body: InsertRequest,
    request: Request,
    admin: AdminUser,
    backend: BackendDep,
    audit: AuditDep,
) -> dict[str, Any]:
    """Insert rows; role grants are audited per assignee."""
    table = _allowed_table(body.table)
    try:
        rows = await backend.database.insert(table, body.data)
    except DatabaseError as e:
        raise _bad_request(e) from e

    if table == ROLES_TABLE:
        await _audit_role_grants(audit, admin, rows, "insert", client_ip(request))

    logger.info("database_rows_inserted", table=table, rows=len(rows), admin_id=admin.id)
    return {"data": rows, "error": None, "count": len(rows)}


@router.post("/update")
async def update_rows(
    body: UpdateRequest,
    request: Request,
    admin: AdminUser,
    backend: BackendDep,
    audit: AuditDep,
) -> dict[str, Any]:
    """Update filtered rows; changed role rows are audited as grants."""
    table = _allowed_table(body.table)
    try:
        rows = await backend.database.update(table, body.data, _options(body.filters))
    except DatabaseError as e:
        raise _bad_request(e) from e

    if table == ROLES_TABLE:
        await _audit_role_grants(audit, admin, rows, "update", client_ip(request))

    logger.info("database_rows_updated", table=table, rows=len(rows), admin_id=admin.id)
    return {"data": rows, "error": None, "count": len(rows)}


@router.post("/delete")
async def delete_rows(body: DeleteRequest, admin: AdminUser, backend: BackendDep) -> dict[str, Any]:
    table = _allowed_table(body.table)
    try:
        removed = await backend.database.delete(table, _options(body.filters))
    except DatabaseError as e:
        raise _bad_request(e) from e

    logger.info("database_rows_deleted", table=table, rows=removed, admin_id=admin.id)
    return {"data": [], "error": None, "count": removed}


@router.post("/upsert")
async def upsert_rows(
    body: UpsertRequest,
    request: Request,
    admin: AdminUser,
    backend: BackendDep,
    audit: AuditDep,
) -> dict[str, Any]:
    """Insert or update rows; role rows are audited as grants."""
    table = _allowed_table(body.table)
    try:
        rows = await backend.database.upsert(table, body.data, on_conflict=body.on_conflict)
    except DatabaseError as e:
        raise _bad_request(e) from e

    if table == ROLES_TABLE:
        await _audit_role_grants(audit, admin, rows, "upsert", client_ip(request))

    logger.info("database_rows_upserted", table=table, rows=len(rows), admin_id=admin.id)
    return {"data": rows, "error": None, "count": len(rows)}
