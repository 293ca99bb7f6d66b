"""
Backup Routes
=============

Create, inspect, restore and expire table snapshots.

Version: 0.1.0
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from services.admin.dependencies import AdminUser, get_backup_service
from services.admin.security import (
    BackupError,
    BackupIntegrityError,
    BackupNotFoundError,
    BackupRecoveryService,
)
from shared.backend import BackendError
from shared.logging import get_logger
from shared.models.security import BackupCreate


logger = get_logger(__name__)

router = APIRouter()

Backups = Annotated[BackupRecoveryService, Depends(get_backup_service)]


class RestoreRequest(BaseModel):
    tables: list[str] | None = None


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_backup(body: BackupCreate, admin: AdminUser, backups: Backups) -> dict[str, Any]:
    try:
        metadata = await backups.create_backup(body.tables, created_by=admin.id)
    except BackupError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except BackendError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e
    return {"success": True, "backup": metadata.model_dump(mode="json")}


@router.get("")
async def list_backups(admin: AdminUser, backups: Backups, include_expired: bool = False) -> dict[str, Any]:
    items = await backups.list_backups(include_expired=include_expired)
    return {"backups": [b.model_dump(mode="json") for b in items], "count": len(items)}


@router.post("/cleanup")
async def cleanup(admin: AdminUser, backups: Backups) -> dict[str, Any]:
    """Delete snapshots past their retention date."""
    result = await backups.delete_expired_backups()
    return {"success": not result["errors"], **result}


@router.get("/{backup_id}")
async def get_backup(backup_id: str, admin: AdminUser, backups: Backups) -> dict[str, Any]:
    try:
        metadata = await backups.get_backup(backup_id)
    except BackupNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return metadata.model_dump(mode="json")


@router.post("/{backup_id}/restore")
async def restore_backup(
    backup_id: str,
    admin: AdminUser,
    backups: Backups,
    body: RestoreRequest | None = None,
) -> dict[str, Any]:
    try:
        result = await backups.restore_backup(
            backup_id,
            tables=body.tables if body else None,
            restored_by=admin.id,
        )
    except BackupNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except BackupIntegrityError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except BackupError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return {"success": True, **result.model_dump(mode="json")}
