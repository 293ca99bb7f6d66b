"""
Backup & Recovery
=================

JSON table snapshots in object storage.

Each backup is one JSON document holding every row of the selected tables.
Its SHA-256 checksum is stored in the object metadata and in the backups
table, and is verified before a restore.

Version: 0.1.0
"""

import hashlib
import json
from datetime import UTC, datetime, timedelta
from typing import Any

from shared.audit import SYSTEM_ACTOR, AuditLogger
from shared.backend import BackendService, OrderBy, QueryOptions, StorageError
from shared.backend.query import as_datetime, validate_identifier
from shared.config import settings
from shared.logging import get_logger
from shared.models.security import (
    AuditAction,
    BackupMetadata,
    BackupStatus,
    RestoreResult,
    RiskLevel,
)


logger = get_logger(__name__)

BACKUPS_TABLE = "backups"
BACKUP_PREFIX = "backups"


class BackupError(Exception):
    """Backup or restore failure."""


class BackupNotFoundError(BackupError):
    """No backup with this id."""


class BackupIntegrityError(BackupError):
    """The stored snapshot does not match its checksum."""


def checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class BackupRecoveryService:
    """
    Creates, lists, restores and expires table snapshots.

    Example:
        >>> backups = BackupRecoveryService(get_backend())
        >>> meta = await backups.create_backup(["profiles"], created_by=admin.id)
        >>> await backups.restore_backup(meta.id)
    """

    def __init__(
        self,
        backend: BackendService,
        audit: AuditLogger | None = None,
        bucket: str | None = None,
        retention_days: int | None = None,
    ) -> None:
        self._db = backend.database
        self._storage = backend.storage
        self._audit = audit or AuditLogger(backend.database)
        self.bucket = bucket or settings.aws.s3_bucket_name
        self.retention_days = retention_days or settings.security.backup_retention_days

    async def create_backup(
        self,
        tables: list[str] | None = None,
        created_by: str = SYSTEM_ACTOR,
    ) -> BackupMetadata:
        """
        Snapshot tables to storage.

        Args:
            tables: Tables to include (defaults to SECURITY_BACKUP_TABLES)
            created_by: Actor recorded on the backup

        Raises:
            BackupError: If no tables are selected
        """
        tables = list(dict.fromkeys(tables or settings.security.backup_tables_list))
        if not tables:
            raise BackupError("No tables selected for backup")
        for table in tables:
            validate_identifier(table, "table")

        created_at = datetime.now(UTC)
        backup_id = f"backup_{created_at.strftime('%Y%m%dT%H%M%S%fZ')}"

        snapshot: dict[str, list[dict[str, Any]]] = {}
        for table in tables:
            snapshot[table] = (await self._db.select(table)).data

        document = {
            "backup_id": backup_id,
            "created_at": created_at.isoformat(),
            "tables": snapshot,
        }
        data = json.dumps(document, default=str).encode("utf-8")
        digest = checksum(data)
        key = f"{BACKUP_PREFIX}/{backup_id}.json"

        await self._storage.upload(
            self.bucket,
            key,
            data,
            content_type="application/json",
            metadata={"backup-id": backup_id, "checksum": digest},
        )

        metadata = BackupMetadata(
            id=backup_id,
            bucket=self.bucket,
            key=key,
            tables=tables,
            row_counts={table: len(rows) for table, rows in snapshot.items()},
            size_bytes=len(data),
            checksum=digest,
            created_by=created_by,
            created_at=created_at,
            expires_at=created_at + timedelta(days=self.retention_days),
        )
        await self._db.insert(BACKUPS_TABLE, metadata.model_dump(mode="json"))

        await self._audit.log(
            AuditAction.BACKUP_CREATED,
            "backup",
            user_id=created_by,
            resource_id=backup_id,
            details={"tables": tables, "size_bytes": len(data)},
        )
        logger.info(
            "backup_created",
            backup_id=backup_id,
            tables=len(tables),
            rows=sum(metadata.row_counts.values()),
            size_bytes=len(data),
        )
        return metadata

    async def list_backups(self, include_expired: bool = False) -> list[BackupMetadata]:
        """Backups, newest first."""
        options = QueryOptions(order_by=[OrderBy(column="created_at", ascending=False)])
        rows = (await self._db.select(BACKUPS_TABLE, options)).data
        backups = [BackupMetadata.model_validate(row) for row in rows]
        if include_expired:
            return backups
        return [b for b in backups if b.status != BackupStatus.EXPIRED]

    async def get_backup(self, backup_id: str) -> BackupMetadata:
        row = await self._db.select_one(BACKUPS_TABLE, id=backup_id)
        if row is None:
            raise BackupNotFoundError(f"Backup not found: {backup_id}")
        return BackupMetadata.model_validate(row)

    async def restore_backup(
        self,
        backup_id: str,
        tables: list[str] | None = None,
        restored_by: str = SYSTEM_ACTOR,
    ) -> RestoreResult:
        """
        Upsert a snapshot's rows back into their tables.

        Rows are matched on id; rows created after the backup are left alone.

        Raises:
            BackupNotFoundError: If the backup does not exist or has expired
            BackupIntegrityError: If the checksum does not match
        """
        metadata = await self.get_backup(backup_id)
        if metadata.status == BackupStatus.EXPIRED:
            raise BackupNotFoundError(f"Backup has expired: {backup_id}")

        try:
            data = await self._storage.download(metadata.bucket, metadata.key)
        except StorageError as e:
            raise BackupNotFoundError(f"Backup object missing: {metadata.key}") from e

        if checksum(data) != metadata.checksum:
            logger.error("backup_checksum_mismatch", backup_id=backup_id)
            raise BackupIntegrityError("Backup integrity check failed - checksum mismatch")

        snapshot: dict[str, list[dict[str, Any]]] = json.loads(data)["tables"]
        selected = tables or list(snapshot)
        unknown = [t for t in selected if t not in snapshot]
        if unknown:
            raise BackupError(f"Tables not in backup: {', '.join(unknown)}")

        restored: dict[str, int] = {}
        for table in selected:
            rows = [row for row in snapshot[table] if row.get("id") is not None]
            restored[table] = len(await self._db.upsert(table, rows)) if rows else 0

        await self._db.update(
            BACKUPS_TABLE,
            {"status": BackupStatus.RESTORED.value, "restored_at": datetime.now(UTC)},
            QueryOptions.where(id=backup_id),
        )
        await self._audit.log(
            AuditAction.BACKUP_RESTORED,
            "backup",
            user_id=restored_by,
            resource_id=backup_id,
            details={"restored_rows": restored},
            risk_level=RiskLevel.HIGH,
        )
        logger.warning("backup_restored", backup_id=backup_id, restored_rows=restored)
        return RestoreResult(backup_id=backup_id, restored_rows=restored)

    async def delete_expired_backups(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Remove snapshots past their retention date.

        The metadata row is kept and marked EXPIRED.

        Returns:
            {"deleted": count, "errors": [messages]}
        """
        now = now or datetime.now(UTC)
        deleted = 0
        errors: list[str] = []

        for backup in await self.list_backups():
            if as_datetime(backup.expires_at) >= now:
                continue
            try:
                await self._storage.delete(backup.bucket, backup.key)
            except StorageError as e:
                logger.error("backup_delete_failed", backup_id=backup.id, error=str(e))
                errors.append(f"{backup.id}: {e.message}")
                continue

            await self._db.update(
                BACKUPS_TABLE,
                {"status": BackupStatus.EXPIRED.value},
                QueryOptions.where(id=backup.id),
            )
            deleted += 1

        if deleted or errors:
            logger.info("expired_backups_removed", deleted=deleted, errors=len(errors))
        return {"deleted": deleted, "errors": errors}
