"""
Audit Trail
===========

Append-only audit_logs writer shared by the app API, the privacy layer and
the security automation services.

Version: 0.1.0
"""

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from shared.backend import DatabaseError, DatabaseService, OrderBy, QueryFilter, QueryOptions
from shared.logging import get_logger
from shared.models.security import AuditAction, AuditEntry, RiskLevel


logger = get_logger(__name__)

AUDIT_TABLE = "audit_logs"
SYSTEM_ACTOR = "SYSTEM"


class AuditLogger:
    """
    Writes audit rows through a DatabaseService.

    Audit writes never fail the caller's operation: a database error is
    logged at error level and None is returned.
    """

    def __init__(self, database: DatabaseService) -> None:
        self._db = database

    async def log(
        self,
        action: AuditAction | str,
        resource: str,
        user_id: str = SYSTEM_ACTOR,
        resource_id: str | None = None,
        ip_address: str | None = None,
        user_roles: list[str] | None = None,
        details: dict[str, Any] | None = None,
        success: bool = True,
        risk_level: RiskLevel | str = RiskLevel.LOW,
    ) -> AuditEntry | None:
        """
        Record an audited action.

        Args:
            action: What happened
            resource: Resource category (auth, phi_data, security, ...)
            user_id: Actor, SYSTEM for automated actions
            resource_id: Specific resource affected
            ip_address: Client address when known
            user_roles: Actor's roles at the time
            details: Free-form context
            success: Whether the action succeeded
            risk_level: Rating used by incident detection and reporting

        Returns:
            The stored entry, or None if the write failed
        """
        entry = AuditEntry(
            id=str(uuid.uuid4()),
            user_id=user_id,
            action=AuditAction(action),
            resource=resource,
            resource_id=resource_id,
            ip_address=ip_address,
            user_roles=list(user_roles or []),
            details=dict(details or {}),
            success=success,
            risk_level=RiskLevel(risk_level),
        )

        try:
            await self._db.insert(AUDIT_TABLE, entry.model_dump(mode="json"))
        except DatabaseError as e:
            logger.error(
                "audit_write_failed",
                action=entry.action.value,
                resource=resource,
                error=str(e),
            )
            return None

        logger.debug(
            "audit_logged",
            action=entry.action.value,
            resource=resource,
            user_id=user_id,
            risk_level=entry.risk_level.value,
        )
        return entry

    async def recent(
        self,
        hours: int = 24,
        limit: int = 1000,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch audit rows from the look-back window, oldest first.

        Args:
            hours: Window length
            limit: Maximum rows (the most recent are kept)
            now: Reference time, defaults to the current time
        """
        since = (now or datetime.now(UTC)) - timedelta(hours=hours)
        options = QueryOptions(
            filters={"timestamp": QueryFilter(operator="gte", value=since.isoformat())},
            order_by=[OrderBy(column="timestamp", ascending=False)],
            limit=limit,
        )
        result = await self._db.select(AUDIT_TABLE, options)
        return list(reversed(result.data))
