"""
Blocklist
=========

Blocked IP addresses and suspended users, persisted in the blocked_ips and
user_suspensions tables so blocks survive restarts and are shared between
the admin service that imposes them and the app API that enforces them.

Version: 0.1.0
"""

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from shared.backend import DatabaseService, QueryOptions
from shared.backend.query import as_datetime
from shared.logging import get_logger


logger = get_logger(__name__)

BLOCKED_IPS_TABLE = "blocked_ips"
SUSPENSIONS_TABLE = "user_suspensions"


def _in_force(row: dict[str, Any], now: datetime) -> bool:
    expires_at = row.get("expires_at")
    return expires_at is None or as_datetime(expires_at) > now


class Blocklist:
    """IP blocks and user suspensions."""

    def __init__(self, database: DatabaseService) -> None:
        self._db = database

    async def _active(self, table: str, **filters: Any) -> dict[str, Any] | None:
        now = datetime.now(UTC)
        rows = (await self._db.select(table, QueryOptions.where(active=True, **filters))).data
        return next((row for row in rows if _in_force(row, now)), None)

    async def block_ip(
        self,
        ip_address: str,
        reason: str,
        incident_id: str | None = None,
        duration: timedelta | None = None,
    ) -> dict[str, Any]:
        """Block an address; an existing active block is returned unchanged."""
        existing = await self._active(BLOCKED_IPS_TABLE, ip_address=ip_address)
        if existing is not None:
            return existing

        now = datetime.now(UTC)
        rows = await self._db.insert(
            BLOCKED_IPS_TABLE,
            {
                "id": str(uuid.uuid4()),
                "ip_address": ip_address,
                "reason": reason,
                "incident_id": incident_id,
                "active": True,
                "blocked_at": now,
                "expires_at": now + duration if duration else None,
            },
        )
        logger.warning("ip_blocked", ip_address=ip_address, incident_id=incident_id)
        return rows[0]

    async def unblock_ip(self, ip_address: str) -> int:
        rows = await self._db.update(
            BLOCKED_IPS_TABLE,
            {"active": False},
            QueryOptions.where(ip_address=ip_address, active=True),
        )
        if rows:
            logger.info("ip_unblocked", ip_address=ip_address)
        return len(rows)

    async def is_ip_blocked(self, ip_address: str | None) -> bool:
        if not ip_address:
            return False
        return await self._active(BLOCKED_IPS_TABLE, ip_address=ip_address) is not None

    async def suspend_user(
        self,
        user_id: str,
        reason: str,
        incident_id: str | None = None,
    ) -> dict[str, Any]:
        """Suspend an account until an administrator lifts it."""
        existing = await self._active(SUSPENSIONS_TABLE, user_id=user_id)
        if existing is not None:
            return existing

        rows = await self._db.insert(
            SUSPENSIONS_TABLE,
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "reason": reason,
                "incident_id": incident_id,
                "active": True,
                "suspended_at": datetime.now(UTC),
                "expires_at": None,
            },
        )
        logger.warning("user_suspended", user_id=user_id, incident_id=incident_id)
        return rows[0]

    async def lift_suspension(self, user_id: str) -> int:
        rows = await self._db.update(
            SUSPENSIONS_TABLE,
            {"active": False},
            QueryOptions.where(user_id=user_id, active=True),
        )
        if rows:
            logger.info("user_suspension_lifted", user_id=user_id)
        return len(rows)

    async def is_user_suspended(self, user_id: str) -> bool:
        return await self._active(SUSPENSIONS_TABLE, user_id=user_id) is not None

    async def list_blocked_ips(self) -> list[dict[str, Any]]:
        now = datetime.now(UTC)
        rows = (await self._db.select(BLOCKED_IPS_TABLE, QueryOptions.where(active=True))).data
        return [row for row in rows if _in_force(row, now)]

    async def list_suspensions(self) -> list[dict[str, Any]]:
        now = datetime.now(UTC)
        rows = (await self._db.select(SUSPENSIONS_TABLE, QueryOptions.where(active=True))).data
        return [row for row in rows if _in_force(row, now)]
