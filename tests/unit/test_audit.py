"""
Audit Tests
===========

Tests for the audit trail and the IP/user blocklist.

Version: 0.1.0
"""

from datetime import UTC, datetime, timedelta

from shared.audit import AuditLogger, Blocklist
from shared.backend import DatabaseError, QueryOptions
from shared.models.security import AuditAction, RiskLevel


class TestAuditLogger:
    """Tests for AuditLogger."""

    async def test_log_writes_row(self, database):
        audit = AuditLogger(database)
        entry = await audit.log(
            AuditAction.LOGIN_FAILURE,
            "auth",
            ip_address="10.0.0.1",
            details={"email": "sam@uni.ac.uk"},
            success=False,
            risk_level=RiskLevel.MEDIUM,
        )

        row = await database.select_one("audit_logs", id=entry.id)
        assert row["action"] == "LOGIN_FAILURE"
        assert row["user_id"] == "SYSTEM"
        assert row["success"] is False
        assert row["risk_level"] == "MEDIUM"
        assert row["details"] == {"email": "sam@uni.ac.uk"}

    async def test_write_failure_returns_none(self, database, monkeypatch):
        async def failing_insert(table, rows):
            raise DatabaseError("disk full")

        monkeypatch.setattr(database, "insert", failing_insert)
        assert await AuditLogger(database).log(AuditAction.LOGIN_SUCCESS, "auth") is None

    async def test_recent_window_oldest_first(self, database):
        now = datetime.now(UTC)
        await database.insert(
            "audit_logs",
            [
                {"action": "LOGIN_SUCCESS", "timestamp": (now - timedelta(hours=30)).isoformat()},
                {"action": "LOGIN_FAILURE", "timestamp": (now - timedelta(hours=2)).isoformat()},
                {"action": "PHI_EXPORT", "timestamp": (now - timedelta(hours=1)).isoformat()},
            ],
        )

        rows = await AuditLogger(database).recent(hours=24, now=now)
        assert [r["action"] for r in rows] == ["LOGIN_FAILURE", "PHI_EXPORT"]

        latest = await AuditLogger(database).recent(hours=24, limit=1, now=now)
        assert [r["action"] for r in latest] == ["PHI_EXPORT"]


class TestBlocklist:
    """Tests for Blocklist."""

    async def test_block_and_unblock_ip(self, database):
        blocklist = Blocklist(database)
        first = await blocklist.block_ip("10.0.0.1", "brute force", incident_id="inc-1")
        again = await blocklist.block_ip("10.0.0.1", "brute force")

        assert first["id"] == again["id"]
        assert await blocklist.is_ip_blocked("10.0.0.1")
        assert not await blocklist.is_ip_blocked("10.0.0.2")
        assert not await blocklist.is_ip_blocked(None)
        assert [r["ip_address"] for r in await blocklist.list_blocked_ips()] == ["10.0.0.1"]

        assert await blocklist.unblock_ip("10.0.0.1") == 1
        assert not await blocklist.is_ip_blocked("10.0.0.1")
        assert await blocklist.unblock_ip("10.0.0.1") == 0

    async def test_expired_block_not_in_force(self, database):
        blocklist = Blocklist(database)
        await blocklist.block_ip("10.0.0.1", "temporary", duration=timedelta(hours=1))
        await database.update(
            "blocked_ips",
            {"expires_at": datetime.now(UTC) - timedelta(minutes=1)},
            QueryOptions.where(ip_address="10.0.0.1"),
        )

        assert not await blocklist.is_ip_blocked("10.0.0.1")
        assert await blocklist.list_blocked_ips() == []

    async def test_suspensions(self, database):
        blocklist = Blocklist(database)
        await blocklist.suspend_user("u1", "insider threat")

        assert await blocklist.is_user_suspended("u1")
        assert [r["user_id"] for r in await blocklist.list_suspensions()] == ["u1"]

        assert await blocklist.lift_suspension("u1") == 1
        assert not await blocklist.is_user_suspended("u1")
