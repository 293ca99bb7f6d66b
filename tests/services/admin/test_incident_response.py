"""
Tests for incident detection and automated response.
"""

import uuid
from datetime import UTC, datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from services.admin.security import (
    BackupRecoveryService,
    IncidentNotFoundError,
    IncidentResponseService,
    WebhookAlerter,
)
from services.admin.security.incident_response import (
    densest_window,
    detect_brute_force,
    detect_compliance_violations,
    detect_data_exfiltration,
    detect_off_hours_logins,
    detect_privilege_escalation,
    detect_unauthorized_access,
    fingerprint,
)
from shared.audit import AuditLogger
from shared.models.security import (
    AuditAction,
    AutomatedResponse,
    IncidentResponse,
    IncidentStatus,
    IncidentStatusUpdate,
    IncidentType,
    ResponseAction,
    RiskLevel,
    SecurityIncident,
)


NOW = datetime(2025, 3, 12, 14, 0, tzinfo=UTC)


def audit_row(action: AuditAction, at: datetime = NOW, **fields: Any) -> dict[str, Any]:
    row = {
        "id": str(uuid.uuid4()),
        "user_id": "user-1",
        "action": action.value,
        "resource": "auth",
        "timestamp": at.isoformat(),
        "details": {},
        "user_roles": [],
    }
    row.update(fields)
    return row


class RecordingAlerter:
    def __init__(self, error: Exception | None = None) -> None:
        self.incidents: list[SecurityIncident] = []
        self.error = error

    async def __call__(self, incident: SecurityIncident) -> None:
        self.incidents.append(incident)
        if self.error is not None:
            raise self.error


@pytest.fixture
def alerter() -> RecordingAlerter:
    return RecordingAlerter()


@pytest.fixture
def incidents(database, alerter: RecordingAlerter) -> IncidentResponseService:
    return IncidentResponseService(database, alert_sender=alerter)


# =============================================================================
# Helpers
# =============================================================================


class TestDensestWindow:
    def test_counts_events_inside_window(self) -> None:
        times = [NOW, NOW + timedelta(minutes=1), NOW + timedelta(minutes=2), NOW + timedelta(minutes=10)]

        count, span = densest_window(times, timedelta(minutes=5))

        assert count == 3
        assert span == timedelta(minutes=2)

    def test_window_end_is_exclusive(self) -> None:
        times = [NOW, NOW + timedelta(minutes=5)]

        count, _ = densest_window(times, timedelta(minutes=5))

        assert count == 1

    def test_empty(self) -> None:
        assert densest_window([], timedelta(minutes=5)) == (0, timedelta(0))

    def test_unsorted_input(self) -> None:
        times = [NOW + timedelta(seconds=30), NOW, NOW + timedelta(seconds=10)]

        assert densest_window(times, timedelta(minutes=1)) == (3, timedelta(seconds=30))


def test_fingerprint_depends_on_rule_and_subject() -> None:
    a = fingerprint(IncidentType.BRUTE_FORCE, "ip:1.2.3.4")

    assert a == fingerprint(IncidentType.BRUTE_FORCE, "ip:1.2.3.4")
    assert a != fingerprint(IncidentType.BRUTE_FORCE, "ip:5.6.7.8")
    assert a != fingerprint(IncidentType.DATA_EXFILTRATION, "ip:1.2.3.4")


# =============================================================================
# Detection rules
# =============================================================================


class TestBruteForce:
    def test_ten_failures_in_five_minutes(self) -> None:
        logs = [
            audit_row(AuditAction.LOGIN_FAILURE, NOW + timedelta(seconds=20 * i), ip_address="203.0.113.9")
            for i in range(10)
        ]

        found = detect_brute_force(logs)

        assert len(found) == 1
        incident = found[0]
        assert incident.type == IncidentType.BRUTE_FORCE
        assert incident.severity == RiskLevel.HIGH
        assert incident.metadata["failure_count"] == 10
        assert incident.indicators[0].value == "203.0.113.9"
        assert [s.action for s in incident.response.automated] == [
            ResponseAction.BLOCK_IP,
            ResponseAction.ALERT_ADMIN,
        ]

    def test_nine_failures_is_not_enough(self) -> None:
        logs = [
            audit_row(AuditAction.LOGIN_FAILURE, NOW + timedelta(seconds=i), ip_address="203.0.113.9")
            for i in range(9)
        ]

        assert detect_brute_force(logs) == []

    def test_failures_spread_over_an_hour_are_ignored(self) -> None:
        logs = [
            audit_row(AuditAction.LOGIN_FAILURE, NOW + timedelta(minutes=6 * i), ip_address="203.0.113.9")
            for i in range(10)
        ]

        assert detect_brute_force(logs) == []

    def test_failures_are_grouped_per_ip(self) -> None:
        logs = [
            audit_row(
                AuditAction.LOGIN_FAILURE,
                NOW + timedelta(seconds=i),
                ip_address="203.0.113.9" if i % 2 else "198.51.100.7",
            )
            for i in range(12)
        ]

        assert detect_brute_force(logs) == []

    def test_system_actor_not_listed_as_affected(self) -> None:
        logs = [
            audit_row(AuditAction.LOGIN_FAILURE, NOW, ip_address="203.0.113.9", user_id="SYSTEM")
            for _ in range(10)
        ]

        assert detect_brute_force(logs)[0].affected_users == []


def test_unauthorized_access_needs_five_denials() -> None:
    logs = [
        audit_row(AuditAction.ACCESS_DENIED, resource=resource)
        for resource in ("buddies", "assessments", "buddies", "privacy", "buddies")
    ]

    found = detect_unauthorized_access(logs)

    assert len(found) == 1
    assert found[0].severity == RiskLevel.MEDIUM
    assert found[0].metadata["resources"] == ["assessments", "buddies", "privacy"]
    assert detect_unauthorized_access(logs[:4]) == []


def test_privilege_escalation_only_for_admin_roles() -> None:
    logs = [
        audit_row(AuditAction.ROLE_ASSIGN, details={"role_name": "admin", "assigned_by": "root"}),
        audit_row(AuditAction.ROLE_ASSIGN, details={"role_name": "student"}),
        audit_row(AuditAction.ROLE_ASSIGN, details={"role_name": "healthcare_admin"}),
    ]

    found = detect_privilege_escalation(logs)

    assert [i.metadata["assigned_role"] for i in found] == ["admin", "healthcare_admin"]
    assert found[0].metadata["assigned_by"] == "root"


def test_data_exfiltration_within_an_hour() -> None:
    logs = [
        audit_row(AuditAction.PHI_EXPORT, NOW, user_id="analyst"),
        audit_row(AuditAction.PHI_BULK_ACCESS, NOW + timedelta(minutes=20), user_id="analyst"),
        audit_row(AuditAction.PHI_EXPORT, NOW + timedelta(minutes=40), user_id="analyst"),
        audit_row(AuditAction.PHI_EXPORT, NOW + timedelta(hours=3), user_id="other"),
    ]

    found = detect_data_exfiltration(logs)

    assert len(found) == 1
    assert found[0].severity == RiskLevel.CRITICAL
    assert found[0].affected_users == ["analyst"]
    assert ResponseAction.DISABLE_USER in [s.action for s in found[0].response.automated]


def test_data_exfiltration_ignores_slow_exports() -> None:
    logs = [
        audit_row(AuditAction.PHI_EXPORT, NOW + timedelta(minutes=45 * i), user_id="analyst")
        for i in range(3)
    ]

    assert detect_data_exfiltration(logs) == []


class TestOffHours:
    def test_early_morning_login(self) -> None:
        logs = [audit_row(AuditAction.LOGIN_SUCCESS, NOW.replace(hour=3))]

        found = detect_off_hours_logins(logs, start_hour=9, end_hour=18)

        assert len(found) == 1
        assert found[0].severity == RiskLevel.LOW
        assert found[0].metadata["login_hour"] == 3
        assert found[0].response.automated == []

    def test_business_hours_boundaries_are_inclusive(self) -> None:
        logs = [
            audit_row(AuditAction.LOGIN_SUCCESS, NOW.replace(hour=9)),
            audit_row(AuditAction.LOGIN_SUCCESS, NOW.replace(hour=18)),
        ]

        assert detect_off_hours_logins(logs, start_hour=9, end_hour=18) == []

    def test_just_outside_business_hours_is_flagged(self) -> None:
        logs = [
            audit_row(AuditAction.LOGIN_SUCCESS, NOW.replace(hour=8, minute=59)),
            audit_row(AuditAction.LOGIN_SUCCESS, NOW.replace(hour=18, minute=59)),
            audit_row(AuditAction.LOGIN_SUCCESS, NOW.replace(hour=19, minute=0)),
        ]

        found = detect_off_hours_logins(logs, start_hour=9, end_hour=18)

        assert [i.metadata["login_hour"] for i in found] == [8, 19]

    def test_hour_is_taken_in_utc(self) -> None:
        eastern = datetime(2025, 3, 12, 7, 0, tzinfo=timezone(timedelta(hours=-5)))
        logs = [audit_row(AuditAction.LOGIN_SUCCESS, eastern)]

        assert detect_off_hours_logins(logs, start_hour=9, end_hour=18) == []


def test_compliance_violation_without_clinical_role() -> None:
    logs = [
        audit_row(AuditAction.PHI_BULK_ACCESS, resource="phi_data", user_roles=["admin"]),
        audit_row(AuditAction.PHI_BULK_ACCESS, resource="phi_data", user_roles=["clinician"]),
        audit_row(AuditAction.LOGIN_SUCCESS, resource="phi_data", user_roles=["admin"]),
    ]

    found = detect_compliance_violations(logs)

    assert len(found) == 1
    assert found[0].metadata["user_roles"] == ["admin"]


# =============================================================================
# Service
# =============================================================================


async def log_failures(audit: AuditLogger, count: int, ip: str = "203.0.113.9") -> None:
    for _ in range(count):
        await audit.log(AuditAction.LOGIN_FAILURE, "auth", user_id="student-1", ip_address=ip)


class TestIncidentResponseService:
    async def test_brute_force_blocks_ip_and_alerts(
        self,
        database,
        incidents: IncidentResponseService,
        alerter: RecordingAlerter,
    ) -> None:
        await log_failures(AuditLogger(database), 10)

        created = await incidents.detect_security_incidents()

        assert len(created) == 1
        incident = created[0]
        assert incident.type == IncidentType.BRUTE_FORCE
        assert incident.affected_users == ["student-1"]
        assert all(step.executed for step in incident.response.automated)
        assert incident.response.automated[0].result == "Blocked 203.0.113.9"
        assert await incidents.is_ip_blocked("203.0.113.9")
        assert [a.id for a in alerter.incidents] == [incident.id]

        stored = await incidents.get_incident(incident.id)
        assert stored.status == IncidentStatus.OPEN
        assert len(stored.timeline) == 3

    async def test_scan_writes_incident_audit_rows(
        self,
        database,
        incidents: IncidentResponseService,
    ) -> None:
        await log_failures(AuditLogger(database), 10)

        await incidents.detect_security_incidents()

        actions = [row["action"] for row in (await database.select("audit_logs")).data]
        assert actions.count(AuditAction.SECURITY_INCIDENT.value) == 1
        assert actions.count(AuditAction.INCIDENT_RESPONSE.value) == 2

    async def test_active_aggregate_incident_is_not_raised_twice(
        self,
        database,
        incidents: IncidentResponseService,
    ) -> None:
        await log_failures(AuditLogger(database), 10)

        first = await incidents.detect_security_incidents()
        second = await incidents.detect_security_incidents()

        assert len(first) == 1
        assert second == []

    async def test_resolved_incident_is_not_rebuilt_from_its_rows(
        self,
        database,
        incidents: IncidentResponseService,
    ) -> None:
        await log_failures(AuditLogger(database), 10)
        (first,) = await incidents.detect_security_incidents()
        assert len(first.metadata["audit_ids"]) == 10
        await incidents.update_incident_status(first.id, IncidentStatusUpdate(status=IncidentStatus.RESOLVED))
        await incidents.blocklist.unblock_ip("203.0.113.9")

        again = await incidents.detect_security_incidents()

        assert again == []
        assert not await incidents.is_ip_blocked("203.0.113.9")

    async def test_new_attack_after_resolution_is_raised(
        self,
        database,
        incidents: IncidentResponseService,
    ) -> None:
        audit = AuditLogger(database)
        await log_failures(audit, 10)
        (first,) = await incidents.detect_security_incidents()
        await incidents.update_incident_status(first.id, IncidentStatusUpdate(status=IncidentStatus.RESOLVED))
        await incidents.blocklist.unblock_ip("203.0.113.9")

        await log_failures(audit, 9)
        assert await incidents.detect_security_incidents() == []

        await log_failures(audit, 1)
        (second,) = await incidents.detect_security_incidents()

        assert second.id != first.id
        assert second.metadata["failure_count"] == 10
        assert await incidents.is_ip_blocked("203.0.113.9")

    async def test_event_incident_never_repeats_for_same_row(
        self,
        database,
        incidents: IncidentResponseService,
    ) -> None:
        await AuditLogger(database).log(
            AuditAction.ROLE_ASSIGN,
            "user_roles",
            user_id="new-admin",
            details={"role_name": "admin"},
        )
        (first,) = await incidents.detect_security_incidents()
        await incidents.update_incident_status(first.id, IncidentStatusUpdate(status=IncidentStatus.CLOSED))

        assert first.type == IncidentType.PRIVILEGE_ESCALATION
        assert await incidents.detect_security_incidents() == []

    async def test_exfiltration_suspends_user(self, database, incidents: IncidentResponseService) -> None:
        audit = AuditLogger(database)
        for _ in range(3):
            await audit.log(AuditAction.PHI_EXPORT, "privacy", user_id="analyst")

        created = await incidents.detect_security_incidents()

        assert [i.type for i in created] == [IncidentType.DATA_EXFILTRATION]
        assert await incidents.is_user_suspended("analyst")

    async def test_old_audit_rows_are_outside_the_window(
        self,
        database,
        incidents: IncidentResponseService,
    ) -> None:
        await log_failures(AuditLogger(database), 10)

        created = await incidents.detect_security_incidents(now=datetime.now(UTC) + timedelta(days=2))

        assert created == []

    async def test_failed_action_is_recorded_and_others_still_run(self, database) -> None:
        alerter = RecordingAlerter(error=httpx.ConnectError("webhook unreachable"))
        service = IncidentResponseService(database, alert_sender=alerter)
        await log_failures(AuditLogger(database), 10)

        (incident,) = await service.detect_security_incidents()

        block, alert = incident.response.automated
        assert block.executed and block.error is None
        assert alert.executed
        assert alert.error == "webhook unreachable"
        failed = (await database.select("audit_logs")).data
        assert any(
            row["action"] == AuditAction.INCIDENT_RESPONSE.value and row["success"] is False
            for row in failed
        )

    async def test_backup_and_quarantine_actions(self, backend) -> None:
        service = IncidentResponseService(
            backend.database,
            backups=BackupRecoveryService(backend),
            alert_sender=RecordingAlerter(),
        )
        incident = SecurityIncident(
            id="manual-1",
            fingerprint=fingerprint(IncidentType.SYSTEM_COMPROMISE, "system:app_api"),
            type=IncidentType.SYSTEM_COMPROMISE,
            severity=RiskLevel.CRITICAL,
            title="Compromised API host",
            description="Unexpected process on the API host",
            affected_systems=["app_api"],
            response=IncidentResponse(
                automated=[
                    AutomatedResponse(action=ResponseAction.BACKUP_DATA),
                    AutomatedResponse(action=ResponseAction.QUARANTINE_SYSTEM),
                ]
            ),
        )

        stored = await service.create_incident(incident)

        assert stored is not None
        backup_step, quarantine_step = stored.response.automated
        assert backup_step.result is not None and backup_step.result.startswith("Backup backup_")
        assert quarantine_step.result == "Quarantine requested for app_api"
        backups = (await backend.database.select("backups")).data
        assert backups[0]["created_by"] == "incident:manual-1"

    async def test_backup_action_skipped_without_backup_service(
        self,
        incidents: IncidentResponseService,
    ) -> None:
        incident = SecurityIncident(
            id="manual-2",
            fingerprint=fingerprint(IncidentType.DATA_BREACH, "system:storage"),
            type=IncidentType.DATA_BREACH,
            severity=RiskLevel.HIGH,
            title="Storage bucket exposed",
            description="Public ACL found",
            response=IncidentResponse(automated=[AutomatedResponse(action=ResponseAction.BACKUP_DATA)]),
        )

        stored = await incidents.create_incident(incident)

        assert stored is not None
        assert stored.response.automated[0].result == "SKIPPED: backups not configured"

    async def test_status_update_and_active_list(self, database, incidents: IncidentResponseService) -> None:
        await log_failures(AuditLogger(database), 10, ip="203.0.113.9")
        await log_failures(AuditLogger(database), 10, ip="198.51.100.7")
        first, second = await incidents.detect_security_incidents()

        updated = await incidents.update_incident_status(
            first.id,
            IncidentStatusUpdate(status=IncidentStatus.RESOLVED, notes="False positive"),
            actor="admin-user-id",
        )

        assert updated.status == IncidentStatus.RESOLVED
        assert updated.timeline[-1].actor == "admin-user-id"
        assert updated.timeline[-1].details == "False positive"
        active = await incidents.get_active_incidents()
        assert [i.id for i in active] == [second.id]

    async def test_unknown_incident(self, incidents: IncidentResponseService) -> None:
        with pytest.raises(IncidentNotFoundError):
            await incidents.get_incident("missing")

        with pytest.raises(IncidentNotFoundError):
            await incidents.update_incident_status(
                "missing", IncidentStatusUpdate(status=IncidentStatus.CLOSED)
            )


# =============================================================================
# Alerts
# =============================================================================


def sample_incident() -> SecurityIncident:
    return SecurityIncident(
        id="brute-force-1",
        fingerprint=fingerprint(IncidentType.BRUTE_FORCE, "ip:203.0.113.9"),
        type=IncidentType.BRUTE_FORCE,
        severity=RiskLevel.HIGH,
        title="Brute Force Attack Detected from 203.0.113.9",
        description="10 failed login attempts",
    )


class TestWebhookAlerter:
    async def test_posts_incident_summary(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200)

        alerter = WebhookAlerter("https://alerts.example.com/hook", transport=httpx.MockTransport(handler))

        await alerter(sample_incident())

        assert len(requests) == 1
        assert str(requests[0].url) == "https://alerts.example.com/hook"
        body = requests[0].read()
        assert b'"incident_id":"brute-force-1"' in body.replace(b" ", b"")
        assert b'"severity":"HIGH"' in body.replace(b" ", b"")

    async def test_error_status_raises(self) -> None:
        alerter = WebhookAlerter(
            "https://alerts.example.com/hook",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        with pytest.raises(httpx.HTTPStatusError):
            await alerter(sample_incident())

    async def test_without_url_only_logs(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        alerter = WebhookAlerter("", transport=httpx.MockTransport(handler))

        await alerter(sample_incident())
