"""
Incident Response
=================

Rule-based detection of security incidents in the audit trail, and the
automated containment steps attached to each incident.

Detection rules over the look-back window (SECURITY_AUDIT_LOOKBACK_HOURS):
- Brute force: 10+ LOGIN_FAILURE rows from one IP inside 5 minutes
- Unauthorized access: 5+ ACCESS_DENIED rows for one user
- Privilege escalation: ROLE_ASSIGN of a role containing "admin"
- Data exfiltration: 3+ PHI_EXPORT / PHI_BULK_ACCESS rows for one user inside 1 hour
- Off-hours login: LOGIN_SUCCESS outside business hours (UTC)
- Compliance violation: phi_data access without a clinical role

Every incident carries a fingerprint derived from its rule and subject.
A scan skips candidates whose fingerprint matches an active incident, and
single-event incidents are never raised twice for the same audit row.

Version: 0.1.0
"""

import hashlib
import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from services.admin.security.backup_recovery import BackupError, BackupRecoveryService
from shared.audit import SYSTEM_ACTOR, AuditLogger, Blocklist
from shared.backend import BackendError, DatabaseService, OrderBy, QueryFilter, QueryOptions
from shared.backend.query import as_datetime
from shared.config import settings
from shared.logging import get_logger
from shared.models.security import (
    ACTIVE_INCIDENT_STATUSES,
    AuditAction,
    AutomatedResponse,
    IncidentResponse,
    IncidentStatusUpdate,
    IncidentType,
    IndicatorType,
    ManualResponse,
    ResponseAction,
    RiskLevel,
    SecurityIncident,
    SecurityIndicator,
    TimelineEntry,
)


logger = get_logger(__name__)

INCIDENTS_TABLE = "security_incidents"

BRUTE_FORCE_THRESHOLD = 10
BRUTE_FORCE_WINDOW = timedelta(minutes=5)
ACCESS_DENIED_THRESHOLD = 5
EXFILTRATION_THRESHOLD = 3
EXFILTRATION_WINDOW = timedelta(hours=1)
CLINICAL_ROLES = frozenset({"clinician", "healthcare_admin"})

AlertSender = Callable[[SecurityIncident], Awaitable[None]]


class IncidentNotFoundError(Exception):
    """No incident with this id."""


# =============================================================================
# Helpers
# =============================================================================


def fingerprint(incident_type: IncidentType, subject: str) -> str:
    """Stable identity of an incident: its rule plus what it is about."""
    return hashlib.sha256(f"{incident_type.value}:{subject}".encode()).hexdigest()


def densest_window(timestamps: list[datetime], window: timedelta) -> tuple[int, timedelta]:
    """
    Largest number of events falling inside any span shorter than window.

    Returns:
        (count, span between the first and last event of that group)
    """
    times = sorted(timestamps)
    best_count, best_span = 0, timedelta(0)
    start = 0
    for end, current in enumerate(times):
        while current - times[start] >= window:
            start += 1
        count = end - start + 1
        if count > best_count:
            best_count, best_span = count, current - times[start]
    return best_count, best_span


def _timestamp(row: dict[str, Any]) -> datetime:
    return as_datetime(row["timestamp"])


def _new_incident(
    incident_type: IncidentType,
    subject: str,
    severity: RiskLevel,
    title: str,
    description: str,
    affected_systems: list[str],
    affected_users: list[str | None],
    indicators: list[SecurityIndicator],
    response: IncidentResponse,
    metadata: dict[str, Any],
) -> SecurityIncident:
    fp = fingerprint(incident_type, subject)
    now = datetime.now(UTC)
    prefix = incident_type.value.lower().replace("_", "-")
    return SecurityIncident(
        id=f"{prefix}-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:8]}",
        fingerprint=fp,
        type=incident_type,
        severity=severity,
        title=title,
        description=description,
        detected_at=now,
        affected_systems=affected_systems,
        affected_users=[u for u in dict.fromkeys(affected_users) if u and u != SYSTEM_ACTOR],
        indicators=indicators,
        response=response,
        timeline=[TimelineEntry(event="Incident detected", details=description)],
        metadata=metadata,
    )


def _manual(action: str, hours: int, assigned_to: str = "security_team") -> ManualResponse:
    return ManualResponse(
        action=action,
        assigned_to=assigned_to,
        due_date=datetime.now(UTC) + timedelta(hours=hours),
    )


def _automated(*actions: ResponseAction) -> list[AutomatedResponse]:
    return [AutomatedResponse(action=action) for action in actions]


# =============================================================================
# Detection rules
# =============================================================================


def detect_brute_force(logs: list[dict[str, Any]]) -> list[SecurityIncident]:
    by_ip: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for row in logs:
        if row.get("action") == AuditAction.LOGIN_FAILURE.value:
            by_ip[row.get("ip_address") or "unknown"].append(row)

    incidents = []
    for ip, failures in by_ip.items():
        count, span = densest_window([_timestamp(f) for f in failures], BRUTE_FORCE_WINDOW)
        if count < BRUTE_FORCE_THRESHOLD:
            continue
        incidents.append(
            _new_incident(
                IncidentType.BRUTE_FORCE,
                f"ip:{ip}",
                RiskLevel.HIGH,
                f"Brute Force Attack Detected from {ip}",
                f"{count} failed login attempts from IP {ip} within {round(span.total_seconds())} seconds",
                ["authentication"],
                [f.get("user_id") for f in failures],
                [SecurityIndicator(type=IndicatorType.IP_ADDRESS, value=ip, confidence=95)],
                IncidentResponse(
                    automated=_automated(ResponseAction.BLOCK_IP, ResponseAction.ALERT_ADMIN),
                    containment_actions=[f"Block IP address {ip}", "Review affected user accounts"],
                    recovery_actions=["Monitor for continued attempts", "Reset affected user passwords"],
                    prevention_measures=["Implement rate limiting", "Add CAPTCHA after failures"],
                ),
                {
                    "ip": ip,
                    "failure_count": count,
                    "time_span_seconds": span.total_seconds(),
                    "audit_ids": [f["id"] for f in failures],
                },
            )
        )
    return incidents


def detect_unauthorized_access(logs: list[dict[str, Any]]) -> list[SecurityIncident]:
    by_user: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for row in logs:
        if row.get("action") == AuditAction.ACCESS_DENIED.value:
            by_user[row["user_id"]].append(row)

    incidents = []
    for user_id, denials in by_user.items():
        if len(denials) < ACCESS_DENIED_THRESHOLD:
            continue
        resources = sorted({d["resource"] for d in denials})
        incidents.append(
            _new_incident(
                IncidentType.UNAUTHORIZED_ACCESS,
                f"user:{user_id}",
                RiskLevel.MEDIUM,
                f"Repeated Unauthorized Access Attempts by {user_id}",
                f"User {user_id} attempted to access {len(resources)} unauthorized resources "
                f"{len(denials)} times",
                resources,
                [user_id],
                [
                    SecurityIndicator(
                        type=IndicatorType.BEHAVIOR,
                        value="repeated_access_denials",
                        confidence=80,
                        source="rbac_system",
                    )
                ],
                IncidentResponse(
                    automated=_automated(ResponseAction.ALERT_ADMIN),
                    manual=[_manual("Review user permissions and access patterns", hours=24)],
                    containment_actions=["Monitor user activity", "Review role assignments"],
                    recovery_actions=["Adjust user permissions if needed"],
                    prevention_measures=["Implement access request workflow", "User training on proper access"],
                ),
                {
                    "user_id": user_id,
                    "denial_count": len(denials),
                    "resources": resources,
                    "audit_ids": [d["id"] for d in denials],
                },
            )
        )
    return incidents


def detect_privilege_escalation(logs: list[dict[str, Any]]) -> list[SecurityIncident]:
    incidents = []
    for row in logs:
        if row.get("action") != AuditAction.ROLE_ASSIGN.value:
            continue
        details = row.get("details") or {}
        role = str(details.get("role_name") or "")
        if "admin" not in role:
            continue
        user_id = row["user_id"]
        incidents.append(
            _new_incident(
                IncidentType.PRIVILEGE_ESCALATION,
                f"audit:{row['id']}",
                RiskLevel.HIGH,
                f"Administrative Role Assignment to {user_id}",
                f"User {user_id} was assigned administrative role {role}",
                ["rbac_system"],
                [user_id],
                [
                    SecurityIndicator(
                        type=IndicatorType.BEHAVIOR,
                        value="admin_role_assignment",
                        confidence=90,
                        source="rbac_system",
                        timestamp=_timestamp(row),
                    )
                ],
                IncidentResponse(
                    automated=_automated(ResponseAction.ALERT_ADMIN),
                    manual=[_manual("Verify legitimate business need for admin access", hours=4)],
                    containment_actions=["Review role assignment justification"],
                    recovery_actions=["Revoke role if unauthorized"],
                    prevention_measures=["Implement approval workflow for admin roles"],
                ),
                {"audit_id": row["id"], "assigned_role": role, "assigned_by": details.get("assigned_by")},
            )
        )
    return incidents


def detect_data_exfiltration(logs: list[dict[str, Any]]) -> list[SecurityIncident]:
    exports = (AuditAction.PHI_EXPORT.value, AuditAction.PHI_BULK_ACCESS.value)
    by_user: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for row in logs:
        if row.get("action") in exports:
            by_user[row["user_id"]].append(row)

    incidents = []
    for user_id, rows in by_user.items():
        count, span = densest_window([_timestamp(r) for r in rows], EXFILTRATION_WINDOW)
        if count < EXFILTRATION_THRESHOLD:
            continue
        incidents.append(
            _new_incident(
                IncidentType.DATA_EXFILTRATION,
                f"user:{user_id}",
                RiskLevel.CRITICAL,
                f"Potential Data Exfiltration by {user_id}",
                f"User {user_id} performed {count} data exports within "
                f"{round(span.total_seconds() / 60)} minutes",
                ["phi_data", "export_system"],
                [user_id],
                [SecurityIndicator(type=IndicatorType.BEHAVIOR, value="bulk_data_export", confidence=85)],
                IncidentResponse(
                    automated=_automated(ResponseAction.DISABLE_USER, ResponseAction.ALERT_ADMIN),
                    manual=[
                        _manual("Investigate data export justification and review exported data", hours=2)
                    ],
                    containment_actions=["Temporarily disable user account", "Review export logs"],
                    recovery_actions=["Assess data exposure", "Notify affected parties if needed"],
                    prevention_measures=["Implement export approval workflow", "Add export monitoring"],
                ),
                {
                    "user_id": user_id,
                    "export_count": count,
                    "time_span_seconds": span.total_seconds(),
                    "audit_ids": [r["id"] for r in rows],
                },
            )
        )
    return incidents


def detect_off_hours_logins(
    logs: list[dict[str, Any]],
    start_hour: int | None = None,
    end_hour: int | None = None,
) -> list[SecurityIncident]:
    start_hour = settings.security.business_hours_start if start_hour is None else start_hour
    end_hour = settings.security.business_hours_end if end_hour is None else end_hour

    incidents = []
    for row in logs:
        if row.get("action") != AuditAction.LOGIN_SUCCESS.value:
            continue
        when = _timestamp(row).astimezone(UTC)
        if start_hour <= when.hour <= end_hour:
            continue
        user_id = row["user_id"]
        incidents.append(
            _new_incident(
                IncidentType.SUSPICIOUS_ACTIVITY,
                f"audit:{row['id']}",
                RiskLevel.LOW,
                f"Off-Hours Login by {user_id}",
                f"User {user_id} logged in at {when.hour:02d}:00 (outside business hours)",
                ["authentication"],
                [user_id],
                [
                    SecurityIndicator(
                        type=IndicatorType.BEHAVIOR,
                        value="off_hours_login",
                        confidence=60,
                        timestamp=when,
                    )
                ],
                IncidentResponse(
                    manual=[_manual("Review off-hours access justification", hours=24)],
                    containment_actions=["Monitor user activity"],
                    prevention_measures=["Implement time-based access controls"],
                ),
                {"audit_id": row["id"], "login_time": when.isoformat(), "login_hour": when.hour},
            )
        )
    return incidents


def detect_compliance_violations(logs: list[dict[str, Any]]) -> list[SecurityIncident]:
    incidents = []
    for row in logs:
        if row.get("resource") != "phi_data" or "PHI" not in str(row.get("action")):
            continue
        roles = set(row.get("user_roles") or [])
        if roles & CLINICAL_ROLES:
            continue
        user_id = row["user_id"]
        incidents.append(
            _new_incident(
                IncidentType.COMPLIANCE_VIOLATION,
                f"audit:{row['id']}",
                RiskLevel.HIGH,
                f"Unauthorized PHI Access by {user_id}",
                f"User {user_id} accessed PHI without proper healthcare role",
                ["phi_data", "compliance"],
                [user_id],
                [
                    SecurityIndicator(
                        type=IndicatorType.BEHAVIOR,
                        value="unauthorized_phi_access",
                        confidence=95,
                        source="compliance_monitor",
                        timestamp=_timestamp(row),
                    )
                ],
                IncidentResponse(
                    automated=_automated(ResponseAction.ALERT_ADMIN),
                    manual=[
                        _manual(
                            "Review PHI access authorization and user role assignment",
                            hours=4,
                            assigned_to="compliance_officer",
                        )
                    ],
                    containment_actions=["Review user permissions", "Audit PHI access logs"],
                    recovery_actions=["Adjust user roles if needed", "Document compliance review"],
                    prevention_measures=["Strengthen PHI access controls", "Regular compliance training"],
                ),
                {
                    "audit_id": row["id"],
                    "phi_resource": row.get("resource_id"),
                    "user_roles": sorted(roles),
                },
            )
        )
    return incidents


Detector = Callable[[list[dict[str, Any]]], list[SecurityIncident]]

DETECTORS: tuple[tuple[IncidentType, Detector], ...] = (
    (IncidentType.BRUTE_FORCE, detect_brute_force),
    (IncidentType.UNAUTHORIZED_ACCESS, detect_unauthorized_access),
    (IncidentType.PRIVILEGE_ESCALATION, detect_privilege_escalation),
    (IncidentType.DATA_EXFILTRATION, detect_data_exfiltration),
    (IncidentType.SUSPICIOUS_ACTIVITY, detect_off_hours_logins),
    (IncidentType.COMPLIANCE_VIOLATION, detect_compliance_violations),
)


# =============================================================================
# Alerts
# =============================================================================


class WebhookAlerter:
    """Posts incident alerts to SECURITY_ALERT_WEBHOOK_URL, or logs them when unset."""

    def __init__(self, url: str | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.url = url if url is not None else settings.security.alert_webhook_url
        self._transport = transport

    @retry(
        retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> None:
        async with httpx.AsyncClient(transport=self._transport, timeout=10.0) as client:
            response = await client.post(self.url or "", json=payload)
            response.raise_for_status()

    async def __call__(self, incident: SecurityIncident) -> None:
        logger.warning(
            "security_alert",
            incident_id=incident.id,
            incident_type=incident.type.value,
            severity=incident.severity.value,
            title=incident.title,
        )
        if not self.url:
            return
        await self._post(
            {
                "incident_id": incident.id,
                "type": incident.type.value,
                "severity": incident.severity.value,
                "title": incident.title,
                "description": incident.description,
                "detected_at": incident.detected_at.isoformat(),
            }
        )


# =============================================================================
# Service
# =============================================================================


class IncidentResponseService:
    """
    Detects incidents from the audit trail and runs their containment steps.

    Example:
        >>> incidents = IncidentResponseService(database, backups=backups)
        >>> created = await incidents.detect_security_incidents()
        >>> active = await incidents.get_active_incidents()
    """

    def __init__(
        self,
        database: DatabaseService,
        audit: AuditLogger | None = None,
        blocklist: Blocklist | None = None,
        backups: BackupRecoveryService | None = None,
        alert_sender: AlertSender | None = None,
    ) -> None:
        self._db = database
        self._audit = audit or AuditLogger(database)
        self.blocklist = blocklist or Blocklist(database)
        self._backups = backups
        self._alert = alert_sender or WebhookAlerter()

    # =========================================================================
    # Detection
    # =========================================================================

    async def detect_security_incidents(self, now: datetime | None = None) -> list[SecurityIncident]:
        """
        Scan recent audit rows and open an incident for each new finding.

        Rows already counted by an earlier incident of the same type are
        left out, so resolving an incident does not bring it back from the
        rows that raised it.

        Returns:
            Incidents created by this scan (duplicates excluded)
        """
        now = now or datetime.now(UTC)
        lookback = timedelta(hours=settings.security.audit_lookback_hours)
        logs = await self._audit.recent(
            hours=settings.security.audit_lookback_hours,
            limit=settings.security.audit_scan_limit,
            now=now,
        )
        covered = await self._covered_audit_ids(since=now - lookback)

        created: list[SecurityIncident] = []
        for incident_type, detector in DETECTORS:
            seen = covered[incident_type.value]
            for candidate in detector([row for row in logs if row["id"] not in seen]):
                incident = await self.create_incident(candidate)
                if incident is not None:
                    created.append(incident)

        logger.info("incident_scan_completed", audit_rows=len(logs), incidents_created=len(created))
        return created

    async def _covered_audit_ids(self, since: datetime) -> dict[str, set[str]]:
        """Audit row ids counted by incidents detected since a time, per incident type."""
        options = QueryOptions(
            filters={"detected_at": QueryFilter(operator="gte", value=since.isoformat())},
            columns=["type", "metadata"],
        )
        covered: dict[str, set[str]] = defaultdict(set)
        for row in (await self._db.select(INCIDENTS_TABLE, options)).data:
            covered[row["type"]].update((row.get("metadata") or {}).get("audit_ids", []))
        return covered

    async def _is_duplicate(self, incident: SecurityIncident) -> bool:
        rows = (
            await self._db.select(INCIDENTS_TABLE, QueryOptions.where(fingerprint=incident.fingerprint))
        ).data
        if not rows:
            return False
        if "audit_id" in incident.metadata:
            return True
        active = {s.value for s in ACTIVE_INCIDENT_STATUSES}
        return any(row.get("status") in active for row in rows)

    # =========================================================================
    # Incident management
    # =========================================================================

    async def create_incident(self, incident: SecurityIncident) -> SecurityIncident | None:
        """
        Store an incident and run its automated responses.

        Returns:
            The stored incident, or None if it duplicates an existing one
        """
        if await self._is_duplicate(incident):
            logger.debug("incident_duplicate_skipped", fingerprint=incident.fingerprint[:12])
            return None

        await self._db.insert(INCIDENTS_TABLE, incident.model_dump(mode="json"))
        await self._audit.log(
            AuditAction.SECURITY_INCIDENT,
            "security",
            resource_id=incident.id,
            details={"type": incident.type.value, "severity": incident.severity.value},
            risk_level=RiskLevel.CRITICAL if incident.severity == RiskLevel.CRITICAL else RiskLevel.HIGH,
        )
        logger.warning(
            "security_incident_created",
            incident_id=incident.id,
            incident_type=incident.type.value,
            severity=incident.severity.value,
        )

        return await self.execute_automated_response(incident)

    async def _run_action(self, incident: SecurityIncident, action: ResponseAction) -> str:
        if action == ResponseAction.BLOCK_IP:
            ip = next((i.value for i in incident.indicators if i.type == IndicatorType.IP_ADDRESS), None)
            if not ip or ip == "unknown":
                return "SKIPPED: no IP indicator"
            await self.blocklist.block_ip(ip, reason=incident.title, incident_id=incident.id)
            return f"Blocked {ip}"

        if action == ResponseAction.DISABLE_USER:
            if not incident.affected_users:
                return "SKIPPED: no affected user"
            user_id = incident.affected_users[0]
            await self.blocklist.suspend_user(user_id, reason=incident.title, incident_id=incident.id)
            return f"Suspended {user_id}"

        if action == ResponseAction.ALERT_ADMIN:
            await self._alert(incident)
            return "Administrators alerted"

        if action == ResponseAction.QUARANTINE_SYSTEM:
            system = incident.affected_systems[0] if incident.affected_systems else "unknown"
            logger.critical("system_quarantine_requested", incident_id=incident.id, system=system)
            return f"Quarantine requested for {system}"

        if action == ResponseAction.BACKUP_DATA:
            if self._backups is None:
                return "SKIPPED: backups not configured"
            backup = await self._backups.create_backup(created_by=f"incident:{incident.id}")
            return f"Backup {backup.id}"

        raise ValueError(f"Unknown response action: {action}")

    async def execute_automated_response(self, incident: SecurityIncident) -> SecurityIncident:
        """Run pending automated steps, recording each outcome on the incident."""
        for step in incident.response.automated:
            if step.executed:
                continue
            try:
                step.result = await self._run_action(incident, step.action)
                success = True
            except (BackendError, BackupError, httpx.HTTPError, ValueError) as e:
                step.error = str(e)
                success = False
                logger.error(
                    "incident_response_failed",
                    incident_id=incident.id,
                    action=step.action.value,
                    error=str(e),
                )

            step.executed = True
            step.executed_at = datetime.now(UTC)
            incident.timeline.append(
                TimelineEntry(
                    event=f"Automated response {step.action.value}",
                    details=step.result or step.error or "",
                )
            )
            await self._audit.log(
                AuditAction.INCIDENT_RESPONSE,
                "security",
                resource_id=incident.id,
                details={"action": step.action.value, "result": step.result, "error": step.error},
                success=success,
                risk_level=RiskLevel.HIGH if success else RiskLevel.CRITICAL,
            )

        await self._save(incident)
        return incident

    async def _save(self, incident: SecurityIncident) -> None:
        await self._db.update(
            INCIDENTS_TABLE,
            {
                "status": incident.status.value,
                "response": incident.response.model_dump(mode="json"),
                "timeline": [t.model_dump(mode="json") for t in incident.timeline],
                "updated_at": datetime.now(UTC),
            },
            QueryOptions.where(id=incident.id),
        )

    async def get_incident(self, incident_id: str) -> SecurityIncident:
        row = await self._db.select_one(INCIDENTS_TABLE, id=incident_id)
        if row is None:
            raise IncidentNotFoundError(f"Incident not found: {incident_id}")
        return SecurityIncident.model_validate(row)

    async def get_active_incidents(self) -> list[SecurityIncident]:
        """Open, investigating and contained incidents, newest first."""
        options = QueryOptions(
            filters={
                "status": QueryFilter(operator="in", value=[s.value for s in ACTIVE_INCIDENT_STATUSES]),
            },
            order_by=[OrderBy(column="detected_at", ascending=False)],
        )
        rows = (await self._db.select(INCIDENTS_TABLE, options)).data
        return [SecurityIncident.model_validate(row) for row in rows]

    async def update_incident_status(
        self,
        incident_id: str,
        update: IncidentStatusUpdate,
        actor: str = SYSTEM_ACTOR,
    ) -> SecurityIncident:
        """
        Move an incident to a new status.

        Raises:
            IncidentNotFoundError: If the incident does not exist
        """
        incident = await self.get_incident(incident_id)
        previous = incident.status
        incident.status = update.status
        incident.timeline.append(
            TimelineEntry(
                event=f"Status changed from {previous.value} to {update.status.value}",
                actor=actor,
                details=update.notes or "",
            )
        )
        await self._save(incident)
        await self._audit.log(
            AuditAction.INCIDENT_RESPONSE,
            "security",
            user_id=actor,
            resource_id=incident_id,
            details={"from_status": previous.value, "to_status": update.status.value},
            risk_level=RiskLevel.MEDIUM,
        )
        logger.info(
            "incident_status_updated",
            incident_id=incident_id,
            from_status=previous.value,
            to_status=update.status.value,
        )
        return incident

    async def is_ip_blocked(self, ip_address: str) -> bool:
        return await self.blocklist.is_ip_blocked(ip_address)

    async def is_user_suspended(self, user_id: str) -> bool:
        return await self.blocklist.is_user_suspended(user_id)
