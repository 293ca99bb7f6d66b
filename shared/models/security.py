"""
Security Models
===============

Audit, incident, compliance and backup records used by the admin service.

Version: 0.1.0
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RiskLevel(str, Enum):
    """Risk or severity rating."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def weight(self) -> int:
        return RISK_WEIGHTS[self]


RISK_WEIGHTS = {
    RiskLevel.CRITICAL: 4,
    RiskLevel.HIGH: 3,
    RiskLevel.MEDIUM: 2,
    RiskLevel.LOW: 1,
}


class AuditAction(str, Enum):
    """Actions written to audit_logs."""

    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    ACCESS_DENIED = "ACCESS_DENIED"
    ROLE_ASSIGN = "ROLE_ASSIGN"
    PHI_EXPORT = "PHI_EXPORT"
    PHI_BULK_ACCESS = "PHI_BULK_ACCESS"
    DATA_DELETION = "DATA_DELETION"
    SECURITY_INCIDENT = "SECURITY_INCIDENT"
    INCIDENT_RESPONSE = "INCIDENT_RESPONSE"
    COMPLIANCE_UPDATE = "COMPLIANCE_UPDATE"
    COMPLIANCE_ASSESSMENT = "COMPLIANCE_ASSESSMENT"
    COMPLIANCE_REPORT = "COMPLIANCE_REPORT"
    BACKUP_CREATED = "BACKUP_CREATED"
    BACKUP_RESTORED = "BACKUP_RESTORED"


class AuditEntry(BaseModel):
    """One audit_logs row."""

    id: str | None = None
    user_id: str
    action: AuditAction
    resource: str
    resource_id: str | None = None
    ip_address: str | None = None
    user_roles: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)
    success: bool = True
    risk_level: RiskLevel = RiskLevel.LOW
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


# =============================================================================
# Incidents
# =============================================================================


class IncidentType(str, Enum):
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    BRUTE_FORCE = "BRUTE_FORCE"
    PRIVILEGE_ESCALATION = "PRIVILEGE_ESCALATION"
    DATA_EXFILTRATION = "DATA_EXFILTRATION"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    COMPLIANCE_VIOLATION = "COMPLIANCE_VIOLATION"
    DATA_BREACH = "DATA_BREACH"
    SYSTEM_COMPROMISE = "SYSTEM_COMPROMISE"
    INSIDER_THREAT = "INSIDER_THREAT"


class IncidentStatus(str, Enum):
    OPEN = "OPEN"
    INVESTIGATING = "INVESTIGATING"
    CONTAINED = "CONTAINED"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


ACTIVE_INCIDENT_STATUSES = (
    IncidentStatus.OPEN,
    IncidentStatus.INVESTIGATING,
    IncidentStatus.CONTAINED,
)


class IndicatorType(str, Enum):
    IP_ADDRESS = "IP_ADDRESS"
    USER_AGENT = "USER_AGENT"
    BEHAVIOR = "BEHAVIOR"
    PATTERN = "PATTERN"
    ANOMALY = "ANOMALY"


class ResponseAction(str, Enum):
    """Automated containment actions."""

    BLOCK_IP = "BLOCK_IP"
    DISABLE_USER = "DISABLE_USER"
    ALERT_ADMIN = "ALERT_ADMIN"
    QUARANTINE_SYSTEM = "QUARANTINE_SYSTEM"
    BACKUP_DATA = "BACKUP_DATA"


class SecurityIndicator(BaseModel):
    type: IndicatorType
    value: str
    confidence: int = Field(..., ge=0, le=100)
    source: str = "audit_logs"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class AutomatedResponse(BaseModel):
    action: ResponseAction
    executed: bool = False
    executed_at: datetime | None = None
    result: str | None = None
    error: str | None = None


class ManualResponse(BaseModel):
    action: str
    assigned_to: str = "security_team"
    due_date: datetime
    status: str = "PENDING"
    notes: str | None = None


class IncidentResponse(BaseModel):
    """Planned and executed response steps."""

    automated: list[AutomatedResponse] = Field(default_factory=list)
    manual: list[ManualResponse] = Field(default_factory=list)
    containment_actions: list[str] = Field(default_factory=list)
    recovery_actions: list[str] = Field(default_factory=list)
    prevention_measures: list[str] = Field(default_factory=list)


class TimelineEntry(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    event: str
    actor: str = "SYSTEM"
    details: str = ""


class SecurityIncident(BaseModel):
    """A detected or reported security incident."""

    id: str
    fingerprint: str = Field(..., description="Stable hash of the rule and subject")
    type: IncidentType
    severity: RiskLevel
    status: IncidentStatus = IncidentStatus.OPEN
    title: str
    description: str
    detected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    detected_by: str = "SYSTEM"
    affected_systems: list[str] = Field(default_factory=list)
    affected_users: list[str] = Field(default_factory=list)
    indicators: list[SecurityIndicator] = Field(default_factory=list)
    response: IncidentResponse = Field(default_factory=IncidentResponse)
    timeline: list[TimelineEntry] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_INCIDENT_STATUSES


class IncidentStatusUpdate(BaseModel):
    status: IncidentStatus
    notes: str | None = None


# =============================================================================
# Compliance
# =============================================================================


class ComplianceStatus(str, Enum):
    COMPLIANT = "COMPLIANT"
    NON_COMPLIANT = "NON_COMPLIANT"
    PARTIAL = "PARTIAL"
    NOT_APPLICABLE = "NOT_APPLICABLE"
    NOT_ASSESSED = "NOT_ASSESSED"


class CheckFrequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUALLY = "ANNUALLY"


CHECK_INTERVAL_DAYS = {
    CheckFrequency.DAILY: 1,
    CheckFrequency.WEEKLY: 7,
    CheckFrequency.MONTHLY: 30,
    CheckFrequency.QUARTERLY: 90,
    CheckFrequency.ANNUALLY: 365,
}


class ReportType(str, Enum):
    EXECUTIVE = "EXECUTIVE"
    DETAILED = "DETAILED"
    REMEDIATION = "REMEDIATION"
    AUDIT_READY = "AUDIT_READY"


class ComplianceEvidence(BaseModel):
    type: str = Field(..., description="DOCUMENT, LOG, CONFIGURATION, POLICY, ...")
    title: str
    description: str = ""
    location: str
    collected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    collected_by: str = "SYSTEM"
    metadata: dict[str, Any] = Field(default_factory=dict)


class ComplianceControl(BaseModel):
    """A single control within a framework."""

    id: str
    framework_id: str
    control_id: str = Field(..., description="Framework reference, e.g. '164.308'")
    title: str
    description: str
    category: str
    risk_level: RiskLevel
    status: ComplianceStatus = ComplianceStatus.NOT_ASSESSED
    last_checked: datetime | None = None
    next_check_due: datetime | None = None
    evidence: list[ComplianceEvidence] = Field(default_factory=list)
    remediation: str | None = None
    assigned_to: str | None = None
    automated: bool = True
    check_frequency: CheckFrequency = CheckFrequency.MONTHLY


class ComplianceFramework(BaseModel):
    id: str
    name: str
    version: str
    description: str
    controls: list[ComplianceControl] = Field(default_factory=list)
    last_assessment: datetime | None = None
    overall_status: ComplianceStatus = ComplianceStatus.NOT_ASSESSED
    compliance_score: int = Field(default=0, ge=0, le=100)


class AssessmentResult(BaseModel):
    control_id: str
    status: ComplianceStatus
    score: int = Field(default=0, ge=0, le=100)
    findings: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    risk_rating: RiskLevel


class ComplianceAssessment(BaseModel):
    id: str
    framework_id: str
    assessment_type: str = "AUTOMATED"
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    assessed_by: str
    status: str = "IN_PROGRESS"
    results: list[AssessmentResult] = Field(default_factory=list)
    overall_score: int = 0
    recommendations: list[str] = Field(default_factory=list)
    next_assessment_due: datetime


class ControlStatusUpdate(BaseModel):
    status: ComplianceStatus
    evidence: ComplianceEvidence | None = None


class ReportPeriod(BaseModel):
    start_date: datetime
    end_date: datetime


class ReportRequest(BaseModel):
    report_type: ReportType = ReportType.EXECUTIVE
    period: ReportPeriod


class ReportSummary(BaseModel):
    total_controls: int
    compliant_controls: int
    non_compliant_controls: int
    partial_controls: int
    overall_score: int
    risk_score: int


class ReportSection(BaseModel):
    title: str
    content: str
    charts: list[dict[str, Any]] = Field(default_factory=list)
    tables: list[dict[str, Any]] = Field(default_factory=list)


class ActionItem(BaseModel):
    id: str
    priority: RiskLevel
    title: str
    description: str
    assigned_to: str | None = None
    due_date: datetime
    status: str = "OPEN"
    related_controls: list[str] = Field(default_factory=list)


class ComplianceReport(BaseModel):
    id: str
    framework_id: str
    report_type: ReportType
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    generated_by: str
    period: ReportPeriod
    summary: ReportSummary
    sections: list[ReportSection] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    action_items: list[ActionItem] = Field(default_factory=list)


# =============================================================================
# Backups
# =============================================================================


class BackupStatus(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RESTORED = "RESTORED"
    EXPIRED = "EXPIRED"


class BackupMetadata(BaseModel):
    """A table snapshot stored in object storage."""

    id: str
    bucket: str
    key: str
    tables: list[str]
    row_counts: dict[str, int] = Field(default_factory=dict)
    size_bytes: int = 0
    checksum: str = Field(..., description="SHA-256 of the snapshot bytes")
    status: BackupStatus = BackupStatus.COMPLETED
    created_by: str = "SYSTEM"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime


class BackupCreate(BaseModel):
    tables: list[str] | None = Field(default=None, description="Defaults to SECURITY_BACKUP_TABLES")


class RestoreResult(BaseModel):
    backup_id: str
    restored_rows: dict[str, int] = Field(default_factory=dict)
