"""
Compliance Automation
=====================

HIPAA, GDPR and SOC 2 control tracking with automated checks, scored
assessments and generated reports.

The framework and control catalogue is defined here; control status,
evidence and check dates persist in the compliance_controls table.

Scoring:
- Framework score: compliant controls count 100, partial 50, averaged
- Framework status: >= 95 compliant, >= 70 partial, otherwise non-compliant
- Risk score: sum of risk weights of non-compliant controls x 10, capped at 100

Version: 0.1.0
"""

import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from shared.audit import SYSTEM_ACTOR, AuditLogger
from shared.backend import BackendError, BackendService, OrderBy, QueryFilter, QueryOptions
from shared.backend.query import as_datetime
from shared.config import BackendProvider, settings
from shared.logging import get_logger
from shared.models.security import (
    CHECK_INTERVAL_DAYS,
    ActionItem,
    AssessmentResult,
    AuditAction,
    CheckFrequency,
    ComplianceAssessment,
    ComplianceControl,
    ComplianceEvidence,
    ComplianceFramework,
    ComplianceReport,
    ComplianceStatus,
    ReportRequest,
    ReportSection,
    ReportSummary,
    ReportType,
    RiskLevel,
)


logger = get_logger(__name__)

CONTROLS_TABLE = "compliance_controls"
ASSESSMENTS_TABLE = "compliance_assessments"
REPORTS_TABLE = "compliance_reports"

ASSESSMENT_INTERVAL = timedelta(days=90)
ACTION_ITEM_DUE = timedelta(days=30)
BACKUP_MAX_AGE = timedelta(days=7)
ENCRYPTED_PROVIDERS = (BackendProvider.AURORA_SERVERLESS, BackendProvider.AWS)

ControlCheck = Callable[["ComplianceAutomationService"], Awaitable[bool]]


class ComplianceError(Exception):
    """Compliance workflow failure."""


class FrameworkNotFoundError(ComplianceError):
    """Unknown framework id."""


class ControlNotFoundError(ComplianceError):
    """Unknown control id within a framework."""


# =============================================================================
# Scoring
# =============================================================================


def framework_score(controls: list[ComplianceControl]) -> int:
    if not controls:
        return 0
    compliant = sum(1 for c in controls if c.status == ComplianceStatus.COMPLIANT)
    partial = sum(1 for c in controls if c.status == ComplianceStatus.PARTIAL)
    return round((compliant * 100 + partial * 50) / len(controls))


def framework_status(score: int) -> ComplianceStatus:
    if score >= 95:
        return ComplianceStatus.COMPLIANT
    if score >= 70:
        return ComplianceStatus.PARTIAL
    return ComplianceStatus.NON_COMPLIANT


def risk_score(controls: list[ComplianceControl]) -> int:
    total = sum(c.risk_level.weight for c in controls if c.status == ComplianceStatus.NON_COMPLIANT)
    return min(total * 10, 100)


def next_check_due(frequency: CheckFrequency, now: datetime | None = None) -> datetime:
    return (now or datetime.now(UTC)) + timedelta(days=CHECK_INTERVAL_DAYS.get(frequency, 30))


# =============================================================================
# Automated checks
# =============================================================================


async def _has_admin_role(service: "ComplianceAutomationService") -> bool:
    return await service.database.select_one("user_roles", role="admin") is not None


async def _encrypted_storage(service: "ComplianceAutomationService") -> bool:
    return service.provider in ENCRYPTED_PROVIDERS


async def _privacy_by_design(service: "ComplianceAutomationService") -> bool:
    privacy = settings.privacy
    return bool(privacy.phi_encryption_key.get_secret_value()) and not privacy.uses_default_pepper


async def _audit_logging_active(service: "ComplianceAutomationService") -> bool:
    since = datetime.now(UTC) - timedelta(hours=settings.security.audit_lookback_hours)
    options = QueryOptions(
        filters={"timestamp": QueryFilter(operator="gte", value=since.isoformat())},
        limit=1,
    )
    return bool((await service.database.select("audit_logs", options)).data)


async def _erasure_on_schedule(service: "ComplianceAutomationService") -> bool:
    options = QueryOptions(
        filters={"scheduled_deletion": QueryFilter(operator="lt", value=datetime.now(UTC).isoformat())},
        limit=1,
    )
    return not (await service.database.select("profiles", options)).data


async def _consent_recorded(service: "ComplianceAutomationService") -> bool:
    profiles = (await service.database.select("profiles", QueryOptions(columns=["user_id"]))).data
    if not profiles:
        return True
    consents = (await service.database.select("consent_records", QueryOptions(columns=["user_id"]))).data
    consented = {row["user_id"] for row in consents}
    return all(row["user_id"] in consented for row in profiles)


async def _roles_assigned(service: "ComplianceAutomationService") -> bool:
    options = QueryOptions(limit=1)
    return bool((await service.database.select("user_roles", options)).data)


async def _monitoring_enabled(service: "ComplianceAutomationService") -> bool:
    return settings.security.monitoring_enabled


async def _recent_backup(service: "ComplianceAutomationService") -> bool:
    since = datetime.now(UTC) - BACKUP_MAX_AGE
    options = QueryOptions(
        filters={"created_at": QueryFilter(operator="gte", value=since.isoformat())},
        limit=1,
    )
    return bool((await service.database.select("backups", options)).data)


AUTOMATED_CHECKS: dict[str, ControlCheck] = {
    "164.308": _has_admin_role,
    "164.312": _encrypted_storage,
    "art-17": _erasure_on_schedule,
    "art-25": _privacy_by_design,
    "art-30": _consent_recorded,
    "art-32": _audit_logging_active,
    "cc6.1": _roles_assigned,
    "cc7.2": _monitoring_enabled,
    "a1.2": _recent_backup,
}


# =============================================================================
# Catalogue
# =============================================================================


def _control(
    framework_id: str,
    control_id: str,
    title: str,
    description: str,
    category: str,
    risk_level: RiskLevel,
    frequency: CheckFrequency,
    remediation: str,
    automated: bool = True,
) -> ComplianceControl:
    return ComplianceControl(
        id=f"{framework_id}-{control_id.replace('.', '-')}",
        framework_id=framework_id,
        control_id=control_id,
        title=title,
        description=description,
        category=category,
        risk_level=risk_level,
        check_frequency=frequency,
        remediation=remediation,
        automated=automated,
    )


def default_frameworks() -> list[ComplianceFramework]:
    """The HIPAA, GDPR and SOC 2 catalogue, all controls not yet assessed."""
    return [
        ComplianceFramework(
            id="hipaa",
            name="HIPAA",
            version="2013",
            description="Health Insurance Portability and Accountability Act",
            controls=[
                _control(
                    "hipaa", "164.308", "Administrative Safeguards",
                    "Implement administrative safeguards to protect PHI",
                    "Administrative", RiskLevel.HIGH, CheckFrequency.WEEKLY,
                    "Assign an administrator role and document access management procedures",
                ),
                _control(
                    "hipaa", "164.312", "Technical Safeguards",
                    "Implement technical safeguards to protect PHI",
                    "Technical", RiskLevel.CRITICAL, CheckFrequency.DAILY,
                    "Move PHI to an encrypted-at-rest database provider",
                ),
                _control(
                    "hipaa", "164.316", "Policies and Procedures",
                    "Maintain written security policies and procedures",
                    "Administrative", RiskLevel.MEDIUM, CheckFrequency.ANNUALLY,
                    "Review and publish security policies",
                    automated=False,
                ),
            ],
        ),
        ComplianceFramework(
            id="gdpr",
            name="GDPR",
            version="2018",
            description="General Data Protection Regulation",
            controls=[
                _control(
                    "gdpr", "art-17", "Right to Erasure",
                    "Erase personal data when the retention period ends",
                    "Privacy", RiskLevel.HIGH, CheckFrequency.DAILY,
                    "Delete accounts past their scheduled deletion date",
                ),
                _control(
                    "gdpr", "art-25", "Data Protection by Design",
                    "Implement data protection by design and by default",
                    "Privacy", RiskLevel.HIGH, CheckFrequency.WEEKLY,
                    "Configure PRIVACY_PHI_ENCRYPTION_KEY and a production PRIVACY_PEPPER",
                ),
                _control(
                    "gdpr", "art-30", "Records of Processing",
                    "Keep a consent record for every data subject",
                    "Privacy", RiskLevel.MEDIUM, CheckFrequency.WEEKLY,
                    "Collect consent from users without a consent record",
                ),
                _control(
                    "gdpr", "art-32", "Security of Processing",
                    "Implement appropriate security measures",
                    "Security", RiskLevel.CRITICAL, CheckFrequency.DAILY,
                    "Restore audit logging for all services",
                ),
            ],
        ),
        ComplianceFramework(
            id="soc2",
            name="SOC 2",
            version="2017",
            description="Service Organization Control 2",
            controls=[
                _control(
                    "soc2", "cc6.1", "Logical Access Controls",
                    "Implement logical access security measures",
                    "Security", RiskLevel.HIGH, CheckFrequency.WEEKLY,
                    "Assign roles to all staff accounts",
                ),
                _control(
                    "soc2", "cc7.2", "System Monitoring",
                    "Monitor system components for anomalies",
                    "Security", RiskLevel.HIGH, CheckFrequency.DAILY,
                    "Enable SECURITY_MONITORING_ENABLED on the admin service",
                ),
                _control(
                    "soc2", "a1.2", "Backup and Recovery",
                    "Back up data and test recovery",
                    "Availability", RiskLevel.MEDIUM, CheckFrequency.DAILY,
                    "Schedule a backup at least weekly",
                ),
            ],
        ),
    ]


# =============================================================================
# Service
# =============================================================================


class ComplianceAutomationService:
    """
    Tracks compliance controls and runs their automated checks.

    Example:
        >>> compliance = ComplianceAutomationService(get_backend())
        >>> assessment = await compliance.run_automated_assessment("gdpr", admin.id)
        >>> report = await compliance.generate_compliance_report("gdpr", request, admin.id)
    """

    def __init__(
        self,
        backend: BackendService,
        audit: AuditLogger | None = None,
        checks: dict[str, ControlCheck] | None = None,
    ) -> None:
        self.database = backend.database
        self.provider = backend.provider
        self._audit = audit or AuditLogger(backend.database)
        self._checks = dict(AUTOMATED_CHECKS if checks is None else checks)
        self._frameworks = {f.id: f for f in default_frameworks()}
        self._loaded = False

    async def _ensure_loaded(self) -> None:
        """Apply persisted control state to the catalogue once."""
        if self._loaded:
            return
        rows = (await self.database.select(CONTROLS_TABLE)).data
        by_id = {row["id"]: row for row in rows}
        for framework in self._frameworks.values():
            for index, control in enumerate(framework.controls):
                row = by_id.get(control.id)
                if row is None:
                    continue
                framework.controls[index] = control.model_copy(
                    update={
                        "status": ComplianceStatus(row["status"]),
                        "last_checked": row.get("last_checked"),
                        "next_check_due": row.get("next_check_due"),
                        "evidence": [ComplianceEvidence.model_validate(e) for e in row.get("evidence") or []],
                    }
                )
            self._rescore(framework)
        self._loaded = True

    @staticmethod
    def _rescore(framework: ComplianceFramework) -> None:
        framework.compliance_score = framework_score(framework.controls)
        framework.overall_status = (
            framework_status(framework.compliance_score)
            if any(c.status != ComplianceStatus.NOT_ASSESSED for c in framework.controls)
            else ComplianceStatus.NOT_ASSESSED
        )

    async def get_frameworks(self) -> list[ComplianceFramework]:
        await self._ensure_loaded()
        return list(self._frameworks.values())

    async def get_framework(self, framework_id: str) -> ComplianceFramework:
        """
        Raises:
            FrameworkNotFoundError: If the id is unknown
        """
        await self._ensure_loaded()
        framework = self._frameworks.get(framework_id)
        if framework is None:
            raise FrameworkNotFoundError(f"Framework not found: {framework_id}")
        return framework

    # =========================================================================
    # Controls
    # =========================================================================

    async def update_control_status(
        self,
        framework_id: str,
        control_id: str,
        status: ComplianceStatus,
        evidence: ComplianceEvidence | None = None,
        updated_by: str = SYSTEM_ACTOR,
    ) -> ComplianceControl:
        """
        Record a control's status and rescore its framework.

        Raises:
            FrameworkNotFoundError: If the framework is unknown
            ControlNotFoundError: If the control is not in the framework
        """
        framework = await self.get_framework(framework_id)
        control = next((c for c in framework.controls if c.control_id == control_id), None)
        if control is None:
            raise ControlNotFoundError(f"Control not found: {framework_id}/{control_id}")

        now = datetime.now(UTC)
        control.status = status
        control.last_checked = now
        control.next_check_due = next_check_due(control.check_frequency, now)
        if evidence is not None:
            control.evidence.append(evidence)

        await self.database.upsert(
            CONTROLS_TABLE,
            {
                "id": control.id,
                "framework_id": framework_id,
                "control_id": control_id,
                "status": status.value,
                "last_checked": now,
                "next_check_due": control.next_check_due,
                "evidence": [e.model_dump(mode="json") for e in control.evidence],
            },
        )
        self._rescore(framework)
        framework.last_assessment = now

        await self._audit.log(
            AuditAction.COMPLIANCE_UPDATE,
            "compliance",
            user_id=updated_by,
            resource_id=f"{framework_id}:{control_id}",
            details={"status": status.value, "framework": framework_id, "control": control_id},
            risk_level=RiskLevel.HIGH if status == ComplianceStatus.NON_COMPLIANT else RiskLevel.MEDIUM,
        )
        logger.info(
            "compliance_control_updated",
            framework=framework_id,
            control=control_id,
            status=status.value,
            framework_score=framework.compliance_score,
        )
        return control

    async def run_control_check(self, control: ComplianceControl) -> AssessmentResult:
        """Run a control's automated check; controls without one need manual assessment."""
        check = self._checks.get(control.control_id)
        if check is None:
            return AssessmentResult(
                control_id=control.control_id,
                status=ComplianceStatus.NOT_ASSESSED,
                findings=["Manual assessment required"],
                risk_rating=control.risk_level,
            )

        try:
            passed = await check(self)
        except BackendError as e:
            logger.error("compliance_check_failed", control=control.control_id, error=e.message)
            return AssessmentResult(
                control_id=control.control_id,
                status=ComplianceStatus.NON_COMPLIANT,
                findings=[f"Check failed: {e.message}"],
                recommendations=[control.remediation] if control.remediation else [],
                risk_rating=control.risk_level,
            )

        return AssessmentResult(
            control_id=control.control_id,
            status=ComplianceStatus.COMPLIANT if passed else ComplianceStatus.NON_COMPLIANT,
            score=100 if passed else 0,
            findings=["Automated check passed" if passed else "Automated check failed"],
            recommendations=[] if passed or not control.remediation else [control.remediation],
            risk_rating=control.risk_level,
        )

    # =========================================================================
    # Assessments
    # =========================================================================

    async def run_automated_assessment(
        self,
        framework_id: str,
        assessed_by: str = SYSTEM_ACTOR,
    ) -> ComplianceAssessment:
        """
        Check every automated control in a framework and store the assessment.

        Raises:
            FrameworkNotFoundError: If the framework is unknown
        """
        framework = await self.get_framework(framework_id)
        started_at = datetime.now(UTC)
        assessment = ComplianceAssessment(
            id=f"assessment-{framework_id}-{int(started_at.timestamp() * 1000)}-{uuid.uuid4().hex[:6]}",
            framework_id=framework_id,
            started_at=started_at,
            assessed_by=assessed_by,
            next_assessment_due=started_at + ASSESSMENT_INTERVAL,
        )

        try:
            for control in framework.controls:
                if not control.automated:
                    continue
                result = await self.run_control_check(control)
                assessment.results.append(result)
                if result.status != ComplianceStatus.NOT_ASSESSED:
                    await self.update_control_status(
                        framework_id, control.control_id, result.status, updated_by=assessed_by
                    )
        except BackendError as e:
            await self._audit.log(
                AuditAction.COMPLIANCE_ASSESSMENT,
                "compliance",
                user_id=assessed_by,
                resource_id=assessment.id,
                details={"framework": framework_id, "error": e.message},
                success=False,
                risk_level=RiskLevel.HIGH,
            )
            raise

        scored = [r.score for r in assessment.results]
        assessment.overall_score = round(sum(scored) / len(scored)) if scored else 0
        assessment.recommendations = list(
            dict.fromkeys(
                rec
                for r in assessment.results
                if r.status == ComplianceStatus.NON_COMPLIANT
                for rec in r.recommendations
            )
        )
        assessment.status = "COMPLETED"
        assessment.completed_at = datetime.now(UTC)

        await self.database.insert(ASSESSMENTS_TABLE, assessment.model_dump(mode="json"))
        await self._audit.log(
            AuditAction.COMPLIANCE_ASSESSMENT,
            "compliance",
            user_id=assessed_by,
            resource_id=assessment.id,
            details={
                "framework": framework_id,
                "score": assessment.overall_score,
                "controls_assessed": len(assessment.results),
            },
            risk_level=RiskLevel.HIGH if assessment.overall_score < 80 else RiskLevel.MEDIUM,
        )
        logger.info(
            "compliance_assessment_completed",
            framework=framework_id,
            score=assessment.overall_score,
            controls=len(assessment.results),
        )
        return assessment

    async def list_assessments(self, framework_id: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        options = QueryOptions.where(framework_id=framework_id) if framework_id else QueryOptions()
        options.order_by = [OrderBy(column="started_at", ascending=False)]
        options.limit = limit
        return (await self.database.select(ASSESSMENTS_TABLE, options)).data

    async def run_daily_checks(self) -> int:
        """Run the automated checks of DAILY controls. Returns how many ran."""
        ran = 0
        for framework in await self.get_frameworks():
            for control in framework.controls:
                if not control.automated or control.check_frequency != CheckFrequency.DAILY:
                    continue
                result = await self.run_control_check(control)
                if result.status == ComplianceStatus.NOT_ASSESSED:
                    continue
                await self.update_control_status(framework.id, control.control_id, result.status)
                ran += 1
        logger.info("daily_compliance_checks_completed", controls=ran)
        return ran

    async def run_weekly_assessments(self) -> list[ComplianceAssessment]:
        """Assess every framework."""
        return [await self.run_automated_assessment(f.id) for f in await self.get_frameworks()]

    # =========================================================================
    # Reports
    # =========================================================================

    async def generate_compliance_report(
        self,
        framework_id: str,
        request: ReportRequest,
        generated_by: str = SYSTEM_ACTOR,
    ) -> ComplianceReport:
        """
        Build and store a report for a framework.

        Raises:
            FrameworkNotFoundError: If the framework is unknown
        """
        framework = await self.get_framework(framework_id)
        controls = framework.controls
        summary = ReportSummary(
            total_controls=len(controls),
            compliant_controls=sum(1 for c in controls if c.status == ComplianceStatus.COMPLIANT),
            non_compliant_controls=sum(1 for c in controls if c.status == ComplianceStatus.NON_COMPLIANT),
            partial_controls=sum(1 for c in controls if c.status == ComplianceStatus.PARTIAL),
            overall_score=framework.compliance_score,
            risk_score=risk_score(controls),
        )

        if request.report_type == ReportType.EXECUTIVE:
            sections = self._executive_sections(framework, summary)
        elif request.report_type == ReportType.DETAILED:
            sections = self._detailed_sections(framework)
        elif request.report_type == ReportType.REMEDIATION:
            sections = self._remediation_sections(framework)
        else:
            sections = await self._audit_ready_sections(framework, request)

        generated_at = datetime.now(UTC)
        report = ComplianceReport(
            id=f"report-{framework_id}-{int(generated_at.timestamp() * 1000)}-{uuid.uuid4().hex[:6]}",
            framework_id=framework_id,
            report_type=request.report_type,
            generated_at=generated_at,
            generated_by=generated_by,
            period=request.period,
            summary=summary,
            sections=sections,
            recommendations=[
                c.remediation
                for c in controls
                if c.status == ComplianceStatus.NON_COMPLIANT and c.remediation
            ],
            action_items=self._action_items(framework, generated_at),
        )

        await self.database.insert(REPORTS_TABLE, report.model_dump(mode="json"))
        await self._audit.log(
            AuditAction.COMPLIANCE_REPORT,
            "compliance",
            user_id=generated_by,
            resource_id=report.id,
            details={
                "framework": framework_id,
                "report_type": request.report_type.value,
                "score": summary.overall_score,
            },
            risk_level=RiskLevel.MEDIUM,
        )
        logger.info(
            "compliance_report_generated",
            framework=framework_id,
            report_type=request.report_type.value,
            sections=len(sections),
        )
        return report

    @staticmethod
    def _action_items(framework: ComplianceFramework, now: datetime) -> list[ActionItem]:
        return [
            ActionItem(
                id=f"action-{control.id}",
                priority=control.risk_level,
                title=f"Remediate {control.title}",
                description=control.remediation or f"Address non-compliance for {control.title}",
                assigned_to=control.assigned_to,
                due_date=now + ACTION_ITEM_DUE,
                related_controls=[control.control_id],
            )
            for control in framework.controls
            if control.status == ComplianceStatus.NON_COMPLIANT
        ]

    @staticmethod
    def _executive_sections(framework: ComplianceFramework, summary: ReportSummary) -> list[ReportSection]:
        return [
            ReportSection(
                title="Executive Summary",
                content=(
                    f"{framework.name} compliance assessment shows {summary.overall_score}% overall "
                    f"compliance with {summary.compliant_controls} of {summary.total_controls} "
                    "controls fully compliant."
                ),
            ),
            ReportSection(
                title="Compliance Status",
                content=f"Current status: {framework.overall_status.value}",
                charts=[
                    {
                        "type": "PIE",
                        "title": "Control Status Distribution",
                        "data": {
                            "Compliant": summary.compliant_controls,
                            "Non-Compliant": summary.non_compliant_controls,
                            "Partial": summary.partial_controls,
                        },
                    }
                ],
            ),
        ]

    @staticmethod
    def _control_row(control: ComplianceControl) -> list[str]:
        return [
            control.control_id,
            control.title,
            control.status.value,
            control.risk_level.value,
            control.last_checked.isoformat() if control.last_checked else "never",
        ]

    def _detailed_sections(self, framework: ComplianceFramework) -> list[ReportSection]:
        categories: dict[str, list[ComplianceControl]] = {}
        for control in framework.controls:
            categories.setdefault(control.category, []).append(control)

        return [
            ReportSection(
                title=f"{category} Controls",
                content=f"{len(controls)} controls in {category.lower()} safeguards.",
                tables=[
                    {
                        "title": f"{category} control status",
                        "headers": ["Control", "Title", "Status", "Risk", "Last checked"],
                        "rows": [self._control_row(c) for c in controls],
                    }
                ],
            )
            for category, controls in categories.items()
        ]

    @staticmethod
    def _remediation_sections(framework: ComplianceFramework) -> list[ReportSection]:
        gaps = [
            c
            for c in framework.controls
            if c.status in (ComplianceStatus.NON_COMPLIANT, ComplianceStatus.PARTIAL)
        ]
        gaps.sort(key=lambda c: c.risk_level.weight, reverse=True)
        if not gaps:
            return [ReportSection(title="Remediation", content="No open compliance gaps.")]
        return [
            ReportSection(
                title=f"{c.control_id} {c.title}",
                content=c.remediation or f"Address non-compliance for {c.title}",
            )
            for c in gaps
        ]

    async def _audit_ready_sections(
        self,
        framework: ComplianceFramework,
        request: ReportRequest,
    ) -> list[ReportSection]:
        options = QueryOptions.where(
            resource="compliance",
            timestamp=QueryFilter(operator="gte", value=request.period.start_date.isoformat()),
        )
        end = as_datetime(request.period.end_date)
        activity = [
            row
            for row in (await self.database.select("audit_logs", options)).data
            if as_datetime(row["timestamp"]) <= end
        ]

        return [
            ReportSection(
                title="Control Evidence",
                content=f"Evidence held for {framework.name} controls.",
                tables=[
                    {
                        "title": "Controls and evidence",
                        "headers": ["Control", "Title", "Status", "Risk", "Last checked", "Evidence"],
                        "rows": [
                            [*self._control_row(c), str(len(c.evidence))] for c in framework.controls
                        ],
                    }
                ],
            ),
            ReportSection(
                title="Compliance Activity",
                content=(
                    f"{len(activity)} compliance events recorded between "
                    f"{request.period.start_date.date()} and {request.period.end_date.date()}."
                ),
            ),
        ]
