"""
Tests for compliance scoring, checks, assessments and reports.
"""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from services.admin.security import (
    ComplianceAutomationService,
    ControlNotFoundError,
    FrameworkNotFoundError,
)
from services.admin.security.compliance_automation import (
    default_frameworks,
    framework_score,
    framework_status,
    next_check_due,
    risk_score,
)
from shared.backend import DatabaseError
from shared.models.security import (
    AuditAction,
    CheckFrequency,
    ComplianceControl,
    ComplianceEvidence,
    ComplianceStatus,
    ReportPeriod,
    ReportRequest,
    ReportType,
)


async def passes(service: ComplianceAutomationService) -> bool:
    return True


async def fails(service: ComplianceAutomationService) -> bool:
    return False


async def unavailable(service: ComplianceAutomationService) -> bool:
    raise DatabaseError("connection refused")


def hipaa_controls() -> list[ComplianceControl]:
    return list(default_frameworks()[0].controls)


def with_status(control: ComplianceControl, status: ComplianceStatus) -> ComplianceControl:
    return control.model_copy(update={"status": status})


def report_request(report_type: ReportType) -> ReportRequest:
    now = datetime.now(UTC)
    return ReportRequest(
        report_type=report_type,
        period=ReportPeriod(start_date=now - timedelta(days=1), end_date=now + timedelta(days=1)),
    )


# =============================================================================
# Scoring
# =============================================================================


class TestScoring:
    def test_framework_score_counts_partial_as_half(self) -> None:
        a, b, c = hipaa_controls()
        controls = [
            with_status(a, ComplianceStatus.COMPLIANT),
            with_status(b, ComplianceStatus.PARTIAL),
            with_status(c, ComplianceStatus.NON_COMPLIANT),
        ]

        assert framework_score(controls) == 50

    def test_framework_score_empty(self) -> None:
        assert framework_score([]) == 0

    @pytest.mark.parametrize(
        ("score", "expected"),
        [
            (100, ComplianceStatus.COMPLIANT),
            (95, ComplianceStatus.COMPLIANT),
            (94, ComplianceStatus.PARTIAL),
            (70, ComplianceStatus.PARTIAL),
            (69, ComplianceStatus.NON_COMPLIANT),
            (0, ComplianceStatus.NON_COMPLIANT),
        ],
    )
    def test_framework_status_thresholds(self, score: int, expected: ComplianceStatus) -> None:
        assert framework_status(score) == expected

    def test_risk_score_weights_non_compliant_controls(self) -> None:
        admin, technical, policies = hipaa_controls()
        controls = [
            with_status(admin, ComplianceStatus.NON_COMPLIANT),
            with_status(technical, ComplianceStatus.NON_COMPLIANT),
            with_status(policies, ComplianceStatus.PARTIAL),
        ]

        # HIGH (3) + CRITICAL (4)
        assert risk_score(controls) == 70

    def test_risk_score_is_capped(self) -> None:
        controls = [
            with_status(c, ComplianceStatus.NON_COMPLIANT)
            for framework in default_frameworks()
            for c in framework.controls
        ]

        assert risk_score(controls) == 100

    def test_next_check_due_follows_frequency(self) -> None:
        now = datetime(2025, 1, 1, tzinfo=UTC)

        assert next_check_due(CheckFrequency.DAILY, now) == now + timedelta(days=1)
        assert next_check_due(CheckFrequency.QUARTERLY, now) == now + timedelta(days=90)


def test_catalogue_starts_unassessed() -> None:
    frameworks = default_frameworks()

    assert [f.id for f in frameworks] == ["hipaa", "gdpr", "soc2"]
    assert all(c.status == ComplianceStatus.NOT_ASSESSED for f in frameworks for c in f.controls)
    assert all(f.compliance_score == 0 for f in frameworks)


# =============================================================================
# Controls
# =============================================================================


class TestControls:
    async def test_frameworks_start_not_assessed(self, backend) -> None:
        service = ComplianceAutomationService(backend)

        frameworks = await service.get_frameworks()

        assert len(frameworks) == 3
        assert all(f.overall_status == ComplianceStatus.NOT_ASSESSED for f in frameworks)

    async def test_unknown_framework(self, backend) -> None:
        service = ComplianceAutomationService(backend)

        with pytest.raises(FrameworkNotFoundError):
            await service.get_framework("pci")

    async def test_update_control_status_rescores(self, backend) -> None:
        service = ComplianceAutomationService(backend)
        evidence = ComplianceEvidence(
            type="POLICY",
            title="Information security policy v3",
            location="s3://policies/infosec-v3.pdf",
        )

        control = await service.update_control_status(
            "hipaa", "164.316", ComplianceStatus.COMPLIANT, evidence=evidence, updated_by="admin-1"
        )

        assert control.status == ComplianceStatus.COMPLIANT
        assert control.last_checked is not None
        assert control.next_check_due == control.last_checked + timedelta(days=365)
        assert [e.title for e in control.evidence] == ["Information security policy v3"]

        framework = await service.get_framework("hipaa")
        assert framework.compliance_score == 33
        assert framework.overall_status == ComplianceStatus.NON_COMPLIANT
        assert framework.last_assessment is not None

    async def test_update_is_audited(self, backend) -> None:
        service = ComplianceAutomationService(backend)

        await service.update_control_status(
            "gdpr", "art-30", ComplianceStatus.NON_COMPLIANT, updated_by="admin-1"
        )

        rows = (await backend.database.select("audit_logs")).data
        assert len(rows) == 1
        assert rows[0]["action"] == AuditAction.COMPLIANCE_UPDATE.value
        assert rows[0]["resource_id"] == "gdpr:art-30"
        assert rows[0]["risk_level"] == "HIGH"

    async def test_unknown_control(self, backend) -> None:
        service = ComplianceAutomationService(backend)

        with pytest.raises(ControlNotFoundError):
            await service.update_control_status("hipaa", "art-17", ComplianceStatus.COMPLIANT)

    async def test_state_survives_a_new_service(self, backend) -> None:
        first = ComplianceAutomationService(backend)
        evidence = ComplianceEvidence(type="LOG", title="Access review", location="audit_logs")
        await first.update_control_status("soc2", "cc6.1", ComplianceStatus.PARTIAL, evidence=evidence)

        second = ComplianceAutomationService(backend)
        framework = await second.get_framework("soc2")

        control = next(c for c in framework.controls if c.control_id == "cc6.1")
        assert control.status == ComplianceStatus.PARTIAL
        assert [e.title for e in control.evidence] == ["Access review"]
        assert framework.compliance_score == 17
        assert framework.overall_status == ComplianceStatus.NON_COMPLIANT


# =============================================================================
# Checks
# =============================================================================


class TestControlChecks:
    async def test_manual_control_needs_assessment(self, backend) -> None:
        service = ComplianceAutomationService(backend)
        policies = (await service.get_framework("hipaa")).controls[2]

        result = await service.run_control_check(policies)

        assert result.status == ComplianceStatus.NOT_ASSESSED
        assert result.findings == ["Manual assessment required"]

    async def test_passing_check(self, backend) -> None:
        service = ComplianceAutomationService(backend, checks={"164.308": passes})
        control = (await service.get_framework("hipaa")).controls[0]

        result = await service.run_control_check(control)

        assert result.status == ComplianceStatus.COMPLIANT
        assert result.score == 100
        assert result.recommendations == []

    async def test_failing_check_recommends_remediation(self, backend) -> None:
        service = ComplianceAutomationService(backend, checks={"164.308": fails})
        control = (await service.get_framework("hipaa")).controls[0]

        result = await service.run_control_check(control)

        assert result.status == ComplianceStatus.NON_COMPLIANT
        assert result.score == 0
        assert result.recommendations == [control.remediation]

    async def test_check_that_errors_is_non_compliant(self, backend) -> None:
        service = ComplianceAutomationService(backend, checks={"164.308": unavailable})
        control = (await service.get_framework("hipaa")).controls[0]

        result = await service.run_control_check(control)

        assert result.status == ComplianceStatus.NON_COMPLIANT
        assert result.findings == ["Check failed: connection refused"]

    async def test_consent_records_check(self, backend) -> None:
        service = ComplianceAutomationService(backend)
        control = next(
            c for c in (await service.get_framework("gdpr")).controls if c.control_id == "art-30"
        )
        await backend.database.insert("profiles", {"user_id": "u1"})

        missing = await service.run_control_check(control)
        await backend.database.insert("consent_records", {"user_id": "u1"})
        recorded = await service.run_control_check(control)

        assert missing.status == ComplianceStatus.NON_COMPLIANT
        assert recorded.status == ComplianceStatus.COMPLIANT

    async def test_admin_role_check(self, backend) -> None:
        service = ComplianceAutomationService(backend)
        control = (await service.get_framework("hipaa")).controls[0]

        before = await service.run_control_check(control)
        await backend.database.insert("user_roles", {"user_id": "admin-1", "role": "admin"})
        after = await service.run_control_check(control)

        assert before.status == ComplianceStatus.NON_COMPLIANT
        assert after.status == ComplianceStatus.COMPLIANT

    async def test_local_provider_is_not_encrypted_at_rest(self, backend) -> None:
        service = ComplianceAutomationService(backend)
        control = (await service.get_framework("hipaa")).controls[1]

        result = await service.run_control_check(control)

        assert control.control_id == "164.312"
        assert result.status == ComplianceStatus.NON_COMPLIANT

    async def test_erasure_check_flags_overdue_profiles(self, backend) -> None:
        service = ComplianceAutomationService(backend)
        control = next(
            c for c in (await service.get_framework("gdpr")).controls if c.control_id == "art-17"
        )
        await backend.database.insert(
            "profiles",
            {"user_id": "u1", "scheduled_deletion": (datetime.now(UTC) - timedelta(days=1)).isoformat()},
        )

        result = await service.run_control_check(control)

        assert result.status == ComplianceStatus.NON_COMPLIANT


# =============================================================================
# Assessments
# =============================================================================


class TestAssessments:
    async def test_automated_assessment(self, backend) -> None:
        service = ComplianceAutomationService(
            backend,
            checks={"art-17": passes, "art-25": passes, "art-30": fails, "art-32": passes},
        )

        assessment = await service.run_automated_assessment("gdpr", assessed_by="admin-1")

        assert assessment.status == "COMPLETED"
        assert assessment.completed_at is not None
        assert len(assessment.results) == 4
        assert assessment.overall_score == 75
        assert assessment.recommendations == ["Collect consent from users without a consent record"]
        assert assessment.next_assessment_due == assessment.started_at + timedelta(days=90)

        framework = await service.get_framework("gdpr")
        assert framework.compliance_score == 75
        assert framework.overall_status == ComplianceStatus.PARTIAL

        stored = await service.list_assessments("gdpr")
        assert [row["id"] for row in stored] == [assessment.id]

    async def test_manual_controls_are_skipped(self, backend) -> None:
        service = ComplianceAutomationService(backend, checks={"164.308": passes, "164.312": passes})

        assessment = await service.run_automated_assessment("hipaa")

        assert [r.control_id for r in assessment.results] == ["164.308", "164.312"]
        assert assessment.overall_score == 100

    async def test_unknown_framework(self, backend) -> None:
        service = ComplianceAutomationService(backend, checks={})

        with pytest.raises(FrameworkNotFoundError):
            await service.run_automated_assessment("iso27001")

    async def test_daily_checks_only_run_daily_controls(self, backend) -> None:
        service = ComplianceAutomationService(
            backend,
            checks={"164.312": passes, "164.308": passes, "a1.2": fails},
        )

        ran = await service.run_daily_checks()

        assert ran == 2
        hipaa = await service.get_framework("hipaa")
        statuses = {c.control_id: c.status for c in hipaa.controls}
        assert statuses["164.312"] == ComplianceStatus.COMPLIANT
        assert statuses["164.308"] == ComplianceStatus.NOT_ASSESSED

    async def test_weekly_assessments_cover_every_framework(self, backend) -> None:
        service = ComplianceAutomationService(backend, checks={})

        assessments = await service.run_weekly_assessments()

        assert sorted(a.framework_id for a in assessments) == ["gdpr", "hipaa", "soc2"]
        assert len(await service.list_assessments()) == 3


# =============================================================================
# Reports
# =============================================================================


class TestReports:
    @pytest_asyncio.fixture
    async def service(self, backend) -> ComplianceAutomationService:
        service = ComplianceAutomationService(backend)
        await service.update_control_status("hipaa", "164.308", ComplianceStatus.PARTIAL)
        await service.update_control_status("hipaa", "164.312", ComplianceStatus.NON_COMPLIANT)
        await service.update_control_status("hipaa", "164.316", ComplianceStatus.COMPLIANT)
        return service

    async def test_executive_report(self, service: ComplianceAutomationService) -> None:
        report = await service.generate_compliance_report(
            "hipaa", report_request(ReportType.EXECUTIVE), generated_by="admin-1"
        )

        assert [s.title for s in report.sections] == ["Executive Summary", "Compliance Status"]
        assert report.summary.total_controls == 3
        assert report.summary.compliant_controls == 1
        assert report.summary.partial_controls == 1
        assert report.summary.non_compliant_controls == 1
        assert report.summary.overall_score == 50
        assert report.summary.risk_score == 40
        assert report.sections[1].charts[0]["data"]["Non-Compliant"] == 1
        assert [a.related_controls for a in report.action_items] == [["164.312"]]
        assert report.recommendations == ["Move PHI to an encrypted-at-rest database provider"]

    async def test_detailed_report_groups_by_category(self, service: ComplianceAutomationService) -> None:
        report = await service.generate_compliance_report("hipaa", report_request(ReportType.DETAILED))

        assert [s.title for s in report.sections] == ["Administrative Controls", "Technical Controls"]
        rows = report.sections[0].tables[0]["rows"]
        assert [row[0] for row in rows] == ["164.308", "164.316"]

    async def test_remediation_report_orders_by_risk(self, service: ComplianceAutomationService) -> None:
        report = await service.generate_compliance_report("hipaa", report_request(ReportType.REMEDIATION))

        assert [s.title for s in report.sections] == [
            "164.312 Technical Safeguards",
            "164.308 Administrative Safeguards",
        ]

    async def test_remediation_report_without_gaps(self, backend) -> None:
        service = ComplianceAutomationService(backend)

        report = await service.generate_compliance_report("soc2", report_request(ReportType.REMEDIATION))

        assert [s.content for s in report.sections] == ["No open compliance gaps."]
        assert report.action_items == []

    async def test_audit_ready_report_counts_activity(self, service: ComplianceAutomationService) -> None:
        report = await service.generate_compliance_report("hipaa", report_request(ReportType.AUDIT_READY))

        evidence, activity = report.sections
        assert evidence.tables[0]["headers"][-1] == "Evidence"
        assert activity.content.startswith("3 compliance events recorded")

    async def test_reports_are_stored_and_audited(
        self,
        backend,
        service: ComplianceAutomationService,
    ) -> None:
        first = await service.generate_compliance_report("hipaa", report_request(ReportType.EXECUTIVE))
        second = await service.generate_compliance_report("hipaa", report_request(ReportType.EXECUTIVE))

        stored = (await backend.database.select("compliance_reports")).data
        assert {row["id"] for row in stored} == {first.id, second.id}
        actions = [row["action"] for row in (await backend.database.select("audit_logs")).data]
        assert actions.count(AuditAction.COMPLIANCE_REPORT.value) == 2
