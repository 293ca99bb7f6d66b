"""
Compliance Routes
=================

Framework status, manual control updates, automated assessments and
report generation.

Version: 0.1.0
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from services.admin.dependencies import AdminUser, get_compliance_service
from services.admin.security import (
    ComplianceAutomationService,
    ControlNotFoundError,
    FrameworkNotFoundError,
)
from shared.backend import BackendError
from shared.logging import get_logger
from shared.models.security import ControlStatusUpdate, ReportRequest


logger = get_logger(__name__)

router = APIRouter()

Compliance = Annotated[ComplianceAutomationService, Depends(get_compliance_service)]


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/frameworks")
async def list_frameworks(admin: AdminUser, compliance: Compliance) -> dict[str, Any]:
    frameworks = await compliance.get_frameworks()
    return {
        "frameworks": [
            {
                "id": f.id,
                "name": f.name,
                "version": f.version,
                "overall_status": f.overall_status.value,
                "compliance_score": f.compliance_score,
                "controls": len(f.controls),
                "last_assessment": f.last_assessment.isoformat() if f.last_assessment else None,
            }
            for f in frameworks
        ]
    }


@router.get("/frameworks/{framework_id}")
async def get_framework(framework_id: str, admin: AdminUser, compliance: Compliance) -> dict[str, Any]:
    """A framework with its controls."""
    try:
        framework = await compliance.get_framework(framework_id)
    except FrameworkNotFoundError as e:
        raise _not_found(e) from e
    return framework.model_dump(mode="json")


@router.put("/frameworks/{framework_id}/controls/{control_id}")
async def update_control(
    framework_id: str,
    control_id: str,
    update: ControlStatusUpdate,
    admin: AdminUser,
    compliance: Compliance,
) -> dict[str, Any]:
    """Record a manual assessment, optionally with evidence."""
    try:
        control = await compliance.update_control_status(
            framework_id,
            control_id,
            update.status,
            evidence=update.evidence,
            updated_by=admin.id,
        )
    except (FrameworkNotFoundError, ControlNotFoundError) as e:
        raise _not_found(e) from e
    return {"success": True, "control": control.model_dump(mode="json")}


@router.post("/frameworks/{framework_id}/assessments", status_code=status.HTTP_201_CREATED)
async def run_assessment(framework_id: str, admin: AdminUser, compliance: Compliance) -> dict[str, Any]:
    try:
        assessment = await compliance.run_automated_assessment(framework_id, assessed_by=admin.id)
    except FrameworkNotFoundError as e:
        raise _not_found(e) from e
    except BackendError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Assessment failed: {e.message}",
        ) from e
    return {"success": True, "assessment": assessment.model_dump(mode="json")}


@router.get("/assessments")
async def list_assessments(
    admin: AdminUser,
    compliance: Compliance,
    framework_id: str | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> dict[str, Any]:
    rows = await compliance.list_assessments(framework_id, limit=limit)
    return {"assessments": rows, "count": len(rows)}


@router.post("/frameworks/{framework_id}/reports", status_code=status.HTTP_201_CREATED)
async def generate_report(
    framework_id: str,
    request: ReportRequest,
    admin: AdminUser,
    compliance: Compliance,
) -> dict[str, Any]:
    if request.period.end_date < request.period.start_date:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Report period ends before it starts",
        )
    try:
        report = await compliance.generate_compliance_report(framework_id, request, generated_by=admin.id)
    except FrameworkNotFoundError as e:
        raise _not_found(e) from e
    return {"success": True, "report": report.model_dump(mode="json")}
