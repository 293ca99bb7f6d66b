"""
Security Incident Routes
========================

Incident scans, review and status changes, and manual management of the
IP blocklist and account suspensions.

Version: 0.1.0
"""

from datetime import timedelta
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from services.admin.dependencies import AdminUser, AuditDep, get_incident_service
from services.admin.security import IncidentNotFoundError, IncidentResponseService
from shared.logging import get_logger
from shared.models.security import AuditAction, IncidentStatusUpdate, RiskLevel


logger = get_logger(__name__)

router = APIRouter()

Incidents = Annotated[IncidentResponseService, Depends(get_incident_service)]


class BlockIpRequest(BaseModel):
    ip_address: str = Field(..., min_length=1, max_length=45)
    reason: str = Field(..., min_length=1, max_length=500)
    duration_hours: int | None = Field(default=None, ge=1)


class SuspendUserRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=500)


@router.post("/incidents/scan")
async def scan(admin: AdminUser, incidents: Incidents) -> dict[str, Any]:
    """Run the detectors over the recent audit trail now."""
    created = await incidents.detect_security_incidents()
    logger.info("incident_scan_requested", admin_id=admin.id, created=len(created))
    return {
        "success": True,
        "created": len(created),
        "incidents": [i.model_dump(mode="json") for i in created],
    }


@router.get("/incidents")
async def list_active(admin: AdminUser, incidents: Incidents) -> dict[str, Any]:
    """Open, investigating and contained incidents, newest first."""
    active = await incidents.get_active_incidents()
    return {"incidents": [i.model_dump(mode="json") for i in active], "count": len(active)}


@router.get("/incidents/{incident_id}")
async def get_incident(incident_id: str, admin: AdminUser, incidents: Incidents) -> dict[str, Any]:
    try:
        incident = await incidents.get_incident(incident_id)
    except IncidentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return incident.model_dump(mode="json")


@router.patch("/incidents/{incident_id}")
async def update_status(
    incident_id: str,
    update: IncidentStatusUpdate,
    admin: AdminUser,
    incidents: Incidents,
) -> dict[str, Any]:
    try:
        incident = await incidents.update_incident_status(incident_id, update, actor=admin.id)
    except IncidentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return {"success": True, "incident": incident.model_dump(mode="json")}


# =============================================================================
# Blocklist
# =============================================================================


@router.get("/blocked-ips")
async def list_blocked_ips(admin: AdminUser, incidents: Incidents) -> dict[str, Any]:
    rows = await incidents.blocklist.list_blocked_ips()
    return {"blocked_ips": rows, "count": len(rows)}


@router.post("/blocked-ips", status_code=status.HTTP_201_CREATED)
async def block_ip(
    body: BlockIpRequest,
    admin: AdminUser,
    incidents: Incidents,
    audit: AuditDep,
) -> dict[str, Any]:
    duration = timedelta(hours=body.duration_hours) if body.duration_hours else None
    block = await incidents.blocklist.block_ip(body.ip_address, body.reason, duration=duration)
    await audit.log(
        AuditAction.INCIDENT_RESPONSE,
        "security",
        user_id=admin.id,
        resource_id=body.ip_address,
        details={"action": "BLOCK_IP", "reason": body.reason},
        risk_level=RiskLevel.MEDIUM,
    )
    return {"success": True, "block": block}


@router.delete("/blocked-ips/{ip_address}")
async def unblock_ip(
    ip_address: str,
    admin: AdminUser,
    incidents: Incidents,
    audit: AuditDep,
) -> dict[str, Any]:
    removed = await incidents.blocklist.unblock_ip(ip_address)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Address is not blocked")
    await audit.log(
        AuditAction.INCIDENT_RESPONSE,
        "security",
        user_id=admin.id,
        resource_id=ip_address,
        details={"action": "UNBLOCK_IP"},
        risk_level=RiskLevel.MEDIUM,
    )
    return {"success": True, "unblocked": removed}


@router.get("/suspensions")
async def list_suspensions(admin: AdminUser, incidents: Incidents) -> dict[str, Any]:
    rows = await incidents.blocklist.list_suspensions()
    return {"suspensions": rows, "count": len(rows)}


@router.post("/suspensions", status_code=status.HTTP_201_CREATED)
async def suspend_user(
    body: SuspendUserRequest,
    admin: AdminUser,
    incidents: Incidents,
    audit: AuditDep,
) -> dict[str, Any]:
    suspension = await incidents.blocklist.suspend_user(body.user_id, body.reason)
    await audit.log(
        AuditAction.INCIDENT_RESPONSE,
        "security",
        user_id=admin.id,
        resource_id=body.user_id,
        details={"action": "DISABLE_USER", "reason": body.reason},
        risk_level=RiskLevel.HIGH,
    )
    return {"success": True, "suspension": suspension}


@router.delete("/suspensions/{user_id}")
async def lift_suspension(
    user_id: str,
    admin: AdminUser,
    incidents: Incidents,
    audit: AuditDep,
) -> dict[str, Any]:
    lifted = await incidents.blocklist.lift_suspension(user_id)
    if not lifted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User is not suspended")
    await audit.log(
        AuditAction.INCIDENT_RESPONSE,
        "security",
        user_id=admin.id,
        resource_id=user_id,
        details={"action": "LIFT_SUSPENSION"},
        risk_level=RiskLevel.MEDIUM,
    )
    return {"success": True, "lifted": lifted}
