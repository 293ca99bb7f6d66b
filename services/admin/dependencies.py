"""
Admin Dependencies
==================

FastAPI dependencies wiring the backend and security services into the
admin routes.

Version: 0.1.0
"""

from typing import Annotated

from fastapi import Depends

from services.admin.security import (
    BackupRecoveryService,
    ComplianceAutomationService,
    IncidentResponseService,
)
from shared.audit import AuditLogger, Blocklist
from shared.auth import User, require_admin
from shared.backend import BackendService, get_backend


def get_backend_service() -> BackendService:
    return get_backend()


BackendDep = Annotated[BackendService, Depends(get_backend_service)]
AdminUser = Annotated[User, Depends(require_admin)]


def get_audit_logger(backend: BackendDep) -> AuditLogger:
    return AuditLogger(backend.database)


AuditDep = Annotated[AuditLogger, Depends(get_audit_logger)]


def get_blocklist(backend: BackendDep) -> Blocklist:
    return Blocklist(backend.database)


def get_backup_service(backend: BackendDep, audit: AuditDep) -> BackupRecoveryService:
    return BackupRecoveryService(backend, audit=audit)


def get_incident_service(
    backend: BackendDep,
    audit: AuditDep,
    blocklist: Annotated[Blocklist, Depends(get_blocklist)],
    backups: Annotated[BackupRecoveryService, Depends(get_backup_service)],
) -> IncidentResponseService:
    return IncidentResponseService(backend.database, audit=audit, blocklist=blocklist, backups=backups)


def get_compliance_service(backend: BackendDep, audit: AuditDep) -> ComplianceAutomationService:
    return ComplianceAutomationService(backend, audit=audit)
