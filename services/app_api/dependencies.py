"""
App API Dependencies
====================

FastAPI dependencies wiring the backend into the route handlers.

Version: 0.1.0
"""

from typing import Annotated

from fastapi import Depends

from services.app_api.services import AssessmentService, BuddyService
from shared.audit import AuditLogger, Blocklist
from shared.backend import BackendService, get_backend
from shared.privacy import PrivacyService


def get_backend_service() -> BackendService:
    return get_backend()


BackendDep = Annotated[BackendService, Depends(get_backend_service)]


def get_audit_logger(backend: BackendDep) -> AuditLogger:
    return AuditLogger(backend.database)


def get_blocklist(backend: BackendDep) -> Blocklist:
    return Blocklist(backend.database)


def get_privacy_service(
    backend: BackendDep,
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
) -> PrivacyService:
    return PrivacyService(backend, audit=audit)


def get_assessment_service(
    backend: BackendDep,
    privacy: Annotated[PrivacyService, Depends(get_privacy_service)],
) -> AssessmentService:
    return AssessmentService(backend, privacy=privacy)


def get_buddy_service(backend: BackendDep) -> BuddyService:
    return BuddyService(backend)
