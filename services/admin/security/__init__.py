"""
Security Automation
===================

Incident detection and response, compliance automation, backup and
recovery, and the scheduler that runs them.
"""

from services.admin.security.backup_recovery import (
    BackupError,
    BackupIntegrityError,
    BackupNotFoundError,
    BackupRecoveryService,
)
from services.admin.security.compliance_automation import (
    ComplianceAutomationService,
    ComplianceError,
    ControlNotFoundError,
    FrameworkNotFoundError,
)
from services.admin.security.incident_response import (
    IncidentNotFoundError,
    IncidentResponseService,
    WebhookAlerter,
)
from services.admin.security.monitor import PeriodicTask, SecurityMonitor


__all__ = [
    "BackupRecoveryService",
    "BackupError",
    "BackupNotFoundError",
    "BackupIntegrityError",
    "ComplianceAutomationService",
    "ComplianceError",
    "FrameworkNotFoundError",
    "ControlNotFoundError",
    "IncidentResponseService",
    "IncidentNotFoundError",
    "WebhookAlerter",
    "PeriodicTask",
    "SecurityMonitor",
]
