"""
Shared Models
=============

Pydantic models shared across Mind Measure services.

Models:
- Wellness models (Profile, AssessmentSession, FusionOutput, UserBaseline)
- Privacy models (ConsentRecord, UserPseudonym, PrivacyCompliantAssessmentSession)
- Security models (AuditEntry, SecurityIncident, ComplianceFramework, BackupMetadata)
"""

from shared.models.common import HealthResponse
from shared.models.privacy import (
    ConsentRecord,
    DataProcessingPurposes,
    MoodCategory,
    PrivacyCompliantAssessmentSession,
    RetentionPreference,
    TimeOfDay,
    UserPseudonym,
    WellnessScore,
)
from shared.models.security import (
    AuditAction,
    AuditEntry,
    BackupMetadata,
    ComplianceControl,
    ComplianceFramework,
    ComplianceStatus,
    IncidentStatus,
    IncidentType,
    RiskLevel,
    SecurityIncident,
)
from shared.models.wellness import (
    AssessmentSession,
    BaselineSubmission,
    FusionOutput,
    Profile,
    SessionStatus,
    SessionType,
    UserBaseline,
)

__all__ = [
    # Wellness
    "Profile",
    "AssessmentSession",
    "SessionStatus",
    "SessionType",
    "FusionOutput",
    "UserBaseline",
    "BaselineSubmission",
    # Privacy
    "ConsentRecord",
    "DataProcessingPurposes",
    "RetentionPreference",
    "MoodCategory",
    "TimeOfDay",
    "UserPseudonym",
    "PrivacyCompliantAssessmentSession",
    "WellnessScore",
    # Security
    "AuditAction",
    "AuditEntry",
    "RiskLevel",
    "SecurityIncident",
    "IncidentStatus",
    "IncidentType",
    "ComplianceFramework",
    "ComplianceControl",
    "ComplianceStatus",
    "BackupMetadata",
    # Common
    "HealthResponse",
]
