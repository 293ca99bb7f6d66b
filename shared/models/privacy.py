"""
Privacy Models
==============

Consent, pseudonyms and the pseudonymous analytics domain.

Analytics rows reference a user_hash, never a user_id, and carry only
week-level timestamps and categorical moods.

Version: 0.1.0
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class RetentionPreference(str, Enum):
    """How long the user asked for their data to be kept."""

    ONE_YEAR = "1_year"
    THREE_YEARS = "3_years"
    SEVEN_YEARS = "7_years"
    INDEFINITE = "indefinite"


class MoodCategory(str, Enum):
    """Coarse mood bucket stored in analytics instead of the raw value."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_scale(cls, mood: int) -> "MoodCategory":
        """Bucket a 1-10 mood: 1-3 low, 4-7 medium, 8-10 high."""
        if mood <= 3:
            return cls.LOW
        if mood <= 7:
            return cls.MEDIUM
        return cls.HIGH


class TimeOfDay(str, Enum):
    """Part of day a session started in."""

    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"

    @classmethod
    def from_hour(cls, hour: int) -> "TimeOfDay":
        if hour < 12:
            return cls.MORNING
        if hour < 18:
            return cls.AFTERNOON
        return cls.EVENING


class ScoreCategory(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    CONCERNING = "concerning"


class ConfidenceLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# Consent
# =============================================================================


class DataProcessingPurposes(BaseModel):
    """Purposes the user agreed to. Personal wellness is required for the service."""

    personal_wellness: bool = True
    anonymous_analytics: bool = False
    university_reporting: bool = False
    service_improvement: bool = False

    @field_validator("personal_wellness")
    @classmethod
    def personal_wellness_required(cls, v: bool) -> bool:
        if not v:
            raise ValueError("personal_wellness consent is required to use the service")
        return v


class ConsentRecord(BaseModel):
    """A versioned consent decision."""

    consent_version: str = "1.0"
    consent_timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data_processing_purposes: DataProcessingPurposes = Field(default_factory=DataProcessingPurposes)
    data_retention_preference: RetentionPreference = RetentionPreference.SEVEN_YEARS
    right_to_withdraw: bool = True

    @field_validator("right_to_withdraw")
    @classmethod
    def always_withdrawable(cls, v: bool) -> bool:
        # Withdrawal cannot be waived
        return True


class ConsentWithdrawal(BaseModel):
    """Purposes to switch off. Withdrawing personal wellness means account deletion."""

    anonymous_analytics: bool = False
    university_reporting: bool = False
    service_improvement: bool = False


# =============================================================================
# Analytics domain
# =============================================================================


class UserPseudonym(BaseModel):
    """Analytics identity for one user and month."""

    id: str | None = None
    user_hash: str
    university_code_hash: str | None = None
    cohort_hash: str | None = None
    created_month: str = Field(..., pattern=r"^\d{4}-\d{2}$")
    is_active: bool = True


class PrivacyAssessmentCreate(BaseModel):
    """Pseudonymous mirror of an assessment session."""

    session_type: str = Field(..., pattern=r"^(baseline|checkin|voice)$")
    mood_before: MoodCategory | None = None
    mood_after: MoodCategory | None = None
    assessment_duration_minutes: int | None = Field(default=None, ge=0)


class PrivacyCompliantAssessmentSession(BaseModel):
    """Assessment session keyed by pseudonym with coarse timing."""

    id: str | None = None
    user_hash: str
    session_type: str
    completion_status: str = "pending"
    mood_before_category: MoodCategory | None = None
    mood_after_category: MoodCategory | None = None
    assessment_duration_minutes: int | None = None
    created_week: str = Field(..., pattern=r"^\d{4}-W\d{2}$")
    time_of_day: TimeOfDay


class WellnessScore(BaseModel):
    """Categorical score attached to a pseudonymous session."""

    id: str | None = None
    session_id: str
    score_category: ScoreCategory
    confidence_level: ConfidenceLevel
    trend_direction: str | None = None
    created_week: str


class UserWellnessData(BaseModel):
    """A user's own pseudonymous sessions and scores."""

    sessions: list[dict[str, Any]] = Field(default_factory=list)
    scores: list[dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# Requests & results
# =============================================================================


class PrivacyUserCreate(BaseModel):
    """Sign-up with an explicit consent decision."""

    email: str
    password: str = Field(..., min_length=8)
    first_name: str | None = None
    last_name: str | None = None
    display_name: str | None = None
    university_code: str | None = None
    cohort: str | None = None
    consent: ConsentRecord = Field(default_factory=ConsentRecord)


class PrivacyUserResult(BaseModel):
    """Outcome of a privacy-aware sign-up."""

    user_id: str
    email: str
    user_confirmed: bool = False
    profile: dict[str, Any]
    pseudonym_created: bool = False
    scheduled_deletion: datetime


class DataExportResult(BaseModel):
    """Where a user's export bundle can be downloaded."""

    export_id: str
    bucket: str
    key: str
    download_url: str
    expires_in: int
    record_counts: dict[str, int] = Field(default_factory=dict)


class DeletionRequest(BaseModel):
    reason: str = Field(default="user_request", max_length=200)


class DeletionResult(BaseModel):
    """Proof that a user's identity-domain data was deleted."""

    success: bool = True
    deletion_certificate_id: str
    backup_id: str
    deleted_records: dict[str, int] = Field(default_factory=dict)
    pseudonyms_deactivated: int = 0
