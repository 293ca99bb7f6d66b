"""
Wellness Models
===============

Profiles, assessment sessions, fusion outputs and baselines.

Version: 0.1.0
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SessionStatus(str, Enum):
    """Assessment session lifecycle."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})


class SessionType(str, Enum):
    """Kind of assessment."""

    BASELINE = "baseline"
    CHECKIN = "checkin"
    VOICE = "voice"


class AssessmentType(str, Enum):
    """Capture mode of an assessment session."""

    FULL = "full"
    QUICK = "quick"
    VOICE_ONLY = "voice-only"


# =============================================================================
# Rows
# =============================================================================


class Profile(BaseModel):
    """User profile (identity attributes)."""

    id: str | None = None
    user_id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    display_name: str | None = None
    university_id: str | None = None
    university_code: str | None = None
    cohort: str | None = None
    baseline_established: bool = False
    pseudonym_month: str | None = Field(
        default=None,
        description="YYYY-MM the user's analytics pseudonym was derived for",
    )
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AssessmentSession(BaseModel):
    """A baseline, check-in or voice session."""

    id: str
    user_id: str
    session_type: SessionType = SessionType.CHECKIN
    assessment_type: AssessmentType = AssessmentType.FULL
    category: str = "general"
    status: SessionStatus = SessionStatus.PENDING
    mood_before: int | None = Field(default=None, ge=1, le=10)
    mood_after: int | None = Field(default=None, ge=1, le=10)
    text_data: dict[str, Any] | None = None
    audio_data: dict[str, Any] | None = None
    visual_data: dict[str, Any] | None = None
    reflection_notes: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class FusionOutput(BaseModel):
    """Wellness score with component sub-scores and an uncertainty value."""

    id: str | None = None
    session_id: str
    user_id: str
    score: int = Field(..., ge=0, le=100)
    phq2_component: float = 0.0
    gad2_component: float = 0.0
    mood_component: float = 0.0
    uncertainty: float = Field(default=0.1, ge=0, le=1)
    analysis: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class UserBaseline(BaseModel):
    """The score a user's later check-ins are compared against."""

    id: str | None = None
    user_id: str
    session_id: str
    baseline_score: int = Field(..., ge=0, le=100)
    phq2_total: int = Field(..., ge=0, le=6)
    gad2_total: int = Field(..., ge=0, le=6)
    mood_scale: int = Field(..., ge=1, le=10)
    established_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


# =============================================================================
# Requests
# =============================================================================


class SessionCreate(BaseModel):
    """Request model for starting a session."""

    session_type: SessionType = SessionType.CHECKIN
    assessment_type: AssessmentType = AssessmentType.FULL
    category: str = "general"
    mood_before: int | None = Field(default=None, ge=1, le=10)


class SessionUpdate(BaseModel):
    """Request model for updating session data."""

    mood_after: int | None = Field(default=None, ge=1, le=10)
    text_data: dict[str, Any] | None = None
    audio_data: dict[str, Any] | None = None
    visual_data: dict[str, Any] | None = None
    reflection_notes: str | None = None


class SessionComplete(BaseModel):
    """Request model for completing a check-in session."""

    score: int = Field(..., ge=0, le=100)
    mood_after: int | None = Field(default=None, ge=1, le=10)
    uncertainty: float = Field(default=0.1, ge=0, le=1)
    analysis: dict[str, Any] = Field(default_factory=dict)


class SessionFail(BaseModel):
    """Request model for failing a session."""

    error: str = Field(..., min_length=1, max_length=500)


class BaselineSubmission(BaseModel):
    """Transcript of a baseline conversation to be scored."""

    transcript: str = Field(..., description="Conversation lines prefixed with 'user:' / 'agent:'")
    started_at: datetime | None = None
    ended_at: datetime | None = None
    session_id: str | None = Field(
        default=None,
        description="Existing pending session to complete; a new one is created when omitted",
    )
