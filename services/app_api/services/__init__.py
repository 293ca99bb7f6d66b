"""
App API Services
================

Business logic for the app-facing API.

Services:
- AssessmentService: Session lifecycle and baselines
- BuddyService: Buddy invitations

Version: 0.1.0
"""

from services.app_api.services.assessment import (
    AssessmentError,
    AssessmentService,
    BaselineValidationError,
    InvalidTransitionError,
    SessionNotFoundError,
    SessionWorkflow,
)
from services.app_api.services.buddy import (
    BuddyError,
    BuddyInviteCreate,
    BuddyLimitError,
    BuddyService,
    DuplicateInviteError,
    InviteNotFoundError,
    InviteStateError,
)


__all__ = [
    # Assessment
    "AssessmentService",
    "SessionWorkflow",
    "AssessmentError",
    "SessionNotFoundError",
    "InvalidTransitionError",
    "BaselineValidationError",
    # Buddy
    "BuddyService",
    "BuddyInviteCreate",
    "BuddyError",
    "BuddyLimitError",
    "DuplicateInviteError",
    "InviteNotFoundError",
    "InviteStateError",
]
