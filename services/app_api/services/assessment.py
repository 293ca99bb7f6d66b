"""
Assessment Session Service
==========================

Lifecycle of baseline, check-in and voice sessions.

Workflow:
1. Create session -> pending
2. Start processing -> processing
3. Complete (writes a fusion output) -> completed
   or fail -> failed

Completed and failed sessions are terminal.

Version: 0.1.0
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from shared.backend import BackendService, OrderBy, QueryOptions, QueryResult
from shared.logging import get_logger
from shared.models.privacy import MoodCategory, PrivacyAssessmentCreate
from shared.models.wellness import (
    BaselineSubmission,
    SessionComplete,
    SessionCreate,
    SessionStatus,
    SessionType,
    SessionUpdate,
)
from shared.privacy import PrivacyService
from shared.scoring import ValidationResult, score_transcript, validate_assessment


logger = get_logger(__name__)

SESSIONS_TABLE = "assessment_sessions"
FUSION_TABLE = "fusion_outputs"
BASELINES_TABLE = "user_baselines"
PROFILES_TABLE = "profiles"


class SessionAction(str, Enum):
    """Session workflow actions."""

    START = "start"
    COMPLETE = "complete"
    FAIL = "fail"


@dataclass
class SessionWorkflow:
    """Session state machine."""

    transitions: dict[SessionStatus, dict[SessionAction, SessionStatus]] = field(
        default_factory=lambda: {
            SessionStatus.PENDING: {
                SessionAction.START: SessionStatus.PROCESSING,
                SessionAction.COMPLETE: SessionStatus.COMPLETED,
                SessionAction.FAIL: SessionStatus.FAILED,
            },
            SessionStatus.PROCESSING: {
                SessionAction.COMPLETE: SessionStatus.COMPLETED,
                SessionAction.FAIL: SessionStatus.FAILED,
            },
        }
    )

    def can_transition(self, current: SessionStatus, action: SessionAction) -> bool:
        """Check if transition is valid."""
        return action in self.transitions.get(current, {})

    def get_next_status(self, current: SessionStatus, action: SessionAction) -> SessionStatus | None:
        """Get the next status after an action."""
        if not self.can_transition(current, action):
            return None
        return self.transitions[current][action]


class AssessmentError(Exception):
    """Assessment workflow failure."""


class SessionNotFoundError(AssessmentError):
    """The session does not exist or belongs to another user."""


class InvalidTransitionError(AssessmentError):
    """The session's status does not allow the requested action."""


class BaselineValidationError(AssessmentError):
    """A baseline submission is incomplete."""

    def __init__(self, validation: ValidationResult) -> None:
        self.validation = validation
        missing = [name for name, ok in validation.to_dict().items() if not ok]
        super().__init__(f"Incomplete baseline assessment: {', '.join(missing)}")


class AssessmentService:
    """
    Service for assessment sessions and baselines.

    Handles:
    - Session creation and lifecycle
    - Fusion outputs on completion
    - Baseline scoring from transcripts
    - Pseudonymous mirroring for users who consented to analytics
    """

    def __init__(self, backend: BackendService, privacy: PrivacyService | None = None) -> None:
        self._db = backend.database
        self._privacy = privacy
        self.workflow = SessionWorkflow()

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(self, user_id: str, request: SessionCreate) -> dict[str, Any]:
        """Start a session in the pending state."""
        now = datetime.now(UTC)
        rows = await self._db.insert(
            SESSIONS_TABLE,
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "session_type": request.session_type.value,
                "assessment_type": request.assessment_type.value,
                "category": request.category,
                "status": SessionStatus.PENDING.value,
                "mood_before": request.mood_before,
                "started_at": now,
            },
        )
        session = rows[0]
        logger.info(
            "session_created",
            session_id=session["id"],
            user_id=user_id,
            session_type=request.session_type.value,
        )
        return session

    async def get_session(self, user_id: str, session_id: str) -> dict[str, Any]:
        """
        Fetch one of the user's sessions.

        Raises:
            SessionNotFoundError: If missing or owned by someone else
        """
        session = await self._db.select_one(SESSIONS_TABLE, id=session_id, user_id=user_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    async def _transition(
        self,
        user_id: str,
        session_id: str,
        action: SessionAction,
        values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        session = await self.get_session(user_id, session_id)
        current = SessionStatus(session["status"])
        next_status = self.workflow.get_next_status(current, action)
        if next_status is None:
            raise InvalidTransitionError(
                f"Cannot {action.value} a session that is {current.value}"
            )

        update = {"status": next_status.value, **(values or {})}
        if next_status.is_terminal:
            update["completed_at"] = datetime.now(UTC)

        rows = await self._db.update(
            SESSIONS_TABLE,
            update,
            QueryOptions.where(id=session_id, user_id=user_id, status=current.value),
        )
        if not rows:
            raise InvalidTransitionError(
                f"Session {session_id} changed state before it could {action.value}"
            )
        logger.info(
            "session_transitioned",
            session_id=session_id,
            from_status=current.value,
            to_status=next_status.value,
        )
        return rows[0]

    async def update_session(
        self,
        user_id: str,
        session_id: str,
        request: SessionUpdate,
    ) -> dict[str, Any]:
        """
        Attach captured data to an open session.

        Raises:
            InvalidTransitionError: If the session is completed or failed
        """
        session = await self.get_session(user_id, session_id)
        if SessionStatus(session["status"]).is_terminal:
            raise InvalidTransitionError(f"Session is {session['status']}")

        values = request.model_dump(exclude_none=True)
        if not values:
            return session

        rows = await self._db.update(
            SESSIONS_TABLE,
            values,
            QueryOptions.where(id=session_id, user_id=user_id),
        )
        return rows[0]

    async def mark_processing(self, user_id: str, session_id: str) -> dict[str, Any]:
        return await self._transition(user_id, session_id, SessionAction.START)

    async def fail_session(self, user_id: str, session_id: str, error: str) -> dict[str, Any]:
        return await self._transition(
            user_id,
            session_id,
            SessionAction.FAIL,
            {"error_message": error},
        )

    async def complete_session(
        self,
        user_id: str,
        session_id: str,
        request: SessionComplete,
    ) -> dict[str, Any]:
        """
        Complete a session with its score.

        Returns:
            {"session": ..., "fusion_output": ...}
        """
        previous = await self._latest_score(user_id)
        values: dict[str, Any] = {}
        if request.mood_after is not None:
            values["mood_after"] = request.mood_after
        # Only the caller that wins the transition writes a score
        session = await self._transition(user_id, session_id, SessionAction.COMPLETE, values)
        fusion = await self._write_fusion_output(
            session_id=session_id,
            user_id=user_id,
            score=request.score,
            uncertainty=request.uncertainty,
            analysis=request.analysis,
        )

        await self._mirror(
            user_id,
            session,
            score=request.score,
            uncertainty=request.uncertainty,
            previous_score=previous,
        )
        return {"session": session, "fusion_output": fusion}

    async def get_user_sessions(
        self,
        user_id: str,
        status: SessionStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> QueryResult:
        """The user's sessions, newest first."""
        filters: dict[str, Any] = {"user_id": user_id}
        if status is not None:
            filters["status"] = status.value
        options = QueryOptions.where(**filters)
        options.order_by = [OrderBy(column="created_at", ascending=False)]
        options.limit = limit
        options.offset = offset
        return await self._db.select(SESSIONS_TABLE, options)

    # =========================================================================
    # Scores & baselines
    # =========================================================================

    async def _write_fusion_output(
        self,
        session_id: str,
        user_id: str,
        score: int,
        uncertainty: float,
        analysis: dict[str, Any],
        components: tuple[float, float, float] = (0.0, 0.0, 0.0),
    ) -> dict[str, Any]:
        phq2, gad2, mood = components
        rows = await self._db.insert(
            FUSION_TABLE,
            {
                "id": str(uuid.uuid4()),
                "session_id": session_id,
                "user_id": user_id,
                "score": score,
                "phq2_component": phq2,
                "gad2_component": gad2,
                "mood_component": mood,
                "uncertainty": uncertainty,
                "analysis": analysis,
            },
        )
        return rows[0]

    async def _latest_score(self, user_id: str) -> int | None:
        options = QueryOptions.where(user_id=user_id)
        options.order_by = [OrderBy(column="created_at", ascending=False)]
        options.limit = 1
        latest = (await self._db.select(FUSION_TABLE, options)).first()
        return int(latest["score"]) if latest else None

    async def _mirror(
        self,
        user_id: str,
        session: dict[str, Any],
        score: int,
        uncertainty: float,
        previous_score: int | None,
    ) -> None:
        if self._privacy is None or await self._privacy.get_user_pseudonym(user_id) is None:
            return

        def category(mood: Any) -> MoodCategory | None:
            return MoodCategory.from_scale(int(mood)) if mood is not None else None

        privacy_session = await self._privacy.create_privacy_assessment(
            user_id,
            PrivacyAssessmentCreate(
                session_type=session["session_type"],
                mood_before=category(session.get("mood_before")),
                mood_after=category(session.get("mood_after")),
            ),
            completion_status=session["status"],
        )
        await self._privacy.record_wellness_score(
            privacy_session["id"],
            score=score,
            uncertainty=uncertainty,
            previous_score=previous_score,
        )

    async def submit_baseline(self, user_id: str, submission: BaselineSubmission) -> dict[str, Any]:
        """
        Score a baseline transcript and establish the user's baseline.

        Requires a transcript with all four screening answers and a mood
        rating; when both timestamps are given the end must follow the start.

        Raises:
            BaselineValidationError: If the submission is incomplete
            SessionNotFoundError: If session_id is not one of the user's sessions
            InvalidTransitionError: If that session is already terminal
        """
        result = score_transcript(submission.transcript)
        validation = validate_assessment(
            submission.transcript,
            result.extracted,
            submission.started_at,
            submission.ended_at,
        )
        if not validation.is_valid:
            logger.warning("baseline_rejected", user_id=user_id, validation=validation.to_dict())
            raise BaselineValidationError(validation)

        if submission.session_id:
            session = await self.get_session(user_id, submission.session_id)
            if SessionStatus(session["status"]).is_terminal:
                raise InvalidTransitionError(f"Session is {session['status']}")
        else:
            session = await self.create_session(
                user_id,
                SessionCreate(session_type=SessionType.BASELINE),
            )

        clinical = result.clinical
        previous = await self._latest_score(user_id)
        session = await self._transition(
            user_id,
            session["id"],
            SessionAction.COMPLETE,
            {"mood_after": clinical.mood_scale, "text_data": {"responses": result.extracted.responses}},
        )
        fusion = await self._write_fusion_output(
            session_id=session["id"],
            user_id=user_id,
            score=result.composite.score,
            uncertainty=result.uncertainty,
            analysis={
                "phq2_total": clinical.phq2_total,
                "gad2_total": clinical.gad2_total,
                "mood_scale": clinical.mood_scale,
                "phq2_positive_screen": clinical.phq2_positive_screen,
                "gad2_positive_screen": clinical.gad2_positive_screen,
                "responses": result.extracted.responses,
                "validation": validation.to_dict(),
            },
            components=(
                result.composite.phq2_component,
                result.composite.gad2_component,
                result.composite.mood_component,
            ),
        )

        baselines = await self._db.upsert(
            BASELINES_TABLE,
            {
                "user_id": user_id,
                "session_id": session["id"],
                "baseline_score": result.composite.score,
                "phq2_total": clinical.phq2_total,
                "gad2_total": clinical.gad2_total,
                "mood_scale": clinical.mood_scale,
                "established_at": datetime.now(UTC),
            },
            on_conflict="user_id",
        )
        await self._db.update(
            PROFILES_TABLE,
            {"baseline_established": True},
            QueryOptions.where(user_id=user_id),
        )

        await self._mirror(
            user_id,
            session,
            score=result.composite.score,
            uncertainty=result.uncertainty,
            previous_score=previous,
        )

        logger.info(
            "baseline_established",
            user_id=user_id,
            session_id=session["id"],
            score=result.composite.score,
            uncertainty=result.uncertainty,
        )
        return {
            "session": session,
            "fusion_output": fusion,
            "baseline": baselines[0],
            "validation": validation.to_dict(),
        }

    async def get_baseline(self, user_id: str) -> dict[str, Any] | None:
        return await self._db.select_one(BASELINES_TABLE, user_id=user_id)

    async def get_history(self, user_id: str, limit: int = 50) -> QueryResult:
        """Fusion outputs for the user, newest first."""
        options = QueryOptions.where(user_id=user_id)
        options.order_by = [OrderBy(column="created_at", ascending=False)]
        options.limit = limit
        return await self._db.select(FUSION_TABLE, options)
