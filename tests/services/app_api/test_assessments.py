"""
Assessment Tests
================

Tests for the assessment session workflow, baselines and their routes.

Version: 0.1.0
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from services.app_api.services import (
    AssessmentService,
    BaselineValidationError,
    InvalidTransitionError,
    SessionNotFoundError,
)
from services.app_api.services.assessment import SessionAction, SessionWorkflow
from shared.models.privacy import ConsentRecord, DataProcessingPurposes, PrivacyUserCreate
from shared.models.wellness import (
    BaselineSubmission,
    SessionComplete,
    SessionCreate,
    SessionStatus,
    SessionType,
    SessionUpdate,
)
from shared.privacy import PrivacyService


@pytest.fixture
def privacy(backend) -> PrivacyService:
    return PrivacyService(backend)


@pytest.fixture
def assessments(backend, privacy) -> AssessmentService:
    return AssessmentService(backend, privacy=privacy)


async def analytics_user(privacy: PrivacyService) -> str:
    result = await privacy.create_user(
        PrivacyUserCreate(
            email="sam@uni.ac.uk",
            password="Wellbeing1",
            consent=ConsentRecord(data_processing_purposes=DataProcessingPurposes(anonymous_analytics=True)),
        )
    )
    return result.user_id


class TestSessionWorkflow:
    """Tests for SessionWorkflow."""

    def test_transitions(self):
        workflow = SessionWorkflow()
        assert workflow.get_next_status(SessionStatus.PENDING, SessionAction.START) == SessionStatus.PROCESSING
        assert workflow.get_next_status(SessionStatus.PROCESSING, SessionAction.COMPLETE) == SessionStatus.COMPLETED
        assert workflow.get_next_status(SessionStatus.PROCESSING, SessionAction.START) is None

    @pytest.mark.parametrize("terminal", [SessionStatus.COMPLETED, SessionStatus.FAILED])
    def test_terminal_statuses(self, terminal):
        workflow = SessionWorkflow()
        assert terminal.is_terminal
        for action in SessionAction:
            assert not workflow.can_transition(terminal, action)


class TestAssessmentService:
    """Tests for AssessmentService."""

    async def test_session_lifecycle(self, assessments, database):
        session = await assessments.create_session("u1", SessionCreate(mood_before=6))
        assert session["status"] == "pending"

        await assessments.update_session("u1", session["id"], SessionUpdate(reflection_notes="ok"))
        await assessments.mark_processing("u1", session["id"])
        result = await assessments.complete_session(
            "u1",
            session["id"],
            SessionComplete(score=72, mood_after=7, uncertainty=0.2),
        )

        assert result["session"]["status"] == "completed"
        assert result["session"]["completed_at"] is not None
        assert result["session"]["reflection_notes"] == "ok"
        assert result["fusion_output"]["score"] == 72
        assert (await database.select_one("fusion_outputs", session_id=session["id"]))["uncertainty"] == 0.2

    async def test_completed_session_is_terminal(self, assessments):
        session = await assessments.create_session("u1", SessionCreate())
        await assessments.complete_session("u1", session["id"], SessionComplete(score=50))

        with pytest.raises(InvalidTransitionError):
            await assessments.complete_session("u1", session["id"], SessionComplete(score=60))
        with pytest.raises(InvalidTransitionError):
            await assessments.update_session("u1", session["id"], SessionUpdate(mood_after=5))
        with pytest.raises(InvalidTransitionError):
            await assessments.fail_session("u1", session["id"], "late failure")

    async def test_concurrent_completions_write_one_score(self, assessments, database, monkeypatch):
        session = await assessments.create_session("u1", SessionCreate())
        both_read = asyncio.Barrier(2)
        read_session = assessments.get_session

        async def get_session_then_wait(user_id, session_id):
            found = await read_session(user_id, session_id)
            await both_read.wait()
            return found

        monkeypatch.setattr(assessments, "get_session", get_session_then_wait)

        results = await asyncio.gather(
            assessments.complete_session("u1", session["id"], SessionComplete(score=50)),
            assessments.complete_session("u1", session["id"], SessionComplete(score=60)),
            return_exceptions=True,
        )

        assert sum(isinstance(r, InvalidTransitionError) for r in results) == 1
        assert (await database.select("fusion_outputs")).count == 1

    async def test_fail_session(self, assessments):
        session = await assessments.create_session("u1", SessionCreate())
        failed = await assessments.fail_session("u1", session["id"], "microphone unavailable")
        assert failed["status"] == "failed"
        assert failed["error_message"] == "microphone unavailable"

    async def test_other_users_session_not_found(self, assessments):
        session = await assessments.create_session("u1", SessionCreate())
        with pytest.raises(SessionNotFoundError):
            await assessments.get_session("u2", session["id"])

    async def test_list_sessions_filters_status(self, assessments):
        first = await assessments.create_session("u1", SessionCreate())
        await assessments.create_session("u1", SessionCreate())
        await assessments.fail_session("u1", first["id"], "error")

        result = await assessments.get_user_sessions("u1", status=SessionStatus.PENDING)
        assert result.count == 1

    async def test_submit_baseline(self, assessments, privacy, database, baseline_transcript):
        user_id = await analytics_user(privacy)
        started = datetime.now(UTC) - timedelta(minutes=5)

        result = await assessments.submit_baseline(
            user_id,
            BaselineSubmission(transcript=baseline_transcript, started_at=started, ended_at=datetime.now(UTC)),
        )

        assert result["session"]["status"] == "completed"
        assert result["session"]["session_type"] == SessionType.BASELINE.value
        assert result["fusion_output"]["score"] == 60
        assert result["fusion_output"]["analysis"]["gad2_positive_screen"] is True
        assert result["baseline"]["baseline_score"] == 60
        assert result["validation"]["is_valid"] is True
        assert (await database.select_one("profiles", user_id=user_id))["baseline_established"] is True

        # Mirrored into the analytics domain without the user id
        mirrored = (await privacy.get_user_wellness_data(user_id)).sessions
        assert len(mirrored) == 1
        assert mirrored[0]["session_type"] == "baseline"
        assert "user_id" not in mirrored[0]

    async def test_baseline_without_timestamps(self, assessments, baseline_transcript):
        result = await assessments.submit_baseline("u1", BaselineSubmission(transcript=baseline_transcript))
        assert result["baseline"]["mood_scale"] == 7
        assert result["validation"]["is_valid"] is True
        assert result["validation"]["duration_required"] is False
        assert result["fusion_output"]["analysis"]["validation"]["is_valid"] is True

    async def test_baseline_replaces_previous(self, assessments, database, baseline_transcript):
        await assessments.submit_baseline("u1", BaselineSubmission(transcript=baseline_transcript))
        await assessments.submit_baseline("u1", BaselineSubmission(transcript=baseline_transcript))
        assert (await database.select("user_baselines")).count == 1

    async def test_incomplete_baseline_rejected(self, assessments):
        with pytest.raises(BaselineValidationError) as exc:
            await assessments.submit_baseline(
                "u1",
                BaselineSubmission(transcript="agent: ready?\nuser: yes\nuser: not at all"),
            )
        assert exc.value.validation.has_all_questions is False
        assert exc.value.validation.has_mood is False

    async def test_baseline_end_before_start_rejected(self, assessments, baseline_transcript):
        now = datetime.now(UTC)
        with pytest.raises(BaselineValidationError):
            await assessments.submit_baseline(
                "u1",
                BaselineSubmission(transcript=baseline_transcript, started_at=now, ended_at=now - timedelta(minutes=1)),
            )

    async def test_baseline_completes_existing_session(self, assessments, baseline_transcript):
        session = await assessments.create_session("u1", SessionCreate(session_type=SessionType.BASELINE))
        result = await assessments.submit_baseline(
            "u1",
            BaselineSubmission(transcript=baseline_transcript, session_id=session["id"]),
        )
        assert result["session"]["id"] == session["id"]

        with pytest.raises(InvalidTransitionError):
            await assessments.submit_baseline(
                "u1",
                BaselineSubmission(transcript=baseline_transcript, session_id=session["id"]),
            )


class TestAssessmentRoutes:
    """Tests for the /api/assessments endpoints."""

    async def test_requires_auth(self, app_api_client):
        response = await app_api_client.get("/api/assessments")
        assert response.status_code == 401

    async def test_create_and_complete(self, app_api_client, auth_headers):
        created = await app_api_client.post(
            "/api/assessments",
            json={"session_type": "checkin", "mood_before": 5},
            headers=auth_headers,
        )
        assert created.status_code == 201
        session_id = created.json()["id"]

        completed = await app_api_client.post(
            f"/api/assessments/{session_id}/complete",
            json={"score": 64},
            headers=auth_headers,
        )
        assert completed.status_code == 200
        assert completed.json()["session"]["status"] == "completed"

        again = await app_api_client.post(
            f"/api/assessments/{session_id}/complete",
            json={"score": 64},
            headers=auth_headers,
        )
        assert again.status_code == 409

        history = await app_api_client.get("/api/assessments/history", headers=auth_headers)
        assert history.json()["count"] == 1

    async def test_unknown_session(self, app_api_client, auth_headers):
        response = await app_api_client.get("/api/assessments/missing", headers=auth_headers)
        assert response.status_code == 404

    async def test_baseline_routes(self, app_api_client, auth_headers, baseline_transcript):
        missing = await app_api_client.get("/api/assessments/baseline", headers=auth_headers)
        assert missing.status_code == 404

        submitted = await app_api_client.post(
            "/api/assessments/baseline",
            json={"transcript": baseline_transcript},
            headers=auth_headers,
        )
        assert submitted.status_code == 201

        baseline = await app_api_client.get("/api/assessments/baseline", headers=auth_headers)
        assert baseline.json()["baseline_score"] == 60

    async def test_incomplete_baseline_route(self, app_api_client, auth_headers):
        response = await app_api_client.post(
            "/api/assessments/baseline",
            json={"transcript": "user: yes"},
            headers=auth_headers,
        )
        assert response.status_code == 422
        assert response.json()["error"]["validation"]["has_mood"] is False
