"""
Assessments Routes
==================

API endpoints for assessment sessions, baselines and score history.

Version: 0.1.0
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from services.app_api.dependencies import get_assessment_service
from services.app_api.services import (
    AssessmentService,
    BaselineValidationError,
    InvalidTransitionError,
    SessionNotFoundError,
)
from shared.auth import User, get_current_active_user
from shared.logging import get_logger
from shared.models.wellness import (
    BaselineSubmission,
    SessionComplete,
    SessionCreate,
    SessionFail,
    SessionStatus,
    SessionUpdate,
)


logger = get_logger(__name__)

router = APIRouter()

CurrentUser = Annotated[User, Depends(get_current_active_user)]
Assessments = Annotated[AssessmentService, Depends(get_assessment_service)]


def _not_found(e: SessionNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _conflict(e: InvalidTransitionError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_session(
    request: SessionCreate,
    current_user: CurrentUser,
    assessments: Assessments,
) -> dict[str, Any]:
    """Start an assessment session."""
    return await assessments.create_session(current_user.id, request)


@router.get("")
async def list_sessions(
    current_user: CurrentUser,
    assessments: Assessments,
    session_status: SessionStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    """The caller's sessions, newest first."""
    result = await assessments.get_user_sessions(
        current_user.id,
        status=session_status,
        limit=limit,
        offset=offset,
    )
    return {"sessions": result.data, "count": result.count, "limit": limit, "offset": offset}


@router.get("/history")
async def score_history(
    current_user: CurrentUser,
    assessments: Assessments,
    limit: int = Query(default=50, ge=1, le=200),
) -> dict[str, Any]:
    """Wellness scores from completed sessions, newest first."""
    result = await assessments.get_history(current_user.id, limit=limit)
    return {"scores": result.data, "count": result.count}


@router.get("/baseline")
async def get_baseline(current_user: CurrentUser, assessments: Assessments) -> dict[str, Any]:
    baseline = await assessments.get_baseline(current_user.id)
    if baseline is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Baseline not established",
        )
    return baseline


@router.post("/baseline", status_code=status.HTTP_201_CREATED)
async def submit_baseline(
    request: BaselineSubmission,
    current_user: CurrentUser,
    assessments: Assessments,
) -> dict[str, Any]:
    """
    Score a baseline conversation transcript.

    Returns the completed session, its fusion output, the stored baseline
    and the validation report.
    """
    try:
        return await assessments.submit_baseline(current_user.id, request)
    except BaselineValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "validation": e.validation.to_dict()},
        ) from e
    except SessionNotFoundError as e:
        raise _not_found(e) from e
    except InvalidTransitionError as e:
        raise _conflict(e) from e


@router.get("/{session_id}")
async def get_session(
    session_id: str,
    current_user: CurrentUser,
    assessments: Assessments,
) -> dict[str, Any]:
    try:
        return await assessments.get_session(current_user.id, session_id)
    except SessionNotFoundError as e:
        raise _not_found(e) from e


@router.patch("/{session_id}")
async def update_session(
    session_id: str,
    request: SessionUpdate,
    current_user: CurrentUser,
    assessments: Assessments,
) -> dict[str, Any]:
    """Attach captured data to an open session."""
    try:
        return await assessments.update_session(current_user.id, session_id, request)
    except SessionNotFoundError as e:
        raise _not_found(e) from e
    except InvalidTransitionError as e:
        raise _conflict(e) from e


@router.post("/{session_id}/processing")
async def mark_processing(
    session_id: str,
    current_user: CurrentUser,
    assessments: Assessments,
) -> dict[str, Any]:
    try:
        return await assessments.mark_processing(current_user.id, session_id)
    except SessionNotFoundError as e:
        raise _not_found(e) from e
    except InvalidTransitionError as e:
        raise _conflict(e) from e


@router.post("/{session_id}/complete")
async def complete_session(
    session_id: str,
    request: SessionComplete,
    current_user: CurrentUser,
    assessments: Assessments,
) -> dict[str, Any]:
    """Complete a session with its wellness score."""
    try:
        return await assessments.complete_session(current_user.id, session_id, request)
    except SessionNotFoundError as e:
        raise _not_found(e) from e
    except InvalidTransitionError as e:
        raise _conflict(e) from e


@router.post("/{session_id}/fail")
async def fail_session(
    session_id: str,
    request: SessionFail,
    current_user: CurrentUser,
    assessments: Assessments,
) -> dict[str, Any]:
    try:
        return await assessments.fail_session(current_user.id, session_id, request.error)
    except SessionNotFoundError as e:
        raise _not_found(e) from e
    except InvalidTransitionError as e:
        raise _conflict(e) from e
