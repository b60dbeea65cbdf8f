"""Progress snapshot and activity event endpoints."""

from fastapi import APIRouter, Depends, HTTPException
import structlog

from progress_engine.core.dependencies import (
    ensure_self_or_admin,
    get_current_user,
    get_progress_store,
    is_admin,
)
from progress_engine.gamification.progress_store import ActivityEvent, ProgressStore
from progress_engine.schemas.progress import ActivityEventRequest, EventResponse, ProgressResponse

logger = structlog.get_logger()
router = APIRouter(prefix="/progress", tags=["progress"])


@router.get("/me", response_model=ProgressResponse)
async def get_my_progress(
    current_user: dict = Depends(get_current_user),
    store: ProgressStore = Depends(get_progress_store)
):
    """Get progress for the authenticated user."""
    progress = await store.get_progress(current_user["sub"])
    return ProgressResponse.from_model(progress)


@router.get("/{user_id}", response_model=ProgressResponse)
async def get_user_progress(
    user_id: str,
    current_user: dict = Depends(get_current_user),
    store: ProgressStore = Depends(get_progress_store)
):
    """Get progress for a user, creating the zero state on first access."""
    ensure_self_or_admin(current_user, user_id)
    progress = await store.get_progress(user_id)
    return ProgressResponse.from_model(progress)


@router.post("/events", response_model=EventResponse)
async def apply_event(
    request: ActivityEventRequest,
    current_user: dict = Depends(get_current_user),
    store: ProgressStore = Depends(get_progress_store)
):
    """Score an activity (article read, comment, quiz, course completion)."""
    user_id = request.user_id or current_user["sub"]
    ensure_self_or_admin(current_user, user_id)
    if request.occurred_at is not None and not is_admin(current_user):
        raise HTTPException(status_code=403, detail="Only admins may backdate events")

    result = await store.apply_event(
        user_id,
        ActivityEvent(
            kind=request.kind,
            payload=request.payload,
            event_id=request.event_id,
            occurred_at=request.occurred_at,
        ),
    )

    return EventResponse(
        xp_gained=result.xp_awarded,
        leveled_up=result.leveled_up,
        levels_gained=result.levels_gained,
        new_level=result.progress.current_level,
        new_badges=result.new_badges,
        duplicate=result.duplicate,
        progress=ProgressResponse.from_model(result.progress),
    )
