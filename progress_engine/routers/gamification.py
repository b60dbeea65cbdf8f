"""Badges, rankings and quiz gate status."""

from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from progress_engine.core.database import get_db
from progress_engine.core.dependencies import (
    ensure_self_or_admin,
    get_current_user,
    get_progress_store,
    require_admin,
)
from progress_engine.core.errors import NotFound
from progress_engine.gamification import badges as badge_rules
from progress_engine.gamification.progress_store import ProgressStore, with_store_timeout
from progress_engine.gamification.quiz_gate import QuizGate
from progress_engine.models.learning import Course
from progress_engine.schemas.gamification import (
    BadgeResponse,
    GlobalStatsResponse,
    LeaderboardEntry,
    QuizStatusResponse,
    RankResponse,
    SpecialBadgeRequest,
    SpecialBadgeResponse,
    UserBadgesResponse,
)
from progress_engine.schemas.progress import ProgressResponse

logger = structlog.get_logger()
router = APIRouter(prefix="/gamification", tags=["gamification"])


@router.get("/badges", response_model=List[BadgeResponse])
async def get_all_badges(store: ProgressStore = Depends(get_progress_store)):
    """Get all visible badge definitions."""
    return [BadgeResponse.from_definition(b) for b in badge_rules.visible_badges(store.badge_table)]


@router.get("/badges/{user_id}", response_model=UserBadgesResponse)
async def get_user_badges(
    user_id: str,
    current_user: dict = Depends(get_current_user),
    store: ProgressStore = Depends(get_progress_store)
):
    """Earned badges, locked badges and progress towards them."""
    ensure_self_or_admin(current_user, user_id)
    progress = await store.get_progress(user_id)
    summary = badge_rules.summarize(progress, store.badge_table)
    return UserBadgesResponse(
        user_id=user_id,
        earned=[BadgeResponse.from_definition(b) for b in summary["earned"]],
        locked=[BadgeResponse.from_definition(b) for b in summary["locked"]],
        progress=summary["progress"],
    )


@router.post("/badges/{user_id}/special", response_model=SpecialBadgeResponse)
async def award_special_badge(
    user_id: str,
    request: SpecialBadgeRequest,
    current_user: dict = Depends(require_admin),
    store: ProgressStore = Depends(get_progress_store)
):
    """Grant a special (manually awarded) badge."""
    result = await store.award_special_badge(user_id, request.badge_id)
    logger.info("Special badge requested", admin=current_user["sub"], user_id=user_id, badge_id=request.badge_id)
    return SpecialBadgeResponse(
        awarded=not result.duplicate,
        badge_id=request.badge_id,
        progress=ProgressResponse.from_model(result.progress),
    )


@router.get("/leaderboard", response_model=List[LeaderboardEntry])
async def get_leaderboard(
    limit: int = Query(50, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    store: ProgressStore = Depends(get_progress_store)
):
    """Get XP leaderboard."""
    return await store.leaderboard(limit)


@router.get("/rank/{user_id}", response_model=RankResponse)
async def get_user_rank(
    user_id: str,
    current_user: dict = Depends(get_current_user),
    store: ProgressStore = Depends(get_progress_store)
):
    """Get a user's position on the leaderboard."""
    progress = await store.get_progress(user_id)
    rank = await store.rank(user_id)
    return RankResponse(user_id=user_id, rank=rank, total_xp=progress.total_xp)


@router.get("/stats", response_model=GlobalStatsResponse)
async def get_global_stats(store: ProgressStore = Depends(get_progress_store)):
    """Get platform-wide gamification totals."""
    return await store.global_stats()


@router.get("/courses/{course_id}/quiz-status", response_model=QuizStatusResponse)
async def get_course_quiz_status(
    course_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Best attempt per published quiz of a course for the current user."""

    async def load_status():
        if await db.get(Course, course_id) is None:
            raise NotFound("Course not found", course_id=course_id)
        return await QuizGate(db).course_quiz_status(current_user["sub"], course_id)

    status = await with_store_timeout(load_status())
    return QuizStatusResponse(course_id=course_id, **status)
