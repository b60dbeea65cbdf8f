"""Request and response schemas for progress, events and sync."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from progress_engine.gamification import xp_policy
from progress_engine.gamification.xp_policy import EventKind
from progress_engine.models.progress import UserProgress, ensure_utc


class CamelModel(BaseModel):
    """Serialized with camelCase keys, accepts either form on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StatsSchema(CamelModel):
    courses_completed: int = 0
    articles_read: int = 0
    comments_posted: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    last_activity_date: Optional[datetime] = None


class LevelProgressSchema(CamelModel):
    level: int
    current_level_xp: int = Field(alias="currentLevelXP")
    xp_for_next: int
    percentage: float


class MilestonesSchema(CamelModel):
    first_course_at: Optional[datetime] = None
    level_10_at: Optional[datetime] = Field(default=None, alias="level10At")
    level_25_at: Optional[datetime] = Field(default=None, alias="level25At")
    level_50_at: Optional[datetime] = Field(default=None, alias="level50At")


class ProgressResponse(CamelModel):
    user_id: str
    total_xp: int = Field(alias="totalXP")
    current_level: int
    badges: List[str]
    stats: StatsSchema
    level_progress: LevelProgressSchema
    tier: str
    milestones: MilestonesSchema
    last_reconciled_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, progress: UserProgress) -> "ProgressResponse":
        return cls(
            user_id=progress.user_id,
            total_xp=progress.total_xp,
            current_level=progress.current_level,
            badges=list(progress.badges or []),
            stats=StatsSchema(
                courses_completed=progress.courses_completed,
                articles_read=progress.articles_read,
                comments_posted=progress.comments_posted,
                current_streak=progress.current_streak,
                longest_streak=progress.longest_streak,
                last_activity_date=ensure_utc(progress.last_activity_date),
            ),
            level_progress=LevelProgressSchema(**xp_policy.xp_progress(progress.total_xp)),
            tier=xp_policy.level_tier(progress.current_level),
            milestones=MilestonesSchema(
                first_course_at=ensure_utc(progress.first_course_at),
                level_10_at=ensure_utc(progress.level_10_at),
                level_25_at=ensure_utc(progress.level_25_at),
                level_50_at=ensure_utc(progress.level_50_at),
            ),
            last_reconciled_at=ensure_utc(progress.last_reconciled_at),
            updated_at=ensure_utc(progress.updated_at),
        )


class ActivityEventRequest(CamelModel):
    kind: EventKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    event_id: Optional[str] = Field(default=None, max_length=128)
    occurred_at: Optional[datetime] = None  # admins only
    # admins may score on behalf of another user
    user_id: Optional[str] = None


class EventResponse(CamelModel):
    success: bool = True
    xp_gained: int = Field(alias="xpGained")
    leveled_up: bool
    levels_gained: int
    new_level: int
    new_badges: List[str]
    duplicate: bool = False
    progress: ProgressResponse


class ReconcileStats(CamelModel):
    courses_completed: int
    articles_read: int
    comments_posted: int


class ReconcileResponse(CamelModel):
    success: bool = True
    user_id: str
    synced_stats: ReconcileStats


class ReconcileAllResponse(CamelModel):
    success: bool
    processed: int
    failed: int
    failures: List[Dict[str, str]] = Field(default_factory=list)
