"""Badge, leaderboard and quiz status schemas."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import Field

from progress_engine.gamification.badges import BadgeDefinition
from progress_engine.schemas.progress import CamelModel, ProgressResponse


class BadgeResponse(CamelModel):
    id: str
    name: str
    description: str
    icon: str
    rarity: str
    category: str
    hidden: bool = False

    @classmethod
    def from_definition(cls, badge: BadgeDefinition) -> "BadgeResponse":
        return cls(
            id=badge.id,
            name=badge.name,
            description=badge.description,
            icon=badge.icon,
            rarity=badge.rarity.value,
            category=badge.category.value,
            hidden=badge.hidden,
        )


class UserBadgesResponse(CamelModel):
    user_id: str
    earned: List[BadgeResponse]
    locked: List[BadgeResponse]
    progress: Dict[str, float]


class SpecialBadgeRequest(CamelModel):
    badge_id: str


class SpecialBadgeResponse(CamelModel):
    awarded: bool
    badge_id: str
    progress: ProgressResponse


class LeaderboardEntry(CamelModel):
    rank: int
    user_id: str
    name: Optional[str] = None
    total_xp: int = Field(alias="totalXP")
    level: int
    badges: int


class RankResponse(CamelModel):
    user_id: str
    rank: int
    total_xp: int = Field(alias="totalXP")


class GlobalStatsResponse(CamelModel):
    total_users: int
    total_xp: int = Field(alias="totalXP")
    average_level: int


class AttemptSummary(CamelModel):
    score: float
    passed: bool
    completed_at: datetime


class QuizStatusEntry(CamelModel):
    quiz_id: str
    title: str
    passing_score: float
    attempt: Optional[AttemptSummary] = None


class QuizStatusResponse(CamelModel):
    course_id: str
    quizzes: List[QuizStatusEntry]
    total: int
    passed: int
    percentage: int
    all_passed: bool
