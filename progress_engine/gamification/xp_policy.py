"""XP awards and the leveling curve.

Everything here is pure: no database access, no clock. The progress store
calls into this module and persists whatever it returns.
"""

from enum import Enum
from typing import Any, Dict, Optional

from progress_engine.core.config import settings
from progress_engine.models.learning import CourseDifficulty


class EventKind(str, Enum):
    """Scored user activities."""
    ARTICLE_READ = "article_read"
    COMMENT_POSTED = "comment_posted"
    QUIZ_SUBMITTED = "quiz_submitted"
    COURSE_COMPLETED = "course_completed"


COURSE_BASE_XP = {
    CourseDifficulty.BEGINNER.value: 50,
    CourseDifficulty.INTERMEDIATE.value: 100,
    CourseDifficulty.ADVANCED.value: 200,
}

# (highest level of the tier, XP needed to advance one level within it)
LEVEL_TIERS = (
    (10, 100),     # Bronze
    (25, 200),     # Silver
    (50, 500),     # Gold
    (None, 1000),  # Diamond
)


def calculate_article_xp(word_count: Optional[int] = None) -> int:
    """XP for reading an article. Only the highest length tier applies."""
    if not word_count:
        return settings.XP_ARTICLE_BASE
    if word_count > settings.ARTICLE_VERY_LONG_WORDS:
        return settings.XP_ARTICLE_VERY_LONG
    if word_count > settings.ARTICLE_LONG_WORDS:
        return settings.XP_ARTICLE_LONG
    return settings.XP_ARTICLE_BASE


def calculate_course_xp(difficulty: Optional[str] = None, article_count: int = 1) -> int:
    """Base XP for the difficulty plus a per-article bonus."""
    if isinstance(difficulty, CourseDifficulty):
        difficulty = difficulty.value
    base = COURSE_BASE_XP.get(difficulty or "", COURSE_BASE_XP[CourseDifficulty.BEGINNER.value])
    article_bonus = int(max(article_count, 0) * settings.XP_PER_COURSE_ARTICLE)
    return base + article_bonus


def calculate_comment_xp() -> int:
    return settings.XP_COMMENT_POSTED


def cap_comment_xp(xp: int, earned_today: int, daily_cap: Optional[int] = None) -> int:
    """Clamp a comment award to what is left of today's allowance."""
    if daily_cap is None:
        daily_cap = settings.COMMENT_XP_DAILY_CAP
    return max(0, min(xp, daily_cap - earned_today))


def award_for(kind, params: Optional[Dict[str, Any]] = None) -> int:
    """Map an activity to its XP award (always >= 0)."""
    params = params or {}
    kind = EventKind(kind)

    if kind == EventKind.ARTICLE_READ:
        return calculate_article_xp(params.get("word_count"))
    if kind == EventKind.COMMENT_POSTED:
        return calculate_comment_xp()
    if kind == EventKind.QUIZ_SUBMITTED:
        # Only the first passing attempt on a quiz earns XP
        return settings.XP_QUIZ_PASSED if params.get("first_pass") else 0
    if kind == EventKind.COURSE_COMPLETED:
        return calculate_course_xp(params.get("difficulty"), params.get("article_count", 1))
    return 0


def xp_for_next_level(level: int) -> int:
    """XP needed to go from ``level`` to ``level + 1``."""
    for max_level, cost in LEVEL_TIERS:
        if max_level is None or level <= max_level:
            return cost
    return LEVEL_TIERS[-1][1]


def level_for_xp(total_xp: int) -> int:
    """Level reached with ``total_xp``. Monotonic non-decreasing, starts at 1."""
    if total_xp <= 0:
        return 1

    level = 1
    remaining = total_xp
    for max_level, cost in LEVEL_TIERS:
        if max_level is None:
            return level + remaining // cost
        span = (max_level - level + 1) * cost
        if remaining < span:
            return level + remaining // cost
        remaining -= span
        level = max_level + 1
    return level


def xp_threshold(level: int) -> int:
    """Minimum total XP at which ``level`` is reached."""
    total = 0
    current = 1
    for max_level, cost in LEVEL_TIERS:
        if level <= current:
            break
        top = level - 1 if max_level is None else min(max_level, level - 1)
        if top >= current:
            total += (top - current + 1) * cost
            current = top + 1
    return total


def xp_progress(total_xp: int) -> Dict[str, Any]:
    """Progress inside the current level, for progress bars."""
    level = level_for_xp(total_xp)
    xp_for_next = xp_for_next_level(level)
    current_level_xp = max(total_xp, 0) - xp_threshold(level)
    percentage = min(current_level_xp / xp_for_next * 100, 100)
    return {
        "level": level,
        "current_level_xp": current_level_xp,
        "xp_for_next": xp_for_next,
        "percentage": round(percentage, 2),
    }


def level_tier(level: int) -> str:
    if level <= 10:
        return "Bronze"
    if level <= 25:
        return "Silver"
    if level <= 50:
        return "Gold"
    return "Diamond"
