"""Badge definitions and unlock evaluation."""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union


class BadgeCategory(str, Enum):
    """Badge categories."""
    PROGRESS = "progress"
    STREAK = "streak"
    SOCIAL = "social"
    SPEED = "speed"
    SPECIAL = "special"


class BadgeRarity(str, Enum):
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


@dataclass(frozen=True)
class BadgeRequirement:
    type: str  # xp, level, courses, articles, comments, streak, special
    value: Union[int, str]
    operator: str = "gte"


@dataclass(frozen=True)
class BadgeDefinition:
    id: str
    name: str
    description: str
    icon: str
    rarity: BadgeRarity
    category: BadgeCategory
    requirement: BadgeRequirement
    hidden: bool = False

    @property
    def is_special(self) -> bool:
        return self.requirement.type == "special"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["rarity"] = self.rarity.value
        data["category"] = self.category.value
        return data


def _badge(id, name, description, icon, rarity, category, req_type, value, operator="gte", hidden=False):
    return BadgeDefinition(
        id=id,
        name=name,
        description=description,
        icon=icon,
        rarity=BadgeRarity(rarity),
        category=BadgeCategory(category),
        requirement=BadgeRequirement(type=req_type, value=value, operator=operator),
        hidden=hidden,
    )


BADGES: Sequence[BadgeDefinition] = (
    # Courses
    _badge("first-steps", "First Steps", "Complete your first course", "GraduationCap", "common", "progress", "courses", 1),
    _badge("learner", "Dedicated Learner", "Complete 5 courses", "BookOpen", "common", "progress", "courses", 5),
    _badge("scholar", "Scholar", "Complete 10 courses", "Target", "rare", "progress", "courses", 10),
    _badge("expert", "Expert", "Complete 25 courses", "Trophy", "epic", "progress", "courses", 25),
    _badge("master", "Master", "Complete 50 courses", "Crown", "legendary", "progress", "courses", 50),
    # Levels
    _badge("bronze-tier", "Bronze Tier", "Reach level 10", "Medal", "common", "progress", "level", 10),
    _badge("silver-tier", "Silver Tier", "Reach level 25", "Medal", "rare", "progress", "level", 25),
    _badge("gold-tier", "Gold Tier", "Reach level 50", "Medal", "epic", "progress", "level", 50),
    _badge("diamond-tier", "Diamond Tier", "Reach level 75", "Gem", "legendary", "progress", "level", 75),
    # Streaks
    _badge("week-warrior", "Week Warrior", "Maintain a 7-day learning streak", "Flame", "common", "streak", "streak", 7),
    _badge("month-master", "Month Master", "Maintain a 30-day learning streak", "Zap", "rare", "streak", "streak", 30),
    _badge("unstoppable", "Unstoppable", "Maintain a 100-day learning streak", "Rocket", "epic", "streak", "streak", 100),
    # Comments
    _badge("first-comment", "Voice Heard", "Post your first comment", "MessageCircle", "common", "social", "comments", 1),
    _badge("conversationalist", "Conversationalist", "Post 50 comments", "MessageSquare", "rare", "social", "comments", 50),
    _badge("community-hero", "Community Hero", "Post 200 comments", "Users", "epic", "social", "comments", 200),
    # Reading
    _badge("bookworm", "Bookworm", "Read 20 articles", "Book", "common", "progress", "articles", 20),
    _badge("knowledge-seeker", "Knowledge Seeker", "Read 100 articles", "Search", "rare", "progress", "articles", 100),
    # Awarded by hand
    _badge("speed-learner", "Speed Learner", "Complete a course in one day", "Timer", "rare", "speed", "special", "speed_learner"),
    _badge("early-adopter", "Early Adopter", "One of the first 100 users", "Sprout", "legendary", "special", "special", "early_adopter"),
    _badge("beta-tester", "Beta Tester", "Participated in the beta program", "FlaskConical", "epic", "special", "special", "beta_tester"),
    _badge("night-owl", "Night Owl", "Complete 10 courses between midnight and 4 AM", "Moon", "rare", "special", "special", "night_owl", hidden=True),
    _badge("perfectionist", "Perfectionist", "Complete 5 courses with 100% accuracy", "Sparkles", "epic", "special", "special", "perfectionist", hidden=True),
)

# requirement type -> snapshot attribute
REQUIREMENT_FIELDS = {
    "xp": "total_xp",
    "level": "current_level",
    "courses": "courses_completed",
    "articles": "articles_read",
    "comments": "comments_posted",
    "streak": "current_streak",
}


def get_badge(badge_id: str, badge_table: Sequence[BadgeDefinition] = BADGES) -> Optional[BadgeDefinition]:
    for badge in badge_table:
        if badge.id == badge_id:
            return badge
    return None


def visible_badges(badge_table: Sequence[BadgeDefinition] = BADGES) -> List[BadgeDefinition]:
    return [badge for badge in badge_table if not badge.hidden]


def _current_value(requirement: BadgeRequirement, snapshot) -> Optional[int]:
    field = REQUIREMENT_FIELDS.get(requirement.type)
    if field is None:
        return None
    return getattr(snapshot, field, 0) or 0


def is_unlocked(badge: BadgeDefinition, snapshot) -> bool:
    """Whether the badge requirement holds for ``snapshot``."""
    current = _current_value(badge.requirement, snapshot)
    if current is None:
        # special badges are never unlocked automatically
        return False

    target = badge.requirement.value if isinstance(badge.requirement.value, int) else 0
    operator = badge.requirement.operator
    if operator == "gte":
        return current >= target
    if operator == "eq":
        return current == target
    if operator == "lte":
        return current <= target
    return False


def evaluate(snapshot, badge_table: Sequence[BadgeDefinition] = BADGES, earned: Optional[Iterable[str]] = None) -> List[str]:
    """Ids of badges the snapshot unlocks that are not earned yet.

    ``earned`` defaults to ``snapshot.badges``. Result follows table order.
    """
    if earned is None:
        earned = getattr(snapshot, "badges", None) or []
    earned = set(earned)
    return [
        badge.id
        for badge in badge_table
        if badge.id not in earned and is_unlocked(badge, snapshot)
    ]


def badge_progress(badge: BadgeDefinition, snapshot) -> float:
    """Percentage towards a badge, 0-100."""
    current = _current_value(badge.requirement, snapshot)
    target = badge.requirement.value
    if current is None or not isinstance(target, int) or target <= 0:
        return 0.0
    return round(min(current / target * 100, 100.0), 2)


def summarize(snapshot, badge_table: Sequence[BadgeDefinition] = BADGES) -> Dict[str, Any]:
    """Earned badges, visible locked badges and progress towards the latter."""
    earned_ids = list(getattr(snapshot, "badges", None) or [])
    earned, locked, progress = [], [], {}

    for badge in badge_table:
        if badge.id in earned_ids:
            earned.append(badge)
        elif not badge.hidden:
            locked.append(badge)
            progress[badge.id] = badge_progress(badge, snapshot)

    earned.sort(key=lambda b: earned_ids.index(b.id))
    return {"earned": earned, "locked": locked, "progress": progress}
