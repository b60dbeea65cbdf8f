"""Data models for the Progress Engine."""

from progress_engine.models.progress import UserProgress, XPTransaction
from progress_engine.models.learning import (
    ArticleView,
    Comment,
    Course,
    CourseDifficulty,
    Enrollment,
    Quiz,
    QuizAttempt,
    User,
    UserRole,
)

__all__ = [
    "UserProgress",
    "XPTransaction",
    "ArticleView",
    "Comment",
    "Course",
    "CourseDifficulty",
    "Enrollment",
    "Quiz",
    "QuizAttempt",
    "User",
    "UserRole",
]
