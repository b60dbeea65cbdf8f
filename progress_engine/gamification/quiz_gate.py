"""Quiz requirements for course completion."""

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from progress_engine.models.learning import Course, Enrollment, Quiz, QuizAttempt

logger = structlog.get_logger()


def completed_article_count(enrollment: Enrollment, course: Course) -> int:
    """Distinct completed articles that still belong to the course."""
    course_articles = set(course.articles or [])
    return len(set(enrollment.completed_articles or []) & course_articles)


def articles_complete(enrollment: Enrollment, course: Course) -> bool:
    total = len(set(course.articles or []))
    return total > 0 and completed_article_count(enrollment, course) == total


class QuizGate:
    """Decides whether a user's quiz results allow a course to count as done.

    Only published quizzes are considered, and for each one only the user's
    best attempt matters: highest score, the earliest submission on a tie.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def published_quizzes(self, course_id: str) -> List[Quiz]:
        result = await self.db.execute(
            select(Quiz)
            .where(Quiz.course_id == course_id, Quiz.published.is_(True))
            .order_by(Quiz.id)
        )
        return list(result.scalars().all())

    async def best_attempt(self, user_id: str, quiz_id: str) -> Optional[QuizAttempt]:
        result = await self.db.execute(
            select(QuizAttempt)
            .where(QuizAttempt.user_id == user_id, QuizAttempt.quiz_id == quiz_id)
            .order_by(QuizAttempt.score.desc(), QuizAttempt.completed_at.asc(), QuizAttempt.id.asc())
            .limit(1)
        )
        return result.scalars().first()

    async def is_course_quiz_requirement_met(self, user_id: str, course_id: str) -> bool:
        for quiz in await self.published_quizzes(course_id):
            attempt = await self.best_attempt(user_id, quiz.id)
            if attempt is None or not attempt.passed:
                return False
        return True

    async def course_quiz_status(self, user_id: str, course_id: str) -> Dict[str, Any]:
        """Per-quiz best attempts and a pass summary for one course."""
        quizzes = []
        for quiz in await self.published_quizzes(course_id):
            attempt = await self.best_attempt(user_id, quiz.id)
            quizzes.append({
                "quiz_id": quiz.id,
                "title": quiz.title,
                "passing_score": quiz.passing_score,
                "attempt": {
                    "score": attempt.score,
                    "passed": attempt.passed,
                    "completed_at": attempt.completed_at,
                } if attempt else None,
            })

        total = len(quizzes)
        passed = sum(1 for q in quizzes if q["attempt"] and q["attempt"]["passed"])
        percentage = round(passed / total * 100) if total else 100

        return {
            "quizzes": quizzes,
            "total": total,
            "passed": passed,
            "percentage": percentage,
            "all_passed": passed == total,
        }
