"""Reconciliation of progress counters against source records.

Counters kept on the progress row (courses completed, articles read, comments
posted) are incremented by live events and can drift: events get lost,
comments get deleted, quizzes get re-taken. A reconciliation pass recounts
them from the tables that own the facts and overwrites the stored values.

XP, level, streak and badges are never touched here. They are the
accumulated result of scored events and cannot be recomputed from counts
without crediting the same activity twice.
"""

import asyncio
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional

from sqlalchemy import distinct, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from progress_engine.core.config import settings
from progress_engine.core.errors import ProgressEngineError
from progress_engine.core.locks import UserLockRegistry
from progress_engine.core.metrics import RECONCILIATIONS
from progress_engine.gamification.progress_store import (
    get_or_create_progress,
    load_user,
    validate_user_id,
    with_store_timeout,
)
from progress_engine.gamification.quiz_gate import QuizGate, articles_complete
from progress_engine.models.learning import ArticleView, Comment, Course, Enrollment, User
from progress_engine.models.progress import UserProgress, utcnow

logger = structlog.get_logger()


@dataclass(frozen=True)
class ReconcileResult:
    courses_completed: int
    articles_read: int
    comments_posted: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class ReconcileSummary:
    processed: int = 0
    failed: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)


class ReconciliationEngine:
    """Recounts derived counters from source-of-truth tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        locks: Optional[UserLockRegistry] = None,
        concurrency: Optional[int] = None,
    ):
        self.session_factory = session_factory
        # Shared with the progress store so a reconcile never overlaps a live event
        self.locks = locks or UserLockRegistry()
        self.concurrency = concurrency or settings.RECONCILE_CONCURRENCY

    async def reconcile(self, user_id: str) -> ReconcileResult:
        """Recount and overwrite one user's counters. Idempotent."""
        validate_user_id(user_id)
        async with self.locks.hold(user_id):
            try:
                result = await with_store_timeout(self._reconcile_once(user_id))
            except Exception:
                RECONCILIATIONS.labels(outcome="failed").inc()
                raise
        RECONCILIATIONS.labels(outcome="succeeded").inc()
        return result

    async def _reconcile_once(self, user_id: str) -> ReconcileResult:
        async with self.session_factory() as db:
            async with db.begin():
                await load_user(db, user_id)
                await get_or_create_progress(db, user_id)

                result = ReconcileResult(
                    courses_completed=await self.count_completed_courses(db, user_id),
                    articles_read=await self.count_articles_read(db, user_id),
                    comments_posted=await self.count_comments(db, user_id),
                )

                # Overwrite, never increment
                await db.execute(
                    update(UserProgress)
                    .where(UserProgress.user_id == user_id)
                    .values(
                        courses_completed=result.courses_completed,
                        articles_read=result.articles_read,
                        comments_posted=result.comments_posted,
                        last_reconciled_at=utcnow(),
                        version=UserProgress.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )

        logger.info("Progress reconciled", user_id=user_id, **result.to_dict())
        return result

    async def count_completed_courses(self, db: AsyncSession, user_id: str) -> int:
        """Enrollments whose articles are all done and whose quizzes are passed.

        The enrollment's own ``completed`` flag is not consulted.
        """
        result = await db.execute(select(Enrollment).where(Enrollment.user_id == user_id))
        enrollments = result.scalars().all()
        if not enrollments:
            return 0

        course_ids = {e.course_id for e in enrollments}
        courses = await db.execute(select(Course).where(Course.id.in_(course_ids)))
        course_map = {course.id: course for course in courses.scalars().all()}

        gate = QuizGate(db)
        completed = 0
        for enrollment in enrollments:
            course = course_map.get(enrollment.course_id)
            if course is None:
                logger.warning(
                    "Enrollment references missing course, skipped",
                    user_id=user_id,
                    course_id=enrollment.course_id,
                )
                continue
            if not articles_complete(enrollment, course):
                continue
            if await gate.is_course_quiz_requirement_met(user_id, course.id):
                completed += 1
        return completed

    async def count_comments(self, db: AsyncSession, user_id: str) -> int:
        return await db.scalar(
            select(func.count(Comment.id)).where(Comment.author_id == user_id)
        ) or 0

    async def count_articles_read(self, db: AsyncSession, user_id: str) -> int:
        return await db.scalar(
            select(func.count(distinct(ArticleView.article_id))).where(ArticleView.user_id == user_id)
        ) or 0

    async def reconcile_all(self) -> ReconcileSummary:
        """Reconcile every user with bounded concurrency.

        One user's failure is logged and counted; it never stops the batch.
        """
        user_ids = await with_store_timeout(self._all_user_ids())
        summary = ReconcileSummary()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(user_id: str):
            async with semaphore:
                try:
                    await self.reconcile(user_id)
                    summary.processed += 1
                except ProgressEngineError as e:
                    summary.failed += 1
                    summary.failures.append({"user_id": user_id, "error": e.code})
                    logger.error("Reconciliation failed", user_id=user_id, error=e.message)
                except Exception as e:
                    summary.failed += 1
                    summary.failures.append({"user_id": user_id, "error": type(e).__name__})
                    logger.exception("Reconciliation failed", user_id=user_id, error=str(e))

        await asyncio.gather(*(run(user_id) for user_id in user_ids))

        logger.info(
            "Reconciliation batch finished",
            users=len(user_ids),
            processed=summary.processed,
            failed=summary.failed,
        )
        return summary

    async def _all_user_ids(self) -> List[str]:
        async with self.session_factory() as db:
            result = await db.execute(select(User.id).order_by(User.id))
            return list(result.scalars().all())
