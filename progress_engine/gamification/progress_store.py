"""Progress store: the only writer of the per-user progress aggregate.

Every live event goes through ``ProgressStore.apply_event``. The work for one
event is computed from the current row and written back with a single
``UPDATE ... WHERE version = :seen`` that expresses XP and counters as
increments. Events for the same user are serialized by a per-user lock, and
the version check catches writers in other processes; a lost race is retried.
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from progress_engine.core.config import settings
from progress_engine.core.errors import (
    ConcurrentUpdateConflict,
    InvalidEvent,
    InvalidUser,
    NotFound,
    RequirementNotMet,
    StoreUnavailable,
)
from progress_engine.core.locks import UserLockRegistry
from progress_engine.core.metrics import BADGES_UNLOCKED, EVENTS_APPLIED, XP_AWARDED
from progress_engine.gamification import xp_policy
from progress_engine.gamification.badges import BADGES, BadgeDefinition, evaluate, get_badge
from progress_engine.gamification.quiz_gate import QuizGate, articles_complete
from progress_engine.gamification.streak import calendar_day, update_streak
from progress_engine.gamification.xp_policy import EventKind
from progress_engine.models.learning import Course, Enrollment, Quiz, QuizAttempt, User
from progress_engine.models.progress import UserProgress, XPTransaction, ensure_utc, utcnow

logger = structlog.get_logger()

USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")

# payload keys each event kind must carry
REQUIRED_PAYLOAD = {
    EventKind.ARTICLE_READ: ("article_id",),
    EventKind.COMMENT_POSTED: (),
    EventKind.QUIZ_SUBMITTED: ("quiz_id",),
    EventKind.COURSE_COMPLETED: ("course_id",),
}

LEVEL_MILESTONES = ((10, "level_10_at"), (25, "level_25_at"), (50, "level_50_at"))

UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass
class ActivityEvent:
    kind: EventKind
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: Optional[str] = None
    occurred_at: Optional[datetime] = None


@dataclass
class EventResult:
    progress: UserProgress
    xp_awarded: int = 0
    leveled_up: bool = False
    levels_gained: int = 0
    new_badges: List[str] = field(default_factory=list)
    duplicate: bool = False


@dataclass
class _Delta:
    """What one event changes, before it is written."""
    xp: int = 0
    courses: int = 0
    articles: int = 0
    comments: int = 0
    subject_id: Optional[str] = None
    reason: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)


def validate_user_id(user_id: str) -> str:
    if not isinstance(user_id, str) or not USER_ID_PATTERN.match(user_id):
        raise InvalidUser("Malformed user identifier", user_id=str(user_id)[:64])
    return user_id


async def with_store_timeout(awaitable, timeout: Optional[float] = None):
    """Bound a store operation and turn outages into ``StoreUnavailable``."""
    timeout = timeout or settings.STORE_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise StoreUnavailable("Progress store timed out")
    except (OperationalError, InterfaceError) as e:
        raise StoreUnavailable("Progress store unavailable", reason=type(e.orig).__name__ if e.orig else str(e))
    except DBAPIError as e:
        if e.connection_invalidated:
            raise StoreUnavailable("Progress store connection lost")
        raise


async def load_user(db: AsyncSession, user_id: str) -> User:
    validate_user_id(user_id)
    user = await db.get(User, user_id)
    if user is None:
        raise InvalidUser("Unknown user", user_id=user_id)
    return user


async def get_or_create_progress(db: AsyncSession, user_id: str) -> UserProgress:
    """Fetch the progress row, inserting the zero state if it is missing."""
    result = await db.execute(select(UserProgress).where(UserProgress.user_id == user_id))
    progress = result.scalar_one_or_none()
    if progress is not None:
        return progress

    dialect = db.get_bind().dialect.name
    if dialect in UPSERT_DIALECTS:
        # INSERT ... ON CONFLICT DO NOTHING, then read back whichever row won
        stmt = UPSERT_DIALECTS[dialect](UserProgress).values(user_id=user_id, badges=[])
        await db.execute(stmt.on_conflict_do_nothing(index_elements=["user_id"]))
    else:
        try:
            async with db.begin_nested():
                db.add(UserProgress(user_id=user_id, badges=[]))
                await db.flush()
        except IntegrityError:
            pass  # created concurrently by another writer

    result = await db.execute(select(UserProgress).where(UserProgress.user_id == user_id))
    progress = result.scalar_one()
    logger.info("Progress initialized", user_id=user_id)
    return progress


class ProgressStore:
    """Applies scored events to the per-user progress aggregate."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        locks: Optional[UserLockRegistry] = None,
        badge_table: Sequence[BadgeDefinition] = BADGES,
        clock: Callable[[], datetime] = utcnow,
        cache=None,
        max_retries: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.locks = locks or UserLockRegistry()
        self.badge_table = badge_table
        self.clock = clock
        self.cache = cache
        self.max_retries = max_retries or settings.PROGRESS_UPDATE_MAX_RETRIES

    # Reads

    async def get_progress(self, user_id: str) -> UserProgress:
        """Current snapshot, created on first access."""
        validate_user_id(user_id)
        return await with_store_timeout(self._get_progress(user_id))

    async def _get_progress(self, user_id: str) -> UserProgress:
        async with self.session_factory() as db:
            async with db.begin():
                await load_user(db, user_id)
                return await get_or_create_progress(db, user_id)

    # Live events

    async def apply_event(self, user_id: str, event: ActivityEvent) -> EventResult:
        """Score one activity for ``user_id`` and persist it atomically."""
        validate_user_id(user_id)
        kind = self._validate_event(event)

        async with self.locks.hold(user_id):
            for attempt in range(self.max_retries):
                try:
                    result = await with_store_timeout(self._apply_once(user_id, event, kind))
                except ConcurrentUpdateConflict:
                    logger.debug("Progress update conflict, retrying", user_id=user_id, attempt=attempt + 1)
                    await asyncio.sleep(0.01 * (2 ** attempt))
                    continue
                except Exception as e:
                    EVENTS_APPLIED.labels(kind=kind.value, outcome="failed").inc()
                    logger.warning("Failed to apply event", user_id=user_id, kind=kind.value, error=str(e))
                    raise

                outcome = "duplicate" if result.duplicate else "applied"
                EVENTS_APPLIED.labels(kind=kind.value, outcome=outcome).inc()
                if result.xp_awarded:
                    XP_AWARDED.labels(kind=kind.value).inc(result.xp_awarded)
                for badge_id in result.new_badges:
                    BADGES_UNLOCKED.labels(badge_id=badge_id).inc()
                return result

        EVENTS_APPLIED.labels(kind=kind.value, outcome="conflict").inc()
        raise ConcurrentUpdateConflict("Gave up after repeated concurrent updates", user_id=user_id)

    def _validate_event(self, event: ActivityEvent) -> EventKind:
        try:
            kind = EventKind(event.kind)
        except ValueError:
            raise InvalidEvent(f"Unknown event kind: {event.kind}")

        payload = event.payload or {}
        missing = [key for key in REQUIRED_PAYLOAD[kind] if not payload.get(key)]
        if missing:
            raise InvalidEvent(f"Missing payload fields for {kind.value}: {', '.join(missing)}")

        word_count = payload.get("word_count")
        if word_count is not None and (not isinstance(word_count, int) or word_count < 0):
            raise InvalidEvent("word_count must be a non-negative integer")
        return kind

    async def _apply_once(self, user_id: str, event: ActivityEvent, kind: EventKind) -> EventResult:
        async with self.session_factory() as db:
            async with db.begin():
                await load_user(db, user_id)
                progress = await get_or_create_progress(db, user_id)

                if event.event_id and await self._event_seen(db, user_id, event.event_id):
                    logger.info("Duplicate event ignored", user_id=user_id, event_id=event.event_id)
                    return EventResult(progress=progress, duplicate=True)

                # events may be backdated, never dated in the future
                now = min(ensure_utc(event.occurred_at) or self.clock(), self.clock())
                delta = await self._compute_delta(db, progress, kind, event.payload or {}, now)
                if delta is None:
                    return EventResult(progress=progress, duplicate=True)

                old_level = progress.current_level
                new_total = progress.total_xp + delta.xp
                new_level = xp_policy.level_for_xp(new_total)
                streak = update_streak(
                    progress.current_streak,
                    progress.longest_streak,
                    ensure_utc(progress.last_activity_date),
                    now,
                )

                snapshot = SimpleNamespace(
                    total_xp=new_total,
                    current_level=new_level,
                    courses_completed=progress.courses_completed + delta.courses,
                    articles_read=progress.articles_read + delta.articles,
                    comments_posted=progress.comments_posted + delta.comments,
                    current_streak=streak.current_streak,
                    badges=list(progress.badges or []),
                )
                new_badges = evaluate(snapshot, self.badge_table)

                values = {
                    "total_xp": UserProgress.total_xp + delta.xp,
                    "current_level": new_level,
                    "courses_completed": UserProgress.courses_completed + delta.courses,
                    "articles_read": UserProgress.articles_read + delta.articles,
                    "comments_posted": UserProgress.comments_posted + delta.comments,
                    "current_streak": streak.current_streak,
                    "longest_streak": streak.longest_streak,
                    "last_activity_date": streak.last_activity_date,
                    "badges": snapshot.badges + new_badges,
                    "version": UserProgress.version + 1,
                    "updated_at": self.clock(),
                    **delta.extra,
                }
                for level, column in LEVEL_MILESTONES:
                    if new_level >= level and getattr(progress, column) is None:
                        values[column] = now

                result = await db.execute(
                    update(UserProgress)
                    .where(UserProgress.user_id == user_id, UserProgress.version == progress.version)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConcurrentUpdateConflict("Progress changed during update", user_id=user_id)

                db.add(XPTransaction(
                    user_id=user_id,
                    event_id=event.event_id,
                    kind=kind.value,
                    subject_id=delta.subject_id,
                    xp_awarded=delta.xp,
                    reason=delta.reason,
                    created_at=now,
                ))
                try:
                    await db.flush()
                except IntegrityError:
                    # same event_id recorded by another writer
                    raise ConcurrentUpdateConflict("Event recorded concurrently", user_id=user_id)

            await db.refresh(progress)

        logger.info(
            "Event applied",
            user_id=user_id,
            kind=kind.value,
            xp=delta.xp,
            total_xp=progress.total_xp,
            level=progress.current_level,
            new_badges=new_badges,
        )
        return EventResult(
            progress=progress,
            xp_awarded=delta.xp,
            leveled_up=new_level > old_level,
            levels_gained=max(new_level - old_level, 0),
            new_badges=new_badges,
        )

    async def _event_seen(self, db: AsyncSession, user_id: str, event_id: str) -> bool:
        result = await db.execute(
            select(XPTransaction.id).where(
                XPTransaction.user_id == user_id,
                XPTransaction.event_id == event_id,
            ).limit(1)
        )
        return result.first() is not None

    async def _compute_delta(
        self,
        db: AsyncSession,
        progress: UserProgress,
        kind: EventKind,
        payload: Dict[str, Any],
        now: datetime,
    ) -> Optional[_Delta]:
        """Work out the effect of an event. ``None`` means nothing to apply."""
        if kind == EventKind.ARTICLE_READ:
            article_id = str(payload["article_id"])
            if await self._already_awarded(db, progress.user_id, kind, article_id):
                logger.info("Article already read, no XP awarded", user_id=progress.user_id, article_id=article_id)
                return None
            return _Delta(
                xp=xp_policy.award_for(kind, {"word_count": payload.get("word_count")}),
                articles=1,
                subject_id=article_id,
                reason=f"Read article: {article_id}",
            )

        if kind == EventKind.COMMENT_POSTED:
            return self._comment_delta(progress, payload, now)

        if kind == EventKind.QUIZ_SUBMITTED:
            return await self._quiz_delta(db, progress.user_id, payload)

        return await self._course_delta(db, progress, payload, now)

    async def _already_awarded(
        self,
        db: AsyncSession,
        user_id: str,
        kind: EventKind,
        subject_id: str,
        positive_only: bool = False,
    ) -> bool:
        query = select(XPTransaction.id).where(
            XPTransaction.user_id == user_id,
            XPTransaction.kind == kind.value,
            XPTransaction.subject_id == subject_id,
        )
        if positive_only:
            query = query.where(XPTransaction.xp_awarded > 0)
        result = await db.execute(query.limit(1))
        return result.first() is not None

    def _comment_delta(self, progress: UserProgress, payload: Dict[str, Any], now: datetime) -> _Delta:
        today = calendar_day(now)
        if progress.comment_xp_date is not None and today < progress.comment_xp_date:
            # late comments count against the latest day already spent
            today = progress.comment_xp_date
        earned_today = progress.comment_xp_today if progress.comment_xp_date == today else 0
        xp = xp_policy.cap_comment_xp(xp_policy.award_for(EventKind.COMMENT_POSTED), earned_today)
        if xp == 0:
            logger.info("Comment XP ceiling reached", user_id=progress.user_id, earned_today=earned_today)

        comment_id = payload.get("comment_id")
        return _Delta(
            xp=xp,
            comments=1,
            subject_id=str(comment_id) if comment_id else None,
            reason="Posted comment",
            extra={"comment_xp_today": earned_today + xp, "comment_xp_date": today},
        )

    async def _quiz_delta(self, db: AsyncSession, user_id: str, payload: Dict[str, Any]) -> _Delta:
        quiz_id = str(payload["quiz_id"])
        quiz = await db.get(Quiz, quiz_id)
        if quiz is None:
            raise NotFound("Quiz not found", quiz_id=quiz_id)

        attempt = await self._submitted_attempt(db, user_id, quiz_id, payload.get("attempt_id"))

        # unpublished quizzes are drafts and earn nothing
        first_pass = (
            quiz.published
            and attempt.passed
            and not await self._already_awarded(db, user_id, EventKind.QUIZ_SUBMITTED, quiz_id, positive_only=True)
        )

        return _Delta(
            xp=xp_policy.award_for(EventKind.QUIZ_SUBMITTED, {"first_pass": first_pass}),
            subject_id=quiz_id,
            reason=f"{'Passed' if attempt.passed else 'Attempted'} quiz: {quiz_id}",
        )

    async def _submitted_attempt(self, db: AsyncSession, user_id: str, quiz_id: str, attempt_id) -> QuizAttempt:
        if attempt_id is not None:
            try:
                attempt_pk = int(attempt_id)
            except (TypeError, ValueError):
                raise InvalidEvent("attempt_id must be an integer")
            attempt = await db.get(QuizAttempt, attempt_pk)
            if attempt is None or attempt.user_id != user_id or attempt.quiz_id != quiz_id:
                raise NotFound("Quiz attempt not found", attempt_id=str(attempt_id))
            return attempt

        result = await db.execute(
            select(QuizAttempt)
            .where(QuizAttempt.user_id == user_id, QuizAttempt.quiz_id == quiz_id)
            .order_by(QuizAttempt.completed_at.desc(), QuizAttempt.id.desc())
            .limit(1)
        )
        attempt = result.scalars().first()
        if attempt is None:
            raise NotFound("No attempt recorded for quiz", quiz_id=quiz_id)
        return attempt

    async def _course_delta(
        self,
        db: AsyncSession,
        progress: UserProgress,
        payload: Dict[str, Any],
        now: datetime,
    ) -> Optional[_Delta]:
        user_id = progress.user_id
        course_id = str(payload["course_id"])

        course = await db.get(Course, course_id)
        if course is None:
            raise NotFound("Course not found", course_id=course_id)

        result = await db.execute(
            select(Enrollment).where(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
        )
        enrollment = result.scalar_one_or_none()
        if enrollment is None:
            raise NotFound("Enrollment not found", course_id=course_id)

        if enrollment.completed:
            logger.info("Course already completed, no XP awarded", user_id=user_id, course_id=course_id)
            return None

        if not articles_complete(enrollment, course):
            raise RequirementNotMet("Not all course articles are completed", course_id=course_id)
        if not await QuizGate(db).is_course_quiz_requirement_met(user_id, course_id):
            raise RequirementNotMet("Course quizzes have not all been passed", course_id=course_id)

        # The completed flag is the fence: only the writer that flips it awards XP
        fenced = await db.execute(
            update(Enrollment)
            .where(Enrollment.id == enrollment.id, Enrollment.completed.is_(False))
            .values(completed=True, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        if fenced.rowcount != 1:
            return None

        extra = {}
        if progress.first_course_at is None:
            extra["first_course_at"] = now

        return _Delta(
            xp=xp_policy.award_for(
                EventKind.COURSE_COMPLETED,
                {"difficulty": course.difficulty, "article_count": len(course.articles or [])},
            ),
            courses=1,
            subject_id=course_id,
            reason=f"Completed course: {course_id}",
            extra=extra,
        )

    # Special badges

    async def award_special_badge(self, user_id: str, badge_id: str) -> EventResult:
        """Grant a badge that has no automatic unlock rule."""
        validate_user_id(user_id)
        badge = get_badge(badge_id, self.badge_table)
        if badge is None:
            raise NotFound("Badge not found", badge_id=badge_id)
        if not badge.is_special:
            raise InvalidEvent("Badge is unlocked automatically", badge_id=badge_id)

        async with self.locks.hold(user_id):
            for attempt in range(self.max_retries):
                try:
                    return await with_store_timeout(self._award_badge_once(user_id, badge_id))
                except ConcurrentUpdateConflict:
                    await asyncio.sleep(0.01 * (2 ** attempt))
        raise ConcurrentUpdateConflict("Gave up after repeated concurrent updates", user_id=user_id)

    async def _award_badge_once(self, user_id: str, badge_id: str) -> EventResult:
        async with self.session_factory() as db:
            async with db.begin():
                await load_user(db, user_id)
                progress = await get_or_create_progress(db, user_id)
                if badge_id in (progress.badges or []):
                    return EventResult(progress=progress, duplicate=True)

                result = await db.execute(
                    update(UserProgress)
                    .where(UserProgress.user_id == user_id, UserProgress.version == progress.version)
                    .values(
                        badges=list(progress.badges or []) + [badge_id],
                        version=UserProgress.version + 1,
                        updated_at=self.clock(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConcurrentUpdateConflict("Progress changed during update", user_id=user_id)
            await db.refresh(progress)

        BADGES_UNLOCKED.labels(badge_id=badge_id).inc()
        logger.info("Special badge awarded", user_id=user_id, badge_id=badge_id)
        return EventResult(progress=progress, new_badges=[badge_id])

    # Rankings

    async def leaderboard(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Users ordered by total XP."""
        limit = max(1, min(limit, settings.LEADERBOARD_SIZE))
        cache_key = f"leaderboard:{limit}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return cached

        entries = await with_store_timeout(self._leaderboard(limit))

        if self.cache is not None:
            await self.cache.set(cache_key, entries, ttl=settings.LEADERBOARD_CACHE_TTL)
        return entries

    async def _leaderboard(self, limit: int) -> List[Dict[str, Any]]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(UserProgress, User.name)
                .join(User, User.id == UserProgress.user_id, isouter=True)
                .order_by(UserProgress.total_xp.desc(), UserProgress.user_id.asc())
                .limit(limit)
            )
            leaderboard = []
            for idx, (progress, name) in enumerate(result.all()):
                leaderboard.append({
                    "rank": idx + 1,
                    "user_id": progress.user_id,
                    "name": name,
                    "total_xp": progress.total_xp,
                    "level": progress.current_level,
                    "badges": len(progress.badges or []),
                })
            return leaderboard

    async def rank(self, user_id: str) -> int:
        """1 + number of users with strictly more XP."""
        progress = await self.get_progress(user_id)
        return await with_store_timeout(self._rank(progress.total_xp))

    async def _rank(self, total_xp: int) -> int:
        async with self.session_factory() as db:
            ahead = await db.scalar(
                select(func.count(UserProgress.id)).where(UserProgress.total_xp > total_xp)
            )
            return (ahead or 0) + 1

    async def global_stats(self) -> Dict[str, Any]:
        return await with_store_timeout(self._global_stats())

    async def _global_stats(self) -> Dict[str, Any]:
        async with self.session_factory() as db:
            row = (await db.execute(
                select(
                    func.count(UserProgress.id),
                    func.coalesce(func.sum(UserProgress.total_xp), 0),
                    func.avg(UserProgress.current_level),
                )
            )).one()
            total_users, total_xp, avg_level = row
            return {
                "total_users": total_users,
                "total_xp": int(total_xp),
                "average_level": round(float(avg_level)) if total_users else 0,
            }
