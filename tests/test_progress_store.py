"""
Tests for the progress store: event scoring, idempotency and concurrency.
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from progress_engine.core.errors import (
    InvalidEvent,
    InvalidUser,
    NotFound,
    RequirementNotMet,
    StoreUnavailable,
)
from progress_engine.gamification.progress_store import (
    ActivityEvent,
    ProgressStore,
    with_store_timeout,
)
from progress_engine.models import Enrollment, UserProgress, XPTransaction
from progress_engine.models.progress import ensure_utc


def article(article_id="a1", word_count=None, event_id=None):
    payload = {"article_id": article_id}
    if word_count is not None:
        payload["word_count"] = word_count
    return ActivityEvent(kind="article_read", payload=payload, event_id=event_id)


def course_event(course_id="python-101", event_id=None):
    return ActivityEvent(kind="course_completed", payload={"course_id": course_id}, event_id=event_id)


async def seed_finished_course(seed, user_id="alice"):
    await seed.user(user_id)
    await seed.course("python-101", ["a1", "a2", "a3"], difficulty="beginner")
    await seed.enrollment(user_id, "python-101", ["a1", "a2", "a3"])


async def test_zero_state_created_on_first_read(store, seed):
    await seed.user("alice")
    progress = await store.get_progress("alice")

    assert progress.total_xp == 0
    assert progress.current_level == 1
    assert progress.badges == []
    assert progress.courses_completed == 0
    assert progress.current_streak == 0

    again = await store.get_progress("alice")
    assert again.id == progress.id


async def test_article_read_awards_tiered_xp(store, seed):
    await seed.user("alice")
    result = await store.apply_event("alice", article(word_count=2500))

    assert result.xp_awarded == 30
    assert result.progress.total_xp == 30
    assert result.progress.articles_read == 1
    assert result.progress.current_streak == 1
    assert result.duplicate is False


async def test_course_completion_awards_once(store, seed, session_factory):
    await seed_finished_course(seed)

    result = await store.apply_event("alice", course_event())
    assert result.xp_awarded == 80
    assert result.progress.total_xp == 80
    assert result.progress.courses_completed == 1
    assert result.progress.first_course_at is not None
    assert "first-steps" in result.new_badges
    assert result.progress.badges == ["first-steps"]

    replay = await store.apply_event("alice", course_event())
    assert replay.duplicate is True
    assert replay.xp_awarded == 0
    assert replay.progress.total_xp == 80
    assert replay.progress.courses_completed == 1

    async with session_factory() as db:
        enrollment = (await db.execute(select(Enrollment))).scalar_one()
        assert enrollment.completed is True
        assert enrollment.completed_at is not None


async def test_course_with_unread_articles_is_rejected(store, seed):
    await seed.user("alice")
    await seed.course("python-101", ["a1", "a2", "a3"])
    await seed.enrollment("alice", "python-101", ["a1", "a2"])

    with pytest.raises(RequirementNotMet):
        await store.apply_event("alice", course_event())

    progress = await store.get_progress("alice")
    assert progress.total_xp == 0
    assert progress.courses_completed == 0


async def test_course_with_failed_quiz_is_rejected(store, seed):
    await seed_finished_course(seed)
    await seed.quiz("quiz-1", "python-101")
    await seed.attempt("alice", "quiz-1", 40)

    with pytest.raises(RequirementNotMet):
        await store.apply_event("alice", course_event())

    await seed.attempt("alice", "quiz-1", 90)
    result = await store.apply_event("alice", course_event())
    assert result.xp_awarded == 80


async def test_unknown_course_leaves_record_untouched(store, seed):
    await seed.user("alice")
    await store.apply_event("alice", article())

    with pytest.raises(NotFound):
        await store.apply_event("alice", course_event("does-not-exist"))

    progress = await store.get_progress("alice")
    assert progress.total_xp == 10
    assert progress.courses_completed == 0


async def test_missing_enrollment_is_not_found(store, seed):
    await seed.user("alice")
    await seed.course("python-101", ["a1"])

    with pytest.raises(NotFound):
        await store.apply_event("alice", course_event())


async def test_event_id_replay_is_ignored(store, seed, session_factory):
    await seed.user("alice")

    first = await store.apply_event("alice", article(event_id="evt-1"))
    replay = await store.apply_event("alice", article(event_id="evt-1"))

    assert first.xp_awarded == 10
    assert replay.duplicate is True
    assert replay.progress.total_xp == 10
    assert replay.progress.articles_read == 1

    async with session_factory() as db:
        rows = (await db.execute(select(XPTransaction))).scalars().all()
        assert len(rows) == 1
        assert rows[0].event_id == "evt-1"


async def test_comment_xp_daily_ceiling(store, seed, clock):
    await seed.user("alice")

    awards = []
    for _ in range(11):
        result = await store.apply_event("alice", ActivityEvent(kind="comment_posted"))
        awards.append(result.xp_awarded)

    assert awards == [5] * 10 + [0]
    assert result.progress.total_xp == 50
    assert result.progress.comments_posted == 11
    assert "first-comment" in result.progress.badges

    clock.advance(days=1)
    result = await store.apply_event("alice", ActivityEvent(kind="comment_posted"))
    assert result.xp_awarded == 5


async def test_late_comment_does_not_reset_daily_ceiling(store, seed, clock):
    await seed.user("alice")
    for _ in range(10):
        await store.apply_event("alice", ActivityEvent(kind="comment_posted"))

    late = await store.apply_event(
        "alice",
        ActivityEvent(kind="comment_posted", occurred_at=clock() - timedelta(days=1)),
    )
    assert late.xp_awarded == 0
    assert late.progress.comment_xp_date == clock().date()
    assert late.progress.comment_xp_today == 50

    awards = [
        (await store.apply_event("alice", ActivityEvent(kind="comment_posted"))).xp_awarded
        for _ in range(10)
    ]
    assert awards == [0] * 10


async def test_future_timestamps_cannot_build_a_streak(store, seed, clock):
    await seed.user("alice")

    for day in range(7):
        result = await store.apply_event(
            "alice",
            ActivityEvent(kind="comment_posted", occurred_at=clock() + timedelta(days=day)),
        )

    assert result.progress.current_streak == 1
    assert "week-warrior" not in result.progress.badges
    assert ensure_utc(result.progress.last_activity_date) <= clock()


async def test_rereading_an_article_awards_nothing(store, seed, reconciler):
    await seed.user("alice")

    first = await store.apply_event("alice", article("a1", word_count=2500))
    again = await store.apply_event("alice", article("a1", word_count=2500))

    assert first.xp_awarded == 30
    assert again.duplicate is True
    assert again.xp_awarded == 0
    assert again.progress.total_xp == 30
    assert again.progress.articles_read == 1

    await seed.view("alice", "a1")
    assert (await reconciler.reconcile("alice")).articles_read == again.progress.articles_read


async def test_unpublished_quiz_earns_no_xp(store, seed):
    await seed.user("alice")
    await seed.course("python-101", ["a1"])
    await seed.quiz("draft-quiz", "python-101", published=False)
    await seed.attempt("alice", "draft-quiz", 100)

    result = await store.apply_event(
        "alice", ActivityEvent(kind="quiz_submitted", payload={"quiz_id": "draft-quiz"})
    )
    assert result.xp_awarded == 0
    assert result.progress.total_xp == 0


async def test_quiz_xp_awarded_for_first_pass_only(store, seed):
    await seed.user("alice")
    await seed.course("python-101", ["a1"])
    await seed.quiz("quiz-1", "python-101")

    await seed.attempt("alice", "quiz-1", 50)
    failed = await store.apply_event("alice", ActivityEvent(kind="quiz_submitted", payload={"quiz_id": "quiz-1"}))
    assert failed.xp_awarded == 0

    passed_attempt = await seed.attempt("alice", "quiz-1", 80)
    passed = await store.apply_event(
        "alice",
        ActivityEvent(kind="quiz_submitted", payload={"quiz_id": "quiz-1", "attempt_id": passed_attempt.id}),
    )
    assert passed.xp_awarded == 25

    await seed.attempt("alice", "quiz-1", 100)
    retake = await store.apply_event("alice", ActivityEvent(kind="quiz_submitted", payload={"quiz_id": "quiz-1"}))
    assert retake.xp_awarded == 0
    assert retake.progress.total_xp == 25


async def test_quiz_event_errors(store, seed):
    await seed.user("alice")
    await seed.course("python-101", ["a1"])
    await seed.quiz("quiz-1", "python-101")

    with pytest.raises(NotFound):
        await store.apply_event("alice", ActivityEvent(kind="quiz_submitted", payload={"quiz_id": "nope"}))
    with pytest.raises(NotFound):
        await store.apply_event("alice", ActivityEvent(kind="quiz_submitted", payload={"quiz_id": "quiz-1"}))
    with pytest.raises(InvalidEvent):
        await store.apply_event(
            "alice",
            ActivityEvent(kind="quiz_submitted", payload={"quiz_id": "quiz-1", "attempt_id": "abc"}),
        )


async def test_streak_follows_calendar_days(store, seed, clock):
    await seed.user("alice")

    await store.apply_event("alice", article("a1"))
    clock.advance(hours=2)
    result = await store.apply_event("alice", article("a2"))
    assert result.progress.current_streak == 1

    clock.advance(days=1)
    result = await store.apply_event("alice", article("a3"))
    assert result.progress.current_streak == 2

    clock.advance(days=3)
    result = await store.apply_event("alice", article("a4"))
    assert result.progress.current_streak == 1
    assert result.progress.longest_streak == 2


async def test_level_milestone_recorded(store, seed):
    await seed.user("alice")
    await seed.add(UserProgress(user_id="alice", total_xp=890, current_level=9, badges=[]))

    result = await store.apply_event("alice", article())

    assert result.progress.total_xp == 900
    assert result.progress.current_level == 10
    assert result.leveled_up is True
    assert result.levels_gained == 1
    assert result.progress.level_10_at is not None
    assert result.progress.level_25_at is None
    assert "bronze-tier" in result.new_badges


async def test_invalid_users_are_rejected(store, seed):
    with pytest.raises(InvalidUser):
        await store.get_progress("not a valid id!")
    with pytest.raises(InvalidUser):
        await store.apply_event("ghost", article())


@pytest.mark.parametrize("event", [
    ActivityEvent(kind="signed_up"),
    ActivityEvent(kind="article_read", payload={}),
    ActivityEvent(kind="article_read", payload={"article_id": "a1", "word_count": -1}),
    ActivityEvent(kind="course_completed", payload={"course_id": ""}),
])
async def test_malformed_events_are_rejected(store, seed, event):
    await seed.user("alice")
    with pytest.raises(InvalidEvent):
        await store.apply_event("alice", event)


async def test_concurrent_events_sum_exactly(store, seed):
    await seed.user("alice")

    results = await asyncio.gather(*[
        store.apply_event("alice", article(f"a{i}")) for i in range(20)
    ])

    assert all(r.xp_awarded == 10 for r in results)
    progress = await store.get_progress("alice")
    assert progress.total_xp == 200
    assert progress.articles_read == 20


async def test_concurrent_course_completion_awards_once(store, seed):
    await seed_finished_course(seed)

    results = await asyncio.gather(*[store.apply_event("alice", course_event()) for _ in range(5)])

    assert sum(r.xp_awarded for r in results) == 80
    assert sum(1 for r in results if not r.duplicate) == 1
    progress = await store.get_progress("alice")
    assert progress.total_xp == 80
    assert progress.courses_completed == 1


async def test_lost_update_is_retried(session_factory, seed, clock):
    """A write from another process between read and update forces a retry."""
    await seed.user("alice")
    await seed.add(UserProgress(user_id="alice", badges=[]))

    class InterferingStore(ProgressStore):
        interfered = False

        async def _compute_delta(self, db, progress, kind, payload, now):
            if not self.interfered:
                type(self).interfered = True
                async with self.session_factory() as other:
                    async with other.begin():
                        await other.execute(
                            update(UserProgress)
                            .where(UserProgress.user_id == "alice")
                            .values(total_xp=UserProgress.total_xp + 100, version=UserProgress.version + 1)
                        )
            return await super()._compute_delta(db, progress, kind, payload, now)

    store = InterferingStore(session_factory, clock=clock)
    result = await store.apply_event("alice", article())

    assert result.xp_awarded == 10
    assert result.progress.total_xp == 110
    assert result.progress.version == 2


async def test_special_badge_award(store, seed):
    await seed.user("alice")

    result = await store.award_special_badge("alice", "beta-tester")
    assert result.new_badges == ["beta-tester"]
    assert result.progress.badges == ["beta-tester"]

    again = await store.award_special_badge("alice", "beta-tester")
    assert again.duplicate is True
    assert again.progress.badges == ["beta-tester"]

    with pytest.raises(InvalidEvent):
        await store.award_special_badge("alice", "first-steps")
    with pytest.raises(NotFound):
        await store.award_special_badge("alice", "no-such-badge")


async def test_leaderboard_rank_and_stats(store, seed):
    for user_id, xp in (("alice", 500), ("bob", 1200), ("carol", 50)):
        await seed.user(user_id)
        await seed.add(UserProgress(user_id=user_id, total_xp=xp, current_level=1, badges=[]))

    board = await store.leaderboard(10)
    assert [entry["user_id"] for entry in board] == ["bob", "alice", "carol"]
    assert board[0]["rank"] == 1
    assert board[0]["name"] == "Bob"

    assert await store.rank("alice") == 2
    assert await store.rank("carol") == 3

    stats = await store.global_stats()
    assert stats["total_users"] == 3
    assert stats["total_xp"] == 1750


async def test_store_timeout_maps_to_unavailable():
    with pytest.raises(StoreUnavailable):
        await with_store_timeout(asyncio.sleep(1), timeout=0.01)
