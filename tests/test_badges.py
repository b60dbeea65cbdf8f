"""
Tests for badge unlock evaluation.
"""
from types import SimpleNamespace

from progress_engine.gamification.badges import (
    BADGES,
    badge_progress,
    evaluate,
    get_badge,
    is_unlocked,
    summarize,
    visible_badges,
)


def snapshot(**overrides):
    values = dict(
        total_xp=0,
        current_level=1,
        courses_completed=0,
        articles_read=0,
        comments_posted=0,
        current_streak=0,
        badges=[],
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_nothing_unlocked_for_zero_state():
    assert evaluate(snapshot()) == []


def test_one_evaluation_can_unlock_several_badges():
    unlocked = evaluate(snapshot(courses_completed=5, comments_posted=1, current_streak=7))
    assert unlocked == ["first-steps", "learner", "week-warrior", "first-comment"]


def test_earned_badges_are_not_returned_again():
    unlocked = evaluate(snapshot(courses_completed=5, badges=["first-steps"]))
    assert unlocked == ["learner"]


def test_explicit_earned_overrides_snapshot():
    assert evaluate(snapshot(courses_completed=1), earned=["first-steps"]) == []


def test_level_badges():
    assert "bronze-tier" in evaluate(snapshot(current_level=10))
    assert "silver-tier" not in evaluate(snapshot(current_level=24))


def test_special_badges_never_unlock_automatically():
    maxed = snapshot(
        total_xp=10 ** 6,
        current_level=500,
        courses_completed=500,
        articles_read=500,
        comments_posted=500,
        current_streak=500,
    )
    unlocked = evaluate(maxed)
    for badge in BADGES:
        if badge.is_special:
            assert badge.id not in unlocked
            assert not is_unlocked(badge, maxed)


def test_badge_progress_capped_at_hundred():
    scholar = get_badge("scholar")
    assert badge_progress(scholar, snapshot(courses_completed=4)) == 40.0
    assert badge_progress(scholar, snapshot(courses_completed=40)) == 100.0
    assert badge_progress(get_badge("beta-tester"), snapshot()) == 0.0


def test_summarize_orders_earned_by_unlock_and_hides_hidden():
    state = snapshot(courses_completed=1, badges=["first-comment", "first-steps"])
    summary = summarize(state)

    assert [b.id for b in summary["earned"]] == ["first-comment", "first-steps"]
    locked_ids = [b.id for b in summary["locked"]]
    assert "night-owl" not in locked_ids
    assert "perfectionist" not in locked_ids
    assert "first-steps" not in locked_ids
    assert summary["progress"]["learner"] == 20.0


def test_visible_badges_exclude_hidden():
    ids = [b.id for b in visible_badges()]
    assert "night-owl" not in ids
    assert "early-adopter" in ids
    assert get_badge("missing") is None
