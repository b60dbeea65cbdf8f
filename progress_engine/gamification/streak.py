"""Daily activity streaks."""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from progress_engine.core.config import settings


@dataclass(frozen=True)
class StreakState:
    current_streak: int
    longest_streak: int
    last_activity_date: Optional[datetime]


def _aware(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def calendar_day(moment: datetime, tz: Optional[str] = None) -> date:
    """Calendar day of ``moment`` in the streak reference zone."""
    return _aware(moment).astimezone(ZoneInfo(tz or settings.STREAK_TIMEZONE)).date()


def update_streak(
    current_streak: int,
    longest_streak: int,
    last_activity_date: Optional[datetime],
    now: datetime,
    tz: Optional[str] = None,
) -> StreakState:
    """Streak counters after an activity at ``now``.

    Same day leaves the counters alone, the next day extends the streak and
    anything else starts a new one. An event dated before the last activity
    day is handled like a same-day event so out-of-order delivery cannot
    break a streak.
    """
    now = _aware(now)
    last_activity_date = _aware(last_activity_date)

    if last_activity_date is None:
        current = 1
    else:
        gap = (calendar_day(now, tz) - calendar_day(last_activity_date, tz)).days
        if gap <= 0:
            current = current_streak
        elif gap == 1:
            current = current_streak + 1
        else:
            current = 1

    # last_activity_date never moves backwards
    if last_activity_date is not None and now < last_activity_date:
        now = last_activity_date

    return StreakState(
        current_streak=current,
        longest_streak=max(longest_streak, current),
        last_activity_date=now,
    )
