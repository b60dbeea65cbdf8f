"""Progress aggregate and XP ledger models."""

from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, DateTime, Date, JSON, UniqueConstraint, Index

from progress_engine.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps read back from the store."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UserProgress(Base):
    """The single gamification aggregate per user."""
    __tablename__ = "user_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    total_xp = Column(Integer, nullable=False, default=0)
    current_level = Column(Integer, nullable=False, default=1)
    badges = Column(JSON, nullable=False, default=list)  # unlock order

    # Stats
    courses_completed = Column(Integer, nullable=False, default=0)
    articles_read = Column(Integer, nullable=False, default=0)
    comments_posted = Column(Integer, nullable=False, default=0)
    current_streak = Column(Integer, nullable=False, default=0)
    longest_streak = Column(Integer, nullable=False, default=0)
    last_activity_date = Column(DateTime(timezone=True))

    # Comment XP earned on comment_xp_date, for the daily ceiling
    comment_xp_today = Column(Integer, nullable=False, default=0)
    comment_xp_date = Column(Date)

    # Milestones
    first_course_at = Column(DateTime(timezone=True))
    level_10_at = Column(DateTime(timezone=True))
    level_25_at = Column(DateTime(timezone=True))
    level_50_at = Column(DateTime(timezone=True))

    last_reconciled_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_user_progress_total_xp", "total_xp"),
    )


class XPTransaction(Base):
    """Append-only history of XP awards."""
    __tablename__ = "xp_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    event_id = Column(String(128))  # caller supplied, dedupes replays
    kind = Column(String(32), nullable=False)
    subject_id = Column(String(64))  # article, quiz or course the award is for
    xp_awarded = Column(Integer, nullable=False, default=0)
    reason = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "event_id", name="uq_xp_transaction_event"),
        Index("ix_xp_transactions_user_date", "user_id", "created_at"),
        Index("ix_xp_transactions_user_subject", "user_id", "kind", "subject_id"),
    )
