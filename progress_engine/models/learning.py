"""Source-of-truth learning records.

These tables belong to the rest of the platform. The engine reads them to
re-derive counters and only ever writes ``Enrollment.completed`` (as the
course-completion fence).
"""

from enum import Enum
from sqlalchemy import Column, String, Integer, Float, DateTime, Boolean, JSON, ForeignKey, UniqueConstraint, Index

from progress_engine.core.database import Base
from progress_engine.models.progress import utcnow


class CourseDifficulty(str, Enum):
    """Course difficulty classifier."""
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    name = Column(String)
    email = Column(String, unique=True)
    role = Column(String, nullable=False, default=UserRole.USER.value)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Course(Base):
    __tablename__ = "courses"

    id = Column(String(64), primary_key=True)
    title = Column(String, nullable=False, default="")
    articles = Column(JSON, nullable=False, default=list)  # ordered article ids
    difficulty = Column(String, nullable=False, default=CourseDifficulty.BEGINNER.value)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Enrollment(Base):
    __tablename__ = "enrollments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    course_id = Column(String(64), nullable=False, index=True)
    completed_articles = Column(JSON, nullable=False, default=list)
    completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime(timezone=True))
    enrolled_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "course_id"),
    )


class Quiz(Base):
    __tablename__ = "quizzes"

    id = Column(String(64), primary_key=True)
    course_id = Column(String(64), nullable=False, index=True)
    title = Column(String, nullable=False, default="")
    passing_score = Column(Float, nullable=False, default=70.0)
    questions = Column(JSON, nullable=False, default=list)
    published = Column(Boolean, nullable=False, default=False)


class QuizAttempt(Base):
    """One row per submission; never updated."""
    __tablename__ = "quiz_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    quiz_id = Column(String(64), ForeignKey("quizzes.id"), nullable=False)
    score = Column(Float, nullable=False)
    passed = Column(Boolean, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_quiz_attempts_user_quiz", "user_id", "quiz_id"),
    )


class Comment(Base):
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    author_id = Column(String(64), nullable=False, index=True)
    article_id = Column(String(64))
    content = Column(String, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utcnow)


class ArticleView(Base):
    """Article read tracking. Anonymous views have no user."""
    __tablename__ = "article_views"

    id = Column(Integer, primary_key=True, autoincrement=True)
    article_id = Column(String(64), nullable=False)
    user_id = Column(String(64))
    ip_address = Column(String)
    user_agent = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_article_views_user_article", "user_id", "article_id"),
    )
