"""
Pytest configuration and fixtures.
"""
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("LOG_FORMAT", "plain")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Any, List, Optional

import pytest
import pytest_asyncio
from aiocache import Cache
from httpx import ASGITransport, AsyncClient

from progress_engine.core.database import build_engine, build_session_factory, init_db
from progress_engine.core.dependencies import create_access_token
from progress_engine.core.locks import UserLockRegistry
from progress_engine.gamification.progress_store import ProgressStore
from progress_engine.gamification.reconciliation import ReconciliationEngine
from progress_engine.main import app, configure_services
from progress_engine.models import (
    ArticleView,
    Comment,
    Course,
    Enrollment,
    Quiz,
    QuizAttempt,
    User,
)


class FakeClock:
    """Controllable replacement for ``utcnow``."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class Seeder:
    """Writes source-of-truth records straight into the test database."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def add(self, *objects):
        async with self.session_factory() as db:
            async with db.begin():
                db.add_all(objects)
        return objects[0] if len(objects) == 1 else objects

    async def user(self, user_id: str, role: str = "user"):
        return await self.add(User(id=user_id, name=user_id.title(), email=f"{user_id}@example.com", role=role))

    async def course(self, course_id: str, articles: List[str], difficulty: str = "beginner"):
        return await self.add(Course(id=course_id, title=course_id, articles=articles, difficulty=difficulty))

    async def enrollment(self, user_id: str, course_id: str, completed_articles: List[str], completed: bool = False):
        return await self.add(Enrollment(
            user_id=user_id,
            course_id=course_id,
            completed_articles=completed_articles,
            completed=completed,
        ))

    async def quiz(self, quiz_id: str, course_id: str, passing_score: float = 70, published: bool = True):
        return await self.add(Quiz(
            id=quiz_id,
            course_id=course_id,
            title=quiz_id,
            passing_score=passing_score,
            questions=[{"question": "?", "options": ["a", "b"], "answer": 0}],
            published=published,
        ))

    async def attempt(self, user_id: str, quiz_id: str, score: float, passing_score: float = 70,
                      completed_at: Optional[datetime] = None):
        return await self.add(QuizAttempt(
            user_id=user_id,
            quiz_id=quiz_id,
            score=score,
            passed=score >= passing_score,
            completed_at=completed_at or datetime.now(timezone.utc),
        ))

    async def comments(self, author_id: str, count: int):
        return await self.add(*[Comment(author_id=author_id, content=f"comment {i}") for i in range(count)])

    async def view(self, user_id: Optional[str], article_id: str):
        return await self.add(ArticleView(user_id=user_id, article_id=article_id, ip_address="127.0.0.1"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[Any, Any]:
    """Fresh SQLite database per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'progress.db'}")
    await init_db(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def locks() -> UserLockRegistry:
    return UserLockRegistry()


@pytest.fixture
def store(session_factory, locks, clock) -> ProgressStore:
    return ProgressStore(session_factory, locks=locks, clock=clock)


@pytest.fixture
def reconciler(session_factory, locks) -> ReconciliationEngine:
    return ReconciliationEngine(session_factory, locks=locks, concurrency=4)


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client against the app wired to the test database."""
    configure_services(app, session_factory, cache=Cache(Cache.MEMORY))
    app.state.redis_cache = None
    app.state.scheduler = None
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def auth_headers(user_id: str, roles=("user",)) -> dict:
    token = create_access_token({"sub": user_id, "roles": list(roles)})
    return {"Authorization": f"Bearer {token}"}
