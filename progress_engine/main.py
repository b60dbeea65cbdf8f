"""Main FastAPI application for the Progress Engine."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker
import structlog
from prometheus_fastapi_instrumentator import Instrumentator

from progress_engine.core.config import settings
from progress_engine.core.logging import setup_logging
from progress_engine.core.database import dispose_db, get_session_factory, init_db
from progress_engine.core.dependencies import get_redis_cache
from progress_engine.core.errors import ProgressEngineError, StoreUnavailable
from progress_engine.core.locks import UserLockRegistry
from progress_engine.gamification.progress_store import ProgressStore
from progress_engine.gamification.reconciliation import ReconciliationEngine
from progress_engine.gamification.scheduler import ReconciliationScheduler
from progress_engine.routers import gamification, progress, sync

# Setup structured logging
setup_logging()
logger = structlog.get_logger()


def configure_services(app: FastAPI, session_factory: async_sessionmaker, cache=None):
    """Wire the store and reconciliation engine onto ``app.state``.

    Both share one lock registry so reconciliation and live events for the
    same user never interleave.
    """
    locks = UserLockRegistry()
    app.state.locks = locks
    app.state.session_factory = session_factory
    app.state.progress_store = ProgressStore(session_factory, locks=locks, cache=cache)
    app.state.reconciliation_engine = ReconciliationEngine(session_factory, locks=locks)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle manager."""
    # Startup
    logger.info("Starting Progress Engine", version=settings.APP_VERSION)

    await init_db()
    redis_cache = await get_redis_cache()
    app.state.redis_cache = redis_cache
    configure_services(app, get_session_factory(), cache=redis_cache)

    scheduler: Optional[ReconciliationScheduler] = None
    if settings.RECONCILE_INTERVAL_SECONDS > 0:
        scheduler = ReconciliationScheduler(
            app.state.reconciliation_engine,
            interval=settings.RECONCILE_INTERVAL_SECONDS,
        )
        scheduler.start()
    app.state.scheduler = scheduler

    logger.info("Progress engine initialized successfully")

    yield

    # Shutdown
    logger.info("Shutting down Progress Engine")
    if scheduler is not None:
        await scheduler.stop()
    await dispose_db()


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="XP, levels, streaks, badges and progress reconciliation for the learning platform",
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production() else None,
        redoc_url="/redoc" if not settings.is_production() else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(progress.router, prefix="/api")
    app.include_router(gamification.router, prefix="/api")
    app.include_router(sync.router, prefix="/api")

    if settings.ENABLE_METRICS:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")

    @app.exception_handler(ProgressEngineError)
    async def progress_error_handler(request: Request, exc: ProgressEngineError):
        headers = None
        if isinstance(exc, StoreUnavailable) and exc.retry_after:
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, error=exc.code, detail=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.get("/", tags=["root"])
    async def root():
        """Root endpoint."""
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "status": "operational"
        }

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """Health check endpoint."""
        health_status = {
            "status": "healthy",
            "service": settings.SERVICE_NAME,
            "version": settings.APP_VERSION,
            "checks": {}
        }

        # Check database
        try:
            async with request.app.state.session_factory() as db:
                await db.execute(text("SELECT 1"))
            health_status["checks"]["database"] = "healthy"
        except Exception as e:
            health_status["checks"]["database"] = f"unhealthy: {str(e)}"
            health_status["status"] = "degraded"

        # Check cache
        try:
            if getattr(request.app.state, "redis_cache", None) is not None:
                await request.app.state.redis_cache.exists("health_check")
                health_status["checks"]["cache"] = "healthy"
        except Exception as e:
            health_status["checks"]["cache"] = f"unhealthy: {str(e)}"
            health_status["status"] = "degraded"

        scheduler = getattr(request.app.state, "scheduler", None)
        health_status["checks"]["scheduler"] = "running" if scheduler and scheduler.running else "disabled"

        status_code = 200 if health_status["status"] == "healthy" else 503
        return JSONResponse(content=health_status, status_code=status_code)

    @app.get("/config", tags=["debug"])
    async def get_config():
        """Get current configuration (non-production only)."""
        if settings.is_production():
            return JSONResponse(
                content={"error": "Not available in production"},
                status_code=403
            )

        return {
            "environment": settings.ENVIRONMENT,
            "xp": {
                "article_base": settings.XP_ARTICLE_BASE,
                "article_long": settings.XP_ARTICLE_LONG,
                "article_very_long": settings.XP_ARTICLE_VERY_LONG,
                "comment_posted": settings.XP_COMMENT_POSTED,
                "comment_daily_cap": settings.COMMENT_XP_DAILY_CAP,
                "quiz_passed": settings.XP_QUIZ_PASSED,
                "per_course_article": settings.XP_PER_COURSE_ARTICLE,
            },
            "streak_timezone": settings.STREAK_TIMEZONE,
            "reconciliation": {
                "concurrency": settings.RECONCILE_CONCURRENCY,
                "interval_seconds": settings.RECONCILE_INTERVAL_SECONDS,
            },
            "store_timeout_seconds": settings.STORE_TIMEOUT_SECONDS,
            "leaderboard_size": settings.LEADERBOARD_SIZE
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "progress_engine.main:app",
        host="0.0.0.0",
        port=settings.SERVICE_PORT,
        reload=settings.ENVIRONMENT == "development",
        log_config=None  # Use structlog instead
    )
