"""Shared dependencies for the Progress Engine."""

from typing import Optional
from aiocache import Cache
import structlog
from jose import jwt, JWTError
from datetime import datetime, timedelta, timezone
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from progress_engine.core.config import settings

logger = structlog.get_logger()

# Global instances
_redis_cache: Optional[Cache] = None

# Security
security = HTTPBearer()


async def get_redis_cache():
    """Get Redis cache instance."""
    global _redis_cache

    if _redis_cache is None:
        try:
            _redis_cache = Cache.from_url(settings.REDIS_URL)
            await _redis_cache.exists("test")  # Test connection
            logger.info("Redis cache connection established")
        except Exception as e:
            logger.warning("Redis cache not available, using memory cache", error=str(e))
            _redis_cache = Cache(Cache.MEMORY)

    return _redis_cache


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """Create JWT access token."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return encoded_jwt


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Get current user from JWT token."""
    token = credentials.credentials

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    roles = payload.get("roles") or [payload.get("role", "user")]
    return {"sub": str(user_id), "roles": list(roles)}


def is_admin(current_user: dict) -> bool:
    return "admin" in current_user.get("roles", [])


async def require_admin(current_user: dict = Depends(get_current_user)):
    if not is_admin(current_user):
        raise HTTPException(status_code=403, detail="Admin access required")
    return current_user


def ensure_self_or_admin(current_user: dict, user_id: str):
    if current_user["sub"] != user_id and not is_admin(current_user):
        raise HTTPException(status_code=403, detail="Not authorized for this user")


def get_progress_store(request: Request):
    return request.app.state.progress_store


def get_reconciliation_engine(request: Request):
    return request.app.state.reconciliation_engine
