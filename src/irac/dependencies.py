"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from irac.database import get_session as _get_session
from irac.redis_client import get_redis_or_none
from irac.scoring.repository import ScoringStorage
from irac.scoring.sql_repository import SqlScoringStorage

get_db = _get_session


async def get_redis_dep() -> AsyncGenerator[object, None]:
    """Yield the Redis client, or None when Redis is not configured."""
    yield get_redis_or_none()


async def get_storage(db: AsyncSession = Depends(get_db)) -> ScoringStorage:  # noqa: B008
    """Scoring storage bound to the request's session."""
    return SqlScoringStorage(db)
