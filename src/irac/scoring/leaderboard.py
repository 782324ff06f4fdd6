"""Leaderboard queries with a short-lived Redis page cache.

Ordering: score desc, level desc, current points desc, user id asc.
``all_time`` scores by lifetime points; the windowed timeframes score by
positive completed ledger points since the window start.
"""

from __future__ import annotations

import json
from datetime import date, datetime, time, timedelta, timezone

import structlog

from irac.scoring.constants import Timeframe
from irac.scoring.domain import RankedEntry
from irac.scoring.exceptions import InvalidPaginationError, InvalidTimeframeError
from irac.scoring.repository import ScoringStorage

logger = structlog.get_logger()

LEADERBOARD_CACHE_KEY = "leaderboard:{timeframe}:{offset}:{limit}"
MAX_PAGE_SIZE = 100


def get_monday(dt: datetime | date) -> date:
    """Get the Monday of the ISO week containing dt."""
    d = dt.date() if isinstance(dt, datetime) else dt
    return d - timedelta(days=d.weekday())


def window_start(timeframe: Timeframe, now: datetime | None = None) -> datetime | None:
    """UTC start of the scoring window; None for all-time."""
    if timeframe == Timeframe.ALL_TIME:
        return None
    if now is None:
        now = datetime.now(timezone.utc)
    today = now.astimezone(timezone.utc).date()
    if timeframe == Timeframe.DAILY:
        start = today
    elif timeframe == Timeframe.WEEKLY:
        start = get_monday(today)
    else:
        start = today.replace(day=1)
    return datetime.combine(start, time.min, tzinfo=timezone.utc)


def parse_timeframe(value: Timeframe | str) -> Timeframe:
    try:
        return Timeframe(value)
    except ValueError as exc:
        raise InvalidTimeframeError(
            f"Unknown timeframe '{value}'", {"allowed": [t.value for t in Timeframe]}
        ) from exc


def _entry(entry: RankedEntry) -> dict:
    progress = entry.progress
    return {
        "rank": entry.rank,
        "user_id": progress.user_id,
        "score": entry.score,
        "total_lifetime_points": progress.total_lifetime_points,
        "current_points": progress.current_points,
        "level": progress.level,
        "achievement_count": progress.achievement_count,
        "daily_login_streak": progress.daily_login_streak,
    }


class LeaderboardQuery:
    def __init__(self, storage: ScoringStorage, redis: object = None, cache_ttl: int = 10) -> None:
        self.storage = storage
        self.redis = redis
        self.cache_ttl = cache_ttl

    async def _cache_get(self, key: str) -> dict | None:
        if self.redis is None:
            return None
        try:
            cached = await self.redis.get(key)  # type: ignore[union-attr]
        except Exception:
            logger.warning("leaderboard_cache_read_failed", key=key, exc_info=True)
            return None
        return json.loads(cached) if cached else None

    async def _cache_set(self, key: str, page: dict) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.set(key, json.dumps(page), ex=self.cache_ttl)  # type: ignore[union-attr]
        except Exception:
            logger.warning("leaderboard_cache_write_failed", key=key, exc_info=True)

    async def get(
        self,
        limit: int = 50,
        offset: int = 0,
        timeframe: Timeframe | str = Timeframe.ALL_TIME,
        now: datetime | None = None,
    ) -> dict:
        """One leaderboard page; frozen and non-active users are excluded."""
        if limit < 1 or limit > MAX_PAGE_SIZE or offset < 0:
            raise InvalidPaginationError(
                "Invalid pagination parameters",
                {"limit": limit, "offset": offset, "max_limit": MAX_PAGE_SIZE},
            )
        timeframe = parse_timeframe(timeframe)

        cache_key = LEADERBOARD_CACHE_KEY.format(timeframe=timeframe, offset=offset, limit=limit)
        cached = await self._cache_get(cache_key)
        if cached is not None:
            return cached

        since = window_start(timeframe, now)
        entries = await self.storage.progress.ranked(limit, offset, since)
        total = await self.storage.progress.count_ranked(since)
        page = {
            "timeframe": str(timeframe),
            "entries": [_entry(e) for e in entries],
            "total_count": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + limit < total,
        }
        await self._cache_set(cache_key, page)
        return page

    async def get_user_rank(
        self,
        user_id: str,
        timeframe: Timeframe | str = Timeframe.ALL_TIME,
        now: datetime | None = None,
    ) -> int | None:
        """1-based rank, or None for frozen, inactive or unknown users."""
        timeframe = parse_timeframe(timeframe)
        return await self.storage.progress.rank_of(user_id, window_start(timeframe, now))
