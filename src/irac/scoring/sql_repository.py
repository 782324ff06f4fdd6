"""SQLAlchemy scoring storage.

One ``SqlScoringStorage`` wraps one ``AsyncSession``; ``atomic()`` is the
transaction boundary for an award. Counters are updated with in-place
``col = col + :n`` statements, and the row lock taken by that UPDATE
serializes level/achievement evaluation for the same user on PostgreSQL.
"""

from __future__ import annotations

import functools
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, ParamSpec, TypeVar

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from irac.db.models import ScoringTransactionRow, UserLevel
from irac.scoring.constants import ProgressStatus, ScoringAction, TransactionStatus
from irac.scoring.domain import (
    PROGRESS_FIELDS,
    ExternalReference,
    ProgressDelta,
    RankedEntry,
    ScoringTransaction,
    UserProgress,
)
from irac.scoring.exceptions import (
    DuplicateAwardError,
    InvalidPointsError,
    StorageError,
    UserNotFoundError,
)

P = ParamSpec("P")
R = TypeVar("R")

_COMPLETED = TransactionStatus.COMPLETED.value


def _storage_errors(fn: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
    """Surface driver/ORM failures as StorageError."""

    @functools.wraps(fn)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return await fn(*args, **kwargs)
        except SQLAlchemyError as exc:
            raise StorageError(
                "Scoring storage failure", {"operation": fn.__name__, "error": exc.__class__.__name__}
            ) from exc

    return wrapper


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_transaction(row: ScoringTransactionRow) -> ScoringTransaction:
    reference = None
    if row.reference_id is not None:
        reference = ExternalReference(row.reference_id, row.reference_type or "other")
    return ScoringTransaction(
        id=str(row.id),
        user_id=row.user_id,
        points=row.points,
        action=ScoringAction(row.action),
        description=row.description,
        metadata=dict(row.metadata_ or {}),
        created_at=_aware(row.created_at),
        processed_at=_aware(row.processed_at),
        status=TransactionStatus(row.status),
        reference=reference,
        order_id=row.order_id,
        course_id=row.course_id,
        processed_by=row.processed_by,
    )


def _window_totals(since: datetime) -> Any:
    """(user_id, score) over positive completed rows at or after ``since``."""
    return (
        select(
            ScoringTransactionRow.user_id.label("user_id"),
            func.sum(ScoringTransactionRow.points).label("score"),
        )
        .where(
            ScoringTransactionRow.status == _COMPLETED,
            ScoringTransactionRow.points > 0,
            ScoringTransactionRow.created_at >= since,
        )
        .group_by(ScoringTransactionRow.user_id)
    )


def _to_progress(row: UserLevel) -> UserProgress:
    values: dict[str, Any] = {name: getattr(row, name) for name in PROGRESS_FIELDS}
    values["achievements"] = list(row.achievements or [])
    values["status"] = ProgressStatus(row.status)
    for name, value in values.items():
        if isinstance(value, datetime):
            values[name] = _aware(value)
    return UserProgress(**values)


class SqlPointsLedger:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @_storage_errors
    async def append(
        self,
        user_id: str,
        action: ScoringAction,
        points: int,
        description: str,
        metadata: dict,
        now: datetime,
        reference: ExternalReference | None = None,
        order_id: str | None = None,
        course_id: str | None = None,
        processed_by: str | None = None,
    ) -> ScoringTransaction:
        if points == 0:
            raise InvalidPointsError("Points must be a non-zero integer", {"points": points})

        details: dict[str, Any] = {}
        if reference is not None:
            details = {
                "reference_id": reference.reference_id,
                "reference_type": reference.reference_type,
            }
            existing = await self.session.execute(
                select(ScoringTransactionRow.id).where(
                    ScoringTransactionRow.user_id == user_id,
                    ScoringTransactionRow.reference_id == reference.reference_id,
                    ScoringTransactionRow.reference_type == reference.reference_type,
                    ScoringTransactionRow.status == _COMPLETED,
                )
            )
            found = existing.scalar_one_or_none()
            if found is not None:
                raise DuplicateAwardError(details={**details, "transaction_id": str(found)})

        row = ScoringTransactionRow(
            user_id=user_id,
            points=points,
            action=str(action),
            status=_COMPLETED,
            description=description,
            metadata_=metadata,
            reference_id=reference.reference_id if reference else None,
            reference_type=reference.reference_type if reference else None,
            order_id=order_id,
            course_id=course_id,
            processed_by=processed_by,
            processed_at=now,
            created_at=now,
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            # Concurrent award with the same reference committed first
            raise DuplicateAwardError(details=details) from exc
        return _to_transaction(row)

    @_storage_errors
    async def recent(self, user_id: str, limit: int) -> list[ScoringTransaction]:
        result = await self.session.execute(
            select(ScoringTransactionRow)
            .where(
                ScoringTransactionRow.user_id == user_id,
                ScoringTransactionRow.status == _COMPLETED,
            )
            .order_by(ScoringTransactionRow.created_at.desc(), ScoringTransactionRow.id.desc())
            .limit(limit)
        )
        return [_to_transaction(row) for row in result.scalars()]

    @_storage_errors
    async def count_for_user(self, user_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(ScoringTransactionRow)
            .where(
                ScoringTransactionRow.user_id == user_id,
                ScoringTransactionRow.status == _COMPLETED,
            )
        )
        return result.scalar_one()

    @_storage_errors
    async def iter_user(self, user_id: str) -> list[ScoringTransaction]:
        result = await self.session.execute(
            select(ScoringTransactionRow)
            .where(
                ScoringTransactionRow.user_id == user_id,
                ScoringTransactionRow.status == _COMPLETED,
            )
            .order_by(ScoringTransactionRow.created_at.asc(), ScoringTransactionRow.id.asc())
        )
        return [_to_transaction(row) for row in result.scalars()]

    @_storage_errors
    async def user_ids(self) -> list[str]:
        result = await self.session.execute(
            select(ScoringTransactionRow.user_id).distinct().order_by(ScoringTransactionRow.user_id)
        )
        return list(result.scalars())

    @_storage_errors
    async def totals_by_user_since(self, since: datetime) -> dict[str, int]:
        result = await self.session.execute(_window_totals(since))
        return {user_id: int(score) for user_id, score in result.all()}

    @_storage_errors
    async def reference_times(self, user_id: str, reference_type: str) -> dict[str, datetime]:
        result = await self.session.execute(
            select(ScoringTransactionRow.reference_id, ScoringTransactionRow.created_at).where(
                ScoringTransactionRow.user_id == user_id,
                ScoringTransactionRow.status == _COMPLETED,
                ScoringTransactionRow.reference_type == reference_type,
            )
        )
        return {reference_id: _aware(created_at) for reference_id, created_at in result.all()}


class SqlUserProgressStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _dialect(self) -> str:
        return self.session.get_bind().dialect.name

    def _insert(self) -> Any:
        return sqlite_insert if self._dialect() == "sqlite" else pg_insert

    async def _ensure_row(self, user_id: str, now: datetime) -> None:
        """Create the user's row lazily; a concurrent creator wins silently."""
        insert = self._insert()
        stmt = insert(UserLevel).values(
            user_id=user_id,
            achievements=[],
            created_at=now,
            updated_at=now,
        )
        await self.session.execute(stmt.on_conflict_do_nothing(index_elements=["user_id"]))

    async def _load(self, user_id: str, *, for_update: bool = False) -> UserLevel | None:
        stmt = (
            select(UserLevel)
            .where(UserLevel.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _update(self, user_id: str, values: dict[str, Any]) -> None:
        await self.session.execute(
            update(UserLevel)
            .where(UserLevel.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def _require(self, user_id: str, *, for_update: bool = False) -> UserLevel:
        row = await self._load(user_id, for_update=for_update)
        if row is None:
            raise UserNotFoundError("No scoring record for user", {"user_id": user_id})
        return row

    @_storage_errors
    async def get(self, user_id: str) -> UserProgress | None:
        row = await self._load(user_id)
        return _to_progress(row) if row else None

    @_storage_errors
    async def apply_delta(self, user_id: str, delta: ProgressDelta, now: datetime) -> UserProgress:
        await self._ensure_row(user_id, now)

        current = UserLevel.current_points + delta.current_points
        values: dict[str, Any] = {
            "current_points": case((current < 0, 0), else_=current) if delta.current_points < 0 else current,
            "total_lifetime_points": UserLevel.total_lifetime_points + delta.lifetime_points,
            "last_points_earned_at": now,
            "updated_at": now,
        }
        if delta.bucket:
            column = getattr(UserLevel, f"points_from_{delta.bucket}")
            values[column.key] = column + delta.lifetime_points
        if delta.counter:
            column = getattr(UserLevel, delta.counter)
            values[column.key] = column + 1
        if delta.spent:
            values["total_spent"] = UserLevel.total_spent + delta.spent
        if delta.penalty_points:
            values["total_penalties"] = UserLevel.total_penalties + 1
            values["points_lost_to_penalties"] = UserLevel.points_lost_to_penalties + delta.penalty_points
        if delta.login_streak is not None:
            streak = delta.login_streak
            values["daily_login_streak"] = streak
            values["max_daily_login_streak"] = case(
                (UserLevel.max_daily_login_streak < streak, streak),
                else_=UserLevel.max_daily_login_streak,
            )
            values["total_logins"] = UserLevel.total_logins + 1
            values["last_login_at"] = delta.login_at

        await self._update(user_id, values)
        return _to_progress(await self._require(user_id))

    @_storage_errors
    async def record_evaluation(
        self,
        user_id: str,
        *,
        level: int,
        points_to_next_level: int,
        level_progress_percentage: int,
        new_achievements: list[str],
        leveled_up: bool,
        now: datetime,
    ) -> UserProgress:
        row = await self._require(user_id, for_update=True)
        held = list(row.achievements or [])
        added = [a for a in dict.fromkeys(new_achievements) if a not in held]

        values: dict[str, Any] = {
            "level": level,
            "points_to_next_level": points_to_next_level,
            "level_progress_percentage": level_progress_percentage,
            "updated_at": now,
        }
        if added:
            values["achievements"] = held + added
            values["achievement_count"] = UserLevel.achievement_count + len(added)
            values["last_achievement_at"] = now
        if leveled_up:
            values["last_level_up_at"] = now

        await self._update(user_id, values)
        return _to_progress(await self._require(user_id))

    @_storage_errors
    async def set_status(
        self,
        user_id: str,
        *,
        status: ProgressStatus,
        is_frozen: bool,
        freeze_reason: str | None,
        now: datetime,
    ) -> UserProgress:
        await self._ensure_row(user_id, now)
        await self._update(user_id, {
            "status": str(status),
            "is_frozen": is_frozen,
            "freeze_reason": freeze_reason,
            "updated_at": now,
        })
        return _to_progress(await self._require(user_id))

    @_storage_errors
    async def lock(self, user_id: str) -> UserProgress | None:
        if self._dialect() == "sqlite":
            # No row locks: a no-op write takes the database write lock instead
            await self._update(user_id, {"user_id": UserLevel.user_id})
        row = await self._load(user_id, for_update=True)
        return _to_progress(row) if row else None

    @_storage_errors
    async def overwrite(self, user_id: str, values: dict, now: datetime) -> UserProgress:
        unknown = set(values) - set(PROGRESS_FIELDS)
        if unknown:
            raise ValueError(f"Unknown progress fields: {sorted(unknown)}")
        await self._ensure_row(user_id, now)
        await self._update(user_id, {**values, "updated_at": now})
        return _to_progress(await self._require(user_id))

    # -- Leaderboard --

    def _scored(self, since: datetime | None) -> tuple[Any, Any]:
        """(select of (UserLevel, score), score column) over ranked users."""
        ranked_filter = and_(UserLevel.is_frozen.is_(False), UserLevel.status == ProgressStatus.ACTIVE.value)
        if since is None:
            score = UserLevel.total_lifetime_points
            return select(UserLevel, score.label("score")).where(ranked_filter), score
        window = _window_totals(since).subquery()
        stmt = (
            select(UserLevel, window.c.score)
            .join(window, window.c.user_id == UserLevel.user_id)
            .where(ranked_filter)
        )
        return stmt, window.c.score

    @_storage_errors
    async def ranked(
        self, limit: int, offset: int, since: datetime | None = None
    ) -> list[RankedEntry]:
        stmt, score = self._scored(since)
        result = await self.session.execute(
            stmt.order_by(
                score.desc(),
                UserLevel.level.desc(),
                UserLevel.current_points.desc(),
                UserLevel.user_id.asc(),
            )
            .offset(offset)
            .limit(limit)
        )
        return [
            RankedEntry(rank=offset + index + 1, progress=_to_progress(row), score=int(value))
            for index, (row, value) in enumerate(result.all())
        ]

    @_storage_errors
    async def count_ranked(self, since: datetime | None = None) -> int:
        stmt, _ = self._scored(since)
        result = await self.session.execute(select(func.count()).select_from(stmt.subquery()))
        return result.scalar_one()

    @_storage_errors
    async def rank_of(self, user_id: str, since: datetime | None = None) -> int | None:
        stmt, score = self._scored(since)
        mine = (await self.session.execute(stmt.where(UserLevel.user_id == user_id))).first()
        if mine is None:
            return None
        row, my_score = mine
        sorts_before = or_(
            score > my_score,
            and_(score == my_score, UserLevel.level > row.level),
            and_(
                score == my_score,
                UserLevel.level == row.level,
                UserLevel.current_points > row.current_points,
            ),
            and_(
                score == my_score,
                UserLevel.level == row.level,
                UserLevel.current_points == row.current_points,
                UserLevel.user_id < row.user_id,
            ),
        )
        ahead = stmt.where(sorts_before).subquery()
        result = await self.session.execute(select(func.count()).select_from(ahead))
        return result.scalar_one() + 1


class SqlScoringStorage:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.ledger = SqlPointsLedger(session)
        self.progress = SqlUserProgressStore(session)

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        try:
            yield
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise StorageError("Scoring storage failure", {"error": exc.__class__.__name__}) from exc
        except BaseException:
            await self.session.rollback()
            raise
