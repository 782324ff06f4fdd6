"""In-memory scoring storage.

Used by tests and local runs without a database. No method suspends, so a
transaction body cannot interleave with another task on the same event
loop; ``atomic()`` snapshots state and restores it if the body raises.
"""

from __future__ import annotations

import copy
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime

from irac.scoring.constants import ProgressStatus, ScoringAction, TransactionStatus
from irac.scoring.domain import (
    PROGRESS_FIELDS,
    ExternalReference,
    ProgressDelta,
    RankedEntry,
    ScoringTransaction,
    UserProgress,
)
from irac.scoring.exceptions import DuplicateAwardError, InvalidPointsError, UserNotFoundError


class _MemoryState:
    def __init__(self) -> None:
        self.transactions: list[ScoringTransaction] = []
        self.progress: dict[str, UserProgress] = {}


def _copy(progress: UserProgress) -> UserProgress:
    return replace(progress, achievements=list(progress.achievements))


def _window_totals(transactions: list[ScoringTransaction], since: datetime) -> dict[str, int]:
    totals: dict[str, int] = {}
    for tx in transactions:
        if tx.status == TransactionStatus.COMPLETED and tx.points > 0 and tx.created_at >= since:
            totals[tx.user_id] = totals.get(tx.user_id, 0) + tx.points
    return totals


class MemoryPointsLedger:
    def __init__(self, state: _MemoryState) -> None:
        self._state = state

    def _completed(self, user_id: str) -> list[ScoringTransaction]:
        return [
            tx for tx in self._state.transactions
            if tx.user_id == user_id and tx.status == TransactionStatus.COMPLETED
        ]

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
        if reference is not None:
            for tx in self._completed(user_id):
                if tx.reference == reference:
                    raise DuplicateAwardError(details={
                        "reference_id": reference.reference_id,
                        "reference_type": reference.reference_type,
                        "transaction_id": tx.id,
                    })

        tx = ScoringTransaction(
            id=str(len(self._state.transactions) + 1),
            user_id=user_id,
            points=points,
            action=action,
            description=description,
            metadata=dict(metadata),
            created_at=now,
            processed_at=now,
            reference=reference,
            order_id=order_id,
            course_id=course_id,
            processed_by=processed_by,
        )
        self._state.transactions.append(tx)
        return tx

    async def recent(self, user_id: str, limit: int) -> list[ScoringTransaction]:
        rows = self._completed(user_id)
        # Insertion order breaks created_at ties
        ordered = sorted(enumerate(rows), key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return [tx for _, tx in ordered[:limit]]

    async def count_for_user(self, user_id: str) -> int:
        return len(self._completed(user_id))

    async def iter_user(self, user_id: str) -> list[ScoringTransaction]:
        return sorted(self._completed(user_id), key=lambda tx: tx.created_at)

    async def user_ids(self) -> list[str]:
        return sorted({tx.user_id for tx in self._state.transactions})

    async def totals_by_user_since(self, since: datetime) -> dict[str, int]:
        return _window_totals(self._state.transactions, since)

    async def reference_times(self, user_id: str, reference_type: str) -> dict[str, datetime]:
        return {
            tx.reference.reference_id: tx.created_at
            for tx in self._completed(user_id)
            if tx.reference is not None and tx.reference.reference_type == reference_type
        }


class MemoryUserProgressStore:
    def __init__(self, state: _MemoryState) -> None:
        self._state = state

    def _require(self, user_id: str) -> UserProgress:
        progress = self._state.progress.get(user_id)
        if progress is None:
            raise UserNotFoundError("No scoring record for user", {"user_id": user_id})
        return progress

    async def get(self, user_id: str) -> UserProgress | None:
        progress = self._state.progress.get(user_id)
        return _copy(progress) if progress else None

    async def apply_delta(self, user_id: str, delta: ProgressDelta, now: datetime) -> UserProgress:
        progress = self._state.progress.get(user_id)
        if progress is None:
            progress = UserProgress(user_id=user_id, created_at=now, updated_at=now)
            self._state.progress[user_id] = progress

        progress.current_points = max(progress.current_points + delta.current_points, 0)
        progress.total_lifetime_points += delta.lifetime_points
        if delta.bucket:
            name = f"points_from_{delta.bucket}"
            setattr(progress, name, getattr(progress, name) + delta.lifetime_points)
        if delta.counter:
            setattr(progress, delta.counter, getattr(progress, delta.counter) + 1)
        progress.total_spent += delta.spent
        if delta.penalty_points:
            progress.total_penalties += 1
            progress.points_lost_to_penalties += delta.penalty_points
        if delta.login_streak is not None:
            progress.daily_login_streak = delta.login_streak
            progress.max_daily_login_streak = max(progress.max_daily_login_streak, delta.login_streak)
            progress.total_logins += 1
            progress.last_login_at = delta.login_at
        progress.last_points_earned_at = now
        progress.updated_at = now
        return _copy(progress)

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
        progress = self._require(user_id)
        progress.level = level
        progress.points_to_next_level = points_to_next_level
        progress.level_progress_percentage = level_progress_percentage
        added = [a for a in dict.fromkeys(new_achievements) if a not in progress.achievements]
        if added:
            progress.achievements.extend(added)
            progress.achievement_count += len(added)
            progress.last_achievement_at = now
        if leveled_up:
            progress.last_level_up_at = now
        progress.updated_at = now
        return _copy(progress)

    async def set_status(
        self,
        user_id: str,
        *,
        status: ProgressStatus,
        is_frozen: bool,
        freeze_reason: str | None,
        now: datetime,
    ) -> UserProgress:
        progress = self._state.progress.get(user_id)
        if progress is None:
            progress = UserProgress(user_id=user_id, created_at=now)
            self._state.progress[user_id] = progress
        progress.status = status
        progress.is_frozen = is_frozen
        progress.freeze_reason = freeze_reason
        progress.updated_at = now
        return _copy(progress)

    async def lock(self, user_id: str) -> UserProgress | None:
        # No await suspends between this read and the caller's writes
        return await self.get(user_id)

    async def overwrite(self, user_id: str, values: dict, now: datetime) -> UserProgress:
        progress = self._state.progress.get(user_id)
        if progress is None:
            progress = UserProgress(user_id=user_id, created_at=now)
            self._state.progress[user_id] = progress
        for name, value in values.items():
            if name not in PROGRESS_FIELDS:
                raise ValueError(f"Unknown progress field: {name}")
            setattr(progress, name, value)
        progress.updated_at = now
        return _copy(progress)

    def _scored(self, since: datetime | None) -> list[tuple[UserProgress, int]]:
        ranked = [p for p in self._state.progress.values() if p.is_ranked]
        if since is None:
            return [(p, p.total_lifetime_points) for p in ranked]

        window = _window_totals(self._state.transactions, since)
        return [(p, window[p.user_id]) for p in ranked if window.get(p.user_id, 0) > 0]

    async def ranked(
        self, limit: int, offset: int, since: datetime | None = None
    ) -> list[RankedEntry]:
        scored = sorted(self._scored(since), key=lambda item: item[0].sort_key(item[1]))
        page = scored[offset:offset + limit]
        return [
            RankedEntry(rank=offset + index + 1, progress=_copy(progress), score=score)
            for index, (progress, score) in enumerate(page)
        ]

    async def count_ranked(self, since: datetime | None = None) -> int:
        return len(self._scored(since))

    async def rank_of(self, user_id: str, since: datetime | None = None) -> int | None:
        scored = self._scored(since)
        mine = next((item for item in scored if item[0].user_id == user_id), None)
        if mine is None:
            return None
        key = mine[0].sort_key(mine[1])
        return sum(1 for progress, score in scored if progress.sort_key(score) < key) + 1


class MemoryScoringStorage:
    def __init__(self) -> None:
        self._state = _MemoryState()
        self.ledger = MemoryPointsLedger(self._state)
        self.progress = MemoryUserProgressStore(self._state)

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        transactions = list(self._state.transactions)
        progress = copy.deepcopy(self._state.progress)
        try:
            yield
        except BaseException:
            self._state.transactions[:] = transactions
            self._state.progress.clear()
            self._state.progress.update(progress)
            raise
