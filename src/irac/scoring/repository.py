"""Storage interfaces the scoring engine is written against.

Two implementations exist: ``sql_repository`` (PostgreSQL in production,
SQLite in tests) and ``memory_repository``. Atomicity lives in the storage
layer: everything inside one ``atomic()`` block commits or rolls back
together, and counter changes are in-place increments.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Protocol

from irac.scoring.constants import ProgressStatus, ScoringAction
from irac.scoring.domain import (
    ExternalReference,
    ProgressDelta,
    RankedEntry,
    ScoringTransaction,
    UserProgress,
)


class PointsLedger(Protocol):
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
        """Insert one completed row.

        Raises InvalidPointsError for zero points and DuplicateAwardError
        when a completed row already holds ``reference`` for this user.
        """
        ...

    async def recent(self, user_id: str, limit: int) -> list[ScoringTransaction]:
        """Completed rows, most recent first."""
        ...

    async def count_for_user(self, user_id: str) -> int: ...

    async def iter_user(self, user_id: str) -> list[ScoringTransaction]:
        """Every completed row for a user, oldest first."""
        ...

    async def user_ids(self) -> list[str]: ...

    async def totals_by_user_since(self, since: datetime) -> dict[str, int]:
        """Sum of positive completed points per user at or after ``since``."""
        ...

    async def reference_times(self, user_id: str, reference_type: str) -> dict[str, datetime]:
        """reference_id -> created_at of the user's completed rows of one reference type."""
        ...


class UserProgressStore(Protocol):
    async def get(self, user_id: str) -> UserProgress | None: ...

    async def apply_delta(self, user_id: str, delta: ProgressDelta, now: datetime) -> UserProgress:
        """Create the row if missing, apply ``delta`` in place, return the post-increment row."""
        ...

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
        """Write derived level fields and union ``new_achievements`` into the set."""
        ...

    async def set_status(
        self,
        user_id: str,
        *,
        status: ProgressStatus,
        is_frozen: bool,
        freeze_reason: str | None,
        now: datetime,
    ) -> UserProgress: ...

    async def lock(self, user_id: str) -> UserProgress | None:
        """Load the row and hold it against concurrent writers until the transaction ends."""
        ...

    async def overwrite(self, user_id: str, values: dict, now: datetime) -> UserProgress:
        """Replace ledger-derived columns. Used only by reconciliation."""
        ...

    async def ranked(
        self, limit: int, offset: int, since: datetime | None = None
    ) -> list[RankedEntry]:
        """Active, non-frozen users in leaderboard order.

        With ``since`` the score is the sum of positive completed ledger
        points at or after ``since``; users with no such points are left out.
        """
        ...

    async def count_ranked(self, since: datetime | None = None) -> int: ...

    async def rank_of(self, user_id: str, since: datetime | None = None) -> int | None:
        """1-based rank under the same ordering as ``ranked``; None if unranked."""
        ...


class ScoringStorage(Protocol):
    ledger: PointsLedger
    progress: UserProgressStore

    def atomic(self) -> AbstractAsyncContextManager[None]:
        """Unit of work: commit on success, roll back and re-raise on error."""
        ...
