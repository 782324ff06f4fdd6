"""Plain data carried between the engine and its storage."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime

from irac.scoring.constants import (
    ACTION_BUCKETS,
    ACTION_COUNTERS,
    BREAKDOWN_BUCKETS,
    LEVEL_THRESHOLD,
    ProgressStatus,
    ScoringAction,
    TransactionStatus,
)
from irac.scoring.metadata import ActionMetadata, LoginMetadata, PurchaseMetadata


@dataclass(frozen=True)
class ExternalReference:
    reference_id: str
    reference_type: str


@dataclass(frozen=True)
class ScoringTransaction:
    """Immutable ledger row."""

    id: str
    user_id: str
    points: int
    action: ScoringAction
    description: str
    metadata: dict
    created_at: datetime
    processed_at: datetime
    status: TransactionStatus = TransactionStatus.COMPLETED
    reference: ExternalReference | None = None
    order_id: str | None = None
    course_id: str | None = None
    processed_by: str | None = None


@dataclass
class UserProgress:
    """Snapshot of the per-user aggregate."""

    user_id: str
    current_points: int = 0
    total_lifetime_points: int = 0
    level: int = 1
    achievements: list[str] = field(default_factory=list)
    achievement_count: int = 0
    points_to_next_level: int = LEVEL_THRESHOLD
    level_progress_percentage: int = 0
    points_from_purchases: int = 0
    points_from_courses: int = 0
    points_from_referrals: int = 0
    points_from_activities: int = 0
    points_from_bonuses: int = 0
    total_penalties: int = 0
    points_lost_to_penalties: int = 0
    current_multiplier: float = 1.0
    is_frozen: bool = False
    freeze_reason: str | None = None
    status: ProgressStatus = ProgressStatus.ACTIVE
    daily_login_streak: int = 0
    max_daily_login_streak: int = 0
    total_logins: int = 0
    total_purchases: int = 0
    total_spent: int = 0
    total_courses_completed: int = 0
    total_referrals: int = 0
    total_workshop_bookings: int = 0
    total_reviews: int = 0
    total_social_shares: int = 0
    last_login_at: datetime | None = None
    last_points_earned_at: datetime | None = None
    last_level_up_at: datetime | None = None
    last_achievement_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def breakdown(self) -> dict[str, int]:
        return {bucket: getattr(self, f"points_from_{bucket}") for bucket in BREAKDOWN_BUCKETS}

    @property
    def is_ranked(self) -> bool:
        """Whether the user may appear on the leaderboard."""
        return not self.is_frozen and self.status == ProgressStatus.ACTIVE

    def sort_key(self, score: int | None = None) -> tuple:
        """Leaderboard ordering: ascending sort of this key is rank order."""
        primary = self.total_lifetime_points if score is None else score
        return (-primary, -self.level, -self.current_points, self.user_id)


PROGRESS_FIELDS = tuple(f.name for f in fields(UserProgress))


@dataclass(frozen=True)
class ProgressDelta:
    """Counter changes produced by one ledger row.

    Applied as in-place increments; only the login streak is a set, and it
    is guarded by the per-day ledger reference.
    """

    current_points: int = 0
    lifetime_points: int = 0
    bucket: str | None = None
    counter: str | None = None
    spent: int = 0
    penalty_points: int = 0
    login_streak: int | None = None
    login_at: datetime | None = None

    @classmethod
    def for_award(
        cls,
        action: ScoringAction,
        points: int,
        metadata: ActionMetadata | None,
        now: datetime,
    ) -> ProgressDelta:
        if action == ScoringAction.PENALTY:
            return cls(current_points=points, penalty_points=-points)

        spent = metadata.amount if isinstance(metadata, PurchaseMetadata) else 0
        login_streak = None
        login_at = None
        if action == ScoringAction.DAILY_LOGIN:
            login_streak = metadata.streak if isinstance(metadata, LoginMetadata) else 1
            login_at = now
        return cls(
            current_points=points,
            lifetime_points=points,
            bucket=ACTION_BUCKETS[action],
            counter=ACTION_COUNTERS.get(action),
            spent=spent,
            login_streak=login_streak,
            login_at=login_at,
        )


@dataclass
class AwardResult:
    user_id: str
    points_awarded: int
    new_total_points: int
    new_current_points: int
    new_level: int
    leveled_up: bool
    new_achievements: list[str]
    points_to_next_level: int
    progress_percentage: int
    transaction_id: str | None = None
    duplicate: bool = False

    @classmethod
    def from_snapshot(cls, progress: UserProgress, *, duplicate: bool = False) -> AwardResult:
        """Result describing the current totals without a new award."""
        return cls(
            user_id=progress.user_id,
            points_awarded=0,
            new_total_points=progress.total_lifetime_points,
            new_current_points=progress.current_points,
            new_level=progress.level,
            leveled_up=False,
            new_achievements=[],
            points_to_next_level=progress.points_to_next_level,
            progress_percentage=progress.level_progress_percentage,
            duplicate=duplicate,
        )


@dataclass(frozen=True)
class RankedEntry:
    rank: int
    progress: UserProgress
    score: int
