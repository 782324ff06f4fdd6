"""Pydantic request and response models for scoring endpoints."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, StrictInt

from irac.scoring.constants import ProgressStatus, ReferenceType, ScoringAction, Timeframe


# --- Award ---


class AwardPointsRequest(BaseModel):
    user_id: str | None = None  # defaults to the caller
    action: ScoringAction
    points: StrictInt
    description: str = Field("", max_length=512)
    metadata: dict[str, Any] | None = None
    reference_id: str | None = Field(None, max_length=128)
    reference_type: ReferenceType | None = None
    order_id: str | None = None
    course_id: str | None = None


class AwardPointsResponse(BaseModel):
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


# --- Score ---


class TransactionResponse(BaseModel):
    id: str
    points: int
    action: ScoringAction
    description: str
    metadata: dict[str, Any] = {}
    status: str
    reference_id: str | None = None
    reference_type: str | None = None
    created_at: datetime


class PointsBreakdown(BaseModel):
    purchases: int = 0
    courses: int = 0
    referrals: int = 0
    activities: int = 0
    bonuses: int = 0


class UserScoreResponse(BaseModel):
    user_id: str
    current_points: int
    total_lifetime_points: int
    level: int
    points_to_next_level: int
    level_progress_percentage: int
    achievements: list[str]
    achievement_count: int
    breakdown: PointsBreakdown
    total_penalties: int
    points_lost_to_penalties: int
    current_multiplier: float
    status: ProgressStatus
    is_frozen: bool
    daily_login_streak: int
    max_daily_login_streak: int
    total_logins: int
    total_purchases: int
    total_spent: int
    total_courses_completed: int
    total_referrals: int
    total_workshop_bookings: int
    total_reviews: int
    total_social_shares: int
    last_login_at: datetime | None = None
    last_points_earned_at: datetime | None = None
    last_level_up_at: datetime | None = None
    last_achievement_at: datetime | None = None
    rank: int | None = None
    total_transactions: int = 0
    recent_transactions: list[TransactionResponse] = []


# --- Leaderboard ---


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: str
    score: int
    total_lifetime_points: int
    current_points: int
    level: int
    achievement_count: int
    daily_login_streak: int


class LeaderboardResponse(BaseModel):
    timeframe: Timeframe
    entries: list[LeaderboardEntry]
    total_count: int
    limit: int
    offset: int
    has_more: bool
    user_rank: int | None = None


# --- Daily login ---


class DailyLoginRequest(BaseModel):
    device: str | None = Field(None, max_length=64)
    active_days: int | None = Field(None, ge=0)


class DailyLoginResponse(BaseModel):
    user_id: str
    already_processed: bool = False
    streak: int
    max_streak: int | None = None
    streak_state: str | None = None
    points_awarded: int = 0
    login_date: date | None = None
    award: AwardPointsResponse | None = None


# --- Achievements ---


class AchievementDefinition(BaseModel):
    id: str
    name: str
    description: str
    category: str
    rarity: str
    progress_type: str
    target_value: int
    points_reward: int


class AchievementProgress(BaseModel):
    percentage: int
    current_value: int
    target_value: int
    is_complete: bool


class UserAchievementItem(AchievementDefinition):
    is_earned: bool
    earned_at: datetime | None = None
    progress: AchievementProgress


class UserAchievementsResponse(BaseModel):
    user_id: str
    achievements: list[UserAchievementItem]
    total_count: int
    limit: int
    offset: int
    earned_count: int
    total_possible: int
    completion_percentage: int
    rarity_breakdown: dict[str, int]


class AchievementCatalogResponse(BaseModel):
    achievements: list[AchievementDefinition]


# --- Levels ---


class LevelEntry(BaseModel):
    level: int
    points_required: int
    cumulative: int


class LevelsResponse(BaseModel):
    levels: list[LevelEntry]
    points_per_level: int


# --- Admin ---


class StatusUpdateRequest(BaseModel):
    status: Literal["active", "frozen", "penalty"]
    reason: str | None = Field(None, max_length=256)


class StatusUpdateResponse(BaseModel):
    user_id: str
    status: ProgressStatus
    is_frozen: bool
    freeze_reason: str | None = None


class ReconcileResponse(BaseModel):
    user_id: str
    healed: bool
    drift: dict[str, dict[str, int]]
