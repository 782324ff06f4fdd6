"""Scoring actions, point values, and action -> breakdown bucket mapping."""

from __future__ import annotations

from enum import StrEnum


class ScoringAction(StrEnum):
    PURCHASE = "purchase"
    COURSE_COMPLETE = "course_complete"
    REFERRAL = "referral"
    DAILY_LOGIN = "daily_login"
    WORKSHOP_BOOKING = "workshop_booking"
    REVIEW_WRITE = "review_write"
    PROFILE_COMPLETE = "profile_complete"
    SOCIAL_SHARE = "social_share"
    BONUS = "bonus"
    PENALTY = "penalty"
    MANUAL_ADJUSTMENT = "manual_adjustment"


class TransactionStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ReferenceType(StrEnum):
    ORDER = "order"
    COURSE = "course"
    REFERRAL = "referral"
    BOOKING = "booking"
    REVIEW = "review"
    ACHIEVEMENT = "achievement"
    DAILY_LOGIN = "daily_login"
    OTHER = "other"


class ProgressStatus(StrEnum):
    ACTIVE = "active"
    FROZEN = "frozen"
    PENALTY = "penalty"


class Timeframe(StrEnum):
    ALL_TIME = "all_time"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


LEVEL_THRESHOLD = 500

# scoring_transaction.points is a 32-bit column
MAX_TRANSACTION_POINTS = 2**31 - 1

POINTS_CONFIG: dict[str, int] = {
    "course_purchase": 50,
    "course_completion": 100,
    "daily_login": 5,
    "referral_success": 200,
    "workshop_booking": 25,
    "review_write": 15,
    "profile_complete": 20,
    "social_share": 10,
}

# 1 point per 1000 IRR spent
PURCHASE_POINTS_UNIT = 1000
PURCHASE_POINTS_RATE = 1

# Breakdown column (without the "points_from_" prefix) credited per action.
# penalty has no bucket: it never touches lifetime points.
ACTION_BUCKETS: dict[ScoringAction, str] = {
    ScoringAction.PURCHASE: "purchases",
    ScoringAction.COURSE_COMPLETE: "courses",
    ScoringAction.REFERRAL: "referrals",
    ScoringAction.DAILY_LOGIN: "activities",
    ScoringAction.WORKSHOP_BOOKING: "activities",
    ScoringAction.REVIEW_WRITE: "activities",
    ScoringAction.PROFILE_COMPLETE: "activities",
    ScoringAction.SOCIAL_SHARE: "activities",
    ScoringAction.BONUS: "bonuses",
    ScoringAction.MANUAL_ADJUSTMENT: "bonuses",
}

BREAKDOWN_BUCKETS = ("purchases", "courses", "referrals", "activities", "bonuses")

# Per-action activity counter on user_level.
ACTION_COUNTERS: dict[ScoringAction, str] = {
    ScoringAction.PURCHASE: "total_purchases",
    ScoringAction.COURSE_COMPLETE: "total_courses_completed",
    ScoringAction.REFERRAL: "total_referrals",
    ScoringAction.WORKSHOP_BOOKING: "total_workshop_bookings",
    ScoringAction.REVIEW_WRITE: "total_reviews",
    ScoringAction.SOCIAL_SHARE: "total_social_shares",
}

# Only admins and collaborating services may issue these.
ADMIN_ACTIONS = frozenset({
    ScoringAction.BONUS,
    ScoringAction.PENALTY,
    ScoringAction.MANUAL_ADJUSTMENT,
})


def calculate_purchase_points(amount: int) -> int:
    """Points earned for a purchase of ``amount`` IRR."""
    if amount <= 0:
        return 0
    return (amount // PURCHASE_POINTS_UNIT) * PURCHASE_POINTS_RATE


# Points used when a collaborator event carries none.
DEFAULT_ACTION_POINTS: dict[ScoringAction, int] = {
    ScoringAction.COURSE_COMPLETE: POINTS_CONFIG["course_completion"],
    ScoringAction.REFERRAL: POINTS_CONFIG["referral_success"],
    ScoringAction.DAILY_LOGIN: POINTS_CONFIG["daily_login"],
    ScoringAction.WORKSHOP_BOOKING: POINTS_CONFIG["workshop_booking"],
    ScoringAction.REVIEW_WRITE: POINTS_CONFIG["review_write"],
    ScoringAction.PROFILE_COMPLETE: POINTS_CONFIG["profile_complete"],
    ScoringAction.SOCIAL_SHARE: POINTS_CONFIG["social_share"],
}
