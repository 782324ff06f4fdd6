"""Achievement catalog and evaluator.

The catalog is static. ``evaluate_achievements`` looks at a post-award
snapshot plus the award that produced it and returns the ids newly earned.
"""

from __future__ import annotations

from dataclasses import dataclass

from irac.scoring.constants import ScoringAction
from irac.scoring.domain import UserProgress
from irac.scoring.metadata import ActionMetadata, BonusMetadata, LoginMetadata, ProfileMetadata

CATEGORIES = ("level", "activity", "purchase", "social", "streak", "special")
RARITIES = ("common", "uncommon", "rare", "epic", "legendary")

EARLY_BIRD_CAMPAIGN = "early_bird"


@dataclass(frozen=True)
class Achievement:
    id: str
    name: str
    description: str
    category: str
    rarity: str
    progress_type: str
    target_value: int = 1
    points_reward: int = 0
    # UserProgress attribute measured for count/level/streak/cumulative types
    counter: str | None = None


ACHIEVEMENTS: tuple[Achievement, ...] = (
    Achievement(
        "first_purchase", "First Purchase", "Make your first purchase",
        "purchase", "common", "binary",
    ),
    Achievement(
        "big_spender", "Big Spender", "Spend over 1,000,000 IRR",
        "purchase", "legendary", "cumulative", 1_000_000, 500, "total_spent",
    ),
    Achievement(
        "course_master", "Course Master", "Complete 10 courses",
        "activity", "rare", "count", 10, 200, "total_courses_completed",
    ),
    Achievement(
        "level_up_5", "Rising Star", "Reach level 5",
        "level", "common", "level", 5, 100, "level",
    ),
    Achievement(
        "level_up_10", "Expert", "Reach level 10",
        "level", "uncommon", "level", 10, 250, "level",
    ),
    Achievement(
        "level_up_25", "Master", "Reach level 25",
        "level", "epic", "level", 25, 500, "level",
    ),
    Achievement(
        "level_up_50", "Legend", "Reach level 50",
        "level", "legendary", "level", 50, 1000, "level",
    ),
    Achievement(
        "daily_login_streak_7", "Week Warrior", "Login for 7 consecutive days",
        "streak", "common", "streak", 7, 50, "daily_login_streak",
    ),
    Achievement(
        "daily_login_streak_30", "Monthly Champion", "Login for 30 consecutive days",
        "streak", "rare", "streak", 30, 200, "daily_login_streak",
    ),
    Achievement(
        "daily_login_streak_100", "Century Master", "Login for 100 consecutive days",
        "streak", "legendary", "streak", 100, 1000, "daily_login_streak",
    ),
    Achievement(
        "referral_champion", "Referral Champion", "Successfully refer 10 users",
        "social", "epic", "count", 10, 500, "total_referrals",
    ),
    Achievement(
        "social_butterfly", "Social Butterfly", "Share content on social media 20 times",
        "social", "uncommon", "count", 20, 100, "total_social_shares",
    ),
    Achievement(
        "community_contributor", "Community Contributor",
        "Contribute 50 reviews or shares to the community",
        "social", "rare", "count", 50, 250, "community_contributions",
    ),
    Achievement(
        "workshop_enthusiast", "Workshop Enthusiast", "Book 5 workshop sessions",
        "activity", "uncommon", "count", 5, 150, "total_workshop_bookings",
    ),
    Achievement(
        "review_master", "Review Master", "Write 25 helpful reviews",
        "activity", "rare", "count", 25, 200, "total_reviews",
    ),
    Achievement(
        "profile_perfectionist", "Profile Perfectionist", "Complete 100% of your profile",
        "activity", "common", "percentage", 100, 50,
    ),
    Achievement(
        "early_bird", "Early Bird", "Join IRAC in the first month",
        "special", "rare", "binary", 1, 100,
    ),
    Achievement(
        "loyal_customer", "Loyal Customer", "Stay active for 365 days",
        "special", "legendary", "duration", 365, 1000,
    ),
)

_BY_ID = {a.id: a for a in ACHIEVEMENTS}


def get_achievement(achievement_id: str) -> Achievement | None:
    return _BY_ID.get(achievement_id)


def _counter_value(progress: UserProgress, counter: str) -> int:
    if counter == "community_contributions":
        return progress.total_reviews + progress.total_social_shares
    return getattr(progress, counter)


def _active_days(metadata: ActionMetadata | None) -> int:
    if isinstance(metadata, (LoginMetadata, BonusMetadata)) and metadata.active_days is not None:
        return metadata.active_days
    return 0


def _is_earned(
    achievement: Achievement,
    progress: UserProgress,
    action: ScoringAction,
    metadata: ActionMetadata | None,
) -> bool:
    kind = achievement.progress_type
    if kind in ("count", "level", "streak", "cumulative"):
        return _counter_value(progress, achievement.counter) >= achievement.target_value
    if kind == "percentage":
        return (
            isinstance(metadata, ProfileMetadata)
            and metadata.completion_percentage >= achievement.target_value
        )
    if kind == "duration":
        return _active_days(metadata) >= achievement.target_value
    if achievement.id == "first_purchase":
        return action == ScoringAction.PURCHASE or progress.total_purchases > 0
    if achievement.id == "early_bird":
        return (
            action == ScoringAction.BONUS
            and isinstance(metadata, BonusMetadata)
            and metadata.campaign == EARLY_BIRD_CAMPAIGN
        )
    return False


def evaluate_achievements(
    progress: UserProgress,
    action: ScoringAction,
    metadata: ActionMetadata | None = None,
) -> list[str]:
    """Ids earned by this snapshot and not already held, in catalog order."""
    held = set(progress.achievements)
    return [
        a.id for a in ACHIEVEMENTS
        if a.id not in held and _is_earned(a, progress, action, metadata)
    ]


def achievement_progress(progress: UserProgress, achievement: Achievement) -> dict:
    """Progress toward ``achievement`` for display.

    Metadata-driven types (binary, percentage, duration) have no stored
    counter, so they read 0 until earned.
    """
    target = achievement.target_value
    if achievement.id in progress.achievements:
        return {"percentage": 100, "current_value": target, "target_value": target, "is_complete": True}

    current = 0
    if achievement.counter is not None:
        current = _counter_value(progress, achievement.counter)
    percentage = min(100, current * 100 // target) if target else 0
    return {"percentage": percentage, "current_value": current, "target_value": target, "is_complete": False}
