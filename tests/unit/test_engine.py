"""Scoring engine tests: idempotency, level-up detection, achievements and penalties."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from irac.scoring.constants import ProgressStatus, ReferenceType, ScoringAction
from irac.scoring.engine import SCORING_PUBSUB_CHANNEL, ScoringEngine
from irac.scoring.exceptions import (
    DuplicateAwardError,
    InvalidMetadataError,
    InvalidPaginationError,
    InvalidPointsError,
    StorageError,
)
from irac.scoring.metadata import PurchaseMetadata

NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


class TestAwardPoints:
    """Basic awards update the ledger and every derived counter."""

    @pytest.mark.asyncio
    async def test_course_then_purchase(self, engine, storage):
        """New user: course_complete 100 then purchase 50 -> 150 with both buckets."""
        first = await engine.award_points("u1", ScoringAction.COURSE_COMPLETE, 100, "Finished course", now=NOW)
        assert first.new_total_points == 100
        assert first.new_level == 1
        assert first.points_to_next_level == 400
        assert first.progress_percentage == 20

        second = await engine.award_points(
            "u1", ScoringAction.PURCHASE, 50, "Bought course",
            metadata=PurchaseMetadata(order_id="o-1", amount=50_000),
            reference_id="o-1", reference_type=ReferenceType.ORDER, now=NOW,
        )
        assert second.new_total_points == 150
        assert second.new_achievements == ["first_purchase"]

        score = await engine.get_user_score("u1")
        assert score.progress.breakdown["courses"] == 100
        assert score.progress.breakdown["purchases"] == 50
        assert score.progress.total_courses_completed == 1
        assert score.progress.total_purchases == 1
        assert score.progress.total_spent == 50_000
        assert score.total_transactions == 2

    @pytest.mark.asyncio
    async def test_metadata_dict_is_parsed(self, engine, storage):
        result = await engine.award_points(
            "u1", "purchase", 10, metadata={"order_id": "o-9", "amount": 10_000}, now=NOW
        )
        assert result.points_awarded == 10
        progress = await storage.progress.get("u1")
        assert progress.total_spent == 10_000

    @pytest.mark.asyncio
    async def test_transaction_id_returned(self, engine, storage):
        result = await engine.award_points("u1", ScoringAction.SOCIAL_SHARE, 10, now=NOW)
        recent = await storage.ledger.recent("u1", 10)
        assert result.transaction_id == recent[0].id
        assert recent[0].processed_at == NOW


class TestIdempotency:
    """A repeated reference never credits twice."""

    @pytest.mark.asyncio
    async def test_duplicate_reference_raises_with_current_totals(self, engine, storage):
        await engine.award_points(
            "u1", ScoringAction.REFERRAL, 200,
            reference_id="ref-1", reference_type=ReferenceType.REFERRAL, now=NOW,
        )
        with pytest.raises(DuplicateAwardError) as exc_info:
            await engine.award_points(
                "u1", ScoringAction.REFERRAL, 200,
                reference_id="ref-1", reference_type=ReferenceType.REFERRAL, now=NOW,
            )

        result = exc_info.value.result
        assert result.duplicate is True
        assert result.points_awarded == 0
        assert result.new_total_points == 200
        assert await storage.ledger.count_for_user("u1") == 1
        progress = await storage.progress.get("u1")
        assert progress.total_referrals == 1

    @pytest.mark.asyncio
    async def test_same_reference_other_user_is_not_duplicate(self, engine, storage):
        for user in ("u1", "u2"):
            await engine.award_points(
                user, ScoringAction.REVIEW_WRITE, 15,
                reference_id="review-7", reference_type=ReferenceType.REVIEW, now=NOW,
            )
        assert await storage.ledger.count_for_user("u2") == 1

    @pytest.mark.asyncio
    async def test_no_reference_never_deduplicates(self, engine, storage):
        await engine.award_points("u1", ScoringAction.SOCIAL_SHARE, 10, now=NOW)
        await engine.award_points("u1", ScoringAction.SOCIAL_SHARE, 10, now=NOW)
        assert await storage.ledger.count_for_user("u1") == 2


class TestLevelUp:
    @pytest.mark.asyncio
    async def test_crossing_500_levels_up(self, engine, storage):
        result = await engine.award_points("u1", ScoringAction.BONUS, 500, now=NOW)
        assert result.leveled_up is True
        assert result.new_level == 2
        assert result.points_to_next_level == 500
        progress = await storage.progress.get("u1")
        assert progress.last_level_up_at == NOW

    @pytest.mark.asyncio
    async def test_1999_is_level_4_at_100_percent(self, engine):
        result = await engine.award_points("u1", ScoringAction.BONUS, 1999, now=NOW)
        assert result.new_level == 4
        assert result.points_to_next_level == 1
        assert result.progress_percentage == 100

    @pytest.mark.asyncio
    async def test_within_level_no_level_up(self, engine):
        await engine.award_points("u1", ScoringAction.BONUS, 100, now=NOW)
        result = await engine.award_points("u1", ScoringAction.BONUS, 100, now=NOW)
        assert result.leveled_up is False
        assert result.new_level == 1

    @pytest.mark.asyncio
    async def test_level_up_published(self, storage):
        redis = AsyncMock()
        engine = ScoringEngine(storage, redis)
        await engine.award_points("u1", ScoringAction.BONUS, 500, now=NOW)
        channels = [call.args[0] for call in redis.publish.await_args_list]
        assert channels == [SCORING_PUBSUB_CHANNEL]

    @pytest.mark.asyncio
    async def test_publish_failure_does_not_fail_award(self, storage):
        redis = AsyncMock()
        redis.publish.side_effect = ConnectionError("redis down")
        engine = ScoringEngine(storage, redis)
        result = await engine.award_points("u1", ScoringAction.BONUS, 500, now=NOW)
        assert result.new_level == 2


class TestAchievements:
    @pytest.mark.asyncio
    async def test_level_reward_is_credited_as_bonus(self, engine, storage):
        """Reaching level 5 unlocks level_up_5 and its 100 point reward."""
        result = await engine.award_points("u1", ScoringAction.COURSE_COMPLETE, 2000, now=NOW)
        assert result.new_achievements == ["level_up_5"]
        assert result.points_awarded == 2000
        assert result.new_total_points == 2100

        progress = await storage.progress.get("u1")
        assert progress.points_from_courses == 2000
        assert progress.points_from_bonuses == 100
        assert progress.last_achievement_at == NOW

        rows = await storage.ledger.iter_user("u1")
        reward = rows[-1]
        assert reward.action == ScoringAction.BONUS
        assert reward.reference.reference_type == "achievement"
        assert reward.reference.reference_id == "level_up_5"

    @pytest.mark.asyncio
    async def test_reward_can_cascade_into_next_tier(self, engine, storage):
        """Rewards credited by one evaluation can lift the user into the next level."""
        result = await engine.award_points("u1", ScoringAction.BONUS, 4900, now=NOW)
        assert result.new_achievements == ["level_up_5", "level_up_10"]
        assert result.new_total_points == 5250
        assert result.new_level == 11

    @pytest.mark.asyncio
    async def test_achievement_awarded_exactly_once(self, engine, storage):
        await engine.award_points("u1", ScoringAction.PURCHASE, 10, now=NOW)
        result = await engine.award_points("u1", ScoringAction.PURCHASE, 10, now=NOW)
        assert result.new_achievements == []

        progress = await storage.progress.get("u1")
        assert progress.achievements == ["first_purchase"]
        assert progress.achievement_count == len(progress.achievements)

    @pytest.mark.asyncio
    async def test_count_matches_set_after_many_unlocks(self, engine, storage):
        await engine.award_points("u1", ScoringAction.BONUS, 12_500, now=NOW)
        await engine.award_points("u1", ScoringAction.PURCHASE, 10, now=NOW)
        progress = await storage.progress.get("u1")
        assert len(set(progress.achievements)) == len(progress.achievements)
        assert progress.achievement_count == len(progress.achievements)
        assert {"level_up_5", "level_up_10", "level_up_25", "first_purchase"} <= set(progress.achievements)


class TestPenalty:
    @pytest.mark.asyncio
    async def test_penalty_lowers_current_only(self, engine, storage):
        await engine.award_points("u1", ScoringAction.BONUS, 300, now=NOW)
        result = await engine.award_points("u1", ScoringAction.PENALTY, -100, "Abuse", now=NOW)
        assert result.new_current_points == 200
        assert result.new_total_points == 300

        progress = await storage.progress.get("u1")
        assert progress.total_penalties == 1
        assert progress.points_lost_to_penalties == 100
        assert sum(progress.breakdown.values()) == progress.total_lifetime_points

    @pytest.mark.asyncio
    async def test_penalty_floors_current_at_zero(self, engine):
        await engine.award_points("u1", ScoringAction.BONUS, 50, now=NOW)
        result = await engine.award_points("u1", ScoringAction.PENALTY, -500, now=NOW)
        assert result.new_current_points == 0
        assert result.new_total_points == 50


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "action,points",
        [
            (ScoringAction.BONUS, 0),
            (ScoringAction.BONUS, True),
            (ScoringAction.BONUS, 1.5),
            (ScoringAction.PURCHASE, -10),
            (ScoringAction.PENALTY, 10),
            (ScoringAction.BONUS, 2**31),
            (ScoringAction.PENALTY, -(2**31)),
        ],
    )
    async def test_invalid_points_rejected_before_storage(self, engine, storage, action, points):
        with pytest.raises(InvalidPointsError):
            await engine.award_points("u1", action, points, now=NOW)
        assert await storage.progress.get("u1") is None
        assert await storage.ledger.count_for_user("u1") == 0

    @pytest.mark.asyncio
    async def test_metadata_of_other_action_rejected(self, engine):
        with pytest.raises(InvalidMetadataError):
            await engine.award_points(
                "u1", ScoringAction.REVIEW_WRITE, 15, metadata=PurchaseMetadata(amount=1), now=NOW
            )


class TestStorageFailure:
    @pytest.mark.asyncio
    async def test_failure_rolls_back_ledger_row(self, engine, storage, monkeypatch):
        async def boom(*args, **kwargs):
            raise StorageError("Scoring storage failure")

        monkeypatch.setattr(storage.progress, "apply_delta", boom)
        with pytest.raises(StorageError):
            await engine.award_points("u1", ScoringAction.BONUS, 10, now=NOW)
        assert await storage.ledger.count_for_user("u1") == 0


class TestGetUserScore:
    @pytest.mark.asyncio
    async def test_unknown_user_reads_zero_without_persisting(self, engine, storage):
        score = await engine.get_user_score("ghost")
        assert score.progress.total_lifetime_points == 0
        assert score.progress.level == 1
        assert score.rank is None
        assert score.recent_transactions == []
        assert await storage.progress.get("ghost") is None

    @pytest.mark.asyncio
    async def test_recent_transactions_limited_and_newest_first(self, engine):
        for i in range(5):
            await engine.award_points("u1", ScoringAction.SOCIAL_SHARE, 10 + i, now=NOW)
        score = await engine.get_user_score("u1", history_limit=3)
        assert [tx.points for tx in score.recent_transactions] == [14, 13, 12]
        assert score.total_transactions == 5
        assert score.rank == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 51])
    async def test_history_limit_bounds(self, engine, limit):
        with pytest.raises(InvalidPaginationError):
            await engine.get_user_score("u1", history_limit=limit)


class TestUserAchievements:
    @pytest.mark.asyncio
    async def test_earned_only_by_default(self, engine):
        await engine.award_points("u1", ScoringAction.PURCHASE, 10, now=NOW)
        view = await engine.get_user_achievements("u1")
        assert [item["achievement"].id for item in view["achievements"]] == ["first_purchase"]
        assert view["earned_count"] == 1
        assert view["total_possible"] == 18
        assert view["completion_percentage"] == 6
        assert view["rarity_breakdown"]["common"] == 1

    @pytest.mark.asyncio
    async def test_earned_at_per_unlock(self, engine):
        await engine.award_points("u1", ScoringAction.PURCHASE, 10, now=NOW)
        view = await engine.get_user_achievements("u1")
        assert view["achievements"][0]["earned_at"] == NOW

        later = NOW + timedelta(days=3)
        await engine.award_points("u1", ScoringAction.BONUS, 2000, now=later)
        view = await engine.get_user_achievements("u1")
        earned = {item["achievement"].id: item["earned_at"] for item in view["achievements"]}
        # level_up_5 is dated by its reward row; the unrewarded first_purchase is no longer the sole unlock
        assert earned == {"first_purchase": None, "level_up_5": later}

    @pytest.mark.asyncio
    async def test_include_locked_with_category(self, engine):
        view = await engine.get_user_achievements("u1", category="streak", include_locked=True)
        assert [item["achievement"].id for item in view["achievements"]] == [
            "daily_login_streak_7", "daily_login_streak_30", "daily_login_streak_100",
        ]
        assert all(item["is_earned"] is False for item in view["achievements"])

    @pytest.mark.asyncio
    async def test_pagination_bounds(self, engine):
        with pytest.raises(InvalidPaginationError):
            await engine.get_user_achievements("u1", limit=101)


class TestSetUserStatus:
    @pytest.mark.asyncio
    async def test_freeze_and_unfreeze(self, engine, storage):
        await engine.award_points("u1", ScoringAction.BONUS, 10, now=NOW)
        frozen = await engine.set_user_status("u1", ProgressStatus.FROZEN, "fraud review", now=NOW)
        assert frozen.is_frozen is True
        assert frozen.freeze_reason == "fraud review"

        active = await engine.set_user_status("u1", "active", now=NOW)
        assert active.is_frozen is False
        assert active.freeze_reason is None
