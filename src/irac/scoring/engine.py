"""Points award engine with idempotency, level-up and achievement handling.

An award runs inside one ``storage.atomic()`` block:
1. Append the ledger row (a repeated reference aborts as a duplicate)
2. Apply the counter delta in place
3. Recompute level/progress from the post-increment row
4. Evaluate achievements, crediting rewards as bonus rows, until none are new
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

import structlog

from irac.scoring.achievements import (
    ACHIEVEMENTS,
    RARITIES,
    achievement_progress,
    evaluate_achievements,
    get_achievement,
)
from irac.scoring.constants import (
    MAX_TRANSACTION_POINTS,
    ProgressStatus,
    ReferenceType,
    ScoringAction,
)
from irac.scoring.domain import (
    AwardResult,
    ExternalReference,
    ProgressDelta,
    ScoringTransaction,
    UserProgress,
)
from irac.scoring.exceptions import (
    DuplicateAwardError,
    InvalidPaginationError,
    InvalidPointsError,
    StorageError,
)
from irac.scoring.levels import compute_level, compute_level_progress
from irac.scoring.metadata import (
    ActionMetadata,
    BonusMetadata,
    check_metadata_for_action,
    dump_metadata,
    parse_action_metadata,
)
from irac.scoring.repository import ScoringStorage

logger = structlog.get_logger()

SCORING_PUBSUB_CHANNEL = "pubsub:scoring"


def validate_points(action: ScoringAction, points: Any) -> None:
    """Points must be a non-zero int; negative exactly when the action is a penalty."""
    if isinstance(points, bool) or not isinstance(points, int) or points == 0:
        raise InvalidPointsError("Points must be a non-zero integer", {"points": repr(points)})
    if abs(points) > MAX_TRANSACTION_POINTS:
        raise InvalidPointsError(
            "Points out of range", {"points": points, "max": MAX_TRANSACTION_POINTS}
        )
    if action == ScoringAction.PENALTY and points > 0:
        raise InvalidPointsError("Penalty points must be negative", {"points": points})
    if action != ScoringAction.PENALTY and points < 0:
        raise InvalidPointsError(
            "Only penalties may carry negative points",
            {"points": points, "action": str(action)},
        )


@dataclass
class UserScore:
    progress: UserProgress
    recent_transactions: list[ScoringTransaction]
    total_transactions: int
    rank: int | None


class ScoringEngine:
    """Awards points and reads per-user scoring state."""

    def __init__(
        self,
        storage: ScoringStorage,
        redis: object = None,
        *,
        history_default_limit: int = 10,
        history_max_limit: int = 50,
    ) -> None:
        self.storage = storage
        self.redis = redis
        self.history_default_limit = history_default_limit
        self.history_max_limit = history_max_limit

    async def award_points(
        self,
        user_id: str,
        action: ScoringAction | str,
        points: int,
        description: str = "",
        metadata: ActionMetadata | dict | None = None,
        reference_id: str | None = None,
        reference_type: ReferenceType | str | None = None,
        order_id: str | None = None,
        course_id: str | None = None,
        processed_by: str | None = None,
        now: datetime | None = None,
    ) -> AwardResult:
        """Credit ``points`` for ``action``.

        Raises DuplicateAwardError (carrying the current totals) when the
        reference was already credited for this user.
        """
        action = ScoringAction(action)
        validate_points(action, points)
        if isinstance(metadata, dict):
            metadata = parse_action_metadata(action, metadata)
        check_metadata_for_action(action, metadata)

        reference = None
        if reference_id is not None:
            reference = ExternalReference(str(reference_id), str(reference_type or ReferenceType.OTHER))
        if now is None:
            now = datetime.now(timezone.utc)

        log = logger.bind(user_id=user_id, action=str(action), points=points)
        try:
            async with self.storage.atomic():
                result, old_level = await self._award(
                    user_id, action, points, description, metadata, reference,
                    order_id, course_id, processed_by, now,
                )
        except DuplicateAwardError as exc:
            current = await self.storage.progress.get(user_id) or UserProgress(user_id=user_id)
            log.info("scoring_duplicate_award", **exc.details)
            raise DuplicateAwardError(
                exc.message, exc.details, result=AwardResult.from_snapshot(current, duplicate=True)
            ) from exc
        except StorageError:
            log.error("scoring_award_failed", exc_info=True)
            raise

        log.info(
            "scoring_points_awarded",
            transaction_id=result.transaction_id,
            new_total_points=result.new_total_points,
        )
        if result.leveled_up:
            log.info("scoring_level_up", old_level=old_level, new_level=result.new_level)
            await self._publish("level_up", {
                "user_id": user_id, "old_level": old_level, "new_level": result.new_level,
            })
        if result.new_achievements:
            log.info("scoring_achievements_unlocked", achievements=result.new_achievements)
            await self._publish("achievements_unlocked", {
                "user_id": user_id, "achievements": result.new_achievements,
            })
        return result

    async def _award(
        self,
        user_id: str,
        action: ScoringAction,
        points: int,
        description: str,
        metadata: ActionMetadata | None,
        reference: ExternalReference | None,
        order_id: str | None,
        course_id: str | None,
        processed_by: str | None,
        now: datetime,
    ) -> tuple[AwardResult, int]:
        ledger = self.storage.ledger
        progress = self.storage.progress

        tx = await ledger.append(
            user_id, action, points, description, dump_metadata(metadata), now,
            reference=reference, order_id=order_id, course_id=course_id,
            processed_by=processed_by,
        )
        snapshot = await progress.apply_delta(
            user_id, ProgressDelta.for_award(action, points, metadata, now), now
        )
        # apply_delta leaves the stored level alone
        old_level = snapshot.level

        unlocked: list[str] = []
        trigger_action, trigger_metadata = action, metadata
        while True:
            level = compute_level(snapshot.total_lifetime_points)
            to_next, percentage = compute_level_progress(snapshot.total_lifetime_points)
            earned = evaluate_achievements(
                replace(snapshot, level=level), trigger_action, trigger_metadata
            )
            snapshot = await progress.record_evaluation(
                user_id,
                level=level,
                points_to_next_level=to_next,
                level_progress_percentage=percentage,
                new_achievements=earned,
                leveled_up=level > snapshot.level,
                now=now,
            )
            unlocked.extend(earned)

            credited = False
            for achievement_id in earned:
                snapshot, granted = await self._credit_reward(user_id, achievement_id, snapshot, now)
                credited = credited or granted
            if not credited:
                break
            # Rewards are bonus points; re-check level tiers they may have crossed
            trigger_action, trigger_metadata = ScoringAction.BONUS, None

        result = AwardResult(
            user_id=user_id,
            points_awarded=points,
            new_total_points=snapshot.total_lifetime_points,
            new_current_points=snapshot.current_points,
            new_level=snapshot.level,
            leveled_up=snapshot.level > old_level,
            new_achievements=unlocked,
            points_to_next_level=snapshot.points_to_next_level,
            progress_percentage=snapshot.level_progress_percentage,
            transaction_id=tx.id,
        )
        return result, old_level

    async def _credit_reward(
        self,
        user_id: str,
        achievement_id: str,
        snapshot: UserProgress,
        now: datetime,
    ) -> tuple[UserProgress, bool]:
        achievement = get_achievement(achievement_id)
        if achievement is None or achievement.points_reward <= 0:
            return snapshot, False

        metadata = BonusMetadata(reason=f"achievement:{achievement_id}")
        try:
            await self.storage.ledger.append(
                user_id,
                ScoringAction.BONUS,
                achievement.points_reward,
                f"Achievement unlocked: {achievement.name}",
                dump_metadata(metadata),
                now,
                reference=ExternalReference(achievement_id, str(ReferenceType.ACHIEVEMENT)),
            )
        except DuplicateAwardError:
            # Reward row survived from an earlier unlock
            logger.info("scoring_reward_already_credited", user_id=user_id, achievement=achievement_id)
            return snapshot, False

        snapshot = await self.storage.progress.apply_delta(
            user_id,
            ProgressDelta.for_award(ScoringAction.BONUS, achievement.points_reward, metadata, now),
            now,
        )
        return snapshot, True

    async def _publish(self, event: str, payload: dict) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.publish(  # type: ignore[union-attr]
                SCORING_PUBSUB_CHANNEL, json.dumps({"event": event, **payload})
            )
        except Exception:
            logger.warning("scoring_publish_failed", event_type=event, exc_info=True)

    # -- Reads --

    async def get_user_score(self, user_id: str, history_limit: int | None = None) -> UserScore:
        """Current scoring state. Unknown users read as a zero snapshot; nothing is persisted."""
        if history_limit is None:
            history_limit = self.history_default_limit
        if history_limit < 1 or history_limit > self.history_max_limit:
            raise InvalidPaginationError(
                "Invalid history limit",
                {"history_limit": history_limit, "max_limit": self.history_max_limit},
            )

        progress = await self.storage.progress.get(user_id)
        if progress is None:
            return UserScore(UserProgress(user_id=user_id), [], 0, None)

        return UserScore(
            progress=progress,
            recent_transactions=await self.storage.ledger.recent(user_id, history_limit),
            total_transactions=await self.storage.ledger.count_for_user(user_id),
            rank=await self.storage.progress.rank_of(user_id),
        )

    async def get_user_achievements(
        self,
        user_id: str,
        category: str | None = None,
        include_locked: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> dict:
        """Catalog entries with per-user progress plus an earned summary."""
        if limit < 1 or limit > 100 or offset < 0:
            raise InvalidPaginationError(
                "Invalid pagination parameters", {"limit": limit, "offset": offset, "max_limit": 100}
            )

        progress = await self.storage.progress.get(user_id) or UserProgress(user_id=user_id)
        # Rewarded unlocks carry their own ledger row; otherwise only a sole unlock is dated
        earned_times = await self.storage.ledger.reference_times(user_id, ReferenceType.ACHIEVEMENT)
        sole_unlock = progress.last_achievement_at if len(progress.achievements) == 1 else None
        selected = [
            a for a in ACHIEVEMENTS
            if category in (None, "all") or a.category == category
        ]

        items = []
        for achievement in selected:
            is_earned = achievement.id in progress.achievements
            items.append({
                "achievement": achievement,
                "is_earned": is_earned,
                "earned_at": earned_times.get(achievement.id, sole_unlock) if is_earned else None,
                "progress": achievement_progress(progress, achievement),
            })

        earned = [item for item in items if item["is_earned"]]
        listed = items if include_locked else earned
        total_possible = len(items)
        return {
            "user_id": user_id,
            "achievements": listed[offset:offset + limit],
            "total_count": len(listed),
            "limit": limit,
            "offset": offset,
            "earned_count": len(earned),
            "total_possible": total_possible,
            "completion_percentage": round(len(earned) * 100 / total_possible) if total_possible else 0,
            "rarity_breakdown": {
                rarity: sum(1 for item in earned if item["achievement"].rarity == rarity)
                for rarity in RARITIES
            },
        }

    # -- Admin --

    async def set_user_status(
        self,
        user_id: str,
        status: ProgressStatus | str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> UserProgress:
        """Freeze, unfreeze or penalise a user. Frozen and penalised users leave the leaderboard."""
        status = ProgressStatus(status)
        if now is None:
            now = datetime.now(timezone.utc)
        async with self.storage.atomic():
            progress = await self.storage.progress.set_status(
                user_id,
                status=status,
                is_frozen=status == ProgressStatus.FROZEN,
                freeze_reason=reason if status != ProgressStatus.ACTIVE else None,
                now=now,
            )
        logger.info("scoring_status_changed", user_id=user_id, status=str(status), reason=reason)
        return progress
