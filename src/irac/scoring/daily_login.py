"""Daily login bonus and streak tracking.

Streak transitions are computed from the UTC date the user last earned
points, so any award earlier today counts as today's activity.
The award itself goes through the engine with a per-date ledger reference,
so two logins racing on the same day collapse into one credit.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import StrEnum

import structlog

from irac.scoring.constants import POINTS_CONFIG, ReferenceType, ScoringAction
from irac.scoring.domain import AwardResult
from irac.scoring.engine import ScoringEngine
from irac.scoring.exceptions import AlreadyProcessedToday, DuplicateAwardError
from irac.scoring.metadata import LoginMetadata

logger = structlog.get_logger()


class StreakState(StrEnum):
    NO_PRIOR_LOGIN = "no_prior_login"
    ACTIVE_STREAK = "active_streak"
    BROKEN_STREAK = "broken_streak"
    SAME_DAY = "same_day"


@dataclass(frozen=True)
class StreakTransition:
    state: StreakState
    streak: int


def resolve_streak(last_login: date | None, today: date, current_streak: int) -> StreakTransition:
    """Streak after logging in on ``today``.

    A last login on or after ``today`` is a repeat login; the streak stays.
    """
    if last_login is None:
        return StreakTransition(StreakState.NO_PRIOR_LOGIN, 1)
    if last_login >= today:
        return StreakTransition(StreakState.SAME_DAY, current_streak)
    if last_login == today - timedelta(days=1):
        return StreakTransition(StreakState.ACTIVE_STREAK, current_streak + 1)
    return StreakTransition(StreakState.BROKEN_STREAK, 1)


@dataclass
class DailyLoginResult:
    state: StreakState
    streak: int
    max_streak: int
    points_awarded: int
    login_date: date
    award: AwardResult


class DailyLoginProcessor:
    def __init__(self, engine: ScoringEngine) -> None:
        self.engine = engine
        self.storage = engine.storage

    async def process(
        self,
        user_id: str,
        device: str | None = None,
        active_days: int | None = None,
        now: datetime | None = None,
    ) -> DailyLoginResult:
        """Credit today's login bonus. Raises AlreadyProcessedToday on a repeat."""
        if now is None:
            now = datetime.now(timezone.utc)
        today = now.astimezone(timezone.utc).date()

        progress = await self.storage.progress.get(user_id)
        last_login = None
        current_streak = 0
        if progress is not None:
            current_streak = progress.daily_login_streak
            if progress.last_points_earned_at is not None:
                last_login = progress.last_points_earned_at.astimezone(timezone.utc).date()

        transition = resolve_streak(last_login, today, current_streak)
        if transition.state == StreakState.SAME_DAY:
            raise AlreadyProcessedToday(
                details={"login_date": today.isoformat()}, streak=transition.streak
            )

        points = POINTS_CONFIG["daily_login"]
        metadata = LoginMetadata(
            streak=transition.streak,
            device=device,
            login_date=today,
            active_days=active_days,
        )
        try:
            award = await self.engine.award_points(
                user_id,
                ScoringAction.DAILY_LOGIN,
                points,
                f"Daily login bonus (streak {transition.streak})",
                metadata,
                reference_id=today.isoformat(),
                reference_type=ReferenceType.DAILY_LOGIN,
                now=now,
            )
        except DuplicateAwardError as exc:
            # A concurrent login for the same date committed first
            current = await self.storage.progress.get(user_id)
            raise AlreadyProcessedToday(
                details={"login_date": today.isoformat()},
                streak=current.daily_login_streak if current else transition.streak,
            ) from exc

        after = await self.storage.progress.get(user_id)
        max_streak = after.max_daily_login_streak if after else transition.streak
        logger.info(
            "scoring_daily_login",
            user_id=user_id,
            state=str(transition.state),
            streak=transition.streak,
        )
        return DailyLoginResult(
            state=transition.state,
            streak=transition.streak,
            max_streak=max_streak,
            points_awarded=points,
            login_date=today,
            award=award,
        )
