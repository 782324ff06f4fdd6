"""Daily login streak tests."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from irac.scoring.constants import ScoringAction
from irac.scoring.daily_login import DailyLoginProcessor, StreakState, resolve_streak
from irac.scoring.exceptions import AlreadyProcessedToday, DuplicateAwardError

DAY1 = datetime(2026, 5, 10, 8, 30, tzinfo=timezone.utc)


class TestResolveStreak:
    def test_first_login(self):
        t = resolve_streak(None, date(2026, 5, 10), 0)
        assert t.state == StreakState.NO_PRIOR_LOGIN
        assert t.streak == 1

    def test_consecutive_day_extends(self):
        t = resolve_streak(date(2026, 5, 9), date(2026, 5, 10), 4)
        assert t.state == StreakState.ACTIVE_STREAK
        assert t.streak == 5

    def test_gap_resets(self):
        t = resolve_streak(date(2026, 5, 7), date(2026, 5, 10), 4)
        assert t.state == StreakState.BROKEN_STREAK
        assert t.streak == 1

    def test_same_day_keeps_streak(self):
        t = resolve_streak(date(2026, 5, 10), date(2026, 5, 10), 3)
        assert t.state == StreakState.SAME_DAY
        assert t.streak == 3

    def test_future_last_login_treated_as_same_day(self):
        t = resolve_streak(date(2026, 5, 11), date(2026, 5, 10), 3)
        assert t.state == StreakState.SAME_DAY


class TestDailyLoginProcessor:
    @pytest.mark.asyncio
    async def test_first_login_awards_five_points(self, engine, storage):
        result = await DailyLoginProcessor(engine).process("u1", device="android", now=DAY1)
        assert result.state == StreakState.NO_PRIOR_LOGIN
        assert result.streak == 1
        assert result.points_awarded == 5
        assert result.login_date == date(2026, 5, 10)
        assert result.award.new_total_points == 5

        progress = await storage.progress.get("u1")
        assert progress.daily_login_streak == 1
        assert progress.total_logins == 1
        assert progress.last_login_at == DAY1
        assert progress.points_from_activities == 5

        rows = await storage.ledger.iter_user("u1")
        assert rows[0].action == ScoringAction.DAILY_LOGIN
        assert rows[0].reference.reference_id == "2026-05-10"
        assert rows[0].metadata["device"] == "android"

    @pytest.mark.asyncio
    async def test_consecutive_days_build_streak(self, engine, storage):
        processor = DailyLoginProcessor(engine)
        for offset in range(3):
            result = await processor.process("u1", now=DAY1 + timedelta(days=offset))
        assert result.state == StreakState.ACTIVE_STREAK
        assert result.streak == 3
        assert result.max_streak == 3

    @pytest.mark.asyncio
    async def test_gap_resets_but_keeps_max(self, engine, storage):
        processor = DailyLoginProcessor(engine)
        for offset in range(4):
            await processor.process("u1", now=DAY1 + timedelta(days=offset))
        result = await processor.process("u1", now=DAY1 + timedelta(days=10))
        assert result.state == StreakState.BROKEN_STREAK
        assert result.streak == 1
        assert result.max_streak == 4

        progress = await storage.progress.get("u1")
        assert progress.daily_login_streak == 1
        assert progress.max_daily_login_streak == 4
        assert progress.total_logins == 5

    @pytest.mark.asyncio
    async def test_second_login_same_day(self, engine, storage):
        processor = DailyLoginProcessor(engine)
        await processor.process("u1", now=DAY1)
        with pytest.raises(AlreadyProcessedToday) as exc_info:
            await processor.process("u1", now=DAY1 + timedelta(hours=10))
        assert exc_info.value.streak == 1
        assert await storage.ledger.count_for_user("u1") == 1

    @pytest.mark.asyncio
    async def test_racing_login_collapses_to_one_credit(self, engine, storage, monkeypatch):
        """A concurrent request that committed first surfaces as AlreadyProcessedToday."""
        processor = DailyLoginProcessor(engine)
        await processor.process("u1", now=DAY1)

        # Simulate the stale read the losing request made before the winner committed
        real_get = storage.progress.get
        calls = {"n": 0}

        async def stale_get(user_id):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return await real_get(user_id)

        monkeypatch.setattr(storage.progress, "get", stale_get)
        with pytest.raises(AlreadyProcessedToday) as exc_info:
            await processor.process("u1", now=DAY1 + timedelta(minutes=1))
        assert isinstance(exc_info.value.__cause__, DuplicateAwardError)
        assert exc_info.value.streak == 1
        assert await storage.ledger.count_for_user("u1") == 1

    @pytest.mark.asyncio
    async def test_week_streak_unlocks_achievement(self, engine, storage):
        processor = DailyLoginProcessor(engine)
        for offset in range(7):
            result = await processor.process("u1", now=DAY1 + timedelta(days=offset))
        assert result.award.new_achievements == ["daily_login_streak_7"]
        progress = await storage.progress.get("u1")
        # 7 logins at 5 points plus the 50 point reward
        assert progress.total_lifetime_points == 85

    @pytest.mark.asyncio
    async def test_active_days_unlock_loyal_customer(self, engine):
        result = await DailyLoginProcessor(engine).process("u1", active_days=400, now=DAY1)
        assert "loyal_customer" in result.award.new_achievements

    @pytest.mark.asyncio
    async def test_earlier_award_same_day_counts_as_today(self, engine, storage):
        noon = datetime(2026, 5, 10, 12, 0, tzinfo=timezone.utc)
        await engine.award_points("u1", ScoringAction.SOCIAL_SHARE, 10, now=noon)
        with pytest.raises(AlreadyProcessedToday):
            await DailyLoginProcessor(engine).process("u1", now=noon + timedelta(hours=6))
        assert await storage.ledger.count_for_user("u1") == 1

    @pytest.mark.asyncio
    async def test_award_yesterday_extends_streak(self, engine, storage):
        processor = DailyLoginProcessor(engine)
        await processor.process("u1", now=DAY1)
        await engine.award_points("u1", ScoringAction.SOCIAL_SHARE, 10, now=DAY1 + timedelta(days=1))
        result = await processor.process("u1", now=DAY1 + timedelta(days=2))
        assert result.state == StreakState.ACTIVE_STREAK
        assert result.streak == 2
