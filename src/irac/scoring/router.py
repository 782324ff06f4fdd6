"""Scoring API endpoints."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query

from irac.auth.dependencies import Caller, get_caller, require_privileged
from irac.config import get_settings
from irac.dependencies import get_redis_dep, get_storage
from irac.scoring.achievements import ACHIEVEMENTS, Achievement
from irac.scoring.constants import ADMIN_ACTIONS, LEVEL_THRESHOLD, ScoringAction
from irac.scoring.daily_login import DailyLoginProcessor
from irac.scoring.domain import AwardResult
from irac.scoring.engine import ScoringEngine, UserScore
from irac.scoring.exceptions import AlreadyProcessedToday, DuplicateAwardError, PermissionDeniedError
from irac.scoring.leaderboard import LeaderboardQuery
from irac.scoring.levels import level_table
from irac.scoring.reconcile import reconcile_user
from irac.scoring.repository import ScoringStorage
from irac.scoring.schemas import (
    AchievementCatalogResponse,
    AchievementDefinition,
    AwardPointsRequest,
    AwardPointsResponse,
    DailyLoginRequest,
    DailyLoginResponse,
    LeaderboardResponse,
    LevelsResponse,
    PointsBreakdown,
    ReconcileResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
    TransactionResponse,
    UserAchievementItem,
    UserAchievementsResponse,
    UserScoreResponse,
)

router = APIRouter(prefix="/api/v1/scoring", tags=["Scoring"])


async def get_engine(
    storage: ScoringStorage = Depends(get_storage),  # noqa: B008
    redis: object = Depends(get_redis_dep),  # noqa: B008
) -> ScoringEngine:
    settings = get_settings()
    return ScoringEngine(
        storage,
        redis,
        history_default_limit=settings.history_default_limit,
        history_max_limit=settings.history_max_limit,
    )


async def get_leaderboard(
    storage: ScoringStorage = Depends(get_storage),  # noqa: B008
    redis: object = Depends(get_redis_dep),  # noqa: B008
) -> LeaderboardQuery:
    return LeaderboardQuery(storage, redis, cache_ttl=get_settings().leaderboard_cache_ttl_seconds)


def _require_access(caller: Caller, user_id: str) -> None:
    if not caller.can_act_for(user_id):
        raise PermissionDeniedError("Cannot access another user's scoring data", {"user_id": user_id})


def _award_response(result: AwardResult) -> AwardPointsResponse:
    return AwardPointsResponse(**asdict(result))


def _definition(achievement: Achievement) -> dict:
    return {
        "id": achievement.id,
        "name": achievement.name,
        "description": achievement.description,
        "category": achievement.category,
        "rarity": achievement.rarity,
        "progress_type": achievement.progress_type,
        "target_value": achievement.target_value,
        "points_reward": achievement.points_reward,
    }


def _score_response(score: UserScore) -> UserScoreResponse:
    p = score.progress
    return UserScoreResponse(
        user_id=p.user_id,
        current_points=p.current_points,
        total_lifetime_points=p.total_lifetime_points,
        level=p.level,
        points_to_next_level=p.points_to_next_level,
        level_progress_percentage=p.level_progress_percentage,
        achievements=p.achievements,
        achievement_count=p.achievement_count,
        breakdown=PointsBreakdown(**p.breakdown),
        total_penalties=p.total_penalties,
        points_lost_to_penalties=p.points_lost_to_penalties,
        current_multiplier=p.current_multiplier,
        status=p.status,
        is_frozen=p.is_frozen,
        daily_login_streak=p.daily_login_streak,
        max_daily_login_streak=p.max_daily_login_streak,
        total_logins=p.total_logins,
        total_purchases=p.total_purchases,
        total_spent=p.total_spent,
        total_courses_completed=p.total_courses_completed,
        total_referrals=p.total_referrals,
        total_workshop_bookings=p.total_workshop_bookings,
        total_reviews=p.total_reviews,
        total_social_shares=p.total_social_shares,
        last_login_at=p.last_login_at,
        last_points_earned_at=p.last_points_earned_at,
        last_level_up_at=p.last_level_up_at,
        last_achievement_at=p.last_achievement_at,
        rank=score.rank,
        total_transactions=score.total_transactions,
        recent_transactions=[
            TransactionResponse(
                id=tx.id,
                points=tx.points,
                action=tx.action,
                description=tx.description,
                metadata=tx.metadata,
                status=str(tx.status),
                reference_id=tx.reference.reference_id if tx.reference else None,
                reference_type=tx.reference.reference_type if tx.reference else None,
                created_at=tx.created_at,
            )
            for tx in score.recent_transactions
        ],
    )


# ── Awards ──


@router.post("/points", response_model=AwardPointsResponse)
async def award_points(
    body: AwardPointsRequest,
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: ScoringEngine = Depends(get_engine),  # noqa: B008
):
    """Award points. A repeated reference returns the current totals with duplicate=true."""
    target = body.user_id or caller.user_id
    if target is None:
        raise HTTPException(status_code=422, detail="user_id is required for service callers")
    if body.action == ScoringAction.DAILY_LOGIN:
        raise PermissionDeniedError("daily_login is only issued through /daily-login")
    if not caller.is_privileged:
        if target != caller.user_id:
            raise PermissionDeniedError("Cannot award points to another user", {"user_id": target})
        if body.action in ADMIN_ACTIONS:
            raise PermissionDeniedError(
                f"Action '{body.action}' requires admin privileges", {"action": str(body.action)}
            )

    try:
        result = await engine.award_points(
            target,
            body.action,
            body.points,
            body.description,
            body.metadata,
            reference_id=body.reference_id,
            reference_type=body.reference_type,
            order_id=body.order_id,
            course_id=body.course_id,
            processed_by=caller.user_id or caller.role,
        )
    except DuplicateAwardError as exc:
        result = exc.result
    return _award_response(result)


@router.post("/daily-login", response_model=DailyLoginResponse)
async def daily_login(
    body: DailyLoginRequest | None = None,
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: ScoringEngine = Depends(get_engine),  # noqa: B008
):
    """Credit today's login bonus and advance the streak."""
    user_id = caller.require_user_id()
    body = body or DailyLoginRequest()
    try:
        result = await DailyLoginProcessor(engine).process(
            user_id, device=body.device, active_days=body.active_days
        )
    except AlreadyProcessedToday as exc:
        return DailyLoginResponse(user_id=user_id, already_processed=True, streak=exc.streak)

    return DailyLoginResponse(
        user_id=user_id,
        streak=result.streak,
        max_streak=result.max_streak,
        streak_state=str(result.state),
        points_awarded=result.points_awarded,
        login_date=result.login_date,
        award=_award_response(result.award),
    )


# ── Scores ──


@router.get("/users/me/score", response_model=UserScoreResponse)
async def get_my_score(
    history_limit: int | None = Query(None),
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: ScoringEngine = Depends(get_engine),  # noqa: B008
):
    """The caller's points, level, breakdown, rank and recent transactions."""
    score = await engine.get_user_score(caller.require_user_id(), history_limit)
    return _score_response(score)


@router.get("/users/{user_id}/score", response_model=UserScoreResponse)
async def get_user_score(
    user_id: str,
    history_limit: int | None = Query(None),
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: ScoringEngine = Depends(get_engine),  # noqa: B008
):
    _require_access(caller, user_id)
    score = await engine.get_user_score(user_id, history_limit)
    return _score_response(score)


# ── Leaderboard ──


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def leaderboard(
    limit: int = Query(50),
    offset: int = Query(0),
    timeframe: str = Query("all_time"),
    include_user_rank: bool = Query(False),
    caller: Caller = Depends(get_caller),  # noqa: B008
    query: LeaderboardQuery = Depends(get_leaderboard),  # noqa: B008
):
    """Ranked users. Pages are cached briefly in Redis."""
    page = await query.get(limit=limit, offset=offset, timeframe=timeframe)
    user_rank = None
    if include_user_rank and caller.user_id is not None:
        user_rank = await query.get_user_rank(caller.user_id, timeframe)
    return LeaderboardResponse(**page, user_rank=user_rank)


# ── Achievements ──


@router.get("/achievements", response_model=AchievementCatalogResponse)
async def achievement_catalog():
    """Every achievement with its target and reward."""
    return AchievementCatalogResponse(
        achievements=[AchievementDefinition(**_definition(a)) for a in ACHIEVEMENTS]
    )


async def _achievements(
    engine: ScoringEngine,
    user_id: str,
    category: str | None,
    include_locked: bool,
    limit: int,
    offset: int,
) -> UserAchievementsResponse:
    view = await engine.get_user_achievements(user_id, category, include_locked, limit, offset)
    items = [
        UserAchievementItem(
            **_definition(item["achievement"]),
            is_earned=item["is_earned"],
            earned_at=item["earned_at"],
            progress=item["progress"],
        )
        for item in view["achievements"]
    ]
    return UserAchievementsResponse(**{**view, "achievements": items})


@router.get("/users/me/achievements", response_model=UserAchievementsResponse)
async def get_my_achievements(
    category: str | None = Query(None),
    include_locked: bool = Query(False),
    limit: int = Query(50),
    offset: int = Query(0),
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: ScoringEngine = Depends(get_engine),  # noqa: B008
):
    """Earned achievements, or the whole catalog with progress when include_locked is set."""
    return await _achievements(
        engine, caller.require_user_id(), category, include_locked, limit, offset
    )


@router.get("/users/{user_id}/achievements", response_model=UserAchievementsResponse)
async def get_user_achievements(
    user_id: str,
    category: str | None = Query(None),
    include_locked: bool = Query(False),
    limit: int = Query(50),
    offset: int = Query(0),
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: ScoringEngine = Depends(get_engine),  # noqa: B008
):
    _require_access(caller, user_id)
    return await _achievements(engine, user_id, category, include_locked, limit, offset)


# ── Levels ──


@router.get("/levels", response_model=LevelsResponse)
async def levels(up_to: int = Query(20, ge=1, le=100)):
    """Level table: every level costs the same number of points."""
    return LevelsResponse(levels=level_table(up_to), points_per_level=LEVEL_THRESHOLD)


# ── Admin ──


@router.patch("/users/{user_id}/status", response_model=StatusUpdateResponse)
async def update_status(
    user_id: str,
    body: StatusUpdateRequest,
    _caller: Caller = Depends(require_privileged),  # noqa: B008
    engine: ScoringEngine = Depends(get_engine),  # noqa: B008
):
    """Freeze, unfreeze or penalise a user."""
    progress = await engine.set_user_status(user_id, body.status, body.reason)
    return StatusUpdateResponse(
        user_id=progress.user_id,
        status=progress.status,
        is_frozen=progress.is_frozen,
        freeze_reason=progress.freeze_reason,
    )


@router.post("/users/{user_id}/reconcile", response_model=ReconcileResponse)
async def reconcile(
    user_id: str,
    _caller: Caller = Depends(require_privileged),  # noqa: B008
    storage: ScoringStorage = Depends(get_storage),  # noqa: B008
):
    """Replay the user's ledger and heal counter drift."""
    result = await reconcile_user(storage, user_id)
    return ReconcileResponse(
        user_id=user_id,
        healed=result.healed,
        drift={name: {"stored": s, "expected": e} for name, (s, e) in result.drift.items()},
    )
