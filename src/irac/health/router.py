"""Health, readiness and version endpoints for the scoring service."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from irac.config import get_settings
from irac.database import get_session
from irac.redis_client import get_redis

router = APIRouter()

# The API cannot serve awards or rankings until the migration has created these
SCORING_TABLES = ("scoring_transaction", "user_level")


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: 200 if the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """Readiness probe: database, scoring schema and Redis."""
    checks: dict[str, object] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    if checks["database"] == "ok":
        missing = []
        for table in SCORING_TABLES:
            try:
                await db.execute(text(f"SELECT 1 FROM {table} LIMIT 1"))
            except Exception:
                await db.rollback()
                missing.append(table)
        checks["schema"] = f"error: missing {', '.join(missing)}" if missing else "ok"

    # Redis backs rate limiting, the leaderboard cache and level-up events
    try:
        await get_redis().ping()
        checks["redis"] = "ok"
    except Exception as exc:
        checks["redis"] = f"error: {exc}"

    all_ok = all(v == "ok" for v in checks.values())
    return {"status": "ready" if all_ok else "degraded", "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    settings = get_settings()
    return {
        "service": settings.service_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }
