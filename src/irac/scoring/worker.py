"""Scoring arq worker: consumes collaborator award events from a Redis Stream.

Order, course, referral and booking services publish one entry per award to
``settings.scoring_stream`` with a JSON ``data`` field. Duplicates are acked
like successes, so redelivery after a crash is harmless. A nightly cron
replays the ledger into user_level.

Run with: arq irac.scoring.worker.WorkerSettings
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings

from irac.config import get_settings
from irac.database import close_db, get_session_factory, init_db
from irac.scoring.constants import (
    DEFAULT_ACTION_POINTS,
    ScoringAction,
    calculate_purchase_points,
)
from irac.scoring.engine import ScoringEngine
from irac.scoring.exceptions import DuplicateAwardError, ScoringError, StorageError
from irac.scoring.reconcile import reconcile_all
from irac.scoring.repository import ScoringStorage
from irac.scoring.sql_repository import SqlScoringStorage

logger = logging.getLogger(__name__)


def parse_event(fields: dict[str, Any]) -> dict[str, Any]:
    """Decode a stream entry; the payload is JSON under ``data`` or the flat fields."""
    raw = fields.get("data")
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            pass
    return {k: v for k, v in fields.items() if k != "data"}


def event_points(action: ScoringAction, payload: dict[str, Any]) -> int:
    """Points carried by the event, else the configured default for the action."""
    if payload.get("points") is not None:
        return int(payload["points"])
    if action == ScoringAction.PURCHASE:
        amount = (payload.get("metadata") or {}).get("amount", 0)
        return calculate_purchase_points(int(amount))
    return DEFAULT_ACTION_POINTS.get(action, 0)


async def handle_event(storage: ScoringStorage, redis: object, payload: dict[str, Any]) -> str:
    """Apply one award event. Returns "awarded", "duplicate" or "skipped"."""
    action = ScoringAction(payload["action"])
    if action == ScoringAction.DAILY_LOGIN:
        logger.warning("Ignoring daily_login event for user %s", payload.get("user_id"))
        return "skipped"

    points = event_points(action, payload)
    if points == 0:
        # Purchases under 1000 IRR earn nothing
        return "skipped"

    engine = ScoringEngine(storage, redis)
    try:
        await engine.award_points(
            str(payload["user_id"]),
            action,
            points,
            payload.get("description", ""),
            payload.get("metadata"),
            reference_id=payload.get("reference_id"),
            reference_type=payload.get("reference_type"),
            order_id=payload.get("order_id"),
            course_id=payload.get("course_id"),
            processed_by=payload.get("source", "worker"),
        )
    except DuplicateAwardError:
        return "duplicate"
    return "awarded"


async def scoring_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize Redis + DB connections and the consumer group."""
    settings = get_settings()
    await init_db(settings.database_url)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    try:
        await redis_client.xgroup_create(
            settings.scoring_stream, settings.scoring_consumer_group, id="0", mkstream=True
        )
    except aioredis.ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise

    ctx["scoring_redis"] = redis_client
    ctx["consumer_task"] = asyncio.create_task(consume_scoring_events(ctx))
    logger.info("Scoring worker started")


async def scoring_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    task: asyncio.Task | None = ctx.get("consumer_task")
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    redis_client: aioredis.Redis | None = ctx.get("scoring_redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Scoring worker shut down")


async def process_batch(redis_client: aioredis.Redis, events: list) -> int:
    """Handle one XREADGROUP batch. Returns the number of acked entries."""
    settings = get_settings()
    session_factory = get_session_factory()
    acked = 0

    for stream_name, messages in events:
        for msg_id, fields in messages:
            try:
                payload = parse_event(fields)
                async with session_factory() as session:
                    outcome = await handle_event(SqlScoringStorage(session), redis_client, payload)
            except StorageError as e:
                # Transient: leave pending so the backlog pass redelivers it
                logger.warning("Storage failure on scoring event %s, left pending: %s", msg_id, e)
                continue
            except (KeyError, ValueError, ScoringError) as e:
                # Malformed or rejected: ack so it is not redelivered forever
                logger.error("Rejected scoring event %s: %s", msg_id, e)
                outcome = "rejected"
            except Exception:
                logger.exception("Failed to process %s from %s", msg_id, stream_name)
                continue

            await redis_client.xack(stream_name, settings.scoring_consumer_group, msg_id)
            acked += 1
            logger.debug("Scoring event %s: %s", msg_id, outcome)

    return acked


async def read_and_process(redis_client: aioredis.Redis, backlog: bool) -> bool:
    """One consumer step. Returns whether the next read should replay the pending list.

    Reading id "0" returns this consumer's delivered-but-unacked entries; ">"
    returns new ones. The backlog is replayed after startup and after any
    batch that left entries pending.
    """
    settings = get_settings()
    streams = {settings.scoring_stream: "0" if backlog else ">"}
    try:
        events = await redis_client.xreadgroup(
            groupname=settings.scoring_consumer_group,
            consumername=settings.scoring_consumer_name,
            streams=streams,
            count=100,
            block=None if backlog else 5000,
        )
    except aioredis.ResponseError as e:
        logger.error("XREADGROUP error: %s", e)
        await asyncio.sleep(1)
        return backlog

    delivered = sum(len(messages) for _, messages in events or [])
    if not delivered:
        return False

    acked = await process_batch(redis_client, events)
    if acked < delivered:
        logger.warning("%d scoring events left pending, retrying", delivered - acked)
        await asyncio.sleep(settings.scoring_retry_delay_seconds)
        return True
    return backlog


async def consume_scoring_events(ctx: dict) -> None:  # type: ignore[type-arg]
    """Main consumer loop. Starts by replaying entries left pending by a previous run."""
    redis_client: aioredis.Redis = ctx["scoring_redis"]
    backlog = True
    while True:
        backlog = await read_and_process(redis_client, backlog)


async def nightly_reconcile(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: heal user_level drift from the ledger."""
    async with get_session_factory()() as session:
        healed = await reconcile_all(SqlScoringStorage(session))
    logger.info("Nightly reconcile healed %d users", len(healed))
    return len(healed)


class WorkerSettings:
    """arq worker settings for the scoring consumer."""

    functions = [nightly_reconcile]
    cron_jobs = [
        cron(nightly_reconcile, hour={get_settings().reconcile_cron_hour}, minute={0}),
    ]
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    on_startup = scoring_startup
    on_shutdown = scoring_shutdown
    max_jobs = 4
    job_timeout = 3600
