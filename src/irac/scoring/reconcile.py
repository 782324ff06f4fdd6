"""Replay the ledger into user_level and heal drift.

Only ledger-derived columns are recomputed. Achievements and streak fields
have no complete ledger source and are left as stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from irac.scoring.constants import ACTION_BUCKETS, ACTION_COUNTERS, BREAKDOWN_BUCKETS, ScoringAction
from irac.scoring.domain import ScoringTransaction, UserProgress
from irac.scoring.levels import compute_level, compute_level_progress
from irac.scoring.metadata import PurchaseMetadata, parse_metadata
from irac.scoring.repository import ScoringStorage

logger = structlog.get_logger()


@dataclass
class ReconcileResult:
    user_id: str
    # field -> (stored, expected)
    drift: dict[str, tuple[int, int]] = field(default_factory=dict)

    @property
    def healed(self) -> bool:
        return bool(self.drift)


def replay_ledger(transactions: list[ScoringTransaction]) -> dict[str, int]:
    """Ledger-derived columns for a user, from completed rows oldest first."""
    values = {
        "current_points": 0,
        "total_lifetime_points": 0,
        "total_penalties": 0,
        "points_lost_to_penalties": 0,
        "total_spent": 0,
    }
    values.update({f"points_from_{bucket}": 0 for bucket in BREAKDOWN_BUCKETS})
    values.update({counter: 0 for counter in set(ACTION_COUNTERS.values())})

    for tx in transactions:
        if tx.action == ScoringAction.PENALTY:
            values["current_points"] = max(values["current_points"] + tx.points, 0)
            values["total_penalties"] += 1
            values["points_lost_to_penalties"] -= tx.points
            continue

        values["current_points"] += tx.points
        values["total_lifetime_points"] += tx.points
        values[f"points_from_{ACTION_BUCKETS[tx.action]}"] += tx.points
        counter = ACTION_COUNTERS.get(tx.action)
        if counter:
            values[counter] += 1
        metadata = parse_metadata(tx.metadata)
        if isinstance(metadata, PurchaseMetadata):
            values["total_spent"] += metadata.amount

    total = values["total_lifetime_points"]
    to_next, percentage = compute_level_progress(total)
    values["level"] = compute_level(total)
    values["points_to_next_level"] = to_next
    values["level_progress_percentage"] = percentage
    return values


async def reconcile_user(
    storage: ScoringStorage, user_id: str, now: datetime | None = None
) -> ReconcileResult:
    """Recompute one user's counters from the ledger and overwrite any drift."""
    if now is None:
        now = datetime.now(timezone.utc)

    async with storage.atomic():
        # Lock before reading the ledger so no award lands between the two reads
        stored = await storage.progress.lock(user_id) or UserProgress(user_id=user_id)
        expected = replay_ledger(await storage.ledger.iter_user(user_id))

        result = ReconcileResult(user_id=user_id)
        for name, value in expected.items():
            current = getattr(stored, name)
            if current != value:
                result.drift[name] = (current, value)

        if result.drift:
            await storage.progress.overwrite(
                user_id, {name: expected[name] for name in result.drift}, now
            )

    if result.drift:
        logger.warning(
            "scoring_reconciled",
            user_id=user_id,
            drift={name: {"stored": s, "expected": e} for name, (s, e) in result.drift.items()},
        )
    return result


async def reconcile_all(storage: ScoringStorage, now: datetime | None = None) -> list[ReconcileResult]:
    """Reconcile every user with ledger rows. Returns only the healed users."""
    healed = []
    for user_id in await storage.ledger.user_ids():
        result = await reconcile_user(storage, user_id, now)
        if result.healed:
            healed.append(result)
    logger.info("scoring_reconcile_complete", healed=len(healed))
    return healed
