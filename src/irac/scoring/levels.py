"""Level computation.

Levels are flat: every LEVEL_THRESHOLD lifetime points is one level.
Progress percentage rounds half up so it agrees with the web client.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from irac.scoring.constants import LEVEL_THRESHOLD


def compute_level(total_points: int) -> int:
    """Level for a lifetime point total. Negative totals clamp to level 1."""
    return max(total_points, 0) // LEVEL_THRESHOLD + 1


def compute_level_progress(total_points: int) -> tuple[int, int]:
    """Return (points_to_next_level, progress_percentage) for a lifetime total."""
    points_in_level = max(total_points, 0) % LEVEL_THRESHOLD
    points_to_next = LEVEL_THRESHOLD - points_in_level
    percentage = Decimal(points_in_level * 100) / Decimal(LEVEL_THRESHOLD)
    return points_to_next, int(percentage.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def level_floor(level: int) -> int:
    """Lifetime points at which ``level`` starts."""
    return (max(level, 1) - 1) * LEVEL_THRESHOLD


def level_table(up_to: int) -> list[dict]:
    """Level rows 1..up_to for display."""
    return [
        {
            "level": level,
            "points_required": LEVEL_THRESHOLD if level > 1 else 0,
            "cumulative": level_floor(level),
        }
        for level in range(1, up_to + 1)
    ]
