"""ORM models for the scoring tables.

``scoring_transaction`` is append-only; ``user_level`` is one row per user.
Users live in the platform's auth service, so ``user_id`` is an opaque
string with no foreign key.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from irac.db.base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")

_REFERENCE_PREDICATE = "status = 'completed' AND reference_id IS NOT NULL"


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class ScoringTransactionRow(Base):
    """Immutable points ledger row."""

    __tablename__ = "scoring_transaction"
    __table_args__ = (
        Index("ix_scoring_transaction_user_created", "user_id", "created_at"),
        Index("ix_scoring_transaction_created", "created_at"),
        # Sole idempotency guard: one completed credit per (user, reference)
        Index(
            "uq_scoring_transaction_reference",
            "user_id",
            "reference_id",
            "reference_type",
            unique=True,
            postgresql_where=text(_REFERENCE_PREDICATE),
            sqlite_where=text(_REFERENCE_PREDICATE),
        ),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="completed")
    description: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    reference_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reference_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    course_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    processed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Per-user aggregate
# ---------------------------------------------------------------------------


class UserLevel(Base):
    """Denormalized scoring aggregate: single row per user, O(1) reads."""

    __tablename__ = "user_level"
    __table_args__ = (
        Index(
            "ix_user_level_ranking",
            "total_lifetime_points",
            "level",
            "current_points",
        ),
    )

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    current_points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_lifetime_points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    achievements: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    achievement_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    points_to_next_level: Mapped[int] = mapped_column(Integer, nullable=False, default=500)
    level_progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    points_from_purchases: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    points_from_courses: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    points_from_referrals: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    points_from_activities: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    points_from_bonuses: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    total_penalties: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    points_lost_to_penalties: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    current_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    is_frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    freeze_reason: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")

    daily_login_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_daily_login_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_logins: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_purchases: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_courses_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_referrals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_workshop_bookings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_reviews: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_social_shares: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_points_earned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_level_up_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_achievement_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
