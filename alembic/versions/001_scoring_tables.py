"""Scoring tables.

Creates the append-only scoring_transaction ledger and the per-user
user_level aggregate.

Revision ID: 001_scoring_tables
Revises: None
Create Date: 2026-10-17
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_scoring_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS scoring_transaction (
            id BIGSERIAL PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL,
            points INTEGER NOT NULL CHECK (points <> 0),
            action VARCHAR(32) NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'completed',
            description VARCHAR(512) NOT NULL DEFAULT '',
            metadata JSONB NOT NULL DEFAULT '{}',
            reference_id VARCHAR(128),
            reference_type VARCHAR(32),
            order_id VARCHAR(64),
            course_id VARCHAR(64),
            processed_by VARCHAR(64),
            processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_scoring_transaction_user_created
        ON scoring_transaction(user_id, created_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_scoring_transaction_created
        ON scoring_transaction(created_at)
    """)
    # One completed credit per (user, reference)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_scoring_transaction_reference
        ON scoring_transaction(user_id, reference_id, reference_type)
        WHERE status = 'completed' AND reference_id IS NOT NULL
    """)

    # --- Per-user aggregate ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_level (
            user_id VARCHAR(64) PRIMARY KEY,
            current_points BIGINT NOT NULL DEFAULT 0 CHECK (current_points >= 0),
            total_lifetime_points BIGINT NOT NULL DEFAULT 0,
            level INTEGER NOT NULL DEFAULT 1,
            achievements JSONB NOT NULL DEFAULT '[]',
            achievement_count INTEGER NOT NULL DEFAULT 0,
            points_to_next_level INTEGER NOT NULL DEFAULT 500,
            level_progress_percentage INTEGER NOT NULL DEFAULT 0
                CHECK (level_progress_percentage BETWEEN 0 AND 100),
            points_from_purchases BIGINT NOT NULL DEFAULT 0,
            points_from_courses BIGINT NOT NULL DEFAULT 0,
            points_from_referrals BIGINT NOT NULL DEFAULT 0,
            points_from_activities BIGINT NOT NULL DEFAULT 0,
            points_from_bonuses BIGINT NOT NULL DEFAULT 0,
            total_penalties INTEGER NOT NULL DEFAULT 0,
            points_lost_to_penalties BIGINT NOT NULL DEFAULT 0,
            current_multiplier DOUBLE PRECISION NOT NULL DEFAULT 1.0,
            is_frozen BOOLEAN NOT NULL DEFAULT false,
            freeze_reason VARCHAR(256),
            status VARCHAR(16) NOT NULL DEFAULT 'active',
            daily_login_streak INTEGER NOT NULL DEFAULT 0,
            max_daily_login_streak INTEGER NOT NULL DEFAULT 0,
            total_logins INTEGER NOT NULL DEFAULT 0,
            total_purchases INTEGER NOT NULL DEFAULT 0,
            total_spent BIGINT NOT NULL DEFAULT 0,
            total_courses_completed INTEGER NOT NULL DEFAULT 0,
            total_referrals INTEGER NOT NULL DEFAULT 0,
            total_workshop_bookings INTEGER NOT NULL DEFAULT 0,
            total_reviews INTEGER NOT NULL DEFAULT 0,
            total_social_shares INTEGER NOT NULL DEFAULT 0,
            last_login_at TIMESTAMPTZ,
            last_points_earned_at TIMESTAMPTZ,
            last_level_up_at TIMESTAMPTZ,
            last_achievement_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_user_level_ranking
        ON user_level(total_lifetime_points DESC, level DESC, current_points DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS user_level CASCADE")
    op.execute("DROP TABLE IF EXISTS scoring_transaction CASCADE")
