"""create playback coordinator tables

Revision ID: 4c1e9a7d2b30
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4c1e9a7d2b30"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create liveness_records and playback_sessions."""
    op.create_table(
        "liveness_records",
        sa.Column("device_token", sa.String(length=256), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("last_beat", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("device_token"),
    )
    op.create_index("ix_liveness_records_user_id", "liveness_records", ["user_id"])
    op.create_index("ix_liveness_records_last_beat", "liveness_records", ["last_beat"])

    op.create_table(
        "playback_sessions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column(
            "device_class",
            sa.Enum("desktop", "web", name="device_class"),
            nullable=False,
        ),
        sa.Column("device_token", sa.String(length=256), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "closed_reason",
            sa.Enum("natural", "preempted", "abandoned", name="closed_reason"),
            nullable=True,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_playback_sessions_user_id", "playback_sessions", ["user_id"])
    op.create_index(
        "ix_playback_sessions_user_open",
        "playback_sessions",
        ["user_id", "ended_at"],
    )
    # At most one open session per user, across every coordinator process.
    op.create_index(
        "uq_playback_sessions_one_open",
        "playback_sessions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("ended_at IS NULL"),
        sqlite_where=sa.text("ended_at IS NULL"),
    )


def downgrade() -> None:
    """Drop both tables and their enum types."""
    op.drop_index("uq_playback_sessions_one_open", table_name="playback_sessions")
    op.drop_index("ix_playback_sessions_user_open", table_name="playback_sessions")
    op.drop_index("ix_playback_sessions_user_id", table_name="playback_sessions")
    op.drop_table("playback_sessions")
    op.drop_index("ix_liveness_records_last_beat", table_name="liveness_records")
    op.drop_index("ix_liveness_records_user_id", table_name="liveness_records")
    op.drop_table("liveness_records")
    sa.Enum(name="closed_reason").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="device_class").drop(op.get_bind(), checkfirst=True)
