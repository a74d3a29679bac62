"""Create session tables: meetings, transcript segments, lifecycle events, webhook configs.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Creates four tables in the copileo schema:
- meetings: One row per bot session, active until stopped
- transcript_segments: Reconciled segments, unique per (meeting, index)
- meeting_events: Append-only lifecycle events with JSON payload
- webhook_configs: Per-account outbound webhook settings

Segments and events cascade on meeting delete.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SCHEMA = "copileo"


def upgrade() -> None:
    op.execute(f'CREATE SCHEMA IF NOT EXISTS "{SCHEMA}"')

    # ── meetings table ───────────────────────────────────────────────────

    op.create_table(
        "meetings",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("account_id", sa.String(200), nullable=False),
        sa.Column("platform", sa.String(50), nullable=False),
        sa.Column("native_meeting_id", sa.String(200), nullable=False),
        sa.Column("passcode", sa.String(200), server_default=sa.text("''"), nullable=False),
        sa.Column("bot_name", sa.String(200), nullable=False),
        sa.Column("language", sa.String(20), nullable=False),
        sa.Column(
            "status",
            sa.String(50),
            server_default=sa.text("'active'"),
            nullable=False,
        ),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("complete_transcript", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_meetings_account_id",
        "meetings",
        ["account_id"],
        schema=SCHEMA,
    )
    op.create_index(
        "ix_meetings_account_native_status",
        "meetings",
        ["account_id", "platform", "native_meeting_id", "status"],
        schema=SCHEMA,
    )

    # ── transcript_segments table ────────────────────────────────────────

    op.create_table(
        "transcript_segments",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "meeting_id",
            UUID(as_uuid=True),
            sa.ForeignKey(f"{SCHEMA}.meetings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("segment_index", sa.Integer(), nullable=False),
        sa.Column("speaker", sa.String(200), server_default=sa.text("'Unknown'"), nullable=False),
        sa.Column("text", sa.Text(), server_default=sa.text("''"), nullable=False),
        sa.Column("timestamp", sa.String(64), nullable=False),
        sa.Column("language", sa.String(20), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "meeting_id", "segment_index", name="uq_segment_meeting_index"
        ),
        schema=SCHEMA,
    )

    # ── meeting_events table ─────────────────────────────────────────────

    op.create_table(
        "meeting_events",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "meeting_id",
            UUID(as_uuid=True),
            sa.ForeignKey(f"{SCHEMA}.meetings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("event_data", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_meeting_events_meeting_id",
        "meeting_events",
        ["meeting_id"],
        schema=SCHEMA,
    )

    # ── webhook_configs table ────────────────────────────────────────────

    op.create_table(
        "webhook_configs",
        sa.Column("account_id", sa.String(200), primary_key=True),
        sa.Column("webhook_url", sa.String(1000), server_default=sa.text("''"), nullable=False),
        sa.Column("webhook_secret", sa.String(500), server_default=sa.text("''"), nullable=False),
        sa.Column(
            "webhook_enabled",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        schema=SCHEMA,
    )


def downgrade() -> None:
    op.drop_table("webhook_configs", schema=SCHEMA)
    op.drop_index("ix_meeting_events_meeting_id", table_name="meeting_events", schema=SCHEMA)
    op.drop_table("meeting_events", schema=SCHEMA)
    op.drop_table("transcript_segments", schema=SCHEMA)
    op.drop_index("ix_meetings_account_native_status", table_name="meetings", schema=SCHEMA)
    op.drop_index("ix_meetings_account_id", table_name="meetings", schema=SCHEMA)
    op.drop_table("meetings", schema=SCHEMA)
