"""Meeting persistence models -- tables for the session lifecycle.

Four SQLAlchemy models on the shared copileo Base:
- MeetingModel: One row per bot session, active until stopped
- TranscriptSegmentModel: Live reconciled segments, replaced as a batch
- MeetingEventModel: Append-only lifecycle events (JSON payload)
- WebhookConfigModel: Per-account outbound webhook settings

Segments and events reference meetings with ON DELETE CASCADE.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.copileo.core.database import Base


class MeetingModel(Base):
    """A meeting joined by a Vexa bot.

    Tracks lifecycle from active to completed. complete_transcript holds
    the raw Vexa snapshot captured at stop time and is written once.
    """

    __tablename__ = "meetings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    account_id: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    native_meeting_id: Mapped[str] = mapped_column(String(200), nullable=False)
    passcode: Mapped[str] = mapped_column(String(200), default="", server_default=text("''"))
    bot_name: Mapped[str] = mapped_column(String(200), nullable=False)
    language: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(50),
        default="active",
        server_default=text("'active'"),
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    complete_transcript: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class TranscriptSegmentModel(Base):
    """One reconciled transcript segment.

    segment_index is the position in the latest Vexa snapshot, dense from 0.
    """

    __tablename__ = "transcript_segments"
    __table_args__ = (
        UniqueConstraint(
            "meeting_id",
            "segment_index",
            name="uq_segment_meeting_index",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    meeting_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("copileo.meetings.id", ondelete="CASCADE"),
        nullable=False,
    )
    segment_index: Mapped[int] = mapped_column(Integer, nullable=False)
    speaker: Mapped[str] = mapped_column(String(200), default="Unknown")
    text: Mapped[str] = mapped_column(Text, default="")
    timestamp: Mapped[str] = mapped_column(String(64), nullable=False)
    language: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class MeetingEventModel(Base):
    """Append-only lifecycle event with JSON payload."""

    __tablename__ = "meeting_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    meeting_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("copileo.meetings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class WebhookConfigModel(Base):
    """Outbound webhook settings, keyed by account."""

    __tablename__ = "webhook_configs"

    account_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    webhook_url: Mapped[str] = mapped_column(String(1000), default="", server_default=text("''"))
    webhook_secret: Mapped[str] = mapped_column(String(500), default="", server_default=text("''"))
    webhook_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        server_default=text("false"),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=True,
    )
