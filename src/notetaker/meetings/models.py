"""Persistence models for calendar events, meetings, bots and transcripts.

Six SQLAlchemy models sharing the declarative Base:
- CalendarEventModel: Events written by calendar sync; dispatch flag toggled here
- MeetingModel: One bot-attended meeting and its lifecycle status
- BotRecordModel: Cached snapshot of an external bot, replaced wholesale
- MeetingBotLinkModel: Every bot ever associated with a meeting
- MeetingTranscriptModel: Retrieved transcript text, segments and media ids
- AutomationModel: Enabled content-generation rules per account

Relationships are id columns only, with no ORM relationship graph.
Uniqueness that reconciliation depends on lives in the database:
- at most one non-cancelled meeting per (account_id, calendar_event_id)
- at most one meeting per external bot id
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.notetaker.core.database import Base


class CalendarEventModel(Base):
    """Calendar event owned by the calendar-sync collaborator."""

    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint("account_id", "external_event_id", name="uq_calendar_event_external"),
        Index("ix_calendar_events_dispatch", "dispatch_requested", "ends_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    external_event_id: Mapped[str] = mapped_column(String(300), nullable=False)
    title: Mapped[str] = mapped_column(String(500), default="", server_default=text("''"))
    join_url: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    platform: Mapped[str] = mapped_column(
        String(50), default="unknown", server_default=text("'unknown'")
    )
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dispatch_requested: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class MeetingModel(Base):
    """Meeting attended by a recording bot.

    Never deleted: withdrawal moves it to ``cancelled``, which also frees
    the (account, event) pair for a later dispatch.
    """

    __tablename__ = "meetings"
    __table_args__ = (
        UniqueConstraint("bot_id", name="uq_meetings_bot_id"),
        Index(
            "uq_meetings_active_event",
            "account_id",
            "calendar_event_id",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
        ),
        Index("ix_meetings_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    calendar_event_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    bot_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(
        String(50),
        default="scheduled",
        server_default=text("'scheduled'"),
    )
    platform: Mapped[str] = mapped_column(
        String(50), default="unknown", server_default=text("'unknown'")
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class BotRecordModel(Base):
    """Snapshot of an external bot as last seen in the bot directory.

    Status history and recordings are JSON, rewritten together on every
    refresh.
    """

    __tablename__ = "bot_records"

    bot_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    meeting_url: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    platform: Mapped[str | None] = mapped_column(String(50), nullable=True)
    bot_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    join_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status_changes_data: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    recordings_data: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    has_recording: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    has_transcript: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class MeetingBotLinkModel(Base):
    """Meeting-to-bot association, one row per pair."""

    __tablename__ = "meeting_bot_links"
    __table_args__ = (
        UniqueConstraint("meeting_id", "bot_id", name="uq_meeting_bot_link"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    meeting_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    bot_id: Mapped[str] = mapped_column(String(200), nullable=False)
    linked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class MeetingTranscriptModel(Base):
    """Retrieved transcript for one meeting.

    Segments kept as JSON for round-tripping; flattened text kept as Text
    for downstream content generation.
    """

    __tablename__ = "meeting_transcripts"
    __table_args__ = (
        UniqueConstraint("meeting_id", name="uq_meeting_transcripts_meeting"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    meeting_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    source: Mapped[str] = mapped_column(String(50), default="recall", server_default=text("'recall'"))
    segments_data: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    transcript_text: Mapped[str] = mapped_column(Text, default="", server_default=text("''"))
    media_data: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class AutomationModel(Base):
    """Content-generation rule; read-only for reconciliation."""

    __tablename__ = "automations"
    __table_args__ = (Index("ix_automations_account", "account_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    platform: Mapped[str] = mapped_column(String(50), default="", server_default=text("''"))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
