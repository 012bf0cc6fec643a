"""Pydantic v2 schemas for the meeting reconciliation domain.

Defines the data contracts for calendar events, meetings, cached bot
records and their status histories, meeting-to-bot links, transcripts and
automations, plus the outcome types returned by dispatch and discovery.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────────────


class MeetingStatus(str, Enum):
    """Lifecycle status of a meeting from bot dispatch through transcript."""

    SCHEDULED = "scheduled"
    RECORDING = "recording"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {MeetingStatus.READY, MeetingStatus.FAILED, MeetingStatus.CANCELLED}
)

# Meetings whose bot is polled every bot_status_poll tick
POLLED_STATUSES = (MeetingStatus.SCHEDULED, MeetingStatus.RECORDING)


class DispatchOutcome(str, Enum):
    """Result of a dispatch or discovery attempt for one calendar event."""

    CREATED = "created"
    LINKED = "linked"
    ALREADY_EXISTS = "already_exists"
    CLAIMED_ELSEWHERE = "claimed_elsewhere"
    SKIPPED = "skipped"
    DEFERRED = "deferred"


# ── Calendar ─────────────────────────────────────────────────────────────────


class CalendarEvent(BaseModel):
    """A calendar event written by the calendar-sync collaborator."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    account_id: str
    title: str = ""
    join_url: str | None = None
    platform: str = "unknown"
    starts_at: datetime
    ends_at: datetime
    dispatch_requested: bool = False


# ── Meetings ─────────────────────────────────────────────────────────────────


class Meeting(BaseModel):
    """Persisted record of one bot-attended meeting."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    account_id: str
    calendar_event_id: uuid.UUID
    bot_id: str | None = None
    status: MeetingStatus = MeetingStatus.SCHEDULED
    platform: str = "unknown"
    started_at: datetime | None = None
    ended_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class MeetingCreate(BaseModel):
    """Data for inserting a meeting record."""

    account_id: str
    calendar_event_id: uuid.UUID
    bot_id: str | None = None
    status: MeetingStatus = MeetingStatus.SCHEDULED
    platform: str = "unknown"
    started_at: datetime | None = None
    ended_at: datetime | None = None


class MeetingBotLink(BaseModel):
    """Association of a bot with a meeting; one row per (meeting, bot) pair."""

    meeting_id: uuid.UUID
    bot_id: str
    linked_at: datetime = Field(default_factory=_utcnow)


# ── Bot Records ──────────────────────────────────────────────────────────────


class StatusChange(BaseModel):
    """One entry of a bot's append-only status history."""

    model_config = ConfigDict(frozen=True)

    code: str
    sub_code: str | None = None
    message: str | None = None
    created_at: datetime | None = None


class BotTimeline(BaseModel):
    """Values derived from a status history."""

    model_config = ConfigDict(frozen=True)

    current_status: str
    started_at: datetime | None = None
    ended_at: datetime | None = None
    recording_duration: timedelta | None = None


class BotRecord(BaseModel):
    """Local cache of one externally hosted bot, replaced wholesale on refresh."""

    bot_id: str
    meeting_url: str | None = None
    platform: str | None = None
    bot_name: str | None = None
    join_at: datetime | None = None
    status_changes: list[StatusChange] = Field(default_factory=list)
    recordings: list[dict[str, Any]] = Field(default_factory=list)
    has_recording: bool = False
    has_transcript: bool = False
    synced_at: datetime = Field(default_factory=_utcnow)


# ── Transcripts ──────────────────────────────────────────────────────────────


class TranscriptSegment(BaseModel):
    """A contiguous run of words from one speaker."""

    speaker: str
    words: list[str] = Field(default_factory=list)
    start_seconds: float | None = None

    @property
    def text(self) -> str:
        return " ".join(self.words)


class MediaReference(BaseModel):
    """Stable identifier of a media artifact (download URLs expire; ids don't)."""

    kind: str
    resource_id: str
    recording_id: str | None = None


class Transcript(BaseModel):
    """Retrieved transcript for a meeting."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    meeting_id: uuid.UUID
    source: str = "recall"
    segments: list[TranscriptSegment] = Field(default_factory=list)
    text: str = ""
    media: list[MediaReference] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)


# ── Automations ──────────────────────────────────────────────────────────────


class Automation(BaseModel):
    """Account-level rule requesting content generation from transcripts."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    account_id: str
    name: str
    platform: str = ""
    enabled: bool = True


class ContentRequest(BaseModel):
    """Payload handed to the content-generation queue."""

    meeting_id: uuid.UUID
    automation_id: uuid.UUID
    account_id: str


# ── Outcomes ─────────────────────────────────────────────────────────────────


class DispatchResult(BaseModel):
    """What a dispatch or discovery attempt did for one calendar event."""

    outcome: DispatchOutcome
    calendar_event_id: uuid.UUID
    meeting: Meeting | None = None
    bot_id: str | None = None
    detail: str = ""
