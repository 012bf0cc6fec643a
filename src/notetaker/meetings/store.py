"""Repository interfaces consumed by the reconciler and transcript pipeline.

MeetingRepository implements all of them against SQLAlchemy; tests use an
in-memory implementation that enforces the same uniqueness rules.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Protocol

from src.notetaker.meetings.schemas import (
    Automation,
    BotRecord,
    CalendarEvent,
    Meeting,
    MeetingBotLink,
    MeetingCreate,
    MeetingStatus,
    Transcript,
)


class CalendarEventStore(Protocol):
    async def get_calendar_event(self, event_id: uuid.UUID) -> CalendarEvent | None: ...

    async def list_events_awaiting_meeting(self, ends_after: datetime) -> list[CalendarEvent]: ...

    async def set_dispatch_requested(
        self, event_id: uuid.UUID, requested: bool
    ) -> CalendarEvent: ...


class MeetingStore(Protocol):
    async def get_meeting(self, meeting_id: uuid.UUID) -> Meeting | None: ...

    async def get_active_meeting_for_event(
        self, account_id: str, calendar_event_id: uuid.UUID
    ) -> Meeting | None: ...

    async def get_meeting_by_bot_id(self, bot_id: str) -> Meeting | None: ...

    async def list_meetings_for_account(
        self, account_id: str, status: MeetingStatus | None = None
    ) -> list[Meeting]: ...

    async def list_meetings_by_status(self, *statuses: MeetingStatus) -> list[Meeting]: ...

    async def list_meetings_awaiting_transcript(self) -> list[Meeting]: ...

    async def create_meeting(self, data: MeetingCreate) -> Meeting: ...

    async def create_meeting_with_bot(
        self,
        data: MeetingCreate,
        create_bot: Callable[[], Awaitable[str]],
    ) -> tuple[Meeting, bool]: ...

    async def update_meeting_status(
        self,
        meeting_id: uuid.UUID,
        status: MeetingStatus,
        started_at: datetime | None = None,
        ended_at: datetime | None = None,
    ) -> Meeting: ...


class BotRecordStore(Protocol):
    async def save_bot_record(self, record: BotRecord) -> BotRecord: ...

    async def get_bot_record(self, bot_id: str) -> BotRecord | None: ...

    async def list_bot_links(self, meeting_id: uuid.UUID) -> list[MeetingBotLink]: ...


class TranscriptStore(Protocol):
    async def save_transcript(self, transcript: Transcript) -> Transcript: ...

    async def store_transcript_and_mark_ready(
        self, transcript: Transcript
    ) -> tuple[Transcript, Meeting]: ...

    async def get_transcript(self, meeting_id: uuid.UUID) -> Transcript | None: ...

    async def list_enabled_automations(self, account_id: str) -> list[Automation]: ...


class ReconciliationStore(
    CalendarEventStore, MeetingStore, BotRecordStore, TranscriptStore, Protocol
):
    """Everything the reconciler and pipeline read and write."""
