"""Meeting repository -- async persistence for every reconciliation entity.

Provides MeetingRepository with the session_factory callable pattern.
Handles serialization between Pydantic schemas and SQLAlchemy models for
calendar events, meetings, bot records, meeting-bot links, transcripts and
automations. Storage uniqueness violations surface as
DataIntegrityViolation so callers can treat them as "already claimed".

JSON columns use Pydantic model_dump(mode="json") for save and
model_validate() for load.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.notetaker.core.database import SessionFactory
from src.notetaker.meetings.bot.status import validate_transition
from src.notetaker.meetings.errors import DataIntegrityViolation
from src.notetaker.meetings.models import (
    AutomationModel,
    BotRecordModel,
    CalendarEventModel,
    MeetingBotLinkModel,
    MeetingModel,
    MeetingTranscriptModel,
)
from src.notetaker.meetings.schemas import (
    Automation,
    BotRecord,
    CalendarEvent,
    MediaReference,
    Meeting,
    MeetingBotLink,
    MeetingCreate,
    MeetingStatus,
    StatusChange,
    Transcript,
    TranscriptSegment,
)

logger = structlog.get_logger(__name__)

_CANCELLED = MeetingStatus.CANCELLED.value


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_event(model: CalendarEventModel) -> CalendarEvent:
    return CalendarEvent(
        id=model.id,
        account_id=model.account_id,
        title=model.title or "",
        join_url=model.join_url,
        platform=model.platform or "unknown",
        starts_at=model.starts_at,
        ends_at=model.ends_at,
        dispatch_requested=bool(model.dispatch_requested),
    )


def _model_to_meeting(model: MeetingModel) -> Meeting:
    """Convert MeetingModel to Meeting schema."""
    return Meeting(
        id=model.id,
        account_id=model.account_id,
        calendar_event_id=model.calendar_event_id,
        bot_id=model.bot_id,
        status=MeetingStatus(model.status),
        platform=model.platform or "unknown",
        started_at=model.started_at,
        ended_at=model.ended_at,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


def _model_to_bot_record(model: BotRecordModel) -> BotRecord:
    return BotRecord(
        bot_id=model.bot_id,
        meeting_url=model.meeting_url,
        platform=model.platform,
        bot_name=model.bot_name,
        join_at=model.join_at,
        status_changes=[
            StatusChange.model_validate(c) for c in (model.status_changes_data or [])
        ],
        recordings=list(model.recordings_data or []),
        has_recording=bool(model.has_recording),
        has_transcript=bool(model.has_transcript),
        synced_at=model.synced_at,
    )


def _model_to_transcript(model: MeetingTranscriptModel) -> Transcript:
    return Transcript(
        id=model.id,
        meeting_id=model.meeting_id,
        source=model.source,
        segments=[TranscriptSegment.model_validate(s) for s in (model.segments_data or [])],
        text=model.transcript_text or "",
        media=[MediaReference.model_validate(m) for m in (model.media_data or [])],
        created_at=model.created_at,
    )


def _model_to_automation(model: AutomationModel) -> Automation:
    return Automation(
        id=model.id,
        account_id=model.account_id,
        name=model.name,
        platform=model.platform or "",
        enabled=bool(model.enabled),
    )


def _new_meeting_model(data: MeetingCreate) -> MeetingModel:
    now = _now()
    return MeetingModel(
        id=uuid.uuid4(),
        account_id=data.account_id,
        calendar_event_id=data.calendar_event_id,
        bot_id=data.bot_id,
        status=data.status.value,
        platform=data.platform,
        started_at=data.started_at,
        ended_at=data.ended_at,
        created_at=now,
        updated_at=now,
    )


def _active_meeting_query(account_id: str, calendar_event_id: uuid.UUID):
    return select(MeetingModel).where(
        MeetingModel.account_id == account_id,
        MeetingModel.calendar_event_id == calendar_event_id,
        MeetingModel.status != _CANCELLED,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class MeetingRepository:
    """Async persistence for the reconciliation entities.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Calendar Events ──────────────────────────────────────────────────

    async def get_calendar_event(self, event_id: uuid.UUID) -> CalendarEvent | None:
        async for session in self._session_factory():
            model = await session.get(CalendarEventModel, event_id)
            return _model_to_event(model) if model is not None else None

    async def list_events_awaiting_meeting(self, ends_after: datetime) -> list[CalendarEvent]:
        """Events with dispatch requested and a join URL but no active meeting.

        Args:
            ends_after: Only events ending after this instant are returned.
        """
        has_meeting = exists().where(
            MeetingModel.account_id == CalendarEventModel.account_id,
            MeetingModel.calendar_event_id == CalendarEventModel.id,
            MeetingModel.status != _CANCELLED,
        )
        stmt = (
            select(CalendarEventModel)
            .where(
                CalendarEventModel.dispatch_requested.is_(True),
                CalendarEventModel.join_url.is_not(None),
                CalendarEventModel.join_url != "",
                CalendarEventModel.ends_at > ends_after,
                ~has_meeting,
            )
            .order_by(CalendarEventModel.starts_at.asc())
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [_model_to_event(m) for m in result.scalars().all()]

    async def set_dispatch_requested(
        self, event_id: uuid.UUID, requested: bool
    ) -> CalendarEvent:
        """Toggle the dispatch flag; the only calendar field written here.

        Raises:
            ValueError: If the event is not found.
        """
        async for session in self._session_factory():
            model = await session.get(CalendarEventModel, event_id)
            if model is None:
                raise ValueError(f"Calendar event {event_id} not found")
            model.dispatch_requested = requested
            await session.commit()
            await session.refresh(model)
            return _model_to_event(model)

    # ── Meetings ─────────────────────────────────────────────────────────

    async def get_meeting(self, meeting_id: uuid.UUID) -> Meeting | None:
        async for session in self._session_factory():
            model = await session.get(MeetingModel, meeting_id)
            return _model_to_meeting(model) if model is not None else None

    async def get_active_meeting_for_event(
        self, account_id: str, calendar_event_id: uuid.UUID
    ) -> Meeting | None:
        """The non-cancelled meeting for an (account, event) pair, if any."""
        async for session in self._session_factory():
            result = await session.execute(
                _active_meeting_query(account_id, calendar_event_id)
            )
            model = result.scalars().first()
            return _model_to_meeting(model) if model is not None else None

    async def get_meeting_by_bot_id(self, bot_id: str) -> Meeting | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(MeetingModel).where(MeetingModel.bot_id == bot_id)
            )
            model = result.scalars().first()
            return _model_to_meeting(model) if model is not None else None

    async def list_meetings_for_account(
        self, account_id: str, status: MeetingStatus | None = None
    ) -> list[Meeting]:
        stmt = select(MeetingModel).where(MeetingModel.account_id == account_id)
        if status is not None:
            stmt = stmt.where(MeetingModel.status == status.value)
        stmt = stmt.order_by(MeetingModel.created_at.desc())
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [_model_to_meeting(m) for m in result.scalars().all()]

    async def list_meetings_by_status(self, *statuses: MeetingStatus) -> list[Meeting]:
        stmt = (
            select(MeetingModel)
            .where(MeetingModel.status.in_([s.value for s in statuses]))
            .order_by(MeetingModel.created_at.asc())
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [_model_to_meeting(m) for m in result.scalars().all()]

    async def list_meetings_awaiting_transcript(self) -> list[Meeting]:
        """Processing meetings with a bot, whether or not a transcript is stored.

        A meeting only leaves ``processing`` once its transcript is stored,
        so a stored transcript alone never takes it out of the sweep.
        """
        stmt = select(MeetingModel).where(
            MeetingModel.status == MeetingStatus.PROCESSING.value,
            MeetingModel.bot_id.is_not(None),
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [_model_to_meeting(m) for m in result.scalars().all()]

    async def create_meeting(self, data: MeetingCreate) -> Meeting:
        """Insert a meeting, recording its bot link when it has a bot.

        Raises:
            DataIntegrityViolation: The event already has an active meeting
                or the bot is already claimed.
        """
        async for session in self._session_factory():
            model = _new_meeting_model(data)
            try:
                async with session.begin():
                    self._add_meeting(session, model)
            except IntegrityError as exc:
                raise DataIntegrityViolation("meeting", str(exc.orig)) from exc
            logger.info(
                "repository.meeting_created",
                meeting_id=str(model.id),
                calendar_event_id=str(data.calendar_event_id),
                bot_id=data.bot_id,
            )
            return _model_to_meeting(model)

    async def create_meeting_with_bot(
        self,
        data: MeetingCreate,
        create_bot: Callable[[], Awaitable[str]],
    ) -> tuple[Meeting, bool]:
        """Create a bot and its meeting inside one scoped transaction.

        Re-checks for an active meeting on the (account, event) pair under
        a row lock; only when none exists is ``create_bot`` awaited and the
        meeting inserted. Nothing commits unless the bot was created.

        Args:
            data: Meeting fields; ``bot_id`` is filled from create_bot().
            create_bot: Coroutine function performing the external create.

        Returns:
            (meeting, created). ``created`` is False when an active meeting
            already existed and no bot was created.

        Raises:
            DataIntegrityViolation: A concurrent worker inserted first.
        """
        async for session in self._session_factory():
            try:
                async with session.begin():
                    result = await session.execute(
                        _active_meeting_query(data.account_id, data.calendar_event_id)
                        .with_for_update()
                    )
                    existing = result.scalars().first()
                    if existing is not None:
                        return _model_to_meeting(existing), False

                    bot_id = await create_bot()
                    model = _new_meeting_model(data.model_copy(update={"bot_id": bot_id}))
                    self._add_meeting(session, model)
                    await session.flush()
            except IntegrityError as exc:
                raise DataIntegrityViolation("meeting", str(exc.orig)) from exc
            return _model_to_meeting(model), True

    async def update_meeting_status(
        self,
        meeting_id: uuid.UUID,
        status: MeetingStatus,
        started_at: datetime | None = None,
        ended_at: datetime | None = None,
    ) -> Meeting:
        """Advance a meeting's status, validating the transition.

        Raises:
            ValueError: If the meeting is not found.
            InvalidStatusTransitionError: If the transition is not allowed.
        """
        async for session in self._session_factory():
            model = await session.get(MeetingModel, meeting_id)
            if model is None:
                raise ValueError(f"Meeting {meeting_id} not found")
            current = MeetingStatus(model.status)
            if current != status:
                validate_transition(current, status)
            model.status = status.value
            if started_at is not None:
                model.started_at = started_at
            if ended_at is not None:
                model.ended_at = ended_at
            model.updated_at = _now()
            await session.commit()
            return _model_to_meeting(model)

    @staticmethod
    def _add_meeting(session: AsyncSession, model: MeetingModel) -> None:
        session.add(model)
        if model.bot_id:
            session.add(
                MeetingBotLinkModel(
                    id=uuid.uuid4(),
                    meeting_id=model.id,
                    bot_id=model.bot_id,
                    linked_at=model.created_at,
                )
            )

    # ── Bot Records ──────────────────────────────────────────────────────

    async def save_bot_record(self, record: BotRecord) -> BotRecord:
        """Replace the cached snapshot of a bot in full."""
        async for session in self._session_factory():
            await session.merge(
                BotRecordModel(
                    bot_id=record.bot_id,
                    meeting_url=record.meeting_url,
                    platform=record.platform,
                    bot_name=record.bot_name,
                    join_at=record.join_at,
                    status_changes_data=[
                        c.model_dump(mode="json") for c in record.status_changes
                    ],
                    recordings_data=record.recordings,
                    has_recording=record.has_recording,
                    has_transcript=record.has_transcript,
                    synced_at=record.synced_at,
                )
            )
            await session.commit()
            return record

    async def get_bot_record(self, bot_id: str) -> BotRecord | None:
        async for session in self._session_factory():
            model = await session.get(BotRecordModel, bot_id)
            return _model_to_bot_record(model) if model is not None else None

    async def list_bot_links(self, meeting_id: uuid.UUID) -> list[MeetingBotLink]:
        stmt = (
            select(MeetingBotLinkModel)
            .where(MeetingBotLinkModel.meeting_id == meeting_id)
            .order_by(MeetingBotLinkModel.linked_at.asc())
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [
                MeetingBotLink(meeting_id=m.meeting_id, bot_id=m.bot_id, linked_at=m.linked_at)
                for m in result.scalars().all()
            ]

    # ── Transcripts ──────────────────────────────────────────────────────

    async def save_transcript(self, transcript: Transcript) -> Transcript:
        """Insert or replace the transcript for its meeting."""
        async for session in self._session_factory():
            model = await self._upsert_transcript(session, transcript)
            await session.commit()
            return _model_to_transcript(model)

    async def store_transcript_and_mark_ready(
        self, transcript: Transcript
    ) -> tuple[Transcript, Meeting]:
        """Upsert the transcript and move its meeting to ``ready`` atomically.

        Either both writes commit or neither does, so a failed attempt
        leaves the meeting in ``processing`` for the next sweep.

        Raises:
            ValueError: If the meeting is not found.
            InvalidStatusTransitionError: If the meeting cannot become ready.
        """
        async for session in self._session_factory():
            async with session.begin():
                result = await session.execute(
                    select(MeetingModel)
                    .where(MeetingModel.id == transcript.meeting_id)
                    .with_for_update()
                )
                meeting = result.scalars().first()
                if meeting is None:
                    raise ValueError(f"Meeting {transcript.meeting_id} not found")
                current = MeetingStatus(meeting.status)
                if current != MeetingStatus.READY:
                    validate_transition(current, MeetingStatus.READY)
                model = await self._upsert_transcript(session, transcript)
                meeting.status = MeetingStatus.READY.value
                meeting.updated_at = _now()
            return _model_to_transcript(model), _model_to_meeting(meeting)

    @staticmethod
    async def _upsert_transcript(
        session: AsyncSession, transcript: Transcript
    ) -> MeetingTranscriptModel:
        result = await session.execute(
            select(MeetingTranscriptModel).where(
                MeetingTranscriptModel.meeting_id == transcript.meeting_id
            )
        )
        model = result.scalars().first()
        if model is None:
            model = MeetingTranscriptModel(
                id=transcript.id,
                meeting_id=transcript.meeting_id,
                created_at=transcript.created_at,
            )
            session.add(model)
        model.source = transcript.source
        model.segments_data = [s.model_dump(mode="json") for s in transcript.segments]
        model.transcript_text = transcript.text
        model.media_data = [m.model_dump(mode="json") for m in transcript.media]
        await session.flush()
        return model

    async def get_transcript(self, meeting_id: uuid.UUID) -> Transcript | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(MeetingTranscriptModel).where(
                    MeetingTranscriptModel.meeting_id == meeting_id
                )
            )
            model = result.scalars().first()
            return _model_to_transcript(model) if model is not None else None

    # ── Automations ──────────────────────────────────────────────────────

    async def list_enabled_automations(self, account_id: str) -> list[Automation]:
        stmt = select(AutomationModel).where(
            AutomationModel.account_id == account_id,
            AutomationModel.enabled.is_(True),
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [_model_to_automation(m) for m in result.scalars().all()]
