"""Bot reconciliation -- dispatch, discovery, status polling and withdrawal.

BotReconciler keeps three state spaces consistent: calendar events asking
for a bot, persisted meetings, and bots living in the external directory.

- Dispatch creates at most one bot per (account, calendar event). The
  active-meeting check and the bot creation run inside one repository
  transaction, and the storage uniqueness constraints turn a lost race
  into DataIntegrityViolation, which is a no-op for the loser.
- Discovery links orphaned bots (created but never recorded, e.g. after a
  crash) to the event whose join URL they match, preferring finished
  recordings over longer ones over more recent ones.
- Polling refreshes the cached BotRecord and moves the meeting forward
  through the lifecycle; reaching ``processing`` hands the meeting to the
  transcript job queue.

Failures are classified per meeting or event and never abort a sweep.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone

import structlog

from src.notetaker.config import Settings
from src.notetaker.core.batch import BatchResult, fan_out
from src.notetaker.core.jobs import Job, JobQueue
from src.notetaker.core.monitoring import dispatch_outcomes_total, meeting_transitions_total
from src.notetaker.meetings.bot.recall_client import RecallClient
from src.notetaker.meetings.bot.status import (
    DONE_CODES,
    InvalidStatusTransitionError,
    can_transition,
    meeting_status_for_bot,
    parse_bot_record,
    timeline_for,
)
from src.notetaker.meetings.errors import (
    DataIntegrityViolation,
    ParseError,
    PermanentApiError,
    ReconciliationError,
    TransientNetworkError,
)
from src.notetaker.meetings.schemas import (
    POLLED_STATUSES,
    TERMINAL_STATUSES,
    BotRecord,
    CalendarEvent,
    DispatchOutcome,
    DispatchResult,
    Meeting,
    MeetingCreate,
    MeetingStatus,
)
from src.notetaker.meetings.store import ReconciliationStore
from src.notetaker.meetings.urls import detect_platform, meeting_urls_equivalent

logger = structlog.get_logger(__name__)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def rank_candidates(records: Sequence[BotRecord]) -> list[BotRecord]:
    """Order candidate bots best first.

    Bots whose current status is ``done`` come first, then longer recording
    duration, then more recent start. Bots without a duration or start
    rank below those with one. Equal bots keep their input order.
    """

    def _key(record: BotRecord) -> tuple:
        timeline = timeline_for(record)
        duration = timeline.recording_duration
        return (
            timeline.current_status in DONE_CODES,
            duration is not None,
            duration or timedelta(0),
            timeline.started_at is not None,
            timeline.started_at or _OLDEST,
        )

    return sorted(records, key=_key, reverse=True)


class BotReconciler:
    """Drives bots and meetings toward agreement with calendar intent.

    Args:
        recall_client: Bot directory client.
        repository: Store for events, meetings, bot records and transcripts.
        settings: Lead time, bot name, discovery lookback and fan-out bound.
        transcript_jobs: Queue receiving meeting ids that reached ``processing``.
        clock: Returns the current UTC time; overridable in tests.
    """

    def __init__(
        self,
        recall_client: RecallClient,
        repository: ReconciliationStore,
        settings: Settings,
        transcript_jobs: JobQueue | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._recall = recall_client
        self._repository = repository
        self._settings = settings
        self._transcript_jobs = transcript_jobs
        self._clock = clock or _utcnow

    # ── Dispatch ─────────────────────────────────────────────────────────

    def join_time(self, event: CalendarEvent, now: datetime) -> datetime | None:
        """When the bot should join: lead time before start, or now (None)."""
        join_at = event.starts_at - timedelta(minutes=self._settings.BOT_LEAD_MINUTES)
        return join_at if join_at > now else None

    async def request_dispatch(self, event_id: uuid.UUID) -> DispatchResult:
        """Mark an event as wanting a bot and dispatch one now.

        External failures leave the flag set; the dispatch sweep retries on
        its next tick and the result reports ``deferred``.
        """
        event = await self._repository.set_dispatch_requested(event_id, True)
        try:
            return await self.dispatch_bot(event)
        except ReconciliationError as exc:
            logger.warning(
                "reconciler.dispatch_deferred",
                calendar_event_id=str(event.id),
                error=str(exc),
            )
            return self._result(DispatchOutcome.DEFERRED, event, detail=str(exc))

    async def dispatch_bot(
        self,
        event: CalendarEvent,
        directory: list[BotRecord] | None = None,
    ) -> DispatchResult:
        """Ensure the event has exactly one bot, creating it if needed.

        An unclaimed bot already in the directory for the same meeting is
        linked rather than creating a second one.

        Args:
            event: Calendar event with dispatch requested.
            directory: Snapshot of the bot directory shared across a sweep;
                listed on demand when omitted.

        Returns:
            DispatchResult describing what happened.

        Raises:
            TransientNetworkError: Directory unreachable; nothing persisted.
            PermanentApiError: Directory rejected the request.
            ParseError: Directory answered with an unexpected shape.
        """
        log = logger.bind(calendar_event_id=str(event.id), account_id=event.account_id)
        now = self._clock()

        if not event.join_url:
            return self._result(DispatchOutcome.SKIPPED, event, detail="no join url")
        if event.ends_at <= now:
            return self._result(DispatchOutcome.SKIPPED, event, detail="event already ended")

        linked = await self.discover_and_link(event, directory=directory)
        if linked.outcome != DispatchOutcome.SKIPPED:
            return linked

        created_bot_ids: list[str] = []
        join_at = self.join_time(event, now)

        async def _create() -> str:
            bot_id = await self._recall.create_bot(
                meeting_url=event.join_url,
                bot_name=self._settings.MEETING_BOT_NAME,
                join_at=join_at,
            )
            created_bot_ids.append(bot_id)
            return bot_id

        data = MeetingCreate(
            account_id=event.account_id,
            calendar_event_id=event.id,
            platform=self._platform_for(event),
        )
        try:
            meeting, created = await self._repository.create_meeting_with_bot(data, _create)
        except DataIntegrityViolation as exc:
            log.info("reconciler.dispatch_claimed_elsewhere", detail=exc.detail)
            for bot_id in created_bot_ids:
                await self._discard_bot(bot_id)
            return self._result(DispatchOutcome.CLAIMED_ELSEWHERE, event, detail=exc.detail)

        if not created:
            return self._result(
                DispatchOutcome.ALREADY_EXISTS, event, meeting=meeting, bot_id=meeting.bot_id
            )

        log.info(
            "reconciler.bot_dispatched",
            meeting_id=str(meeting.id),
            bot_id=meeting.bot_id,
            join_at=join_at.isoformat() if join_at else None,
        )
        return self._result(
            DispatchOutcome.CREATED, event, meeting=meeting, bot_id=meeting.bot_id
        )

    async def dispatch_pending_events(self) -> BatchResult:
        """Dispatch sweep: every upcoming event still waiting for a meeting."""
        events = await self._repository.list_events_awaiting_meeting(
            ends_after=self._clock()
        )
        if not events:
            return BatchResult(operation="dispatch_sweep")

        directory = await self.load_directory()

        async def _dispatch(event: CalendarEvent) -> DispatchResult:
            return await self.dispatch_bot(event, directory=directory)

        return await fan_out(
            events,
            _dispatch,
            operation="dispatch_sweep",
            concurrency=self._settings.BATCH_CONCURRENCY,
        )

    async def withdraw_dispatch(self, event_id: uuid.UUID) -> Meeting | None:
        """Clear the dispatch flag and cancel the event's live meeting.

        The bot is deleted best effort; a failed delete is only logged.

        Returns:
            The cancelled meeting, an already-terminal meeting unchanged, or
            None when the event had no meeting.
        """
        event = await self._repository.set_dispatch_requested(event_id, False)
        meeting = await self._repository.get_active_meeting_for_event(
            event.account_id, event.id
        )
        if meeting is None or meeting.status in TERMINAL_STATUSES:
            return meeting

        try:
            cancelled = await self._transition(meeting, MeetingStatus.CANCELLED)
        except InvalidStatusTransitionError:
            # A concurrent poll finished the meeting first
            current = await self._repository.get_meeting(meeting.id)
            logger.info(
                "reconciler.withdraw_superseded",
                meeting_id=str(meeting.id),
                status=current.status.value if current else None,
            )
            return current
        if meeting.bot_id:
            await self._discard_bot(meeting.bot_id)
        return cancelled

    async def _discard_bot(self, bot_id: str) -> bool:
        """Delete a bot, asking it to leave the call if it already joined."""
        log = logger.bind(bot_id=bot_id)
        try:
            await self._recall.delete_bot(bot_id)
            return True
        except PermanentApiError as exc:
            if exc.not_found:
                return True
            log.info("reconciler.delete_rejected", status_code=exc.status_code)
        except ReconciliationError as exc:
            log.warning("reconciler.bot_delete_failed", error=str(exc))
            return False

        try:
            await self._recall.leave_call(bot_id)
            return True
        except ReconciliationError as exc:
            log.warning("reconciler.bot_leave_failed", error=str(exc))
            return False

    # ── Discovery ────────────────────────────────────────────────────────

    def within_event_window(self, record: BotRecord, event: CalendarEvent) -> bool:
        """Whether the bot's scheduled join and actual start fall inside the event.

        Recurring meetings share a join URL, so a bot is only a candidate
        when neither its join_at nor its started_at lies before the lead
        time ahead of the event or after the event ended.
        """
        opens = event.starts_at - timedelta(minutes=self._settings.BOT_LEAD_MINUTES)
        started_at = timeline_for(record).started_at
        for instant in (record.join_at, started_at):
            if instant is not None and not opens <= instant <= event.ends_at:
                return False
        return True

    async def load_directory(self) -> list[BotRecord]:
        """List every bot and refresh its cached BotRecord.

        Bots with an unparseable payload are logged and left out.
        """
        payloads = await self._recall.list_bots()
        records: list[BotRecord] = []
        for payload in payloads:
            try:
                record = parse_bot_record(payload)
            except ParseError as exc:
                logger.warning(
                    "reconciler.bot_unparseable",
                    what=exc.what,
                    payload_sample=exc.payload_sample,
                )
                continue
            await self._repository.save_bot_record(record)
            records.append(record)
        return records

    async def discover_and_link(
        self,
        event: CalendarEvent,
        directory: list[BotRecord] | None = None,
    ) -> DispatchResult:
        """Link the best unclaimed directory bot matching the event's URL.

        Candidates are bots whose reported URL is equivalent to the event's
        join URL, that joined or started within the event's window, that no
        meeting references yet and that have not failed.
        Linking creates the meeting with the status the bot implies; a
        finished bot goes straight to ``processing`` and the transcript job.

        Returns:
            ``linked`` with the new meeting, ``already_exists`` when the
            event has a meeting, ``claimed_elsewhere`` when a concurrent
            writer won, or ``skipped`` when no candidate matched.
        """
        existing = await self._repository.get_active_meeting_for_event(
            event.account_id, event.id
        )
        if existing is not None:
            return self._result(
                DispatchOutcome.ALREADY_EXISTS, event, meeting=existing, bot_id=existing.bot_id
            )
        if not event.join_url:
            return self._result(DispatchOutcome.SKIPPED, event, detail="no join url")

        records = directory if directory is not None else await self.load_directory()
        candidates: list[BotRecord] = []
        for record in records:
            if not meeting_urls_equivalent(record.meeting_url, event.join_url):
                continue
            if not self.within_event_window(record, event):
                continue
            timeline = timeline_for(record)
            if meeting_status_for_bot(timeline.current_status) == MeetingStatus.FAILED:
                continue
            if await self._repository.get_meeting_by_bot_id(record.bot_id) is not None:
                continue
            candidates.append(record)

        if not candidates:
            return self._result(DispatchOutcome.SKIPPED, event, detail="no matching bot")

        best = rank_candidates(candidates)[0]
        timeline = timeline_for(best)
        status = meeting_status_for_bot(timeline.current_status) or MeetingStatus.SCHEDULED
        data = MeetingCreate(
            account_id=event.account_id,
            calendar_event_id=event.id,
            bot_id=best.bot_id,
            status=status,
            platform=self._platform_for(event),
            started_at=timeline.started_at,
            ended_at=timeline.ended_at if status == MeetingStatus.PROCESSING else None,
        )
        try:
            meeting = await self._repository.create_meeting(data)
        except DataIntegrityViolation as exc:
            logger.info(
                "reconciler.link_claimed_elsewhere",
                calendar_event_id=str(event.id),
                bot_id=best.bot_id,
                detail=exc.detail,
            )
            return self._result(DispatchOutcome.CLAIMED_ELSEWHERE, event, bot_id=best.bot_id)

        logger.info(
            "reconciler.bot_linked",
            calendar_event_id=str(event.id),
            meeting_id=str(meeting.id),
            bot_id=best.bot_id,
            bot_status=timeline.current_status,
            candidates=len(candidates),
        )
        if meeting.status == MeetingStatus.PROCESSING:
            self.enqueue_transcript(meeting)
        return self._result(DispatchOutcome.LINKED, event, meeting=meeting, bot_id=best.bot_id)

    async def run_discovery_sweep(self) -> BatchResult:
        """Link orphaned bots to recent events that still lack a meeting."""
        since = self._clock() - timedelta(hours=self._settings.DISCOVERY_LOOKBACK_HOURS)
        events = await self._repository.list_events_awaiting_meeting(ends_after=since)
        if not events:
            return BatchResult(operation="discovery_sweep")

        directory = await self.load_directory()

        async def _discover(event: CalendarEvent) -> DispatchResult:
            return await self.discover_and_link(event, directory=directory)

        return await fan_out(
            events,
            _discover,
            operation="discovery_sweep",
            concurrency=self._settings.BATCH_CONCURRENCY,
        )

    # ── Status Polling ───────────────────────────────────────────────────

    async def poll_active_meetings(self) -> BatchResult:
        """Poll the bot of every scheduled or recording meeting."""
        meetings = await self._repository.list_meetings_by_status(*POLLED_STATUSES)
        return await fan_out(
            [m for m in meetings if m.bot_id],
            self.poll_meeting,
            operation="bot_status_poll",
            concurrency=self._settings.BATCH_CONCURRENCY,
        )

    async def poll_meeting(self, meeting: Meeting) -> Meeting:
        """Refresh one meeting's bot and apply the status it implies.

        A missing bot (404) fails the meeting; other classified failures
        leave it unchanged until the next tick.
        """
        log = logger.bind(meeting_id=str(meeting.id), bot_id=meeting.bot_id)
        try:
            record = parse_bot_record(await self._recall.get_bot(meeting.bot_id))
        except TransientNetworkError as exc:
            log.info("reconciler.poll_no_information", error=str(exc))
            return meeting
        except PermanentApiError as exc:
            if exc.not_found:
                log.warning("reconciler.bot_missing")
                return await self._transition(meeting, MeetingStatus.FAILED)
            log.warning("reconciler.poll_rejected", status_code=exc.status_code, body=exc.body)
            return meeting
        except ParseError as exc:
            log.warning("reconciler.poll_unparseable", what=exc.what, payload_sample=exc.payload_sample)
            return meeting

        await self._repository.save_bot_record(record)
        return await self.apply_bot_status(meeting, record)

    async def apply_bot_status(self, meeting: Meeting, record: BotRecord) -> Meeting:
        """Move the meeting forward to the status its bot implies.

        Backward or unknown transitions are ignored.
        """
        timeline = timeline_for(record)
        target = meeting_status_for_bot(timeline.current_status)
        if target is None or target == meeting.status:
            return meeting
        if not can_transition(meeting.status, target):
            logger.debug(
                "reconciler.transition_ignored",
                meeting_id=str(meeting.id),
                from_status=meeting.status.value,
                to_status=target.value,
            )
            return meeting

        now = self._clock()
        started_at = None
        if meeting.started_at is None and target != MeetingStatus.FAILED:
            started_at = timeline.started_at or now
        ended_at = None
        if target in (MeetingStatus.PROCESSING, MeetingStatus.FAILED) and meeting.ended_at is None:
            ended_at = timeline.ended_at or (now if target == MeetingStatus.PROCESSING else None)

        updated = await self._transition(meeting, target, started_at=started_at, ended_at=ended_at)
        if target == MeetingStatus.PROCESSING:
            self.enqueue_transcript(updated)
        return updated

    # ── Helpers ──────────────────────────────────────────────────────────

    def enqueue_transcript(self, meeting: Meeting) -> Job | None:
        """Hand a processing meeting to the transcript job queue."""
        if self._transcript_jobs is None:
            logger.debug("reconciler.no_transcript_queue", meeting_id=str(meeting.id))
            return None
        return self._transcript_jobs.submit(str(meeting.id), meeting.id)

    async def _transition(
        self,
        meeting: Meeting,
        status: MeetingStatus,
        started_at: datetime | None = None,
        ended_at: datetime | None = None,
    ) -> Meeting:
        updated = await self._repository.update_meeting_status(
            meeting.id, status, started_at=started_at, ended_at=ended_at
        )
        meeting_transitions_total.labels(
            from_status=meeting.status.value, to_status=status.value
        ).inc()
        logger.info(
            "reconciler.meeting_transitioned",
            meeting_id=str(meeting.id),
            bot_id=meeting.bot_id,
            from_status=meeting.status.value,
            to_status=status.value,
        )
        return updated

    @staticmethod
    def _platform_for(event: CalendarEvent) -> str:
        if event.platform and event.platform != "unknown":
            return event.platform
        return detect_platform(event.join_url)

    @staticmethod
    def _result(
        outcome: DispatchOutcome,
        event: CalendarEvent,
        meeting: Meeting | None = None,
        bot_id: str | None = None,
        detail: str = "",
    ) -> DispatchResult:
        dispatch_outcomes_total.labels(outcome=outcome.value).inc()
        return DispatchResult(
            outcome=outcome,
            calendar_event_id=event.id,
            meeting=meeting,
            bot_id=bot_id,
            detail=detail,
        )
