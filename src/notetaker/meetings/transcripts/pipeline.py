"""Transcript fetch pipeline.

Runs for meetings in ``processing``: reads the bot's recording manifest,
resolves the transcript resource of the first completed recording, asks for
a fresh signed download URL (they expire, so none is ever cached),
downloads and parses the speaker segments, then stores the transcript and
moves the meeting to ``ready`` in one transaction. Each enabled automation
of the account then gets a content-generation job.

A recording or transcript that is not complete yet is "not ready": the
meeting stays in ``processing`` and the transcript sweep tries again.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog

from src.notetaker.core.batch import BatchResult, fan_out
from src.notetaker.core.jobs import JobQueue
from src.notetaker.core.monitoring import meeting_transitions_total
from src.notetaker.meetings.bot.recall_client import RecallClient
from src.notetaker.meetings.errors import ParseError, PermanentApiError, ReconciliationError
from src.notetaker.meetings.schemas import (
    ContentRequest,
    MediaReference,
    Meeting,
    MeetingStatus,
    Transcript,
    TranscriptSegment,
)
from src.notetaker.meetings.store import ReconciliationStore

logger = structlog.get_logger(__name__)

UNKNOWN_SPEAKER = "Unknown"
COMPLETED_CODE = "done"


# ── Payload Helpers ─────────────────────────────────────────────────────────


def _status_code(resource: dict[str, Any]) -> str | None:
    status = resource.get("status")
    if isinstance(status, dict):
        return status.get("code")
    return status


def first_completed_recording(recordings: Any) -> dict[str, Any] | None:
    """First recording in the manifest whose status is ``done``."""
    if recordings is None:
        return None
    if not isinstance(recordings, list):
        raise ParseError("recording manifest", recordings)
    for recording in recordings:
        if isinstance(recording, dict) and _status_code(recording) == COMPLETED_CODE:
            return recording
    return None


def transcript_resource_id(recording: dict[str, Any]) -> str | None:
    """Id of the recording's completed transcript, or None if not ready."""
    shortcuts = recording.get("media_shortcuts") or {}
    if not isinstance(shortcuts, dict):
        raise ParseError("recording media_shortcuts", shortcuts)
    transcript = shortcuts.get("transcript")
    if not transcript:
        return None
    if not isinstance(transcript, dict) or not transcript.get("id"):
        raise ParseError("transcript shortcut", transcript)
    code = _status_code(transcript)
    if code is not None and code != COMPLETED_CODE:
        return None
    return str(transcript["id"])


def media_references(recording: dict[str, Any]) -> list[MediaReference]:
    """Stable ids of every media artifact attached to a recording."""
    recording_id = recording.get("id")
    refs: list[MediaReference] = []
    shortcuts = recording.get("media_shortcuts") or {}
    for kind, media in shortcuts.items():
        if isinstance(media, dict) and media.get("id"):
            refs.append(
                MediaReference(
                    kind=kind,
                    resource_id=str(media["id"]),
                    recording_id=str(recording_id) if recording_id else None,
                )
            )
    return refs


def _speaker(segment: dict[str, Any]) -> str:
    participant = segment.get("participant")
    if isinstance(participant, dict) and participant.get("name"):
        return str(participant["name"])
    if segment.get("speaker"):
        return str(segment["speaker"])
    return UNKNOWN_SPEAKER


def _start_seconds(word: dict[str, Any]) -> float | None:
    stamp = word.get("start_timestamp")
    if isinstance(stamp, dict):
        stamp = stamp.get("relative")
    if stamp is None:
        stamp = word.get("start_time")
    return float(stamp) if isinstance(stamp, (int, float)) else None


def parse_transcript_payload(payload: Any) -> list[TranscriptSegment]:
    """Parse a downloaded transcript into ordered speaker segments.

    Accepts both ``{"participant": {"name"}, "words": [...]}`` and the older
    ``{"speaker", "words": [...]}`` segment shapes. Segments without words
    are dropped.

    Raises:
        ParseError: The payload is not a list of segment objects.
    """
    if not isinstance(payload, list):
        raise ParseError("transcript payload", payload)

    segments: list[TranscriptSegment] = []
    for raw in payload:
        if not isinstance(raw, dict) or not isinstance(raw.get("words", []), list):
            raise ParseError("transcript segment", raw)
        words: list[str] = []
        start: float | None = None
        for word in raw.get("words", []):
            if isinstance(word, str):
                text = word
            elif isinstance(word, dict):
                text = str(word.get("text", ""))
                if start is None:
                    start = _start_seconds(word)
            else:
                raise ParseError("transcript word", word)
            if text.strip():
                words.append(text.strip())
        if words:
            segments.append(
                TranscriptSegment(speaker=_speaker(raw), words=words, start_seconds=start)
            )
    return segments


def flatten_segments(segments: list[TranscriptSegment]) -> str:
    """One ``Speaker: words`` line per segment."""
    return "\n".join(f"{s.speaker}: {s.text}" for s in segments)


# ── Pipeline ────────────────────────────────────────────────────────────────


class TranscriptPipeline:
    """Retrieves and stores transcripts for processing meetings.

    Args:
        recall_client: Bot directory client.
        repository: Store for meetings, transcripts and automations.
        content_jobs: Queue receiving ContentRequest payloads.
        concurrency: Fan-out bound for the sweep (0 = unbounded).
    """

    def __init__(
        self,
        recall_client: RecallClient,
        repository: ReconciliationStore,
        content_jobs: JobQueue | None = None,
        concurrency: int = 0,
    ) -> None:
        self._recall = recall_client
        self._repository = repository
        self._content_jobs = content_jobs
        self._concurrency = concurrency
        self._in_flight: set[uuid.UUID] = set()

    async def sweep(self) -> BatchResult:
        """Process every meeting still in ``processing``."""
        meetings = await self._repository.list_meetings_awaiting_transcript()
        return await fan_out(
            [m.id for m in meetings],
            self.process_meeting,
            operation="transcript_sweep",
            concurrency=self._concurrency,
        )

    async def process_meeting(self, meeting_id: uuid.UUID) -> Transcript | None:
        """Fetch, store and publish one meeting's transcript.

        Returns:
            The stored transcript, or None when the meeting is not in
            ``processing``, is already being handled, or its transcript is
            not ready yet.

        Raises:
            ReconciliationError: Classified external failure; the meeting is
                left unchanged unless its bot is gone, which fails it.
        """
        if meeting_id in self._in_flight:
            logger.debug("transcript.already_in_flight", meeting_id=str(meeting_id))
            return None

        self._in_flight.add(meeting_id)
        try:
            meeting = await self._repository.get_meeting(meeting_id)
            if meeting is None or meeting.status != MeetingStatus.PROCESSING or not meeting.bot_id:
                logger.debug("transcript.skipped", meeting_id=str(meeting_id))
                return None
            return await self._classified(meeting)
        finally:
            self._in_flight.discard(meeting_id)

    async def _classified(self, meeting: Meeting) -> Transcript | None:
        try:
            return await self._process(meeting)
        except PermanentApiError as exc:
            if exc.not_found and exc.operation == "get_bot":
                logger.warning("transcript.bot_missing", meeting_id=str(meeting.id), bot_id=meeting.bot_id)
                await self._advance(meeting, MeetingStatus.FAILED)
            else:
                logger.warning(
                    "transcript.rejected",
                    meeting_id=str(meeting.id),
                    operation=exc.operation,
                    status_code=exc.status_code,
                )
            raise
        except ParseError as exc:
            logger.warning(
                "transcript.unparseable",
                meeting_id=str(meeting.id),
                what=exc.what,
                payload_sample=exc.payload_sample,
            )
            raise
        except ReconciliationError as exc:
            logger.info("transcript.fetch_deferred", meeting_id=str(meeting.id), error=str(exc))
            raise

    async def _process(self, meeting: Meeting) -> Transcript | None:
        log = logger.bind(meeting_id=str(meeting.id), bot_id=meeting.bot_id)

        stored = await self._repository.get_transcript(meeting.id)
        if stored is not None:
            log.info("transcript.already_stored", transcript_id=str(stored.id))
            return await self._complete(meeting, stored)

        bot = await self._recall.get_bot(meeting.bot_id)
        recording = first_completed_recording(bot.get("recordings"))
        if recording is None:
            log.info("transcript.recording_not_ready")
            return None
        transcript_id = transcript_resource_id(recording)
        if transcript_id is None:
            log.info("transcript.transcript_not_ready", recording_id=recording.get("id"))
            return None

        resource = await self._recall.get_transcript(transcript_id)
        download_url = (resource.get("data") or {}).get("download_url")
        if not download_url:
            raise ParseError("transcript download url", resource)

        payload = await self._recall.download(download_url)
        segments = parse_transcript_payload(payload)

        transcript = Transcript(
            meeting_id=meeting.id,
            segments=segments,
            text=flatten_segments(segments),
            media=media_references(recording),
        )
        log.info("transcript.downloaded", transcript_id=transcript_id, segments=len(segments))
        return await self._complete(meeting, transcript)

    async def _complete(self, meeting: Meeting, transcript: Transcript) -> Transcript:
        """Store the transcript with the ``ready`` transition, then publish."""
        stored, _ = await self._repository.store_transcript_and_mark_ready(transcript)
        meeting_transitions_total.labels(
            from_status=meeting.status.value, to_status=MeetingStatus.READY.value
        ).inc()
        logger.info("transcript.stored", meeting_id=str(meeting.id), transcript_id=str(stored.id))
        await self._publish(meeting)
        return stored

    async def _advance(self, meeting: Meeting, status: MeetingStatus) -> Meeting:
        updated = await self._repository.update_meeting_status(meeting.id, status)
        meeting_transitions_total.labels(
            from_status=meeting.status.value, to_status=status.value
        ).inc()
        return updated

    async def _publish(self, meeting: Meeting) -> None:
        """Enqueue content generation for each enabled automation."""
        automations = await self._repository.list_enabled_automations(meeting.account_id)
        if not automations:
            return
        if self._content_jobs is None:
            logger.debug("transcript.no_content_queue", meeting_id=str(meeting.id))
            return
        for automation in automations:
            self._content_jobs.submit(
                f"{meeting.id}:{automation.id}",
                ContentRequest(
                    meeting_id=meeting.id,
                    automation_id=automation.id,
                    account_id=meeting.account_id,
                ),
            )
