"""Tests for TranscriptPipeline and the transcript payload helpers.

Covers the fetch flow from recording manifest to stored transcript,
fresh download URLs on every attempt, not-ready recordings, classified
failures and content job publication per enabled automation.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.notetaker.meetings.errors import (
    ParseError,
    PermanentApiError,
    TransientNetworkError,
)
from src.notetaker.meetings.schemas import (
    Automation,
    ContentRequest,
    Meeting,
    MeetingStatus,
    Transcript,
)
from src.notetaker.meetings.transcripts.pipeline import (
    TranscriptPipeline,
    first_completed_recording,
    flatten_segments,
    media_references,
    parse_transcript_payload,
    transcript_resource_id,
)
from tests.doubles import ACCOUNT_ID, make_bot_payload, make_event, make_recording

DOWNLOADED = [
    {
        "participant": {"id": 1, "name": "Alice"},
        "words": [
            {"text": "Hello", "start_timestamp": {"relative": 0.5}},
            {"text": "there", "start_timestamp": {"relative": 0.9}},
        ],
    },
    {"participant": {"id": 2, "name": "Bob"}, "words": [{"text": "Hi"}]},
]


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def content_jobs():
    queue = MagicMock()
    queue.submit = MagicMock()
    return queue


@pytest.fixture
def pipeline(recall, repository, content_jobs):
    return TranscriptPipeline(recall, repository, content_jobs=content_jobs)


@pytest.fixture
def processing_meeting(repository):
    event = repository.add_event(make_event())
    return repository.add_meeting(
        Meeting(
            account_id=ACCOUNT_ID,
            calendar_event_id=event.id,
            bot_id="bot-1",
            status=MeetingStatus.PROCESSING,
        )
    )


def _bot_with(*recordings):
    return make_bot_payload("bot-1", changes=[], recordings=list(recordings))


def _transcript_resource(url="https://download.example/tr-1?sig=1"):
    return {"id": "tr-1", "data": {"download_url": url}}


# ── Payload Helpers ──────────────────────────────────────────────────────────


class TestPayloadHelpers:
    def test_first_completed_recording_skips_unfinished(self):
        pending = make_recording("rec-0", status="processing")
        finished = make_recording("rec-1")

        assert first_completed_recording([pending, finished])["id"] == "rec-1"
        assert first_completed_recording([pending]) is None
        assert first_completed_recording(None) is None

    def test_manifest_must_be_a_list(self):
        with pytest.raises(ParseError):
            first_completed_recording({"id": "rec-1"})

    def test_transcript_not_ready(self):
        assert transcript_resource_id(make_recording(transcript_status="processing")) is None
        assert transcript_resource_id(make_recording(transcript_id=None)) is None
        assert transcript_resource_id(make_recording()) == "tr-1"

    def test_media_references_keep_resource_ids(self):
        refs = media_references(make_recording())

        assert {(r.kind, r.resource_id) for r in refs} == {
            ("video_mixed", "vid-1"),
            ("transcript", "tr-1"),
        }
        assert all(r.recording_id == "rec-1" for r in refs)

    def test_parse_participant_segments(self):
        segments = parse_transcript_payload(DOWNLOADED)

        assert [s.speaker for s in segments] == ["Alice", "Bob"]
        assert segments[0].start_seconds == 0.5
        assert flatten_segments(segments) == "Alice: Hello there\nBob: Hi"

    def test_parse_legacy_speaker_segments(self):
        segments = parse_transcript_payload(
            [
                {"speaker": "Carol", "words": ["Good", "morning"]},
                {"words": [{"text": "anyone?", "start_time": 3}]},
                {"speaker": "Dan", "words": []},
            ]
        )

        assert flatten_segments(segments) == "Carol: Good morning\nUnknown: anyone?"
        assert segments[1].start_seconds == 3.0

    def test_parse_rejects_unexpected_shape(self):
        with pytest.raises(ParseError):
            parse_transcript_payload({"segments": []})
        with pytest.raises(ParseError):
            parse_transcript_payload([{"speaker": "A", "words": [42]}])


# ── Pipeline ─────────────────────────────────────────────────────────────────


class TestTranscriptPipeline:
    @pytest.mark.asyncio
    async def test_fetches_stores_and_publishes(
        self, pipeline, repository, recall, content_jobs, processing_meeting
    ):
        enabled = Automation(account_id=ACCOUNT_ID, name="Summary")
        repository.automations = [
            enabled,
            Automation(account_id=ACCOUNT_ID, name="Paused", enabled=False),
            Automation(account_id="account-2", name="Other"),
        ]
        recall.get_bot.return_value = _bot_with(make_recording())
        recall.get_transcript.return_value = _transcript_resource()
        recall.download.return_value = DOWNLOADED

        transcript = await pipeline.process_meeting(processing_meeting.id)

        assert transcript.text == "Alice: Hello there\nBob: Hi"
        assert repository.transcripts[processing_meeting.id] == transcript
        assert repository.meetings[processing_meeting.id].status == MeetingStatus.READY
        recall.get_transcript.assert_awaited_once_with("tr-1")
        recall.download.assert_awaited_once_with("https://download.example/tr-1?sig=1")
        content_jobs.submit.assert_called_once_with(
            f"{processing_meeting.id}:{enabled.id}",
            ContentRequest(
                meeting_id=processing_meeting.id,
                automation_id=enabled.id,
                account_id=ACCOUNT_ID,
            ),
        )

    @pytest.mark.asyncio
    async def test_requests_fresh_download_url_each_attempt(
        self, pipeline, repository, recall, processing_meeting
    ):
        recall.get_bot.return_value = _bot_with(make_recording())
        recall.get_transcript.side_effect = [
            _transcript_resource("https://download.example/tr-1?sig=old"),
            _transcript_resource("https://download.example/tr-1?sig=new"),
        ]
        recall.download.side_effect = [
            TransientNetworkError("download", "timed out"),
            DOWNLOADED,
        ]

        with pytest.raises(TransientNetworkError):
            await pipeline.process_meeting(processing_meeting.id)
        assert repository.meetings[processing_meeting.id].status == MeetingStatus.PROCESSING

        await pipeline.process_meeting(processing_meeting.id)

        urls = [call.args[0] for call in recall.download.await_args_list]
        assert urls == [
            "https://download.example/tr-1?sig=old",
            "https://download.example/tr-1?sig=new",
        ]
        assert repository.meetings[processing_meeting.id].status == MeetingStatus.READY

    @pytest.mark.asyncio
    async def test_recording_not_ready_leaves_meeting_processing(
        self, pipeline, repository, recall, processing_meeting
    ):
        recall.get_bot.return_value = _bot_with(make_recording(status="processing"))

        result = await pipeline.process_meeting(processing_meeting.id)

        assert result is None
        assert repository.meetings[processing_meeting.id].status == MeetingStatus.PROCESSING
        recall.get_transcript.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transcript_not_ready_leaves_meeting_processing(
        self, pipeline, repository, recall, processing_meeting
    ):
        recall.get_bot.return_value = _bot_with(make_recording(transcript_status="processing"))

        assert await pipeline.process_meeting(processing_meeting.id) is None
        assert repository.transcripts == {}

    @pytest.mark.asyncio
    async def test_meeting_not_processing_is_skipped(self, pipeline, repository, recall):
        event = repository.add_event(make_event())
        meeting = repository.add_meeting(
            Meeting(
                account_id=ACCOUNT_ID,
                calendar_event_id=event.id,
                bot_id="bot-1",
                status=MeetingStatus.RECORDING,
            )
        )

        assert await pipeline.process_meeting(meeting.id) is None
        recall.get_bot.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_bot_fails_meeting(
        self, pipeline, repository, recall, processing_meeting
    ):
        recall.get_bot.side_effect = PermanentApiError("get_bot", 404, "Not found.")

        with pytest.raises(PermanentApiError):
            await pipeline.process_meeting(processing_meeting.id)

        assert repository.meetings[processing_meeting.id].status == MeetingStatus.FAILED

    @pytest.mark.asyncio
    async def test_unparseable_download_stores_nothing(
        self, pipeline, repository, recall, content_jobs, processing_meeting
    ):
        recall.get_bot.return_value = _bot_with(make_recording())
        recall.get_transcript.return_value = _transcript_resource()
        recall.download.return_value = {"unexpected": True}

        with pytest.raises(ParseError):
            await pipeline.process_meeting(processing_meeting.id)

        assert repository.transcripts == {}
        assert repository.meetings[processing_meeting.id].status == MeetingStatus.PROCESSING
        content_jobs.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_download_url_is_a_parse_error(
        self, pipeline, recall, processing_meeting
    ):
        recall.get_bot.return_value = _bot_with(make_recording())
        recall.get_transcript.return_value = {"id": "tr-1", "data": {}}

        with pytest.raises(ParseError):
            await pipeline.process_meeting(processing_meeting.id)

    @pytest.mark.asyncio
    async def test_concurrent_attempt_for_same_meeting_is_skipped(
        self, pipeline, recall, processing_meeting
    ):
        release = asyncio.Event()

        async def _slow_get_bot(bot_id):
            await release.wait()
            return _bot_with(make_recording(status="processing"))

        recall.get_bot.side_effect = _slow_get_bot

        first = asyncio.create_task(pipeline.process_meeting(processing_meeting.id))
        await asyncio.sleep(0)
        second = await pipeline.process_meeting(processing_meeting.id)
        release.set()
        await first

        assert second is None
        assert recall.get_bot.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_ready_write_is_retried_by_next_sweep(
        self, pipeline, repository, recall, content_jobs, processing_meeting
    ):
        automation = Automation(account_id=ACCOUNT_ID, name="Summary")
        repository.automations = [automation]
        recall.get_bot.return_value = _bot_with(make_recording())
        recall.get_transcript.return_value = _transcript_resource()
        recall.download.return_value = DOWNLOADED
        store = repository.store_transcript_and_mark_ready
        repository.store_transcript_and_mark_ready = AsyncMock(
            side_effect=RuntimeError("connection reset")
        )

        first = await pipeline.sweep()
        assert first.failed == 1
        assert repository.transcripts == {}
        assert repository.meetings[processing_meeting.id].status == MeetingStatus.PROCESSING
        content_jobs.submit.assert_not_called()

        repository.store_transcript_and_mark_ready = store
        second = await pipeline.sweep()

        assert second.total == 1
        assert second.succeeded == 1
        assert repository.meetings[processing_meeting.id].status == MeetingStatus.READY
        assert repository.transcripts[processing_meeting.id].text == "Alice: Hello there\nBob: Hi"
        content_jobs.submit.assert_called_once()
        assert (await pipeline.sweep()).total == 0

    @pytest.mark.asyncio
    async def test_stored_transcript_completes_without_download(
        self, pipeline, repository, recall, content_jobs, processing_meeting
    ):
        automation = Automation(account_id=ACCOUNT_ID, name="Summary")
        repository.automations = [automation]
        leftover = Transcript(meeting_id=processing_meeting.id, text="Alice: Earlier")
        repository.transcripts[processing_meeting.id] = leftover

        result = await pipeline.sweep()

        assert result.total == 1
        assert result.succeeded == 1
        assert repository.meetings[processing_meeting.id].status == MeetingStatus.READY
        assert repository.transcripts[processing_meeting.id] is leftover
        recall.get_bot.assert_not_awaited()
        recall.download.assert_not_awaited()
        content_jobs.submit.assert_called_once()

    @pytest.mark.asyncio
    async def test_sweep_isolates_failures(self, pipeline, repository, recall, processing_meeting):
        other_event = repository.add_event(make_event())
        other = repository.add_meeting(
            Meeting(
                account_id=ACCOUNT_ID,
                calendar_event_id=other_event.id,
                bot_id="bot-2",
                status=MeetingStatus.PROCESSING,
            )
        )

        async def _get_bot(bot_id):
            if bot_id == "bot-1":
                raise TransientNetworkError("get_bot", "timed out")
            return make_bot_payload(bot_id, recordings=[make_recording()])

        recall.get_bot.side_effect = _get_bot
        recall.get_transcript.return_value = _transcript_resource()
        recall.download.return_value = DOWNLOADED

        result = await pipeline.sweep()

        assert result.total == 2
        assert result.succeeded == 1
        assert result.failed == 1
        assert repository.meetings[other.id].status == MeetingStatus.READY
        assert repository.meetings[processing_meeting.id].status == MeetingStatus.PROCESSING
