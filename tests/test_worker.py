"""End-to-end wiring test: bot finishes, transcript is fetched, content is requested."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from src.notetaker.meetings.schemas import Automation, Meeting, MeetingStatus
from src.notetaker.worker import Worker
from tests.doubles import (
    ACCOUNT_ID,
    NOW,
    make_bot_payload,
    make_event,
    make_recording,
)


@pytest.mark.asyncio
async def test_finished_bot_flows_through_to_content_generation(settings, repository, recall):
    event = repository.add_event(make_event())
    meeting = repository.add_meeting(
        Meeting(
            account_id=ACCOUNT_ID,
            calendar_event_id=event.id,
            bot_id="bot-1",
            status=MeetingStatus.RECORDING,
            started_at=NOW - timedelta(hours=1),
        )
    )
    automation = Automation(account_id=ACCOUNT_ID, name="Follow-up email")
    repository.automations = [automation]
    recall.get_bot.return_value = make_bot_payload(
        "bot-1",
        changes=[
            ("in_call_recording", NOW - timedelta(hours=1)),
            ("call_ended", NOW - timedelta(minutes=2)),
            ("done", NOW - timedelta(minutes=1)),
        ],
        recordings=[make_recording()],
    )
    recall.get_transcript.return_value = {
        "id": "tr-1",
        "data": {"download_url": "https://download.example/tr-1"},
    }
    recall.download.return_value = [{"participant": {"name": "Alice"}, "words": [{"text": "Done"}]}]
    generator = AsyncMock()

    worker = Worker(settings, repository, recall, content_generator=generator)
    await worker.transcript_jobs.start()
    await worker.content_jobs.start()
    try:
        await worker.reconciler.poll_meeting(meeting)
        await worker.transcript_jobs.drain()
        await worker.content_jobs.drain()
    finally:
        await worker.stop()

    assert repository.meetings[meeting.id].status == MeetingStatus.READY
    assert repository.transcripts[meeting.id].text == "Alice: Done"
    generator.generate.assert_awaited_once_with(meeting.id, automation.id)


def test_no_content_queue_without_generator(settings, repository, recall):
    worker = Worker(settings, repository, recall)

    assert worker.content_jobs is None
    assert worker.transcript_jobs.name == "transcript_fetch"
