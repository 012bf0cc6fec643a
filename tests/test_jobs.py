"""Tests for the keyed in-process JobQueue."""

from __future__ import annotations

import asyncio

import pytest

from src.notetaker.core.jobs import JobQueue, JobStatus


class TestJobQueue:
    @pytest.mark.asyncio
    async def test_successful_job_is_observable(self):
        handled = []

        async def _handler(payload):
            handled.append(payload)

        queue = JobQueue("test", _handler)
        await queue.start()
        job = queue.submit("meeting-1", {"id": 1})

        finished = await queue.wait(job)
        await queue.stop()

        assert finished.status == JobStatus.succeeded
        assert finished.done
        assert finished.finished_at is not None
        assert handled == [{"id": 1}]
        assert queue.get(job.id) is job

    @pytest.mark.asyncio
    async def test_failed_job_records_error(self):
        async def _handler(payload):
            raise RuntimeError("transcript unavailable")

        queue = JobQueue("test", _handler)
        await queue.start()
        job = queue.submit("meeting-1")

        await queue.wait(job)
        await queue.stop()

        assert job.status == JobStatus.failed
        assert job.error == "RuntimeError: transcript unavailable"

    @pytest.mark.asyncio
    async def test_duplicate_key_returns_active_job(self):
        queue = JobQueue("test", lambda payload: asyncio.sleep(0))

        first = queue.submit("meeting-1")
        second = queue.submit("meeting-1")

        assert second is first
        assert queue.pending_keys() == ["meeting-1"]

        await queue.start()
        await queue.stop()

    @pytest.mark.asyncio
    async def test_key_can_be_resubmitted_after_completion(self):
        calls = 0

        async def _handler(payload):
            nonlocal calls
            calls += 1

        queue = JobQueue("test", _handler)
        await queue.start()
        first = await queue.wait(queue.submit("meeting-1"))
        second = await queue.wait(queue.submit("meeting-1"))
        await queue.stop()

        assert second.id != first.id
        assert calls == 2
        assert queue.pending_keys() == []

    @pytest.mark.asyncio
    async def test_stop_drains_queued_jobs(self):
        done = []

        async def _handler(payload):
            await asyncio.sleep(0.01)
            done.append(payload)

        queue = JobQueue("test", _handler, workers=2)
        await queue.start()
        jobs = [queue.submit(f"meeting-{i}", i) for i in range(5)]

        await queue.stop(drain=True)

        assert sorted(done) == [0, 1, 2, 3, 4]
        assert all(job.status == JobStatus.succeeded for job in jobs)
        assert not queue.running

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        async def _handler(payload):
            return None

        queue = JobQueue("test", _handler, history_size=2)
        await queue.start()
        jobs = [await queue.wait(queue.submit(f"k{i}")) for i in range(4)]
        await queue.stop()

        assert queue.get(jobs[0].id) is None
        assert queue.get(jobs[-1].id) is jobs[-1]
