"""Reconciliation worker entrypoint.

Builds every component from one Settings instance, starts the job queues
and the scheduler, and runs until SIGINT/SIGTERM:

    python -m src.notetaker.worker
"""

from __future__ import annotations

import asyncio
import signal

import structlog

from src.notetaker.config import Environment, Settings, get_settings
from src.notetaker.core.database import close_db, create_engine, init_db, make_session_factory
from src.notetaker.core.jobs import JobQueue
from src.notetaker.core.logging import configure_structlog
from src.notetaker.core.monitoring import start_metrics_server
from src.notetaker.meetings.bot.recall_client import RecallClient
from src.notetaker.meetings.bot.reconciler import BotReconciler
from src.notetaker.meetings.collaborators import CalendarSync, ContentGenerator
from src.notetaker.meetings.repository import MeetingRepository
from src.notetaker.meetings.scheduler import ReconciliationScheduler
from src.notetaker.meetings.schemas import ContentRequest
from src.notetaker.meetings.store import ReconciliationStore
from src.notetaker.meetings.transcripts.pipeline import TranscriptPipeline

logger = structlog.get_logger(__name__)


class Worker:
    """Assembled reconciliation service.

    Args:
        settings: Service configuration.
        repository: Store for all reconciliation entities.
        recall_client: Bot directory client.
        calendar_sync: Optional calendar ingestion collaborator.
        content_generator: Optional content generation collaborator.
    """

    def __init__(
        self,
        settings: Settings,
        repository: ReconciliationStore,
        recall_client: RecallClient,
        calendar_sync: CalendarSync | None = None,
        content_generator: ContentGenerator | None = None,
    ) -> None:
        self.settings = settings
        self.content_jobs: JobQueue | None = None
        if content_generator is not None:

            async def _generate(request: ContentRequest) -> None:
                await content_generator.generate(request.meeting_id, request.automation_id)

            self.content_jobs = JobQueue(
                "content_generation", _generate, workers=settings.CONTENT_WORKERS
            )

        self.pipeline = TranscriptPipeline(
            recall_client,
            repository,
            content_jobs=self.content_jobs,
            concurrency=settings.BATCH_CONCURRENCY,
        )
        self.transcript_jobs = JobQueue(
            "transcript_fetch",
            self.pipeline.process_meeting,
            workers=settings.TRANSCRIPT_WORKERS,
        )
        self.reconciler = BotReconciler(
            recall_client,
            repository,
            settings,
            transcript_jobs=self.transcript_jobs,
        )
        self.scheduler = ReconciliationScheduler(
            settings, self.reconciler, self.pipeline, calendar_sync=calendar_sync
        )

    async def start(self) -> None:
        if self.content_jobs is not None:
            await self.content_jobs.start()
        await self.transcript_jobs.start()
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.transcript_jobs.stop()
        if self.content_jobs is not None:
            await self.content_jobs.stop()


async def run(settings: Settings) -> None:
    """Run the worker until a termination signal arrives."""
    engine = create_engine(settings)
    if settings.ENVIRONMENT == Environment.development:
        await init_db(engine)
    repository = MeetingRepository(make_session_factory(engine))
    worker = Worker(settings, repository, RecallClient.from_settings(settings))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    start_metrics_server(settings.METRICS_PORT)
    await worker.start()
    logger.info("worker.started", environment=settings.ENVIRONMENT.value)
    try:
        await stop_event.wait()
    finally:
        logger.info("worker.stopping")
        await worker.stop()
        await close_db(engine)


def main() -> None:
    settings = get_settings()
    configure_structlog(settings)
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
