"""Recurring reconciliation tasks on an asyncio ticker.

ReconciliationScheduler owns one RecurringTask per periodic job:
- bot_status_poll: poll bots of scheduled/recording meetings
- calendar_refresh: calendar sync for pending accounts, then the dispatch sweep
- transcript_sweep: retry transcripts for processing meetings
- discovery_sweep: link orphaned bots (optional)

Each tick is started as its own task without waiting for the previous one,
so a slow tick may overlap the next. A failing tick is logged and counted;
the loop keeps going.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.notetaker.config import Settings
from src.notetaker.core.batch import BatchResult, fan_out
from src.notetaker.core.monitoring import scheduler_ticks_total
from src.notetaker.meetings.bot.reconciler import BotReconciler
from src.notetaker.meetings.collaborators import CalendarSync
from src.notetaker.meetings.transcripts.pipeline import TranscriptPipeline

logger = structlog.get_logger(__name__)


class RecurringTask:
    """Runs a coroutine function every ``interval_seconds``.

    Args:
        name: Task name for logs and metrics.
        interval_seconds: Period between tick starts.
        func: Coroutine function invoked on each tick.
        run_at_start: Fire the first tick immediately instead of after one period.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[Any]],
        run_at_start: bool = True,
    ) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self._func = func
        self._run_at_start = run_at_start
        self._running = False
        self._ticks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    async def tick(self) -> bool:
        """Run one tick, returning False when it raised."""
        try:
            result = await self._func()
        except Exception:
            scheduler_ticks_total.labels(task=self.name, outcome="failed").inc()
            logger.exception("scheduler.tick_failed", task=self.name)
            return False
        scheduler_ticks_total.labels(task=self.name, outcome="succeeded").inc()
        if isinstance(result, BatchResult):
            logger.debug(
                "scheduler.tick_complete",
                task=self.name,
                total=result.total,
                failed=result.failed,
            )
        return True

    async def run(self) -> None:
        """Loop until stop() is called."""
        self._running = True
        logger.info("scheduler.task_started", task=self.name, interval=self.interval_seconds)
        if not self._run_at_start:
            await asyncio.sleep(self.interval_seconds)

        while self._running:
            tick = asyncio.create_task(self.tick(), name=f"{self.name}-tick")
            self._ticks.add(tick)
            tick.add_done_callback(self._ticks.discard)
            await asyncio.sleep(self.interval_seconds)

    def stop(self) -> None:
        """Signal the loop to stop after its current sleep."""
        self._running = False

    async def wait_for_ticks(self) -> None:
        """Wait for ticks still in flight."""
        if self._ticks:
            await asyncio.gather(*list(self._ticks), return_exceptions=True)


class ReconciliationScheduler:
    """Wires the reconciler and transcript pipeline onto recurring tasks.

    Args:
        settings: Task periods, discovery toggle and fan-out bound.
        reconciler: Bot dispatch, discovery and polling.
        pipeline: Transcript fetch pipeline.
        calendar_sync: Optional calendar ingestion collaborator.
    """

    def __init__(
        self,
        settings: Settings,
        reconciler: BotReconciler,
        pipeline: TranscriptPipeline,
        calendar_sync: CalendarSync | None = None,
    ) -> None:
        self._settings = settings
        self._reconciler = reconciler
        self._pipeline = pipeline
        self._calendar_sync = calendar_sync
        self._loops: list[asyncio.Task] = []

        self.tasks: list[RecurringTask] = [
            RecurringTask(
                "bot_status_poll",
                settings.BOT_POLL_INTERVAL_SECONDS,
                reconciler.poll_active_meetings,
            ),
            RecurringTask(
                "calendar_refresh",
                settings.CALENDAR_SYNC_INTERVAL_SECONDS,
                self.refresh_calendars,
            ),
            RecurringTask(
                "transcript_sweep",
                settings.TRANSCRIPT_SWEEP_INTERVAL_SECONDS,
                pipeline.sweep,
            ),
        ]
        if settings.DISCOVERY_SWEEP_ENABLED:
            self.tasks.append(
                RecurringTask(
                    "discovery_sweep",
                    settings.DISCOVERY_SWEEP_INTERVAL_SECONDS,
                    reconciler.run_discovery_sweep,
                )
            )

    def get_task(self, name: str) -> RecurringTask | None:
        return next((t for t in self.tasks if t.name == name), None)

    async def refresh_calendars(self) -> BatchResult:
        """Sync pending calendars, then dispatch bots for waiting events.

        The dispatch sweep runs even when some account syncs failed.
        """
        if self._calendar_sync is not None:
            accounts = await self._calendar_sync.list_accounts_pending_sync()
            await fan_out(
                accounts,
                self._calendar_sync.sync_account,
                operation="calendar_sync",
                concurrency=self._settings.BATCH_CONCURRENCY,
            )
        return await self._reconciler.dispatch_pending_events()

    def start(self) -> None:
        """Start every recurring task on the running loop."""
        if self._loops:
            return
        self._loops = [
            asyncio.create_task(task.run(), name=f"{task.name}-loop") for task in self.tasks
        ]
        logger.info("scheduler.started", tasks=[t.name for t in self.tasks])

    async def stop(self) -> None:
        """Stop the loops and let in-flight ticks finish."""
        for task in self.tasks:
            task.stop()
        for loop in self._loops:
            loop.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []
        for task in self.tasks:
            await task.wait_for_ticks()
        logger.info("scheduler.stopped")
