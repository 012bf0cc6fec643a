"""Shared fixtures for reconciliation tests.

Provides:
- In-memory repository enforcing the storage uniqueness rules
- AsyncMock bot directory client with sensible defaults
- Settings namespace with short intervals and a 5 minute lead time
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.doubles import InMemoryReconciliationRepository


@pytest.fixture
def repository():
    """Empty in-memory repository."""
    return InMemoryReconciliationRepository()


@pytest.fixture
def recall():
    """Mock RecallClient with an empty directory."""
    client = AsyncMock()
    client.create_bot = AsyncMock(return_value="bot-new")
    client.list_bots = AsyncMock(return_value=[])
    client.get_bot = AsyncMock()
    client.delete_bot = AsyncMock(return_value=None)
    client.leave_call = AsyncMock(return_value=None)
    client.get_transcript = AsyncMock()
    client.download = AsyncMock()
    return client


@pytest.fixture
def transcript_jobs():
    """Mock transcript job queue."""
    queue = MagicMock()
    queue.submit = MagicMock()
    return queue


@pytest.fixture
def settings():
    """Settings namespace with reconciliation config."""
    return SimpleNamespace(
        MEETING_BOT_NAME="Notetaker",
        BOT_LEAD_MINUTES=5,
        BATCH_CONCURRENCY=4,
        DISCOVERY_LOOKBACK_HOURS=24,
        DISCOVERY_SWEEP_ENABLED=True,
        BOT_POLL_INTERVAL_SECONDS=120.0,
        CALENDAR_SYNC_INTERVAL_SECONDS=1800.0,
        TRANSCRIPT_SWEEP_INTERVAL_SECONDS=300.0,
        DISCOVERY_SWEEP_INTERVAL_SECONDS=600.0,
        TRANSCRIPT_WORKERS=1,
        CONTENT_WORKERS=1,
    )
