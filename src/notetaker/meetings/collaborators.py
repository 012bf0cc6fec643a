"""Interfaces of the external collaborators this service drives.

Calendar ingestion and content generation live outside the service; the
scheduler and job queues call them only through these protocols.
"""

from __future__ import annotations

import uuid
from typing import Protocol


class CalendarSync(Protocol):
    """Refreshes calendar events for connected accounts."""

    async def list_accounts_pending_sync(self) -> list[str]:
        """Accounts whose calendars are connected and due for a refresh."""
        ...

    async def sync_account(self, account_id: str) -> None:
        """Pull the account's events into the calendar event store."""
        ...


class ContentGenerator(Protocol):
    """Produces automation content from a stored transcript."""

    async def generate(self, meeting_id: uuid.UUID, automation_id: uuid.UUID) -> None: ...
