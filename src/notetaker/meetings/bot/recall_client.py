"""Async HTTP client for the Recall.ai bot directory.

Provides RecallClient covering the operations reconciliation needs:
create, get, paginated list, delete, leave call, transcript resource
lookup and transcript download. Every call carries a fixed per-operation
timeout and every failure is classified into the reconciliation taxonomy
(TransientNetworkError, PermanentApiError, ParseError) so callers never see
raw httpx exceptions.

The only retry happens inside create_bot: a 507 (no bot capacity) is
retried up to 3 attempts with a fixed 2 s wait via tenacity. Anything else
is left for the next scheduler tick.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed

from src.notetaker.config import Settings
from src.notetaker.core.monitoring import bot_directory_requests_total
from src.notetaker.meetings.errors import (
    ParseError,
    PermanentApiError,
    TransientNetworkError,
)

logger = structlog.get_logger(__name__)

CAPACITY_STATUS_CODE = 507
MAX_LIST_PAGES = 200


def _is_capacity_error(exc: BaseException) -> bool:
    return isinstance(exc, TransientNetworkError) and exc.status_code == CAPACITY_STATUS_CODE


def default_recording_config() -> dict[str, Any]:
    """Recording options sent with every bot: streaming transcription."""
    return {"transcript": {"provider": {"recallai_streaming": {}}}}


class RecallClient:
    """Async client for the Recall.ai REST API.

    Uses a fresh httpx.AsyncClient per call with a timeout chosen by
    operation type.

    Args:
        api_key: Recall.ai API token.
        base_url: API root, e.g. ``https://us-west-2.recall.ai/api/v1``.
        timeout_read: Seconds allowed for get/list calls.
        timeout_mutate: Seconds allowed for create/delete calls.
        timeout_download: Seconds allowed for transcript downloads.
        capacity_retry_wait: Seconds between 507 retries on create.
    """

    CAPACITY_RETRY_ATTEMPTS = 3

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://us-west-2.recall.ai/api/v1",
        timeout_read: float = 10.0,
        timeout_mutate: float = 30.0,
        timeout_download: float = 60.0,
        capacity_retry_wait: float = 2.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Token {api_key}",
            "Content-Type": "application/json",
        }
        self._timeout_read = timeout_read
        self._timeout_mutate = timeout_mutate
        self._timeout_download = timeout_download
        self._capacity_retry_wait = capacity_retry_wait

    @classmethod
    def from_settings(cls, settings: Settings) -> RecallClient:
        return cls(
            api_key=settings.RECALL_AI_API_KEY,
            base_url=settings.recall_base_url(),
            timeout_read=settings.RECALL_TIMEOUT_READ,
            timeout_mutate=settings.RECALL_TIMEOUT_MUTATE,
            timeout_download=settings.RECALL_TIMEOUT_DOWNLOAD,
        )

    def _client(self, timeout: float, authenticated: bool = True) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout."""
        return httpx.AsyncClient(
            headers=self._headers if authenticated else None,
            timeout=timeout,
        )

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self._base_url}{path}"

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        timeout: float,
        authenticated: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request and classify any failure.

        Raises:
            TransientNetworkError: Timeout, transport error or 5xx.
            PermanentApiError: Any 4xx.
        """
        try:
            async with self._client(timeout, authenticated) as client:
                response = await client.request(method, self._url(path), **kwargs)
        except httpx.TimeoutException as exc:
            bot_directory_requests_total.labels(operation=operation, outcome="transient").inc()
            raise TransientNetworkError(operation, f"timed out after {timeout}s") from exc
        except httpx.TransportError as exc:
            bot_directory_requests_total.labels(operation=operation, outcome="transient").inc()
            raise TransientNetworkError(operation, str(exc) or type(exc).__name__) from exc

        if response.status_code >= 500:
            bot_directory_requests_total.labels(operation=operation, outcome="transient").inc()
            raise TransientNetworkError(
                operation, response.text[:200], status_code=response.status_code
            )
        if response.status_code >= 400:
            bot_directory_requests_total.labels(operation=operation, outcome="permanent").inc()
            raise PermanentApiError(operation, response.status_code, response.text)

        bot_directory_requests_total.labels(operation=operation, outcome="ok").inc()
        return response

    @staticmethod
    def _json(operation: str, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            bot_directory_requests_total.labels(operation=operation, outcome="parse").inc()
            raise ParseError(f"{operation} response", response.text) from exc

    # ── Bots ─────────────────────────────────────────────────────────────

    async def create_bot(
        self,
        meeting_url: str,
        bot_name: str,
        join_at: datetime | None = None,
        recording_config: dict[str, Any] | None = None,
    ) -> str:
        """Create a bot for a meeting.

        POST /bot/. A ``join_at`` of None makes the bot join immediately.

        Args:
            meeting_url: Join URL of the meeting.
            bot_name: Display name of the bot inside the call.
            join_at: Scheduled join time (timezone-aware).
            recording_config: Recording options; defaults to streaming transcription.

        Returns:
            The new bot's id.

        Raises:
            ParseError: The response did not carry a bot id.
        """
        body: dict[str, Any] = {
            "meeting_url": meeting_url,
            "bot_name": bot_name,
            "recording_config": recording_config or default_recording_config(),
        }
        if join_at is not None:
            body["join_at"] = join_at.astimezone(timezone.utc).isoformat()

        response: httpx.Response | None = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.CAPACITY_RETRY_ATTEMPTS),
            wait=wait_fixed(self._capacity_retry_wait),
            retry=retry_if_exception(_is_capacity_error),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "recall.capacity_retry",
                        attempt=attempt.retry_state.attempt_number,
                        meeting_url=meeting_url,
                    )
                response = await self._request(
                    "create_bot", "POST", "/bot/", timeout=self._timeout_mutate, json=body
                )

        data = self._json("create_bot", response)
        bot_id = data.get("id") if isinstance(data, dict) else None
        if not bot_id:
            raise ParseError("create_bot response", data)
        logger.info(
            "recall.bot_created",
            bot_id=bot_id,
            join_at=body.get("join_at"),
        )
        return str(bot_id)

    async def get_bot(self, bot_id: str) -> dict[str, Any]:
        """Get full bot details.

        GET /bot/{bot_id}/ returns status_changes, recordings and meeting_url.
        """
        response = await self._request(
            "get_bot", "GET", f"/bot/{bot_id}/", timeout=self._timeout_read
        )
        data = self._json("get_bot", response)
        if not isinstance(data, dict):
            raise ParseError("get_bot response", data)
        return data

    async def list_bots(self, **filters: Any) -> list[dict[str, Any]]:
        """List every bot, following ``next`` links across pages.

        Pages may be a ``{"results": [...], "next": ...}`` envelope or a bare
        list. A 404 on the list endpoint means no bots.

        Args:
            **filters: Query parameters for the first page.

        Returns:
            All bot payloads in directory order.
        """
        bots: list[dict[str, Any]] = []
        next_url: str | None = "/bot/"
        params: dict[str, Any] | None = filters or None
        pages = 0

        while next_url and pages < MAX_LIST_PAGES:
            try:
                response = await self._request(
                    "list_bots", "GET", next_url, timeout=self._timeout_read, params=params
                )
            except PermanentApiError as exc:
                if exc.not_found and pages == 0:
                    return []
                raise
            data = self._json("list_bots", response)
            pages += 1
            params = None

            if isinstance(data, list):
                bots.extend(data)
                break
            if not isinstance(data, dict) or not isinstance(data.get("results"), list):
                raise ParseError("list_bots page", data)
            bots.extend(data["results"])
            next_url = data.get("next")

        logger.debug("recall.bots_listed", count=len(bots), pages=pages)
        return bots

    async def delete_bot(self, bot_id: str) -> None:
        """Delete a bot that has not joined yet.

        DELETE /bot/{bot_id}/
        """
        await self._request(
            "delete_bot", "DELETE", f"/bot/{bot_id}/", timeout=self._timeout_mutate
        )
        logger.info("recall.bot_deleted", bot_id=bot_id)

    async def leave_call(self, bot_id: str) -> None:
        """Ask a bot that is already in the call to leave.

        POST /bot/{bot_id}/leave_call/
        """
        await self._request(
            "leave_call", "POST", f"/bot/{bot_id}/leave_call/", timeout=self._timeout_mutate
        )
        logger.info("recall.bot_left_call", bot_id=bot_id)

    # ── Transcripts ──────────────────────────────────────────────────────

    async def get_transcript(self, transcript_id: str) -> dict[str, Any]:
        """Get a transcript resource including a freshly signed download URL.

        GET /transcript/{transcript_id}/. The URL in ``data.download_url``
        expires quickly, so it is requested again on every attempt.
        """
        response = await self._request(
            "get_transcript",
            "GET",
            f"/transcript/{transcript_id}/",
            timeout=self._timeout_read,
        )
        data = self._json("get_transcript", response)
        if not isinstance(data, dict):
            raise ParseError("get_transcript response", data)
        return data

    async def download(self, url: str) -> Any:
        """Download a signed media URL and decode its JSON body.

        Signed URLs carry their own credentials, so no API token is sent.
        """
        response = await self._request(
            "download",
            "GET",
            url,
            timeout=self._timeout_download,
            authenticated=False,
        )
        return self._json("download", response)
