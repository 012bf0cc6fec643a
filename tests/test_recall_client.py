"""Unit tests for RecallClient request construction and failure classification.

Patches httpx.AsyncClient.request so no network is touched. Covers bot
creation (join time, 507 capacity retry), reads, paginated listing,
deletion and the mapping of timeouts, 4xx, 5xx and bad JSON onto the
reconciliation error taxonomy.
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.notetaker.meetings.bot.recall_client import RecallClient
from src.notetaker.meetings.errors import (
    ParseError,
    PermanentApiError,
    TransientNetworkError,
)

BASE_URL = "https://us-west-2.recall.ai/api/v1"


def _response(status_code: int, json=None, content: bytes | None = None) -> httpx.Response:
    request = httpx.Request("GET", "https://test.com")
    if content is not None:
        return httpx.Response(status_code, content=content, request=request)
    return httpx.Response(status_code, json=json, request=request)


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def recall_client():
    """RecallClient with test API key and no wait between capacity retries."""
    return RecallClient(api_key="test-api-key", base_url=BASE_URL, capacity_retry_wait=0)


# ── Bot Creation ─────────────────────────────────────────────────────────────


class TestCreateBot:
    @pytest.mark.asyncio
    async def test_create_bot_sends_join_time_and_returns_id(self, recall_client):
        join_at = datetime(2026, 3, 2, 15, 55, tzinfo=timezone.utc)
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(201, json={"id": "bot-123"}),
        ) as mock_request:
            bot_id = await recall_client.create_bot(
                "https://zoom.us/j/1", "Notetaker", join_at=join_at
            )

        assert bot_id == "bot-123"
        method, url = mock_request.call_args.args
        assert method == "POST"
        assert url == f"{BASE_URL}/bot/"
        body = mock_request.call_args.kwargs["json"]
        assert body["meeting_url"] == "https://zoom.us/j/1"
        assert body["bot_name"] == "Notetaker"
        assert body["join_at"] == "2026-03-02T15:55:00+00:00"
        assert "recallai_streaming" in body["recording_config"]["transcript"]["provider"]

    @pytest.mark.asyncio
    async def test_create_bot_without_join_time_joins_now(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(201, json={"id": "bot-123"}),
        ) as mock_request:
            await recall_client.create_bot("https://zoom.us/j/1", "Notetaker")

        assert "join_at" not in mock_request.call_args.kwargs["json"]

    @pytest.mark.asyncio
    async def test_capacity_response_is_retried(self, recall_client):
        responses = [
            _response(507, json={"detail": "no capacity"}),
            _response(507, json={"detail": "no capacity"}),
            _response(201, json={"id": "bot-123"}),
        ]
        with patch(
            "httpx.AsyncClient.request", new_callable=AsyncMock, side_effect=responses
        ) as mock_request:
            bot_id = await recall_client.create_bot("https://zoom.us/j/1", "Notetaker")

        assert bot_id == "bot-123"
        assert mock_request.call_count == 3

    @pytest.mark.asyncio
    async def test_capacity_retries_are_bounded(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(507, json={"detail": "no capacity"}),
        ) as mock_request:
            with pytest.raises(TransientNetworkError) as exc_info:
                await recall_client.create_bot("https://zoom.us/j/1", "Notetaker")

        assert exc_info.value.status_code == 507
        assert mock_request.call_count == 3

    @pytest.mark.asyncio
    async def test_other_server_errors_are_not_retried(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(502, json={}),
        ) as mock_request:
            with pytest.raises(TransientNetworkError):
                await recall_client.create_bot("https://zoom.us/j/1", "Notetaker")

        assert mock_request.call_count == 1

    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(400, json={"meeting_url": ["invalid"]}),
        ) as mock_request:
            with pytest.raises(PermanentApiError) as exc_info:
                await recall_client.create_bot("not-a-url", "Notetaker")

        assert exc_info.value.status_code == 400
        assert not exc_info.value.not_found
        assert mock_request.call_count == 1

    @pytest.mark.asyncio
    async def test_missing_bot_id_is_a_parse_error(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(201, json={"id": ""}),
        ):
            with pytest.raises(ParseError):
                await recall_client.create_bot("https://zoom.us/j/1", "Notetaker")


# ── Reads ────────────────────────────────────────────────────────────────────


class TestGetBot:
    @pytest.mark.asyncio
    async def test_get_bot_returns_payload(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(200, json={"id": "bot-1", "status_changes": []}),
        ) as mock_request:
            data = await recall_client.get_bot("bot-1")

        assert data["id"] == "bot-1"
        assert mock_request.call_args.args == ("GET", f"{BASE_URL}/bot/bot-1/")

    @pytest.mark.asyncio
    async def test_not_found_is_conclusive(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(404, json={"detail": "Not found."}),
        ):
            with pytest.raises(PermanentApiError) as exc_info:
                await recall_client.get_bot("bot-1")

        assert exc_info.value.not_found
        assert exc_info.value.operation == "get_bot"

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            side_effect=httpx.ReadTimeout("timed out"),
        ):
            with pytest.raises(TransientNetworkError) as exc_info:
                await recall_client.get_bot("bot-1")

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            side_effect=httpx.ConnectError("refused"),
        ):
            with pytest.raises(TransientNetworkError):
                await recall_client.get_bot("bot-1")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(503, json={}),
        ):
            with pytest.raises(TransientNetworkError) as exc_info:
                await recall_client.get_bot("bot-1")

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_invalid_json_is_a_parse_error(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(200, content=b"<html>oops</html>"),
        ):
            with pytest.raises(ParseError) as exc_info:
                await recall_client.get_bot("bot-1")

        assert "oops" in exc_info.value.payload_sample


class TestListBots:
    @pytest.mark.asyncio
    async def test_follows_next_links(self, recall_client):
        next_url = f"{BASE_URL}/bot/?cursor=abc"
        pages = [
            _response(200, json={"count": 2, "next": next_url, "previous": None, "results": [{"id": "b1"}]}),
            _response(200, json={"count": 2, "next": None, "previous": None, "results": [{"id": "b2"}]}),
        ]
        with patch(
            "httpx.AsyncClient.request", new_callable=AsyncMock, side_effect=pages
        ) as mock_request:
            bots = await recall_client.list_bots()

        assert [b["id"] for b in bots] == ["b1", "b2"]
        assert mock_request.call_args_list[1].args == ("GET", next_url)

    @pytest.mark.asyncio
    async def test_accepts_bare_list(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(200, json=[{"id": "b1"}, {"id": "b2"}]),
        ):
            bots = await recall_client.list_bots()

        assert len(bots) == 2

    @pytest.mark.asyncio
    async def test_missing_endpoint_means_no_bots(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(404, json={"detail": "Not found."}),
        ):
            assert await recall_client.list_bots() == []

    @pytest.mark.asyncio
    async def test_unexpected_page_shape_is_a_parse_error(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(200, json={"bots": []}),
        ):
            with pytest.raises(ParseError):
                await recall_client.list_bots()


# ── Deletion & Transcripts ───────────────────────────────────────────────────


class TestMutationsAndTranscripts:
    @pytest.mark.asyncio
    async def test_delete_bot(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(204, content=b""),
        ) as mock_request:
            await recall_client.delete_bot("bot-1")

        assert mock_request.call_args.args == ("DELETE", f"{BASE_URL}/bot/bot-1/")

    @pytest.mark.asyncio
    async def test_leave_call(self, recall_client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(200, json={}),
        ) as mock_request:
            await recall_client.leave_call("bot-1")

        assert mock_request.call_args.args == ("POST", f"{BASE_URL}/bot/bot-1/leave_call/")

    @pytest.mark.asyncio
    async def test_get_transcript_and_download(self, recall_client):
        responses = [
            _response(200, json={"id": "tr-1", "data": {"download_url": "https://signed.example/tr-1"}}),
            _response(200, json=[{"participant": {"name": "Alice"}, "words": [{"text": "hi"}]}]),
        ]
        with patch(
            "httpx.AsyncClient.request", new_callable=AsyncMock, side_effect=responses
        ) as mock_request:
            resource = await recall_client.get_transcript("tr-1")
            payload = await recall_client.download(resource["data"]["download_url"])

        assert mock_request.call_args_list[0].args == ("GET", f"{BASE_URL}/transcript/tr-1/")
        assert mock_request.call_args_list[1].args == ("GET", "https://signed.example/tr-1")
        assert payload[0]["participant"]["name"] == "Alice"
