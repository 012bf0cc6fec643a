"""Pure status derivation for bots and the meeting lifecycle state machine.

Nothing in this module performs I/O: it turns bot directory payloads into
BotRecords, derives timelines from status histories, maps external status
codes onto MeetingStatus, and validates meeting status transitions.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

from pydantic import ValidationError

from src.notetaker.meetings.errors import ParseError
from src.notetaker.meetings.schemas import (
    BotRecord,
    BotTimeline,
    MeetingStatus,
    StatusChange,
)

UNKNOWN_STATUS = "unknown"

STARTED_CODES = frozenset({"started", "joined", "in_call_recording"})
ENDED_CODES = frozenset({"ended", "left", "fatal", "call_ended"})

RECORDING_CODES = frozenset(
    {"started", "joined", "recording", "in_call_recording", "in_call_not_recording"}
)
DONE_CODES = frozenset({"done"})
FAILED_CODES = frozenset({"error", "fatal"})
TEAMS_PLATFORMS = frozenset({"microsoft_teams", "microsoft_teams_live"})

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)

# ── Meeting Status Transition Rules ─────────────────────────────────────────

# Maps each status to the set of statuses it can transition TO.
# Cancellation and failure are reachable from every non-terminal status.
VALID_TRANSITIONS: dict[MeetingStatus, set[MeetingStatus]] = {
    MeetingStatus.SCHEDULED: {
        MeetingStatus.RECORDING,
        MeetingStatus.PROCESSING,
        MeetingStatus.FAILED,
        MeetingStatus.CANCELLED,
    },
    MeetingStatus.RECORDING: {
        MeetingStatus.PROCESSING,
        MeetingStatus.FAILED,
        MeetingStatus.CANCELLED,
    },
    MeetingStatus.PROCESSING: {
        MeetingStatus.READY,
        MeetingStatus.FAILED,
        MeetingStatus.CANCELLED,
    },
    MeetingStatus.READY: set(),  # Terminal
    MeetingStatus.FAILED: set(),  # Terminal
    MeetingStatus.CANCELLED: set(),  # Terminal
}


class InvalidStatusTransitionError(ValueError):
    """Raised when a meeting status change violates the transition rules."""

    def __init__(self, from_status: MeetingStatus, to_status: MeetingStatus) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid meeting status transition: {from_status.value} -> {to_status.value}"
        )


def can_transition(from_status: MeetingStatus, to_status: MeetingStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, set())


def validate_transition(from_status: MeetingStatus, to_status: MeetingStatus) -> None:
    """Raise InvalidStatusTransitionError unless the transition is allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidStatusTransitionError(from_status, to_status)


def meeting_status_for_bot(code: str) -> MeetingStatus | None:
    """Map an external bot status code onto the meeting status it implies.

    Returns None for codes that imply no transition (e.g. ``joining_call``).
    """
    if code in DONE_CODES:
        return MeetingStatus.PROCESSING
    if code in FAILED_CODES:
        return MeetingStatus.FAILED
    if code in RECORDING_CODES:
        return MeetingStatus.RECORDING
    return None


# ── Timeline Derivation ─────────────────────────────────────────────────────


def _sort_key(change: StatusChange) -> datetime:
    return change.created_at or _OLDEST


def current_status(changes: Sequence[StatusChange]) -> str:
    """Code of the most recently created entry; first-listed wins ties."""
    latest: StatusChange | None = None
    for change in changes:
        if latest is None or _sort_key(change) > _sort_key(latest):
            latest = change
    return latest.code if latest is not None else UNKNOWN_STATUS


def _earliest(changes: Iterable[StatusChange], codes: frozenset[str]) -> datetime | None:
    earliest: datetime | None = None
    for change in changes:
        if change.code not in codes or change.created_at is None:
            continue
        if earliest is None or change.created_at < earliest:
            earliest = change.created_at
    return earliest


def derive_timeline(changes: Sequence[StatusChange]) -> BotTimeline:
    """Derive current status, start, end and recording duration.

    Deterministic: the same history always yields the same timeline.
    """
    started_at = _earliest(changes, STARTED_CODES)
    ended_at = _earliest(changes, ENDED_CODES)
    duration = None
    if started_at is not None and ended_at is not None:
        duration = ended_at - started_at
    return BotTimeline(
        current_status=current_status(changes),
        started_at=started_at,
        ended_at=ended_at,
        recording_duration=duration,
    )


# ── Payload Parsing ─────────────────────────────────────────────────────────


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def reported_meeting_url(value: Any) -> str | None:
    """Rebuild the join URL a bot reports.

    The directory returns either the URL string or an object of
    ``{"platform", "meeting_id", "meeting_password"}``. Teams objects also
    carry ``message_id``, ``tenant_id`` and ``organizer_id`` and are rebuilt
    as the meetup-join link a calendar invite holds.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if not isinstance(value, dict):
        raise ParseError("bot meeting_url", value)

    platform = value.get("platform") or ""
    meeting_id = value.get("meeting_id")
    if not meeting_id:
        return None
    if platform == "zoom":
        password = value.get("meeting_password")
        url = f"https://zoom.us/j/{meeting_id}"
        return f"{url}?pwd={password}" if password else url
    if platform == "google_meet":
        return f"https://meet.google.com/{meeting_id}"
    if platform in TEAMS_PLATFORMS:
        return _teams_join_url(platform, str(meeting_id), value)
    return value.get("url")


def _teams_join_url(platform: str, meeting_id: str, value: dict[str, Any]) -> str:
    """Canonical Teams join URL, in the form calendar invites carry."""
    host = "teams.live.com" if platform == "microsoft_teams_live" else "teams.microsoft.com"
    password = value.get("meeting_password")
    if not meeting_id.startswith("19:"):
        url = f"https://{host}/meet/{meeting_id}"
        return f"{url}?p={password}" if password else url

    url = f"https://{host}/l/meetup-join/{quote(meeting_id, safe='')}/{value.get('message_id') or 0}"
    context = {
        key: value[field]
        for key, field in (("Tid", "tenant_id"), ("Oid", "organizer_id"))
        if value.get(field)
    }
    if context:
        url = f"{url}?context={quote(json.dumps(context, separators=(',', ':')), safe='')}"
    return url


def _has_transcript(recordings: list[dict[str, Any]]) -> bool:
    for recording in recordings:
        shortcuts = recording.get("media_shortcuts") or {}
        if shortcuts.get("transcript"):
            return True
    return False


def parse_status_changes(raw: Any) -> list[StatusChange]:
    """Validate a raw status history; ParseError on unexpected shape."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ParseError("status history", raw)
    changes = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ParseError("status history entry", entry)
        try:
            change = StatusChange.model_validate(entry)
        except ValidationError as exc:
            raise ParseError("status history entry", entry) from exc
        changes.append(change.model_copy(update={"created_at": _aware(change.created_at)}))
    return changes


def parse_bot_record(payload: Any) -> BotRecord:
    """Build a BotRecord from a bot directory payload.

    Raises:
        ParseError: The payload is not a bot object or its history is malformed.
    """
    if not isinstance(payload, dict) or not payload.get("id"):
        raise ParseError("bot payload", payload)

    meeting_url_raw = payload.get("meeting_url")
    recordings = payload.get("recordings") or []
    if not isinstance(recordings, list):
        raise ParseError("bot recordings", recordings)

    platform = None
    if isinstance(meeting_url_raw, dict):
        platform = meeting_url_raw.get("platform")

    join_at = payload.get("join_at")
    try:
        join_at_value = _aware(datetime.fromisoformat(join_at)) if join_at else None
    except (TypeError, ValueError) as exc:
        raise ParseError("bot join_at", join_at) from exc

    return BotRecord(
        bot_id=str(payload["id"]),
        meeting_url=reported_meeting_url(meeting_url_raw),
        platform=platform,
        bot_name=payload.get("bot_name"),
        join_at=join_at_value,
        status_changes=parse_status_changes(payload.get("status_changes")),
        recordings=recordings,
        has_recording=bool(recordings),
        has_transcript=_has_transcript(recordings),
    )


def timeline_for(record: BotRecord) -> BotTimeline:
    return derive_timeline(record.status_changes)
