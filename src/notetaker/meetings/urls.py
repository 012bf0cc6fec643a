"""Meeting URL equivalence and platform detection.

Bots report the meeting URL they were sent to, and calendar providers
decorate the same meeting's join URL differently (vanity Zoom subdomains,
re-ordered query strings, case). meeting_urls_equivalent() decides whether
two URLs refer to the same meeting so a bot can be matched to its event.
"""

from __future__ import annotations

from urllib.parse import parse_qs, unquote, urlsplit

ZOOM_HOST = "zoom.us"
MEET_HOSTS = ("meet.google.com", "hangouts.google.com")
TEAMS_HOSTS = ("teams.microsoft.com", "teams.live.com")


class _ParsedUrl:
    __slots__ = ("host", "path", "query")

    def __init__(self, host: str, path: str, query: str) -> None:
        self.host = host
        self.path = path
        self.query = query

    @property
    def path_and_query(self) -> str:
        if self.query:
            return f"{self.path}?{self.query}"
        return self.path


def _parse(url: str) -> _ParsedUrl | None:
    """Split a URL into lowercase host, path and query; None when malformed."""
    candidate = url.strip()
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    try:
        parts = urlsplit(candidate)
        host = (parts.hostname or "").lower()
    except ValueError:
        return None
    if not host or "." not in host:
        return None
    path = unquote(parts.path).rstrip("/").lower()
    return _ParsedUrl(host=host, path=path, query=unquote(parts.query).lower())


def _is_zoom(host: str) -> bool:
    return host == ZOOM_HOST or host.endswith("." + ZOOM_HOST)


def _is_host_in(host: str, hosts: tuple[str, ...]) -> bool:
    return host in hosts


def _zoom_identity(url: str) -> tuple[str, str] | None:
    """Return (meeting id, pwd) for a Zoom join URL, or None without an id."""
    parts = urlsplit(url.strip() if "://" in url else f"https://{url.strip()}")
    segments = [s for s in parts.path.split("/") if s]
    meeting_id = ""
    for i, segment in enumerate(segments[:-1]):
        if segment.lower() == "j":
            meeting_id = segments[i + 1]
            break
    if not meeting_id:
        return None
    pwd = parse_qs(parts.query).get("pwd", [""])[0]
    return meeting_id, pwd


def _last_two_labels(host: str) -> str:
    return ".".join(host.split(".")[-2:])


def meeting_urls_equivalent(a: str | None, b: str | None) -> bool:
    """Decide whether two join URLs refer to the same meeting.

    Rules, in order:
    - exact case-insensitive match is always equivalent;
    - Zoom on both sides: the meeting id after ``/j/`` and the ``pwd``
      query parameter must both match, whatever the subdomain;
    - Google Meet/Hangouts on both sides, or Teams on both sides:
      path and query compared case-insensitively;
    - otherwise path and query must match and the hosts must share their
      last two DNS labels.
    Malformed URLs only match exactly.

    Args:
        a: First URL.
        b: Second URL.

    Returns:
        True when both URLs identify the same meeting.
    """
    if not a or not b:
        return False
    if a.strip().lower() == b.strip().lower():
        return True

    left = _parse(a)
    right = _parse(b)
    if left is None or right is None:
        return a == b

    if _is_zoom(left.host) and _is_zoom(right.host):
        left_id = _zoom_identity(a)
        right_id = _zoom_identity(b)
        if left_id is not None and right_id is not None:
            return left_id == right_id

    if _is_host_in(left.host, MEET_HOSTS) and _is_host_in(right.host, MEET_HOSTS):
        return left.path_and_query == right.path_and_query

    if _is_host_in(left.host, TEAMS_HOSTS) and _is_host_in(right.host, TEAMS_HOSTS):
        return left.path_and_query == right.path_and_query

    return (
        left.path_and_query == right.path_and_query
        and _last_two_labels(left.host) == _last_two_labels(right.host)
    )


# ── Platform Detection ───────────────────────────────────────────────────────

_PLATFORM_MARKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("zoom", ("zoom.us", ".zoom.")),
    ("meet", MEET_HOSTS),
    ("teams", TEAMS_HOSTS),
    ("webex", ("webex.com",)),
    ("gotomeeting", ("gotomeeting.com", "gotomeet.me")),
    ("bluejeans", ("bluejeans.com",)),
    ("jitsi", ("meet.jit.si", "jitsi")),
)


def detect_platform(url: str | None) -> str:
    """Classify a join URL by conferencing platform.

    Returns one of zoom, meet, teams, webex, gotomeeting, bluejeans, jitsi,
    meeting (some other URL) or unknown (no URL).
    """
    if not url or not url.strip():
        return "unknown"
    lowered = url.lower()
    for platform, markers in _PLATFORM_MARKERS:
        if any(marker in lowered for marker in markers):
            return platform
    return "meeting"
