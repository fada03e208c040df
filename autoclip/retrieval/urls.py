from __future__ import annotations

import re
from urllib.parse import parse_qs, urlparse

from autoclip.errors import InvalidInput

YOUTUBE_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com", "music.youtube.com", "youtu.be", "www.youtu.be"}
VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{6,20}$")
PATH_PREFIXES = ("/shorts/", "/live/", "/embed/", "/v/")


def extract_video_id(url: str) -> str:
    """Return the video id of a YouTube link or raise ``InvalidInput``."""

    try:
        parsed = urlparse(url.strip())
        host = (parsed.hostname or "").lower()
    except ValueError as exc:
        raise InvalidInput(f"Not a YouTube link: {url!r}") from exc
    if parsed.scheme not in {"http", "https"} or host not in YOUTUBE_HOSTS:
        raise InvalidInput(f"Not a YouTube link: {url!r}")

    candidate = ""
    if host.endswith("youtu.be"):
        candidate = parsed.path.lstrip("/").split("/")[0]
    elif parsed.path == "/watch":
        candidate = parse_qs(parsed.query).get("v", [""])[0]
    else:
        for prefix in PATH_PREFIXES:
            if parsed.path.startswith(prefix):
                candidate = parsed.path[len(prefix) :].split("/")[0]
                break

    if not VIDEO_ID_PATTERN.match(candidate):
        raise InvalidInput(f"Could not find a video id in {url!r}")
    return candidate


def is_valid_youtube_url(url: str) -> bool:
    try:
        extract_video_id(url)
    except InvalidInput:
        return False
    return True


def platform_label(url: str, duration_seconds: float) -> str:
    if "/shorts/" in url:
        return "YouTube Shorts"
    if duration_seconds <= 60:
        return "YouTube Short"
    return "YouTube"


def format_duration(seconds: float) -> str:
    total = max(0, int(seconds))
    return f"{total // 60}:{total % 60:02d}"
