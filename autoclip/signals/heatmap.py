from __future__ import annotations

import json
import logging
import math
from typing import Any, Iterator
from urllib import request
from urllib.error import HTTPError, URLError

from autoclip.errors import EngagementFetchError
from autoclip.models import EngagementMarker

logger = logging.getLogger(__name__)

WATCH_URL_TEMPLATE = "https://www.youtube.com/watch?v={video_id}"
MARKERS_KEY = '"markers":'
DEFAULT_MIN_INTENSITY = 0.15
DEFAULT_KEEP_TOP_N = 5
DEFAULT_TIMEOUT_SECONDS = 15
DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
DEFAULT_ACCEPT_LANGUAGE = "en-US,en;q=0.9"


def fetch_engagement_markers(
    video_id: str,
    *,
    min_intensity: float = DEFAULT_MIN_INTENSITY,
    keep_top_n: int = DEFAULT_KEEP_TOP_N,
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    user_agent: str = DEFAULT_USER_AGENT,
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE,
) -> list[EngagementMarker] | None:
    """Scrape the engagement curve embedded in a video's public watch page.

    Returns ``None`` when the page carries no usable curve. Network failures
    raise ``EngagementFetchError`` so callers can log them; for selection they
    mean the same thing as ``None``.
    """

    document = _request_watch_page(
        video_id,
        timeout_seconds=timeout_seconds,
        user_agent=user_agent,
        accept_language=accept_language,
    )
    logger.debug("Fetched watch page for %s (%d chars)", video_id, len(document))
    return parse_engagement_markers(document, min_intensity=min_intensity, keep_top_n=keep_top_n)


def parse_engagement_markers(
    document: str,
    *,
    min_intensity: float = DEFAULT_MIN_INTENSITY,
    keep_top_n: int = DEFAULT_KEEP_TOP_N,
) -> list[EngagementMarker] | None:
    """Extract, filter and rank heat markers from a raw page document."""

    markers = _scan_document(document)
    if markers is None and '\\"' in document:
        markers = _scan_document(document.replace('\\"', '"'))
    if not markers:
        logger.debug("No engagement markers found in page")
        return None

    ranked = sorted(markers, key=lambda marker: (-marker.intensity, marker.start_offset_ms))
    kept = [marker for marker in ranked if marker.intensity >= min_intensity]
    if not kept:
        kept = ranked[: max(1, keep_top_n)]
        logger.debug(
            "No marker reached intensity %.2f; keeping top %d of %d",
            min_intensity,
            len(kept),
            len(ranked),
        )

    logger.info("Found %d engagement markers (best intensity %.2f)", len(kept), kept[0].intensity)
    return kept


def find_json_array_end(text: str, open_index: int) -> int | None:
    """Return the index of the bracket closing the array opened at ``open_index``.

    Brackets inside JSON strings are ignored, so nested arrays and string
    values that contain bracket characters do not end the scan early.
    """

    if open_index >= len(text) or text[open_index] != "[":
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(open_index, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in "[{":
            depth += 1
        elif char in "]}":
            depth -= 1
            if depth == 0:
                return index if char == "]" else None
    return None


def _scan_document(document: str) -> list[EngagementMarker] | None:
    malformed = 0
    for array_text in _iter_marker_arrays(document):
        try:
            payload = json.loads(array_text)
        except json.JSONDecodeError as exc:
            malformed += 1
            logger.debug("Skipping malformed markers array: %s", exc)
            continue

        markers = _markers_from_payload(payload)
        if markers:
            return markers

    if malformed:
        logger.warning("Engagement data present but unparseable (%d malformed arrays)", malformed)
    return None


def _iter_marker_arrays(document: str) -> Iterator[str]:
    search_from = 0
    while True:
        key_index = document.find(MARKERS_KEY, search_from)
        if key_index < 0:
            return
        search_from = key_index + len(MARKERS_KEY)

        open_index = search_from
        while open_index < len(document) and document[open_index].isspace():
            open_index += 1

        end_index = find_json_array_end(document, open_index)
        if end_index is None:
            continue
        yield document[open_index : end_index + 1]


def _markers_from_payload(payload: Any) -> list[EngagementMarker]:
    if not isinstance(payload, list):
        return []

    markers: list[EngagementMarker] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        raw = entry.get("heatMarkerRenderer", entry)
        marker = _to_marker(raw)
        if marker is not None:
            markers.append(marker)
    return markers


def _to_marker(raw: Any) -> EngagementMarker | None:
    if not isinstance(raw, dict):
        return None
    if "startMillis" not in raw or "intensityScoreNormalized" not in raw:
        return None

    try:
        start_ms = int(float(raw["startMillis"]))
        duration_ms = int(float(raw.get("durationMillis", 0)))
        intensity = float(raw["intensityScoreNormalized"])
    except (TypeError, ValueError, OverflowError):
        return None

    if not math.isfinite(intensity) or start_ms < 0 or duration_ms < 0:
        return None

    return EngagementMarker(
        start_offset_ms=start_ms,
        duration_ms=duration_ms,
        intensity=max(0.0, min(1.0, intensity)),
    )


def _request_watch_page(
    video_id: str,
    *,
    timeout_seconds: int,
    user_agent: str,
    accept_language: str,
) -> str:
    req = request.Request(
        WATCH_URL_TEMPLATE.format(video_id=video_id),
        method="GET",
        headers={
            "User-Agent": user_agent,
            "Accept-Language": accept_language,
        },
    )

    try:
        with request.urlopen(req, timeout=timeout_seconds) as response:
            return response.read().decode("utf-8", errors="replace")
    except (HTTPError, URLError, TimeoutError, OSError) as exc:
        raise EngagementFetchError(f"Could not fetch watch page for {video_id}: {exc}") from exc
