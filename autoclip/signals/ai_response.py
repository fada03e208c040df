from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Callable

DEFAULT_START_SECONDS = 0.0
DEFAULT_DURATION_SECONDS = 60.0
DEFAULT_REASON = "best moment"
MIN_SUGGESTED_DURATION_SECONDS = 15.0

DEFAULT_CAPTION = "Check out this clip! 🔥"
DEFAULT_HASHTAGS = "#viral #fyp #trending"

_KEY = re.compile(r"[\s>*#`_-]*([A-Za-z](?:[A-Za-z _]*[A-Za-z])?)[\s*_`]*")
_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_CLOCK = re.compile(r"(?<!\d)(\d{1,9}(?::\d{1,9}){1,2})(?!\d)(?:\.\d+)?")

_START_KEYS = ("START_SECOND", "START_SECONDS", "START", "START_TIME", "TIMESTAMP")
_DURATION_KEYS = ("DURATION", "DURATION_SECONDS", "LENGTH")
_REASON_KEYS = ("REASON", "RATIONALE", "WHY")


@dataclass(frozen=True, slots=True)
class SegmentSuggestion:
    start_seconds: float
    duration_seconds: float
    reason: str


@dataclass(frozen=True, slots=True)
class CaptionResult:
    caption: str
    hashtags: str


def scan_key_values(text: str) -> dict[str, str]:
    """Collect ``KEY: value`` lines; the first occurrence of each key wins.

    Keys are upper-cased with spaces folded to underscores, and markdown
    decoration around them (bullets, bold markers) is ignored.
    """

    values: dict[str, str] = {}
    for line in (text or "").splitlines():
        head, colon, rest = line.partition(":")
        if not colon:
            continue
        match = _KEY.fullmatch(head)
        if match is None:
            continue
        key = "_".join(match.group(1).upper().split())
        value = rest.strip().strip("*_`").strip()
        if key not in values and value:
            values[key] = value
    return values


def parse_timestamp(raw: str) -> float | None:
    """Parse ``SS``, ``SS.s``, ``MM:SS`` or ``HH:MM:SS`` into seconds."""

    clock = _CLOCK.search(raw)
    if clock is not None:
        seconds = 0
        for part in clock.group(1).split(":"):
            seconds = seconds * 60 + int(part)
        return float(seconds)

    number = _NUMBER.search(raw)
    if number is None:
        return None
    value = float(number.group(0))
    return value if math.isfinite(value) else None


def parse_segment_response(
    text: str,
    *,
    max_clip_seconds: float,
    min_clip_seconds: float = MIN_SUGGESTED_DURATION_SECONDS,
) -> SegmentSuggestion:
    """Turn free-form analyzer output into a suggestion; never raises.

    Missing or unparseable fields fall back to their defaults and the duration
    is always clamped into ``[min_clip_seconds, max_clip_seconds]``.
    """

    values = scan_key_values(text)

    start = _first_parsed(values, _START_KEYS, parse_timestamp)
    if start is None:
        start = DEFAULT_START_SECONDS

    duration = _first_parsed(values, _DURATION_KEYS, _parse_number)
    if duration is None:
        duration = DEFAULT_DURATION_SECONDS

    reason = next((values[key] for key in _REASON_KEYS if key in values), DEFAULT_REASON)

    upper = max(float(max_clip_seconds), 0.0)
    lower = min(float(min_clip_seconds), upper)
    duration = max(lower, min(upper, duration))

    return SegmentSuggestion(
        start_seconds=max(0.0, start),
        duration_seconds=duration,
        reason=reason,
    )


def parse_caption_response(
    text: str,
    *,
    default_caption: str = DEFAULT_CAPTION,
    default_hashtags: str = DEFAULT_HASHTAGS,
) -> CaptionResult:
    values = scan_key_values(text)
    return CaptionResult(
        caption=values.get("CAPTION") or default_caption,
        hashtags=values.get("HASHTAGS") or default_hashtags,
    )


def _parse_number(raw: str) -> float | None:
    number = _NUMBER.search(raw)
    if number is None:
        return None
    value = float(number.group(0))
    return value if math.isfinite(value) else None


def _first_parsed(
    values: dict[str, str],
    keys: tuple[str, ...],
    parser: Callable[[str], float | None],
) -> float | None:
    for key in keys:
        if key in values:
            parsed = parser(values[key])
            if parsed is not None:
                return parsed
    return None
