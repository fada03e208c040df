from __future__ import annotations

import logging
from typing import Protocol

from autoclip.errors import SignalUnavailable
from autoclip.models import ClipResult
from autoclip.signals.ai_response import DEFAULT_HASHTAGS, CaptionResult, parse_caption_response

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGE_CHARS = 1024


class CaptionGenerator(Protocol):
    def generate_caption(self, *, title: str, channel: str, reason: str, language: str = "English") -> str: ...


def generate_caption(
    generator: CaptionGenerator | None,
    *,
    title: str,
    channel: str,
    reason: str,
    language: str = "English",
    default_hashtags: str = DEFAULT_HASHTAGS,
) -> CaptionResult:
    """Caption a clip; falls back to the video title when the generator is unavailable."""

    fallback = CaptionResult(caption=title or "New clip", hashtags=default_hashtags)
    if generator is None:
        return fallback

    try:
        text = generator.generate_caption(title=title, channel=channel, reason=reason, language=language)
    except SignalUnavailable as exc:
        logger.info("Caption generation failed (%s); using title", exc)
        return fallback

    return parse_caption_response(
        text,
        default_caption=fallback.caption,
        default_hashtags=default_hashtags,
    )


def format_clip_message(result: ClipResult, max_chars: int = DEFAULT_MAX_MESSAGE_CHARS) -> str:
    message = (
        f"{result.caption}\n\n{result.hashtags}\n\n---\n"
        f"Title: {result.title}\n"
        f"Duration: {result.duration}\n"
        f"Platform: {result.platform}\n"
        f"Channel: {result.channel}"
    )
    return truncate_message(message, max_chars)


def truncate_message(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 3)] + "..."
