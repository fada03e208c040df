from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from autoclip.errors import AnalyzerUnavailable
from autoclip.signals.ai_response import MIN_SUGGESTED_DURATION_SECONDS

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_MAX_RETRIES = 2
DEFAULT_RATE_LIMIT_WAIT_SECONDS = 30.0
PROMPT_DIR = Path(__file__).resolve().parent.parent / "prompts"
SEGMENT_PROMPT_PATH = PROMPT_DIR / "segment_prompt.txt"
CAPTION_PROMPT_PATH = PROMPT_DIR / "caption_prompt.txt"


class GeminiAnalyzer:
    """Gemini-backed analyzer for segment suggestions and captions.

    Both calls return raw response text; parsing is left to
    ``autoclip.signals.ai_response`` so a bad answer never breaks a request.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str = DEFAULT_MODEL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        rate_limit_wait_seconds: float = DEFAULT_RATE_LIMIT_WAIT_SECONDS,
        client: Any | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client if client is not None else genai.Client(api_key=api_key)
        self.model = model
        self.max_retries = max_retries
        self.rate_limit_wait_seconds = rate_limit_wait_seconds
        self._sleep = sleep

    def analyze_video(
        self,
        video_url: str,
        *,
        title: str,
        duration_seconds: float,
        max_clip_seconds: float,
    ) -> str:
        """Ask the model to watch the video and name its best moment."""

        prompt = _format_segment_prompt(
            title=title,
            duration_seconds=duration_seconds,
            max_clip_seconds=max_clip_seconds,
        )
        contents = types.Content(
            role="user",
            parts=[
                types.Part.from_uri(file_uri=video_url, mime_type="video/mp4"),
                types.Part.from_text(text=prompt),
            ],
        )
        config = types.GenerateContentConfig(temperature=0.7, top_p=0.9)

        logger.info("Asking %s to analyze %s", self.model, video_url)
        text = self._generate_with_retry(contents, config, purpose="video analysis")
        logger.debug("Analyzer response: %s", _truncate_for_log(text, 200))
        return text

    def generate_caption(self, *, title: str, channel: str, reason: str, language: str = "English") -> str:
        prompt = CAPTION_PROMPT_PATH.read_text(encoding="utf-8").format(
            title=title,
            channel=channel,
            reason=reason,
            language=language,
        )
        config = types.GenerateContentConfig(temperature=0.9, top_p=0.95)
        return self._generate_with_retry(prompt, config, purpose="caption generation")

    def _generate_with_retry(self, contents: Any, config: types.GenerateContentConfig, *, purpose: str) -> str:
        attempts = max(0, self.max_retries) + 1
        for attempt in range(1, attempts + 1):
            try:
                response = self._client.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=config,
                )
                text = response.text
            except genai_errors.APIError as exc:
                if not _is_rate_limited(exc) or attempt == attempts:
                    raise AnalyzerUnavailable(f"Gemini {purpose} failed: {exc}") from exc
                logger.info(
                    "Gemini rate limited, retrying in %.0fs (%d/%d)",
                    self.rate_limit_wait_seconds,
                    attempt,
                    attempts - 1,
                )
                self._sleep(self.rate_limit_wait_seconds)
                continue
            except (httpx.HTTPError, ValueError) as exc:
                # the SDK raises ValueError subclasses for malformed responses
                raise AnalyzerUnavailable(f"Gemini {purpose} failed: {exc}") from exc

            return text or ""

        raise AnalyzerUnavailable(f"Gemini {purpose} failed after {attempts} attempts")


def _format_segment_prompt(*, title: str, duration_seconds: float, max_clip_seconds: float) -> str:
    template = SEGMENT_PROMPT_PATH.read_text(encoding="utf-8")
    return template.format(
        title=title,
        duration_seconds=duration_seconds,
        min_clip_seconds=int(MIN_SUGGESTED_DURATION_SECONDS),
        max_clip_seconds=int(max_clip_seconds),
        latest_start_seconds=max(0.0, duration_seconds - max_clip_seconds),
    )


def _is_rate_limited(exc: genai_errors.APIError) -> bool:
    return getattr(exc, "code", None) == 429 or "RESOURCE_EXHAUSTED" in str(exc)


def _truncate_for_log(text: str, max_len: int) -> str:
    flat = text.replace("\n", " ")
    if len(flat) <= max_len:
        return flat
    return flat[:max_len] + "..."
