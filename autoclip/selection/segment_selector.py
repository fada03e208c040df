from __future__ import annotations

import logging
from typing import Callable, Sequence, Union

from autoclip.config import SelectionSettings
from autoclip.errors import InvalidInput, SignalUnavailable
from autoclip.models import ClipPlan, EngagementMarker, OriginStrategy, SegmentCandidate
from autoclip.signals.ai_response import parse_segment_response

logger = logging.getLogger(__name__)

AISuggestion = Union[str, Callable[[], Union[str, None]], None]


def select_clip_plan(
    markers: Sequence[EngagementMarker] | None,
    video_duration_seconds: float,
    max_clip_seconds: float | None = None,
    ai_suggestion: AISuggestion = None,
    *,
    settings: SelectionSettings | None = None,
) -> ClipPlan:
    """Pick the single clip window for a video.

    Cascade (first stage that produces a candidate wins):
    1) whole video when it is barely longer than the target clip
    2) hottest engagement marker
    3) AI suggestion, only for videos under the analysis ceiling
    4) deterministic position heuristic

    ``ai_suggestion`` may be response text or a zero-argument callable
    returning it; the callable is only invoked when stages 1-2 produced
    nothing.
    """

    resolved = settings or SelectionSettings()
    max_clip = float(max_clip_seconds if max_clip_seconds is not None else resolved.max_clip_seconds)
    duration = float(video_duration_seconds)
    if duration <= 0:
        raise InvalidInput(f"Video duration must be positive, got {video_duration_seconds!r}.")
    if max_clip <= 0:
        raise InvalidInput(f"Maximum clip length must be positive, got {max_clip_seconds!r}.")

    candidate = select_candidate(markers, duration, max_clip, ai_suggestion, settings=resolved)
    return finalize_plan(
        candidate,
        video_duration_seconds=duration,
        max_clip_seconds=max_clip,
        min_clip_seconds=float(resolved.min_clip_seconds),
        trailing_buffer_seconds=resolved.trailing_buffer_seconds,
    )


def select_candidate(
    markers: Sequence[EngagementMarker] | None,
    video_duration_seconds: float,
    max_clip_seconds: float,
    ai_suggestion: AISuggestion = None,
    *,
    settings: SelectionSettings,
) -> SegmentCandidate:
    if covers_full_video(video_duration_seconds, max_clip_seconds, settings.full_video_slack_seconds):
        return SegmentCandidate(
            start_seconds=0.0,
            end_seconds=video_duration_seconds,
            score=1.0,
            origin=OriginStrategy.FULL_VIDEO,
            reason="Full video",
        )

    candidate = heatmap_candidate(
        markers or [],
        video_duration_seconds,
        max_clip_seconds,
        padding_seconds=settings.heatmap_padding_seconds,
    )
    if candidate is not None:
        return candidate

    if video_duration_seconds <= settings.max_ai_video_seconds:
        candidate = ai_candidate(
            ai_suggestion,
            max_clip_seconds=max_clip_seconds,
            min_clip_seconds=float(settings.min_clip_seconds),
        )
        if candidate is not None:
            return candidate
    elif ai_suggestion is not None:
        logger.debug(
            "Video too long for AI analysis (%.0f min > %.0f min), skipping",
            video_duration_seconds / 60,
            settings.max_ai_video_seconds / 60,
        )

    return heuristic_candidate(video_duration_seconds, settings=settings)


def covers_full_video(video_duration_seconds: float, max_clip_seconds: float, slack_seconds: float = 10.0) -> bool:
    return video_duration_seconds <= max_clip_seconds + slack_seconds


def heatmap_candidate(
    markers: Sequence[EngagementMarker],
    video_duration_seconds: float,
    max_clip_seconds: float,
    *,
    padding_seconds: float = 5.0,
) -> SegmentCandidate | None:
    if not markers:
        return None

    best = max(markers, key=lambda marker: marker.intensity)
    start = best.start_seconds - padding_seconds
    end = best.start_seconds + min(best.duration_seconds, max_clip_seconds) + padding_seconds

    start = max(0.0, start)
    end = min(video_duration_seconds, end)
    if end <= start:
        # marker reported past the end of the video
        end = video_duration_seconds
        start = max(0.0, end - 2 * padding_seconds)

    logger.info("Best engagement marker at %.0fs (intensity %.2f)", best.start_seconds, best.intensity)
    return SegmentCandidate(
        start_seconds=start,
        end_seconds=end,
        score=best.intensity,
        origin=OriginStrategy.HEATMAP,
        reason="High engagement segment",
    )


def ai_candidate(
    ai_suggestion: AISuggestion,
    *,
    max_clip_seconds: float,
    min_clip_seconds: float,
) -> SegmentCandidate | None:
    if ai_suggestion is None:
        return None

    if callable(ai_suggestion):
        try:
            text = ai_suggestion()
        except SignalUnavailable as exc:
            logger.warning("AI video analysis unavailable: %s", exc)
            return None
    else:
        text = ai_suggestion

    if text is None:
        return None

    suggestion = parse_segment_response(
        text,
        max_clip_seconds=max_clip_seconds,
        min_clip_seconds=min_clip_seconds,
    )
    return SegmentCandidate(
        start_seconds=suggestion.start_seconds,
        end_seconds=suggestion.start_seconds + suggestion.duration_seconds,
        score=0.0,
        origin=OriginStrategy.AI_WATCH,
        reason=suggestion.reason,
    )


def heuristic_candidate(video_duration_seconds: float, *, settings: SelectionSettings) -> SegmentCandidate:
    clip_seconds = float(settings.fallback_clip_seconds)
    if video_duration_seconds > settings.fallback_long_video_seconds:
        start = video_duration_seconds * settings.fallback_start_fraction
        reason = "Early highlight"
    else:
        start = 0.0
        reason = "Video intro"

    return SegmentCandidate(
        start_seconds=start,
        end_seconds=start + clip_seconds,
        score=0.0,
        origin=OriginStrategy.HEURISTIC,
        reason=reason,
    )


def finalize_plan(
    candidate: SegmentCandidate,
    *,
    video_duration_seconds: float,
    max_clip_seconds: float,
    min_clip_seconds: float,
    trailing_buffer_seconds: float,
) -> ClipPlan:
    """Clamp a candidate into the video and the clip-length band, then pad its tail."""

    if candidate.origin is OriginStrategy.FULL_VIDEO:
        return ClipPlan(
            start_seconds=0.0,
            end_seconds=video_duration_seconds,
            reason_text=candidate.reason,
            origin=candidate.origin,
            score=candidate.score,
        )

    upper = min(max_clip_seconds, video_duration_seconds)
    lower = min(min_clip_seconds, upper)
    length = max(lower, min(upper, candidate.end_seconds - candidate.start_seconds))

    start = max(0.0, candidate.start_seconds)
    if start + length > video_duration_seconds:
        start = max(0.0, video_duration_seconds - length)
    end = start + length

    end = min(end + trailing_buffer_seconds, video_duration_seconds, start + max_clip_seconds)

    return ClipPlan(
        start_seconds=start,
        end_seconds=end,
        reason_text=candidate.reason,
        origin=candidate.origin,
        score=candidate.score,
    )
