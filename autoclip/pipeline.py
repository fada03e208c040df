from __future__ import annotations

import logging
import math
import secrets
import shutil
import time
from functools import partial
from pathlib import Path
from typing import Callable, Protocol

from autoclip.config import Settings
from autoclip.errors import AllStrategiesExhausted, ClipperError, InvalidInput, PipelineFailed, SignalUnavailable
from autoclip.models import (
    ClipPlan,
    ClipResult,
    EngagementMarker,
    PipelineContext,
    PipelineStage,
    VideoMetadata,
)
from autoclip.render.caption import CaptionGenerator, generate_caption
from autoclip.render.transcode import convert_to_vertical, probe_duration
from autoclip.retrieval.retriever import Retriever
from autoclip.retrieval.urls import extract_video_id, format_duration, platform_label
from autoclip.selection.segment_selector import covers_full_video, select_clip_plan
from autoclip.signals.heatmap import fetch_engagement_markers

logger = logging.getLogger(__name__)

ProgressSink = Callable[[str], None]

STAGE_FAILURE_MESSAGES = {
    PipelineStage.FETCHING_METADATA: "Could not read the video info. It may be private, age-restricted or removed.",
    PipelineStage.SELECTING_SEGMENT: "Could not decide which part of the video to clip.",
    PipelineStage.RETRIEVING: "Could not download the video segment. Please try again later.",
    PipelineStage.TRANSCODING: "Could not convert the clip to vertical format.",
    PipelineStage.CAPTIONING: "Could not finish the clip caption.",
}
AUTH_BLOCKED_MESSAGE = "The video platform is blocking automated downloads right now. Please try again later."


class VideoAnalyzer(CaptionGenerator, Protocol):
    def analyze_video(
        self,
        video_url: str,
        *,
        title: str,
        duration_seconds: float,
        max_clip_seconds: float,
    ) -> str: ...


class ClipPipeline:
    """Runs one clipping request end to end.

    Stages run strictly in sequence; only the retriever retries, inside its
    own stage. The instance holds no per-request state, so concurrent
    ``run`` calls are independent.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        retriever: Retriever,
        analyzer: VideoAnalyzer | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.retriever = retriever
        self.analyzer = analyzer
        self._clock = clock

    def new_request_id(self, video_id: str) -> str:
        return f"{video_id}_{int(self._clock() * 1000)}_{secrets.token_hex(3)}"

    def run(self, url: str, notify: ProgressSink | None = None) -> ClipResult:
        video_id = self._validate(url)
        request_id = self.new_request_id(video_id)
        context = PipelineContext(
            request_id=request_id,
            url=url,
            video_id=video_id,
            work_dir=Path(self.settings.pipeline.work_dir) / request_id,
            output_dir=Path(self.settings.pipeline.output_dir),
        )
        logger.info("[%s] Processing %s", request_id, url)

        visited: list[PipelineStage] = []
        final_path: Path | None = None
        succeeded = False
        try:
            self._enter(context, visited, PipelineStage.FETCHING_METADATA, notify, "Fetching video info...")
            metadata = self.retriever.fetch_metadata(url)

            self._enter(
                context,
                visited,
                PipelineStage.SELECTING_SEGMENT,
                notify,
                f"Found: {metadata.title} | {format_duration(metadata.duration_seconds)} | {metadata.channel}. "
                "Finding the best moment...",
            )
            plan = self._select(context, metadata)
            logger.info(
                "[%s] Clip plan %.1f-%.1fs via %s (%s)",
                request_id,
                plan.start_seconds,
                plan.end_seconds,
                plan.origin.value,
                plan.reason_text,
            )

            self._enter(
                context,
                visited,
                PipelineStage.RETRIEVING,
                notify,
                f"Downloading {format_duration(plan.start_seconds)}-{format_duration(plan.end_seconds)} "
                f"({plan.reason_text})...",
            )
            raw_path = self.retriever.retrieve(
                url,
                plan.start_seconds,
                plan.end_seconds,
                context.work_dir / f"raw_{request_id}.mp4",
            )

            self._enter(context, visited, PipelineStage.TRANSCODING, notify, "Processing video to vertical...")
            max_clip = self.settings.selection.max_clip_seconds
            final_path = convert_to_vertical(
                raw_path,
                context.output_dir / f"clip_{request_id}.mp4",
                min(max_clip, math.ceil(plan.duration_seconds)),
                self.settings.transcode,
            )

            self._enter(context, visited, PipelineStage.CAPTIONING, notify, "Generating caption...")
            caption = generate_caption(
                self.analyzer,
                title=metadata.title,
                channel=metadata.channel,
                reason=plan.reason_text,
                language=self.settings.caption.language,
                default_hashtags=self.settings.caption.default_hashtags,
            )
            clip_seconds = probe_duration(final_path, self.settings.transcode.ffprobe_binary)
            if clip_seconds is None:
                clip_seconds = min(float(max_clip), plan.duration_seconds)

            context.stage = PipelineStage.DONE
            visited.append(PipelineStage.DONE)
            succeeded = True
            logger.info("[%s] Clip ready at %s", request_id, final_path)
            return ClipResult(
                request_id=request_id,
                video_path=final_path,
                title=metadata.title,
                channel=metadata.channel,
                duration=format_duration(clip_seconds),
                platform=platform_label(url, metadata.duration_seconds),
                caption=caption.caption,
                hashtags=caption.hashtags,
                original_url=url,
                plan=plan,
                stages=visited,
            )
        except (ClipperError, OSError) as exc:
            failed_stage = context.stage
            context.stage = PipelineStage.FAILED
            logger.error("[%s] Failed during %s: %s", request_id, failed_stage.value, exc)
            raise PipelineFailed(failed_stage.value, user_message_for(failed_stage, exc)) from exc
        finally:
            if not succeeded and final_path is not None:
                final_path.unlink(missing_ok=True)
            shutil.rmtree(context.work_dir, ignore_errors=True)

    def plan(self, url: str) -> tuple[VideoMetadata, ClipPlan]:
        """Resolve metadata and the clip window without downloading anything."""

        video_id = self._validate(url)
        context = PipelineContext(
            request_id=self.new_request_id(video_id),
            url=url,
            video_id=video_id,
            work_dir=Path(self.settings.pipeline.work_dir),
            output_dir=Path(self.settings.pipeline.output_dir),
        )
        try:
            metadata = self.retriever.fetch_metadata(url)
            context.stage = PipelineStage.SELECTING_SEGMENT
            return metadata, self._select(context, metadata)
        except ClipperError as exc:
            raise PipelineFailed(context.stage.value, user_message_for(context.stage, exc)) from exc

    def discard(self, result: ClipResult) -> None:
        """Delete a delivered clip."""

        result.video_path.unlink(missing_ok=True)

    def _validate(self, url: str) -> str:
        try:
            return extract_video_id(url)
        except InvalidInput as exc:
            raise PipelineFailed("validating", str(exc)) from exc

    def _select(self, context: PipelineContext, metadata: VideoMetadata) -> ClipPlan:
        selection = self.settings.selection
        duration = metadata.duration_seconds

        markers: list[EngagementMarker] | None = None
        if duration > 0 and not covers_full_video(duration, selection.max_clip_seconds, selection.full_video_slack_seconds):
            markers = self._fetch_markers(context)

        ai_suggestion: Callable[[], str] | None = None
        if self.analyzer is not None:
            ai_suggestion = partial(
                self.analyzer.analyze_video,
                context.url,
                title=metadata.title,
                duration_seconds=duration,
                max_clip_seconds=selection.max_clip_seconds,
            )

        return select_clip_plan(
            markers,
            duration,
            selection.max_clip_seconds,
            ai_suggestion,
            settings=selection,
        )

    def _fetch_markers(self, context: PipelineContext) -> list[EngagementMarker] | None:
        heatmap = self.settings.heatmap
        try:
            return fetch_engagement_markers(
                context.video_id,
                min_intensity=heatmap.min_intensity,
                keep_top_n=heatmap.keep_top_n,
                timeout_seconds=heatmap.timeout_seconds,
                user_agent=heatmap.user_agent,
                accept_language=heatmap.accept_language,
            )
        except SignalUnavailable as exc:
            logger.info("[%s] Engagement data unavailable: %s", context.request_id, exc)
            return None

    def _enter(
        self,
        context: PipelineContext,
        visited: list[PipelineStage],
        stage: PipelineStage,
        notify: ProgressSink | None,
        message: str,
    ) -> None:
        context.stage = stage
        visited.append(stage)
        logger.debug("[%s] Entering %s", context.request_id, stage.value)
        safe_notify(notify, message)


def safe_notify(notify: ProgressSink | None, message: str) -> None:
    """Deliver a progress message at most once; sink errors never abort a run."""

    if notify is None:
        return
    try:
        notify(message)
    except Exception as exc:
        logger.warning("Progress notification failed: %s", exc)


def user_message_for(stage: PipelineStage, exc: BaseException) -> str:
    if isinstance(exc, InvalidInput):
        return str(exc)
    if isinstance(exc, AllStrategiesExhausted) and exc.auth_blocked:
        return AUTH_BLOCKED_MESSAGE
    return STAGE_FAILURE_MESSAGES.get(stage, "Something went wrong while creating the clip.")
