from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from autoclip import pipeline
from autoclip.config import PipelineSettings, Settings
from autoclip.errors import (
    AllStrategiesExhausted,
    AttemptFailure,
    EngagementFetchError,
    ExternalToolFailure,
    PipelineFailed,
)
from autoclip.models import EngagementMarker, OriginStrategy, PipelineStage, VideoMetadata
from autoclip.signals.gemini import GeminiAnalyzer

URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


class _FakeRetriever:
    def __init__(self, duration_seconds: float = 600.0, failure: Exception | None = None) -> None:
        self.metadata = VideoMetadata(
            id="dQw4w9WgXcQ",
            title="Never Gonna Give You Up",
            channel="Rick Astley",
            duration_seconds=duration_seconds,
        )
        self.failure = failure
        self.metadata_calls = 0
        self.retrieve_calls: list[tuple[float, float, Path]] = []

    def fetch_metadata(self, url: str) -> VideoMetadata:
        self.metadata_calls += 1
        return self.metadata

    def retrieve(self, url: str, start_seconds: float, end_seconds: float, output_path: Path) -> Path:
        self.retrieve_calls.append((start_seconds, end_seconds, output_path))
        if self.failure is not None:
            raise self.failure
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"raw")
        return output_path


class _FakeAnalyzer:
    def __init__(self) -> None:
        self.analyze_calls = 0

    def analyze_video(self, video_url: str, *, title: str, duration_seconds: float, max_clip_seconds: float) -> str:
        self.analyze_calls += 1
        return "START_SECOND: 1:30\nDURATION: 40\nREASON: funny bit"

    def generate_caption(self, *, title: str, channel: str, reason: str, language: str = "English") -> str:
        return "CAPTION: This one is a classic\nHASHTAGS: #music #classic"


def _settings(tmp_path: Path) -> Settings:
    return Settings(pipeline=PipelineSettings(output_dir=tmp_path / "outputs", work_dir=tmp_path / "work"))


def _fake_convert(captured: dict[str, object] | None = None):
    def _convert(input_path: Path, output_path: Path, max_duration_seconds: int, settings=None) -> Path:
        if captured is not None:
            captured["input_path"] = input_path
            captured["max_duration_seconds"] = max_duration_seconds
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"vertical")
        return output_path

    return _convert


@pytest.fixture
def patched_media(monkeypatch: pytest.MonkeyPatch) -> dict[str, object]:
    captured: dict[str, object] = {}
    monkeypatch.setattr(pipeline, "convert_to_vertical", _fake_convert(captured))
    monkeypatch.setattr(pipeline, "probe_duration", lambda *_args, **_kwargs: 35.0)
    monkeypatch.setattr(
        pipeline,
        "fetch_engagement_markers",
        lambda *_args, **_kwargs: [EngagementMarker(start_offset_ms=120000, duration_ms=20000, intensity=0.9)],
    )
    return captured


def test_run_produces_clip_from_heatmap(tmp_path: Path, patched_media: dict[str, object]) -> None:
    retriever = _FakeRetriever()
    messages: list[str] = []
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=retriever)

    result = clip_pipeline.run(URL, notify=messages.append)

    assert retriever.retrieve_calls[0][:2] == (115.0, 150.0)
    assert result.plan.origin is OriginStrategy.HEATMAP
    assert result.video_path.exists()
    assert result.video_path.parent == tmp_path / "outputs"
    assert result.request_id in result.video_path.name
    assert result.caption == "Never Gonna Give You Up"
    assert result.duration == "0:35"
    assert result.platform == "YouTube"
    assert result.stages == [
        PipelineStage.FETCHING_METADATA,
        PipelineStage.SELECTING_SEGMENT,
        PipelineStage.RETRIEVING,
        PipelineStage.TRANSCODING,
        PipelineStage.CAPTIONING,
        PipelineStage.DONE,
    ]
    assert messages[0] == "Fetching video info..."
    assert messages[1].startswith("Found: Never Gonna Give You Up | 10:00 | Rick Astley")
    assert messages[2] == "Downloading 1:55-2:30 (High engagement segment)..."
    assert len(messages) == 5
    assert patched_media["max_duration_seconds"] == 35
    assert list((tmp_path / "work").iterdir()) == []


def test_run_uses_analyzer_when_heatmap_is_missing(tmp_path: Path, patched_media, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(pipeline, "fetch_engagement_markers", lambda *_args, **_kwargs: None)
    analyzer = _FakeAnalyzer()
    retriever = _FakeRetriever()
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=retriever, analyzer=analyzer)

    result = clip_pipeline.run(URL)

    assert analyzer.analyze_calls == 1
    assert retriever.retrieve_calls[0][:2] == (90.0, 135.0)
    assert result.plan.origin is OriginStrategy.AI_WATCH
    assert result.caption == "This one is a classic"
    assert result.hashtags == "#music #classic"


def test_run_treats_engagement_fetch_errors_as_missing(tmp_path: Path, patched_media, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        pipeline,
        "fetch_engagement_markers",
        lambda *_args, **_kwargs: (_ for _ in ()).throw(EngagementFetchError("timed out")),
    )
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=_FakeRetriever())

    result = clip_pipeline.run(URL)

    assert result.plan.origin is OriginStrategy.HEURISTIC
    assert result.plan.start_seconds == pytest.approx(120.0)


def test_run_short_video_skips_engagement_lookup(tmp_path: Path, patched_media, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        pipeline,
        "fetch_engagement_markers",
        lambda *_args, **_kwargs: (_ for _ in ()).throw(AssertionError("should not fetch markers")),
    )
    retriever = _FakeRetriever(duration_seconds=50)
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=retriever)

    result = clip_pipeline.run(URL)

    assert retriever.retrieve_calls[0][:2] == (0.0, 50.0)
    assert result.plan.origin is OriginStrategy.FULL_VIDEO
    assert result.platform == "YouTube Short"


def test_run_rejects_invalid_url_before_any_work(tmp_path: Path, patched_media) -> None:
    retriever = _FakeRetriever()
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=retriever)

    with pytest.raises(PipelineFailed) as exc_info:
        clip_pipeline.run("https://vimeo.com/123456")

    assert exc_info.value.stage == "validating"
    assert "Not a YouTube link" in exc_info.value.user_message
    assert retriever.metadata_calls == 0


def test_run_rejects_malformed_url_as_invalid_input(tmp_path: Path, patched_media) -> None:
    retriever = _FakeRetriever()
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=retriever)

    with pytest.raises(PipelineFailed) as exc_info:
        clip_pipeline.run("https://[youtube.com/watch?v=dQw4w9WgXcQ")

    assert exc_info.value.stage == "validating"
    assert retriever.metadata_calls == 0


def test_run_falls_back_to_heuristic_when_analyzer_sdk_fails(
    tmp_path: Path, patched_media, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(pipeline, "fetch_engagement_markers", lambda *_args, **_kwargs: None)

    calls: list[dict[str, object]] = []

    def _malformed(**kwargs):
        calls.append(kwargs)
        raise ValueError("Unsupported response mime type")

    client = SimpleNamespace(models=SimpleNamespace(generate_content=_malformed))
    analyzer = GeminiAnalyzer(client=client, sleep=lambda _seconds: None)
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=_FakeRetriever(), analyzer=analyzer)

    result = clip_pipeline.run(URL)

    assert result.plan.origin is OriginStrategy.HEURISTIC
    assert result.caption == "Never Gonna Give You Up"
    assert len(calls) == 2


def test_run_failure_cleans_up_and_hides_tool_output(tmp_path: Path, patched_media, monkeypatch: pytest.MonkeyPatch) -> None:
    def _broken_convert(input_path: Path, output_path: Path, max_duration_seconds: int, settings=None) -> Path:
        raise ExternalToolFailure(
            "ffmpeg failed to transcode raw.mp4",
            tool="ffmpeg",
            returncode=1,
            stderr="Invalid data found when processing input",
        )

    monkeypatch.setattr(pipeline, "convert_to_vertical", _broken_convert)
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=_FakeRetriever())

    with pytest.raises(PipelineFailed) as exc_info:
        clip_pipeline.run(URL)

    assert exc_info.value.stage == "transcoding"
    assert exc_info.value.user_message == pipeline.STAGE_FAILURE_MESSAGES[PipelineStage.TRANSCODING]
    assert "Invalid data" not in exc_info.value.user_message
    assert list((tmp_path / "work").iterdir()) == []
    assert not (tmp_path / "outputs").exists() or list((tmp_path / "outputs").iterdir()) == []


def test_run_removes_clip_when_a_later_stage_fails(tmp_path: Path, patched_media, monkeypatch: pytest.MonkeyPatch) -> None:
    def _broken_caption(*_args, **_kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(pipeline, "generate_caption", _broken_caption)
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=_FakeRetriever())

    with pytest.raises(PipelineFailed) as exc_info:
        clip_pipeline.run(URL)

    assert exc_info.value.stage == "captioning"
    assert list((tmp_path / "outputs").iterdir()) == []


class _InterruptedRetriever(_FakeRetriever):
    def retrieve(self, url: str, start_seconds: float, end_seconds: float, output_path: Path) -> Path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.with_suffix(".part").write_bytes(b"partial")
        raise KeyboardInterrupt


def test_run_interrupted_during_retrieval_leaves_no_files(tmp_path: Path, patched_media) -> None:
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=_InterruptedRetriever())

    with pytest.raises(KeyboardInterrupt):
        clip_pipeline.run(URL)

    assert list((tmp_path / "work").iterdir()) == []
    assert not (tmp_path / "outputs").exists() or list((tmp_path / "outputs").iterdir()) == []


def test_run_interrupted_after_transcode_removes_clip(tmp_path: Path, patched_media, monkeypatch: pytest.MonkeyPatch) -> None:
    def _interrupted_caption(*_args, **_kwargs):
        raise KeyboardInterrupt

    monkeypatch.setattr(pipeline, "generate_caption", _interrupted_caption)
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=_FakeRetriever())

    with pytest.raises(KeyboardInterrupt):
        clip_pipeline.run(URL)

    assert list((tmp_path / "outputs").iterdir()) == []
    assert list((tmp_path / "work").iterdir()) == []


def test_run_reports_platform_blocking(tmp_path: Path, patched_media) -> None:
    failure = AllStrategiesExhausted(
        "segment download",
        [AttemptFailure(strategy_label="ios@direct", kind="auth", detail="Sign in to confirm you're not a bot")],
    )
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=_FakeRetriever(failure=failure))

    with pytest.raises(PipelineFailed) as exc_info:
        clip_pipeline.run(URL)

    assert exc_info.value.stage == "retrieving"
    assert exc_info.value.user_message == pipeline.AUTH_BLOCKED_MESSAGE


def test_run_ignores_progress_sink_errors(tmp_path: Path, patched_media) -> None:
    def _broken_notify(message: str) -> None:
        raise ConnectionError("chat went away")

    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=_FakeRetriever())

    result = clip_pipeline.run(URL, notify=_broken_notify)

    assert result.video_path.exists()


def test_request_ids_are_unique_for_the_same_video(tmp_path: Path) -> None:
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=_FakeRetriever(), clock=lambda: 1700000000.0)

    first = clip_pipeline.new_request_id("dQw4w9WgXcQ")
    second = clip_pipeline.new_request_id("dQw4w9WgXcQ")

    assert first.startswith("dQw4w9WgXcQ_1700000000000_")
    assert first != second


def test_plan_resolves_window_without_downloading(tmp_path: Path, patched_media) -> None:
    retriever = _FakeRetriever()
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=retriever)

    metadata, plan = clip_pipeline.plan(URL)

    assert metadata.id == "dQw4w9WgXcQ"
    assert (plan.start_seconds, plan.end_seconds) == (115.0, 150.0)
    assert retriever.retrieve_calls == []


def test_discard_deletes_clip(tmp_path: Path, patched_media) -> None:
    clip_pipeline = pipeline.ClipPipeline(_settings(tmp_path), retriever=_FakeRetriever())
    result = clip_pipeline.run(URL)

    clip_pipeline.discard(result)

    assert not result.video_path.exists()


def test_user_message_for_unknown_stage_is_generic() -> None:
    message = pipeline.user_message_for(PipelineStage.DONE, RuntimeError("boom"))

    assert message == "Something went wrong while creating the clip."
