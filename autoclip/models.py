from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class OriginStrategy(str, Enum):
    FULL_VIDEO = "full_video"
    HEATMAP = "heatmap"
    AI_WATCH = "ai_watch"
    HEURISTIC = "heuristic"


class ClientIdentity(str, Enum):
    """Client a retrieval attempt presents itself as."""

    IOS = "ios"
    ANDROID = "android"
    MWEB = "mweb"
    TV = "tv"
    WEB = "web"
    DEFAULT = "default"
    COBALT = "cobalt"


class PipelineStage(str, Enum):
    FETCHING_METADATA = "fetching_metadata"
    SELECTING_SEGMENT = "selecting_segment"
    RETRIEVING = "retrieving"
    TRANSCODING = "transcoding"
    CAPTIONING = "captioning"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class EngagementMarker:
    """One scored interval of the audience-engagement curve."""

    start_offset_ms: int
    duration_ms: int
    intensity: float

    @property
    def start_seconds(self) -> float:
        return self.start_offset_ms / 1000.0

    @property
    def duration_seconds(self) -> float:
        return self.duration_ms / 1000.0


@dataclass(frozen=True, slots=True)
class SegmentCandidate:
    """One proposed clip window before clamping."""

    start_seconds: float
    end_seconds: float
    score: float
    origin: OriginStrategy
    reason: str = ""


@dataclass(frozen=True, slots=True)
class ClipPlan:
    """Finalized window handed to the retriever."""

    start_seconds: float
    end_seconds: float
    reason_text: str
    origin: OriginStrategy = OriginStrategy.HEURISTIC
    score: float = 0.0

    @property
    def duration_seconds(self) -> float:
        return self.end_seconds - self.start_seconds


@dataclass(frozen=True, slots=True)
class RetrievalStrategy:
    label: str
    client_identity: ClientIdentity
    proxy_url: str | None = None
    uses_credentials: bool = False


@dataclass(frozen=True, slots=True)
class VideoMetadata:
    id: str
    title: str
    channel: str
    duration_seconds: float
    webpage_url: str = ""
    description: str = ""
    thumbnail: str = ""


@dataclass(slots=True)
class PipelineContext:
    """Per-request state shared between pipeline stages."""

    request_id: str
    url: str
    video_id: str
    work_dir: Path
    output_dir: Path
    stage: PipelineStage = PipelineStage.FETCHING_METADATA


@dataclass(slots=True)
class ClipResult:
    request_id: str
    video_path: Path
    title: str
    channel: str
    duration: str
    platform: str
    caption: str
    hashtags: str
    original_url: str
    plan: ClipPlan
    stages: list[PipelineStage] = field(default_factory=list)
