from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "AUTOCLIP_"


class PipelineSettings(BaseModel):
    output_dir: Path = Path("data/outputs")
    work_dir: Path = Path("data/work")


class SelectionSettings(BaseModel):
    max_clip_seconds: int = 60
    min_clip_seconds: int = 15
    full_video_slack_seconds: float = 10.0
    heatmap_padding_seconds: float = 5.0
    trailing_buffer_seconds: float = 5.0
    max_ai_video_seconds: int = 1200
    fallback_clip_seconds: int = 45
    fallback_start_fraction: float = 0.2
    fallback_long_video_seconds: int = 300


class HeatmapSettings(BaseModel):
    min_intensity: float = 0.15
    keep_top_n: int = 5
    timeout_seconds: int = 15
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    accept_language: str = "en-US,en;q=0.9"


class RetrievalSettings(BaseModel):
    ytdlp_binary: str = "yt-dlp"
    client_identities: list[str] = Field(default_factory=lambda: ["ios", "android", "web", "default"])
    proxies: list[str] = Field(default_factory=list)
    shuffle_proxies: bool = False
    cookies_file: Path | None = None
    attempt_timeout_seconds: int = 600
    format_selector: str = "bv*+ba/b"
    format_sort: str = "res:1080,ext:mp4"
    cobalt_api_url: str | None = None
    cobalt_quality: str = "1080"


class AISettings(BaseModel):
    api_key: str | None = None
    model: str = "gemini-2.5-flash"
    max_retries: int = 2
    rate_limit_wait_seconds: float = 30.0


class CaptionSettings(BaseModel):
    language: str = "English"
    default_hashtags: str = "#viral #fyp #trending"
    max_message_chars: int = 1024


class TranscodeSettings(BaseModel):
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    crf: int = 26
    preset: str = "fast"
    max_rate: str = "4M"
    buffer_size: str = "8M"
    audio_bitrate: str = "128k"
    timeout_seconds: int = 600


class LoggingSettings(BaseModel):
    level: str = "INFO"


class Settings(BaseModel):
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    selection: SelectionSettings = Field(default_factory=SelectionSettings)
    heatmap: HeatmapSettings = Field(default_factory=HeatmapSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    ai: AISettings = Field(default_factory=AISettings)
    caption: CaptionSettings = Field(default_factory=CaptionSettings)
    transcode: TranscodeSettings = Field(default_factory=TranscodeSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides.

    A missing file at the default location is not an error: every section has
    usable defaults. An explicitly requested file must exist.
    """

    explicit = config_path or os.getenv(f"{ENV_PREFIX}CONFIG")
    resolved_path = Path(explicit or DEFAULT_CONFIG_PATH)
    if resolved_path.exists() or explicit:
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    else:
        raw_config = {}
    data = Settings.model_validate(raw_config).model_dump(mode="python")

    for key, raw_value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        suffix = key[len(ENV_PREFIX) :]
        if suffix == "CONFIG":
            continue

        path = [part.lower() for part in suffix.split("__")]
        _apply_override(data, path, raw_value)

    if not data["ai"].get("api_key"):
        data["ai"]["api_key"] = os.getenv("GEMINI_API_KEY")

    return Settings.model_validate(data)


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if existing_value is None:
        # unset optional setting; an empty value keeps it unset
        return raw_value or None
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    return raw_value
