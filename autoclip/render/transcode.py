from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path

from autoclip.config import TranscodeSettings
from autoclip.errors import ExternalToolFailure, ToolNotFound

logger = logging.getLogger(__name__)

VERTICAL_CROP_FILTER = "crop='min(iw,trunc(ih*9/16/2)*2)':ih"


def build_transcode_command(
    input_path: Path,
    output_path: Path,
    max_duration_seconds: int,
    settings: TranscodeSettings,
) -> list[str]:
    return [
        settings.ffmpeg_binary,
        "-v",
        "error",
        "-y",
        "-i",
        str(input_path),
        "-vf",
        VERTICAL_CROP_FILTER,
        "-c:v",
        "libx264",
        "-crf",
        str(settings.crf),
        "-preset",
        settings.preset,
        "-maxrate",
        settings.max_rate,
        "-bufsize",
        settings.buffer_size,
        "-c:a",
        "aac",
        "-b:a",
        settings.audio_bitrate,
        "-t",
        str(max_duration_seconds),
        "-movflags",
        "+faststart",
        str(output_path),
    ]


def convert_to_vertical(
    input_path: Path,
    output_path: Path,
    max_duration_seconds: int,
    settings: TranscodeSettings | None = None,
) -> Path:
    """Re-encode a raw clip to a 9:16, bitrate-capped MP4 no longer than the cap."""

    resolved = settings or TranscodeSettings()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    command = build_transcode_command(input_path, output_path, max_duration_seconds, resolved)

    logger.info("Running ffmpeg: input=%s output=%s", input_path, output_path)
    try:
        subprocess.run(
            command,
            check=True,
            capture_output=True,
            text=True,
            timeout=resolved.timeout_seconds,
        )
    except FileNotFoundError as exc:
        raise ToolNotFound(
            "ffmpeg executable was not found. Install FFmpeg so it is available on PATH.",
            tool="ffmpeg",
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise ExternalToolFailure(f"ffmpeg did not finish within {resolved.timeout_seconds}s", tool="ffmpeg") from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        logger.error("ffmpeg stderr: %s", stderr)
        raise ExternalToolFailure(
            f"ffmpeg failed to transcode {input_path.name}",
            tool="ffmpeg",
            returncode=exc.returncode,
            stderr=stderr,
        ) from exc

    if not output_path.exists():
        raise ExternalToolFailure(f"ffmpeg produced no output at {output_path}", tool="ffmpeg", returncode=0)
    return output_path


def probe_duration(media_path: Path, ffprobe_binary: str = "ffprobe") -> float | None:
    """Return the container duration in seconds, or ``None`` when it cannot be read."""

    command = [
        ffprobe_binary,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        str(media_path),
    ]
    try:
        completed = subprocess.run(command, check=True, capture_output=True, text=True)
        payload = json.loads(completed.stdout)
    except (FileNotFoundError, subprocess.CalledProcessError, json.JSONDecodeError) as exc:
        logger.debug("ffprobe could not read %s: %s", media_path, exc)
        return None

    raw_value = payload.get("format", {}).get("duration")
    if raw_value in (None, "N/A", ""):
        return None
    try:
        return float(raw_value)
    except (TypeError, ValueError):
        return None
