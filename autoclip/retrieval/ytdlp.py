from __future__ import annotations

import json
import logging
import math
import re
import subprocess
from pathlib import Path
from typing import Any

from autoclip.errors import AttemptTimedOut, AuthRequired, ExternalToolFailure, ParseError, ToolNotFound
from autoclip.models import ClientIdentity, RetrievalStrategy, VideoMetadata

logger = logging.getLogger(__name__)

DEFAULT_BINARY = "yt-dlp"
DEFAULT_FORMAT_SELECTOR = "bv*+ba/b"
DEFAULT_FORMAT_SORT = "res:1080,ext:mp4"
AUTH_CHALLENGE_PATTERNS = (
    re.compile(r"sign in", re.IGNORECASE),
    re.compile(r"not a bot", re.IGNORECASE),
    re.compile(r"\bbot\b", re.IGNORECASE),
    re.compile(r"login required", re.IGNORECASE),
    re.compile(r"--cookies", re.IGNORECASE),
    re.compile(r"HTTP Error 403", re.IGNORECASE),
    re.compile(r"HTTP Error 429", re.IGNORECASE),
)


def strategy_flags(strategy: RetrievalStrategy, *, cookies_file: Path | None = None) -> list[str]:
    """Translate a strategy into yt-dlp command-line flags."""

    flags: list[str] = []
    if strategy.client_identity is not ClientIdentity.DEFAULT:
        flags += ["--extractor-args", f"youtube:player_client={strategy.client_identity.value}"]
    if strategy.proxy_url:
        flags += ["--proxy", strategy.proxy_url]
    if strategy.uses_credentials and cookies_file is not None:
        flags += ["--cookies", str(cookies_file)]
    return flags


def build_metadata_command(
    url: str,
    strategy: RetrievalStrategy,
    *,
    binary: str = DEFAULT_BINARY,
    cookies_file: Path | None = None,
) -> list[str]:
    return [
        binary,
        "--dump-json",
        "--no-download",
        "--no-warnings",
        "--no-playlist",
        *strategy_flags(strategy, cookies_file=cookies_file),
        url,
    ]


def build_download_command(
    url: str,
    strategy: RetrievalStrategy,
    *,
    output_path: Path,
    start_seconds: float,
    end_seconds: float,
    binary: str = DEFAULT_BINARY,
    cookies_file: Path | None = None,
    format_selector: str = DEFAULT_FORMAT_SELECTOR,
    format_sort: str = DEFAULT_FORMAT_SORT,
) -> list[str]:
    command = [
        binary,
        "-f",
        format_selector,
        "-S",
        format_sort,
        "--merge-output-format",
        "mp4",
        "-o",
        str(output_path),
        "--no-warnings",
        "--no-playlist",
        *strategy_flags(strategy, cookies_file=cookies_file),
    ]
    if end_seconds > start_seconds:
        section = f"*{math.floor(start_seconds)}-{math.ceil(end_seconds)}"
        command += ["--download-sections", section]
    command.append(url)
    return command


def fetch_metadata(
    url: str,
    strategy: RetrievalStrategy,
    *,
    binary: str = DEFAULT_BINARY,
    cookies_file: Path | None = None,
    timeout_seconds: float | None = None,
) -> VideoMetadata:
    """Fetch video metadata with one strategy (a single cascade attempt)."""

    command = build_metadata_command(url, strategy, binary=binary, cookies_file=cookies_file)
    completed = _run_ytdlp(command, timeout_seconds=timeout_seconds, strategy=strategy)

    try:
        payload = json.loads(completed.stdout)
    except json.JSONDecodeError as exc:
        raise ParseError("yt-dlp returned invalid metadata JSON.") from exc
    return parse_metadata(payload)


def download_section(
    url: str,
    strategy: RetrievalStrategy,
    *,
    output_path: Path,
    start_seconds: float,
    end_seconds: float,
    binary: str = DEFAULT_BINARY,
    cookies_file: Path | None = None,
    format_selector: str = DEFAULT_FORMAT_SELECTOR,
    format_sort: str = DEFAULT_FORMAT_SORT,
    timeout_seconds: float | None = None,
) -> Path:
    """Download only ``[start_seconds, end_seconds]`` with one strategy."""

    purge_partial_outputs(output_path)
    command = build_download_command(
        url,
        strategy,
        output_path=output_path,
        start_seconds=start_seconds,
        end_seconds=end_seconds,
        binary=binary,
        cookies_file=cookies_file,
        format_selector=format_selector,
        format_sort=format_sort,
    )
    _run_ytdlp(command, timeout_seconds=timeout_seconds, strategy=strategy)

    if not output_path.exists() or output_path.stat().st_size == 0:
        raise ExternalToolFailure(
            f"yt-dlp reported success but produced no file at {output_path}",
            tool="yt-dlp",
            returncode=0,
        )
    return output_path


def purge_partial_outputs(output_path: Path) -> None:
    """Remove the output file and any fragments yt-dlp left next to it."""

    if not output_path.parent.exists():
        return
    for leftover in output_path.parent.glob(f"{output_path.stem}.*"):
        if leftover.is_file():
            leftover.unlink()


def classify_failure(stderr: str, returncode: int | None) -> ExternalToolFailure:
    summary = _last_error_line(stderr) or f"exit code {returncode}"
    if any(pattern.search(stderr) for pattern in AUTH_CHALLENGE_PATTERNS):
        return AuthRequired(f"Authentication required: {summary}", tool="yt-dlp", returncode=returncode, stderr=stderr)
    return ExternalToolFailure(f"yt-dlp failed: {summary}", tool="yt-dlp", returncode=returncode, stderr=stderr)


def parse_metadata(payload: Any) -> VideoMetadata:
    if not isinstance(payload, dict):
        raise ParseError("yt-dlp metadata must be a JSON object.")

    try:
        duration = float(payload.get("duration") or 0.0)
    except (TypeError, ValueError) as exc:
        raise ParseError("yt-dlp metadata has a non-numeric duration.") from exc

    video_id = str(payload.get("id") or "")
    if not video_id:
        raise ParseError("yt-dlp metadata is missing the video id.")

    return VideoMetadata(
        id=video_id,
        title=str(payload.get("title") or ""),
        channel=str(payload.get("channel") or payload.get("uploader") or ""),
        duration_seconds=duration,
        webpage_url=str(payload.get("webpage_url") or ""),
        description=str(payload.get("description") or ""),
        thumbnail=str(payload.get("thumbnail") or ""),
    )


def _run_ytdlp(
    command: list[str],
    *,
    timeout_seconds: float | None,
    strategy: RetrievalStrategy,
) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            command,
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except FileNotFoundError as exc:
        raise ToolNotFound(
            "yt-dlp executable was not found. Install yt-dlp so it is available on PATH.",
            tool="yt-dlp",
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise AttemptTimedOut(
            f"yt-dlp did not finish within {timeout_seconds}s using {strategy.label}",
            tool="yt-dlp",
        ) from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        failure = classify_failure(stderr, exc.returncode)
        if stderr:
            logger.debug("yt-dlp stderr (%s): %s", strategy.label, stderr)
        raise failure from exc


def _last_error_line(stderr: str) -> str:
    lines = [line.strip() for line in stderr.splitlines() if line.strip()]
    for line in reversed(lines):
        if line.startswith("ERROR"):
            return line
    return lines[-1] if lines else ""
