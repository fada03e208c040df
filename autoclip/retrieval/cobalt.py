from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any
from urllib import request
from urllib.error import HTTPError, URLError

from autoclip.errors import AttemptTimedOut, ExternalToolFailure, ToolNotFound

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_QUALITY = "1080"


class CobaltClient:
    """Relay client: resolves a direct media URL and range-seeks it with ffmpeg."""

    def __init__(
        self,
        api_url: str,
        *,
        quality: str = DEFAULT_QUALITY,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        ffmpeg_binary: str = "ffmpeg",
    ) -> None:
        self.api_url = api_url
        self.quality = quality
        self.timeout_seconds = timeout_seconds
        self.ffmpeg_binary = ffmpeg_binary

    def resolve_media_url(self, video_url: str) -> str:
        payload = self._request_json({"url": video_url, "videoQuality": self.quality, "downloadMode": "auto"})

        if payload.get("status") == "error":
            error = payload.get("error") or {}
            code = error.get("code", "unknown") if isinstance(error, dict) else str(error)
            raise ExternalToolFailure(f"cobalt error: {code}", tool="cobalt")

        media_url = payload.get("url")
        if not isinstance(media_url, str) or not media_url:
            raise ExternalToolFailure("cobalt returned no download URL", tool="cobalt")
        return media_url

    def download_section(
        self,
        video_url: str,
        *,
        output_path: Path,
        start_seconds: float,
        end_seconds: float,
        timeout_seconds: float | None = None,
    ) -> Path:
        media_url = self.resolve_media_url(video_url)
        logger.info("Got relay URL, seeking %.0f-%.0f with ffmpeg", start_seconds, end_seconds)

        output_path.parent.mkdir(parents=True, exist_ok=True)
        copy_codec = ["-c", "copy"]
        reencode = ["-c:v", "libx264", "-preset", "fast", "-crf", "23", "-c:a", "aac", "-b:a", "128k"]
        try:
            self._run_ffmpeg(media_url, output_path, start_seconds, end_seconds, copy_codec, timeout_seconds)
        except ExternalToolFailure as exc:
            if isinstance(exc, (ToolNotFound, AttemptTimedOut)):
                raise
            logger.debug("Stream copy failed, retrying with re-encode: %s", exc)
            self._run_ffmpeg(media_url, output_path, start_seconds, end_seconds, reencode, timeout_seconds)

        if not output_path.exists() or output_path.stat().st_size == 0:
            raise ExternalToolFailure("relay download produced an empty file", tool="ffmpeg", returncode=0)
        return output_path

    def _request_json(self, body: dict[str, Any]) -> dict[str, Any]:
        req = request.Request(
            self.api_url,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers={"Accept": "application/json", "Content-Type": "application/json"},
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except HTTPError as exc:
            raise ExternalToolFailure(f"cobalt request failed with HTTP {exc.code}", tool="cobalt", returncode=exc.code) from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise ExternalToolFailure(f"cobalt request failed: {exc}", tool="cobalt") from exc
        except json.JSONDecodeError as exc:
            raise ExternalToolFailure("cobalt returned invalid JSON", tool="cobalt") from exc

        if not isinstance(payload, dict):
            raise ExternalToolFailure("cobalt returned an unexpected payload", tool="cobalt")
        return payload

    def _run_ffmpeg(
        self,
        media_url: str,
        output_path: Path,
        start_seconds: float,
        end_seconds: float,
        codec_args: list[str],
        timeout_seconds: float | None,
    ) -> None:
        command = [self.ffmpeg_binary, "-v", "error", "-y", "-ss", f"{start_seconds:.3f}"]
        if end_seconds > start_seconds:
            command += ["-t", f"{end_seconds - start_seconds:.3f}"]
        command += ["-i", media_url, *codec_args, "-movflags", "+faststart", str(output_path)]

        try:
            subprocess.run(command, check=True, capture_output=True, text=True, timeout=timeout_seconds)
        except FileNotFoundError as exc:
            raise ToolNotFound("ffmpeg executable was not found.", tool="ffmpeg") from exc
        except subprocess.TimeoutExpired as exc:
            raise AttemptTimedOut(f"ffmpeg relay download exceeded {timeout_seconds}s", tool="ffmpeg") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            raise ExternalToolFailure(
                f"ffmpeg relay download failed (exit {exc.returncode})",
                tool="ffmpeg",
                returncode=exc.returncode,
                stderr=stderr,
            ) from exc
