from __future__ import annotations

import json
import subprocess
from pathlib import Path
from urllib.error import HTTPError

import pytest

from autoclip.errors import ExternalToolFailure, ToolNotFound
from autoclip.retrieval import cobalt
from autoclip.retrieval.cobalt import CobaltClient


class _FakeResponse:
    def __init__(self, payload: object) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def read(self) -> bytes:
        return self._body


def test_resolve_media_url_posts_request(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def _urlopen(req, timeout):
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["method"] = req.get_method()
        return _FakeResponse({"status": "tunnel", "url": "https://media.example/stream.mp4"})

    monkeypatch.setattr(cobalt.request, "urlopen", _urlopen)

    media_url = CobaltClient("https://relay.example/api", quality="720").resolve_media_url("https://youtu.be/abc123XYZ")

    assert media_url == "https://media.example/stream.mp4"
    assert captured["method"] == "POST"
    assert captured["body"] == {"url": "https://youtu.be/abc123XYZ", "videoQuality": "720", "downloadMode": "auto"}


def test_resolve_media_url_reports_relay_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        cobalt.request,
        "urlopen",
        lambda *_args, **_kwargs: _FakeResponse({"status": "error", "error": {"code": "error.api.youtube.login"}}),
    )

    with pytest.raises(ExternalToolFailure, match="cobalt error: error.api.youtube.login"):
        CobaltClient("https://relay.example/api").resolve_media_url("https://youtu.be/abc123XYZ")


def test_resolve_media_url_wraps_http_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def _raise_http(req, timeout):
        raise HTTPError(req.full_url, 502, "Bad Gateway", hdrs=None, fp=None)

    monkeypatch.setattr(cobalt.request, "urlopen", _raise_http)

    with pytest.raises(ExternalToolFailure, match="HTTP 502"):
        CobaltClient("https://relay.example/api").resolve_media_url("https://youtu.be/abc123XYZ")


def test_download_section_retries_with_reencode(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = CobaltClient("https://relay.example/api")
    monkeypatch.setattr(client, "resolve_media_url", lambda _url: "https://media.example/stream.mp4")
    output_path = tmp_path / "raw.mp4"
    commands: list[list[str]] = []

    def _run(command, **kwargs):
        commands.append(command)
        if "copy" in command:
            raise subprocess.CalledProcessError(returncode=1, cmd=command, output="", stderr="codec not supported")
        output_path.write_bytes(b"video")
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    monkeypatch.setattr(subprocess, "run", _run)

    result = client.download_section(
        "https://youtu.be/abc123XYZ",
        output_path=output_path,
        start_seconds=115,
        end_seconds=150,
    )

    assert result == output_path
    assert len(commands) == 2
    assert commands[0][commands[0].index("-ss") + 1] == "115.000"
    assert commands[0][commands[0].index("-t") + 1] == "35.000"
    assert "libx264" in commands[1]


def test_download_section_does_not_retry_missing_ffmpeg(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = CobaltClient("https://relay.example/api")
    monkeypatch.setattr(client, "resolve_media_url", lambda _url: "https://media.example/stream.mp4")
    calls: list[int] = []

    def _raise_missing(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        calls.append(1)
        raise FileNotFoundError("ffmpeg")

    monkeypatch.setattr(subprocess, "run", _raise_missing)

    with pytest.raises(ToolNotFound):
        client.download_section("https://youtu.be/abc123XYZ", output_path=tmp_path / "raw.mp4", start_seconds=0, end_seconds=30)

    assert calls == [1]
