from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict
from pathlib import Path
from typing import Any

import typer

from autoclip.config import Settings, load_settings
from autoclip.errors import ClipperError, PipelineFailed
from autoclip.logging_config import configure_logging
from autoclip.models import ClipPlan, ClipResult
from autoclip.pipeline import ClipPipeline, ProgressSink
from autoclip.render.caption import format_clip_message
from autoclip.retrieval.retriever import Retriever
from autoclip.retrieval.strategies import strategy_table_from_settings
from autoclip.signals.gemini import GeminiAnalyzer
from autoclip.signals.heatmap import fetch_engagement_markers

app = typer.Typer(help="Turn long videos into short vertical highlight clips.")
config_app = typer.Typer(help="Configuration commands.")

app.add_typer(config_app, name="config")

logger = logging.getLogger(__name__)

CONFIG_OPTION_HELP = "Path to YAML configuration file."


def _bootstrap(config_path: Path | None) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging)
    logger.debug("Loaded runtime settings from %s", config_path or "defaults")
    return settings


def _build_pipeline(settings: Settings) -> ClipPipeline:
    analyzer = None
    if settings.ai.api_key:
        analyzer = GeminiAnalyzer(
            settings.ai.api_key,
            model=settings.ai.model,
            max_retries=settings.ai.max_retries,
            rate_limit_wait_seconds=settings.ai.rate_limit_wait_seconds,
        )
    else:
        logger.warning("No Gemini API key configured; AI analysis and captions are disabled.")

    return ClipPipeline(settings, retriever=Retriever(settings.retrieval), analyzer=analyzer)


def _progress_printer(label: str) -> ProgressSink:
    def _echo(message: str) -> None:
        typer.echo(f"[{label}] {message}", err=True)

    return _echo


def _plan_payload(plan: ClipPlan) -> dict[str, Any]:
    return {
        "start_seconds": round(plan.start_seconds, 3),
        "end_seconds": round(plan.end_seconds, 3),
        "duration_seconds": round(plan.duration_seconds, 3),
        "origin": plan.origin.value,
        "score": plan.score,
        "reason": plan.reason_text,
    }


def _result_payload(result: ClipResult, max_message_chars: int) -> dict[str, Any]:
    return {
        "status": "ok",
        "request_id": result.request_id,
        "video_path": str(result.video_path),
        "title": result.title,
        "channel": result.channel,
        "duration": result.duration,
        "platform": result.platform,
        "original_url": result.original_url,
        "plan": _plan_payload(result.plan),
        "message": format_clip_message(result, max_message_chars),
    }


@config_app.command("show")
def show_config(
    config_path: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        envvar="AUTOCLIP_CONFIG",
        help=CONFIG_OPTION_HELP,
    )
) -> None:
    """Print resolved runtime configuration."""

    settings = _bootstrap(config_path)
    payload = settings.model_dump(mode="json")
    if payload["ai"].get("api_key"):
        payload["ai"]["api_key"] = "***"
    typer.echo(json.dumps(payload, indent=2))


@app.command("strategies")
def show_strategies(
    config_path: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        envvar="AUTOCLIP_CONFIG",
        help=CONFIG_OPTION_HELP,
    )
) -> None:
    """Print the retrieval strategy table in the order it is tried."""

    settings = _bootstrap(config_path)
    table = strategy_table_from_settings(settings.retrieval)
    rows = []
    for index, strategy in enumerate(table, start=1):
        row = asdict(strategy)
        row["client_identity"] = strategy.client_identity.value
        row["priority"] = index
        rows.append(row)
    typer.echo(json.dumps(rows, indent=2))


@app.command("heatmap")
def heatmap(
    video_id: str,
    config_path: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        envvar="AUTOCLIP_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Fetch and print the engagement markers of a video."""

    settings = _bootstrap(config_path)
    try:
        markers = fetch_engagement_markers(
            video_id,
            min_intensity=settings.heatmap.min_intensity,
            keep_top_n=settings.heatmap.keep_top_n,
            timeout_seconds=settings.heatmap.timeout_seconds,
            user_agent=settings.heatmap.user_agent,
            accept_language=settings.heatmap.accept_language,
        )
    except ClipperError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(
        json.dumps(
            {
                "video_id": video_id,
                "available": markers is not None,
                "markers": [asdict(marker) for marker in markers or []],
            },
            indent=2,
        )
    )


@app.command()
def plan(
    url: str,
    config_path: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        envvar="AUTOCLIP_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Resolve which part of a video would be clipped, without downloading it."""

    settings = _bootstrap(config_path)
    pipeline = _build_pipeline(settings)
    try:
        metadata, clip_plan = pipeline.plan(url)
    except PipelineFailed as exc:
        typer.echo(f"Error: {exc.user_message}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(
        json.dumps(
            {
                "video": asdict(metadata),
                "plan": _plan_payload(clip_plan),
            },
            indent=2,
        )
    )


@app.command("run")
def run_clip(
    url: str,
    config_path: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        envvar="AUTOCLIP_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
    keep: bool = typer.Option(True, "--keep/--discard", help="Keep the finished clip on disk after printing the result."),
) -> None:
    """Create one vertical highlight clip from a video link."""

    settings = _bootstrap(config_path)
    pipeline = _build_pipeline(settings)

    try:
        result = pipeline.run(url, notify=_progress_printer("autoclip"))
    except PipelineFailed as exc:
        typer.echo(f"Error: {exc.user_message}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(json.dumps(_result_payload(result, settings.caption.max_message_chars), indent=2))
    if not keep:
        pipeline.discard(result)


@app.command("batch")
def run_batch(
    urls: list[str] = typer.Argument(..., help="Video links to clip."),
    config_path: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        envvar="AUTOCLIP_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
    jobs: int = typer.Option(2, min=1, help="Number of requests processed at the same time."),
) -> None:
    """Clip several videos; each link is an independent request."""

    settings = _bootstrap(config_path)
    pipeline = _build_pipeline(settings)

    def _process(indexed_url: tuple[int, str]) -> dict[str, Any]:
        index, url = indexed_url
        try:
            result = pipeline.run(url, notify=_progress_printer(f"{index}/{len(urls)}"))
        except PipelineFailed as exc:
            return {"status": "error", "url": url, "stage": exc.stage, "error": exc.user_message}
        return _result_payload(result, settings.caption.max_message_chars)

    with ThreadPoolExecutor(max_workers=jobs) as executor:
        results = list(executor.map(_process, enumerate(urls, start=1)))

    typer.echo(json.dumps(results, indent=2))
    if any(item["status"] != "ok" for item in results):
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
