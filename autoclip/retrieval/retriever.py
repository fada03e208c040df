from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from autoclip.config import RetrievalSettings
from autoclip.errors import ExternalToolFailure
from autoclip.models import ClientIdentity, RetrievalStrategy, VideoMetadata
from autoclip.retrieval import ytdlp
from autoclip.retrieval.cobalt import CobaltClient
from autoclip.retrieval.strategies import StrategyTable, run_cascade, strategy_table_from_settings

logger = logging.getLogger(__name__)


class Retriever:
    """Fetches metadata and time ranges through the prioritized strategy table.

    The table is built once and never mutated, so one instance can serve
    concurrent requests.
    """

    def __init__(
        self,
        settings: RetrievalSettings,
        *,
        strategies: Sequence[RetrievalStrategy] | None = None,
        cobalt: CobaltClient | None = None,
    ) -> None:
        self.settings = settings
        self.strategies: StrategyTable = tuple(strategies) if strategies is not None else strategy_table_from_settings(settings)
        if cobalt is None and settings.cobalt_api_url:
            cobalt = CobaltClient(settings.cobalt_api_url, quality=settings.cobalt_quality)
        self.cobalt = cobalt

    def fetch_metadata(self, url: str) -> VideoMetadata:
        extractor_strategies = [
            strategy for strategy in self.strategies if strategy.client_identity is not ClientIdentity.COBALT
        ]
        return run_cascade(
            extractor_strategies,
            lambda strategy: ytdlp.fetch_metadata(
                url,
                strategy,
                binary=self.settings.ytdlp_binary,
                cookies_file=self.settings.cookies_file,
                timeout_seconds=self.settings.attempt_timeout_seconds,
            ),
            operation="metadata fetch",
        )

    def retrieve(
        self,
        url: str,
        start_seconds: float,
        end_seconds: float,
        output_path: Path,
        strategies: Sequence[RetrievalStrategy] | None = None,
    ) -> Path:
        """Download ``[start_seconds, end_seconds]`` of ``url`` to ``output_path``."""

        output_path.parent.mkdir(parents=True, exist_ok=True)
        table = self.strategies if strategies is None else tuple(strategies)
        logger.info("Downloading segment %.0f-%.0fs (%d strategies)", start_seconds, end_seconds, len(table))

        def _attempt(strategy: RetrievalStrategy) -> Path:
            if strategy.client_identity is ClientIdentity.COBALT:
                return self._relay_attempt(url, start_seconds, end_seconds, output_path)
            return ytdlp.download_section(
                url,
                strategy,
                output_path=output_path,
                start_seconds=start_seconds,
                end_seconds=end_seconds,
                binary=self.settings.ytdlp_binary,
                cookies_file=self.settings.cookies_file,
                format_selector=self.settings.format_selector,
                format_sort=self.settings.format_sort,
                timeout_seconds=self.settings.attempt_timeout_seconds,
            )

        path = run_cascade(table, _attempt, operation="segment download")
        logger.info("Download completed: %s", path)
        return path

    def _relay_attempt(self, url: str, start_seconds: float, end_seconds: float, output_path: Path) -> Path:
        if self.cobalt is None:
            raise ExternalToolFailure("relay strategy selected but no relay is configured", tool="cobalt")
        ytdlp.purge_partial_outputs(output_path)
        return self.cobalt.download_section(
            url,
            output_path=output_path,
            start_seconds=start_seconds,
            end_seconds=end_seconds,
            timeout_seconds=self.settings.attempt_timeout_seconds,
        )
