from __future__ import annotations

import logging
import random
from pathlib import Path
from typing import Callable, Iterable, Sequence, TypeVar

from autoclip.config import RetrievalSettings
from autoclip.errors import (
    AllStrategiesExhausted,
    AttemptFailure,
    AttemptTimedOut,
    AuthRequired,
    ExternalToolFailure,
    ToolNotFound,
)
from autoclip.models import ClientIdentity, RetrievalStrategy

logger = logging.getLogger(__name__)

T = TypeVar("T")

StrategyTable = tuple[RetrievalStrategy, ...]


def normalize_proxy(entry: str) -> str | None:
    """Normalize ``ip:port``, ``ip:port:user:pass`` or a full URL to a proxy URL."""

    value = entry.strip()
    if not value:
        return None
    if "://" in value:
        return value

    parts = value.split(":")
    if len(parts) == 4:
        host, port, user, password = parts
        return f"http://{user}:{password}@{host}:{port}"
    if len(parts) == 2:
        return f"http://{parts[0]}:{parts[1]}"

    logger.warning("Ignoring malformed proxy entry %r", value)
    return None


def build_strategy_table(
    *,
    client_identities: Sequence[str | ClientIdentity],
    proxies: Iterable[str] = (),
    cookies_file: Path | None = None,
    include_relay: bool = False,
    shuffle_proxies: bool = False,
    rng: random.Random | None = None,
) -> StrategyTable:
    """Build the ordered retrieval strategy table.

    Order: every proxy (then no proxy) crossed with the identities; within one
    proxy the credentialed variants come first. The relay strategy, when
    enabled, is the last resort.
    """

    identities = [ClientIdentity(identity) for identity in client_identities]
    identities = [identity for identity in identities if identity is not ClientIdentity.COBALT]

    pool = [proxy for proxy in (normalize_proxy(entry) for entry in proxies) if proxy]
    if shuffle_proxies:
        (rng or random.Random()).shuffle(pool)

    routes: list[str | None] = [*pool, None]
    table: list[RetrievalStrategy] = []
    for route_index, proxy_url in enumerate(routes, start=1):
        route_label = f"proxy{route_index}" if proxy_url else "direct"
        if cookies_file is not None:
            table.extend(
                RetrievalStrategy(
                    label=f"{identity.value}+cookies@{route_label}",
                    client_identity=identity,
                    proxy_url=proxy_url,
                    uses_credentials=True,
                )
                for identity in identities
            )
        table.extend(
            RetrievalStrategy(
                label=f"{identity.value}@{route_label}",
                client_identity=identity,
                proxy_url=proxy_url,
                uses_credentials=False,
            )
            for identity in identities
        )

    if include_relay:
        table.append(RetrievalStrategy(label="cobalt-relay", client_identity=ClientIdentity.COBALT))

    return tuple(table)


def strategy_table_from_settings(settings: RetrievalSettings) -> StrategyTable:
    return build_strategy_table(
        client_identities=settings.client_identities,
        proxies=settings.proxies,
        cookies_file=settings.cookies_file,
        include_relay=bool(settings.cobalt_api_url),
        shuffle_proxies=settings.shuffle_proxies,
    )


def run_cascade(
    strategies: Sequence[RetrievalStrategy],
    attempt: Callable[[RetrievalStrategy], T],
    *,
    operation: str,
) -> T:
    """Try ``attempt`` with each strategy in order until one returns.

    Tool failures from a single attempt are soft and move on to the next
    strategy. A missing binary or any non-tool error propagates at once.
    """

    failures: list[AttemptFailure] = []
    total = len(strategies)
    for index, strategy in enumerate(strategies, start=1):
        logger.debug("%s: attempt %d/%d with %s", operation, index, total, strategy.label)
        try:
            result = attempt(strategy)
        except ToolNotFound:
            raise
        except ExternalToolFailure as exc:
            kind = _failure_kind(exc)
            failures.append(AttemptFailure(strategy_label=strategy.label, kind=kind, detail=str(exc)))
            log = logger.info if kind == "auth" else logger.warning
            log("%s: strategy %s failed (%s): %s", operation, strategy.label, kind, exc)
            continue

        if index > 1:
            logger.info("%s succeeded with strategy %s after %d failures", operation, strategy.label, index - 1)
        return result

    raise AllStrategiesExhausted(operation, failures)


def _failure_kind(exc: ExternalToolFailure) -> str:
    if isinstance(exc, AuthRequired):
        return "auth"
    if isinstance(exc, AttemptTimedOut):
        return "timeout"
    return "error"
