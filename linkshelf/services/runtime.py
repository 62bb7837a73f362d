from __future__ import annotations

from dataclasses import dataclass
from functools import partial
import logging

from linkshelf.core.config import Settings
from linkshelf.jobs.connectivity import NetworkGate, ProbingNetworkGate, StaticNetworkGate
from linkshelf.jobs.enrichment import execute_enrich_link
from linkshelf.jobs.metadata import MetadataFetcher
from linkshelf.jobs.scheduler import EnrichmentScheduler
from linkshelf.services.feed import LinkFeed
from linkshelf.services.links import LinkService
from linkshelf.services.repository import LinkRepository, RepositoryUnavailableError, build_repository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    settings: Settings
    repository: LinkRepository
    fetcher: MetadataFetcher
    gate: NetworkGate
    scheduler: EnrichmentScheduler
    feed: LinkFeed
    service: LinkService

    async def start(self, *, recover: bool | None = None) -> None:
        if isinstance(self.gate, ProbingNetworkGate):
            self.gate.start()
        self.scheduler.start()

        should_recover = self.settings.enrich_missing_on_startup if recover is None else recover
        if should_recover:
            try:
                await self.service.recover_unenriched(self.settings.recovery_batch_size)
            except RepositoryUnavailableError as exc:
                logger.warning("skipping enrichment recovery: %s", exc)

    async def stop(self) -> None:
        await self.scheduler.stop()
        if isinstance(self.gate, ProbingNetworkGate):
            await self.gate.stop()
        self.feed.close()
        await self.repository.close()


def build_gate(settings: Settings) -> NetworkGate:
    if settings.connectivity_probe_url:
        return ProbingNetworkGate(
            settings.connectivity_probe_url,
            interval_seconds=settings.connectivity_probe_interval_seconds,
        )
    return StaticNetworkGate(online=True)


def build_runtime(
    settings: Settings,
    *,
    repository: LinkRepository | None = None,
    fetcher: MetadataFetcher | None = None,
    gate: NetworkGate | None = None,
) -> Runtime:
    repository = repository or build_repository(settings)
    fetcher = fetcher or MetadataFetcher(
        user_agent=settings.fetch_user_agent,
        timeout_seconds=settings.fetch_timeout_seconds,
        max_body_bytes=settings.fetch_max_body_bytes,
    )
    gate = gate or build_gate(settings)
    scheduler = EnrichmentScheduler(
        partial(execute_enrich_link, repository=repository, fetcher=fetcher),
        gate=gate,
        concurrency=settings.enrichment_concurrency,
        retry_base_seconds=settings.enrichment_retry_base_seconds,
        retry_max_seconds=settings.enrichment_retry_max_seconds,
        max_attempts=settings.enrichment_max_attempts,
    )
    feed = LinkFeed(repository)
    service = LinkService(repository, scheduler, feed)
    return Runtime(
        settings=settings,
        repository=repository,
        fetcher=fetcher,
        gate=gate,
        scheduler=scheduler,
        feed=feed,
        service=service,
    )
