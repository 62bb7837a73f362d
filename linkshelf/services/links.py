from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
import logging

from opentelemetry import trace

from linkshelf.core.urls import extract_urls, prepare_url, resolve_domain
from linkshelf.jobs.scheduler import EnrichmentJob, EnrichmentScheduler, JobState
from linkshelf.services.feed import LinkFeed, LinkView
from linkshelf.services.repository import LinkRecord, LinkRepository, RepositoryNotFoundError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

UNKNOWN_DOMAIN = "Unknown"


class SaveStatus(str, Enum):
    NEWLY_SAVED = "newly_saved"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True, slots=True)
class SaveResult:
    link_id: int
    url: str
    status: SaveStatus


@dataclass(frozen=True, slots=True)
class IngestResult:
    results: tuple[SaveResult, ...] = ()

    @property
    def link_ids(self) -> list[int]:
        return [result.link_id for result in self.results]

    @property
    def newly_saved(self) -> int:
        return sum(1 for result in self.results if result.status is SaveStatus.NEWLY_SAVED)

    @property
    def already_existing(self) -> int:
        return sum(1 for result in self.results if result.status is SaveStatus.ALREADY_EXISTS)

    @property
    def message(self) -> str:
        total = len(self.results)
        if total == 0:
            return "No valid links found"
        if total == 1:
            return "Link Saved" if self.newly_saved == 1 else "Link Already Available"
        if self.already_existing == total:
            return "All Links Already Available"
        if self.newly_saved == total:
            return f"{self.newly_saved} Links Saved"
        return f"{self.newly_saved} Links Saved ({self.already_existing} already available)"


@dataclass(frozen=True, slots=True)
class DomainFolder:
    domain: str
    link_count: int


def group_by_domain(links: Iterable[LinkRecord]) -> list[DomainFolder]:
    counts = Counter(link.domain or UNKNOWN_DOMAIN for link in links)
    folders = [DomainFolder(domain=domain, link_count=count) for domain, count in counts.items()]
    folders.sort(key=lambda folder: (-folder.link_count, folder.domain))
    return folders


class LinkService:
    """Entry point for capture, user edits and enrichment requests."""

    def __init__(self, repository: LinkRepository, scheduler: EnrichmentScheduler, feed: LinkFeed) -> None:
        self.repository = repository
        self.scheduler = scheduler
        self.feed = feed

    async def ingest(self, raw_text: str) -> IngestResult:
        with tracer.start_as_current_span("links.ingest") as span:
            urls = extract_urls(raw_text)
            span.set_attribute("links.extracted", len(urls))
            results = [await self._save(url) for url in urls]
            result = IngestResult(results=tuple(results))
            logger.info(
                "ingested text urls=%s newly_saved=%s already_existing=%s",
                len(urls),
                result.newly_saved,
                result.already_existing,
            )
            return result

    async def save_url(self, raw_url: str) -> SaveResult:
        return await self._save(prepare_url(raw_url))

    async def get_link(self, link_id: int) -> LinkRecord:
        link = await self.repository.get(link_id)
        if link is None:
            raise RepositoryNotFoundError(f"link {link_id} not found")
        return link

    async def list_links(self, view: LinkView | None = None) -> list[LinkRecord]:
        return await self.feed.snapshot(view or LinkView())

    async def list_folders(self) -> list[DomainFolder]:
        return group_by_domain(await self.repository.list_links())

    async def refresh_metadata(self, link_id: int) -> EnrichmentJob:
        await self.get_link(link_id)
        return self.scheduler.enqueue(link_id, reason="refresh")

    async def toggle_favorite(self, link_id: int, current_value: bool) -> LinkRecord:
        return await self.repository.set_favorite(link_id, not current_value)

    async def edit_link(
        self,
        link_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> LinkRecord:
        return await self.repository.edit(link_id, title=title, description=description, tags=tags)

    async def delete(self, link_id: int) -> bool:
        self.scheduler.cancel(link_id)
        deleted = await self.repository.delete(link_id)
        if not deleted:
            raise RepositoryNotFoundError(f"link {link_id} not found")
        return deleted

    def enrichment_status(self, link_id: int) -> EnrichmentJob | None:
        return self.scheduler.get_job(link_id)

    async def recover_unenriched(self, limit: int) -> int:
        enqueued = 0
        for link in await self.repository.list_unenriched(limit):
            job = self.scheduler.get_job(link.id)
            # failed jobs are left alone until the next process restart
            if job is not None and (not job.is_terminal or job.state is JobState.FAILED):
                continue
            self.scheduler.enqueue(link.id, reason="recovery")
            enqueued += 1
        if enqueued:
            logger.info("re-enqueued unenriched links: %s", enqueued)
        return enqueued

    async def _save(self, url: str) -> SaveResult:
        link_id, created = await self.repository.insert_if_absent(url, domain=resolve_domain(url))
        if not created:
            return SaveResult(link_id=link_id, url=url, status=SaveStatus.ALREADY_EXISTS)
        self.scheduler.enqueue(link_id, reason="ingest")
        return SaveResult(link_id=link_id, url=url, status=SaveStatus.NEWLY_SAVED)
