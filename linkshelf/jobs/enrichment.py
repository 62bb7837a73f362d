from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from linkshelf.core.urls import resolve_domain
from linkshelf.jobs.metadata import MetadataFetcher, PageMetadata
from linkshelf.jobs.scheduler import NonRetryableJobError
from linkshelf.services.repository import LinkRecord, LinkRepository, MetadataUpdate, RepositoryNotFoundError

logger = logging.getLogger(__name__)


class LinkGoneError(NonRetryableJobError):
    """The link was deleted before its enrichment could be written."""


def build_metadata_update(link: LinkRecord, metadata: PageMetadata, *, fetched_at: datetime) -> MetadataUpdate:
    """Only non-blank fetched values are carried; the store keeps the rest."""
    return MetadataUpdate(
        title=_as_text(metadata.title),
        description=_as_text(metadata.description),
        image_url=_as_text(metadata.image_url),
        domain=resolve_domain(link.url),
        fetched_at=fetched_at,
    )


async def execute_enrich_link(
    link_id: int,
    *,
    repository: LinkRepository,
    fetcher: MetadataFetcher,
    now: datetime | None = None,
) -> dict[str, Any]:
    link = await repository.get(link_id)
    if link is None:
        raise LinkGoneError(f"link {link_id} no longer exists")

    metadata = await fetcher.fetch_strict(link.url)
    update = build_metadata_update(link, metadata, fetched_at=now or datetime.now(timezone.utc))

    try:
        stored = await repository.apply_metadata(link_id, update)
    except RepositoryNotFoundError as exc:
        raise LinkGoneError(str(exc)) from exc

    if metadata.is_empty():
        logger.info("no page metadata found link_id=%s url=%s", link_id, link.url)

    return {
        "handled": True,
        "link_id": link_id,
        "url": stored.url,
        "domain": stored.domain,
        "found_title": update.title is not None,
        "found_description": update.description is not None,
        "found_image": update.image_url is not None,
    }


def _as_text(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None
