from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass

from linkshelf.services.repository import LinkRecord, LinkRepository


@dataclass(frozen=True, slots=True)
class LinkView:
    favorites_only: bool = False
    domain: str | None = None
    query: str | None = None

    @classmethod
    def everything(cls) -> "LinkView":
        return cls()

    @classmethod
    def favorites(cls) -> "LinkView":
        return cls(favorites_only=True)

    @classmethod
    def by_domain(cls, domain: str) -> "LinkView":
        return cls(domain=domain)

    @classmethod
    def search(cls, query: str) -> "LinkView":
        return cls(query=query.strip() or None)


class LinkFeed:
    """Live view of the link collection.

    ``subscribe`` yields the current list for a view right away and again
    after every committed store mutation. Bursts of changes are coalesced, so
    a slow consumer always receives the latest state rather than every step.
    """

    def __init__(self, repository: LinkRepository) -> None:
        self._repository = repository
        self._subscribers: set[asyncio.Event] = set()
        repository.add_listener(self._on_change)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def close(self) -> None:
        self._repository.remove_listener(self._on_change)

    async def snapshot(self, view: LinkView) -> list[LinkRecord]:
        return await self._repository.list_links(
            favorites_only=view.favorites_only,
            domain=view.domain,
            query=view.query,
        )

    async def subscribe(self, view: LinkView) -> AsyncIterator[list[LinkRecord]]:
        changed = asyncio.Event()
        self._subscribers.add(changed)
        try:
            while True:
                changed.clear()
                yield await self.snapshot(view)
                await changed.wait()
        finally:
            self._subscribers.discard(changed)

    def _on_change(self) -> None:
        for changed in self._subscribers:
            changed.set()
