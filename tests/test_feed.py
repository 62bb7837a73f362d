from __future__ import annotations

import asyncio

from linkshelf.services.feed import LinkFeed, LinkView
from linkshelf.services.repository import InMemoryLinkRepository


def test_subscribe_emits_snapshot_then_updates() -> None:
    async def run() -> list[list[str]]:
        repository = InMemoryLinkRepository()
        await repository.insert_if_absent("https://first.example.com")
        feed = LinkFeed(repository)
        stream = feed.subscribe(LinkView.everything())

        seen = [[link.url for link in await anext(stream)]]
        next_snapshot = asyncio.ensure_future(anext(stream))
        await asyncio.sleep(0)
        await repository.insert_if_absent("https://second.example.com")
        seen.append([link.url for link in await asyncio.wait_for(next_snapshot, timeout=1.0)])

        await stream.aclose()
        assert feed.subscriber_count == 0
        return seen

    seen = asyncio.run(run())

    assert seen[0] == ["https://first.example.com"]
    assert sorted(seen[1]) == ["https://first.example.com", "https://second.example.com"]


def test_subscribe_applies_view_filters() -> None:
    async def run() -> list[int]:
        repository = InMemoryLinkRepository()
        first, _ = await repository.insert_if_absent("https://a.example.com")
        await repository.insert_if_absent("https://b.example.com")
        feed = LinkFeed(repository)
        stream = feed.subscribe(LinkView.favorites())

        assert await anext(stream) == []
        pending = asyncio.ensure_future(anext(stream))
        await asyncio.sleep(0)
        await repository.set_favorite(first, True)
        favorites = await asyncio.wait_for(pending, timeout=1.0)
        await stream.aclose()
        return [link.id for link in favorites]

    assert asyncio.run(run()) == [1]


def test_bursts_of_changes_are_coalesced() -> None:
    async def run() -> int:
        repository = InMemoryLinkRepository()
        feed = LinkFeed(repository)
        stream = feed.subscribe(LinkView())
        await anext(stream)

        for index in range(5):
            await repository.insert_if_absent(f"https://example.com/{index}")

        latest = await asyncio.wait_for(anext(stream), timeout=1.0)
        await stream.aclose()
        return len(latest)

    assert asyncio.run(run()) == 5


def test_close_detaches_from_repository() -> None:
    repository = InMemoryLinkRepository()
    feed = LinkFeed(repository)

    feed.close()

    assert repository._listeners == []


def test_search_view_ignores_blank_query() -> None:
    assert LinkView.search("   ").query is None
    assert LinkView.search(" rust ").query == "rust"
