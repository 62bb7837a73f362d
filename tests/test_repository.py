from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from linkshelf.core.config import Settings
from linkshelf.services.repository import (
    InMemoryLinkRepository,
    LinkRecord,
    MetadataUpdate,
    PostgresLinkRepository,
    RepositoryError,
    RepositoryNotFoundError,
    build_repository,
    decode_tags,
    encode_tags,
    normalize_tags,
)


def test_insert_if_absent_is_idempotent() -> None:
    async def run() -> None:
        repository = InMemoryLinkRepository()
        first_id, first_created = await repository.insert_if_absent("https://example.com", domain="example.com")
        second_id, second_created = await repository.insert_if_absent("https://example.com", domain="example.com")

        assert first_created is True
        assert second_created is False
        assert first_id == second_id
        assert await repository.count() == 1
        found = await repository.find_by_url("https://example.com")
        assert found is not None and found.domain == "example.com"

    asyncio.run(run())


def test_apply_metadata_only_touches_metadata_fields() -> None:
    async def run() -> None:
        repository = InMemoryLinkRepository()
        link_id, _ = await repository.insert_if_absent("https://example.com/a", domain=None)
        await repository.set_favorite(link_id, True)
        await repository.edit(link_id, tags=["read-later"])

        fetched_at = datetime(2024, 5, 1, tzinfo=timezone.utc)
        updated = await repository.apply_metadata(
            link_id,
            MetadataUpdate(
                title="A",
                description="about a",
                image_url=None,
                domain="example.com",
                fetched_at=fetched_at,
            ),
        )

        assert updated.is_favorite is True
        assert updated.tags == ("read-later",)
        assert updated.title == "A"
        assert updated.domain == "example.com"
        assert updated.metadata_fetched_at == fetched_at
        assert await repository.list_unenriched(10) == []

    asyncio.run(run())


def test_mutations_on_missing_link_raise_not_found() -> None:
    async def run() -> None:
        repository = InMemoryLinkRepository()
        with pytest.raises(RepositoryNotFoundError):
            await repository.set_favorite(404, True)
        with pytest.raises(RepositoryNotFoundError):
            await repository.edit(404, title="nope")
        assert await repository.delete(404) is False

    asyncio.run(run())


def test_delete_frees_the_url_for_reinsert() -> None:
    async def run() -> None:
        repository = InMemoryLinkRepository()
        link_id, _ = await repository.insert_if_absent("https://example.com")
        assert await repository.delete(link_id) is True
        assert await repository.get(link_id) is None

        new_id, created = await repository.insert_if_absent("https://example.com")
        assert created is True
        assert new_id != link_id

    asyncio.run(run())


def test_list_links_filters_and_orders_newest_first() -> None:
    async def run() -> None:
        repository = InMemoryLinkRepository()
        first, _ = await repository.insert_if_absent("https://a.example.com/rust", domain="a.example.com")
        second, _ = await repository.insert_if_absent("https://b.example.com/python", domain="b.example.com")
        third, _ = await repository.insert_if_absent("https://a.example.com/go", domain="a.example.com")
        await repository.set_favorite(second, True)
        await repository.edit(first, description="Notes about Rust")

        assert [link.id for link in await repository.list_links()] == [third, second, first]
        assert [link.id for link in await repository.list_links(favorites_only=True)] == [second]
        assert [link.id for link in await repository.list_links(domain="a.example.com")] == [third, first]
        assert [link.id for link in await repository.list_links(query="RUST")] == [first]

    asyncio.run(run())


def test_listeners_fire_on_committed_mutations() -> None:
    calls: list[str] = []

    async def run() -> None:
        repository = InMemoryLinkRepository()
        repository.add_listener(lambda: calls.append("change"))
        link_id, _ = await repository.insert_if_absent("https://example.com")
        await repository.insert_if_absent("https://example.com")
        await repository.set_favorite(link_id, True)
        await repository.delete(link_id)

    asyncio.run(run())

    assert calls == ["change", "change", "change"]


def test_tag_helpers_round_trip_through_comma_encoding() -> None:
    assert normalize_tags([" news ", "news", "", "a,b"]) == ("news", "a b")
    assert encode_tags(["news", "tech"]) == "news,tech"
    assert encode_tags([]) is None
    assert decode_tags("news, tech,,news") == ("news", "tech")
    assert decode_tags(None) == ()


def test_build_repository_picks_backend_from_settings() -> None:
    assert isinstance(build_repository(Settings(database_url=None)), InMemoryLinkRepository)
    assert isinstance(
        build_repository(Settings(database_url="postgresql://localhost/linkshelf")),
        PostgresLinkRepository,
    )


def test_update_rekeys_url_and_preserves_created_at() -> None:
    async def run() -> None:
        repository = InMemoryLinkRepository()
        link_id, _ = await repository.insert_if_absent("https://example.com/old", domain="example.com")
        original = await repository.get(link_id)
        assert original is not None

        updated = await repository.update(
            replace(
                original,
                url="https://example.com/new",
                title="Moved",
                tags=("a", "a", "b"),
                created_at=datetime(2000, 1, 1, tzinfo=timezone.utc),
            )
        )

        assert updated.created_at == original.created_at
        assert updated.updated_at >= original.updated_at
        assert updated.tags == ("a", "b")
        assert await repository.find_by_url("https://example.com/old") is None
        moved = await repository.find_by_url("https://example.com/new")
        assert moved is not None and moved.title == "Moved"

        reused_id, created = await repository.insert_if_absent("https://example.com/old")
        assert created is True
        assert reused_id != link_id

    asyncio.run(run())


def test_update_rejects_url_owned_by_another_link() -> None:
    async def run() -> None:
        repository = InMemoryLinkRepository()
        first_id, _ = await repository.insert_if_absent("https://example.com/a")
        await repository.insert_if_absent("https://example.com/b")
        first = await repository.get(first_id)
        assert first is not None

        with pytest.raises(RepositoryError):
            await repository.update(replace(first, url="https://example.com/b"))

        unchanged = await repository.find_by_url("https://example.com/a")
        assert unchanged is not None and unchanged.id == first_id

    asyncio.run(run())


def test_update_missing_link_raises_not_found() -> None:
    async def run() -> None:
        repository = InMemoryLinkRepository()
        with pytest.raises(RepositoryNotFoundError):
            await repository.update(LinkRecord(id=99, url="https://example.com"))

    asyncio.run(run())
