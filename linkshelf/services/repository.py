from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import logging
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from linkshelf.core.config import Settings

logger = logging.getLogger(__name__)

TAG_SEPARATOR = ","


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the store is unreachable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested link does not exist."""


@dataclass(frozen=True, slots=True)
class LinkRecord:
    id: int
    url: str
    title: str | None = None
    description: str | None = None
    image_url: str | None = None
    domain: str | None = None
    is_favorite: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    folder_id: int | None = None
    tags: tuple[str, ...] = ()
    metadata_fetched_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "description": self.description,
            "image_url": self.image_url,
            "domain": self.domain,
            "is_favorite": self.is_favorite,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "folder_id": self.folder_id,
            "tags": list(self.tags),
            "metadata_fetched_at": self.metadata_fetched_at,
        }


@dataclass(frozen=True, slots=True)
class MetadataUpdate:
    """Fetched values to merge into a stored link.

    ``None`` keeps the stored value. ``domain`` only fills a blank stored
    domain. The merge happens at write time against the current record, so
    edits made while the page was being fetched survive.
    """

    title: str | None
    description: str | None
    image_url: str | None
    domain: str | None
    fetched_at: datetime

    def apply_to(self, link: LinkRecord) -> LinkRecord:
        return replace(
            link,
            title=self.title if self.title is not None else link.title,
            description=self.description if self.description is not None else link.description,
            image_url=self.image_url if self.image_url is not None else link.image_url,
            domain=link.domain or self.domain,
            metadata_fetched_at=self.fetched_at,
            updated_at=self.fetched_at,
        )


ChangeListener = Callable[[], None]


def normalize_tags(tags: Iterable[str] | None) -> tuple[str, ...]:
    if not tags:
        return ()
    seen: dict[str, None] = {}
    for tag in tags:
        if not isinstance(tag, str):
            continue
        stripped = tag.strip().replace(TAG_SEPARATOR, " ")
        if stripped and stripped not in seen:
            seen[stripped] = None
    return tuple(seen)


def encode_tags(tags: Iterable[str] | None) -> str | None:
    normalized = normalize_tags(tags)
    return TAG_SEPARATOR.join(normalized) if normalized else None


def decode_tags(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return normalize_tags(raw.split(TAG_SEPARATOR))


def matches_query(link: LinkRecord, query: str) -> bool:
    needle = query.casefold()
    return any(
        value is not None and needle in value.casefold()
        for value in (link.title, link.url, link.description)
    )


class LinkRepository(ABC):
    """Keyed store for link records with URL uniqueness.

    Every committed mutation notifies the registered change listeners so that
    subscribers (see ``LinkFeed``) can re-read the current state.
    """

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:  # pragma: no cover - listener bugs must not fail writes
                logger.exception("link change listener failed")

    async def close(self) -> None:
        return None

    @abstractmethod
    async def get(self, link_id: int) -> LinkRecord | None: ...

    @abstractmethod
    async def find_by_url(self, url: str) -> LinkRecord | None: ...

    @abstractmethod
    async def insert_if_absent(self, url: str, *, domain: str | None = None) -> tuple[int, bool]:
        """Insert a link for ``url`` unless one exists; return ``(id, created)``."""

    @abstractmethod
    async def update(self, link: LinkRecord) -> LinkRecord: ...

    @abstractmethod
    async def apply_metadata(self, link_id: int, update: MetadataUpdate) -> LinkRecord: ...

    @abstractmethod
    async def set_favorite(self, link_id: int, is_favorite: bool) -> LinkRecord: ...

    @abstractmethod
    async def edit(
        self,
        link_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> LinkRecord: ...

    @abstractmethod
    async def delete(self, link_id: int) -> bool: ...

    @abstractmethod
    async def list_links(
        self,
        *,
        favorites_only: bool = False,
        domain: str | None = None,
        query: str | None = None,
    ) -> list[LinkRecord]: ...

    @abstractmethod
    async def list_unenriched(self, limit: int) -> list[LinkRecord]: ...

    @abstractmethod
    async def count(self) -> int: ...


class InMemoryLinkRepository(LinkRepository):
    """Process-local store; mutations are serialized by one lock."""

    def __init__(self) -> None:
        super().__init__()
        self._links: dict[int, LinkRecord] = {}
        self._ids_by_url: dict[str, int] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def get(self, link_id: int) -> LinkRecord | None:
        return self._links.get(link_id)

    async def find_by_url(self, url: str) -> LinkRecord | None:
        link_id = self._ids_by_url.get(url)
        return self._links.get(link_id) if link_id is not None else None

    async def insert_if_absent(self, url: str, *, domain: str | None = None) -> tuple[int, bool]:
        async with self._lock:
            existing = self._ids_by_url.get(url)
            if existing is not None:
                return existing, False
            link_id = self._next_id
            self._next_id += 1
            now = _utcnow()
            self._links[link_id] = LinkRecord(id=link_id, url=url, domain=domain, created_at=now, updated_at=now)
            self._ids_by_url[url] = link_id
        self._notify()
        return link_id, True

    async def update(self, link: LinkRecord) -> LinkRecord:
        async with self._lock:
            current = self._require(link.id)
            if link.url != current.url:
                owner = self._ids_by_url.get(link.url)
                if owner is not None and owner != link.id:
                    raise RepositoryError(f"url already stored: {link.url}")
                del self._ids_by_url[current.url]
                self._ids_by_url[link.url] = link.id
            updated = replace(
                link,
                created_at=current.created_at,
                tags=normalize_tags(link.tags),
                updated_at=_utcnow(),
            )
            self._links[link.id] = updated
        self._notify()
        return updated

    async def apply_metadata(self, link_id: int, update: MetadataUpdate) -> LinkRecord:
        async with self._lock:
            updated = update.apply_to(self._require(link_id))
            self._links[link_id] = updated
        self._notify()
        return updated

    async def set_favorite(self, link_id: int, is_favorite: bool) -> LinkRecord:
        async with self._lock:
            current = self._require(link_id)
            updated = replace(current, is_favorite=is_favorite, updated_at=_utcnow())
            self._links[link_id] = updated
        self._notify()
        return updated

    async def edit(
        self,
        link_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> LinkRecord:
        async with self._lock:
            current = self._require(link_id)
            updated = replace(
                current,
                title=title if title is not None else current.title,
                description=description if description is not None else current.description,
                tags=normalize_tags(tags) if tags is not None else current.tags,
                updated_at=_utcnow(),
            )
            self._links[link_id] = updated
        self._notify()
        return updated

    async def delete(self, link_id: int) -> bool:
        async with self._lock:
            removed = self._links.pop(link_id, None)
            if removed is None:
                return False
            self._ids_by_url.pop(removed.url, None)
        self._notify()
        return True

    async def list_links(
        self,
        *,
        favorites_only: bool = False,
        domain: str | None = None,
        query: str | None = None,
    ) -> list[LinkRecord]:
        links = list(self._links.values())
        if favorites_only:
            links = [link for link in links if link.is_favorite]
        if domain is not None:
            links = [link for link in links if link.domain == domain]
        if query:
            links = [link for link in links if matches_query(link, query)]
        links.sort(key=lambda link: (link.created_at, link.id), reverse=True)
        return links

    async def list_unenriched(self, limit: int) -> list[LinkRecord]:
        pending = [link for link in self._links.values() if link.metadata_fetched_at is None]
        pending.sort(key=lambda link: link.id)
        return pending[:limit]

    async def count(self) -> int:
        return len(self._links)

    def _require(self, link_id: int) -> LinkRecord:
        link = self._links.get(link_id)
        if link is None:
            raise RepositoryNotFoundError(f"link {link_id} not found")
        return link


LINK_COLUMNS = """
  id,
  url,
  title,
  description,
  image_url,
  domain,
  is_favorite,
  created_at,
  updated_at,
  folder_id,
  tags,
  metadata_fetched_at
"""

SCHEMA_SQL = """
create table if not exists links (
  id bigserial primary key,
  url text not null,
  title text,
  description text,
  image_url text,
  domain text,
  is_favorite boolean not null default false,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now(),
  folder_id bigint,
  tags text,
  metadata_fetched_at timestamptz,
  constraint links_url_key unique (url)
);
create index if not exists links_domain_idx on links (domain);
create index if not exists links_created_at_idx on links (created_at desc);
"""


class PostgresLinkRepository(LinkRepository):
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        super().__init__()
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None
        self._schema_ready = False

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get(self, link_id: int) -> LinkRecord | None:
        pool = await self._get_pool()
        row = await self._fetchrow(pool, f"select {LINK_COLUMNS} from links where id = $1", link_id)
        return self._link_row_to_record(row) if row else None

    async def find_by_url(self, url: str) -> LinkRecord | None:
        pool = await self._get_pool()
        row = await self._fetchrow(pool, f"select {LINK_COLUMNS} from links where url = $1 limit 1", url)
        return self._link_row_to_record(row) if row else None

    async def insert_if_absent(self, url: str, *, domain: str | None = None) -> tuple[int, bool]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    inserted_id = await conn.fetchval(
                        """
                        insert into links (url, domain)
                        values ($1, $2)
                        on conflict (url) do nothing
                        returning id
                        """,
                        url,
                        domain,
                    )
                    if inserted_id is None:
                        existing_id = await conn.fetchval("select id from links where url = $1", url)
                        if existing_id is None:
                            raise RepositoryError(f"url vanished during insert: {url}")
                        return int(existing_id), False
        except (OSError, asyncpg.InterfaceError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        self._notify()
        return int(inserted_id), True

    async def update(self, link: LinkRecord) -> LinkRecord:
        pool = await self._get_pool()
        try:
            row = await self._fetchrow(
                pool,
                f"""
                update links
                set
                  url = $2,
                  title = $3,
                  description = $4,
                  image_url = $5,
                  domain = $6,
                  is_favorite = $7,
                  folder_id = $8,
                  tags = $9,
                  metadata_fetched_at = $10,
                  updated_at = now()
                where id = $1
                returning {LINK_COLUMNS}
                """,
                link.id,
                link.url,
                link.title,
                link.description,
                link.image_url,
                link.domain,
                link.is_favorite,
                link.folder_id,
                encode_tags(link.tags),
                link.metadata_fetched_at,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryError(f"url already stored: {link.url}") from exc
        return self._committed(row, link.id)

    async def apply_metadata(self, link_id: int, update: MetadataUpdate) -> LinkRecord:
        pool = await self._get_pool()
        row = await self._fetchrow(
            pool,
            f"""
            update links
            set
              title = coalesce($2, title),
              description = coalesce($3, description),
              image_url = coalesce($4, image_url),
              domain = coalesce(nullif(domain, ''), $5),
              metadata_fetched_at = $6,
              updated_at = $6
            where id = $1
            returning {LINK_COLUMNS}
            """,
            link_id,
            update.title,
            update.description,
            update.image_url,
            update.domain,
            update.fetched_at,
        )
        return self._committed(row, link_id)

    async def set_favorite(self, link_id: int, is_favorite: bool) -> LinkRecord:
        pool = await self._get_pool()
        row = await self._fetchrow(
            pool,
            f"""
            update links
            set is_favorite = $2, updated_at = now()
            where id = $1
            returning {LINK_COLUMNS}
            """,
            link_id,
            is_favorite,
        )
        return self._committed(row, link_id)

    async def edit(
        self,
        link_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> LinkRecord:
        pool = await self._get_pool()
        row = await self._fetchrow(
            pool,
            f"""
            update links
            set
              title = coalesce($2, title),
              description = coalesce($3, description),
              tags = case when $4::boolean then $5 else tags end,
              updated_at = now()
            where id = $1
            returning {LINK_COLUMNS}
            """,
            link_id,
            title,
            description,
            tags is not None,
            encode_tags(tags),
        )
        return self._committed(row, link_id)

    async def delete(self, link_id: int) -> bool:
        pool = await self._get_pool()
        try:
            deleted = await pool.fetchval("delete from links where id = $1 returning id", link_id)
        except (OSError, asyncpg.InterfaceError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        if deleted is None:
            return False
        self._notify()
        return True

    async def list_links(
        self,
        *,
        favorites_only: bool = False,
        domain: str | None = None,
        query: str | None = None,
    ) -> list[LinkRecord]:
        pool = await self._get_pool()
        clauses: list[str] = []
        values: list[Any] = []

        def bind(value: Any) -> str:
            values.append(value)
            return f"${len(values)}"

        if favorites_only:
            clauses.append("is_favorite")
        if domain is not None:
            clauses.append(f"domain = {bind(domain)}")
        if query:
            pattern = bind(f"%{_escape_like(query)}%")
            clauses.append(
                f"(title ilike {pattern} escape '\\' or url ilike {pattern} escape '\\' "
                f"or description ilike {pattern} escape '\\')"
            )

        where = f"where {' and '.join(clauses)}" if clauses else ""
        try:
            rows = await pool.fetch(
                f"select {LINK_COLUMNS} from links {where} order by created_at desc, id desc",
                *values,
            )
        except (OSError, asyncpg.InterfaceError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        return [self._link_row_to_record(row) for row in rows]

    async def list_unenriched(self, limit: int) -> list[LinkRecord]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {LINK_COLUMNS}
                from links
                where metadata_fetched_at is null
                order by id asc
                limit $1
                """,
                limit,
            )
        except (OSError, asyncpg.InterfaceError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        return [self._link_row_to_record(row) for row in rows]

    async def count(self) -> int:
        pool = await self._get_pool()
        try:
            return int(await pool.fetchval("select count(*) from links"))
        except (OSError, asyncpg.InterfaceError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def _fetchrow(self, pool: asyncpg.Pool, query: str, *args: Any) -> asyncpg.Record | None:
        try:
            return await pool.fetchrow(query, *args)
        except (OSError, asyncpg.InterfaceError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    def _committed(self, row: asyncpg.Record | None, link_id: int) -> LinkRecord:
        if row is None:
            raise RepositoryNotFoundError(f"link {link_id} not found")
        self._notify()
        return self._link_row_to_record(row)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("LINKSHELF_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

        if not self._schema_ready:
            async with pool.acquire() as conn:
                await conn.execute(SCHEMA_SQL)
            self._schema_ready = True
        self._pool = pool
        return pool

    @staticmethod
    def _link_row_to_record(row: asyncpg.Record) -> LinkRecord:
        return LinkRecord(
            id=int(row["id"]),
            url=row["url"],
            title=row["title"],
            description=row["description"],
            image_url=row["image_url"],
            domain=row["domain"],
            is_favorite=bool(row["is_favorite"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            folder_id=row["folder_id"],
            tags=decode_tags(row["tags"]),
            metadata_fetched_at=row["metadata_fetched_at"],
        )


def build_repository(settings: Settings) -> LinkRepository:
    if settings.database_url:
        return PostgresLinkRepository(
            database_url=settings.database_url,
            min_pool_size=settings.database_pool_min_size,
            max_pool_size=settings.database_pool_max_size,
        )
    logger.info("LINKSHELF_DATABASE_URL not set; using in-memory link store")
    return InMemoryLinkRepository()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
