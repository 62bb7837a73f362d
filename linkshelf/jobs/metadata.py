from __future__ import annotations

from dataclasses import dataclass
import logging
from urllib.parse import urljoin

from bs4 import BeautifulSoup
import httpx

from linkshelf.core.config import DESKTOP_USER_AGENT

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml", "application/xml", "text/xml", "text/plain")
TITLE_KEYS = ("og:title",)
DESCRIPTION_KEYS = ("og:description", "description")
IMAGE_KEYS = ("og:image", "og:image:url", "twitter:image", "twitter:image:src")


class MetadataFetchError(Exception):
    """Raised by strict fetches when the page could not be retrieved."""

    def __init__(self, message: str, *, url: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class PageMetadata:
    title: str | None = None
    description: str | None = None
    image_url: str | None = None

    def is_empty(self) -> bool:
        return self.title is None and self.description is None and self.image_url is None


EMPTY_METADATA = PageMetadata()


def parse_page_metadata(html: str, *, base_url: str | None = None) -> PageMetadata:
    """Pull title, description and preview image out of an HTML document."""
    soup = BeautifulSoup(html, "html.parser")
    meta = _collect_meta(soup)

    title = _first(meta, TITLE_KEYS)
    if title is None and soup.title is not None:
        title = _as_text(soup.title.get_text(" ", strip=True))

    description = _first(meta, DESCRIPTION_KEYS)

    image_url = _first(meta, IMAGE_KEYS)
    if image_url is not None and base_url:
        image_url = urljoin(base_url, image_url)

    return PageMetadata(title=title, description=description, image_url=image_url)


class MetadataFetcher:
    def __init__(
        self,
        *,
        user_agent: str = DESKTOP_USER_AGENT,
        timeout_seconds: float = 10.0,
        max_body_bytes: int = 2_000_000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self.max_body_bytes = max(1, max_body_bytes)
        self._client = client

    async def fetch(self, url: str) -> PageMetadata:
        """Fetch metadata for ``url``; any failure yields empty metadata."""
        try:
            return await self.fetch_strict(url)
        except MetadataFetchError as exc:
            logger.info("metadata fetch failed url=%s error=%s", url, exc)
            return EMPTY_METADATA
        except Exception:
            logger.exception("unexpected metadata fetch error url=%s", url)
            return EMPTY_METADATA

    async def fetch_strict(self, url: str) -> PageMetadata:
        if self._client is not None:
            return await self._fetch_with(self._client, url)
        async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as temp_client:
            return await self._fetch_with(temp_client, url)

    async def _fetch_with(self, client: httpx.AsyncClient, url: str) -> PageMetadata:
        headers = {"User-Agent": self.user_agent, "Accept": "text/html,*/*;q=0.8"}
        try:
            async with client.stream("GET", url, headers=headers) as response:
                if not response.is_success:
                    raise MetadataFetchError(
                        f"unexpected status {response.status_code}",
                        url=url,
                        status_code=response.status_code,
                    )

                content_type = response.headers.get("content-type", "").split(";", maxsplit=1)[0].strip().lower()
                if content_type and content_type not in HTML_CONTENT_TYPES:
                    logger.debug("skipping non-html response url=%s content_type=%s", url, content_type)
                    return EMPTY_METADATA

                raw = await self._read_capped(response)
                final_url = str(response.url)
                encoding = response.encoding or "utf-8"
        except httpx.InvalidURL as exc:
            raise MetadataFetchError(f"invalid url: {exc}", url=url) from exc
        except httpx.HTTPError as exc:
            raise MetadataFetchError(f"{type(exc).__name__}: {exc}", url=url) from exc

        body = _decode(raw, encoding)
        if not body.strip():
            return EMPTY_METADATA
        return parse_page_metadata(body, base_url=final_url)

    async def _read_capped(self, response: httpx.Response) -> bytes:
        """Read at most ``max_body_bytes``; reading stops once the cap is reached."""
        buffer = bytearray()
        async for chunk in response.aiter_bytes():
            buffer.extend(chunk)
            if len(buffer) >= self.max_body_bytes:
                logger.debug("truncated response body url=%s limit=%s", response.url, self.max_body_bytes)
                break
        return bytes(buffer[: self.max_body_bytes])


def _collect_meta(soup: BeautifulSoup) -> dict[str, str]:
    values: dict[str, str] = {}
    for tag in soup.find_all("meta"):
        key = tag.get("property") or tag.get("name")
        if not isinstance(key, str):
            continue
        key = key.strip().lower()
        content = _as_text(tag.get("content"))
        if key and content is not None and key not in values:
            values[key] = content
    return values


def _first(meta: dict[str, str], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = meta.get(key)
        if value is not None:
            return value
    return None


def _as_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    collapsed = " ".join(value.split())
    return collapsed or None


def _decode(raw: bytes, encoding: str) -> str:
    try:
        return raw.decode(encoding, errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")
