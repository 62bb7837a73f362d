"""URL extraction and domain derivation for captured text.

Shared text (articles, chat messages, share sheets) rarely contains clean URLs,
so extraction runs two passes: a permissive URL-shaped regex, and a plain
whitespace split that catches bare tokens the regex misses. Every candidate is
cleaned, given a scheme when it looks like a domain, and validated before it is
kept. Output is sorted so the result does not depend on scan order.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

# Permissive finder for URL-shaped substrings embedded in prose.
_URL_CANDIDATE_RE = re.compile(
    r"""\b(?:https?://|www\d{0,3}[.]|[a-z0-9.\-]+[.][a-z]{2,4}/)"""
    r"""(?:[^\s()<>]|\([^\s()<>]*\))*"""
    r"""(?:\([^\s()<>]*\)|[^\s`!()\[\]{};:'".,<>?«»“”‘’])""",
    re.IGNORECASE,
)

_WEB_URL_RE = re.compile(
    r"^https?://"
    r"(?:[^\s/?#@:]+(?::[^\s/?#@]*)?@)?"
    r"(?:"
    r"(?:[a-z0-9\u00a1-\uffff](?:[a-z0-9\u00a1-\uffff_-]{0,61}[a-z0-9\u00a1-\uffff])?\.)+[a-z\u00a1-\uffff]{2,63}"
    r"|(?:\d{1,3}\.){3}\d{1,3}"
    r")"
    r"\.?"
    r"(?::\d{1,5})?"
    r"(?:[/?#]\S*)?$",
    re.IGNORECASE,
)

TRAILING_PUNCTUATION = ".,!?;:)]}>\"'”’»"
LEADING_PUNCTUATION = "([{<\"'“‘«"
MIN_CANDIDATE_LENGTH = 4
DEFAULT_SCHEME = "https://"


class InvalidUrlError(ValueError):
    """Raised when a single typed URL cannot be turned into a web URL."""


def extract_urls(text: str | None) -> list[str]:
    if not text or not text.strip():
        return []

    urls: set[str] = set()
    for match in _URL_CANDIDATE_RE.finditer(text):
        cleaned = clean_candidate(match.group(0))
        if cleaned is not None:
            urls.add(cleaned)

    for token in text.split():
        cleaned = clean_candidate(token)
        if cleaned is not None:
            urls.add(cleaned)

    return sorted(urls)


def extract_first_url(text: str | None) -> str | None:
    urls = extract_urls(text)
    return urls[0] if urls else None


def clean_candidate(candidate: str) -> str | None:
    """Trim punctuation, add a scheme when missing and validate one candidate."""
    cleaned = candidate.strip()
    cleaned = cleaned.rstrip(TRAILING_PUNCTUATION)
    cleaned = cleaned.lstrip(LEADING_PUNCTUATION)
    if len(cleaned) < MIN_CANDIDATE_LENGTH:
        return None

    if not has_web_scheme(cleaned):
        if "." not in cleaned and not cleaned.lower().startswith("www."):
            return None
        cleaned = f"{DEFAULT_SCHEME}{cleaned}"

    return cleaned if is_web_url(cleaned) else None


def prepare_url(raw_url: str) -> str:
    cleaned = raw_url.strip()
    if not cleaned:
        raise InvalidUrlError("url is empty")
    if not has_web_scheme(cleaned):
        cleaned = f"{DEFAULT_SCHEME}{cleaned}"
    if not is_web_url(cleaned):
        raise InvalidUrlError(f"invalid url: {raw_url.strip()}")
    return cleaned


def has_web_scheme(value: str) -> bool:
    lowered = value.lower()
    return lowered.startswith("http://") or lowered.startswith("https://")


def is_web_url(value: str) -> bool:
    return has_web_scheme(value) and "." in value and _WEB_URL_RE.match(value) is not None


def resolve_domain(url: str | None) -> str | None:
    """Return the display domain of ``url`` (host without ``www.``), or None."""
    if not url or not url.strip():
        return None

    host: str | None
    try:
        host = urlsplit(url.strip()).hostname
    except ValueError:
        host = None

    if not host:
        host = _host_from_text(url)
    if not host:
        return None
    return _strip_www(host) or None


def _host_from_text(url: str) -> str | None:
    _, separator, remainder = url.strip().partition("://")
    if not separator:
        return None
    host = remainder.split("/", maxsplit=1)[0].strip()
    return host or None


def _strip_www(host: str) -> str:
    if host.lower().startswith("www."):
        return host[4:]
    return host
