"""
URL utilities for the crawl engine.

Provides URL normalization for duplicate detection and domain/slug
extraction.
"""

from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse

from ..config.settings import DEFAULT_TRACKING_PARAMS


def _split(url: str):
    url = url.strip()
    if "://" not in url:
        # Scheme-less input such as "example.com/comic/x"
        url = f"http://{url}"
    try:
        return urlparse(url)
    except ValueError as e:
        raise ValueError(f"Invalid URL format: {e}")


def extract_domain(url: str) -> str:
    """Lower-cased host without a leading "www." or default port"""
    parsed = _split(url)
    host = (parsed.hostname or "").lower()
    if not host:
        raise ValueError(f"URL must include domain: {url}")
    if host.startswith("www."):
        host = host[4:]
    return host


def normalize_url(url: str, tracking_params: Optional[Iterable[str]] = None) -> str:
    """
    Normalize URL for duplicate comparison.

    This function:
    - Drops the scheme and a leading "www."
    - Lower-cases the host and removes default ports
    - Removes the fragment and a trailing slash
    - Drops tracking query parameters and sorts the rest

    Args:
        url: Raw URL string
        tracking_params: Query parameter names to drop (defaults to common trackers)

    Returns:
        Normalized "host/path?query" string

    Raises:
        ValueError: If URL is malformed
    """
    parsed = _split(url)
    host = extract_domain(url)
    if parsed.port and parsed.port not in (80, 443):
        host = f"{host}:{parsed.port}"

    path = parsed.path or ""
    if path.endswith("/"):
        path = path.rstrip("/")

    drop = {param.lower() for param in (tracking_params if tracking_params is not None else DEFAULT_TRACKING_PARAMS)}
    kept = sorted(
        (key, value) for key, value in parse_qsl(parsed.query, keep_blank_values=True) if key.lower() not in drop
    )
    query = urlencode(kept)

    normalized = f"{host}{path}"
    if query:
        normalized = f"{normalized}?{query}"
    return normalized


def extract_slug(url: str) -> Optional[str]:
    """Last non-empty path segment, lower-cased and without a file extension"""
    parsed = _split(url)
    segments = [segment for segment in parsed.path.split("/") if segment]
    if not segments:
        return None
    slug = segments[-1].lower()
    if slug.endswith((".html", ".htm", ".php")):
        slug = slug.rsplit(".", 1)[0]
    return slug or None
