"""Shared URL utilities: resolve screen routes against the base URL."""

from __future__ import annotations

from urllib.parse import urljoin, urlparse


def normalize_base_url(base_url: str) -> str:
    """Ensure the base URL ends with a slash so relative routes join under it."""
    parsed = urlparse(base_url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Base URL must be absolute (got {base_url!r})")
    return base_url if base_url.endswith("/") else base_url + "/"


def resolve_screen_url(base_url: str, url: str) -> str:
    """Absolute URL for a screen. Absolute screen URLs pass through unchanged."""
    if urlparse(url).scheme:
        return url
    return urljoin(normalize_base_url(base_url), url.lstrip("/"))
