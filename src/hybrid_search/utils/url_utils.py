"""URL helpers."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlparse


def is_absolute_url(url: str) -> bool:
    """Return True if *url* has both a scheme and a network location.

    Args:
        url: Any URL string.

    Returns:
        ``True`` for e.g. ``"https://example.com/a"``, ``False`` for
        ``"/a"`` or ``"example.com"``.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return bool(parsed.scheme and parsed.netloc)


def absolute_url_or_none(raw: Any) -> str | None:  # noqa: ANN401
    """Return *raw* stripped if it is an absolute URL, else ``None``.

    Provider payloads carry URLs under loose types; anything that is not a
    non-empty absolute URL string is discarded.
    """
    if not isinstance(raw, str):
        return None
    candidate = raw.strip()
    if candidate and is_absolute_url(candidate):
        return candidate
    return None
