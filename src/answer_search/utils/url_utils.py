"""URL normalisation helpers."""

from __future__ import annotations

from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

# Query parameters that are purely tracking / analytics noise.
_STRIP_PARAMS: frozenset[str] = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "fbclid",
        "gclid",
        "msclkid",
        "_ga",
    }
)


def normalize_url(url: str) -> str:
    """Return *url* with tracking params, fragment and trailing slash removed.

    Used only as a deduplication key; the original URL is what gets stored.

    Args:
        url: Raw URL string.

    Returns:
        Canonical URL string, or *url* unchanged if it cannot be parsed.
    """
    try:
        parsed = urlparse(url.strip())
        qs = parse_qs(parsed.query, keep_blank_values=False)
        clean_query = urlencode(
            {k: v for k, v in qs.items() if k not in _STRIP_PARAMS}, doseq=True
        )
        path = parsed.path.rstrip("/") or "/"
        return urlunparse(
            (parsed.scheme, parsed.netloc.lower(), path, parsed.params, clean_query, "")
        )
    except ValueError:
        return url


def extract_domain(url: str) -> str:
    """Return the lowercase hostname of *url* without a leading ``www.``.

    Args:
        url: Any URL string.

    Returns:
        Hostname such as ``"arxiv.org"``, or ``"unknown"`` if none can be parsed.
    """
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        host = ""
    if not host:
        return "unknown"
    return host[4:] if host.startswith("www.") else host
