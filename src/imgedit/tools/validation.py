from __future__ import annotations

from urllib.parse import urlsplit

from .errors import ValidationError

_ALLOWED_SCHEMES = {"http", "https"}


def validate_http_url(raw: str) -> str:
    """Return *raw* stripped if it is a well-formed http(s) URL."""
    url = (raw or "").strip()
    if not url:
        raise ValidationError("url must not be empty")
    try:
        parts = urlsplit(url)
        parts.port  # raises on a malformed port
    except ValueError as exc:
        raise ValidationError(f"invalid url: {exc}") from exc
    scheme = parts.scheme.lower()
    if scheme not in _ALLOWED_SCHEMES:
        raise ValidationError(f"only http or https urls are allowed (got scheme {scheme or 'none'!r})")
    if not parts.hostname:
        raise ValidationError(f"invalid url: missing host in {url!r}")
    return url
