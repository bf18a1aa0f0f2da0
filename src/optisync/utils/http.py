"""Shared HTTP utilities."""

from __future__ import annotations

from urllib.parse import quote, urlparse

_BASE_URL_ALLOWED_SCHEMES = frozenset({"http", "https"})


def normalize_base_url(value: str) -> str:
    """Normalize and validate the backend base URL."""
    candidate = value.strip()
    if not candidate:
        raise ValueError("backend url must not be empty")

    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in _BASE_URL_ALLOWED_SCHEMES:
        raise ValueError("backend url must use http or https")
    if not parsed.netloc:
        raise ValueError("backend url must include host")
    if parsed.query or parsed.fragment:
        raise ValueError("backend url must not include query or fragment")
    if parsed.username or parsed.password:
        raise ValueError("backend url must not include userinfo")

    normalized_path = parsed.path.rstrip("/")
    return f"{parsed.scheme.lower()}://{parsed.netloc}{normalized_path}"


def quote_key(key: str) -> str:
    """Percent-encode an object key, keeping ``/`` separators."""
    return quote(key, safe="/")


def file_extension(filename: str, default: str = "jpg") -> str:
    """Lower-cased extension of *filename*, or *default* when it has none."""
    name = filename.rsplit("/", 1)[-1]
    if "." not in name:
        return default
    ext = name.rsplit(".", 1)[-1].strip().lower()
    return ext or default
