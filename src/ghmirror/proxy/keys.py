"""Cache key construction and freshness versions."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


VERSION_PARAM = "__v"
ENCODING_PARAM = "__enc"
ETAG_MAX_LENGTH = 32


def cache_version(now: Optional[datetime] = None) -> str:
    """UTC day stamp, so date-versioned entries roll over at midnight UTC."""
    moment = now or datetime.now(UTC)
    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC)
    return moment.strftime("%Y%m%d")


def normalize_etag(value: Optional[str]) -> Optional[str]:
    """`W/"abc"` and `"abc"` both become `abc`, capped at 32 characters."""
    if not value:
        return None
    if value.startswith('W/"'):
        value = value[2:]
    normalized = value.replace('"', "")[:ETAG_MAX_LENGTH]
    return normalized or None


def encoding_tag(accept_encoding: Optional[str]) -> Optional[str]:
    if not accept_encoding:
        return None
    if "br" in accept_encoding:
        return "br"
    if "gzip" in accept_encoding:
        return "gzip"
    return None


def _set_param(pairs: list[tuple[str, str]], name: str, value: str) -> list[tuple[str, str]]:
    # Same semantics as URLSearchParams.set: first occurrence keeps its slot, duplicates go.
    result: list[tuple[str, str]] = []
    replaced = False
    for key, current in pairs:
        if key != name:
            result.append((key, current))
        elif not replaced:
            result.append((key, value))
            replaced = True
    if not replaced:
        result.append((name, value))
    return result


def build_cache_key(
    url: str,
    accept_encoding: Optional[str],
    version: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> str:
    parts = urlsplit(url)
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    pairs = _set_param(pairs, VERSION_PARAM, version or cache_version(now))
    tag = encoding_tag(accept_encoding)
    if tag:
        pairs = _set_param(pairs, ENCODING_PARAM, tag)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(pairs), ""))
