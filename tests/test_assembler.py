from __future__ import annotations

import httpx
import pytest

from ghmirror.proxy.assembler import (
    HIT,
    MISS,
    PREFLIGHT_HEADERS,
    assemble_headers,
    format_elapsed,
    is_storable,
    overlay_hit_headers,
    strip_hop_by_hop,
)
from ghmirror.proxy.strategy import DYNAMIC, VERSIONED


TARGET = "https://github.com/user/repo/raw/main/a.txt"


def _assemble(upstream: httpx.Headers, **overrides) -> httpx.Headers:
    kwargs = dict(
        version="20240501",
        target_url=TARGET,
        cache_status=MISS,
        elapsed_ms=12.7,
        swr_seconds=86400,
    )
    kwargs.update(overrides)
    return assemble_headers(upstream, DYNAMIC, **kwargs)


def test_required_headers_are_set() -> None:
    headers = _assemble(httpx.Headers({"Content-Type": "text/plain", "ETag": '"abc"'}))

    assert headers["cache-control"] == "public, max-age=300, s-maxage=3600, stale-while-revalidate=86400"
    assert headers["vary"] == "Accept-Encoding"
    assert headers["access-control-allow-origin"] == "*"
    assert headers["access-control-expose-headers"] == "*"
    assert headers["x-mirror-version"] == "20240501"
    assert headers["x-cache-strategy"] == "dynamic"
    assert headers["x-github-target"] == TARGET
    assert headers["x-cache-status"] == MISS
    assert headers["x-response-time"] == "12ms"
    assert headers["x-content-type-options"] == "nosniff"
    assert headers["x-frame-options"] == "SAMEORIGIN"
    assert headers["connection"] == "keep-alive"
    assert headers["keep-alive"] == "timeout=60, max=1000"


def test_upstream_headers_survive_and_cache_control_is_replaced() -> None:
    upstream = httpx.Headers(
        [
            ("Content-Type", "application/zip"),
            ("ETag", '"abc"'),
            ("Cache-Control", "private, max-age=0"),
            ("Set-Cookie", "a=1"),
            ("Set-Cookie", "b=2"),
        ]
    )
    headers = _assemble(upstream)

    assert headers["content-type"] == "application/zip"
    assert headers["etag"] == '"abc"'
    assert headers.get_list("cache-control") == ["public, max-age=300, s-maxage=3600, stale-while-revalidate=86400"]
    assert headers.get_list("set-cookie") == ["a=1", "b=2"]


def test_upstream_vary_is_appended() -> None:
    headers = _assemble(httpx.Headers({"Vary": "Origin"}))
    assert headers.get_list("vary") == ["Accept-Encoding, Origin"]


def test_hop_by_hop_headers_are_dropped() -> None:
    upstream = httpx.Headers({"Transfer-Encoding": "chunked", "Upgrade": "h2c", "Content-Length": "10"})
    stripped = strip_hop_by_hop(upstream)
    assert "transfer-encoding" not in stripped
    assert "upgrade" not in stripped
    assert stripped["content-length"] == "10"

    headers = _assemble(upstream)
    assert "transfer-encoding" not in headers


def test_hit_overlay_keeps_stored_headers() -> None:
    stored = _assemble(httpx.Headers({"Content-Type": "text/plain"})).multi_items()
    headers = overlay_hit_headers(stored, DYNAMIC, 3.2)

    assert headers["x-cache-status"] == HIT
    assert headers["x-response-time"] == "3ms"
    assert headers["x-mirror-version"] == "20240501"
    assert headers["content-type"] == "text/plain"


def test_hit_overlay_uses_current_policy_label() -> None:
    stored = [("X-Cache-Strategy", "default"), ("Content-Type", "text/plain")]
    headers = overlay_hit_headers(stored, VERSIONED, 0.4)
    assert headers["x-cache-strategy"] == "versioned"
    assert headers["x-response-time"] == "0ms"


def test_versioned_cache_control() -> None:
    headers = assemble_headers(
        httpx.Headers(),
        VERSIONED,
        version="20240501",
        target_url=TARGET,
        cache_status=MISS,
        elapsed_ms=0,
        swr_seconds=60,
    )
    assert headers["cache-control"] == "public, max-age=86400, s-maxage=2592000, stale-while-revalidate=60"


@pytest.mark.parametrize(
    "method,status,is_range,expected",
    [
        ("GET", 200, False, True),
        ("GET", 200, True, False),
        ("HEAD", 200, False, False),
        ("GET", 404, False, False),
        ("GET", 206, False, False),
        ("GET", 500, False, False),
    ],
)
def test_is_storable(method: str, status: int, is_range: bool, expected: bool) -> None:
    assert is_storable(method, status, is_range) is expected


def test_preflight_headers() -> None:
    assert PREFLIGHT_HEADERS["Access-Control-Allow-Methods"] == "GET,HEAD,OPTIONS"
    assert PREFLIGHT_HEADERS["Access-Control-Max-Age"] == "86400"


def test_format_elapsed_truncates() -> None:
    assert format_elapsed(0) == "0ms"
    assert format_elapsed(999.99) == "999ms"
