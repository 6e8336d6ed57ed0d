"""Response header assembly for mirrored content."""

from __future__ import annotations

from typing import Iterable

import httpx

from .strategy import CachePolicy, cache_control_value


HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,HEAD,OPTIONS",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Max-Age": "86400",
}

HIT = "HIT"
MISS = "MISS"


def format_elapsed(elapsed_ms: float) -> str:
    return f"{int(elapsed_ms)}ms"


def strip_hop_by_hop(headers: httpx.Headers | Iterable[tuple[str, str]]) -> httpx.Headers:
    items = headers.multi_items() if isinstance(headers, httpx.Headers) else list(headers)
    return httpx.Headers([(name, value) for name, value in items if name.lower() not in HOP_BY_HOP_HEADERS])


def assemble_headers(
    upstream_headers: httpx.Headers,
    policy: CachePolicy,
    *,
    version: str,
    target_url: str,
    cache_status: str,
    elapsed_ms: float,
    swr_seconds: int,
) -> httpx.Headers:
    headers = strip_hop_by_hop(upstream_headers)

    headers["Cache-Control"] = cache_control_value(policy, swr_seconds)

    vary = ["Accept-Encoding"]
    existing_vary = upstream_headers.get_list("vary")
    if existing_vary:
        vary.append(", ".join(existing_vary))
    headers["Vary"] = ", ".join(vary)

    headers["Access-Control-Allow-Origin"] = "*"
    headers["Access-Control-Expose-Headers"] = "*"

    headers["X-Mirror-Version"] = version
    headers["X-Cache-Strategy"] = policy.label
    headers["X-GitHub-Target"] = target_url
    headers["X-Cache-Status"] = cache_status
    headers["X-Response-Time"] = format_elapsed(elapsed_ms)

    headers["X-Content-Type-Options"] = "nosniff"
    headers["X-Frame-Options"] = "SAMEORIGIN"

    headers["Connection"] = "keep-alive"
    headers["Keep-Alive"] = "timeout=60, max=1000"
    return headers


def overlay_hit_headers(cached_headers: Iterable[tuple[str, str]], policy: CachePolicy, elapsed_ms: float) -> httpx.Headers:
    headers = httpx.Headers(list(cached_headers))
    headers["X-Cache-Status"] = HIT
    headers["X-Cache-Strategy"] = policy.label
    headers["X-Response-Time"] = format_elapsed(elapsed_ms)
    return headers


def is_storable(method: str, status_code: int, is_range_request: bool) -> bool:
    return method == "GET" and status_code == 200 and not is_range_request
