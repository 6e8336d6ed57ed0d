"""Path-driven cache policies.

Branch-like refs move all the time, so they get a short TTL and ETag
revalidation. Release artifacts and tagged sources are immutable by
convention and are cached for a month without validation. Everything else
sits in between.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal


PolicyLabel = Literal["dynamic", "versioned", "default"]


@dataclass(frozen=True, slots=True)
class CachePolicy:
    edge_ttl_seconds: int
    browser_ttl_seconds: int
    use_etag_validation: bool
    label: PolicyLabel


DYNAMIC = CachePolicy(edge_ttl_seconds=3600, browser_ttl_seconds=300, use_etag_validation=True, label="dynamic")
VERSIONED = CachePolicy(
    edge_ttl_seconds=30 * 86400,
    browser_ttl_seconds=86400,
    use_etag_validation=False,
    label="versioned",
)
DEFAULT = CachePolicy(edge_ttl_seconds=86400, browser_ttl_seconds=3600, use_etag_validation=True, label="default")

POLICIES: dict[str, CachePolicy] = {policy.label: policy for policy in (DYNAMIC, VERSIONED, DEFAULT)}

_DYNAMIC_MARKERS = ("/latest/", "/nightly/", "/master/", "/main/")
_VERSIONED_PATTERNS = (
    re.compile(r"/v?\d+\.\d+(\.\d+)?/"),
    re.compile(r"/tags?/"),
    re.compile(r"/releases/download/v?\d+"),
)


def select_strategy(path: str) -> CachePolicy:
    if any(marker in path for marker in _DYNAMIC_MARKERS):
        return DYNAMIC
    if any(pattern.search(path) for pattern in _VERSIONED_PATTERNS):
        return VERSIONED
    return DEFAULT


def cache_control_value(policy: CachePolicy, swr_seconds: int) -> str:
    return (
        f"public, max-age={policy.browser_ttl_seconds}, "
        f"s-maxage={policy.edge_ttl_seconds}, "
        f"stale-while-revalidate={swr_seconds}"
    )
