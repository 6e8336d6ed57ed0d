from __future__ import annotations

import pytest

from ghmirror.proxy.strategy import (
    DEFAULT,
    DYNAMIC,
    POLICIES,
    VERSIONED,
    cache_control_value,
    select_strategy,
)


@pytest.mark.parametrize(
    "path,expected",
    [
        ("/user/repo/raw/main/README.md", DYNAMIC),
        ("/user/repo/archive/refs/heads/master/x.tar.gz", DYNAMIC),
        ("/user/repo/releases/latest/download/tool.zip", DYNAMIC),
        ("/user/repo/nightly/build.tar.gz", DYNAMIC),
        ("/user/repo/releases/download/v1.2.3/app.tar.gz", VERSIONED),
        ("/user/repo/releases/download/2/app.tar.gz", VERSIONED),
        ("/user/repo/archive/refs/tags/v1.0.tar.gz", VERSIONED),
        ("/user/repo/raw/v1.2/setup.sh", VERSIONED),
        ("/user/repo/raw/1.2.3/setup.sh", VERSIONED),
        ("/user/repo/blob/feature-x/src/app.py", DEFAULT),
        ("/user/repo", DEFAULT),
    ],
)
def test_select_strategy(path: str, expected) -> None:
    assert select_strategy(path) is expected


def test_dynamic_markers_win_over_version_patterns() -> None:
    assert select_strategy("/user/repo/releases/download/v1.0.0/main/tool") is DYNAMIC


def test_markers_need_both_slashes() -> None:
    assert select_strategy("/user/repo/blob/x/maintenance.md") is DEFAULT
    assert select_strategy("/user/repo/raw/main") is DEFAULT


def test_policy_table() -> None:
    assert (DYNAMIC.edge_ttl_seconds, DYNAMIC.browser_ttl_seconds, DYNAMIC.use_etag_validation) == (3600, 300, True)
    assert (VERSIONED.edge_ttl_seconds, VERSIONED.browser_ttl_seconds, VERSIONED.use_etag_validation) == (
        2592000,
        86400,
        False,
    )
    assert (DEFAULT.edge_ttl_seconds, DEFAULT.browser_ttl_seconds, DEFAULT.use_etag_validation) == (86400, 3600, True)
    assert set(POLICIES) == {"dynamic", "versioned", "default"}


def test_cache_control_value() -> None:
    assert cache_control_value(DYNAMIC, 86400) == "public, max-age=300, s-maxage=3600, stale-while-revalidate=86400"
    assert cache_control_value(VERSIONED, 10) == "public, max-age=86400, s-maxage=2592000, stale-while-revalidate=10"
