from __future__ import annotations

import pytest

from ghmirror.common.settings import DEFAULT_GITHUB_HOSTS
from ghmirror.proxy.errors import InvalidPathError
from ghmirror.proxy.routing import PathResolver, ResolvedTarget


@pytest.fixture
def resolver() -> PathResolver:
    return PathResolver(DEFAULT_GITHUB_HOSTS, "github.com")


def test_owner_repo_path_goes_to_default_host(resolver: PathResolver) -> None:
    target = resolver.resolve("/user/repo/raw/main/file.txt")
    assert target == ResolvedTarget("github.com", "/user/repo/raw/main/file.txt")
    assert target.upstream_url == "https://github.com/user/repo/raw/main/file.txt"


@pytest.mark.parametrize(
    "path,host,origin_path",
    [
        ("/raw.githubusercontent.com/user/repo/main/README.md", "raw.githubusercontent.com", "/user/repo/main/README.md"),
        ("/github.com/user/repo/releases/download/v1.0.0/a.zip", "github.com", "/user/repo/releases/download/v1.0.0/a.zip"),
        ("/gist.github.com/user/abc123", "gist.github.com", "/user/abc123"),
        ("/gist.githubusercontent.com/user/abc/raw/file", "gist.githubusercontent.com", "/user/abc/raw/file"),
    ],
)
def test_explicit_host_prefix_is_stripped(resolver: PathResolver, path: str, host: str, origin_path: str) -> None:
    target = resolver.resolve(path)
    assert target.origin_host == host
    assert target.origin_path == origin_path


def test_unknown_host_is_treated_as_owner(resolver: PathResolver) -> None:
    target = resolver.resolve("/example.com/user/repo")
    assert target.origin_host == "github.com"
    assert target.origin_path == "/example.com/user/repo"


@pytest.mark.parametrize("path", ["/", "", "//"])
def test_empty_path_is_rejected(resolver: PathResolver, path: str) -> None:
    with pytest.raises(InvalidPathError) as exc_info:
        resolver.resolve(path)
    assert exc_info.value.status_code == 400
    assert exc_info.value.public_message == "Invalid path. Usage: /[github.com]/user/repo/path/to/file"


def test_query_is_appended_only_when_present() -> None:
    target = ResolvedTarget("github.com", "/user/repo/archive/main.zip")
    assert target.with_query("") == "https://github.com/user/repo/archive/main.zip"
    assert target.with_query("a=1&b=2") == "https://github.com/user/repo/archive/main.zip?a=1&b=2"


def test_allow_list_is_configurable() -> None:
    resolver = PathResolver(["git.example.org"], "git.example.org")
    assert resolver.resolve("/git.example.org/team/tool").upstream_url == "https://git.example.org/team/tool"
    assert resolver.resolve("/github.com/user/repo").upstream_url == "https://git.example.org/github.com/user/repo"
