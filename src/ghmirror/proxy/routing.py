"""Map inbound mirror paths onto GitHub origin URLs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .errors import InvalidPathError


@dataclass(frozen=True, slots=True)
class ResolvedTarget:
    origin_host: str
    origin_path: str

    @property
    def upstream_url(self) -> str:
        return f"https://{self.origin_host}{self.origin_path}"

    def with_query(self, query: str) -> str:
        if not query:
            return self.upstream_url
        return f"{self.upstream_url}?{query}"


class PathResolver:
    """Accepts `/<host>/owner/repo/...` for allow-listed hosts, else `/owner/repo/...` on the default host."""

    def __init__(self, hosts: Sequence[str], default_host: str) -> None:
        self._hosts = frozenset(host.lower() for host in hosts)
        self._default_host = default_host

    def resolve(self, path: str) -> ResolvedTarget:
        segments = [segment for segment in (path or "").split("/") if segment]
        if not segments:
            raise InvalidPathError(path)
        if segments[0] in self._hosts:
            return ResolvedTarget(origin_host=segments[0], origin_path="/" + "/".join(segments[1:]))
        origin_path = path if path.startswith("/") else f"/{path}"
        return ResolvedTarget(origin_host=self._default_host, origin_path=origin_path)
