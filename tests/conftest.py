from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional, Union

import httpx
import pytest

from ghmirror.common.settings import MirrorSettings


FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
FIXED_VERSION = "20240501"

Reply = Union[httpx.Response, Exception]


def reply(status_code: int = 200, body: bytes = b"payload", headers: Optional[Mapping[str, str]] = None) -> httpx.Response:
    """An unread upstream response, so the proxy can stream it with `aiter_raw` like a real one."""
    return httpx.Response(status_code, headers=headers, stream=httpx.ByteStream(body))


class FakeUpstream:
    """Stands in for GitHub behind an httpx.MockTransport and records every request."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response] | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self._responder = responder or (lambda request: reply())
        self._queue: list[Reply] = []

    def queue(self, *replies: Reply) -> "FakeUpstream":
        self._queue.extend(replies)
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._queue:
            queued = self._queue.pop(0)
            if isinstance(queued, Exception):
                raise queued
            return queued
        return self._responder(request)

    @property
    def calls(self) -> int:
        return len(self.requests)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def urls(self) -> list[str]:
        return [str(request.url) for request in self.requests]


def statuses(*codes: int, body: bytes = b"payload") -> Iterable[httpx.Response]:
    return [reply(code, body) for code in codes]


@pytest.fixture
def settings(tmp_path: Path) -> MirrorSettings:
    return MirrorSettings(
        enable_early_hints=False,
        retry_delay_ms=0,
        cache_storage_path=tmp_path / "cache",
        cache_index_url=f"sqlite+pysqlite:///{(tmp_path / 'index.db').as_posix()}",
        log_level="WARNING",
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()
