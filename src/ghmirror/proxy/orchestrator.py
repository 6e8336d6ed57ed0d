"""Per-request flow of the mirror: validate, resolve, look up, fetch, assemble, store."""

from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import AsyncIterator, Awaitable, Callable, Mapping, Optional, Union
from urllib.parse import urlsplit

import httpx
import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import MirrorSettings
from .assembler import (
    HIT,
    MISS,
    PREFLIGHT_HEADERS,
    assemble_headers,
    is_storable,
    overlay_hit_headers,
)
from .errors import InvalidPathError, MethodNotAllowedError, MirrorError, UpstreamTransportError
from .fetcher import EdgeFetchHints, ResilientFetcher
from .keys import build_cache_key, cache_version, normalize_etag
from .routing import PathResolver
from .store import CachedResponse, CacheStore
from .strategy import select_strategy


LOGGER = structlog.get_logger("ghmirror.proxy")
TRACER = trace.get_tracer("ghmirror.proxy")

HIT_COUNTER = GLOBAL_REGISTRY.register(
    Counter("ghmirror_cache_hits_total", "Requests served from the cache", labels=("strategy",))
)
MISS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("ghmirror_cache_misses_total", "Cache lookups that missed", labels=("strategy",))
)
STORE_WRITE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("ghmirror_cache_writes_total", "Responses written to the cache")
)
STORE_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("ghmirror_cache_write_failures_total", "Cache writes that failed")
)

FORWARDED_HEADERS = (
    "range",
    "if-range",
    "if-none-match",
    "if-modified-since",
    "user-agent",
    "accept",
    "accept-encoding",
)

Body = Union[bytes, AsyncIterator[bytes]]


class ProxyState(str, enum.Enum):
    START = "start"
    VALIDATE_METHOD = "validate_method"
    CORS_PREFLIGHT = "cors_preflight"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    RESOLVE = "resolve"
    INVALID_PATH = "invalid_path"
    STRATEGY = "strategy"
    CACHE_LOOKUP = "cache_lookup"
    HIT_RETURN = "hit_return"
    MISS_FETCH = "miss_fetch"
    UPSTREAM_FAILED = "upstream_failed"
    ASSEMBLE = "assemble"
    ASYNC_STORE = "async_store"
    RETURN = "return"


@dataclass(frozen=True)
class RequestFacts:
    """Everything the flow branches on, computed once when the request arrives."""

    method: str
    url: str
    path: str
    query: str
    accept_encoding: str
    is_range_request: bool
    forward_headers: dict[str, str]

    @property
    def is_cacheable_method(self) -> bool:
        return self.method == "GET"

    @property
    def uses_cache(self) -> bool:
        return self.is_cacheable_method and not self.is_range_request

    @classmethod
    def build(cls, method: str, url: str, headers: Mapping[str, str]) -> "RequestFacts":
        lowered = {name.lower(): value for name, value in headers.items()}
        parts = urlsplit(url)
        return cls(
            method=method.upper(),
            url=url,
            path=parts.path,
            query=parts.query,
            accept_encoding=lowered.get("accept-encoding", ""),
            is_range_request=bool(lowered.get("range")),
            forward_headers={name: lowered[name] for name in FORWARDED_HEADERS if lowered.get(name)},
        )


@dataclass
class ProxyResult:
    status_code: int
    headers: httpx.Headers
    body: Body
    trail: list[ProxyState] = field(default_factory=list)
    cache_status: Optional[str] = None

    @property
    def state(self) -> ProxyState:
        return self.trail[-1]


class TaskRunner:
    """Fire-and-forget tasks; callers never await them and their failures stay here."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable[None], *, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning("background_task_failed", task=task.get_name(), error=repr(exc))

    async def drain(self, timeout: Optional[float] = None) -> None:
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)


def _error_result(error: MirrorError, trail: list[ProxyState]) -> ProxyResult:
    headers = httpx.Headers({"Content-Type": "text/plain"})
    return ProxyResult(error.status_code, headers, error.public_message.encode("utf-8"), trail)


async def _stream_upstream(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_raw():
            yield chunk
    finally:
        await response.aclose()


class MirrorProxy:
    def __init__(
        self,
        settings: MirrorSettings,
        client: httpx.AsyncClient,
        store: CacheStore,
        *,
        tasks: Optional[TaskRunner] = None,
        fetcher: Optional[ResilientFetcher] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._settings = settings
        self._client = client
        self._store = store
        self._tasks = tasks or TaskRunner()
        self._fetcher = fetcher or ResilientFetcher.from_settings(client, settings)
        self._resolver = PathResolver(settings.github_hosts, settings.default_host)
        self._clock = clock

    @property
    def tasks(self) -> TaskRunner:
        return self._tasks

    @property
    def store(self) -> CacheStore:
        return self._store

    async def handle(self, method: str, url: str, headers: Mapping[str, str]) -> ProxyResult:
        started = time.perf_counter()
        trail = [ProxyState.START, ProxyState.VALIDATE_METHOD]
        facts = RequestFacts.build(method, url, headers)

        if facts.method == "OPTIONS":
            trail.append(ProxyState.CORS_PREFLIGHT)
            return ProxyResult(204, httpx.Headers(PREFLIGHT_HEADERS), b"", trail)
        if facts.method not in {"GET", "HEAD"}:
            trail.append(ProxyState.METHOD_NOT_ALLOWED)
            return _error_result(MethodNotAllowedError(facts.method), trail)

        trail.append(ProxyState.RESOLVE)
        try:
            target = self._resolver.resolve(facts.path)
        except InvalidPathError as exc:
            trail.append(ProxyState.INVALID_PATH)
            return _error_result(exc, trail)

        trail.append(ProxyState.STRATEGY)
        policy = select_strategy(target.origin_path)
        upstream_url = target.with_query(facts.query)
        log = LOGGER.bind(target=upstream_url, strategy=policy.label)

        if facts.is_cacheable_method and self._settings.enable_early_hints:
            self._tasks.spawn(self._send_early_hint(facts.url, upstream_url), name="early-hint")

        now = self._clock()
        lookup_key = build_cache_key(facts.url, facts.accept_encoding, now=now)

        if facts.uses_cache:
            trail.append(ProxyState.CACHE_LOOKUP)
            cached = await self._store.match(lookup_key)
            if cached is not None:
                trail.append(ProxyState.HIT_RETURN)
                HIT_COUNTER.inc(strategy=policy.label)
                log.info("cache_hit", cache_key=lookup_key)
                headers = overlay_hit_headers(cached.headers, policy, _elapsed_ms(started))
                return ProxyResult(cached.status_code, headers, cached.body, trail, cache_status=HIT)
            MISS_COUNTER.inc(strategy=policy.label)
            log.info("cache_miss", cache_key=lookup_key)

        trail.append(ProxyState.MISS_FETCH)
        with TRACER.start_as_current_span(
            "mirror.fetch",
            attributes={"mirror.strategy": policy.label, "mirror.target": upstream_url},
        ):
            try:
                response = await self._fetcher.fetch(
                    upstream_url,
                    method=facts.method,
                    headers=facts.forward_headers,
                    hints=EdgeFetchHints.for_policy(policy, self._settings),
                )
            except UpstreamTransportError as exc:
                trail.append(ProxyState.UPSTREAM_FAILED)
                log.error("upstream_unavailable", attempts=exc.attempts, error=str(exc.__cause__ or exc))
                return _error_result(exc, trail)

        trail.append(ProxyState.ASSEMBLE)
        version = cache_version(now)
        final_key = lookup_key
        if policy.use_etag_validation:
            etag = normalize_etag(response.headers.get("etag"))
            if etag:
                version = etag
                final_key = build_cache_key(facts.url, facts.accept_encoding, etag)

        headers = assemble_headers(
            response.headers,
            policy,
            version=version,
            target_url=upstream_url,
            cache_status=MISS,
            elapsed_ms=_elapsed_ms(started),
            swr_seconds=self._settings.swr_seconds,
        )

        if is_storable(facts.method, response.status_code, facts.is_range_request):
            trail.append(ProxyState.ASYNC_STORE)
            body: Body = self._tee_into_store(response, final_key, headers.multi_items(), policy.edge_ttl_seconds)
        else:
            body = _stream_upstream(response)

        trail.append(ProxyState.RETURN)
        return ProxyResult(response.status_code, headers, body, trail, cache_status=MISS)

    async def _tee_into_store(
        self,
        response: httpx.Response,
        cache_key: str,
        stored_headers: list[tuple[str, str]],
        ttl_seconds: int,
    ) -> AsyncIterator[bytes]:
        limit = self._settings.max_cacheable_bytes
        chunks: Optional[list[bytes]] = []
        size = 0
        try:
            async for chunk in response.aiter_raw():
                if chunks is not None:
                    size += len(chunk)
                    if size > limit:
                        LOGGER.info("cache_skip_oversized", cache_key=cache_key, limit=limit)
                        chunks = None
                    else:
                        chunks.append(chunk)
                yield chunk
        finally:
            await response.aclose()

        if chunks is None:
            return
        stored_at = time.time()
        entry = CachedResponse(
            status_code=response.status_code,
            headers=stored_headers,
            body=b"".join(chunks),
            stored_at=stored_at,
            expires_at=stored_at + ttl_seconds,
        )
        self._tasks.spawn(self._store_entry(cache_key, entry), name="cache-store")

    async def _store_entry(self, cache_key: str, entry: CachedResponse) -> None:
        try:
            await self._store.put(cache_key, entry)
        except Exception as exc:  # noqa: BLE001
            STORE_FAILURE_COUNTER.inc()
            LOGGER.warning("cache_store_failed", cache_key=cache_key, error=repr(exc))
            return
        STORE_WRITE_COUNTER.inc()
        LOGGER.debug("cache_stored", cache_key=cache_key, bytes=len(entry.body))

    async def _send_early_hint(self, request_url: str, upstream_url: str) -> None:
        # HEAD goes to the mirror's own URL, not upstream; the edge in front of the mirror
        # turns its preconnect Link into a 103 for the client.
        try:
            await self._client.head(
                request_url,
                headers={"Link": f"<{upstream_url}>; rel=preconnect"},
                timeout=self._settings.early_hint_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            LOGGER.debug("early_hint_failed", error=type(exc).__name__)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0
