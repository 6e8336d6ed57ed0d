"""Upstream fetching with a per-attempt timeout and linear retry backoff."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Mapping, Optional

import httpx
import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import MirrorSettings
from .errors import UpstreamTransportError
from .strategy import CachePolicy


LOGGER = structlog.get_logger("ghmirror.fetcher")
TRACER = trace.get_tracer("ghmirror.fetcher")

UPSTREAM_RETRY_COUNTER = GLOBAL_REGISTRY.register(
    Counter("ghmirror_upstream_retries_total", "Upstream attempts that were retried")
)
UPSTREAM_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("ghmirror_upstream_failures_total", "Upstream fetches that exhausted every attempt")
)


@dataclass(frozen=True)
class EdgeFetchHints:
    """Acceleration hints for the edge platform carrying the fetch.

    They ride along as request metadata only; nothing in this process acts on them.
    """

    cache_ttl: int
    cache_ttl_by_status: dict[str, int] = field(default_factory=dict)
    cache_everything: bool = True
    resolve_override: Optional[str] = None
    minify: bool = False
    polish: Optional[str] = None
    mirage: bool = False

    @classmethod
    def for_policy(cls, policy: CachePolicy, settings: MirrorSettings) -> "EdgeFetchHints":
        return cls(
            cache_ttl=policy.edge_ttl_seconds,
            cache_ttl_by_status={
                "200-299": policy.edge_ttl_seconds,
                "404": settings.not_found_edge_ttl_seconds,
                "500-599": 0,
            },
            resolve_override=settings.resolver_override,
            minify=settings.enable_compression,
            polish="lossy" if settings.enable_compression else None,
            mirage=settings.enable_compression,
        )

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "cacheEverything": self.cache_everything,
            "cacheTtl": self.cache_ttl,
            "cacheTtlByStatus": dict(self.cache_ttl_by_status),
        }
        if self.resolve_override:
            payload["resolveOverride"] = self.resolve_override
        if self.minify:
            payload["minify"] = {"javascript": True, "css": True, "html": True}
        if self.polish:
            payload["polish"] = self.polish
        if self.mirage:
            payload["mirage"] = True
        return payload


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500


class ResilientFetcher:
    """Sequential upstream attempts; 5xx and transport failures are retried, everything else returns."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        max_retries: int = 2,
        retry_delay_ms: int = 500,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._client = client
        self._max_retries = max(0, max_retries)
        self._retry_delay = max(0, retry_delay_ms) / 1000.0
        self._timeout = timeout_seconds

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: MirrorSettings) -> "ResilientFetcher":
        return cls(
            client,
            max_retries=settings.max_retries,
            retry_delay_ms=settings.retry_delay_ms,
            timeout_seconds=settings.request_timeout_seconds,
        )

    def retry_delay(self, retry_number: int) -> float:
        return self._retry_delay * retry_number

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        retries: Optional[int] = None,
        hints: Optional[EdgeFetchHints] = None,
    ) -> httpx.Response:
        """Return a streamed response; the caller owns closing it."""
        max_retries = self._max_retries if retries is None else max(0, retries)
        extensions = {"edge_hints": hints.as_dict()} if hints else None
        last_error: Exception | None = None

        for attempt in range(max_retries + 1):
            if attempt:
                UPSTREAM_RETRY_COUNTER.inc()
                await asyncio.sleep(self.retry_delay(attempt))
            with TRACER.start_as_current_span(
                "mirror.upstream_attempt",
                attributes={"http.url": url, "mirror.attempt": attempt + 1},
            ) as span:
                request = self._client.build_request(method, url, headers=headers, extensions=extensions)
                try:
                    response = await asyncio.wait_for(self._client.send(request, stream=True), self._timeout)
                except (httpx.TransportError, asyncio.TimeoutError) as exc:
                    last_error = exc
                    span.set_attribute("mirror.error", type(exc).__name__)
                    LOGGER.warning(
                        "upstream_attempt_failed",
                        url=url,
                        attempt=attempt + 1,
                        error=type(exc).__name__,
                    )
                    continue
                span.set_attribute("http.status_code", response.status_code)

            if not is_retryable_status(response.status_code) or attempt == max_retries:
                return response

            LOGGER.warning("upstream_server_error", url=url, attempt=attempt + 1, status=response.status_code)
            await response.aclose()

        UPSTREAM_FAILURE_COUNTER.inc()
        raise UpstreamTransportError(url, max_retries + 1) from last_error
