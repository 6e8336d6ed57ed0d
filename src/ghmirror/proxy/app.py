"""FastAPI surface of the GitHub mirror."""

from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge, Histogram
from ..common.observability import configure_observability, instrument_fastapi_app, request_log_context
from ..common.settings import MirrorSettings
from .orchestrator import MirrorProxy, ProxyResult
from .store import CacheStore, build_store


SERVICE_NAME = "ghmirror.proxy"
OPS_PREFIX = "/_mirror"
PROXIED_METHODS = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]

LOGGER = structlog.get_logger(SERVICE_NAME)

REQUEST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("ghmirror_requests_total", "Mirror requests by method and cache result", labels=("method", "cache"))
)
LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "ghmirror_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Mirror request latency until response headers",
    )
)


def build_http_client(settings: MirrorSettings, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=transport,
        follow_redirects=True,
        timeout=httpx.Timeout(settings.request_timeout_seconds),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
    )


def to_response(result: ProxyResult) -> Response:
    raw_headers = [(name.encode("latin-1"), value.encode("latin-1")) for name, value in result.headers.multi_items()]
    if isinstance(result.body, bytes):
        response: Response = Response(content=result.body, status_code=result.status_code)
        if "content-length" not in result.headers and result.status_code != status.HTTP_204_NO_CONTENT:
            raw_headers.append((b"content-length", str(len(result.body)).encode("latin-1")))
    else:
        response = StreamingResponse(result.body, status_code=result.status_code)
    response.raw_headers = raw_headers
    return response


def get_proxy(request: Request) -> MirrorProxy:
    return request.app.state.mirror  # type: ignore[attr-defined]


def create_app(
    settings: Optional[MirrorSettings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    store: Optional[CacheStore] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    settings = settings or MirrorSettings()
    configure_observability(SERVICE_NAME, settings)

    client = build_http_client(settings, transport)
    store = store or build_store(settings)
    extra = {"clock": clock} if clock else {}
    mirror = MirrorProxy(settings, client, store, **extra)
    GLOBAL_REGISTRY.register(
        Gauge(
            "ghmirror_background_tasks",
            "Cache writes and early hints still in flight",
            supplier=lambda: mirror.tasks.pending,
        )
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            await mirror.tasks.drain(timeout=settings.request_timeout_seconds)
            await client.aclose()
            await store.close()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    instrument_fastapi_app(app)
    app.state.mirror = mirror
    app.state.settings = settings

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        with request_log_context(request_id):
            try:
                response = await call_next(request)
            except Exception:
                duration = time.perf_counter() - start
                LATENCY_HISTOGRAM.observe(duration)
                REQUEST_COUNTER.inc(method=request.method, cache="error")
                LOGGER.exception(
                    "http_request_error",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round(duration * 1000, 2),
                )
                raise

            duration = time.perf_counter() - start
            LATENCY_HISTOGRAM.observe(duration)
            cache_status = response.headers.get("x-cache-status")
            REQUEST_COUNTER.inc(method=request.method, cache=(cache_status or "none").lower())
            log_kwargs = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "cache": cache_status,
                "duration_ms": round(duration * 1000, 2),
            }
            if response.status_code >= 500:
                LOGGER.error("http_request", **log_kwargs)
            elif duration >= 1.0:
                LOGGER.warning("http_request", **log_kwargs)
            else:
                LOGGER.info("http_request", **log_kwargs)
            return response

    @app.exception_handler(status.HTTP_405_METHOD_NOT_ALLOWED)
    async def unrouted_method(request: Request, exc: Exception) -> Response:
        # Methods outside the route table still get the mirror's plain-text 405 without an Allow list.
        result = await get_proxy(request).handle(request.method, str(request.url), request.headers)
        return to_response(result)

    @app.get(f"{OPS_PREFIX}/healthz")
    async def health_check(proxy: MirrorProxy = Depends(get_proxy)) -> JSONResponse:
        health: dict[str, object] = {"status": "healthy", "pending_tasks": proxy.tasks.pending}
        try:
            health["store"] = await proxy.store.status()
        except Exception as exc:  # noqa: BLE001
            health["status"] = "unhealthy"
            health["store"] = {"error": str(exc)}
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health) from exc
        return JSONResponse(health)

    @app.get(f"{OPS_PREFIX}/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request) -> PlainTextResponse:
        token = settings.metrics_token.get_secret_value() if settings.metrics_token else None
        require_metrics_access(request, token, settings.metrics_allowed_networks)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{full_path:path}", methods=PROXIED_METHODS, include_in_schema=False)
    async def mirror_request(full_path: str, request: Request, proxy: MirrorProxy = Depends(get_proxy)) -> Response:
        result = await proxy.handle(request.method, str(request.url), request.headers)
        return to_response(result)

    return app
