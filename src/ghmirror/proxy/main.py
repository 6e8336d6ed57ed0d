"""Command-line entrypoint for running the GitHub mirror."""

from __future__ import annotations

import argparse
import asyncio
from typing import Optional, Sequence

import structlog
import uvicorn

from ..common.settings import MirrorSettings
from .app import create_app


LOGGER = structlog.get_logger("ghmirror.proxy")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Caching reverse proxy for GitHub content")
    parser.add_argument("--host", help="Bind address (defaults to GHMIRROR_BIND_HOST)")
    parser.add_argument("--port", type=int, help="Bind port (defaults to GHMIRROR_BIND_PORT)")
    return parser


async def serve(settings: MirrorSettings, host: str, port: int) -> None:
    app = create_app(settings)
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        log_level=settings.log_level.lower(),
        proxy_headers=True,
    )
    server = uvicorn.Server(config)
    LOGGER.info("GitHub mirror listening", host=host, port=port, backend=settings.cache_backend)
    await server.serve()


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    settings = MirrorSettings()
    host = args.host or settings.bind_host
    port = args.port or settings.bind_port
    asyncio.run(serve(settings, host, port))


if __name__ == "__main__":
    main()
