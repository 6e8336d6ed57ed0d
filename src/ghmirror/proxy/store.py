"""Cache stores keyed by mirror cache keys.

Both stores offer the same `match`/`put` pair: a lookup by key that ignores
expired entries, and an overwrite where the last writer wins.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

import structlog
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url

from ..common.settings import MirrorSettings


LOGGER = structlog.get_logger("ghmirror.store")


@dataclass(slots=True)
class CachedResponse:
    status_code: int
    headers: list[tuple[str, str]]
    body: bytes
    stored_at: float = field(default_factory=time.time)
    expires_at: Optional[float] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at


class CacheStore:
    async def match(self, cache_key: str) -> Optional[CachedResponse]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, cache_key: str, entry: CachedResponse) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryCacheStore(CacheStore):
    """LRU store bounded by entry count and by total body bytes."""

    def __init__(self, max_entries: int = 1024, max_bytes: int = 256 * 1024 * 1024) -> None:
        self._entries: OrderedDict[str, CachedResponse] = OrderedDict()
        self._max_entries = max(1, max_entries)
        self._max_bytes = max(1, max_bytes)
        self._total_bytes = 0
        self._lock = asyncio.Lock()

    async def match(self, cache_key: str) -> Optional[CachedResponse]:
        async with self._lock:
            entry = self._entries.get(cache_key)
            if entry is None:
                return None
            if entry.is_expired():
                self._discard(cache_key)
                return None
            self._entries.move_to_end(cache_key)
            return entry

    async def put(self, cache_key: str, entry: CachedResponse) -> None:
        size = len(entry.body)
        async with self._lock:
            self._discard(cache_key)
            if size > self._max_bytes:
                LOGGER.debug("cache_skip_over_budget", cache_key=cache_key, bytes=size, max_bytes=self._max_bytes)
                return
            self._entries[cache_key] = entry
            self._total_bytes += size
            while len(self._entries) > self._max_entries or self._total_bytes > self._max_bytes:
                evicted, dropped = self._entries.popitem(last=False)
                self._total_bytes -= len(dropped.body)
                LOGGER.debug("cache_evicted", cache_key=evicted)

    def _discard(self, cache_key: str) -> None:
        entry = self._entries.pop(cache_key, None)
        if entry is not None:
            self._total_bytes -= len(entry.body)

    async def status(self) -> dict[str, object]:
        return {
            "backend": "memory",
            "entries": len(self._entries),
            "max_entries": self._max_entries,
            "bytes": self._total_bytes,
            "max_bytes": self._max_bytes,
        }


class DiskCacheStore(CacheStore):
    """Bodies on local disk, headers and expiry in a SQL index."""

    def __init__(self, storage_path: Path, index_url: str) -> None:
        self._storage_path = Path(storage_path).expanduser()
        self._storage_path.mkdir(parents=True, exist_ok=True)
        self._engine = self._create_engine(index_url)
        self._initialise()

    @staticmethod
    def _create_engine(database_url: str) -> Engine:
        url = make_url(database_url)
        if url.drivername.startswith("sqlite") and url.database:
            db_path = Path(url.database).expanduser()
            if not db_path.is_absolute():
                db_path = (Path.cwd() / db_path).resolve()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            url = url.set(database=db_path.as_posix())
            database_url = url.render_as_string(hide_password=False)
        return create_engine(database_url, future=True, pool_pre_ping=True)

    def _initialise(self) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS mirror_cache_entries (
                        cache_key TEXT PRIMARY KEY,
                        blob_name TEXT NOT NULL,
                        status_code INTEGER NOT NULL,
                        headers TEXT NOT NULL,
                        size_bytes INTEGER NOT NULL DEFAULT 0,
                        stored_at REAL NOT NULL,
                        expires_at REAL
                    )
                    """
                )
            )

    @staticmethod
    def blob_name(cache_key: str) -> str:
        return hashlib.sha256(cache_key.encode("utf-8")).hexdigest()

    def _blob_path(self, blob_name: str) -> Path:
        return self._storage_path / blob_name[:2] / blob_name

    async def match(self, cache_key: str) -> Optional[CachedResponse]:
        row = await asyncio.to_thread(self._select, cache_key)
        if row is None:
            return None
        expires_at = float(row["expires_at"]) if row["expires_at"] is not None else None
        if expires_at is not None and time.time() >= expires_at:
            await asyncio.to_thread(self._delete, cache_key, str(row["blob_name"]))
            return None
        path = self._blob_path(str(row["blob_name"]))
        try:
            body = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            LOGGER.warning("cache_blob_missing", cache_key=cache_key)
            await asyncio.to_thread(self._delete, cache_key, str(row["blob_name"]))
            return None
        return CachedResponse(
            status_code=int(row["status_code"]),
            headers=[(str(name), str(value)) for name, value in json.loads(row["headers"])],
            body=body,
            stored_at=float(row["stored_at"]),
            expires_at=expires_at,
        )

    async def put(self, cache_key: str, entry: CachedResponse) -> None:
        blob_name = self.blob_name(cache_key)
        await asyncio.to_thread(self._write_blob, blob_name, entry.body)
        await asyncio.to_thread(self._upsert, cache_key, blob_name, entry)

    def _write_blob(self, blob_name: str, body: bytes) -> None:
        path = self._blob_path(blob_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(f".{os.getpid()}.{time.monotonic_ns()}.tmp")
        tmp_path.write_bytes(body)
        os.replace(tmp_path, path)

    def _select(self, cache_key: str) -> Optional[Mapping[str, object]]:
        with self._engine.connect() as conn:
            return conn.execute(
                text(
                    """
                    SELECT blob_name, status_code, headers, stored_at, expires_at
                    FROM mirror_cache_entries
                    WHERE cache_key = :cache_key
                    """
                ),
                {"cache_key": cache_key},
            ).mappings().one_or_none()

    def _upsert(self, cache_key: str, blob_name: str, entry: CachedResponse) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO mirror_cache_entries (
                        cache_key, blob_name, status_code, headers, size_bytes, stored_at, expires_at
                    ) VALUES (
                        :cache_key, :blob_name, :status_code, :headers, :size_bytes, :stored_at, :expires_at
                    )
                    ON CONFLICT(cache_key) DO UPDATE SET
                        blob_name = EXCLUDED.blob_name,
                        status_code = EXCLUDED.status_code,
                        headers = EXCLUDED.headers,
                        size_bytes = EXCLUDED.size_bytes,
                        stored_at = EXCLUDED.stored_at,
                        expires_at = EXCLUDED.expires_at
                    """
                ),
                {
                    "cache_key": cache_key,
                    "blob_name": blob_name,
                    "status_code": entry.status_code,
                    "headers": json.dumps(entry.headers),
                    "size_bytes": len(entry.body),
                    "stored_at": entry.stored_at,
                    "expires_at": entry.expires_at,
                },
            )

    def _delete(self, cache_key: str, blob_name: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text("DELETE FROM mirror_cache_entries WHERE cache_key = :cache_key"),
                {"cache_key": cache_key},
            )
        self._blob_path(blob_name).unlink(missing_ok=True)

    def total_entries(self) -> int:
        with self._engine.connect() as conn:
            return int(conn.execute(text("SELECT COUNT(*) FROM mirror_cache_entries")).scalar_one())

    async def status(self) -> dict[str, object]:
        return await asyncio.to_thread(self._status)

    def _status(self) -> dict[str, object]:
        self._storage_path.mkdir(parents=True, exist_ok=True)
        return {
            "backend": "disk",
            "storage_path": str(self._storage_path),
            "writable": os.access(self._storage_path, os.W_OK),
            "entries": self.total_entries(),
        }

    async def close(self) -> None:
        self._engine.dispose()


def build_store(settings: MirrorSettings) -> CacheStore:
    if settings.cache_backend == "disk":
        return DiskCacheStore(settings.cache_storage_path, settings.cache_index_url)
    return MemoryCacheStore(
        max_entries=settings.memory_cache_max_entries,
        max_bytes=settings.memory_cache_max_bytes,
    )
