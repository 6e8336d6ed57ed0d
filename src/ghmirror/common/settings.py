"""Application configuration for the GitHub mirror service."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_GITHUB_HOSTS = [
    "github.com",
    "raw.githubusercontent.com",
    "gist.github.com",
    "gist.githubusercontent.com",
]


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class MirrorSettings(BaseSettings):
    """Runtime settings for the mirror proxy.

    Built once at process start and handed to every component; frozen so no
    request can change it.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        frozen=True,
    )

    # Cache policy knobs
    swr_seconds: int = env_field(86400, "GHMIRROR_SWR_SECONDS")
    enable_compression: bool = env_field(True, "GHMIRROR_ENABLE_COMPRESSION")
    enable_early_hints: bool = env_field(True, "GHMIRROR_ENABLE_EARLY_HINTS")
    not_found_edge_ttl_seconds: int = env_field(60, "GHMIRROR_NOT_FOUND_EDGE_TTL")
    resolver_override: Optional[str] = env_field("1.1.1.1", "GHMIRROR_RESOLVER_OVERRIDE")

    # Upstream fetch
    max_retries: int = env_field(2, "GHMIRROR_MAX_RETRIES")
    retry_delay_ms: int = env_field(500, "GHMIRROR_RETRY_DELAY_MS")
    request_timeout_seconds: float = env_field(30.0, "GHMIRROR_REQUEST_TIMEOUT")
    early_hint_timeout_seconds: float = env_field(5.0, "GHMIRROR_EARLY_HINT_TIMEOUT")
    github_hosts: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_GITHUB_HOSTS),
        validation_alias="GHMIRROR_GITHUB_HOSTS",
    )
    default_host: str = env_field("github.com", "GHMIRROR_DEFAULT_HOST")
    # Reserved for degraded operation; nothing reads it yet.
    fallback_mirrors: Annotated[list[str], NoDecode] = Field(default_factory=list, validation_alias="GHMIRROR_FALLBACK_MIRRORS")

    # Cache store
    cache_backend: Literal["memory", "disk"] = env_field("memory", "GHMIRROR_CACHE_BACKEND")
    cache_storage_path: Path = env_field(Path("./mirror-cache"), "GHMIRROR_CACHE_STORAGE_PATH")
    cache_index_url: str = env_field("sqlite+pysqlite:///mirror-cache/index.db", "GHMIRROR_CACHE_INDEX_DB")
    memory_cache_max_entries: int = env_field(1024, "GHMIRROR_MEMORY_CACHE_MAX_ENTRIES")
    memory_cache_max_bytes: int = env_field(256 * 1024 * 1024, "GHMIRROR_MEMORY_CACHE_MAX_BYTES")
    max_cacheable_bytes: int = env_field(100 * 1024 * 1024, "GHMIRROR_MAX_CACHEABLE_BYTES")

    # Operations
    bind_host: str = env_field("0.0.0.0", "GHMIRROR_BIND_HOST")
    bind_port: int = env_field(8080, "GHMIRROR_BIND_PORT")
    metrics_token: Optional[SecretStr] = env_field(None, "GHMIRROR_METRICS_TOKEN")
    metrics_allowed_networks: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["127.0.0.0/8", "::1/128"],
        validation_alias="GHMIRROR_METRICS_ALLOWED_NETWORKS",
    )
    log_level: str = env_field("INFO", "GHMIRROR_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "GHMIRROR_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "GHMIRROR_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "GHMIRROR_OTEL_SAMPLER_RATIO")

    @field_validator("github_hosts", "fallback_mirrors", "metrics_allowed_networks", mode="before")
    @classmethod
    def _split_csv(cls, value):
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        return value

    @field_validator("cache_index_url", mode="before")
    @classmethod
    def _normalize_index_url(cls, value):
        if isinstance(value, Path):
            value = str(value)
        if isinstance(value, str) and "://" not in value:
            path = Path(value).expanduser().resolve()
            return f"sqlite+pysqlite:///{path.as_posix()}"
        return value
